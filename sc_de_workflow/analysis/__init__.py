"""
Differential expression layer.

Statistical tests come from scipy / statsmodels / scanpy; this package wires
them together with blocking, consolidation and pseudo-bulk aggregation.
"""

from .combine_markers import combine_markers
from .de_engine import run_de
from .de_model import DEConfig, DEResult
from .exceptions import DEConfigError, DERuntimeError, DesignMatrixError
from .find_markers import MarkerResult, find_markers
from .pairwise import PairwiseResult
from .pairwise_ttests import pairwise_t_tests
from .pairwise_wilcox import pairwise_wilcox
from .pseudobulk import aggregate_across_cells, pseudobulk_de

__all__ = [
    "DEConfig",
    "DEResult",
    "DEConfigError",
    "DERuntimeError",
    "DesignMatrixError",
    "MarkerResult",
    "PairwiseResult",
    "aggregate_across_cells",
    "combine_markers",
    "find_markers",
    "pairwise_t_tests",
    "pairwise_wilcox",
    "pseudobulk_de",
    "run_de",
]
