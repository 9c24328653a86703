from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import pandas as pd

from sc_de_workflow.analysis.combine_markers import combine_markers
from sc_de_workflow.analysis.exceptions import DEConfigError
from sc_de_workflow.analysis.pairwise import PairwiseResult
from sc_de_workflow.analysis.pairwise_ttests import pairwise_t_tests
from sc_de_workflow.analysis.pairwise_wilcox import pairwise_wilcox
from sc_de_workflow.core.dataset import Dataset

logger = logging.getLogger(__name__)

TESTS = ("t", "wilcox")


@dataclass
class MarkerResult:
    pairwise: PairwiseResult
    markers: Dict[str, pd.DataFrame]

    def top_genes(self, group: str, n: int = 10) -> list[str]:
        return [str(g) for g in self.markers[str(group)].index[:n]]


def find_markers(
    dataset: Dataset,
    groupby: str = "cluster",
    test: str = "t",
    block: Optional[str] = None,
    design: Optional[Sequence[str]] = None,
    pval_type: str = "any",
    direction: str = "any",
    lfc: float = 0.0,
    restrict: Optional[Sequence[str]] = None,
) -> MarkerResult:
    """
    Run pairwise tests between the levels of `groupby` and combine them into
    per-group marker tables.

    :param groupby: semantic key or obs column holding the groups
    :param test: "t" (Welch t-test on log-expression) or "wilcox"
    :param block: semantic key or obs column to block on (e.g. "block" for plate)
    :param design: obs columns used as linear-model covariates instead of blocking (t only)
    """
    if test not in TESTS:
        raise DEConfigError(f"test must be one of {TESTS}, got {test!r}")
    if design is not None and test != "t":
        raise DEConfigError("A design matrix is only supported for t-tests")

    groups = dataset.labels(groupby).to_numpy()
    block_labels = dataset.labels(block).to_numpy() if block is not None else None

    covariates = None
    if design is not None:
        columns = [dataset.resolve_column(c) for c in design]
        covariates = dataset.adata.obs[columns]

    x = dataset.logcounts()
    genes = list(dataset.genes)

    logger.info(
        "Finding markers",
        extra={
            "dataset": dataset.name,
            "groupby": groupby,
            "test": test,
            "block": block,
            "design": list(design) if design is not None else None,
            "pval_type": pval_type,
            "direction": direction,
            "lfc": lfc,
        },
    )

    if test == "t":
        pairwise = pairwise_t_tests(
            x,
            groups,
            block=block_labels,
            design=covariates,
            lfc=lfc,
            gene_names=genes,
            restrict=restrict,
        )
    else:
        pairwise = pairwise_wilcox(
            x,
            groups,
            block=block_labels,
            lfc=lfc,
            gene_names=genes,
            restrict=restrict,
        )

    markers = combine_markers(pairwise, pval_type=pval_type, direction=direction)
    return MarkerResult(pairwise=pairwise, markers=markers)
