from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import sparse

from sc_de_workflow.analysis.blocking import block_weight, combine_stouffer, iter_blocks
from sc_de_workflow.analysis.exceptions import DEConfigError
from sc_de_workflow.analysis.multiple_testing import adjust_fdr

logger = logging.getLogger(__name__)

Pair = Tuple[str, str]
# (first_cells, second_cells) -> (effect, p_up, p_down), each of length n_genes
BlockTest = Callable[[np.ndarray, np.ndarray], Tuple[np.ndarray, np.ndarray, np.ndarray]]


@dataclass
class PairwiseResult:
    """
    Statistics for every ordered pair of groups.

    statistics[(first, second)] is a DataFrame indexed by gene with columns:
    - <effect>   logFC (first minus second) or AUC (P(first > second))
    - p_value    two-sided p-value
    - p_up       one-sided p-value for first > second
    - p_down     one-sided p-value for first < second
    - FDR        Benjamini-Hochberg across genes
    """

    method: str
    effect: str
    groups: Tuple[str, ...]
    genes: pd.Index
    statistics: Dict[Pair, pd.DataFrame]
    params: Dict[str, Any] = field(default_factory=dict)

    def get(self, first: str, second: str) -> pd.DataFrame:
        try:
            return self.statistics[(str(first), str(second))]
        except KeyError:
            raise KeyError(f"No comparison between '{first}' and '{second}'")


# -----------------------------------------------------------------------------
# Input handling
# -----------------------------------------------------------------------------
def as_cells_by_genes(x, gene_names: Optional[Sequence[str]] = None):
    """
    Normalise an expression input to (matrix, gene index).

    Accepts a DataFrame (genes are its columns), a scipy sparse matrix or anything
    numpy can turn into a 2D array. Sparse input stays sparse.
    """
    if isinstance(x, pd.DataFrame):
        matrix = x.to_numpy(dtype=float)
        genes = pd.Index(x.columns.astype(str))
    elif sparse.issparse(x):
        matrix = sparse.csr_matrix(x)
        genes = None
    else:
        matrix = np.asarray(x, dtype=float)
        genes = None

    if matrix.ndim != 2:
        raise DEConfigError(f"Expression input must be 2D (cells × genes), got shape {matrix.shape}")

    if gene_names is not None:
        if len(gene_names) != matrix.shape[1]:
            raise DEConfigError(
                f"{len(gene_names)} gene names given for {matrix.shape[1]} columns"
            )
        genes = pd.Index([str(g) for g in gene_names])
    elif genes is None:
        genes = pd.Index([f"gene_{j}" for j in range(matrix.shape[1])])

    return matrix, genes


def dense_rows(matrix, mask: np.ndarray) -> np.ndarray:
    rows = matrix[np.flatnonzero(mask)]
    if sparse.issparse(rows):
        rows = rows.toarray()
    return np.asarray(rows, dtype=float)


def group_levels(labels: np.ndarray, restrict: Optional[Sequence[str]]) -> List[str]:
    levels = sorted(pd.unique(labels))
    if restrict is None:
        return levels

    wanted = [str(r) for r in restrict]
    missing = sorted(set(wanted) - set(levels))
    if missing:
        raise DEConfigError(f"restrict names unknown group(s) {missing}; available: {levels}")
    return [lvl for lvl in levels if lvl in wanted]


# -----------------------------------------------------------------------------
# Result assembly
# -----------------------------------------------------------------------------
def finalise_table(
    effect_name: str,
    effect: np.ndarray,
    p_up: np.ndarray,
    p_down: np.ndarray,
    genes: pd.Index,
) -> pd.DataFrame:
    p_value = np.minimum(1.0, 2.0 * np.minimum(p_up, p_down))
    return pd.DataFrame(
        {
            effect_name: effect,
            "p_value": p_value,
            "p_up": p_up,
            "p_down": p_down,
            "FDR": adjust_fdr(p_value),
        },
        index=genes,
    )


def empty_table(effect_name: str, genes: pd.Index) -> pd.DataFrame:
    nan = np.full(len(genes), np.nan)
    return finalise_table(effect_name, nan, nan, nan, genes)


def mirror_table(table: pd.DataFrame, effect_name: str) -> pd.DataFrame:
    """Statistics for (second, first) derived from those for (first, second)."""
    rev = table.copy()
    if effect_name == "AUC":
        rev[effect_name] = 1.0 - table[effect_name]
    else:
        rev[effect_name] = -table[effect_name]
    rev["p_up"] = table["p_down"]
    rev["p_down"] = table["p_up"]
    return rev


def nan_to_one(p: np.ndarray) -> np.ndarray:
    # Zero-variance comparisons give NaN; nothing to detect there
    return np.where(np.isnan(p), 1.0, p)


# -----------------------------------------------------------------------------
# Blocked driver
# -----------------------------------------------------------------------------
def run_blocked_pairwise(
    x,
    groups: Sequence,
    block_test: BlockTest,
    *,
    method: str,
    effect_name: str,
    block: Optional[Sequence] = None,
    min_cells: int = 1,
    gene_names: Optional[Sequence[str]] = None,
    restrict: Optional[Sequence[str]] = None,
    params: Optional[Dict[str, Any]] = None,
) -> PairwiseResult:
    """
    Run `block_test` for every pair of groups inside every block and combine.

    A block contributes to a pair only if both groups have at least `min_cells`
    cells in it. Effects are averaged and one-sided p-values combined across the
    contributing blocks with weights 1 / (1/n1 + 1/n2). Pairs with no contributing
    block get NaN statistics.
    """
    matrix, genes = as_cells_by_genes(x, gene_names)
    labels = np.asarray(groups).astype(str)
    if labels.shape[0] != matrix.shape[0]:
        raise DEConfigError(
            f"groups has {labels.shape[0]} entries but the matrix has {matrix.shape[0]} cells"
        )

    levels = group_levels(labels, restrict)
    blocks = list(iter_blocks(block, matrix.shape[0]))

    statistics: Dict[Pair, pd.DataFrame] = {}

    for i, first in enumerate(levels):
        for second in levels[i + 1:]:
            effects, ups, downs, weights = [], [], [], []

            for block_level, block_mask in blocks:
                m1 = block_mask & (labels == first)
                m2 = block_mask & (labels == second)
                n1, n2 = int(m1.sum()), int(m2.sum())
                if n1 < min_cells or n2 < min_cells:
                    continue

                effect, p_up, p_down = block_test(dense_rows(matrix, m1), dense_rows(matrix, m2))
                effects.append(effect)
                ups.append(nan_to_one(p_up))
                downs.append(nan_to_one(p_down))
                weights.append(block_weight(n1, n2))

            if not weights:
                logger.warning(
                    "Groups never co-occur in a block with enough cells; statistics set to NaN",
                    extra={"first": first, "second": second, "min_cells": min_cells},
                )
                table = empty_table(effect_name, genes)
            else:
                w = np.asarray(weights)
                table = finalise_table(
                    effect_name,
                    np.average(np.vstack(effects), axis=0, weights=w),
                    combine_stouffer(np.vstack(ups), w),
                    combine_stouffer(np.vstack(downs), w),
                    genes,
                )

            statistics[(first, second)] = table
            statistics[(second, first)] = mirror_table(table, effect_name)

    logger.info(
        "Pairwise comparisons complete",
        extra={
            "method": method,
            "n_groups": len(levels),
            "n_blocks": len(blocks),
            "n_genes": len(genes),
        },
    )

    return PairwiseResult(
        method=method,
        effect=effect_name,
        groups=tuple(levels),
        genes=genes,
        statistics=statistics,
        params=dict(params or {}),
    )
