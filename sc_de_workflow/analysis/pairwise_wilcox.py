from __future__ import annotations

import warnings
from typing import Optional, Sequence

import numpy as np
from scipy import stats

from sc_de_workflow.analysis.exceptions import DEConfigError
from sc_de_workflow.analysis.pairwise import PairwiseResult, run_blocked_pairwise


def _wilcox_block_test(lfc: float):
    def test(first: np.ndarray, second: np.ndarray):
        n1, n2 = first.shape[0], second.shape[0]
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            up = stats.mannwhitneyu(
                first - lfc, second, axis=0, alternative="greater", method="asymptotic"
            )
            down = stats.mannwhitneyu(
                first + lfc, second, axis=0, alternative="less", method="asymptotic"
            )
            if lfc == 0:
                u = up.statistic
            else:
                u = stats.mannwhitneyu(
                    first, second, axis=0, alternative="two-sided", method="asymptotic"
                ).statistic
        auc = np.asarray(u, dtype=float) / (n1 * n2)
        return auc, np.asarray(up.pvalue), np.asarray(down.pvalue)

    return test


def pairwise_wilcox(
    x,
    groups: Sequence,
    block: Optional[Sequence] = None,
    lfc: float = 0.0,
    min_cells: int = 1,
    gene_names: Optional[Sequence[str]] = None,
    restrict: Optional[Sequence[str]] = None,
) -> PairwiseResult:
    """
    Pairwise Wilcoxon rank-sum tests between all groups.

    The effect size is the AUC, U / (n1 * n2): the probability that a random cell
    of the first group has higher expression than a random cell of the second
    (ties count one half). It lies in [0, 1] and AUC(a, b) = 1 - AUC(b, a).

    With `block`, tests run within each block and are combined as for
    `pairwise_t_tests`; the AUC is the weighted mean of per-block AUCs.
    """
    if lfc < 0:
        raise DEConfigError(f"lfc must be non-negative, got {lfc}")

    return run_blocked_pairwise(
        x,
        groups,
        _wilcox_block_test(lfc),
        method="wilcox",
        effect_name="AUC",
        block=block,
        min_cells=min_cells,
        gene_names=gene_names,
        restrict=restrict,
        params={"block": block is not None, "lfc": lfc},
    )
