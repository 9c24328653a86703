from __future__ import annotations

import logging
import warnings
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import sparse, stats

from sc_de_workflow.analysis.blocking import build_design_matrix, group_contrast
from sc_de_workflow.analysis.exceptions import DEConfigError, DesignMatrixError
from sc_de_workflow.analysis.pairwise import (
    Pair,
    PairwiseResult,
    as_cells_by_genes,
    finalise_table,
    group_levels,
    mirror_table,
    nan_to_one,
    run_blocked_pairwise,
)

logger = logging.getLogger(__name__)


def _welch_block_test(lfc: float):
    def test(first: np.ndarray, second: np.ndarray):
        log_fc = first.mean(axis=0) - second.mean(axis=0)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            p_up = stats.ttest_ind(
                first - lfc, second, axis=0, equal_var=False, alternative="greater"
            ).pvalue
            p_down = stats.ttest_ind(
                first + lfc, second, axis=0, equal_var=False, alternative="less"
            ).pvalue
        return log_fc, np.asarray(p_up), np.asarray(p_down)

    return test


def _design_t_tests(
    matrix,
    genes: pd.Index,
    labels: np.ndarray,
    levels: Sequence[str],
    design: pd.DataFrame,
    lfc: float,
) -> Dict[Pair, pd.DataFrame]:
    X = build_design_matrix(labels, design)

    Y = matrix.toarray() if sparse.issparse(matrix) else np.asarray(matrix, dtype=float)
    fit = sm.OLS(Y, X.to_numpy()).fit()

    df_resid = float(fit.df_resid)
    if df_resid <= 0:
        raise DesignMatrixError(
            f"No residual degrees of freedom ({X.shape[0]} cells, {X.shape[1]} coefficients)"
        )

    beta = np.asarray(fit.params).reshape(X.shape[1], -1)
    resid = np.asarray(fit.resid).reshape(Y.shape[0], -1)
    sigma2 = (resid ** 2).sum(axis=0) / df_resid
    unscaled = np.asarray(fit.normalized_cov_params)

    logger.info(
        "Fitted linear model",
        extra={"n_coefficients": X.shape[1], "df_resid": df_resid, "columns": list(X.columns)},
    )

    statistics: Dict[Pair, pd.DataFrame] = {}
    for i, first in enumerate(levels):
        for second in levels[i + 1:]:
            contrast = group_contrast(X, first, second)
            log_fc = contrast @ beta
            se = np.sqrt(float(contrast @ unscaled @ contrast) * sigma2)
            with np.errstate(divide="ignore", invalid="ignore"):
                p_up = stats.t.sf((log_fc - lfc) / se, df_resid)
                p_down = stats.t.cdf((log_fc + lfc) / se, df_resid)

            table = finalise_table("logFC", log_fc, nan_to_one(p_up), nan_to_one(p_down), genes)
            statistics[(first, second)] = table
            statistics[(second, first)] = mirror_table(table, "logFC")

    return statistics


def pairwise_t_tests(
    x,
    groups: Sequence,
    block: Optional[Sequence] = None,
    design: Optional[pd.DataFrame] = None,
    lfc: float = 0.0,
    min_cells: int = 2,
    gene_names: Optional[Sequence[str]] = None,
    restrict: Optional[Sequence[str]] = None,
) -> PairwiseResult:
    """
    Pairwise Welch t-tests between all groups on log-expression values.

    Nuisance factors are handled in one of two ways:

    - `block`: tests run within each block (e.g. plate) and are combined with
      Stouffer's weighted Z; the log-fold change is the weighted mean of the
      per-block differences. Pairs that never share a block yield NaN.
    - `design`: a DataFrame of covariates (one row per cell). A linear model with
      group indicators plus the covariates is fitted per gene and pairs are
      compared through coefficient contrasts with the residual variance.

    :param x: cells × genes log-expression (DataFrame, ndarray or sparse matrix)
    :param groups: group label per cell (e.g. cluster)
    :param lfc: log-fold change threshold; the up/down tests become
        first - lfc > second and first + lfc < second
    :param min_cells: minimum cells per group inside a block for it to contribute
    :param restrict: only compare these group levels
    :raises DEConfigError: if both `block` and `design` are given
    """
    if block is not None and design is not None:
        raise DEConfigError("Use either block or design, not both")
    if lfc < 0:
        raise DEConfigError(f"lfc must be non-negative, got {lfc}")

    params = {"block": block is not None, "design": design is not None, "lfc": lfc}

    if design is None:
        return run_blocked_pairwise(
            x,
            groups,
            _welch_block_test(lfc),
            method="t",
            effect_name="logFC",
            block=block,
            min_cells=min_cells,
            gene_names=gene_names,
            restrict=restrict,
            params=params,
        )

    matrix, genes = as_cells_by_genes(x, gene_names)
    labels = np.asarray(groups).astype(str)
    if labels.shape[0] != matrix.shape[0]:
        raise DEConfigError(
            f"groups has {labels.shape[0]} entries but the matrix has {matrix.shape[0]} cells"
        )
    levels = group_levels(labels, restrict)

    if restrict is not None:
        keep = np.isin(labels, levels)
        matrix = matrix[np.flatnonzero(keep)]
        labels = labels[keep]
        design = design.iloc[np.flatnonzero(keep)]

    statistics = _design_t_tests(matrix, genes, labels, levels, design, lfc)

    return PairwiseResult(
        method="t",
        effect="logFC",
        groups=tuple(levels),
        genes=genes,
        statistics=statistics,
        params=params,
    )
