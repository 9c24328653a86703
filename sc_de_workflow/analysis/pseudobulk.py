"""
Pseudo-bulk analysis: sum counts over cells of the same sample (and label),
then test the samples with a negative binomial GLM, treating each sample as a
bulk RNA-seq library. The quasi-likelihood scale absorbs gene-specific
variability on top of a common NB dispersion.
"""
from __future__ import annotations

import logging
import warnings
from typing import Dict, Optional, Sequence, Tuple, Union

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import statsmodels.api as sm
from scipy import sparse, stats
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from sc_de_workflow.analysis.blocking import build_design_matrix, group_contrast
from sc_de_workflow.analysis.exceptions import DEConfigError, DesignMatrixError
from sc_de_workflow.analysis.multiple_testing import adjust_fdr

logger = logging.getLogger(__name__)

N_CELLS = "n_cells"


# -----------------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------------
def _combination_keys(obs: pd.DataFrame, by: Sequence[str]) -> pd.Series:
    return obs[list(by)].astype(str).agg("\x1f".join, axis=1)


def aggregate_across_cells(
    adata: ad.AnnData,
    by: Sequence[str],
    layer: Optional[str] = "counts",
    min_cells: int = 1,
) -> ad.AnnData:
    """
    Sum counts over cells sharing the same combination of `by` columns.

    :param by: obs columns defining a pseudo-bulk sample (e.g. cluster, plate, condition)
    :param layer: count layer to sum; falls back to .X when absent
    :param min_cells: drop combinations made of fewer cells
    :return: AnnData with one row per observed combination, summed counts in X,
        the `by` columns and `n_cells` in obs
    """
    by = list(by)
    missing = [c for c in by if c not in adata.obs.columns]
    if missing:
        raise DEConfigError(f"Aggregation columns {missing} not found in .obs")

    use_layer = layer if layer is not None and layer in adata.layers else None
    if layer is not None and use_layer is None:
        logger.warning("Counts layer '%s' not found; aggregating .X", layer)

    work = ad.AnnData(
        X=adata.layers[use_layer] if use_layer else adata.X,
        obs=adata.obs[by].astype(str).astype("category"),
        var=pd.DataFrame(index=adata.var_names),
    )
    pb = sc.get.aggregate(work, by=by, func="sum")

    summed = pb.layers["sum"]
    if sparse.issparse(summed):
        summed = summed.toarray()

    obs = pb.obs[by].astype(str)
    sizes = _combination_keys(work.obs, by).value_counts()
    obs[N_CELLS] = sizes.reindex(_combination_keys(obs, by)).fillna(0).astype(int).to_numpy()

    result = ad.AnnData(X=np.asarray(summed, dtype=float), obs=obs, var=pb.var.copy())
    result = result[(result.obs[N_CELLS] >= max(min_cells, 1)).to_numpy()].copy()

    logger.info(
        "Aggregated cells into pseudo-bulk samples",
        extra={"by": by, "n_samples": result.n_obs, "n_cells": adata.n_obs},
    )
    return result


# -----------------------------------------------------------------------------
# Dispersion / filtering
# -----------------------------------------------------------------------------
def estimate_common_dispersion(
    counts: np.ndarray,
    lib_sizes: np.ndarray,
    groups: Optional[Sequence] = None,
    trim: float = 0.1,
) -> float:
    """
    Method-of-moments NB dispersion, trimmed mean over genes.

    Uses var = mu + alpha * mu^2 on library-size normalised counts, pooling the
    variance within `groups` when every group has at least two samples.
    """
    norm = counts / lib_sizes[:, None] * lib_sizes.mean()
    means = norm.mean(axis=0)

    labels = np.asarray(groups).astype(str) if groups is not None else None
    levels = pd.unique(labels) if labels is not None else []
    if labels is not None and all((labels == lvl).sum() >= 2 for lvl in levels):
        ss = sum(
            ((norm[labels == lvl] - norm[labels == lvl].mean(axis=0)) ** 2).sum(axis=0)
            for lvl in levels
        )
        variances = ss / (norm.shape[0] - len(levels))
    else:
        variances = norm.var(axis=0, ddof=1)

    ok = means > 0
    if not ok.any():
        return 0.1
    dispersions = np.maximum(variances[ok] - means[ok], 0) / means[ok] ** 2
    return float(np.clip(stats.trim_mean(dispersions, trim), 1e-4, 10.0))


def filter_by_expr(counts: np.ndarray, lib_sizes: np.ndarray, min_cpm: float, min_samples: int) -> np.ndarray:
    """Keep genes with CPM >= min_cpm in at least min_samples samples."""
    cpm = counts / lib_sizes[:, None] * 1e6
    return (cpm >= min_cpm).sum(axis=0) >= min_samples


# -----------------------------------------------------------------------------
# GLM testing
# -----------------------------------------------------------------------------
def _fit_gene(
    y: np.ndarray,
    X: pd.DataFrame,
    offset: np.ndarray,
    alpha: float,
    contrast: np.ndarray,
) -> Tuple[float, float, float]:
    model = sm.GLM(
        y,
        X,
        family=sm.families.NegativeBinomial(alpha=alpha),
        offset=offset,
    )
    res = model.fit(scale="X2", use_t=True)
    tt = res.t_test(contrast)
    return (
        float(np.ravel(tt.effect)[0]),
        float(np.ravel(tt.tvalue)[0]),
        float(np.ravel(tt.pvalue)[0]),
    )


def _test_label(
    sub: ad.AnnData,
    condition: str,
    test_level: str,
    ref_level: str,
    covariates: Sequence[str],
    min_cpm: float,
    dispersion: Union[str, float],
) -> Optional[pd.DataFrame]:
    counts = np.asarray(sub.X, dtype=float)
    lib_sizes = counts.sum(axis=1)
    nonempty = lib_sizes > 0
    counts, lib_sizes = counts[nonempty], lib_sizes[nonempty]
    obs = sub.obs[nonempty]

    cond = obs[condition].astype(str).to_numpy()
    n_test, n_ref = int((cond == test_level).sum()), int((cond == ref_level).sum())
    if n_test == 0 or n_ref == 0:
        return None

    keep = np.isin(cond, [test_level, ref_level])
    counts, lib_sizes, obs, cond = counts[keep], lib_sizes[keep], obs[keep], cond[keep]

    design = build_design_matrix(cond, obs[list(covariates)] if covariates else None)
    if design.shape[0] - design.shape[1] <= 0:
        raise DesignMatrixError(
            f"No residual degrees of freedom ({design.shape[0]} samples, {design.shape[1]} coefficients)"
        )
    contrast = group_contrast(design, test_level, ref_level)

    gene_mask = filter_by_expr(counts, lib_sizes, min_cpm, min(n_test, n_ref))
    genes = sub.var_names[gene_mask]
    if len(genes) == 0:
        return None
    kept = counts[:, gene_mask]

    if dispersion == "moments":
        alpha = estimate_common_dispersion(kept, lib_sizes, groups=cond)
    else:
        alpha = float(dispersion)

    offset = np.log(lib_sizes)
    rows = []
    failed = 0
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        warnings.simplefilter("ignore", RuntimeWarning)
        for j in range(kept.shape[1]):
            y = kept[:, j]
            try:
                coef, t_value, p_value = _fit_gene(y, design, offset, alpha, contrast)
            except (np.linalg.LinAlgError, ValueError):
                failed += 1
                coef, t_value, p_value = np.nan, np.nan, np.nan
            log_cpm = np.log2((y.sum() + 0.5) / (lib_sizes.sum() + 1.0) * 1e6)
            rows.append((coef / np.log(2), log_cpm, t_value ** 2, p_value))

    if failed:
        logger.warning("GLM fit failed for %d genes; reporting NaN", failed)

    table = pd.DataFrame(rows, index=genes, columns=["logFC", "logCPM", "F", "PValue"])
    table["FDR"] = adjust_fdr(table["PValue"].to_numpy())
    table.attrs["dispersion"] = alpha
    table.attrs["n_samples"] = int(counts.shape[0])
    return table.sort_values("PValue", kind="mergesort", na_position="last")


def pseudobulk_de(
    pseudobulk: ad.AnnData,
    label: str,
    condition: str,
    contrast: Optional[Tuple[str, str]] = None,
    covariates: Sequence[str] = (),
    min_cells: int = 10,
    min_cpm: float = 1.0,
    dispersion: Union[str, float] = "moments",
) -> Dict[str, pd.DataFrame]:
    """
    Quasi-likelihood negative binomial GLM test of `condition` within each label.

    For every level of `label` (e.g. cluster) the pseudo-bulk samples are fitted
    per gene with `~ 0 + condition + covariates` and log library size offsets;
    the contrast compares `contrast[0]` against `contrast[1]`.

    Labels whose samples cannot support the comparison (missing condition level,
    confounded design, no residual df, no expressed genes) are skipped with a warning.

    :param pseudobulk: output of `aggregate_across_cells`
    :param contrast: (test level, reference level); inferred when `condition`
        has exactly two levels (reference = first in sorted order)
    :param covariates: additional obs columns to block on (e.g. plate)
    :param min_cells: drop pseudo-bulk samples built from fewer cells
    :param dispersion: "moments" or a fixed NB dispersion
    :return: per-label tables with logFC, logCPM, F, PValue, FDR sorted by PValue
    """
    for col in [label, condition, *covariates]:
        if col not in pseudobulk.obs.columns:
            raise DEConfigError(f"Column '{col}' not found in pseudo-bulk obs")

    if dispersion != "moments" and not isinstance(dispersion, (int, float)):
        raise DEConfigError(f"dispersion must be 'moments' or a number, got {dispersion!r}")
    if dispersion != "moments" and dispersion <= 0:
        raise DEConfigError(f"A fixed dispersion must be positive, got {dispersion}")

    levels = sorted(pseudobulk.obs[condition].astype(str).unique())
    if contrast is None:
        if len(levels) != 2:
            raise DEConfigError(
                f"condition '{condition}' has levels {levels}; pass contrast=(test, reference)"
            )
        contrast = (levels[1], levels[0])
    test_level, ref_level = str(contrast[0]), str(contrast[1])
    unknown = sorted({test_level, ref_level} - set(levels))
    if unknown:
        raise DEConfigError(f"contrast names unknown condition level(s) {unknown}; available: {levels}")

    if N_CELLS in pseudobulk.obs.columns:
        pseudobulk = pseudobulk[(pseudobulk.obs[N_CELLS] >= min_cells).to_numpy()]

    results: Dict[str, pd.DataFrame] = {}
    for level in sorted(pseudobulk.obs[label].astype(str).unique()):
        sub = pseudobulk[(pseudobulk.obs[label].astype(str) == level).to_numpy()]
        try:
            table = _test_label(sub, condition, test_level, ref_level, covariates, min_cpm, dispersion)
        except DesignMatrixError as e:
            logger.warning(
                "Skipping label: design cannot support the comparison",
                extra={"label": level, "error": str(e)},
            )
            continue

        if table is None:
            logger.warning(
                "Skipping label: not enough samples or expressed genes",
                extra={"label": level, "contrast": [test_level, ref_level]},
            )
            continue

        results[level] = table
        logger.info(
            "Pseudo-bulk DE complete",
            extra={
                "label": level,
                "n_genes": len(table),
                "n_significant": int((table["FDR"] <= 0.05).sum()),
                "dispersion": table.attrs["dispersion"],
            },
        )

    return results
