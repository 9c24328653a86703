"""
Blocking and design-matrix helpers shared by the pairwise tests and the
pseudo-bulk GLMs.

Two ways of removing a nuisance factor such as plate of origin are supported:

- blocking: run the comparison separately inside each block and combine the
  per-block p-values / effects, weighted by how informative each block is;
- design: fit one linear model containing group indicators plus the nuisance
  covariates, then test contrasts between group coefficients.
"""
from __future__ import annotations

from typing import Iterator, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pandas.api.types import CategoricalDtype, is_numeric_dtype
from scipy import stats

from sc_de_workflow.analysis.exceptions import DEConfigError, DesignMatrixError

GROUP_PREFIX = "group"


def iter_blocks(block: Optional[Sequence], n_cells: int) -> Iterator[Tuple[str, np.ndarray]]:
    """
    Yield (block_level, boolean mask) for each level of the blocking factor.

    Without a blocking factor a single block covering all cells is yielded.
    """
    if block is None:
        yield "all", np.ones(n_cells, dtype=bool)
        return

    labels = np.asarray(block).astype(str)
    if labels.shape[0] != n_cells:
        raise DEConfigError(
            f"block has {labels.shape[0]} entries but there are {n_cells} cells"
        )

    for level in sorted(pd.unique(labels)):
        yield level, labels == level


def block_weight(n1: int, n2: int) -> float:
    """Weight of one block's comparison: inverse of the variance factor 1/n1 + 1/n2."""
    return 1.0 / (1.0 / n1 + 1.0 / n2)


def combine_stouffer(p_values: np.ndarray, weights: Sequence[float]) -> np.ndarray:
    """
    Weighted Z-score combination of one-sided p-values.

    :param p_values: array of shape (n_blocks, n_genes)
    :param weights: one weight per block
    :return: combined one-sided p-value per gene
    """
    p = np.atleast_2d(np.asarray(p_values, dtype=float))
    if p.shape[0] == 1:
        return p[0].copy()

    w = np.asarray(weights, dtype=float)[:, None]
    # keep isf finite at both ends
    p = np.clip(p, np.finfo(float).tiny, np.nextafter(1.0, 0.0))
    z = (w * stats.norm.isf(p)).sum(axis=0) / np.sqrt((w ** 2).sum())
    return stats.norm.sf(z)


def _covariate_columns(covariates: pd.DataFrame) -> pd.DataFrame:
    parts = []
    for col in covariates.columns:
        s = covariates[col]
        if is_numeric_dtype(s) and not isinstance(s.dtype, CategoricalDtype):
            parts.append(s.astype(float).to_frame(str(col)))
        else:
            parts.append(
                pd.get_dummies(
                    s.astype(str), prefix=str(col), prefix_sep="=", drop_first=True, dtype=float
                )
            )
    if not parts:
        return pd.DataFrame(index=covariates.index)
    return pd.concat(parts, axis=1)


def build_design_matrix(
    groups: Sequence,
    covariates: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """
    Build a design matrix with one indicator column per group level (no intercept)
    plus treatment-coded covariates.

    Group columns are named "group=<level>", categorical covariates "<column>=<level>"
    (first level dropped), numeric covariates keep their column name.

    :raises DesignMatrixError: if the design is not of full column rank, e.g. when a
        group only occurs in one block.
    """
    labels = pd.Series(np.asarray(groups).astype(str), name=GROUP_PREFIX)
    design = pd.get_dummies(labels, prefix=GROUP_PREFIX, prefix_sep="=", dtype=float)

    if covariates is not None and covariates.shape[1] > 0:
        if covariates.shape[0] != labels.shape[0]:
            raise DEConfigError(
                f"covariates have {covariates.shape[0]} rows but there are {labels.shape[0]} observations"
            )
        cov = _covariate_columns(covariates.reset_index(drop=True))
        design = pd.concat([design, cov], axis=1)

    rank = np.linalg.matrix_rank(design.to_numpy())
    if rank < design.shape[1]:
        raise DesignMatrixError(
            f"Design matrix with columns {list(design.columns)} has rank {rank} < {design.shape[1]}; "
            "a group is probably confounded with a covariate level"
        )

    return design


def group_contrast(design: pd.DataFrame, first: str, second: str) -> np.ndarray:
    """Contrast vector comparing the coefficients of two group levels."""
    contrast = np.zeros(design.shape[1])
    columns = list(design.columns)
    try:
        contrast[columns.index(f"{GROUP_PREFIX}={first}")] = 1.0
        contrast[columns.index(f"{GROUP_PREFIX}={second}")] = -1.0
    except ValueError:
        raise DesignMatrixError(
            f"Groups '{first}' and/or '{second}' not encoded in the design matrix"
        )
    return contrast
