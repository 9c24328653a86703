from __future__ import annotations

import numpy as np
from statsmodels.stats.multitest import multipletests


def adjust_fdr(p_values, method: str = "fdr_bh") -> np.ndarray:
    """
    Multiple-testing correction that leaves NaN entries in place.

    :param p_values: raw p-values, NaN where a test could not be performed
    :param method: any statsmodels `multipletests` method, Benjamini-Hochberg by default
    :return: adjusted p-values with the same shape as the input
    """
    p = np.asarray(p_values, dtype=float)
    adjusted = np.full_like(p, np.nan)

    valid = ~np.isnan(p)
    if valid.any():
        adjusted[valid] = multipletests(p[valid], method=method)[1]

    return adjusted
