from __future__ import annotations

import logging
import math
from typing import Dict, Optional

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from sc_de_workflow.analysis.exceptions import DEConfigError
from sc_de_workflow.analysis.multiple_testing import adjust_fdr
from sc_de_workflow.analysis.pairwise import PairwiseResult

logger = logging.getLogger(__name__)

PVAL_TYPES = ("any", "some", "all")
DIRECTIONS = {"any": "p_value", "up": "p_up", "down": "p_down"}


def _holm_at(p_row: np.ndarray, position: int) -> float:
    adjusted = multipletests(p_row, method="holm")[1]
    return float(np.sort(adjusted)[position])


def _combine_group(
    pairwise: PairwiseResult,
    group: str,
    p_column: str,
    pval_type: str,
    min_prop: float,
    full_stats: bool,
) -> pd.DataFrame:
    effect = pairwise.effect
    genes = pairwise.genes
    others = [g for g in pairwise.groups if g != group]

    p = pd.DataFrame({o: pairwise.get(group, o)[p_column] for o in others}, index=genes)
    eff = pd.DataFrame({o: pairwise.get(group, o)[effect] for o in others}, index=genes)

    # comparisons that could not be performed at all are left out
    usable = [o for o in others if p[o].notna().any()]
    dropped = sorted(set(others) - set(usable))
    if dropped:
        logger.warning(
            "Ignoring comparisons without any statistics",
            extra={"group": group, "dropped": dropped},
        )

    n_genes = len(genes)
    combined = np.full(n_genes, np.nan)
    summary = np.full(n_genes, np.nan)
    top = np.full(n_genes, np.nan)

    if usable:
        pv = p[usable].to_numpy()
        ev = eff[usable].to_numpy()
        rows = np.arange(n_genes)

        if pval_type == "any":
            # Simes' combined p-value == smallest BH-adjusted value
            combined = stats.false_discovery_control(pv, axis=1).min(axis=1)
            best = np.argmin(pv, axis=1)
            top = stats.rankdata(pv, axis=0, method="min").min(axis=1).astype(float)
        elif pval_type == "all":
            combined = pv.max(axis=1)
            best = np.argmax(pv, axis=1)
        else:
            position = max(1, math.ceil(min_prop * len(usable))) - 1
            combined = np.array([_holm_at(row, position) for row in pv])
            best = np.argsort(pv, axis=1, kind="mergesort")[:, position]

        summary = ev[rows, best]

    out = pd.DataFrame(index=genes)
    if pval_type == "any":
        out["Top"] = top
    out["p_value"] = combined
    out["FDR"] = adjust_fdr(combined)
    out[f"summary_{effect}"] = summary
    for o in others:
        out[f"{effect}.{o}"] = eff[o]
    if full_stats:
        for o in others:
            out[f"p_value.{o}"] = p[o]

    sort_by = ["Top", "p_value"] if pval_type == "any" else ["p_value"]
    return out.sort_values(sort_by, kind="mergesort", na_position="last")


def combine_markers(
    pairwise: PairwiseResult,
    pval_type: str = "any",
    direction: str = "any",
    min_prop: Optional[float] = None,
    full_stats: bool = False,
) -> Dict[str, pd.DataFrame]:
    """
    Consolidate pairwise comparisons into one ranked marker table per group.

    For each group G the comparisons (G, other) are combined per gene:

    - pval_type="any": Simes' method; a gene is significant if it is DE against
      any other group. `Top` is the gene's best rank across comparisons, so the
      set with Top <= T contains the top T genes of every comparison.
    - pval_type="all": intersection-union (maximum p-value); DE against all others.
    - pval_type="some": Holm-adjusted p-value at position ceil(min_prop * k);
      DE against at least that proportion of the others (min_prop defaults to 0.5).

    direction="up"/"down" restricts to genes higher/lower in G.

    Columns: Top (any only), p_value, FDR, summary_<effect>, <effect>.<other>
    (plus p_value.<other> with full_stats).
    """
    if pval_type not in PVAL_TYPES:
        raise DEConfigError(f"pval_type must be one of {PVAL_TYPES}, got {pval_type!r}")
    if direction not in DIRECTIONS:
        raise DEConfigError(f"direction must be one of {tuple(DIRECTIONS)}, got {direction!r}")

    if min_prop is None:
        min_prop = 0.5
    if not 0 < min_prop <= 1:
        raise DEConfigError(f"min_prop must be in (0, 1], got {min_prop}")

    if len(pairwise.groups) < 2:
        raise DEConfigError("Need at least two groups to combine comparisons")

    p_column = DIRECTIONS[direction]
    markers = {
        group: _combine_group(pairwise, group, p_column, pval_type, min_prop, full_stats)
        for group in pairwise.groups
    }

    logger.info(
        "Combined pairwise comparisons into marker lists",
        extra={
            "method": pairwise.method,
            "pval_type": pval_type,
            "direction": direction,
            "n_groups": len(markers),
        },
    )
    return markers
