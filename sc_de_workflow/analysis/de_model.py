from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple, cast

import pandas as pd

from sc_de_workflow.core.dataset import Dataset


@dataclass(frozen=True)
class DEConfig:
    """Immutable configuration for a scanpy rank_genes_groups run."""

    dataset: Dataset
    groupby: str
    group1: str
    group2: Optional[str] = None
    method: str = "wilcoxon"
    genes: Optional[Tuple[str, ...]] = None


@dataclass
class DEResult:
    """
    Canonical DE result: one row per gene.

    Columns:
    - gene              gene identifier
    - log2FC            log2 fold change
    - pvalue            raw p-value
    - adj_pvalue        multiple testing corrected p-value
    - comparison        human-readable label for comparison
    """

    config: DEConfig
    table: pd.DataFrame

    @property
    def significant(self) -> pd.DataFrame:
        """Thresholds: Adjusted P-value <= 0.05 and |log2FC| >= 1.0."""
        if self.table.empty:
            return self.table
        mask = (self.table["adj_pvalue"] <= 0.05) & (self.table["log2FC"].abs() >= 1.0)
        return cast(pd.DataFrame, self.table[mask])

    def head(self, n: int = 10) -> pd.DataFrame:
        return self.table.head(n)
