from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse

from sc_de_workflow.config.model import ObsColumns
from sc_de_workflow.core.exceptions import DatasetSchemaError

logger = logging.getLogger(__name__)

SEMANTIC_KEYS = ("cell_id", "cluster", "block", "condition", "sample", "cell_type")


class Dataset:
    """
    Unified dataset abstraction used throughout the workflow.

    Includes:
    - Standardised access to semantic .obs columns (cluster, block, condition, sample)
    - Raw counts and log-expression accessors backed by AnnData layers
    - Cached expression extraction (cells × genes)
    """

    MAX_EXPR_CACHE = 128

    # -------------------------------------------------------------------------
    # Constructor
    # -------------------------------------------------------------------------
    def __init__(
        self,
        name: str,
        group: str,
        adata: ad.AnnData,
        obs_columns: Optional[Any] = None,
        file_path: Optional[Path] = None,
        counts_layer: Optional[str] = "counts",
        logcounts_layer: str = "logcounts",
    ) -> None:
        self.name = name
        self.group = group
        self.adata = adata
        self.file_path = file_path
        self.counts_layer = counts_layer
        self.logcounts_layer = logcounts_layer

        self.obs_columns: Dict[str, str] = self._normalise_obs_columns(obs_columns)

        # String-normalised label series, built once
        self._label_series: Dict[str, Optional[pd.Series]] = {}
        self._build_label_series()

        self._expr_cache: Dict[Tuple[str, Tuple[str, ...]], pd.DataFrame] = {}

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------
    def _normalise_obs_columns(self, obs_columns: Optional[Any]) -> Dict[str, str]:
        """
        Accept either a dict-like mapping or an ObsColumns instance and
        return a flat dict[str, str] with only non-None entries.
        """
        if obs_columns is None:
            return {}

        if isinstance(obs_columns, ObsColumns):
            return {
                key: getattr(obs_columns, key)
                for key in SEMANTIC_KEYS
                if getattr(obs_columns, key) is not None
            }

        return {k: v for k, v in dict(obs_columns).items() if v is not None}

    def _build_label_series(self) -> None:
        obs = self.adata.obs
        for key in SEMANTIC_KEYS:
            col = self.obs_columns.get(key)
            self._label_series[key] = (
                obs[col].astype(str).copy()
                if col is not None and col in obs.columns
                else None
            )

    def resolve_column(self, key: str) -> str:
        """
        Map a semantic key ("cluster", "block", ...) to the actual obs column.

        Literal obs column names are returned unchanged.

        :raises DatasetSchemaError: if neither a mapping nor a column exists.
        """
        col = self.obs_columns.get(key, key)
        if col not in self.adata.obs.columns:
            raise DatasetSchemaError(
                f"Dataset '{self.name}': column for '{key}' ('{col}') not found in .obs. "
                f"Available columns: {list(self.adata.obs.columns)}"
            )
        return col

    def labels(self, key: str) -> pd.Series:
        """Return string-normalised labels for a semantic key or obs column."""
        series = self._label_series.get(key)
        if series is not None:
            return series
        return self.adata.obs[self.resolve_column(key)].astype(str)

    # -------------------------------------------------------------------------
    # Count / log-expression access
    # -------------------------------------------------------------------------
    def counts(self):
        """Raw count matrix (cells × genes), sparse or dense."""
        if self.counts_layer and self.counts_layer in self.adata.layers:
            return self.adata.layers[self.counts_layer]
        return self.adata.X

    def ensure_logcounts(self) -> None:
        """
        Make sure the log-expression layer exists.

        Library-size normalises raw counts to the median total and applies log2(x + 1).
        """
        if self.logcounts_layer in self.adata.layers:
            return

        if self.adata.is_view:
            raise DatasetSchemaError(
                f"Dataset '{self.name}': cannot add '{self.logcounts_layer}' to an AnnData view; "
                "compute log-expression on the full dataset first"
            )

        counts = self.counts()
        if counts is None:
            raise DatasetSchemaError(f"Dataset '{self.name}' has no count matrix")

        logger.info(
            "Computing log-expression layer",
            extra={"dataset": self.name, "layer": self.logcounts_layer},
        )
        tmp = ad.AnnData(X=counts.copy().astype(np.float32))
        sc.pp.normalize_total(tmp, target_sum=None)
        sc.pp.log1p(tmp, base=2)
        self.adata.layers[self.logcounts_layer] = tmp.X
        self._expr_cache.clear()

    def logcounts(self):
        """Log-expression matrix (cells × genes), computed on first use."""
        self.ensure_logcounts()
        return self.adata.layers[self.logcounts_layer]

    # -------------------------------------------------------------------------
    # Expression Matrix Extraction (cached)
    # -------------------------------------------------------------------------
    def expression_matrix(self, genes: Sequence[str], log: bool = True) -> pd.DataFrame:
        """
        Return an expression matrix (cells × genes) for the given genes.

        Notes:
        - Cache key is order-insensitive (genes are normalised to a sorted unique tuple).
        - If none of the genes exist, returns an empty DataFrame indexed by obs_names.
        """
        genes_key = tuple(sorted(set(map(str, genes))))
        key = ("log" if log else "counts", genes_key)
        if key in self._expr_cache:
            return self._expr_cache[key]

        adata = self.adata
        var_mask = adata.var_names.isin(list(genes_key))
        if not var_mask.any():
            df = pd.DataFrame(index=adata.obs_names)
            self._expr_cache[key] = df
            return df

        matrix = self.logcounts() if log else self.counts()
        X = matrix[:, np.flatnonzero(var_mask)]
        if sparse.issparse(X):
            X = X.toarray()

        df = pd.DataFrame(
            np.asarray(X), index=adata.obs_names, columns=adata.var_names[var_mask]
        )

        self._expr_cache[key] = df
        if len(self._expr_cache) > self.MAX_EXPR_CACHE:
            self._expr_cache.clear()

        return df

    def clear_caches(self) -> None:
        """Reset the expression matrix cache."""
        self._expr_cache.clear()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------
    @property
    def genes(self) -> pd.Index:
        """Return gene names."""
        return self.adata.var_names

    def __repr__(self) -> str:
        return f"Dataset(name={self.name!r}, n_obs={self.adata.n_obs}, n_vars={self.adata.n_vars})"
