from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import anndata as ad

from sc_de_workflow.config.model import DatasetConfig, ObsColumns
from sc_de_workflow.core.dataset import SEMANTIC_KEYS, Dataset

logger = logging.getLogger(__name__)


class DatasetConfigError(ValueError):
    """
    Raised when a dataset config is structurally invalid for loading.
    """
    pass


def _ensure_unique_names(adata: ad.AnnData, cfg: DatasetConfig, path: Path) -> ad.AnnData:
    """
    Ensure obs_names and var_names are unique, logging what we do.
    """
    if not adata.obs_names.is_unique:
        logger.warning(
            "Observation names are not unique for dataset '%s' (%s); "
            "calling .obs_names_make_unique() (in-memory fix)",
            cfg.name,
            path,
        )
        adata.obs_names_make_unique()

    if not adata.var_names.is_unique:
        logger.warning(
            "Variable names are not unique for dataset '%s' (%s); "
            "calling .var_names_make_unique() (in-memory fix)",
            cfg.name,
            path,
        )
        adata.var_names_make_unique()

    return adata


def _validate_obs_columns(adata: ad.AnnData, cfg: DatasetConfig, obs_cols: ObsColumns, path: Path) -> None:
    """
    Validate obs-column mappings only if they are explicitly configured.
    """
    for logical_name in SEMANTIC_KEYS:
        col_name = getattr(obs_cols, logical_name)
        if col_name is None:
            continue
        if col_name not in adata.obs.columns:
            msg = (
                f"Dataset '{cfg.name}': obs_columns.{logical_name}='{col_name}' "
                f"not found in .obs"
            )
            logger.error(msg, extra={"dataset": cfg.name, "path": str(path), logical_name: col_name})
            raise DatasetConfigError(msg)


def _resolve_path(path: Path, data_root: Optional[Path]) -> Path:
    # SC_DE_DATA_ROOT wins over the data_root in global.json
    if path.is_absolute():
        return path

    env_root = os.environ.get("SC_DE_DATA_ROOT")
    root = Path(env_root) if env_root else data_root
    if root is None:
        return path

    resolved = root / path
    # Tolerate a redundant 'data/' prefix
    if not resolved.is_file() and path.parts and path.parts[0] == "data":
        alt_path = root / Path(*path.parts[1:])
        if alt_path.is_file():
            resolved = alt_path
    return resolved


def from_config(cfg: DatasetConfig, data_root: Optional[Path] = None) -> Dataset:
    """
    Materialise an AnnData-backed Dataset from a DatasetConfig.
    """
    path = _resolve_path(cfg.path, data_root)

    if not path.is_file():
        raise DatasetConfigError(f"AnnData file not found at {path}.")

    adata = ad.read_h5ad(path)
    adata = _ensure_unique_names(adata, cfg, path)

    obs_cols: ObsColumns = cfg.obs_columns
    _validate_obs_columns(adata, cfg, obs_cols, path)

    counts_layer = cfg.counts_layer
    if counts_layer is not None and counts_layer not in adata.layers:
        logger.warning(
            "Counts layer '%s' not present for dataset '%s'; using .X as raw counts",
            counts_layer,
            cfg.name,
        )

    return Dataset(
        name=cfg.name,
        group=cfg.raw.get("group", "Default"),
        adata=adata,
        obs_columns=obs_cols,
        file_path=path,
        counts_layer=counts_layer,
        logcounts_layer=cfg.raw.get("logcounts_layer", "logcounts"),
    )
