from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import List, Optional, Tuple

from sc_de_workflow.config.model import DatasetConfig, GlobalConfig, WorkflowConfig
from sc_de_workflow.core.dataset import Dataset
from sc_de_workflow.core.dataset_loader import DatasetConfigError, from_config

logger = logging.getLogger(__name__)


def _resolve_dir(root: Path, raw: Optional[str]) -> Optional[Path]:
    # Absolute paths are used as-is; relative paths resolve against the config root.
    if raw is None:
        return None
    p = Path(raw)
    if p.is_absolute():
        return p
    return (root / p).resolve()


def load_global_config(root: Path) -> GlobalConfig:
    """
    Load configuration from a directory using the multi-file layout.

    Expected structure:

        root/
            global.json
            datasets/
                dataset_1.json
                dataset_2.json
                ...

    global.json keys:

    - title: report title, defaults to 'Single-cell DE workflow'
    - data_root: root directory for relative dataset paths
    - vignette_dir: directory holding the vignette sources
    - output_dir: where compiled vignettes, figures and tables go
    - workflow: parameter block parsed into a WorkflowConfig

    :param root: Directory containing 'global.json' and optionally 'datasets/'.
    :return: A GlobalConfig instance.
    :raises FileNotFoundError: if global.json does not exist.
    """
    root = Path(root)
    logger.info(
        "Loading global config",
        extra={"config_root": str(root)},
    )

    global_path = root / "global.json"
    if not global_path.is_file():
        raise FileNotFoundError(f"File not found at {global_path}")

    with global_path.open() as f:
        raw_global = json.load(f)

    datasets_dir = root / "datasets"
    datasets: List[DatasetConfig] = []

    if datasets_dir.is_dir():
        for idx, config_file in enumerate(sorted(datasets_dir.glob("*.json"))):
            with config_file.open() as f:
                raw = json.load(f)
            datasets.append(
                DatasetConfig.from_raw(raw, source_path=config_file, index=idx)
            )

    output_raw = os.getenv("SC_DE_OUTPUT_DIR") or raw_global.get("output_dir")

    return GlobalConfig(
        title=raw_global.get("title", "Single-cell DE workflow"),
        datasets=datasets,
        workflow=WorkflowConfig.from_dict(raw_global.get("workflow")),
        data_root=_resolve_dir(root, raw_global.get("data_root")),
        vignette_dir=_resolve_dir(root, raw_global.get("vignette_dir")),
        output_dir=_resolve_dir(root, output_raw),
    )


def load_datasets(path: Path) -> Tuple[GlobalConfig, List[Dataset]]:
    """
    Load the global configuration and instantiate all Dataset objects.

    1. Loads the top-level GlobalConfig from 'path'.
    2. Iterates over GlobalConfig.datasets and calls `from_config` for each.
    3. Skips any dataset whose config is invalid, logging the error.
    4. Returns only successfully materialised Dataset objects.

    :param path: Path to config directory.
    :return: A tuple of (GlobalConfig, List[Dataset]).
    :raises RuntimeError: if no valid datasets could be loaded.
    """
    global_config = load_global_config(path)

    datasets: List[Dataset] = []
    failed = 0

    for ds_cfg in global_config.datasets:
        try:
            ds = from_config(ds_cfg, data_root=global_config.data_root)
        except (DatasetConfigError, KeyError) as e:
            failed += 1
            logger.error(
                "Skipping dataset due to config error",
                extra={
                    "dataset": ds_cfg.name,
                    "error": str(e),
                },
            )
            continue

        datasets.append(ds)

    logger.info(
        "Datasets loaded from config root",
        extra={
            "config_root": str(path),
            "n_datasets": len(datasets),
            "n_failed": failed,
            "dataset_names": [ds.name for ds in datasets],
        },
    )

    if not datasets:
        raise RuntimeError(
            f"No valid datasets could be loaded from config root: {path}"
        )

    return global_config, datasets
