import json
from pathlib import Path

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from sc_de_workflow.config.loader import load_datasets, load_global_config
from sc_de_workflow.config.model import WorkflowConfig
from sc_de_workflow.core.exceptions import ConfigError


def _make_tiny_h5ad(path: Path) -> Path:
    obs = pd.DataFrame(
        {"cluster": ["A", "B"], "plate": ["p1", "p1"], "phenotype": ["ctrl", "induced"]},
        index=["c1", "c2"],
    )
    adata = ad.AnnData(X=np.array([[1.0, 2.0], [3.0, 4.0]]), obs=obs, var=pd.DataFrame(index=["g1", "g2"]))
    path.parent.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(path)
    return path


def _write_config(tmp_path: Path, global_json: dict, datasets: dict) -> Path:
    # root/
    #   global.json
    #   datasets/
    #     <name>.json
    config_root = tmp_path / "config"
    datasets_dir = config_root / "datasets"
    datasets_dir.mkdir(parents=True)
    (config_root / "global.json").write_text(json.dumps(global_json))
    for name, entry in datasets.items():
        (datasets_dir / f"{name}.json").write_text(json.dumps(entry))
    return config_root


def test_load_datasets_from_config_dir(tmp_path):
    _make_tiny_h5ad(tmp_path / "data" / "tiny.h5ad")
    config_root = _write_config(
        tmp_path,
        {
            "title": "Test workflow",
            "data_root": "../data",
            "vignette_dir": "../vignettes",
            "workflow": {"pval_type": "all", "contrast": ["induced", "ctrl"], "min_cells": 3},
        },
        {
            "tiny": {
                "name": "Tiny",
                "group": "Example",
                "path": "tiny.h5ad",
                "obs_columns": {"cluster": "cluster", "block": "plate", "condition": "phenotype"},
            }
        },
    )

    global_config, datasets = load_datasets(config_root)

    assert global_config.title == "Test workflow"
    assert global_config.data_root == (tmp_path / "data").resolve()
    assert global_config.vignette_dir == (tmp_path / "vignettes").resolve()
    assert global_config.workflow.pval_type == "all"
    assert global_config.workflow.contrast == ("induced", "ctrl")
    assert global_config.workflow.min_cells == 3
    assert global_config.workflow.groupby == "cluster"

    assert len(datasets) == 1
    ds = datasets[0]
    assert ds.name == "Tiny"
    assert ds.labels("condition").tolist() == ["ctrl", "induced"]


def test_invalid_dataset_is_skipped(tmp_path):
    _make_tiny_h5ad(tmp_path / "data" / "tiny.h5ad")
    config_root = _write_config(
        tmp_path,
        {"data_root": "../data"},
        {
            "a_good": {"name": "Good", "path": "tiny.h5ad"},
            "b_bad": {"name": "Bad", "path": "missing.h5ad"},
            "c_no_path": {"name": "NoPath"},
        },
    )

    global_config, datasets = load_datasets(config_root)

    assert len(global_config.datasets) == 3
    assert [ds.name for ds in datasets] == ["Good"]


def test_no_loadable_dataset_raises(tmp_path):
    config_root = _write_config(tmp_path, {}, {"bad": {"name": "Bad", "path": "missing.h5ad"}})

    with pytest.raises(RuntimeError):
        load_datasets(config_root)


def test_missing_global_json_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_global_config(tmp_path)


def test_output_dir_env_override(tmp_path, monkeypatch):
    config_root = _write_config(tmp_path, {"output_dir": "out"}, {})
    monkeypatch.setenv("SC_DE_OUTPUT_DIR", str(tmp_path / "elsewhere"))

    global_config = load_global_config(config_root)

    assert global_config.output_dir == tmp_path / "elsewhere"
    assert global_config.datasets == []


def test_workflow_config_rejects_unknown_options():
    with pytest.raises(ConfigError):
        WorkflowConfig.from_dict({"pvaltype": "any"})


def test_workflow_config_contrast_needs_two_levels():
    with pytest.raises(ConfigError):
        WorkflowConfig.from_dict({"contrast": ["induced"]})


def test_workflow_config_defaults():
    cfg = WorkflowConfig.from_dict(None)

    assert cfg == WorkflowConfig()
    assert cfg.block == "block"
    assert cfg.dispersion == "moments"
