import anndata as ad
import numpy as np
import pandas as pd
import pytest

from sc_de_workflow.config.model import DatasetConfig
from sc_de_workflow.core.dataset_loader import DatasetConfigError, from_config


def _make_h5ad_with_dupes(tmp_path):
    """Small .h5ad with duplicate obs/var names and a counts layer."""
    obs = pd.DataFrame(
        {
            "cluster": ["A", "A", "B"],
            "plate": ["p1", "p2", "p1"],
        },
        index=pd.Index(["c1", "c1", "c2"]),
    )
    var = pd.DataFrame(index=pd.Index(["g1", "g1", "g2"]))
    X = np.arange(9, dtype=np.float32).reshape(3, 3)

    adata = ad.AnnData(X=X, obs=obs, var=var)
    adata.layers["counts"] = X.copy()

    h5_path = tmp_path / "dupe_test.h5ad"
    adata.write_h5ad(h5_path)
    return h5_path


def test_from_config_makes_names_unique(tmp_path):
    h5_path = _make_h5ad_with_dupes(tmp_path)
    raw = {
        "name": "Dupes",
        "group": "Example",
        "path": str(h5_path),
        "obs_columns": {"cluster": "cluster", "block": "plate"},
    }
    cfg = DatasetConfig.from_raw(raw, source_path=h5_path, index=0)

    ds = from_config(cfg)

    assert ds.adata.obs_names.is_unique
    assert ds.adata.var_names.is_unique
    assert ds.group == "Example"
    assert ds.counts_layer == "counts"
    assert ds.resolve_column("block") == "plate"


def test_from_config_missing_obs_column_raises(tmp_path):
    h5_path = _make_h5ad_with_dupes(tmp_path)
    raw = {"name": "Bad", "path": str(h5_path), "obs_columns": {"condition": "phenotype"}}
    cfg = DatasetConfig.from_raw(raw, source_path=h5_path, index=0)

    with pytest.raises(DatasetConfigError):
        from_config(cfg)


def test_from_config_missing_file_raises(tmp_path):
    cfg = DatasetConfig.from_raw({"name": "Gone", "path": "nothing.h5ad"}, source_path=tmp_path, index=0)

    with pytest.raises(DatasetConfigError):
        from_config(cfg, data_root=tmp_path)


def test_data_root_env_var_wins(tmp_path, monkeypatch):
    h5_path = _make_h5ad_with_dupes(tmp_path)
    cfg = DatasetConfig.from_raw(
        {"name": "Env", "path": f"data/{h5_path.name}"}, source_path=tmp_path, index=0
    )
    monkeypatch.setenv("SC_DE_DATA_ROOT", str(tmp_path))

    # the redundant 'data/' prefix is tolerated
    ds = from_config(cfg, data_root=tmp_path / "elsewhere")

    assert ds.file_path == tmp_path / h5_path.name
