import anndata as ad
import numpy as np
import pandas as pd
import pytest

from sc_de_workflow.core.dataset import Dataset


def make_marker_adata(seed: int = 0) -> ad.AnnData:
    """
    Three clusters (A, B, C) spread over two plates with both conditions.

    - marker_A / marker_B / marker_C: ~8x higher in their cluster
    - induced: ~6x higher in treated cells
    - the remaining genes are flat
    """
    rng = np.random.default_rng(seed)

    clusters = np.repeat(["A", "B", "C"], 40)
    plates = np.tile(np.repeat(["p1", "p2"], 20), 3)
    conditions = np.tile(["ctrl", "treated"], 60)

    genes = ["marker_A", "marker_B", "marker_C", "induced"] + [f"g{j}" for j in range(16)]
    mu = np.full((clusters.size, len(genes)), 5.0)
    for k, c in enumerate(["A", "B", "C"]):
        mu[clusters == c, k] *= 8.0
    mu[conditions == "treated", 3] *= 6.0

    counts = rng.poisson(mu).astype(np.float32)

    obs = pd.DataFrame(
        {"cluster": clusters, "plate": plates, "phenotype": conditions},
        index=[f"cell_{i}" for i in range(clusters.size)],
    )
    adata = ad.AnnData(X=counts.copy(), obs=obs, var=pd.DataFrame(index=genes))
    adata.layers["counts"] = counts
    return adata


@pytest.fixture
def marker_adata() -> ad.AnnData:
    return make_marker_adata()


@pytest.fixture
def marker_dataset(marker_adata) -> Dataset:
    return Dataset(
        name="Markers",
        group="Test",
        adata=marker_adata,
        obs_columns={
            "cluster": "cluster",
            "block": "plate",
            "condition": "phenotype",
            "sample": "plate",
        },
    )
