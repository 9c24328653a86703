"""
Write a small synthetic dataset shaped like the 416B experiment:
two plates, each holding control and oncogene-induced cells, four clusters.

Gene groups:
- marker_<k>_*: higher in cluster k
- plate_*: shifted on plate 2 only (batch effect)
- induced_*: higher in induced cells in every cluster
"""
import numpy as np
import pandas as pd
import anndata as ad
from pathlib import Path
from scipy import sparse

rng = np.random.default_rng(416)

n_cells = 400
n_background = 120
n_markers = 8
clusters = ["1", "2", "3", "4"]

obs = pd.DataFrame(
    {
        "cluster": rng.choice(clusters, size=n_cells),
        "plate": rng.choice(["20160113", "20160325"], size=n_cells),
        "phenotype": rng.choice(["control", "induced"], size=n_cells),
    },
    index=[f"cell_{i:04d}" for i in range(n_cells)],
)

genes = (
    [f"gene_{j:03d}" for j in range(n_background)]
    + [f"marker_{c}_{j}" for c in clusters for j in range(n_markers)]
    + [f"plate_{j}" for j in range(n_markers)]
    + [f"induced_{j}" for j in range(n_markers)]
)
var = pd.DataFrame(index=genes)

base = rng.gamma(shape=2.0, scale=3.0, size=len(genes))
mu = np.tile(base, (n_cells, 1))

for c in clusters:
    cols = [genes.index(f"marker_{c}_{j}") for j in range(n_markers)]
    rows = (obs["cluster"] == c).to_numpy()
    mu[np.ix_(rows, cols)] *= 6.0

plate_cols = [genes.index(f"plate_{j}") for j in range(n_markers)]
mu[np.ix_((obs["plate"] == "20160325").to_numpy(), plate_cols)] *= 4.0

induced_cols = [genes.index(f"induced_{j}") for j in range(n_markers)]
mu[np.ix_((obs["phenotype"] == "induced").to_numpy(), induced_cols)] *= 5.0

size_factors = rng.lognormal(mean=0.0, sigma=0.3, size=n_cells)
mu *= size_factors[:, None]

# negative binomial counts with dispersion 0.1
counts = rng.poisson(rng.gamma(shape=10.0, scale=mu / 10.0))

adata = ad.AnnData(X=sparse.csr_matrix(counts.astype(np.float32)), obs=obs, var=var)
adata.layers["counts"] = adata.X.copy()

Path("data").mkdir(exist_ok=True)
adata.write_h5ad("data/416b.h5ad")
print("wrote data/416b.h5ad", adata.shape)
