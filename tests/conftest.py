import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from tec_scrna.analysis_config import default_params

SAMPLES = ["WT1", "WT2", "WT3", "KO1", "KO2", "KO3"]


@pytest.fixture
def params():
    p = default_params()
    p["hto_kmeans_n_init"] = 10
    p["gsea_permutations"] = 100
    return p


def make_cluster_adata(cells_per_sample, n_genes=200, engineered=None, seed=0):
    """Synthetic singlet AnnData with Poisson counts per (cluster, sample)

    Args:
        cells_per_sample: {cluster: {sample: n_cells}}
        engineered: {cluster: (gene index, WT pseudobulk mean, KO pseudobulk mean)}
    """
    rng = np.random.default_rng(seed)
    gene_means = rng.uniform(100, 400, size=n_genes)
    blocks = []
    obs_rows = []
    for cluster, per_sample in cells_per_sample.items():
        for sample, n_cells in per_sample.items():
            if n_cells == 0:
                continue
            ko = sample.startswith("KO")
            pb_means = gene_means.copy()
            if engineered and cluster in engineered:
                gene, wt_mean, ko_mean = engineered[cluster]
                pb_means[gene] = ko_mean if ko else wt_mean
            lam = pb_means / 150.0
            blocks.append(rng.poisson(lam, size=(n_cells, n_genes)))
            obs_rows += [(cluster, sample, "KO" if ko else "WT")] * n_cells

    X = np.vstack(blocks).astype(np.float32)
    obs = pd.DataFrame(obs_rows, columns=["leiden", "sample", "phenotype"])
    obs.index = [f"cell{i}" for i in range(len(obs))]
    for col in obs.columns:
        obs[col] = pd.Categorical(obs[col])
    var = pd.DataFrame(index=[f"Gene{i}" for i in range(n_genes)])
    return ad.AnnData(X=sparse.csr_matrix(X), obs=obs, var=var)


@pytest.fixture
def three_cluster_adata():
    """A (no effect), B (Gene0 4-fold up in KO), C (50 cells per sample)"""
    cells = {
        "A": {s: 150 for s in SAMPLES},
        "B": {s: 150 for s in SAMPLES},
        "C": {s: 50 for s in SAMPLES},
    }
    return make_cluster_adata(cells, engineered={"B": (0, 200.0, 800.0)}, seed=1)


@pytest.fixture
def hashing_counts():
    """HTO counts for 6 tags: 100 singlets per tag, 30 doublets and 30 negatives"""
    rng = np.random.default_rng(7)
    tags = [f"HTO{i}" for i in range(1, 7)]
    rows = []
    truth = []
    for t in range(6):
        for _ in range(100):
            counts = rng.poisson(5, size=6)
            counts[t] = rng.poisson(300)
            rows.append(counts)
            truth.append(("Singlet", tags[t]))
    for i in range(30):
        counts = rng.poisson(5, size=6)
        a, b = i % 6, (i + 1) % 6
        counts[a] = rng.poisson(300)
        counts[b] = rng.poisson(300)
        rows.append(counts)
        truth.append(("Doublet", None))
    for _ in range(30):
        rows.append(rng.poisson(5, size=6))
        truth.append(("Negative", None))

    barcodes = [f"BC{i:04d}" for i in range(len(rows))]
    hto = pd.DataFrame(np.array(rows), index=barcodes, columns=tags)
    truth = pd.DataFrame(truth, index=barcodes, columns=["global", "tag"])
    return hto, truth


@pytest.fixture
def hashing_adata(hashing_counts):
    hto, truth = hashing_counts
    rng = np.random.default_rng(3)
    X = rng.poisson(1.0, size=(len(hto), 50)).astype(np.float32)
    adata = ad.AnnData(
        X=sparse.csr_matrix(X),
        obs=pd.DataFrame(index=hto.index),
        var=pd.DataFrame(index=[f"Gene{i}" for i in range(50)]),
    )
    adata.obsm["HTO"] = hto
    return adata, truth
