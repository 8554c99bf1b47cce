#!/usr/bin/env python3
"""
Processing utilities for single-cell RNA-seq analysis
Handles normalization, PCA, UMAP, and clustering
"""

import scanpy as sc
import matplotlib.pyplot as plt


def normalize_residuals(adata, params):
    """Normalize expression and flag variable genes

    X holds log-normalized expression (also saved to .raw for marker scoring);
    raw counts stay in layers["counts"]. Highly variable genes are selected on
    analytic Pearson residuals of the counts, the variance-stabilizing
    transform used for PCA.

    Args:
        adata: AnnData object with raw counts in layers["counts"]
        params: Analysis parameter dict

    Returns:
        Processed AnnData object
    """
    print("Normalizing data...")

    if "counts" not in adata.layers:
        adata.layers["counts"] = adata.X.copy()

    adata.X = adata.layers["counts"].copy()
    sc.pp.normalize_total(adata, target_sum=1e4)
    sc.pp.log1p(adata)
    adata.raw = adata

    n_top = min(params["n_top_genes"], adata.n_vars)
    sc.experimental.pp.highly_variable_genes(
        adata, flavor="pearson_residuals", n_top_genes=n_top, layer="counts"
    )
    print(f"  Highly variable genes: {int(adata.var['highly_variable'].sum())}")

    return adata


def _residual_pca(adata, n_comps):
    """PCA of Pearson residuals on the highly variable genes"""
    hvg = adata[:, adata.var["highly_variable"]].copy()
    hvg.X = hvg.layers["counts"].copy()
    sc.experimental.pp.normalize_pearson_residuals(hvg)
    sc.tl.pca(hvg, n_comps=n_comps, svd_solver="arpack")

    adata.obsm["X_pca"] = hvg.obsm["X_pca"]
    adata.uns["pca"] = hvg.uns["pca"]
    return adata


def run_pca_umap_clustering(adata, params, save_dir=None):
    """Run PCA, UMAP and clustering

    Args:
        adata: AnnData object after normalize_residuals
        params: Analysis parameter dict (pca_dims, n_neighbors, cluster_resolution, random_seed)
        save_dir: Directory to save plots (optional)

    Returns:
        AnnData object with embeddings and clusters
    """
    n_hvg = int(adata.var["highly_variable"].sum())
    n_comps = min(50, n_hvg - 1, adata.n_obs - 1)
    if n_comps < params["pca_dims"]:
        raise ValueError(
            f"Only {n_comps} principal components available, pca_dims={params['pca_dims']}"
        )

    print("Running PCA...")
    adata = _residual_pca(adata, n_comps)

    if save_dir:
        fig, ax = plt.subplots(figsize=(6, 4))
        ratio = adata.uns["pca"]["variance_ratio"]
        ax.plot(range(1, len(ratio) + 1), ratio, "-o", markersize=3)
        ax.axvline(params["pca_dims"], color="gray", linestyle="--", linewidth=1)
        ax.set_xlabel("PC")
        ax.set_ylabel("Variance ratio")
        fig.tight_layout()
        fig.savefig(save_dir / "pca_elbow_plot.png", dpi=300, bbox_inches="tight")
        plt.close(fig)
        print(f"  Saved: {save_dir}/pca_elbow_plot.png")

    print("Computing neighborhood graph...")
    sc.pp.neighbors(
        adata,
        n_neighbors=params["n_neighbors"],
        n_pcs=params["pca_dims"],
        use_rep="X_pca",
        random_state=params["random_seed"],
    )

    print("Running UMAP...")
    sc.tl.umap(adata, random_state=params["random_seed"])

    print("Clustering...")
    sc.tl.leiden(
        adata,
        resolution=params["cluster_resolution"],
        random_state=params["random_seed"],
    )
    print(f"  {adata.obs['leiden'].nunique()} clusters at resolution {params['cluster_resolution']}")

    return adata


def plot_embeddings(adata, save_dir=None):
    """Plot UMAP embeddings

    Args:
        adata: AnnData object with UMAP coordinates
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting embeddings...")

    fig, axes = plt.subplots(2, 2, figsize=(12, 10))

    sc.pl.umap(
        adata,
        color="leiden",
        legend_loc="on data",
        title="Leiden clustering",
        ax=axes[0, 0],
        show=False,
    )
    sc.pl.umap(adata, color="sample", title="Sample", ax=axes[0, 1], show=False)
    sc.pl.umap(adata, color="phenotype", title="Phenotype", ax=axes[1, 0], show=False)
    sc.pl.umap(adata, color="percent_mt", title="Mito %", ax=axes[1, 1], show=False)

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "umap_embeddings.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/umap_embeddings.png")
        plt.close(fig)
    else:
        plt.show()
