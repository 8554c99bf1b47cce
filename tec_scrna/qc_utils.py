#!/usr/bin/env python3
"""
Quality control utilities for single-cell RNA-seq analysis
Handles QC metrics calculation and cell/gene filtering
"""

import numpy as np
import scanpy as sc
import matplotlib.pyplot as plt


def calculate_qc_metrics(adata, mt_pattern="mt-"):
    """Calculate QC metrics

    Args:
        adata: AnnData object with raw counts in X
        mt_pattern: Prefix of mitochondrial gene symbols

    Returns:
        AnnData object with QC metrics added
    """
    print("Calculating QC metrics...")

    adata.var["mt"] = adata.var_names.str.startswith(mt_pattern)

    sc.pp.calculate_qc_metrics(
        adata, qc_vars=["mt"], percent_top=None, log1p=False, inplace=True
    )
    adata.obs["percent_mt"] = adata.obs["pct_counts_mt"].fillna(0.0)

    print(f"  Mitochondrial genes: {int(adata.var['mt'].sum())}")
    print(f"  Median genes per cell: {np.median(adata.obs['n_genes_by_counts']):.0f}")
    print(f"  Median counts per cell: {np.median(adata.obs['total_counts']):.0f}")

    return adata


def plot_qc_metrics(adata, groupby=None, save_dir=None):
    """Plot QC metrics

    Args:
        adata: AnnData object with QC metrics
        groupby: Optional obs column to split the violins by
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting QC metrics...")

    fig, axes = plt.subplots(1, 3, figsize=(14, 4))
    for ax, key in zip(axes, ["n_genes_by_counts", "total_counts", "percent_mt"]):
        sc.pl.violin(adata, key, groupby=groupby, jitter=0.4, ax=ax, show=False)
        ax.set_title(key)
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "qc_violin_plots.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_violin_plots.png")
        plt.close(fig)
    else:
        plt.show()

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))
    sc.pl.scatter(adata, x="total_counts", y="percent_mt", ax=axes[0], show=False)
    sc.pl.scatter(
        adata, x="total_counts", y="n_genes_by_counts", ax=axes[1], show=False
    )
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "qc_scatter_plots.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_scatter_plots.png")
        plt.close(fig)
    else:
        plt.show()


def filter_cells_and_genes(adata, params):
    """Apply QC filtering

    Cells are kept with more than qc_min_features genes, more than
    qc_min_counts UMI and less than qc_max_pct_mito percent mitochondrial reads.

    Args:
        adata: AnnData object with QC metrics
        params: Analysis parameter dict

    Returns:
        Filtered AnnData object (a copy)
    """
    print("Applying QC filters...")

    print(f"Starting with {adata.n_obs} cells and {adata.n_vars} genes")

    keep = (
        (adata.obs["n_genes_by_counts"] > params["qc_min_features"])
        & (adata.obs["total_counts"] > params["qc_min_counts"])
        & (adata.obs["percent_mt"] < params["qc_max_pct_mito"])
    )
    print(f"  Failing genes/cell: {(adata.obs['n_genes_by_counts'] <= params['qc_min_features']).sum()}")
    print(f"  Failing counts/cell: {(adata.obs['total_counts'] <= params['qc_min_counts']).sum()}")
    print(f"  Failing mito %: {(adata.obs['percent_mt'] >= params['qc_max_pct_mito']).sum()}")

    adata = adata[keep.values].copy()
    if adata.n_obs == 0:
        raise ValueError("No cells passed QC filtering")

    # Filter genes expressed in at least gene_min_cells
    sc.pp.filter_genes(adata, min_cells=params["gene_min_cells"])

    print(f"After filtering: {adata.n_obs} cells and {adata.n_vars} genes")

    return adata
