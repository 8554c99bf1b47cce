#!/usr/bin/env python3
"""
Cell type annotation utilities for thymic epithelial cell (TEC) scRNA-seq
Handles marker gene analysis, cluster labeling, and gene-signature scoring
"""

import scanpy as sc
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

# Module-level constants: single sources of truth
TEC_MARKER_GENES = {
    "cTEC": ["Psmb11", "Prss16", "Ly75", "Ccl25", "Foxn1"],
    "mTEC_lo": ["Ccl21a", "Krt5", "Krt14", "Itga6", "Pdpn"],
    "mTEC_hi": ["Aire", "Fezf2", "Cd80", "H2-Aa", "Cd74"],
    "post_Aire_mTEC": ["Krt10", "Krt1", "Ivl", "Lor", "Spink5"],
    "Tuft_mTEC": ["Dclk1", "Pou2f3", "Trpm5", "Avil", "Il25"],
    "Proliferating_TEC": ["Mki67", "Top2a", "Stmn1", "Ube2c"],
    "Fibroblast": ["Pdgfra", "Col1a1", "Col3a1", "Dcn"],
    "Endothelial": ["Pecam1", "Cdh5", "Kdr"],
    "Thymocyte": ["Cd3e", "Ptprc", "Rag1", "Cd8b1"],
}

# Literature-curated signatures scored per cell
GENE_SIGNATURES = {
    "Antigen_presentation": [
        "H2-Aa", "H2-Ab1", "H2-Eb1", "Cd74", "Ctss", "Psmb8", "Psmb9", "Tap1",
    ],
    "Aire_dependent_TRA": [
        "Ins2", "Spt1", "Csn2", "Apoa4", "S100a8", "Gad1", "Tff3", "Cyp1a2",
        "Fabp2", "Reg3b",
    ],
    "Keratinization": ["Krt10", "Krt1", "Ivl", "Lor", "Flg", "Sprr1a", "Krtdap"],
    "NFkB_signaling": [
        "Relb", "Nfkb2", "Nfkbia", "Tnfaip3", "Traf3", "Ltbr", "Tnfrsf11a", "Cd40",
    ],
    "Interferon_response": ["Irf7", "Isg15", "Ifit1", "Ifit3", "Stat1", "Oasl2", "Bst2"],
    "Cell_cycle": ["Mki67", "Top2a", "Ccnb1", "Cdk1", "Birc5", "Ube2c"],
}


def _present_genes(adata, genes):
    """Return genes present in the expression matrix used for scoring, in order"""
    use_raw = adata.raw is not None
    var_names = adata.raw.var_names if use_raw else adata.var_names
    return [g for g in genes if g in var_names]


def compute_top_markers_per_cluster(adata, groupby="leiden", method="wilcoxon", n_top=30, save_dir=None):
    """Compute top marker genes per cluster using differential expression.

    Args:
        adata: AnnData object with clustering results.
        groupby: Column in adata.obs to group by (default: "leiden").
        method: DE method passed to scanpy (e.g., "wilcoxon", "t-test").
        n_top: Number of top genes to rank per group.
        save_dir: Optional Path to save a CSV summary.

    Returns:
        Pandas DataFrame with ranked markers across all groups.
    """
    if groupby not in adata.obs:
        raise ValueError(f"Groupby key '{groupby}' not found in adata.obs")

    sc.tl.rank_genes_groups(adata, groupby=groupby, method=method, n_genes=int(n_top), pts=True)
    markers_df = sc.get.rank_genes_groups_df(adata, None)

    if save_dir is not None:
        out_csv = save_dir / "top_markers_by_cluster.csv"
        markers_df.to_csv(out_csv, index=False)
        print(f"  Saved: {out_csv}")

    return markers_df


def plot_marker_genes(adata, marker_genes=TEC_MARKER_GENES, groupby="leiden", save_dir=None):
    """Plot marker genes across clusters

    Args:
        adata: AnnData object with clustering results
        marker_genes: Dictionary of cell type markers
        groupby: Column in adata.obs to group by
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    available = {}
    seen = set()
    for cell_type, genes in marker_genes.items():
        present = [g for g in _present_genes(adata, genes) if g not in seen]
        seen.update(present)
        if present:
            available[cell_type] = present

    if not available:
        print("No marker genes found in the data, skipping dotplot")
        return

    sc.pl.dotplot(adata, available, groupby=groupby, standard_scale="var", show=False)

    if save_dir:
        plt.savefig(save_dir / "marker_genes_dotplot.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/marker_genes_dotplot.png")
        plt.close()
    else:
        plt.show()


def assign_celltypes_by_cluster_scores(adata, marker_genes=TEC_MARKER_GENES, cluster_key="leiden", margin=0.05, agg="median"):
    """Assign cell types at the cluster level using module scores.

    Every marker set is scored per cell, scores are aggregated per cluster,
    and the best-scoring label is assigned when it beats the runner-up by at
    least `margin`; otherwise the cluster is labeled "Unassigned".

    Args:
        adata: AnnData object
        marker_genes: Dictionary of cell type markers to use for annotation.
        cluster_key: Column with cluster labels
        margin: Confidence margin between top and second-best scores
        agg: Aggregation method ('median' or 'mean')

    Returns:
        DataFrame of aggregated scores per cluster with the assigned label
    """
    print("Assigning cell types by cluster marker scores...")

    if cluster_key not in adata.obs:
        raise ValueError(f"Cluster key '{cluster_key}' not found in adata.obs")

    score_cols = []
    for label, genes in marker_genes.items():
        genes = _present_genes(adata, genes)
        if not genes:
            print(f"  ⚠️  No markers present for {label}, skipping")
            continue
        score_name = f"score_{label}"
        sc.tl.score_genes(adata, gene_list=genes, score_name=score_name)
        score_cols.append(score_name)

    if len(score_cols) < 2:
        raise ValueError("Need at least two scorable marker sets to assign cell types")

    grouped = adata.obs.groupby(cluster_key, observed=True)[score_cols]
    grouped = grouped.median() if agg == "median" else grouped.mean()

    values = grouped.to_numpy()
    top_idx = np.argmax(values, axis=1)
    # second best via partial sort
    second_best = np.partition(values, -2, axis=1)[:, -2]
    best = values[np.arange(values.shape[0]), top_idx]
    labels = np.array([c.replace("score_", "") for c in score_cols])

    confident = best - second_best >= margin
    assigned = np.where(confident, labels[top_idx], "Unassigned")

    cluster_labels = dict(zip(grouped.index.astype(str), assigned))
    adata.obs["celltype"] = pd.Categorical(
        adata.obs[cluster_key].astype(str).map(cluster_labels)
    )

    grouped = grouped.copy()
    grouped["celltype"] = assigned
    grouped["margin"] = best - second_best

    print(f"✓ Assigned {confident.sum()} / {len(grouped)} clusters")
    for cluster_id, row in grouped.iterrows():
        print(f"  Cluster {cluster_id}: {row['celltype']} (margin {row['margin']:.3f})")

    return grouped


def score_gene_signatures(adata, signatures=GENE_SIGNATURES, random_state=0):
    """Score curated gene signatures per cell against expression-matched controls

    Each score is the mean expression of the signature genes minus the mean
    of a control pool drawn from the same expression bins. Genes missing from
    the data are dropped; a signature with no genes left is skipped.

    Args:
        adata: AnnData object with normalized expression (uses .raw if present)
        signatures: Dictionary of signature name -> gene symbols
        random_state: Seed for control gene sampling

    Returns:
        List of score column names added to adata.obs
    """
    print("Calculating gene signature scores...")

    score_names = []
    for name, genes in signatures.items():
        present = _present_genes(adata, genes)
        if not present:
            print(f"  ⚠️  Skipping {name}: none of {len(genes)} genes present")
            continue

        score_name = f"{name}_score"
        print(f"  {name}: {len(present)}/{len(genes)} genes")
        sc.tl.score_genes(
            adata, gene_list=present, score_name=score_name, random_state=random_state
        )
        score_names.append(score_name)

    return score_names


def summarize_signature_scores(adata, score_names, groupby="leiden", sample_key="sample", phenotype_key="phenotype"):
    """Average signature scores per (cluster, sample) for phenotype comparisons

    Returns:
        Long DataFrame with cluster, sample, phenotype, signature and mean score
    """
    obs = adata.obs[[groupby, sample_key, phenotype_key] + list(score_names)]
    means = (
        obs.groupby([groupby, sample_key, phenotype_key], observed=True)[list(score_names)]
        .mean()
        .reset_index()
    )
    return means.melt(
        id_vars=[groupby, sample_key, phenotype_key],
        var_name="signature",
        value_name="mean_score",
    ).rename(columns={groupby: "cluster", sample_key: "sample", phenotype_key: "phenotype"})


def plot_signature_scores(adata, score_names, groupby="leiden", save_dir=None):
    """Violin plots of signature scores per cluster split by phenotype"""
    if not score_names:
        return

    fig, axes = plt.subplots(len(score_names), 1, figsize=(10, 3.5 * len(score_names)))
    axes = np.atleast_1d(axes)

    for ax, score_name in zip(axes, score_names):
        sc.pl.violin(adata, score_name, groupby=groupby, ax=ax, show=False)
        ax.set_title(f"{score_name} by {groupby}")

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "signature_scores.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/signature_scores.png")
        plt.close(fig)
    else:
        plt.show()


def plot_cell_type_summary(adata, celltype_key="celltype", sample_key="sample", save_dir=None):
    """Plot summary of cell types across samples

    Args:
        adata: AnnData object with cell type annotations
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    celltype_counts = (
        adata.obs.groupby([sample_key, celltype_key], observed=True)
        .size()
        .unstack(fill_value=0)
    )
    proportions = celltype_counts.div(celltype_counts.sum(axis=1), axis=0)

    fig, ax = plt.subplots(figsize=(10, 6))
    proportions.plot(kind="bar", stacked=True, ax=ax)
    ax.set_title("Cell type composition per sample")
    ax.set_xlabel("Sample")
    ax.set_ylabel("Fraction of cells")
    plt.xticks(rotation=45, ha="right")
    plt.legend(bbox_to_anchor=(1.05, 1), loc="upper left")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "celltype_distribution.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/celltype_distribution.png")
        plt.close(fig)
    else:
        plt.show()

    print("\nCell type summary:")
    print(adata.obs[celltype_key].value_counts().sort_index())
