#!/usr/bin/env python3
"""
Pathway enrichment utilities
Preranked GSEA of the cluster-wise KO vs WT results against curated TEC gene sets
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import gseapy as gp

from tec_scrna.annotation import GENE_SIGNATURES

RANKING_EPS = 1e-300

GSEA_COLUMNS = ["cluster", "pathway", "ES", "NES", "pval", "fdr", "lead_genes", "ranking_size"]


def safe_negative_log10(values):
    """-log10 for p-values that may contain zeros"""
    return -np.log10(values.clip(lower=RANKING_EPS))


def compute_rank_vector(df, logfc_col="logFC", pval_col="P.Value"):
    """Signed significance ranking (logFC x -log10 p) indexed by gene

    A gene listed more than once keeps its strongest entry. The ranking is
    strictly decreasing: when scores tie, every position is lowered by
    1e-12 per rank, with genes ordered by name inside a tie.
    """
    missing = [col for col in ("gene", logfc_col, pval_col) if col not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    scored = df[["gene", logfc_col, pval_col]].dropna().reset_index(drop=True)
    if scored.empty:
        return pd.Series(dtype=float, name="rank_score")

    score = scored[logfc_col] * safe_negative_log10(scored[pval_col])
    strongest = score.abs().groupby(scored["gene"]).idxmax()
    ranked = pd.DataFrame(
        {"gene": strongest.index, "rank_score": score.loc[strongest.to_numpy()].to_numpy()}
    ).sort_values(["rank_score", "gene"], ascending=[False, True])
    ranking = ranked.set_index("gene")["rank_score"]

    if ranking.duplicated().any():
        ranking = ranking - np.arange(len(ranking)) * 1e-12
    return ranking


def standardize_gsea_columns(df):
    """Map GSEApy result columns to pathway, ES, NES, pval, fdr, lead_genes"""
    normalized = df.copy()
    normalized.columns = [
        col.strip().lower().replace(" ", "_").replace("-", "_") for col in normalized.columns
    ]

    column_aliases = {
        "term": "pathway",
        "es": "ES",
        "nes": "NES",
        "nom_p_val": "pval",
        "fdr_q_val": "fdr",
        "leading_edge": "lead_genes",
    }
    normalized = normalized.rename(columns=column_aliases)
    for col in ("ES", "NES", "pval", "fdr"):
        if col in normalized.columns:
            normalized[col] = pd.to_numeric(normalized[col], errors="coerce")
    return normalized


def run_prerank_gsea(de_results, params, gene_sets=GENE_SIGNATURES):
    """Run gseapy.prerank for every cluster of the DE table

    Args:
        de_results: Output of run_clusterwise_de
        params: Analysis parameter dict (gsea_min_size, gsea_max_size,
            gsea_permutations, random_seed)
        gene_sets: Dictionary of gene set name -> gene symbols

    Returns:
        DataFrame with one row per (cluster, pathway)
    """
    print("Running preranked GSEA...")

    frames = []
    for cluster, group_df in de_results.groupby("cluster", sort=True):
        ranking = compute_rank_vector(group_df)
        if ranking.size < params["gsea_min_size"]:
            print(f"  ⚠️  Skipping {cluster}: ranking has only {ranking.size} genes")
            continue

        ranked_genes = set(ranking.index)
        usable = {
            name: [g for g in genes if g in ranked_genes]
            for name, genes in gene_sets.items()
        }
        usable = {
            name: genes for name, genes in usable.items()
            if params["gsea_min_size"] <= len(genes) <= params["gsea_max_size"]
        }
        if not usable:
            print(f"  ⚠️  Skipping {cluster}: no gene set within size limits")
            continue

        print(f"  • {cluster}: {ranking.size} genes, {len(usable)} gene sets")
        prerank_res = gp.prerank(
            rnk=ranking,
            gene_sets=usable,
            min_size=params["gsea_min_size"],
            max_size=params["gsea_max_size"],
            permutation_num=params["gsea_permutations"],
            outdir=None,
            seed=params["random_seed"],
            threads=1,
            no_plot=True,
            verbose=False,
        )

        res_df = standardize_gsea_columns(prerank_res.res2d.reset_index(drop=True))
        res_df["cluster"] = cluster
        res_df["ranking_size"] = ranking.size
        frames.append(res_df)

    if not frames:
        return pd.DataFrame(columns=GSEA_COLUMNS)

    results = pd.concat(frames, ignore_index=True)
    ordered = [c for c in GSEA_COLUMNS if c in results.columns]
    results = results[ordered + [c for c in results.columns if c not in ordered]]
    print(f"✓ {len(results)} (cluster, pathway) enrichment results")
    return results


def plot_gsea_results(gsea_results, fdr_threshold=0.25, save_path=None):
    """Heatmap-style dot plot of NES per cluster and pathway"""
    if gsea_results.empty:
        print("No enrichment results to plot.")
        return

    data = gsea_results.copy()
    data["significant"] = data["fdr"] <= fdr_threshold
    pathways = sorted(data["pathway"].unique())
    clusters = sorted(data["cluster"].unique())

    fig, ax = plt.subplots(figsize=(max(5, 0.6 * len(clusters) + 3), max(3, 0.4 * len(pathways))))
    x = data["cluster"].map({c: i for i, c in enumerate(clusters)})
    y = data["pathway"].map({p: i for i, p in enumerate(pathways)})
    limit = max(float(data["NES"].abs().max()), 1.0)
    points = ax.scatter(
        x, y, c=data["NES"], cmap="RdBu_r", vmin=-limit, vmax=limit,
        s=np.where(data["significant"], 120, 40), edgecolors="black",
    )
    fig.colorbar(points, ax=ax, label="NES (KO vs WT)")
    ax.set_xticks(range(len(clusters)))
    ax.set_xticklabels(clusters, rotation=45, ha="right")
    ax.set_yticks(range(len(pathways)))
    ax.set_yticklabels(pathways)
    ax.set_title(f"Preranked GSEA (large points: FDR ≤ {fdr_threshold})")
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()
