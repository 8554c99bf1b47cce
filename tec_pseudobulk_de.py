#!/usr/bin/env python3
"""
KO vs WT comparison of the annotated TEC hashing data

This script performs:
1. Pseudobulk aggregation per (cluster, sample) with the cell-count inclusion rule
2. Cluster-wise quasi-likelihood differential expression (or PyDESeq2)
3. Cell-state odds ratios of cluster membership
4. Signature score summaries and preranked GSEA

uv run python tec_pseudobulk_de.py --adata annotated_hashing_data.h5ad
"""

import warnings
import argparse
import matplotlib
import scanpy as sc
from pathlib import Path

from tec_scrna.analysis_config import load_params
from tec_scrna.pseudobulk import create_pseudobulk, filter_clusters_by_cell_count
from tec_scrna.differential_expression import (
    run_clusterwise_de,
    plot_de_summary,
    plot_volcano,
    plot_sample_pca,
)
from tec_scrna.cell_state import run_odds_ratio_analysis, plot_odds_ratios
from tec_scrna.annotation import summarize_signature_scores
from tec_scrna.pathway_analysis import run_prerank_gsea, plot_gsea_results

# Configure
sc.settings.verbosity = 1
warnings.filterwarnings("ignore")


def main(adata_path="annotated_hashing_data.h5ad", config_path=None, output_dir_path="results", method=None):
    """Main comparison pipeline

    Args:
        adata_path: Annotated .h5ad from tec_hashing_qc_annotation.py
        config_path: Optional JSON file overriding analysis parameters
        output_dir_path: Directory for tables and plots
        method: "qlf" or "deseq2" (defaults to the configured de_method)
    """
    print("Starting pseudobulk differential expression analysis...")

    if not Path(adata_path).exists():
        raise FileNotFoundError(
            f"{adata_path} not found. Run tec_hashing_qc_annotation.py first."
        )

    params = load_params(config_path)
    output_dir = Path(output_dir_path)
    output_dir.mkdir(parents=True, exist_ok=True)
    matplotlib.use("Agg")

    adata = sc.read_h5ad(adata_path)
    print(f"Loaded data: {adata.n_obs} cells, {adata.n_vars} genes")

    # Step 1: Pseudobulk
    pb_df, sample_info = create_pseudobulk(adata, cluster_key="leiden")
    samples = adata.obs["sample"].dropna().astype(str).unique()
    pb_df, sample_info, medians = filter_clusters_by_cell_count(
        pb_df,
        sample_info,
        min_median=params["min_cells_per_cluster_sample_median"],
        samples=samples,
    )
    medians.rename("median_cells_per_sample").to_csv(output_dir / "cluster_cell_medians.csv")

    # Step 2: Differential expression
    de_results, skipped, sample_pca_df = run_clusterwise_de(pb_df, sample_info, params, method=method)
    de_results.to_csv(output_dir / "differential_expression_results.csv", index=False)
    sample_pca_df.to_csv(output_dir / "sample_pca_coordinates.csv", index=False)
    print(f"Saved DE results to {output_dir / 'differential_expression_results.csv'}")
    for cluster, reason in skipped.items():
        print(f"  Skipped {cluster}: {reason}")

    plot_de_summary(de_results, save_path=output_dir / "de_summary_heatmap.png")
    plot_sample_pca(sample_pca_df, save_path=output_dir / "sample_pca.png")
    for cluster in de_results["cluster"].unique():
        plot_volcano(
            de_results,
            cluster,
            fc_threshold=params["sig_logfc_threshold"],
            pval_threshold=params["sig_padj_threshold"],
            save_path=output_dir / f"volcano_{cluster}.png",
        )

    # Step 3: Odds ratios
    or_df, failed = run_odds_ratio_analysis(adata.obs, params, cluster_key="leiden")
    or_df.to_csv(output_dir / "odds_ratio_results.csv", index=False)
    plot_odds_ratios(or_df, save_path=output_dir / "odds_ratio_forest.png")
    for cluster, reason in failed.items():
        print(f"  Odds ratio failed for {cluster}: {reason}")

    # Step 4: Signatures and GSEA
    score_names = [s for s in adata.uns.get("signature_scores", []) if s in adata.obs]
    if score_names:
        signature_summary = summarize_signature_scores(adata, score_names, groupby="leiden")
        signature_summary.to_csv(output_dir / "signature_scores_by_sample.csv", index=False)

    gsea_results = run_prerank_gsea(de_results, params)
    gsea_results.to_csv(output_dir / "gsea_results.csv", index=False)
    plot_gsea_results(gsea_results, save_path=output_dir / "gsea_summary.png")

    print("Analysis complete!")
    return de_results, or_df, gsea_results


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Pseudobulk KO vs WT analysis of TEC clusters")
    parser.add_argument("--adata", default="annotated_hashing_data.h5ad", help="Annotated .h5ad input")
    parser.add_argument("--config", default=None, help="JSON file with analysis parameter overrides")
    parser.add_argument("--output-dir", default="results", help="Directory for tables and plots")
    parser.add_argument(
        "--method",
        choices=["qlf", "deseq2"],
        default=None,
        help="DE method (default: de_method from the configuration)",
    )
    args = parser.parse_args()

    de_results, or_df, gsea_results = main(
        adata_path=args.adata,
        config_path=args.config,
        output_dir_path=args.output_dir,
        method=args.method,
    )
