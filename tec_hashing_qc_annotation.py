#!/usr/bin/env python3
"""
TEC cell-hashing scRNA-seq preprocessing, demultiplexing, and annotation

This script performs:
1. Gene expression and hash-tag matrix loading with barcode alignment
2. Quality control
3. HTO demultiplexing (Singlet/Doublet/Negative, sample and phenotype)
4. Normalization and dimensionality reduction
5. Clustering, marker-based annotation, and gene-signature scoring

uv run python tec_hashing_qc_annotation.py --gex-dir data/gex --hto-dir data/hto
"""

import json
import warnings
import argparse
import matplotlib
import scanpy as sc
from pathlib import Path

from tec_scrna.analysis_config import load_params, get_params_summary
from tec_scrna.data_loader import load_hashing_experiment
from tec_scrna.qc_utils import (
    calculate_qc_metrics,
    plot_qc_metrics,
    filter_cells_and_genes,
)
from tec_scrna.hto_demux import (
    hto_demux,
    add_sample_metadata,
    select_singlets,
    plot_hto_summary,
)
from tec_scrna.processing import (
    normalize_residuals,
    run_pca_umap_clustering,
    plot_embeddings,
)
from tec_scrna.annotation import (
    TEC_MARKER_GENES,
    compute_top_markers_per_cluster,
    plot_marker_genes,
    assign_celltypes_by_cluster_scores,
    score_gene_signatures,
    plot_signature_scores,
    plot_cell_type_summary,
)

# Configure scanpy
sc.settings.verbosity = 2
sc.settings.set_figure_params(dpi=80, facecolor="white")

# Suppress warnings
warnings.filterwarnings("ignore")


def main(gex_dir, hto_dir, config_path=None, sample_map_path=None, plots_dir_path="plots", output_path="annotated_hashing_data.h5ad"):
    """Main preprocessing pipeline

    Args:
        gex_dir: 10x gene expression matrix directory
        hto_dir: Hash-tag count matrix directory
        config_path: Optional JSON file overriding analysis parameters
        sample_map_path: Optional JSON file mapping hash tags to sample labels
        plots_dir_path: Directory where plots will be saved
        output_path: Annotated .h5ad to write
    """
    print("Starting TEC hashing analysis pipeline...")

    params = load_params(config_path)
    sample_map = None
    if sample_map_path:
        with open(sample_map_path) as fh:
            sample_map = json.load(fh)

    plots_dir = Path(plots_dir_path)
    plots_dir.mkdir(parents=True, exist_ok=True)
    print(f"Plots will be saved to: {plots_dir.absolute()}")

    matplotlib.use("Agg")

    print("\n" + get_params_summary(params) + "\n")

    # Step 1: Load and align matrices
    adata = load_hashing_experiment(gex_dir, hto_dir)

    # Step 2: QC
    adata = calculate_qc_metrics(adata, mt_pattern=params["mt_pattern"])
    plot_qc_metrics(adata, save_dir=plots_dir)
    adata = filter_cells_and_genes(adata, params)

    # Step 3: Demultiplex
    adata = hto_demux(adata, params)
    adata = add_sample_metadata(adata, sample_map)
    plot_hto_summary(adata, save_dir=plots_dir)
    adata = select_singlets(adata)
    plot_qc_metrics(adata, groupby="sample", save_dir=plots_dir)

    # Step 4: Normalize, reduce, cluster
    adata = normalize_residuals(adata, params)
    adata = run_pca_umap_clustering(adata, params, save_dir=plots_dir)
    plot_embeddings(adata, save_dir=plots_dir)

    # Step 5: Annotate
    compute_top_markers_per_cluster(adata, groupby="leiden", save_dir=plots_dir)
    plot_marker_genes(adata, TEC_MARKER_GENES, groupby="leiden", save_dir=plots_dir)
    assign_celltypes_by_cluster_scores(
        adata,
        TEC_MARKER_GENES,
        cluster_key="leiden",
        margin=params["annotation_margin"],
        agg="median",
    )
    plot_cell_type_summary(adata, save_dir=plots_dir)

    score_names = score_gene_signatures(adata, random_state=params["random_seed"])
    adata.uns["signature_scores"] = score_names
    plot_signature_scores(adata, score_names, groupby="leiden", save_dir=plots_dir)

    adata.write(output_path)
    print(f"Saved annotated data to {output_path}")

    print("Analysis complete!")
    return adata


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="TEC cell-hashing QC, demultiplexing, clustering, and annotation"
    )
    parser.add_argument("--gex-dir", required=True, help="10x gene expression matrix directory")
    parser.add_argument("--hto-dir", required=True, help="Hash-tag count matrix directory")
    parser.add_argument("--config", default=None, help="JSON file with analysis parameter overrides")
    parser.add_argument(
        "--sample-map",
        default=None,
        help="JSON file mapping hash-tag names to sample labels (default: tag names)",
    )
    parser.add_argument(
        "--plots-dir",
        default="plots",
        help="Directory to write plots to (default: 'plots')",
    )
    parser.add_argument(
        "--output",
        default="annotated_hashing_data.h5ad",
        help="Annotated AnnData output path",
    )
    args = parser.parse_args()

    adata = main(
        args.gex_dir,
        args.hto_dir,
        config_path=args.config,
        sample_map_path=args.sample_map,
        plots_dir_path=args.plots_dir,
        output_path=args.output,
    )
