#!/usr/bin/env python3
"""
Analysis parameters for the TEC cell-hashing pipeline

This file centralizes all thresholds used in the pipeline.
Stages receive a copy of these values explicitly; modify them here or
override them from a JSON file with load_params().
"""

import copy
import json
from pathlib import Path

ANALYSIS_PARAMS = {
    # Cell-level QC
    "qc_min_features": 200,  # Minimum genes detected per cell
    "qc_min_counts": 5000,  # Minimum total UMI per cell
    "qc_max_pct_mito": 15,  # Maximum mitochondrial percentage
    "mt_pattern": "mt-",  # Mouse mitochondrial genes (use "MT-" for human)
    "gene_min_cells": 3,  # Minimum cells expressing a gene
    # Hash-tag demultiplexing
    "hto_positive_quantile": 0.99,
    "hto_kmeans_n_init": 100,
    # Normalization, embedding, clustering
    "n_top_genes": 3000,
    "pca_dims": 10,  # Components 1..pca_dims feed the kNN graph
    "n_neighbors": 20,
    "cluster_resolution": 0.5,
    "random_seed": 0,
    # Annotation
    "annotation_margin": 0.05,
    # Pseudobulk differential expression
    "min_cells_per_cluster_sample_median": 100,
    "de_method": "qlf",  # "qlf" (quasi-likelihood F-test) or "deseq2"
    "de_min_count": 2,
    "de_min_total_count": 10,
    "de_min_samples_per_group": 2,
    "top_variable_genes_for_pca": 1000,
    "sig_padj_threshold": 0.01,
    "sig_logfc_threshold": 1.2,
    # Cell-state odds ratios
    "or_fe_prior_sd": 10.0,
    "or_vc_prior_sd": 1.0,
    # Preranked GSEA
    "gsea_min_size": 3,
    "gsea_max_size": 500,
    "gsea_permutations": 1000,
}


def default_params():
    """Return a fresh copy of the default analysis parameters"""
    return copy.deepcopy(ANALYSIS_PARAMS)


def load_params(path=None, overrides=None):
    """Load parameters, applying a JSON file and explicit overrides on top of defaults

    Args:
        path: Optional path to a JSON file with parameter overrides
        overrides: Optional dict of overrides applied after the file

    Returns:
        Validated parameter dict
    """
    params = default_params()
    updates = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        try:
            with open(config_path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except json.JSONDecodeError as exc:
            raise ValueError(
                f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
                f"column {exc.colno}: {exc.msg}"
            ) from exc
        if not isinstance(data, dict):
            raise ValueError(
                f"Invalid config root in '{config_path}': expected JSON object, "
                f"got {type(data).__name__}."
            )
        updates.update(data)

    if overrides:
        updates.update(overrides)

    unknown = sorted(set(updates) - set(params))
    if unknown:
        raise ValueError(f"Unknown analysis parameters: {unknown}")

    params.update(updates)
    validate_params(params)
    return params


def get_params_summary(params=None):
    """Return a formatted summary of the current parameter settings"""
    if params is None:
        params = ANALYSIS_PARAMS

    summary = [
        "=== Analysis Settings ===",
        "\nCell-level filters:",
        f"  - Genes per cell: > {params['qc_min_features']}",
        f"  - Counts per cell: > {params['qc_min_counts']}",
        f"  - Max mitochondrial %: {params['qc_max_pct_mito']}%",
        "\nDemultiplexing:",
        f"  - HTO positive quantile: {params['hto_positive_quantile']}",
        "\nClustering:",
        f"  - PCs used: 1-{params['pca_dims']}",
        f"  - Resolution: {params['cluster_resolution']}",
        "\nDifferential expression:",
        f"  - Method: {params['de_method']}",
        f"  - Min median cells per sample: > {params['min_cells_per_cluster_sample_median']}",
        f"  - Significance: global FDR < {params['sig_padj_threshold']}, "
        f"|log2FC| > {params['sig_logfc_threshold']}",
    ]
    return "\n".join(summary)


def validate_params(params):
    """Validate that parameters make sense"""
    errors = []

    for key in ("qc_min_features", "qc_min_counts", "gene_min_cells"):
        if params[key] < 0:
            errors.append(f"{key} must be non-negative")

    if not 0 <= params["qc_max_pct_mito"] <= 100:
        errors.append("qc_max_pct_mito must be between 0 and 100")

    if not 0 < params["hto_positive_quantile"] < 1:
        errors.append("hto_positive_quantile must be between 0 and 1")

    if params["pca_dims"] < 2:
        errors.append("pca_dims must be at least 2")

    if params["cluster_resolution"] <= 0:
        errors.append("cluster_resolution must be positive")

    if params["de_method"] not in ("qlf", "deseq2"):
        errors.append("de_method must be 'qlf' or 'deseq2'")

    if not 0 < params["sig_padj_threshold"] <= 1:
        errors.append("sig_padj_threshold must be in (0, 1]")

    if params["sig_logfc_threshold"] < 0:
        errors.append("sig_logfc_threshold must be non-negative")

    if params["top_variable_genes_for_pca"] < 2:
        errors.append("top_variable_genes_for_pca must be at least 2")

    if params["de_min_samples_per_group"] < 1:
        errors.append("de_min_samples_per_group must be at least 1")

    if errors:
        raise ValueError("Parameter validation failed:\n" + "\n".join(errors))

    return True


# Run validation on import
validate_params(ANALYSIS_PARAMS)
