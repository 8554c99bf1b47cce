#!/usr/bin/env python3
"""
Data loading utilities for single-cell RNA-seq analysis
Handles 10x gene-expression and hash-tag (HTO) count matrices and barcode alignment
"""

import re

import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from pathlib import Path

# CITE-seq-Count names tags "<name>-<barcode sequence>"
_TAG_SEQUENCE = re.compile(r"-[ACGTN]{6,}$")
_BARCODE_SUFFIX = re.compile(r"-\d+$")


def _find_file(directory, stems):
    """Return the first existing file among stems (plain or gzipped)"""
    for stem in stems:
        for name in (stem, f"{stem}.gz"):
            candidate = directory / name
            if candidate.exists():
                return candidate
    raise FileNotFoundError(
        f"None of {stems} (optionally .gz) found in {directory}"
    )


def load_gex_matrix(path):
    """Load a 10x market-matrix directory of gene expression counts

    Args:
        path: Directory holding matrix.mtx, features.tsv/genes.tsv and barcodes.tsv

    Returns:
        AnnData object (cells x genes) with raw counts in X and layers["counts"]
    """
    path = Path(path)
    if not path.is_dir():
        raise FileNotFoundError(f"Expression matrix directory not found: {path}")

    print(f"Loading gene expression matrix from {path}")
    adata = sc.read_10x_mtx(path, var_names="gene_symbols", make_unique=True)
    if adata.n_obs == 0 or adata.n_vars == 0:
        raise ValueError(f"Expression matrix in {path} is empty")

    adata.layers["counts"] = adata.X.copy()
    print(f"  {adata.n_obs:,} barcodes x {adata.n_vars:,} genes")

    return adata


def load_hto_matrix(path, drop_unmapped=True):
    """Load a hash-tag UMI count matrix in market-matrix directory format

    CITE-seq-Count writes tags x cells with a single-column features file;
    10x feature-barcoding output (three-column features file) is also accepted.

    Args:
        path: Directory holding matrix.mtx, features.tsv and barcodes.tsv
        drop_unmapped: Remove the "unmapped" pseudo-tag row if present

    Returns:
        DataFrame of raw HTO counts (cells x tags)
    """
    path = Path(path)
    if not path.is_dir():
        raise FileNotFoundError(f"HTO matrix directory not found: {path}")

    print(f"Loading hash-tag matrix from {path}")
    matrix_file = _find_file(path, ["matrix.mtx"])
    features_file = _find_file(path, ["features.tsv", "genes.tsv"])
    barcodes_file = _find_file(path, ["barcodes.tsv"])

    X = sparse.csr_matrix(sc.read_mtx(matrix_file, dtype="float64").X)
    features = pd.read_csv(features_file, sep="\t", header=None, dtype=str)
    barcodes = pd.read_csv(barcodes_file, sep="\t", header=None, dtype=str)[0]

    # 10x feature files carry (id, name, type); CITE-seq-Count only the name
    tag_col = 1 if features.shape[1] >= 2 else 0
    tags = [_TAG_SEQUENCE.sub("", t) for t in features[tag_col]]

    if X.shape == (len(tags), len(barcodes)):
        X = X.T.tocsr()
    elif X.shape != (len(barcodes), len(tags)):
        raise ValueError(
            f"HTO matrix shape {X.shape} does not match "
            f"{len(tags)} tags x {len(barcodes)} barcodes"
        )

    hto = pd.DataFrame(
        X.toarray().astype(np.int64), index=barcodes.values, columns=tags
    )
    if drop_unmapped:
        hto = hto.loc[:, [c for c in hto.columns if c.lower() != "unmapped"]]

    if hto.empty:
        raise ValueError(f"HTO matrix in {path} is empty")

    print(f"  {hto.shape[0]:,} barcodes x {hto.shape[1]} hash tags")
    return hto


def strip_barcode_suffix(barcodes):
    """Remove the 10x GEM-well suffix ("-1") from cell barcodes"""
    return pd.Index([_BARCODE_SUFFIX.sub("", str(b)) for b in barcodes])


def align_barcodes(gex_barcodes, hto_barcodes):
    """Intersect the cell barcodes of the two matrices

    Args:
        gex_barcodes: Barcodes of the expression matrix
        hto_barcodes: Barcodes of the HTO matrix

    Returns:
        Index of shared (suffix-stripped) barcodes in expression-matrix order
    """
    gex = strip_barcode_suffix(gex_barcodes)
    hto = strip_barcode_suffix(hto_barcodes)

    for label, index in (("expression", gex), ("HTO", hto)):
        if index.duplicated().any():
            dupes = index[index.duplicated()].unique()[:5].tolist()
            raise ValueError(f"Duplicate barcodes in {label} matrix: {dupes}")

    common = gex[gex.isin(hto)]
    if len(common) == 0:
        raise ValueError(
            "No shared cell barcodes between expression and HTO matrices"
        )

    print(
        f"Shared barcodes: {len(common):,} "
        f"(expression: {len(gex):,}, HTO: {len(hto):,})"
    )
    return common


def build_hashing_adata(gex_adata, hto_counts):
    """Combine expression and HTO counts over the shared barcodes

    Args:
        gex_adata: AnnData of expression counts
        hto_counts: DataFrame of HTO counts (cells x tags)

    Returns:
        New AnnData restricted to shared barcodes with HTO counts in obsm["HTO"]
    """
    print("Aligning expression and hash-tag barcodes...")
    common = align_barcodes(gex_adata.obs_names, hto_counts.index)

    adata = gex_adata.copy()
    adata.obs_names = strip_barcode_suffix(adata.obs_names)
    adata = adata[common].copy()
    if "counts" not in adata.layers:
        adata.layers["counts"] = adata.X.copy()

    hto = hto_counts.copy()
    hto.index = strip_barcode_suffix(hto.index)
    adata.obsm["HTO"] = hto.loc[adata.obs_names]

    return adata


def load_hashing_experiment(gex_path, hto_path):
    """Load both matrices and return the aligned AnnData"""
    gex = load_gex_matrix(gex_path)
    hto = load_hto_matrix(hto_path)
    return build_hashing_adata(gex, hto)
