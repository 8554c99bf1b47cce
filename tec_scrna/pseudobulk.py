#!/usr/bin/env python3
"""
Pseudobulk aggregation utilities
Sums raw counts per (cluster, sample) and applies the cell-count inclusion rule
"""

import numpy as np
import pandas as pd
from scipy import sparse

from tec_scrna.hto_demux import derive_phenotype

KEY_NAMES = ["cluster", "sample"]


def create_pseudobulk(adata, cluster_key="leiden", sample_key="sample", phenotype_key="phenotype", layer="counts"):
    """Create pseudobulk samples by summing raw counts per (cluster, sample)

    Only non-empty (cluster, sample) combinations produce a column. No
    normalization is applied.

    Args:
        adata: AnnData object with raw counts in `layer` (falls back to X)
        cluster_key: obs column with cluster labels
        sample_key: obs column with sample labels
        phenotype_key: obs column with phenotype; derived from the sample label if absent
        layer: Layer holding raw counts

    Returns:
        Tuple of (pb_df, sample_info): pb_df is genes x columns with a
        (cluster, sample) MultiIndex on the columns; sample_info is indexed by
        the same MultiIndex with cluster, sample, phenotype and n_cells.
    """
    print("Creating pseudobulk samples...")

    for col in (cluster_key, sample_key):
        if col not in adata.obs:
            raise ValueError(f"Column '{col}' not found in adata.obs")

    labelled = adata.obs[cluster_key].notna() & adata.obs[sample_key].notna()
    if not labelled.all():
        print(f"  Ignoring {(~labelled).sum():,} cells without cluster or sample label")

    X = adata.layers[layer] if layer in adata.layers else adata.X
    X = sparse.csr_matrix(X)[np.flatnonzero(labelled.values)]

    obs = adata.obs.loc[labelled.values]
    keys = pd.DataFrame(
        {
            "cluster": obs[cluster_key].astype(str).values,
            "sample": obs[sample_key].astype(str).values,
        }
    )
    groups = dict(sorted(keys.groupby(KEY_NAMES).indices.items()))

    columns = pd.MultiIndex.from_tuples(list(groups.keys()), names=KEY_NAMES)
    sums = np.vstack(
        [np.asarray(X[idx].sum(axis=0, dtype=np.float64)).ravel() for idx in groups.values()]
    )
    pb_df = pd.DataFrame(sums.T, index=adata.var_names.copy(), columns=columns)

    if phenotype_key in obs:
        phenotypes = obs[phenotype_key].astype(str).values
        phenotype = [phenotypes[idx[0]] for idx in groups.values()]
    else:
        phenotype = [derive_phenotype(sample) for _, sample in groups.keys()]

    sample_info = pd.DataFrame(
        {
            "cluster": columns.get_level_values("cluster"),
            "sample": columns.get_level_values("sample"),
            "phenotype": phenotype,
            "n_cells": [len(idx) for idx in groups.values()],
        },
        index=columns,
    )

    print(f"Created {pb_df.shape[1]} pseudobulk samples from {pb_df.shape[0]} genes")

    return pb_df, sample_info


def cells_per_cluster_sample(sample_info, samples=None):
    """Cluster x sample table of cell counts, zero-filled for absent pairs"""
    table = sample_info.reset_index(drop=True).pivot_table(
        index="cluster", columns="sample", values="n_cells", aggfunc="sum", fill_value=0
    )
    if samples is not None:
        table = table.reindex(columns=list(samples), fill_value=0)
    return table


def filter_clusters_by_cell_count(pb_df, sample_info, min_median=100, samples=None):
    """Keep clusters whose median per-sample cell count exceeds min_median

    The median is taken over all samples of the experiment; a sample with no
    cells in a cluster counts as zero.

    Args:
        pb_df: Pseudobulk counts (genes x (cluster, sample))
        sample_info: Column metadata from create_pseudobulk
        min_median: Inclusion threshold (strictly greater than)
        samples: All sample labels of the experiment (defaults to those in sample_info)

    Returns:
        Tuple of (filtered pb_df, filtered sample_info, per-cluster median Series)
    """
    print("Filtering clusters by cells per sample...")

    table = cells_per_cluster_sample(sample_info, samples)
    medians = table.median(axis=1)
    retained = medians.index[medians > min_median]

    for cluster, median in medians.items():
        status = "kept" if cluster in retained else "dropped"
        print(f"  {cluster}: median {median:.0f} cells/sample ({status})")

    keep = sample_info["cluster"].isin(retained).values
    print(f"Retained {len(retained)} / {len(medians)} clusters (median > {min_median})")

    return pb_df.loc[:, keep], sample_info.loc[keep], medians
