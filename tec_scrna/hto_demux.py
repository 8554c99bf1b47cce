#!/usr/bin/env python3
"""
Hash-tag (HTO) demultiplexing utilities
Handles CLR normalization, Singlet/Doublet/Negative calls, and sample/phenotype assignment
"""

import re

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import statsmodels.api as sm
from scipy import stats
from sklearn.cluster import KMeans

PHENOTYPE_ORDER = ["WT", "KO"]


def clr_normalize(counts):
    """Centered log-ratio transform of each hash tag across cells

    For tag values x over all cells: log1p(x / exp(mean(log1p(x)))).

    Args:
        counts: DataFrame of raw HTO counts (cells x tags)

    Returns:
        DataFrame of CLR values with the same index and columns
    """
    X = np.asarray(counts, dtype=float)
    geo = np.exp(np.log1p(X).sum(axis=0) / X.shape[0])
    clr = np.log1p(X / geo)
    return pd.DataFrame(clr, index=counts.index, columns=counts.columns)


def _background_cutoff(values, quantile):
    """Fit a negative binomial to background counts and return the positive cutoff"""
    values = np.asarray(values, dtype=float)
    mu = values.mean()
    if mu == 0:
        return 0.0
    var = values.var(ddof=1) if len(values) > 1 else 0.0
    if var <= mu:
        # No overdispersion: Poisson limit of the negative binomial
        return float(stats.poisson.ppf(quantile, mu))

    size = mu**2 / (var - mu)
    fit = sm.NegativeBinomial(values, np.ones_like(values)).fit(
        start_params=[np.log(mu), 1.0 / size], maxiter=200, disp=0
    )
    alpha = fit.params[-1]
    if fit.mle_retvals.get("converged", False) and np.isfinite(alpha) and alpha > 0:
        mu = float(np.exp(fit.params[0]))
        size = 1.0 / alpha

    return float(stats.nbinom.ppf(quantile, size, size / (size + mu)))


def hto_demux(adata, params):
    """Classify cells as Singlet, Doublet or Negative from hash-tag counts

    Cells are clustered with k-means (k = number of tags + 1) on CLR values.
    For each tag, the cluster with the lowest average raw count is taken as
    background; a negative binomial fitted to those counts sets the cutoff at
    hto_positive_quantile. A cell is positive for every tag above its cutoff.

    Args:
        adata: AnnData with raw HTO counts in obsm["HTO"]
        params: Analysis parameter dict

    Returns:
        AnnData object with demultiplexing columns added to obs
    """
    print("Demultiplexing hash tags...")

    if "HTO" not in adata.obsm:
        raise ValueError("HTO counts not found in adata.obsm['HTO']")

    counts = adata.obsm["HTO"]
    n_tags = counts.shape[1]
    if n_tags < 2:
        raise ValueError(f"Need at least two hash tags, found {n_tags}")
    if adata.n_obs <= n_tags:
        raise ValueError(f"Too few cells ({adata.n_obs}) to demultiplex {n_tags} tags")

    clr = clr_normalize(counts)
    adata.obsm["HTO_clr"] = clr

    km = KMeans(
        n_clusters=n_tags + 1,
        n_init=params["hto_kmeans_n_init"],
        random_state=params["random_seed"],
    )
    labels = km.fit_predict(clr.to_numpy())
    cluster_means = counts.groupby(labels).mean()

    cutoffs = {}
    for tag in counts.columns:
        background = cluster_means[tag].idxmin()
        values = counts.loc[labels == background, tag]
        cutoffs[tag] = _background_cutoff(values, params["hto_positive_quantile"])
        print(f"  {tag}: cutoff {cutoffs[tag]:.0f} UMI ({len(values)} background cells)")

    positive = counts.gt(pd.Series(cutoffs))
    n_positive = positive.sum(axis=1)

    # Rank tags per cell on CLR values
    order = np.argsort(-clr.to_numpy(), axis=1)
    tag_names = np.asarray(clr.columns)
    clr_sorted = np.take_along_axis(clr.to_numpy(), order, axis=1)
    max_id = tag_names[order[:, 0]]
    second_id = tag_names[order[:, 1]]

    global_class = np.where(
        n_positive == 0, "Negative", np.where(n_positive == 1, "Singlet", "Doublet")
    )
    classification = np.where(
        global_class == "Doublet",
        [f"{a}_{b}" for a, b in zip(max_id, second_id)],
        np.where(global_class == "Negative", "Negative", max_id),
    )
    hash_id = np.where(global_class == "Singlet", max_id, global_class)

    adata.obs["HTO_maxID"] = pd.Categorical(max_id)
    adata.obs["HTO_secondID"] = pd.Categorical(second_id)
    adata.obs["HTO_margin"] = clr_sorted[:, 0] - clr_sorted[:, 1]
    adata.obs["HTO_classification"] = pd.Categorical(classification)
    adata.obs["HTO_classification.global"] = pd.Categorical(
        global_class, categories=["Singlet", "Doublet", "Negative"]
    )
    adata.obs["hash.ID"] = pd.Categorical(hash_id)
    adata.uns["hto_cutoffs"] = cutoffs

    summary = adata.obs["HTO_classification.global"].value_counts()
    for label, n in summary.items():
        print(f"  {label}: {n:,} ({n / adata.n_obs * 100:.1f}%)")

    return adata


def derive_phenotype(sample_label):
    """Map a sample label to its genotype: digits stripped, then "WT" substring"""
    stripped = re.sub(r"\d", "", str(sample_label))
    return "WT" if "WT" in stripped else "KO"


def add_sample_metadata(adata, sample_map=None):
    """Add sample and phenotype columns from the hash identity of each cell

    Args:
        adata: AnnData object after hto_demux
        sample_map: Optional dict mapping hash-tag names to sample labels

    Returns:
        AnnData object with 'sample' and 'phenotype' columns (NaN for non-singlets)
    """
    print("Adding sample metadata...")

    if "HTO_classification.global" not in adata.obs:
        raise ValueError("Run hto_demux before add_sample_metadata")

    singlet = adata.obs["HTO_classification.global"] == "Singlet"
    tags = adata.obs["HTO_maxID"].astype(str)
    samples = tags.map(sample_map) if sample_map else tags
    if samples[singlet].isna().any():
        missing = sorted(tags[singlet & samples.isna()].unique())
        raise ValueError(f"Hash tags missing from sample_map: {missing}")

    samples = samples.where(singlet)
    adata.obs["sample"] = pd.Categorical(samples)
    adata.obs["phenotype"] = pd.Categorical(
        samples.map(derive_phenotype, na_action="ignore"), categories=PHENOTYPE_ORDER
    )

    print(adata.obs.loc[singlet, ["sample", "phenotype"]].value_counts().sort_index())

    return adata


def select_singlets(adata):
    """Return a copy of the AnnData restricted to singlet cells"""
    singlet = (adata.obs["HTO_classification.global"] == "Singlet").values
    print(f"Keeping {singlet.sum():,} singlets of {adata.n_obs:,} cells")
    adata = adata[singlet].copy()
    adata.obs["sample"] = adata.obs["sample"].cat.remove_unused_categories()
    return adata


def plot_hto_summary(adata, save_dir=None):
    """Plot raw tag count distributions with cutoffs and the classification summary

    Args:
        adata: AnnData object after hto_demux
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    counts = adata.obsm["HTO"]
    cutoffs = adata.uns.get("hto_cutoffs", {})
    n_tags = counts.shape[1]

    fig, axes = plt.subplots(1, n_tags + 1, figsize=(3.5 * (n_tags + 1), 3.5))
    for ax, tag in zip(axes, counts.columns):
        ax.hist(np.log1p(counts[tag]), bins=50, alpha=0.7, edgecolor="black")
        if tag in cutoffs:
            ax.axvline(np.log1p(cutoffs[tag]), color="red", linestyle="--")
        ax.set_title(tag)
        ax.set_xlabel("log1p(UMI)")

    adata.obs["HTO_classification.global"].value_counts().plot.bar(
        ax=axes[-1], color="gray"
    )
    axes[-1].set_title("Classification")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "hto_demux_summary.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/hto_demux_summary.png")
        plt.close(fig)
    else:
        plt.show()
