#!/usr/bin/env python3
"""
Differential expression analysis utilities for single-cell RNA-seq analysis
Handles cluster-wise pseudobulk testing of KO vs WT

The default method is the edgeR quasi-likelihood pipeline through inmoose
edgepy, fed by local expression filtering and TMM factors (edgepy ships
neither). PyDESeq2 is available as a cross-check.
"""

import math

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats
from inmoose.edgepy import DGEList, glmQLFTest
from patsy import dmatrix
from sklearn.decomposition import PCA
from statsmodels.stats.multitest import multipletests

from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats

from tec_scrna.errors import DegenerateDesignError, ModelFitError
from tec_scrna.hto_demux import PHENOTYPE_ORDER

RESULT_COLUMNS = [
    "gene",
    "cluster",
    "logFC",
    "logCPM",
    "stat",
    "P.Value",
    "adj.P.Val",
    "adj.P.Val.global",
    "significant",
    "upregulated",
    "downregulated",
]


def bh_adjust(pvalues):
    """Benjamini-Hochberg adjustment ignoring missing p-values"""
    pvalues = pd.Series(pvalues, dtype=float)
    adjusted = pd.Series(np.nan, index=pvalues.index, dtype=float)
    valid = pvalues.notna()
    if valid.any():
        adjusted[valid] = multipletests(pvalues[valid], method="fdr_bh")[1]
    return adjusted


def filter_by_expr(counts, min_count=2, min_total_count=10):
    """Flag genes with enough counts to support a reliable test

    A gene is kept if its CPM reaches the CPM of `min_count` reads at the
    median library size in at least half of the samples, and its total count
    is at least `min_total_count`.

    Args:
        counts: Pseudobulk counts (genes x samples)
        min_count: Minimum count at the median library size
        min_total_count: Minimum total count across samples

    Returns:
        Boolean Series indexed by gene
    """
    lib_size = counts.sum(axis=0)
    cpm_cutoff = min_count / np.median(lib_size) * 1e6
    cpm = counts.div(lib_size, axis=1) * 1e6
    min_samples = math.ceil(counts.shape[1] / 2)
    tol = 1e-14

    enough_samples = (cpm >= cpm_cutoff - tol).sum(axis=1) >= min_samples
    enough_total = counts.sum(axis=1) >= min_total_count - tol
    return enough_samples & enough_total


def _tmm_factor(obs, ref, logratio_trim=0.3, sum_trim=0.05):
    """TMM scaling factor of one sample against the reference sample"""
    n_obs = obs.sum()
    n_ref = ref.sum()
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / n_obs) / (ref / n_ref))
        abs_e = (np.log2(obs / n_obs) + np.log2(ref / n_ref)) / 2
        v = (n_obs - obs) / n_obs / obs + (n_ref - ref) / n_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e) & np.isfinite(v) & (v > 0)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]
    if len(log_r) == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = len(log_r)
    lo_l = math.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = math.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = stats.rankdata(log_r)
    rank_e = stats.rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not keep.any():
        return 1.0

    f = np.sum(log_r[keep] / v[keep]) / np.sum(1 / v[keep])
    return float(2**f) if np.isfinite(f) else 1.0


def calc_norm_factors(counts, logratio_trim=0.3, sum_trim=0.05):
    """TMM normalization factors, scaled to a geometric mean of one

    The reference is the sample whose upper-quartile-scaled library is
    closest to the mean.

    Args:
        counts: Counts (genes x samples)

    Returns:
        Array of normalization factors, one per sample
    """
    x = np.asarray(counts, dtype=float)
    x = x[x.sum(axis=1) > 0]
    lib = x.sum(axis=0)
    if np.any(lib == 0):
        raise DegenerateDesignError("pseudobulk sample with zero library size")

    f75 = np.quantile(x, 0.75, axis=0) / lib
    if np.median(f75) < 1e-20:
        ref = int(np.argmax(np.sqrt(x).sum(axis=0)))
    else:
        ref = int(np.argmin(np.abs(f75 - f75.mean())))

    factors = np.array(
        [_tmm_factor(x[:, j], x[:, ref], logratio_trim, sum_trim) for j in range(x.shape[1])]
    )
    return factors / np.exp(np.mean(np.log(factors)))


def log_cpm(counts, lib_size):
    """log2 counts-per-million on effective library sizes

    Zeros are handled with an offset of half the smallest positive CPM in the
    matrix, so the offset follows the scale of the data.
    """
    cpm = counts.div(np.asarray(lib_size, dtype=float), axis=1) * 1e6
    values = cpm.to_numpy()
    positive = values[values > 0]
    offset = positive.min() / 2 if positive.size else 1.0
    return np.log2(cpm + offset)


def sample_pca(logcpm, phenotype, n_top=1000, n_components=2):
    """PCA of pseudobulk samples on the most variable genes (diagnostic only)

    Args:
        logcpm: log-CPM matrix (genes x samples)
        phenotype: Phenotype label per sample
        n_top: Number of most variable genes to use

    Returns:
        DataFrame of sample coordinates with sample and phenotype columns
    """
    variances = logcpm.var(axis=1)
    top = variances.nlargest(min(n_top, len(variances))).index
    mat = logcpm.loc[top].T.to_numpy()

    n_comp = min(n_components, mat.shape[0], mat.shape[1])
    pca = PCA(n_components=n_comp)
    coords = pca.fit_transform(mat - mat.mean(axis=0))

    ratio = ", ".join(f"PC{i + 1} {r * 100:.1f}%" for i, r in enumerate(pca.explained_variance_ratio_))
    print(f"  Sample PCA on {len(top)} genes: {ratio}")

    coords_df = pd.DataFrame(
        coords, index=logcpm.columns, columns=[f"PC{i + 1}" for i in range(n_comp)]
    )
    coords_df.insert(0, "sample", logcpm.columns)
    coords_df["phenotype"] = list(phenotype)
    return coords_df.reset_index(drop=True)


def run_de_with_qlf(counts, norm_factors, phenotype, robust=True):
    """Quasi-likelihood F-test of KO vs WT with edgepy

    Common NB dispersion by Cox-Reid, then glmQLFit with the QL dispersions
    squeezed toward an abundance trend (robustly by default) and glmQLFTest on
    the phenotype coefficient.

    Args:
        counts: Filtered counts (genes x samples)
        norm_factors: TMM normalization factors, one per sample
        phenotype: Phenotype label per sample
        robust: Robust empirical Bayes estimation of the QL prior

    Returns:
        DataFrame indexed by gene with logFC, stat (F), P.Value and dispersions
    """
    samples = pd.DataFrame(
        {"phenotype": pd.Categorical(np.asarray(phenotype, dtype=str), categories=PHENOTYPE_ORDER)},
        index=counts.columns,
    )
    design = dmatrix("~phenotype", data=samples)

    dge = DGEList(
        counts=counts.round().astype(int),
        norm_factors=np.asarray(norm_factors, dtype=float),
        group=samples["phenotype"].astype(str).to_numpy(),
    )
    try:
        dge.estimateGLMCommonDisp(design=design)
        if dge.common_dispersion is None or not np.isfinite(dge.common_dispersion):
            raise ModelFitError("common NB dispersion could not be estimated")
        fit = dge.glmQLFit(design=design, robust=robust)
        qlf = glmQLFTest(fit, coef=design.design_info.column_names.index("phenotype[T.KO]"))
    except (ValueError, np.linalg.LinAlgError) as exc:
        raise ModelFitError(f"QL fit failed: {exc}") from exc

    df_prior = np.atleast_1d(fit.df_prior)
    print(
        f"  Common NB dispersion: {dge.common_dispersion:.4f} "
        f"(BCV {np.sqrt(dge.common_dispersion):.3f})"
    )
    print(f"  QL prior df: median {np.median(df_prior):.1f}")

    results_df = pd.DataFrame(
        {
            "logFC": qlf["log2FoldChange"].to_numpy(dtype=float),
            "stat": qlf["stat"].to_numpy(dtype=float),
            "P.Value": qlf["pvalue"].to_numpy(dtype=float),
            "dispersion": dge.common_dispersion,
            "ql_dispersion": np.asarray(fit.var_post, dtype=float),
        },
        index=counts.index,
    )
    if not np.isfinite(results_df["P.Value"]).any():
        raise ModelFitError("QL F-test gave no finite p-value")
    return results_df


def run_de_with_deseq2(counts, phenotype):
    """Run PyDESeq2 Wald test of KO vs WT on filtered counts (genes x samples)"""
    counts_t = pd.DataFrame(
        np.rint(counts.to_numpy().T).astype(int),
        index=counts.columns,
        columns=counts.index,
    )
    metadata = pd.DataFrame({"phenotype": list(phenotype)}, index=counts.columns)
    inference = DefaultInference(n_cpus=1)

    try:
        dds = DeseqDataSet(
            counts=counts_t,
            metadata=metadata,
            design="~phenotype",
            refit_cooks=True,
            inference=inference,
            quiet=True,
        )
        dds.deseq2()
        stat_res = DeseqStats(dds, contrast=["phenotype", "KO", "WT"], inference=inference, quiet=True)
        stat_res.summary()
    except (ValueError, np.linalg.LinAlgError) as exc:
        raise ModelFitError(f"PyDESeq2 failed: {exc}") from exc

    results_df = stat_res.results_df
    return pd.DataFrame(
        {
            "logFC": results_df["log2FoldChange"],
            "stat": results_df["stat"],
            "P.Value": results_df["pvalue"],
        },
        index=counts.index,
    )


def check_design(phenotype, min_samples_per_group=2):
    """Raise DegenerateDesignError unless both phenotypes have enough samples"""
    levels, sizes = np.unique(np.asarray(phenotype, dtype=str), return_counts=True)
    unknown = sorted(set(levels) - set(PHENOTYPE_ORDER))
    if unknown:
        raise DegenerateDesignError(f"unexpected phenotype levels {unknown}")
    if len(levels) < 2:
        raise DegenerateDesignError(
            f"only phenotype level(s) {levels.tolist()} present"
        )
    if sizes.min() < min_samples_per_group:
        per_group = dict(zip(levels.tolist(), sizes.tolist()))
        raise DegenerateDesignError(
            f"samples per phenotype {per_group}, need {min_samples_per_group}"
        )
    if sizes.sum() - len(levels) < 1:
        raise DegenerateDesignError("no residual degrees of freedom")


def run_de_for_cluster(pb_df, sample_info, cluster, params, method=None):
    """Run differential expression analysis for a single cluster

    Args:
        pb_df: Pseudobulk counts (genes x (cluster, sample))
        sample_info: Column metadata from create_pseudobulk
        cluster: Cluster to analyze
        params: Analysis parameter dict
        method: "qlf" or "deseq2" (defaults to params["de_method"])

    Returns:
        Tuple of (DE results DataFrame, sample PCA coordinates)

    Raises:
        DegenerateDesignError: cluster cannot be tested
        ModelFitError: model fitting failed for the cluster
    """
    method = method or params["de_method"]

    print(f"\n{'='*60}")
    print(f"ANALYZING: {cluster}")
    print(f"{'='*60}")

    mask = (sample_info["cluster"] == cluster).to_numpy()
    info = sample_info.loc[mask]
    counts = pd.DataFrame(
        pb_df.loc[:, mask].to_numpy(),
        index=pb_df.index,
        columns=info["sample"].astype(str).to_numpy(),
    )
    phenotype = info["phenotype"].astype(str).to_numpy()

    check_design(phenotype, params["de_min_samples_per_group"])

    keep = filter_by_expr(counts, params["de_min_count"], params["de_min_total_count"])
    counts = counts.loc[keep]
    if counts.shape[0] == 0:
        raise DegenerateDesignError("no genes passed expression filtering")

    print(f"  Analyzing {counts.shape[0]:,} genes across {counts.shape[1]} samples")
    print(f"  Method: {'quasi-likelihood F-test' if method == 'qlf' else 'DESeq2 Wald test'}")

    norm_factors = calc_norm_factors(counts)
    lib_size = counts.sum(axis=0).to_numpy() * norm_factors
    logcpm = log_cpm(counts, lib_size)

    coords = sample_pca(logcpm, phenotype, n_top=params["top_variable_genes_for_pca"])
    coords["cluster"] = cluster

    if method == "qlf":
        results_df = run_de_with_qlf(counts, norm_factors, phenotype)
    elif method == "deseq2":
        results_df = run_de_with_deseq2(counts, phenotype)
    else:
        raise ValueError(f"Unknown DE method: {method}")

    results_df["logCPM"] = logcpm.mean(axis=1)
    results_df["adj.P.Val"] = bh_adjust(results_df["P.Value"]).to_numpy()
    results_df.insert(0, "cluster", cluster)
    results_df.insert(0, "gene", results_df.index.astype(str))

    n_nominal = int((results_df["adj.P.Val"] < params["sig_padj_threshold"]).sum())
    print(f"    ✓ {n_nominal} genes below local FDR {params['sig_padj_threshold']}")

    return results_df.reset_index(drop=True), coords


def add_global_fdr(de_results):
    """Add BH-adjusted p-values pooled over every (cluster, gene) test"""
    de_results = de_results.copy()
    de_results["adj.P.Val.global"] = bh_adjust(de_results["P.Value"]).to_numpy()
    return de_results


def flag_significant(de_results, padj_threshold=0.01, logfc_threshold=1.2):
    """Mark genes with global FDR below padj_threshold and |logFC| above logfc_threshold"""
    de_results = de_results.copy()
    padj = pd.to_numeric(de_results["adj.P.Val.global"], errors="coerce")
    logfc = pd.to_numeric(de_results["logFC"], errors="coerce")

    de_results["significant"] = (
        (padj < padj_threshold) & (logfc.abs() > logfc_threshold) & padj.notna()
    )
    de_results["upregulated"] = de_results["significant"] & (logfc > 0)
    de_results["downregulated"] = de_results["significant"] & (logfc < 0)
    return de_results


def run_clusterwise_de(pb_df, sample_info, params, method=None):
    """Run pseudobulk differential expression for every cluster

    Clusters that cannot be tested are skipped with a notice; the rest of the
    run continues.

    Args:
        pb_df: Pseudobulk counts (genes x (cluster, sample)), already filtered
        sample_info: Column metadata from create_pseudobulk
        params: Analysis parameter dict
        method: "qlf" or "deseq2" (defaults to params["de_method"])

    Returns:
        Tuple of (DE results, {cluster: reason} for skipped clusters, sample PCA coordinates)
    """
    print("Running cluster-wise pseudobulk differential expression...")

    results = []
    pca_frames = []
    skipped = {}

    for cluster in sorted(sample_info["cluster"].unique()):
        try:
            res, coords = run_de_for_cluster(pb_df, sample_info, cluster, params, method=method)
        except (DegenerateDesignError, ModelFitError) as exc:
            print(f"⚠️  Skipping {cluster}: {exc}")
            skipped[cluster] = str(exc)
            continue
        results.append(res)
        pca_frames.append(coords)

    if results:
        de_results = pd.concat(results, ignore_index=True)
    else:
        de_results = pd.DataFrame(
            {col: pd.Series(dtype=float) for col in ["logFC", "logCPM", "stat", "P.Value", "adj.P.Val"]}
        )
        de_results.insert(0, "cluster", pd.Series(dtype=str))
        de_results.insert(0, "gene", pd.Series(dtype=str))

    de_results = add_global_fdr(de_results)
    de_results = flag_significant(
        de_results, params["sig_padj_threshold"], params["sig_logfc_threshold"]
    )
    ordered = RESULT_COLUMNS + [c for c in de_results.columns if c not in RESULT_COLUMNS]
    de_results = de_results[ordered]

    sample_pca_df = pd.concat(pca_frames, ignore_index=True) if pca_frames else pd.DataFrame()

    n_sig = int(de_results["significant"].sum())
    print(f"\n✓ Tested {len(results)} clusters, skipped {len(skipped)}")
    print(
        f"  {n_sig} significant (cluster, gene) pairs "
        f"(global FDR < {params['sig_padj_threshold']}, |logFC| > {params['sig_logfc_threshold']})"
    )

    return de_results, skipped, sample_pca_df


def plot_de_summary(de_results, save_path=None):
    """Heatmap of significant up/down gene counts per cluster

    Returns:
        DataFrame with counts summary
    """
    print("Plotting DE summary...")

    counts = (
        de_results.groupby("cluster")[["upregulated", "downregulated"]]
        .sum()
        .astype(int)
    )
    if counts.empty:
        print("No DE results to summarize")
        return counts

    fig, ax = plt.subplots(figsize=(5, max(3, 0.4 * len(counts))))
    sns.heatmap(counts, annot=True, fmt="d", cmap="Blues", ax=ax)
    ax.set_title("Significant genes per cluster (KO vs WT)")
    ax.set_xlabel("")
    ax.set_ylabel("Cluster")
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()

    return counts


def plot_volcano(de_results, cluster, fc_threshold=1.2, pval_threshold=0.01, save_path=None):
    """Plot volcano plot for one cluster using the global FDR

    Args:
        de_results: DE results DataFrame
        cluster: Cluster to plot
        fc_threshold: Log2FC threshold for coloring
        pval_threshold: Global adjusted p-value threshold for coloring
        save_path: Path to save figure
    """
    ct_results = de_results[de_results["cluster"] == cluster].copy()

    if len(ct_results) == 0:
        print(f"No results for {cluster}")
        return

    ct_results["neg_log10_pval"] = -np.log10(ct_results["P.Value"].clip(lower=1e-300))

    ct_results["category"] = "Not significant"
    ct_results.loc[ct_results["upregulated"], "category"] = "Upregulated"
    ct_results.loc[ct_results["downregulated"], "category"] = "Downregulated"

    fig, ax = plt.subplots(figsize=(8, 7))

    ns_data = ct_results[ct_results["category"] == "Not significant"]
    ax.scatter(ns_data["logFC"], ns_data["neg_log10_pval"], c="gray", alpha=0.5, s=15, label="Not significant")

    for category, color in (("Upregulated", "red"), ("Downregulated", "blue")):
        data = ct_results[ct_results["category"] == category]
        if len(data) > 0:
            ax.scatter(
                data["logFC"], data["neg_log10_pval"], c=color, alpha=0.7, s=25,
                label=f"{category} (n={len(data)})",
            )

    ax.axvline(fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.axvline(-fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)

    ax.set_xlabel("Log2 Fold Change (KO vs WT)", fontsize=12)
    ax.set_ylabel("-Log10(P-value)", fontsize=12)
    ax.set_title(f"{cluster}\nglobal FDR < {pval_threshold}", fontsize=14, fontweight="bold")
    ax.legend(loc="best")
    ax.grid(alpha=0.3)

    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()


def plot_sample_pca(sample_pca_df, save_path=None):
    """Scatter of pseudobulk sample PCA per cluster, colored by phenotype"""
    if sample_pca_df.empty or "PC2" not in sample_pca_df:
        print("No sample PCA coordinates to plot")
        return

    clusters = sorted(sample_pca_df["cluster"].unique())
    n_cols = min(4, len(clusters))
    n_rows = math.ceil(len(clusters) / n_cols)
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(4 * n_cols, 3.5 * n_rows), squeeze=False)

    for ax, cluster in zip(axes.flat, clusters):
        data = sample_pca_df[sample_pca_df["cluster"] == cluster]
        sns.scatterplot(
            data=data, x="PC1", y="PC2", hue="phenotype", hue_order=PHENOTYPE_ORDER,
            ax=ax, s=60,
        )
        for _, row in data.iterrows():
            ax.annotate(row["sample"], (row["PC1"], row["PC2"]), fontsize=7)
        ax.set_title(str(cluster))

    for ax in list(axes.flat)[len(clusters):]:
        ax.axis("off")

    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()
