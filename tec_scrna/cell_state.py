#!/usr/bin/env python3
"""
Cell-state abundance analysis
Tests whether KO shifts the fraction of cells in each cluster, with a binomial
mixed model that treats sample as a random effect
"""

import warnings

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from scipy import stats
from statsmodels.genmod.bayes_mixed_glm import BinomialBayesMixedGLM

from tec_scrna.differential_expression import bh_adjust
from tec_scrna.hto_demux import PHENOTYPE_ORDER

OR_COLUMNS = ["cluster", "logOR", "OR", "SE", "z", "P.Value", "adj.P.Val"]


def cluster_sample_counts(obs, cluster_key="leiden", sample_key="sample", phenotype_key="phenotype"):
    """Cell counts per cluster and sample

    Returns:
        Tuple of (cluster x sample count table, cells per sample, sample -> phenotype)
    """
    for col in (cluster_key, sample_key, phenotype_key):
        if col not in obs:
            raise ValueError(f"Column '{col}' not found in obs")

    labelled = obs[[cluster_key, sample_key, phenotype_key]].dropna()
    counts = pd.crosstab(
        labelled[cluster_key].astype(str), labelled[sample_key].astype(str)
    )
    totals = counts.sum(axis=0)

    sample_pheno = (
        labelled.assign(**{sample_key: labelled[sample_key].astype(str)})
        .groupby(sample_key, observed=True)[phenotype_key]
        .agg(lambda s: s.astype(str).iloc[0])
    )
    return counts, totals, sample_pheno.reindex(counts.columns)


def fit_cluster_odds_ratio(membership, phenotype, sample, fe_prior_sd=10.0, vc_prior_sd=1.0, seed=0):
    """Fit a binomial mixed model for membership of cells in one cluster

    The fixed effect is phenotype (KO vs WT reference) and each sample gets a
    random intercept. The posterior is approximated at its mode (Laplace), so
    the standard error of the phenotype coefficient comes from the full
    covariance and absorbs the between-sample spread.

    Args:
        membership: 0/1 per cell, 1 if the cell is in the cluster
        phenotype: Phenotype per cell
        sample: Sample label per cell
        fe_prior_sd: Prior SD of the fixed effects
        vc_prior_sd: Prior SD of the log random-effect SD
        seed: Seed for the random-effect starting values

    Returns:
        Tuple of (dict with logOR, SE, z, P.Value, sample_sd, list of convergence problems)
    """
    data = pd.DataFrame(
        {
            "member": np.asarray(membership, dtype=float),
            "phenotype": pd.Categorical(np.asarray(phenotype, dtype=str), categories=PHENOTYPE_ORDER),
            "sample": np.asarray(sample, dtype=str),
        }
    )

    model = BinomialBayesMixedGLM.from_formula(
        "member ~ phenotype",
        {"sample": "0 + C(sample)"},
        data,
        vcp_p=vc_prior_sd,
        fe_p=fe_prior_sd,
    )

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        result = model.fit_map(rng=seed)

    issues = [str(w.message) for w in caught if "converge" in str(w.message).lower()]
    optim = result.optim_retvals
    if optim is not None and not optim.success and not issues:
        issues.append(f"optimizer stopped: {optim.message}")

    ko_idx = model.exog_names.index("phenotype[T.KO]")
    log_or = float(result.params[ko_idx])
    se = float(np.sqrt(np.diag(np.asarray(result.cov_params()))[ko_idx]))
    z = log_or / se
    pvalue = 2 * stats.norm.sf(abs(z))

    fit = {
        "logOR": log_or,
        "SE": se,
        "z": z,
        "P.Value": pvalue,
        "sample_sd": float(np.exp(result.vcp_mean[0])),
    }
    return fit, issues


def run_odds_ratio_analysis(obs, params, cluster_key="leiden", sample_key="sample", phenotype_key="phenotype"):
    """Per-cluster KO vs WT odds ratios of cluster membership

    Clusters whose fit does not converge, or gives no finite estimate, are
    reported in the failed mapping and left out of the table; the rest
    continue. P-values are BH-adjusted across the reported clusters.

    Args:
        obs: Cell metadata (singlets) with cluster, sample and phenotype columns
        params: Analysis parameter dict

    Returns:
        Tuple of (odds-ratio table, {cluster: reason} for failed clusters)
    """
    print("Running cell-state odds-ratio analysis...")

    counts, totals, sample_pheno = cluster_sample_counts(obs, cluster_key, sample_key, phenotype_key)
    missing = set(PHENOTYPE_ORDER) - set(sample_pheno)
    if missing:
        raise ValueError(f"No samples with phenotype {sorted(missing)}")

    labelled = obs[[cluster_key, sample_key, phenotype_key]].dropna()
    clusters = labelled[cluster_key].astype(str).to_numpy()
    phenotype = labelled[phenotype_key].astype(str).to_numpy()
    sample = labelled[sample_key].astype(str).to_numpy()

    proportions = counts.div(totals, axis=1)

    rows = []
    failed = {}
    for cluster in counts.index:
        membership = (clusters == cluster).astype(float)
        if membership.all():
            failed[cluster] = "cluster contains every cell"
            print(f"  ✗ {cluster}: {failed[cluster]}")
            continue

        try:
            fit, issues = fit_cluster_odds_ratio(
                membership,
                phenotype,
                sample,
                fe_prior_sd=params["or_fe_prior_sd"],
                vc_prior_sd=params["or_vc_prior_sd"],
                seed=params["random_seed"],
            )
        except np.linalg.LinAlgError as exc:
            failed[cluster] = f"singular posterior curvature: {exc}"
            print(f"  ✗ {cluster}: {failed[cluster]}")
            continue
        if issues:
            failed[cluster] = "; ".join(issues)
            print(f"  ✗ {cluster}: {failed[cluster]}")
            continue
        if not np.isfinite(fit["z"]):
            failed[cluster] = "non-finite estimate"
            print(f"  ✗ {cluster}: {failed[cluster]}")
            continue

        row = {"cluster": cluster, **fit}
        for level in PHENOTYPE_ORDER:
            samples = sample_pheno.index[sample_pheno == level]
            row[f"mean_prop_{level}"] = proportions.loc[cluster, samples].mean()
        rows.append(row)
        print(
            f"  {cluster}: logOR {fit['logOR']:+.3f} (SE {fit['SE']:.3f}, "
            f"sample SD {fit['sample_sd']:.2f}, p={fit['P.Value']:.2e})"
        )

    if rows:
        or_df = pd.DataFrame(rows)
    else:
        or_df = pd.DataFrame(columns=OR_COLUMNS[:-1])

    or_df["OR"] = np.exp(or_df["logOR"].astype(float))
    or_df["adj.P.Val"] = bh_adjust(or_df["P.Value"]).to_numpy()
    ordered = OR_COLUMNS + [c for c in or_df.columns if c not in OR_COLUMNS]
    or_df = or_df[ordered]

    print(f"✓ Odds ratios for {len(or_df)} clusters, {len(failed)} failed")
    return or_df, failed


def plot_odds_ratios(or_df, save_path=None):
    """Forest plot of per-cluster log odds ratios with 95% intervals"""
    if or_df.empty:
        print("No odds ratios to plot")
        return

    data = or_df.sort_values("logOR").reset_index(drop=True)
    half_width = stats.norm.ppf(0.975) * data["SE"]
    colors = np.where(data["adj.P.Val"] < 0.05, "#d7301f", "#525252")

    fig, ax = plt.subplots(figsize=(6, max(3, 0.4 * len(data))))
    ax.errorbar(
        data["logOR"], np.arange(len(data)), xerr=half_width, fmt="none",
        ecolor="gray", capsize=3,
    )
    ax.scatter(data["logOR"], np.arange(len(data)), c=colors, zorder=3)
    ax.axvline(0, color="black", linestyle="--", linewidth=1)
    ax.set_yticks(np.arange(len(data)))
    ax.set_yticklabels(data["cluster"])
    ax.set_xlabel("log odds ratio (KO vs WT)")
    ax.set_ylabel("Cluster")
    ax.set_title("Cluster abundance shift")
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()
