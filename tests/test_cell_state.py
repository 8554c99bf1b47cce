import warnings

import numpy as np
import pandas as pd
import pytest
from statsmodels.genmod.bayes_mixed_glm import BinomialBayesMixedGLM
from statsmodels.stats.multitest import multipletests
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from tec_scrna.cell_state import cluster_sample_counts, run_odds_ratio_analysis

from conftest import SAMPLES


@pytest.fixture
def shifted_obs():
    """Cluster A expands in KO, cluster C contracts, cluster B is steady"""
    design = {
        "A": {"WT": 100, "KO": 300},
        "B": {"WT": 300, "KO": 300},
        "C": {"WT": 200, "KO": 80},
    }
    rows = []
    for sample in SAMPLES:
        phenotype = "KO" if sample.startswith("KO") else "WT"
        for cluster, per_pheno in design.items():
            rows += [(cluster, sample, phenotype)] * per_pheno[phenotype]
    obs = pd.DataFrame(rows, columns=["leiden", "sample", "phenotype"])
    obs.index = [f"cell{i}" for i in range(len(obs))]
    return obs


def test_cluster_sample_counts(shifted_obs):
    counts, totals, sample_pheno = cluster_sample_counts(shifted_obs)
    assert counts.loc["A", "KO1"] == 300
    assert counts.loc["C", "WT2"] == 200
    assert totals["WT1"] == 600
    assert sample_pheno["KO3"] == "KO"


def test_odds_ratio_direction(shifted_obs, params):
    or_df, failed = run_odds_ratio_analysis(shifted_obs, params)
    res = or_df.set_index("cluster")
    assert set(res.index) | set(failed) == {"A", "B", "C"}

    assert res.loc["A", "logOR"] > 0.5
    assert res.loc["C", "logOR"] < -0.5
    assert res.loc["A", "OR"] == pytest.approx(np.exp(res.loc["A", "logOR"]))
    assert res.loc["A", "mean_prop_KO"] > res.loc["A", "mean_prop_WT"]
    assert res.loc["A", "P.Value"] < 0.01


def test_odds_ratio_bh_is_monotone(shifted_obs, params):
    or_df, _ = run_odds_ratio_analysis(shifted_obs, params)
    assert (or_df["adj.P.Val"] >= or_df["P.Value"] - 1e-12).all()
    ordered = or_df.sort_values("P.Value")
    assert ordered["adj.P.Val"].is_monotonic_increasing


def test_odds_ratio_needs_both_phenotypes(shifted_obs, params):
    wt_only = shifted_obs[shifted_obs["phenotype"] == "WT"]
    with pytest.raises(ValueError, match="No samples with phenotype"):
        run_odds_ratio_analysis(wt_only, params)


def obs_from_proportions(proportions, cells_per_sample=1000):
    """Two clusters per sample: A takes the given share of cells, B the rest"""
    rows = []
    for sample, share in proportions.items():
        phenotype = "KO" if sample.startswith("KO") else "WT"
        n_a = int(round(share * cells_per_sample))
        rows += [("A", sample, phenotype)] * n_a
        rows += [("B", sample, phenotype)] * (cells_per_sample - n_a)
    obs = pd.DataFrame(rows, columns=["leiden", "sample", "phenotype"])
    obs.index = [f"cell{i}" for i in range(len(obs))]
    return obs


def test_sample_spread_widens_standard_error(params):
    # small KO shift buried in large between-sample spread
    obs = obs_from_proportions(
        {"WT1": 0.20, "WT2": 0.30, "WT3": 0.40, "KO1": 0.25, "KO2": 0.35, "KO3": 0.45}
    )
    or_df, failed = run_odds_ratio_analysis(obs, params)
    assert failed == {}
    res = or_df.set_index("cluster")

    pooled = obs.assign(member=obs["leiden"] == "A").groupby("phenotype")["member"].agg(["sum", "count"])
    a, n1 = pooled.loc["KO"]
    c, n0 = pooled.loc["WT"]
    cell_level_se = np.sqrt(1 / a + 1 / (n1 - a) + 1 / c + 1 / (n0 - c))

    assert res.loc["A", "logOR"] > 0
    assert res.loc["A", "SE"] > 2 * cell_level_se
    assert res.loc["A", "P.Value"] > 0.05
    assert res.loc["A", "sample_sd"] > 0.1


def test_non_converged_cluster_is_reported_and_excluded(shifted_obs, params, monkeypatch):
    original = BinomialBayesMixedGLM.fit_map
    calls = []

    def first_fit_fails(self, *args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            warnings.warn("Laplace fitting did not converge, |gradient|=1.0", ConvergenceWarning)
        return original(self, *args, **kwargs)

    monkeypatch.setattr(BinomialBayesMixedGLM, "fit_map", first_fit_fails)

    or_df, failed = run_odds_ratio_analysis(shifted_obs, params)
    assert list(failed) == ["A"]
    assert "did not converge" in failed["A"]
    assert set(or_df["cluster"]) == {"B", "C"}
    np.testing.assert_allclose(
        or_df["adj.P.Val"], multipletests(or_df["P.Value"], method="fdr_bh")[1]
    )


def test_cluster_with_every_cell_is_reported(params):
    obs = obs_from_proportions({s: 1.0 for s in SAMPLES}, cells_per_sample=50)
    or_df, failed = run_odds_ratio_analysis(obs, params)
    assert failed == {"A": "cluster contains every cell"}
    assert or_df.empty
    assert list(or_df.columns[:7]) == ["cluster", "logOR", "OR", "SE", "z", "P.Value", "adj.P.Val"]
