import numpy as np
import pandas as pd
import pytest
from inmoose.edgepy import DGEList

from tec_scrna.differential_expression import (
    RESULT_COLUMNS,
    add_global_fdr,
    calc_norm_factors,
    check_design,
    filter_by_expr,
    flag_significant,
    log_cpm,
    run_clusterwise_de,
    run_de_for_cluster,
)
from tec_scrna.errors import DegenerateDesignError
from tec_scrna.pseudobulk import create_pseudobulk, filter_clusters_by_cell_count

from conftest import SAMPLES


def make_pseudobulk(clusters, n_genes=150, effect=None, seed=0, dispersion=0.05):
    """Negative binomial pseudobulk matrix for the given {cluster: [samples]}"""
    rng = np.random.default_rng(seed)
    base = rng.uniform(100, 600, size=n_genes)
    columns = []
    data = []
    for cluster, samples in clusters.items():
        for sample in samples:
            mu = base.copy()
            if effect and cluster in effect and sample.startswith("KO"):
                gene, fold = effect[cluster]
                mu[gene] *= fold
            size = 1.0 / dispersion
            data.append(rng.negative_binomial(size, size / (size + mu)))
            columns.append((cluster, sample))
    index = pd.MultiIndex.from_tuples(columns, names=["cluster", "sample"])
    pb_df = pd.DataFrame(
        np.array(data, dtype=float).T,
        index=[f"Gene{i}" for i in range(n_genes)],
        columns=index,
    )
    sample_info = pd.DataFrame(
        {
            "cluster": index.get_level_values("cluster"),
            "sample": index.get_level_values("sample"),
            "phenotype": ["KO" if s.startswith("KO") else "WT" for _, s in columns],
            "n_cells": 150,
        },
        index=index,
    )
    return pb_df, sample_info


def test_filter_by_expr():
    counts = pd.DataFrame(
        {
            "s1": [100, 0, 5, 1000],
            "s2": [120, 0, 0, 1000],
            "s3": [90, 30, 0, 1000],
            "s4": [110, 0, 0, 1000],
        },
        index=["kept", "one_sample", "too_low", "high"],
    )
    keep = filter_by_expr(counts, min_count=2, min_total_count=10)
    assert keep.to_dict() == {"kept": True, "one_sample": False, "too_low": False, "high": True}


def test_norm_factors_for_proportional_libraries():
    rng = np.random.default_rng(0)
    base = rng.uniform(50, 500, size=300)
    counts = np.column_stack([base * 1, base * 2, base * 3, base * 0.5])
    factors = calc_norm_factors(counts)
    np.testing.assert_allclose(factors, 1.0, atol=1e-8)


def test_norm_factors_geometric_mean_one_and_composition():
    rng = np.random.default_rng(1)
    base = rng.uniform(50, 500, size=500)
    shifted = base.copy()
    shifted[:50] *= 20
    counts = np.column_stack([base, base, shifted, base])
    factors = calc_norm_factors(counts)
    assert np.exp(np.mean(np.log(factors))) == pytest.approx(1.0)
    # a few dominant genes inflate the library, so its effective size shrinks
    assert factors[2] < factors[0]
    assert factors[0] == pytest.approx(factors[1])


def test_log_cpm_offset_follows_smallest_positive_cpm():
    counts = pd.DataFrame({"a": [0.0, 10.0, 990.0], "b": [5.0, 5.0, 990.0]})
    lib = counts.sum(axis=0).to_numpy()
    logcpm = log_cpm(counts, lib)
    cpm = counts / lib * 1e6
    offset = cpm.to_numpy()[cpm.to_numpy() > 0].min() / 2
    assert logcpm.loc[0, "a"] == pytest.approx(np.log2(offset))
    assert np.isfinite(logcpm.to_numpy()).all()


def test_qlf_detects_injected_effect(params):
    pb_df, sample_info = make_pseudobulk({"A": SAMPLES}, effect={"A": (0, 8.0)}, seed=11)
    res, _ = run_de_for_cluster(pb_df, sample_info, "A", params, method="qlf")
    res = res.set_index("gene")
    assert res.loc["Gene0", "logFC"] == pytest.approx(3.0, abs=0.6)
    assert res.loc["Gene0", "adj.P.Val"] < 0.01
    assert (res["dispersion"] > 0).all()
    assert (res["ql_dispersion"] > 0).all()
    assert np.isfinite(res["stat"]).all()


@pytest.mark.parametrize(
    "phenotype, message",
    [
        (["WT", "WT", "WT"], "only phenotype"),
        (["WT", "WT", "KO"], "samples per phenotype"),
        (["WT", "KO", "XX", "KO"], "unexpected"),
    ],
)
def test_check_design_degenerate(phenotype, message):
    with pytest.raises(DegenerateDesignError, match=message):
        check_design(phenotype, min_samples_per_group=2)


def test_adjusted_pvalues_dominate_raw(params):
    pb_df, sample_info = make_pseudobulk(
        {"A": SAMPLES, "B": SAMPLES}, effect={"B": (3, 5.0)}, seed=4
    )
    de, skipped, _ = run_clusterwise_de(pb_df, sample_info, params)
    assert skipped == {}
    valid = de["P.Value"].notna()
    assert (de.loc[valid, "adj.P.Val"] >= de.loc[valid, "P.Value"] - 1e-12).all()
    assert (de.loc[valid, "adj.P.Val.global"] >= de.loc[valid, "P.Value"] - 1e-12).all()
    assert list(de.columns[: len(RESULT_COLUMNS)]) == RESULT_COLUMNS


def test_significance_rule():
    de = pd.DataFrame(
        {
            "gene": ["g1", "g2", "g3", "g4", "g5"],
            "cluster": "A",
            "logFC": [2.0, -2.0, 1.0, 2.0, np.nan],
            "P.Value": [1e-8, 1e-8, 1e-8, 0.5, np.nan],
        }
    )
    de = flag_significant(add_global_fdr(de), padj_threshold=0.01, logfc_threshold=1.2)
    assert de["significant"].tolist() == [True, True, False, False, False]
    assert de["upregulated"].tolist() == [True, False, False, False, False]
    assert de["downregulated"].tolist() == [False, True, False, False, False]
    expected = (de["adj.P.Val.global"] < 0.01) & (de["logFC"].abs() > 1.2)
    assert (de["significant"] == expected).all()


def test_degenerate_cluster_is_skipped(params):
    pb_df, sample_info = make_pseudobulk(
        {"A": SAMPLES, "wt_only": ["WT1", "WT2", "WT3"]}, seed=6
    )
    de, skipped, pca = run_clusterwise_de(pb_df, sample_info, params)
    assert "wt_only" in skipped
    assert set(de["cluster"]) == {"A"}
    assert set(pca["cluster"]) == {"A"}


def test_sample_pca_coordinates(params):
    pb_df, sample_info = make_pseudobulk({"A": SAMPLES}, seed=8)
    _, coords = run_de_for_cluster(pb_df, sample_info, "A", params)
    assert list(coords["sample"]) == SAMPLES
    assert {"PC1", "PC2", "phenotype", "cluster"} <= set(coords.columns)
    np.testing.assert_allclose(coords["PC1"].mean(), 0.0, atol=1e-8)


def test_three_cluster_end_to_end(three_cluster_adata, params):
    pb_df, sample_info = create_pseudobulk(three_cluster_adata)
    pb_f, info_f, medians = filter_clusters_by_cell_count(
        pb_df, sample_info, params["min_cells_per_cluster_sample_median"], samples=SAMPLES
    )
    assert medians["C"] == 50
    assert set(info_f["cluster"]) == {"A", "B"}

    de, skipped, _ = run_clusterwise_de(pb_f, info_f, params)
    assert skipped == {}
    assert set(de["cluster"]) == {"A", "B"}
    assert not de.loc[de["cluster"] == "A", "significant"].any()

    b = de[de["cluster"] == "B"].set_index("gene")
    assert b.loc["Gene0", "significant"]
    assert b.loc["Gene0", "upregulated"]
    assert b.loc["Gene0", "logFC"] == pytest.approx(2.0, abs=0.3)
    assert b.drop(index="Gene0")["significant"].sum() == 0


def test_deseq2_recovers_direction(params):
    pb_df, sample_info = make_pseudobulk({"A": SAMPLES}, effect={"A": (0, 8.0)}, seed=9)
    res, _ = run_de_for_cluster(pb_df, sample_info, "A", params, method="deseq2")
    gene0 = res.set_index("gene").loc["Gene0"]
    assert gene0["logFC"] > 2
    assert gene0["adj.P.Val"] < 0.01


def test_cluster_without_expressed_genes_is_skipped(params):
    pb_df, sample_info = make_pseudobulk({"A": SAMPLES, "sparse": SAMPLES}, seed=12)
    sparse_cols = pb_df.columns.get_level_values("cluster") == "sparse"
    pb_df.loc[:, sparse_cols] = 1.0

    de, skipped, _ = run_clusterwise_de(pb_df, sample_info, params)
    assert "no genes passed expression filtering" in skipped["sparse"]
    assert set(de["cluster"]) == {"A"}


def test_cluster_with_failed_fit_is_skipped(params, monkeypatch):
    pb_df, sample_info = make_pseudobulk({"A": SAMPLES, "B": SAMPLES}, seed=13)
    original = DGEList.estimateGLMCommonDisp
    calls = []

    def estimate_first_fails(self, *args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            return self
        return original(self, *args, **kwargs)

    monkeypatch.setattr(DGEList, "estimateGLMCommonDisp", estimate_first_fails)

    de, skipped, _ = run_clusterwise_de(pb_df, sample_info, params)
    assert list(skipped) == ["A"]
    assert "dispersion" in skipped["A"]
    assert set(de["cluster"]) == {"B"}
    assert de["P.Value"].notna().all()
