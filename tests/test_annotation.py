import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scanpy as sc
from scipy import sparse

from tec_scrna.annotation import (
    assign_celltypes_by_cluster_scores,
    score_gene_signatures,
    summarize_signature_scores,
)


@pytest.fixture
def marker_adata():
    """Two clusters of 150 cells; TypeA genes high in cluster 0, TypeB genes high in cluster 1"""
    rng = np.random.default_rng(11)
    n_cells, n_bg = 300, 200
    background = rng.poisson(2.0, size=(n_cells, n_bg))
    type_a = rng.poisson(1.0, size=(n_cells, 5))
    type_b = rng.poisson(1.0, size=(n_cells, 5))
    type_a[:150] = rng.poisson(15.0, size=(150, 5))
    type_b[150:] = rng.poisson(15.0, size=(150, 5))
    X = np.hstack([background, type_a, type_b]).astype(np.float32)

    genes = [f"Gene{i}" for i in range(n_bg)] + [f"A{i}" for i in range(5)] + [f"B{i}" for i in range(5)]
    samples = np.tile(["WT1", "KO1", "WT2", "KO2"], n_cells // 4)
    obs = pd.DataFrame(
        {
            "leiden": pd.Categorical(["0"] * 150 + ["1"] * 150),
            "sample": pd.Categorical(samples),
            "phenotype": pd.Categorical(
                ["WT" if s.startswith("WT") else "KO" for s in samples], categories=["WT", "KO"]
            ),
        },
        index=[f"cell{i}" for i in range(n_cells)],
    )
    adata = ad.AnnData(X=sparse.csr_matrix(X), obs=obs, var=pd.DataFrame(index=genes))
    sc.pp.normalize_total(adata, target_sum=1e4)
    sc.pp.log1p(adata)
    adata.raw = adata
    return adata


def test_signature_scores_skip_missing_sets(marker_adata):
    signatures = {
        "TypeA_program": ["A0", "A1", "A2", "A3", "A4", "NotAGene"],
        "Absent": ["Nope1", "Nope2"],
    }
    names = score_gene_signatures(marker_adata, signatures, random_state=0)
    assert names == ["TypeA_program_score"]
    assert "Absent_score" not in marker_adata.obs

    scores = marker_adata.obs["TypeA_program_score"]
    in_a = (marker_adata.obs["leiden"] == "0").values
    assert scores[in_a].mean() > scores[~in_a].mean() + 1


def test_signature_summary_is_long_format(marker_adata):
    names = score_gene_signatures(marker_adata, {"TypeB_program": ["B0", "B1", "B2"]})
    summary = summarize_signature_scores(marker_adata, names, groupby="leiden")
    assert list(summary.columns) == ["cluster", "sample", "phenotype", "signature", "mean_score"]
    assert len(summary) == 2 * 4
    b_means = summary.groupby("cluster")["mean_score"].mean()
    assert b_means["1"] > b_means["0"]


def test_cluster_level_assignment(marker_adata):
    markers = {
        "TypeA": ["A0", "A1", "A2", "A3", "A4"],
        "TypeB": ["B0", "B1", "B2", "B3", "B4"],
        "Ghost": ["Missing1"],
    }
    scores = assign_celltypes_by_cluster_scores(marker_adata, markers, cluster_key="leiden", margin=0.05)
    assert scores.loc["0", "celltype"] == "TypeA"
    assert scores.loc["1", "celltype"] == "TypeB"
    labels = marker_adata.obs.groupby("leiden", observed=True)["celltype"].first()
    assert labels.astype(str).to_dict() == {"0": "TypeA", "1": "TypeB"}


def test_assignment_unassigned_when_margin_not_met(marker_adata):
    markers = {"TypeA": ["A0", "A1"], "TypeA_copy": ["A2", "A3"]}
    scores = assign_celltypes_by_cluster_scores(marker_adata, markers, margin=5.0)
    assert (scores["celltype"] == "Unassigned").all()


def test_assignment_needs_two_marker_sets(marker_adata):
    with pytest.raises(ValueError, match="two scorable"):
        assign_celltypes_by_cluster_scores(marker_adata, {"TypeA": ["A0"], "Ghost": ["Nope"]})
