import json

import numpy as np
import pandas as pd
import pytest
import seaborn

from gexkit.limma import wrap_limma
from gexkit.linear_models import (
    contrast_matrix,
    contrasts_fit,
    design_matrix,
    ebayes,
    fit_f_dist,
    lm_fit,
    top_table,
    trigamma_inverse,
)


def test_design_matrix_cell_means_and_covariates(sample_table):
    design = design_matrix(sample_table, "Sample_Group", ["batch"])
    assert list(design.columns) == ["ctrl", "other", "treat", "batchb2"]
    assert design["treat"].tolist() == [0, 0, 0, 1, 1, 1, 0, 0, 0]
    assert design.sum(axis=1).ge(1).all()


def test_contrast_matrix_simple_and_nested():
    contrasts = contrast_matrix(["treat-ctrl", "(treat-ctrl)-(other-ctrl)"],
                                ["ctrl", "other", "treat"])
    assert contrasts["treat-ctrl"].tolist() == [-1, 0, 1]
    assert contrasts["(treat-ctrl)-(other-ctrl)"].tolist() == [0, -1, 1]
    with pytest.raises(ValueError, match="not in design"):
        contrast_matrix(["treat-nothing"], ["ctrl", "treat"])


def test_trigamma_inverse_inverts_trigamma():
    from scipy.special import polygamma
    for y in (0.5, 2.0, 10.0):
        assert trigamma_inverse(float(polygamma(1, y))) == pytest.approx(y, rel=1e-6)


def test_fit_f_dist_recovers_prior(rng):
    s2 = 0.5 * rng.chisquare(df=4, size=5000) / 4
    s2_prior, df_prior = fit_f_dist(s2, np.full(5000, 4.0))
    assert s2_prior == pytest.approx(0.5, rel=0.1)
    # Variances without extra dispersion.
    assert df_prior > 20


def test_moderated_t_detects_shift(log_expression_set):
    eset = log_expression_set
    design = design_matrix(eset.pheno_data, "Sample_Group")
    contrasts = contrast_matrix(["treat-ctrl"], design.columns)
    fit = ebayes(contrasts_fit(lm_fit(eset.exprs, design), contrasts))
    table = top_table(fit, "treat-ctrl", "BH")

    assert list(table.columns) == ["logFC", "AveExpr", "t", "P.Value", "adj.P.Val"]
    assert table["P.Value"].is_monotonic_increasing
    top = set(table.index[:80])
    assert len(top & set(eset.exprs.index[:80])) >= 70
    assert table.loc["ILMN_0", "logFC"] == pytest.approx(3.0, abs=1.5)
    assert (table["adj.P.Val"] >= table["P.Value"]).all()


def test_lm_fit_rejects_confounded_design(log_expression_set, sample_table):
    pheno = sample_table.assign(copy=sample_table["Sample_Group"])
    design = design_matrix(pheno, "Sample_Group", ["copy"])
    with pytest.raises(ValueError, match="full rank"):
        lm_fit(log_expression_set.exprs, design)


def test_wrap_limma_writes_outputs(tmp_path, log_expression_set):
    res = wrap_limma(
        log_expression_set,
        ["treat-ctrl", "(treat-ctrl)-(other-ctrl)"],
        p_value_threshold=0.05,
        fc_threshold=1,
        projectfolder=tmp_path,
        projectname="arr",
        symbol_column="SYMBOL",
        venn_comparisons=["treat-ctrl", "(treat-ctrl)-(other-ctrl)"],
    )

    filt = res["DEgenes"]["treat-ctrl"]
    unfilt = res["DEgenes_unfilt"]["treat-ctrl"]
    assert len(unfilt) == 400
    assert 0 < len(filt) < 400
    assert (filt["adj.P.Val"] <= 0.05).all()
    assert (filt["logFC"].abs() >= 1).all()
    assert unfilt.columns[0] == "id"
    assert unfilt["SYMBOL"].iloc[0].startswith("GENE")

    assert (tmp_path / "limma_filtered" / "arr_treat-ctrl.txt").exists()
    assert (tmp_path / "limma_unfiltered" / "arr_treat-ctrl_unfilt.txt").exists()
    assert (tmp_path / "Volcano_plots" / "Volcano_arr_treat-ctrl.png").exists()
    assert (tmp_path / "MA_plots" / "MA_plot_arr_treat-ctrl.png").exists()
    assert (tmp_path / "Heatmaps" / "Heatmap_arr_treat-ctrl.png").exists()
    assert (tmp_path / "arr_pca_plot_all_genes.png").exists()
    assert (tmp_path / "Venn_Diagram_arr_Vennset1.png").exists()

    record = json.loads((tmp_path / "arr_run_info_limma.json").read_text())
    assert record["parameters"]["comparisons"] == ["treat-ctrl", "(treat-ctrl)-(other-ctrl)"]


def test_wrap_limma_rejects_unknown_group(tmp_path, log_expression_set):
    with pytest.raises(ValueError, match="not found"):
        wrap_limma(log_expression_set, ["treat-none"], projectfolder=tmp_path)


def test_wrap_limma_requires_expression_set(tmp_path):
    with pytest.raises(TypeError, match="eset is not of class ExpressionSet"):
        wrap_limma(pd.DataFrame(), ["a-b"], projectfolder=tmp_path)


def test_wrap_limma_heatmap_colour_map_and_group_colours(tmp_path, monkeypatch,
                                                         log_expression_set):
    seen = []
    clustermap = seaborn.clustermap

    def recording_clustermap(data, **kwargs):
        seen.append(kwargs)
        return clustermap(data, **kwargs)

    monkeypatch.setattr(seaborn, "clustermap", recording_clustermap)
    wrap_limma(
        log_expression_set, ["treat-ctrl"], fc_threshold=1,
        projectfolder=tmp_path,
        color_palette="Blues",
        group_palette=["#111111", "#222222", "#333333"],
    )

    assert len(seen) == 1
    assert seen[0]["cmap"] == "Blues"
    # Levels are sorted: ctrl, other, treat.
    assert set(seen[0]["col_colors"]) == {"#111111", "#333333"}


def test_wrap_limma_heatmap_samples_must_match_expression_columns(tmp_path,
                                                                  log_expression_set):
    eset = log_expression_set.copy()
    eset.pheno_data = eset.pheno_data.assign(alias=[f"X{i}" for i in range(9)])
    with pytest.raises(ValueError, match="matches the columns"):
        wrap_limma(eset, ["treat-ctrl"], fc_threshold=1, sample_column="alias",
                   projectfolder=tmp_path)
