import json

import numpy as np
import pandas as pd
import pytest
from statsmodels.stats.multitest import multipletests

from gexkit.containers import CountDataSet
from gexkit.deseq import wrap_deseq2


@pytest.fixture
def deseq_result(tmp_path, count_dataset):
    res = wrap_deseq2(
        count_dataset,
        ["treat-ctrl", "other-ctrl"],
        min_rowsum=10,
        p_value_threshold=0.05,
        fc_threshold=1,
        projectfolder=tmp_path,
        projectname="study",
        symbol_column="SYMBOL",
        add_anno_columns=["biotype"],
        venn_comparisons={"all": ["treat-ctrl", "other-ctrl"]},
    )
    return res, tmp_path


def test_wrap_deseq2_finds_simulated_genes(deseq_result):
    res, _ = deseq_result
    filt = res["DEgenes"]["treat-ctrl"]
    unfilt = res["DEgenes_unfilt"]["treat-ctrl"]

    assert unfilt["padj"].notna().all()
    assert (filt["padj"] <= 0.05).all()
    assert (filt["log2FoldChange"].abs() >= 1).all()
    assert filt["padj"].is_monotonic_increasing
    simulated = {f"ENSG{i:05d}" for i in range(60)}
    assert len(set(filt["id"]) & simulated) >= 50
    up = filt.set_index("id").loc[[g for g in filt["id"] if g < "ENSG00030"], "log2FoldChange"]
    assert (up > 0).all()
    assert {"SYMBOL", "biotype"} <= set(unfilt.columns)


def test_wrap_deseq2_writes_project_folder(deseq_result):
    _, folder = deseq_result
    expected = [
        "deseq_filtered/study_treat-ctrl.txt",
        "deseq_unfiltered/study_treat-ctrl_unfilt.txt",
        "Volcano_plots/Volcano_study_treat-ctrl.png",
        "MA_plots/MA_plot_study_treat-ctrl.png",
        "Heatmaps/Heatmap_study_treat-ctrl.png",
        "study_Dispersion_plot.png",
        "study_pca_plot_vst_all_genes.png",
        "study_pca_plot_vst_top500_genes.png",
        "study_rle_plot_raw_counts.png",
        "Venn_Diagram_study_all.png",
        "study_run_info_deseq2.json",
    ]
    for name in expected:
        assert (folder / name).exists(), name

    table = pd.read_csv(folder / "deseq_filtered" / "study_treat-ctrl.txt", sep="\t")
    assert table.columns[0] == "id"
    record = json.loads((folder / "study_run_info_deseq2.json").read_text())
    assert record["input_data"]["n_samples"] == 9
    assert "fit_lfc" in record["execution"]["step_timings_seconds"]


def test_wrap_deseq2_returns_none_when_nothing_passes_prefilter(tmp_path, sample_table):
    counts = pd.DataFrame(np.zeros((5, 9), dtype=int), columns=sample_table.index)
    dds = CountDataSet(counts, sample_table)
    assert wrap_deseq2(dds, ["treat-ctrl"], projectfolder=tmp_path) is None


def test_wrap_deseq2_argument_checks(tmp_path, count_dataset):
    with pytest.raises(TypeError, match="dds is not of class CountDataSet"):
        wrap_deseq2(count_dataset.counts, ["treat-ctrl"], projectfolder=tmp_path)
    with pytest.raises(ValueError, match="not found"):
        wrap_deseq2(count_dataset, ["treat-nope"], projectfolder=tmp_path)
    with pytest.raises(ValueError, match="not in input object"):
        wrap_deseq2(count_dataset, ["treat-ctrl"], add_anno_columns=["missing"],
                    projectfolder=tmp_path)
    with pytest.raises(ValueError, match="Unknown adjust method"):
        wrap_deseq2(count_dataset, ["treat-ctrl"], adjust_method="xyz",
                    projectfolder=tmp_path)


def test_heatmap_sample_selection_must_name_each_comparison(tmp_path, count_dataset):
    with pytest.raises(ValueError, match="not found as element"):
        wrap_deseq2(
            count_dataset, ["treat-ctrl"], p_value_threshold=0.05,
            projectfolder=tmp_path,
            hm_include_relevant_samples_only={"other-ctrl": ["other", "ctrl"]},
        )


def test_wrap_deseq2_rejects_contrast_of_contrasts(tmp_path, count_dataset):
    with pytest.raises(ValueError, match="groupA-groupB"):
        wrap_deseq2(count_dataset, ["(treat-ctrl)-(other-ctrl)"], projectfolder=tmp_path)
    # Nothing is fitted or written before the check.
    assert not (tmp_path / "deseq_filtered").exists()


def test_wrap_deseq2_bonferroni_readjusts_tested_genes(tmp_path, count_dataset):
    res = wrap_deseq2(
        count_dataset, ["treat-ctrl"], adjust_method="bonferroni",
        p_value_threshold=0.05, fc_threshold=1, projectfolder=tmp_path,
    )
    unfilt = res["DEgenes_unfilt"]["treat-ctrl"]
    expected = multipletests(unfilt["pvalue"].to_numpy(), method="bonferroni")[1]
    assert np.allclose(unfilt["padj"].to_numpy(), expected)
    assert (unfilt["padj"] >= unfilt["pvalue"]).all()
    assert (res["DEgenes"]["treat-ctrl"]["padj"] <= 0.05).all()
