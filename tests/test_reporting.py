import numpy as np
import pandas as pd
import pytest

from gexkit.reporting import (
    annotate_results,
    filter_results,
    heatmap_samples,
    normalize_venn_comparisons,
    write_venn_diagrams,
)
from gexkit.visualization import (
    create_venn_diagram,
    prepare_heatmap_data,
    prepare_volcano_data,
    wrap_venn_label,
)


def test_normalize_venn_comparisons():
    assert normalize_venn_comparisons(["a-b", "c-d"]) == {"Vennset1": ["a-b", "c-d"]}
    assert normalize_venn_comparisons("a-b") == {"Vennset1": ["a-b"]}
    assert normalize_venn_comparisons([["a-b"], ["c-d", "e-f"]]) == {
        "Vennset1": ["a-b"], "Vennset2": ["c-d", "e-f"],
    }
    assert normalize_venn_comparisons({"mine": ("a-b",)}) == {"mine": ["a-b"]}


def test_heatmap_samples(sample_table):
    assert heatmap_samples("treat-ctrl", sample_table, "Sample_Name", "Sample_Group") == [
        "S4", "S5", "S6", "S1", "S2", "S3",
    ]
    assert len(heatmap_samples("treat-ctrl", sample_table, "Sample_Name",
                               "Sample_Group", include=False)) == 9
    chosen = heatmap_samples("treat-ctrl", sample_table, "Sample_Name", "Sample_Group",
                             include={"treat-ctrl": ["other"]})
    assert chosen == ["S7", "S8", "S9"]
    with pytest.raises(ValueError, match="not found as element"):
        heatmap_samples("treat-ctrl", sample_table, "Sample_Name", "Sample_Group",
                        include={"other-ctrl": ["other"]})


def test_annotate_and_filter_results():
    results = pd.DataFrame(
        {"log2FoldChange": [2.0, -0.2, -3.0], "padj": [0.01, 0.001, 0.04]},
        index=["g1", "g2", "g3"],
    )
    feature_data = pd.DataFrame({"SYMBOL": ["A", "B", "C"], "chr": [1, 2, 3]},
                                index=["g1", "g2", "g3"])
    table = annotate_results(results, feature_data, ["chr"], "SYMBOL")
    assert list(table.columns) == ["id", "log2FoldChange", "padj", "chr", "SYMBOL"]
    with pytest.raises(ValueError, match="not in input object"):
        annotate_results(results, feature_data, ["missing"])

    filtered = filter_results(table, "padj", "log2FoldChange", 0.05, 1.0)
    assert filtered["id"].tolist() == ["g1", "g3"]


def test_volcano_classification_caps_zero_p():
    df = pd.DataFrame({"fc": [2.0, -2.0, 0.1, 1.0], "p": [0.0, 1e-5, 1e-8, np.nan]})
    out = prepare_volcano_data(df, "p", "fc", 0.05, 1.0)
    assert len(out) == 3
    assert out["category"].tolist() == ["Up", "Down", "NS"]
    assert np.isfinite(out["neg_log10_p"]).all()
    assert out["neg_log10_p"].iloc[0] == pytest.approx(8.0)


def test_prepare_heatmap_data_row_scaling():
    values = pd.DataFrame([[1.0, 2.0, 3.0], [5.0, 5.0, 5.0]], index=["g1", "g2"],
                          columns=["a", "b", "c"])
    out = prepare_heatmap_data(values, ["g1", "g2"], ["a", "b", "c"], scale="row")
    assert out.loc["g1"].tolist() == pytest.approx([-1.0, 0.0, 1.0])
    assert out.loc["g2"].tolist() == [0.0, 0.0, 0.0]


def test_venn_diagram_edge_cases():
    assert create_venn_diagram({"a": set(), "b": set()}) is None
    with pytest.raises(ValueError, match="At most 5"):
        create_venn_diagram({str(i): {"g"} for i in range(6)})
    assert create_venn_diagram({"a": {"g1"}, "b": {"g1", "g2"}}) is not None
    assert wrap_venn_label("treatment_long-control_long") == "treatment_long-\ncontrol_long"


def test_write_venn_diagrams_skips_large_sets(tmp_path):
    degenes = {f"c{i}-ref": pd.DataFrame({"id": [f"g{i}", "shared"]}) for i in range(6)}
    written = write_venn_diagrams(
        {"small": ["c0-ref", "c1-ref"], "large": list(degenes)},
        degenes, tmp_path, "p_",
    )
    assert written == [tmp_path / "Venn_Diagram_p_small.png"]
    assert written[0].exists()
