import numpy as np
import pandas as pd
import pytest

from gexkit.gene_lists import filter_gene_lists


@pytest.fixture
def degenes():
    table = pd.DataFrame({
        "id": ["g1", "g2", "g3", "g4", "g5", "g6"],
        "SYMBOL": ["A", "B", "A", None, "", "C"],
        "log2FoldChange": [2.0, -1.5, 1.2, 3.0, -2.5, 0.2],
        "padj": [0.001, 0.01, 0.0001, 0.02, 0.03, 0.2],
    })
    return {"treat-ctrl": table, "other-ctrl": table.iloc[:2]}


def test_filters_by_p_and_fold_change(degenes):
    out = filter_gene_lists(degenes, p_value_threshold=0.05, fc_threshold=1)
    assert out["treat-ctrl"]["id"].tolist() == ["g3", "g1", "g2", "g4", "g5"]
    assert out["other-ctrl"]["id"].tolist() == ["g1", "g2"]


def test_direction(degenes):
    up = filter_gene_lists(degenes, direction="up")["treat-ctrl"]
    down = filter_gene_lists(degenes, direction="down")["treat-ctrl"]
    assert (up["log2FoldChange"] > 0).all()
    assert down["id"].tolist() == ["g2", "g5"]
    with pytest.raises(ValueError, match="direction"):
        filter_gene_lists(degenes, direction="sideways")


def test_symbol_handling_and_truncation(degenes):
    out = filter_gene_lists(
        degenes, symbol_column="SYMBOL", remove_missing_symbols=True,
        unique_symbols=True,
    )["treat-ctrl"]
    assert out["id"].tolist() == ["g3", "g2"]

    top = filter_gene_lists(degenes, max_genes=2)["treat-ctrl"]
    assert top["id"].tolist() == ["g3", "g1"]


def test_missing_columns_raise(degenes):
    with pytest.raises(ValueError, match="pvalue not in gene list"):
        filter_gene_lists(degenes, p_column="pvalue")
    with pytest.raises(ValueError, match="symbol_column"):
        filter_gene_lists(degenes, unique_symbols=True)


def test_writes_tables(tmp_path, degenes):
    filter_gene_lists(degenes, projectfolder=tmp_path, projectname="run")
    written = pd.read_csv(tmp_path / "run_treat-ctrl_filtered.txt", sep="\t")
    assert len(written) == 5
    assert np.isclose(written["padj"].max(), 0.03)
