import json

import gseapy as gp
import pandas as pd
import pytest

from gexkit.enrichment import extract_symbols, load_gene_sets, wrap_cluster_profiler

UNIVERSE = [f"G{i}" for i in range(1, 501)]
GENE_SETS = {
    "SET_A": [f"G{i}" for i in range(1, 26)],
    "SET_B": [f"G{i}" for i in range(200, 225)],
    "TINY": ["G1", "G2"],
}


def test_load_gene_sets_filters_by_size(tmp_path):
    assert set(load_gene_sets(GENE_SETS, min_size=10, max_size=500)) == {"SET_A", "SET_B"}

    gmt = tmp_path / "lib.gmt"
    gmt.write_text(
        "SET_A\tna\t" + "\t".join(GENE_SETS["SET_A"]) + "\n"
        "TINY\tna\t" + "\t".join(GENE_SETS["TINY"]) + "\n"
    )
    assert load_gene_sets(gmt, min_size=10) == {"SET_A": sorted(GENE_SETS["SET_A"])}
    assert load_gene_sets(str(gmt), min_size=2).keys() == {"SET_A", "TINY"}
    universe = [f"G{i}" for i in range(1, 6)]
    assert load_gene_sets(gmt, min_size=10, universe=universe) == {}


def test_load_gene_sets_from_enrichr_library(monkeypatch):
    calls = []

    def fake_get_library(name, organism):
        calls.append((name, organism))
        return GENE_SETS

    monkeypatch.setattr(gp, "get_library", fake_get_library)
    sets = load_gene_sets("MSigDB_Hallmark_2020", min_size=10, organism="Mouse")
    assert calls == [("MSigDB_Hallmark_2020", "Mouse")]
    assert set(sets) == {"SET_A", "SET_B"}


def test_extract_symbols_drops_empty_and_duplicates():
    df = pd.DataFrame({"symbol": ["A", "", None, "B", "A", " C "]})
    assert extract_symbols(df) == ["A", "B", "C"]
    with pytest.raises(ValueError, match="not in gene list"):
        extract_symbols(df, symbol_column="SYMBOL")


def test_wrap_cluster_profiler_ora(tmp_path):
    degs = pd.DataFrame({
        "symbol": [f"G{i}" for i in range(1, 21)] + ["G300", "G301"],
        "log2FoldChange": [2.0] * 15 + [-2.0] * 7,
    })
    res = wrap_cluster_profiler(
        {"treat-ctrl": degs},
        {"custom": GENE_SETS},
        universe=UNIVERSE,
        fc_column="log2FoldChange",
        split_by_direction=True,
        projectfolder=tmp_path,
        projectname="p",
        plot=False,
    )

    table = res["ORA"]["treat-ctrl"]["custom"]
    assert table.iloc[0]["Term"] == "SET_A"
    assert table.iloc[0]["Adjusted P-value"] < 1e-10
    assert set(res["ORA"]) == {"treat-ctrl", "treat-ctrl_up", "treat-ctrl_down"}
    assert (tmp_path / "ORA" / "p_treat-ctrl_custom.txt").exists()
    assert (tmp_path / "ORA" / "p_treat-ctrl_up_custom.txt").exists()

    record = json.loads((tmp_path / "p_run_info_enrichment.json").read_text())
    assert record["input_data"]["universe_size"] == 500


def test_gsea_requires_fold_change_column(tmp_path):
    with pytest.raises(ValueError, match="fc_column"):
        wrap_cluster_profiler({"x": ["G1"]}, {"custom": GENE_SETS},
                              run_gsea=True, projectfolder=tmp_path)
