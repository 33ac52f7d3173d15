import json
import zipfile

import numpy as np
import pandas as pd
import pytest

from gexkit import config
from gexkit.audit import build_run_record, format_run_record, write_run_record
from gexkit.data_io import (
    detect_separator,
    ensure_dirs,
    project_prefix,
    read_counts_file,
    read_fasta,
    read_sample_table,
    read_table,
    write_table,
)


def test_detect_separator():
    assert detect_separator("counts.tsv") == "\t"
    assert detect_separator("samples.CSV") == ","
    with pytest.raises(ValueError, match="not recognized"):
        detect_separator("counts.xlsx")


def test_read_counts_file_from_zip(tmp_path):
    table = tmp_path / "counts.csv"
    table.write_text("gene,S1,S2\nG1,1,2\nG2,3,4\n")
    archive = tmp_path / "counts.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.write(table, "counts.csv")

    counts = read_counts_file(archive)
    assert counts.index.tolist() == ["G1", "G2"]
    assert counts.loc["G2", "S2"] == 4


def test_read_table_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_table(tmp_path / "nothing.tsv")


def test_read_sample_table_rejects_duplicates(tmp_path):
    path = tmp_path / "samples.tsv"
    path.write_text("Sample_Name\tSample_Group\nS1\ta\nS1\tb\n")
    with pytest.raises(ValueError, match="Duplicated"):
        read_sample_table(path, "Sample_Name")

    path.write_text("Sample_Name\tSample_Group\nS1\ta\nS2\tb\n")
    samples = read_sample_table(path, "Sample_Name")
    assert samples.index.tolist() == ["S1", "S2"]
    assert "Sample_Name" in samples.columns


def test_write_table_is_unquoted_without_index(tmp_path):
    df = pd.DataFrame({"id": ["g1"], "desc": ["a b"]}, index=["x"])
    path = write_table(df, tmp_path / "sub" / "out.txt")
    assert path.read_text().splitlines() == ["id\tdesc", "g1\ta b"]


def test_project_prefix_and_dirs(tmp_path):
    assert project_prefix("study") == "study_"
    assert project_prefix("study_") == "study_"
    assert project_prefix(None) == ""
    folder = ensure_dirs(tmp_path / "proj", "Heatmaps", "MA_plots")
    assert (folder / "Heatmaps").is_dir()
    assert (folder / "MA_plots").is_dir()


def test_read_fasta(tmp_path):
    fasta = tmp_path / "seqs.fa"
    fasta.write_text(">seq1 promoter\nacgt\nTTGA\n>seq2\nGGCC\n")
    assert read_fasta(fasta) == {"seq1": "ACGTTTGA", "seq2": "GGCC"}


def test_run_record_is_json_safe(tmp_path):
    record = build_run_record(
        "deseq2",
        parameters={"alpha": np.float64(0.05), "missing": float("nan")},
        input_data={"n_samples": np.int64(6)},
        results_summary={"treat-ctrl": {"n_significant": 12}},
        seeds={"background": 1},
        elapsed_seconds=1.25,
    )
    path = write_run_record(record, tmp_path / "run_info.json")
    loaded = json.loads(path.read_text())
    assert loaded["gexkit"]["analysis"] == "deseq2"
    assert loaded["parameters"]["missing"] is None
    assert loaded["input_data"]["n_samples"] == 6
    assert "numpy" in loaded["environment"]["libraries"]

    text = format_run_record(loaded)
    assert "Analysis : deseq2" in text
    assert "Total time: 1.2s" in text or "Total time: 1.3s" in text


def test_set_theme_updates_plot_configs():
    try:
        config.set_theme("dark")
        assert config.THEME["color_up"] == config.THEME_DARK["color_up"]
        assert config.VOLCANO_PLOT_CONFIG["color_up"] == config.THEME_DARK["color_up"]
    finally:
        config.set_theme("light")
    assert config.VOLCANO_PLOT_CONFIG["color_up"] == config.THEME_LIGHT["color_up"]
    with pytest.raises(ValueError):
        config.set_theme("neon")
