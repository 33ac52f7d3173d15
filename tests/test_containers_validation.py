import numpy as np
import pandas as pd
import pytest

from gexkit.containers import CountDataSet, ExpressionSet
from gexkit.validation import (
    check_class_imbalance,
    check_counts_are_raw,
    check_sparse_data,
    comparison_groups,
    filter_by_rowsum,
    parse_comparison,
    require_columns,
    resolve_thresholds,
    validate_adjust_method,
    validate_comparison_groups,
    validate_counts_df,
)


def test_count_dataset_aligns_annotation(count_dataset, sample_table):
    assert count_dataset.shape == (300, 9)
    assert count_dataset.col_data.index.tolist() == sample_table.index.tolist()
    assert count_dataset.row_data["SYMBOL"].iloc[0] == "GENE0"
    subset = count_dataset.subset_genes(["ENSG00001", "ENSG00002"])
    assert subset.gene_names == ["ENSG00001", "ENSG00002"]
    assert subset.row_data.index.tolist() == ["ENSG00001", "ENSG00002"]


def test_count_dataset_rejects_negative_counts(sample_table):
    counts = pd.DataFrame(np.ones((2, 9)), columns=sample_table.index)
    counts.iloc[0, 0] = -1
    with pytest.raises(ValueError, match="negative"):
        CountDataSet(counts, sample_table)


def test_count_dataset_requires_annotation_for_every_sample(sample_table):
    counts = pd.DataFrame(np.ones((2, 9), dtype=int), columns=sample_table.index)
    with pytest.raises(ValueError, match="samples have no annotation"):
        CountDataSet(counts, sample_table.iloc[:5])


def test_expression_set_subsets(expression_set):
    sub = expression_set.subset_samples(["S1", "S4"])
    assert sub.shape == (400, 2)
    assert sub.pheno_data["Sample_Group"].tolist() == ["ctrl", "treat"]
    assert sub.annotation == "Humanv4"
    assert "ExpressionSet" in repr(sub)


def test_validate_counts_df_rejects_missing_values():
    df = pd.DataFrame({"a": [1.0, np.nan]})
    with pytest.raises(ValueError, match="missing"):
        validate_counts_df(df)


def test_check_counts_are_raw_flags_decimals():
    df = pd.DataFrame(np.full((20, 3), 1.5))
    assert check_counts_are_raw(df)["is_suspect"]
    assert not check_counts_are_raw(pd.DataFrame(np.full((20, 3), 4)))["is_suspect"]


def test_parse_comparison_splits_on_outer_separators():
    assert parse_comparison("treat-ctrl") == ("treat", "ctrl")
    with pytest.raises(ValueError):
        parse_comparison("treatctrl")


def test_comparison_groups_strips_parentheses():
    assert comparison_groups("(A-B)-(C-D)") == ["A", "B", "C", "D"]
    assert comparison_groups("A-B") == ["A", "B"]


def test_validate_comparison_groups_lists_unknown_groups():
    validate_comparison_groups(["treat-ctrl"], ["treat", "ctrl"], "Sample_Group")
    with pytest.raises(ValueError, match="missing"):
        validate_comparison_groups(["treat-missing"], ["treat", "ctrl"], "Sample_Group")


def test_require_columns():
    df = pd.DataFrame(columns=["a", "b"])
    require_columns(df, ["a"])
    require_columns(df, None)
    with pytest.raises(ValueError, match="c not in input object!"):
        require_columns(df, ["a", "c"], "input object")


def test_resolve_thresholds_defaults_and_bounds():
    assert resolve_thresholds(None, None) == (1.0, 0.0)
    assert resolve_thresholds(0.05, 1) == (0.05, 1.0)
    with pytest.raises(ValueError):
        resolve_thresholds(1.5, 0)
    with pytest.raises(ValueError):
        resolve_thresholds(0.05, -1)


def test_validate_adjust_method():
    assert validate_adjust_method("BH") == "fdr_bh"
    assert validate_adjust_method("none") is None
    with pytest.raises(ValueError, match="Unknown adjust method"):
        validate_adjust_method("magic")


def test_filter_by_rowsum():
    df = pd.DataFrame({"a": [0, 5, 10], "b": [0, 4, 10]}, index=["g1", "g2", "g3"])
    assert filter_by_rowsum(df, 10).index.tolist() == ["g3"]
    assert filter_by_rowsum(df, 9).index.tolist() == ["g2", "g3"]


def test_sparse_and_imbalance_checks(sample_table):
    assert check_sparse_data(pd.DataFrame({"a": [0, 1], "b": [1, 0]}))
    assert not check_sparse_data(pd.DataFrame({"a": [1, 1], "b": [1, 0]}))
    assert check_class_imbalance(sample_table, "Sample_Group") is None
    skewed = pd.DataFrame({"g": ["a"] * 12 + ["b"] * 2})
    assert check_class_imbalance(skewed, "g")["large_group"] == "a"
