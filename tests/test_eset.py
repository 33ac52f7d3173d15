import numpy as np
import pandas as pd
import pytest

from gexkit.containers import ExpressionSet
from gexkit.eset import normalize_values, process_eset, transform_values


def test_log2_transform_then_quantile_gives_identical_distributions(expression_set):
    eset = ExpressionSet(expression_set.exprs, expression_set.pheno_data)
    processed = process_eset(eset, method_norm="quantile", transform="log2")
    sorted_values = np.sort(processed.exprs.to_numpy(), axis=0)
    assert np.allclose(sorted_values, sorted_values[:, [0]])
    assert processed.exprs.max().max() < 30


def test_quality_filter_drops_bad_probes(expression_set):
    processed = process_eset(expression_set, method_norm="none", transform="none")
    assert processed.shape == (390, 9)
    assert not processed.feature_data["PROBEQUALITY"].isin(["Bad", "No match"]).any()
    # Input untouched.
    assert expression_set.shape == (400, 9)


def test_no_quality_column_keeps_all_features(expression_set):
    eset = ExpressionSet(expression_set.exprs, expression_set.pheno_data)
    assert process_eset(eset, "median", "log2").shape == (400, 9)


def test_median_normalisation_equalises_medians():
    values = np.array([[1.0, 2.0], [2.0, 4.0], [3.0, 6.0]])
    out = normalize_values(values, "median")
    medians = np.median(out, axis=0)
    assert medians[0] == pytest.approx(medians[1])


def test_vst_is_finite_at_zero():
    out = transform_values(np.array([[0.0, 1e6]]), "vst")
    assert np.isfinite(out).all()
    assert out[0, 1] == pytest.approx(np.log2(1e6), abs=1e-3)


@pytest.mark.parametrize("method_norm, transform", [
    ("vsn", "none"),
    ("quantile", "neqc"),
    ("quantile", "rsn"),
    ("unknown", "none"),
])
def test_unsupported_methods_raise(expression_set, method_norm, transform):
    with pytest.raises(ValueError, match="not supported"):
        process_eset(expression_set, method_norm, transform)


def test_process_eset_requires_expression_set():
    with pytest.raises(TypeError, match="eset is not of class ExpressionSet"):
        process_eset(pd.DataFrame({"a": [1.0]}))
