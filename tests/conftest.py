import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from gexkit.containers import CountDataSet, ExpressionSet


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def sample_table():
    names = [f"S{i}" for i in range(1, 10)]
    groups = ["ctrl"] * 3 + ["treat"] * 3 + ["other"] * 3
    return pd.DataFrame(
        {
            "Sample_Name": names,
            "Sample_Group": groups,
            "batch": ["b1", "b2", "b1", "b2", "b1", "b2", "b1", "b2", "b1"],
        },
        index=pd.Index(names, name="sample"),
    )


@pytest.fixture
def count_dataset(rng, sample_table):
    n_genes = 300
    genes = [f"ENSG{i:05d}" for i in range(n_genes)]
    base = rng.uniform(20, 500, size=n_genes)
    fold = np.ones((n_genes, 9))
    # First 30 genes up in "treat", next 30 down.
    fold[:30, 3:6] = 8.0
    fold[30:60, 3:6] = 0.125
    mu = base[:, None] * fold
    counts = rng.negative_binomial(n=10, p=10 / (10 + mu))
    counts_df = pd.DataFrame(counts, index=genes, columns=sample_table.index)
    row_data = pd.DataFrame(
        {"SYMBOL": [f"GENE{i}" for i in range(n_genes)],
         "biotype": ["protein_coding"] * n_genes},
        index=genes,
    )
    return CountDataSet(counts_df, sample_table, row_data)


@pytest.fixture
def expression_set(rng, sample_table):
    n_features = 400
    probes = [f"ILMN_{i}" for i in range(n_features)]
    values = rng.normal(8, 1, size=(n_features, 9)) + rng.normal(0, 2, size=(n_features, 1))
    values[:40, 3:6] += 3.0
    values[40:80, 3:6] -= 3.0
    exprs = pd.DataFrame(2 ** values, index=probes, columns=sample_table.index)
    feature_data = pd.DataFrame(
        {"SYMBOL": [f"GENE{i}" for i in range(n_features)],
         "PROBEQUALITY": ["Perfect"] * (n_features - 10) + ["Bad"] * 5 + ["No match"] * 5},
        index=probes,
    )
    return ExpressionSet(exprs, sample_table, feature_data, annotation="Humanv4")


@pytest.fixture
def log_expression_set(expression_set):
    eset = expression_set.copy()
    eset.exprs = np.log2(eset.exprs)
    return eset
