"""
containers.py — Lightweight data containers shared by the wrappers.

Two dataclasses bundle an expression matrix with its sample and feature
annotation and keep the three tables aligned.  They hold pandas objects
only; all statistics live in the analysis modules.

Types
-----
ExpressionSet
    Microarray-style expression values (features × samples) plus
    ``pheno_data`` (samples) and ``feature_data`` (features).

CountDataSet
    RNA-seq raw counts (genes × samples) plus ``col_data`` (samples) and
    ``row_data`` (genes).  Input of :func:`gexkit.deseq.wrap_deseq2`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

import numpy as np
import pandas as pd

from gexkit.validation import validate_counts_df


def _aligned_annotation(
    table: pd.DataFrame | None,
    index: pd.Index,
    what: str,
) -> pd.DataFrame:
    """Return *table* reindexed to *index*, or an empty frame if None."""
    if table is None:
        return pd.DataFrame(index=index.copy())

    table = table.copy()
    table.index = table.index.astype(str)
    missing = index.difference(table.index)
    if len(missing) > 0:
        raise ValueError(
            f"{len(missing)} {what} have no annotation row "
            f"(e.g. {list(missing[:5])})."
        )
    return table.loc[index]


@dataclass
class ExpressionSet:
    """Expression matrix with sample and feature annotation.

    Attributes
    ----------
    exprs : pd.DataFrame
        Features × samples expression values.
    pheno_data : pd.DataFrame
        Sample annotation, indexed by sample name.
    feature_data : pd.DataFrame
        Feature annotation, indexed by feature id.
    annotation : str
        Platform / chip name.
    """

    exprs: pd.DataFrame
    pheno_data: pd.DataFrame | None = None
    feature_data: pd.DataFrame | None = None
    annotation: str = ""

    def __post_init__(self) -> None:
        exprs = self.exprs.copy()
        exprs.index = exprs.index.astype(str)
        exprs.columns = exprs.columns.astype(str)
        if exprs.columns.has_duplicates:
            raise ValueError("Sample names in exprs must be unique.")
        self.exprs = exprs.astype(float)
        self.pheno_data = _aligned_annotation(self.pheno_data, exprs.columns, "samples")
        self.feature_data = _aligned_annotation(self.feature_data, exprs.index, "features")

    @property
    def feature_names(self) -> list[str]:
        return self.exprs.index.tolist()

    @property
    def sample_names(self) -> list[str]:
        return self.exprs.columns.tolist()

    @property
    def shape(self) -> tuple[int, int]:
        return self.exprs.shape

    def subset_features(self, keys: Iterable | pd.Series | np.ndarray) -> ExpressionSet:
        """Return a new set restricted to *keys* (ids or boolean mask)."""
        rows = self.exprs.loc[keys].index
        return ExpressionSet(
            self.exprs.loc[rows],
            self.pheno_data,
            self.feature_data.loc[rows],
            self.annotation,
        )

    def subset_samples(self, keys: Iterable | pd.Series | np.ndarray) -> ExpressionSet:
        """Return a new set restricted to samples *keys* (names or mask)."""
        cols = self.exprs.loc[:, keys].columns
        return ExpressionSet(
            self.exprs[cols],
            self.pheno_data.loc[cols],
            self.feature_data,
            self.annotation,
        )

    def copy(self) -> ExpressionSet:
        return ExpressionSet(
            self.exprs.copy(), self.pheno_data.copy(),
            self.feature_data.copy(), self.annotation,
        )

    def __repr__(self) -> str:
        n_feat, n_samp = self.shape
        return (
            f"<ExpressionSet features={n_feat} samples={n_samp} "
            f"annotation={self.annotation!r}>"
        )


@dataclass
class CountDataSet:
    """Raw RNA-seq count matrix with sample and gene annotation.

    Attributes
    ----------
    counts : pd.DataFrame
        Genes × samples raw counts (non-negative integers).
    col_data : pd.DataFrame
        Sample annotation, indexed by sample name.  Must contain the
        group column used for the comparisons.
    row_data : pd.DataFrame
        Gene annotation (symbols, biotypes ...), indexed by gene id.
    """

    counts: pd.DataFrame
    col_data: pd.DataFrame | None = None
    row_data: pd.DataFrame | None = field(default=None)

    def __post_init__(self) -> None:
        counts = self.counts.copy()
        counts.index = counts.index.astype(str)
        counts.columns = counts.columns.astype(str)
        validate_counts_df(counts)
        if counts.columns.has_duplicates:
            raise ValueError("Sample names in counts must be unique.")
        if counts.index.has_duplicates:
            raise ValueError("Gene ids in counts must be unique.")
        self.counts = counts.round().astype("int64")
        self.col_data = _aligned_annotation(self.col_data, counts.columns, "samples")
        self.row_data = _aligned_annotation(self.row_data, counts.index, "genes")

    @property
    def gene_names(self) -> list[str]:
        return self.counts.index.tolist()

    @property
    def sample_names(self) -> list[str]:
        return self.counts.columns.tolist()

    @property
    def shape(self) -> tuple[int, int]:
        return self.counts.shape

    def subset_genes(self, keys: Iterable | pd.Series | np.ndarray) -> CountDataSet:
        """Return a new dataset restricted to genes *keys* (ids or mask)."""
        rows = self.counts.loc[keys].index
        return CountDataSet(
            self.counts.loc[rows], self.col_data, self.row_data.loc[rows],
        )

    def copy(self) -> CountDataSet:
        return CountDataSet(
            self.counts.copy(), self.col_data.copy(), self.row_data.copy(),
        )

    def __repr__(self) -> str:
        n_genes, n_samples = self.shape
        return f"<CountDataSet genes={n_genes} samples={n_samples}>"
