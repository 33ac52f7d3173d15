"""
validation.py — Argument and input-data validation.

This module verifies user-provided data and arguments BEFORE any
statistical library is called. Catching errors here gives a clear,
descriptive message instead of a cryptic failure deep inside pydeseq2,
gseapy or numpy.

Functions
---------
validate_counts_df(counts_df)
    → Validates the structure of a raw count matrix.

check_counts_are_raw(counts_df)
    → Heuristic to detect normalized (FPKM/TPM/log) matrices.

require_columns(table, columns, what)
    → Raises if any of *columns* is missing from *table*.

parse_comparison(comparison)
    → Splits "groupA-groupB" into ("groupA", "groupB").

comparison_groups(comparison)
    → Lists every group named in a comparison (parentheses stripped).

validate_comparison_groups(comparisons, levels, group_column)
    → Verifies that every group named in the comparisons exists.

filter_by_rowsum(counts_df, min_rowsum)
    → Removes genes whose total count is below a threshold.

resolve_thresholds(p_value_threshold, fc_threshold)
    → Maps "no threshold" (None) to values that disable filtering.

validate_adjust_method(method)
    → Maps a multiple-testing method name to its statsmodels equivalent.

check_sparse_data(counts_df)
    → True if every gene has at least one zero (poscounts needed).

check_class_imbalance(sample_table, group_column)
    → Flags severely imbalanced group sizes.

Usage example
--------------
    from gexkit.validation import parse_comparison, filter_by_rowsum

    test, reference = parse_comparison("treated-control")
    counts_df = filter_by_rowsum(counts_df, min_rowsum=10)
"""

from __future__ import annotations

import re
from typing import Iterable

import numpy as np
import pandas as pd

from gexkit.config import ADJUST_METHODS, COMPARISON_SEPARATOR


def validate_counts_df(counts_df: pd.DataFrame) -> None:
    """
    Raise ValueError unless *counts_df* is a non-empty, fully numeric
    genes x samples matrix without missing or negative values.
    """
    if counts_df.empty:
        raise ValueError(
            "Count matrix has no rows or no columns; check the file "
            "separator and the gene identifier column."
        )

    non_numeric = counts_df.select_dtypes(exclude=["number"])
    if not non_numeric.empty:
        bad_cols = list(non_numeric.columns[:5])
        raise ValueError(
            f"Count matrix columns {bad_cols} are not numeric; gene "
            f"identifiers belong in the index."
        )

    values = counts_df.to_numpy()
    if np.isnan(values).any():
        raise ValueError("The count matrix contains missing values.")

    if values.min() < 0:
        raise ValueError(
            "Count matrix has negative values; raw counts are "
            "non-negative integers."
        )


def check_counts_are_raw(counts_df: pd.DataFrame) -> dict:
    """
    Guess whether a count matrix holds normalised values (FPKM, TPM,
    CPM, log scale) by the share of non-integer entries.

    Returns
    -------
    dict with keys:
        - "is_suspect" : bool
        - "reason" : str | None
        - "pct_decimal" : float, % of non-zero values with decimals.
    """
    vals = counts_df.to_numpy()
    n_total = vals.size

    # Sample ~100K values on large matrices instead of ravelling them.
    sample_limit = 100_000
    if n_total <= sample_limit:
        flat = vals.ravel()
    else:
        rng = np.random.default_rng(42)
        idx_rows = rng.integers(0, vals.shape[0], size=sample_limit)
        idx_cols = rng.integers(0, vals.shape[1], size=sample_limit)
        flat = vals[idx_rows, idx_cols]

    nonzero = flat[flat != 0]
    if len(nonzero) == 0:
        return {"is_suspect": False, "reason": None, "pct_decimal": 0.0}

    has_decimal = nonzero != np.floor(nonzero)
    pct_decimal = float(has_decimal.sum() / len(nonzero) * 100)
    max_val = float(np.max(nonzero))

    if pct_decimal > 50 and max_val < 25:
        reason = (
            f"values appear to be log-normalized ({pct_decimal:.0f}% have "
            f"decimals, max value = {max_val:.1f})"
        )
    elif pct_decimal > 50:
        reason = (
            f"values appear to be normalized (FPKM, TPM or CPM): "
            f"{pct_decimal:.0f}% of non-zero values have decimals"
        )
    elif pct_decimal > 10:
        reason = f"{pct_decimal:.0f}% of non-zero values have decimals"
    else:
        return {"is_suspect": False, "reason": None, "pct_decimal": pct_decimal}

    return {"is_suspect": True, "reason": reason, "pct_decimal": pct_decimal}


def require_columns(
    table: pd.DataFrame,
    columns: Iterable[str] | str | None,
    what: str = "input table",
) -> None:
    """Raise ``ValueError`` naming every column of *columns* not in *table*."""
    if columns is None:
        return
    if isinstance(columns, str):
        columns = [columns]
    missing = [c for c in columns if c not in table.columns]
    if missing:
        raise ValueError(
            f"{', '.join(map(str, missing))} not in {what}! "
            f"Available columns: {list(table.columns)}."
        )


# ──────────────────────────────────────────────────────────────────────
# Group comparisons
# ──────────────────────────────────────────────────────────────────────

def parse_comparison(comparison: str) -> tuple[str, str]:
    """
    Split a simple comparison ``"groupA-groupB"`` into its two groups.

    Everything before the first ``-`` is the test group, everything
    after the last ``-`` the reference group (fold changes are
    reported as test vs reference).

    Raises
    ------
    ValueError
        If the comparison does not contain a separator.
    """
    if COMPARISON_SEPARATOR not in comparison:
        raise ValueError(
            f"Comparison '{comparison}' must have the form 'groupA-groupB'."
        )
    test = comparison.split(COMPARISON_SEPARATOR, 1)[0]
    reference = comparison.rsplit(COMPARISON_SEPARATOR, 1)[1]
    if not test or not reference:
        raise ValueError(
            f"Comparison '{comparison}' must have the form 'groupA-groupB'."
        )
    return test, reference


def comparison_groups(comparison: str) -> list[str]:
    """
    Return all group names in a comparison, in order, without duplicates.

    Parentheses of a contrast of contrasts are stripped, so
    ``"(A-B)-(C-D)"`` yields ``["A", "B", "C", "D"]``.
    """
    parts = [re.sub(r"[()]", "", p).strip() for p in comparison.split(COMPARISON_SEPARATOR)]
    return list(dict.fromkeys(p for p in parts if p))


def validate_comparison_groups(
    comparisons: Iterable[str],
    levels: Iterable[str],
    group_column: str,
) -> None:
    """
    Verify that every group referenced by *comparisons* is a level of
    *group_column*.

    Raises
    ------
    ValueError
        Listing the unknown groups and the available levels.
    """
    levels = [str(lvl) for lvl in levels]
    unknown = []
    for comparison in comparisons:
        unknown.extend(g for g in comparison_groups(comparison) if g not in levels)
    if unknown:
        raise ValueError(
            f"Groups {sorted(set(unknown))} used in comparisons were not found "
            f"in column '{group_column}'. Available levels: {sorted(levels)}."
        )


# ──────────────────────────────────────────────────────────────────────
# Filtering and thresholds
# ──────────────────────────────────────────────────────────────────────

def filter_by_rowsum(counts_df: pd.DataFrame, min_rowsum: float) -> pd.DataFrame:
    """Keep genes with ``rowSums(counts) >= min_rowsum``."""
    gene_totals = np.asarray(counts_df).sum(axis=1)
    return counts_df.loc[gene_totals >= min_rowsum]


def resolve_thresholds(
    p_value_threshold: float | None,
    fc_threshold: float | None,
) -> tuple[float, float]:
    """
    Replace missing thresholds by values that omit filtering.

    ``None`` p-value threshold → 1, ``None`` fold-change threshold → 0.
    """
    if p_value_threshold is None:
        p_value_threshold = 1.0
    if fc_threshold is None:
        fc_threshold = 0.0
    if not 0 <= p_value_threshold <= 1:
        raise ValueError(
            f"p_value_threshold must be between 0 and 1, got {p_value_threshold}."
        )
    if fc_threshold < 0:
        raise ValueError(f"fc_threshold must be >= 0, got {fc_threshold}.")
    return float(p_value_threshold), float(fc_threshold)


def validate_adjust_method(method: str) -> str | None:
    """
    Map a multiple-testing method name to the statsmodels method.

    Returns ``None`` for ``"none"`` (no adjustment).

    Raises
    ------
    ValueError
        If the method is not supported.
    """
    if method not in ADJUST_METHODS:
        raise ValueError(
            f"Unknown adjust method '{method}'. "
            f"Supported: {list(ADJUST_METHODS)}."
        )
    return ADJUST_METHODS[method]


def check_sparse_data(counts_df: pd.DataFrame) -> bool:
    """
    Check if the count matrix is sparse (every gene has a zero).

    Such matrices make the default "ratio" size-factor estimation fail;
    the "poscounts" estimator must be used instead.
    """
    arr = np.asarray(counts_df)
    return bool((arr == 0).any(axis=1).all())


def check_class_imbalance(
    sample_table: pd.DataFrame,
    group_column: str,
    threshold_ratio: float = 5.0,
) -> dict | None:
    """
    Check if groups are severely imbalanced.

    Returns
    -------
    dict or None
        If imbalanced: dict with keys 'ratio', 'large_group', 'large_n',
        'small_group', 'small_n'.  Otherwise None.
    """
    if group_column not in sample_table.columns:
        return None
    group_sizes = sample_table[group_column].value_counts()
    if len(group_sizes) < 2:
        return None
    max_n = int(group_sizes.max())
    min_n = int(group_sizes.min())
    ratio = max_n / min_n
    if ratio > threshold_ratio:
        return {
            "ratio": round(ratio, 1),
            "large_group": str(group_sizes.idxmax()),
            "large_n": max_n,
            "small_group": str(group_sizes.idxmin()),
            "small_n": min_n,
        }
    return None
