"""
gene_lists.py — Filtering of differential-expression result tables.

Takes the ``DEgenes`` / ``DEgenes_unfilt`` dictionaries returned by
``wrap_deseq2`` and ``wrap_limma`` (or any ``{name: DataFrame}``) and
derives gene lists for downstream use, e.g. enrichment analysis.

Usage example
-------------
    from gexkit.gene_lists import filter_gene_lists

    up = filter_gene_lists(res["DEgenes_unfilt"], p_value_threshold=0.01,
                           fc_threshold=1, direction="up",
                           symbol_column="SYMBOL", unique_symbols=True)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping

import pandas as pd

from gexkit.config import FILTER_DEFAULTS
from gexkit.data_io import ensure_dirs, project_prefix, write_table
from gexkit.validation import require_columns

logger = logging.getLogger(__name__)


def _filter_table(
    table: pd.DataFrame,
    p_value_threshold: float,
    p_column: str,
    fc_threshold: float,
    fc_column: str,
    direction: str,
    symbol_column: str | None,
    remove_missing_symbols: bool,
    unique_symbols: bool,
    max_genes: int | None,
) -> pd.DataFrame:
    fc = table[fc_column]
    mask = (table[p_column] <= p_value_threshold) & (fc.abs() >= fc_threshold)
    if direction == "up":
        mask &= fc > 0
    elif direction == "down":
        mask &= fc < 0
    out = table.loc[mask]

    if remove_missing_symbols:
        symbols = out[symbol_column]
        out = out.loc[symbols.notna() & (symbols.astype(str).str.strip() != "")]

    out = out.sort_values(p_column, kind="mergesort")
    if unique_symbols:
        # First row per symbol is the one with the lowest p-value.
        keep = out[symbol_column].isna() | ~out.duplicated(subset=symbol_column, keep="first")
        out = out.loc[keep]

    if max_genes is not None:
        out = out.head(max_genes)
    return out


def filter_gene_lists(
    gene_lists: Mapping[str, pd.DataFrame],
    p_value_threshold: float = FILTER_DEFAULTS["p_value_threshold"],
    p_column: str = FILTER_DEFAULTS["p_column"],
    fc_threshold: float = FILTER_DEFAULTS["fc_threshold"],
    fc_column: str = FILTER_DEFAULTS["fc_column"],
    direction: str = "both",
    symbol_column: str | None = None,
    remove_missing_symbols: bool = False,
    unique_symbols: bool = False,
    max_genes: int | None = None,
    projectfolder: str | Path | None = None,
    projectname: str | None = "",
) -> dict[str, pd.DataFrame]:
    """
    Filter every table of *gene_lists* by significance, fold change and
    direction.

    Parameters
    ----------
    direction : str
        ``"both"``, ``"up"`` (fc > 0) or ``"down"`` (fc < 0).
    remove_missing_symbols : bool
        Drop rows whose *symbol_column* is empty or missing.
    unique_symbols : bool
        Keep only the lowest-p row per symbol.
    max_genes : int, optional
        Keep at most this many rows (after sorting by p).
    projectfolder : str or Path, optional
        If given, each list is written to ``<prefix><name>_filtered.txt``.

    Returns
    -------
    dict
        name → filtered DataFrame, sorted by p-value.
    """
    if direction not in FILTER_DEFAULTS["directions"]:
        raise ValueError(
            f"direction must be one of {FILTER_DEFAULTS['directions']}, got '{direction}'."
        )
    if (remove_missing_symbols or unique_symbols) and symbol_column is None:
        raise ValueError("symbol_column is required for remove_missing_symbols/unique_symbols.")
    if max_genes is not None and max_genes < 1:
        raise ValueError(f"max_genes must be positive, got {max_genes}.")

    prefix = project_prefix(projectname)
    folder = ensure_dirs(projectfolder) if projectfolder is not None else None

    filtered = {}
    for name, table in gene_lists.items():
        columns = [p_column, fc_column] + ([symbol_column] if symbol_column else [])
        require_columns(table, columns, f"gene list '{name}'")
        out = _filter_table(
            table, p_value_threshold, p_column, fc_threshold, fc_column, direction,
            symbol_column, remove_missing_symbols, unique_symbols, max_genes,
        )
        logger.info("%s: %d of %d genes kept.", name, len(out), len(table))
        filtered[name] = out
        if folder is not None:
            write_table(out, folder / f"{prefix}{name}_filtered.txt")
    return filtered
