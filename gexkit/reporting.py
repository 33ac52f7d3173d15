"""
reporting.py — Per-comparison outputs of the differential-expression wrappers.

``wrap_deseq2`` and ``wrap_limma`` differ only in how the statistics are
computed.  Once a results table exists, both write the same set of
files for every group comparison:

    Volcano_plots/Volcano_<prefix><comp>.png
    <method>_unfiltered/<prefix><comp>_unfilt.txt
    <method>_filtered/<prefix><comp>.txt
    Heatmaps/Heatmap_<prefix><comp>.png       (only if > 1 DEG)
    MA_plots/MA_plot_<prefix><comp>.png

plus the Venn diagrams across comparisons.

Types
-----
ReportParams
    Column names, thresholds and plot settings for one wrapper run.

Functions
---------
annotate_results(results_df, feature_data, add_anno_columns, symbol_column)
    → Prepends the ``id`` column and joins feature annotation.

filter_results(results_df, p_column, fc_column, p_threshold, fc_threshold)
    → Filtered DEG table sorted by p-value.

heatmap_samples(comparison, sample_table, sample_column, group_column, include)
    → Samples shown in the heatmap of a comparison.

report_comparison(comparison, results_df, values, sample_table, params)
    → Writes all per-comparison files and returns the filtered table.

normalize_venn_comparisons(venn_comparisons) / write_venn_diagrams(...)
    → Venn diagrams of the DEG sets.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Sequence

import pandas as pd

from gexkit.config import FIGURE_CONFIG, HEATMAP_CONFIG, MA_PLOT_CONFIG, VENN_CONFIG
from gexkit.data_io import write_table
from gexkit.validation import comparison_groups, require_columns
from gexkit.visualization import (
    create_heatmap,
    create_ma_plot,
    create_venn_diagram,
    create_volcano_plot,
    group_color_map,
    heatmap_key_label,
    prepare_heatmap_data,
    prepare_ma_data,
    prepare_volcano_data,
    save_figure,
)

logger = logging.getLogger(__name__)

# Helper columns added by the plot preparation; never written to tables.
_PLOT_COLUMNS = ["neg_log10_p", "significant", "category"]


@dataclass
class ReportParams:
    """Everything ``report_comparison`` needs besides the data.

    ``method`` names the table folders (``deseq`` → ``deseq_filtered``).
    """

    method: str
    projectfolder: Path
    prefix: str
    p_column: str
    fc_column: str
    mean_column: str
    p_value_threshold: float
    fc_threshold: float
    log_mean: bool = True
    ma_xlabel: str = r"$\log_{10}$(mean of normalized counts + 1)"
    symbol_column: str | None = None
    sample_column: str = "Sample_Name"
    group_column: str = "Sample_Group"
    max_hm: int = HEATMAP_CONFIG["max_hm"]
    scale: str = HEATMAP_CONFIG["scale"]
    hm_cex_row: float = HEATMAP_CONFIG["cex_row"]
    hm_cex_col: float = HEATMAP_CONFIG["cex_col"]
    figure_res: int = FIGURE_CONFIG["dpi"]
    hm_include_relevant_samples_only: bool | Mapping[str, Sequence[str]] = True
    # Heatmap colour map: colormap name or list of colours.
    color_palette: str | Sequence[str] | None = None
    group_colors: dict[str, str] = field(default_factory=dict)

    @property
    def unfiltered_dir(self) -> Path:
        return Path(self.projectfolder) / f"{self.method}_unfiltered"

    @property
    def filtered_dir(self) -> Path:
        return Path(self.projectfolder) / f"{self.method}_filtered"

    @property
    def subfolders(self) -> tuple[str, ...]:
        return (
            f"{self.method}_unfiltered", f"{self.method}_filtered",
            "Heatmaps", "Volcano_plots", "MA_plots",
        )


# ──────────────────────────────────────────────────────────────────────
# Tables
# ──────────────────────────────────────────────────────────────────────

def annotate_results(
    results_df: pd.DataFrame,
    feature_data: pd.DataFrame,
    add_anno_columns: Iterable[str] | None = None,
    symbol_column: str | None = None,
) -> pd.DataFrame:
    """
    Prepend an ``id`` column (the feature ids) and join annotation.

    The symbol column, when given, is always joined so that volcano
    labels and heatmap row names can use it.

    Raises
    ------
    ValueError
        If any requested annotation column is not in *feature_data*.
    """
    columns = list(add_anno_columns or [])
    require_columns(feature_data, columns, "input object")
    if symbol_column:
        require_columns(feature_data, symbol_column, "input object")
        if symbol_column not in columns:
            columns.append(symbol_column)

    table = results_df.copy()
    table.insert(0, "id", table.index.astype(str))
    if columns:
        anno = feature_data.reindex(table.index)[columns]
        anno = anno.loc[:, [c for c in anno.columns if c not in table.columns]]
        table = pd.concat([table, anno], axis=1)
    return table


def filter_results(
    results_df: pd.DataFrame,
    p_column: str,
    fc_column: str,
    p_threshold: float,
    fc_threshold: float,
) -> pd.DataFrame:
    """Keep ``p <= p_threshold`` and ``|fc| >= fc_threshold``, sorted by p."""
    mask = (results_df[p_column] <= p_threshold) & (results_df[fc_column].abs() >= fc_threshold)
    return results_df.loc[mask].sort_values(p_column, kind="mergesort")


def heatmap_samples(
    comparison: str,
    sample_table: pd.DataFrame,
    sample_column: str,
    group_column: str,
    include: bool | Mapping[str, Sequence[str]] = True,
) -> list[str]:
    """
    Samples to show in the heatmap of *comparison*.

    ``include=True`` selects the groups named in the comparison
    (parentheses stripped), a mapping selects ``include[comparison]``
    and ``False`` keeps every sample.

    Raises
    ------
    ValueError
        If *include* is a mapping without an entry for *comparison*.
    """
    if isinstance(include, Mapping):
        if comparison not in include:
            raise ValueError(
                f"name {comparison} not found as element in hm_include_relevant_samples_only"
            )
        groups = [str(g) for g in include[comparison]]
    elif include:
        groups = comparison_groups(comparison)
    else:
        return sample_table.index.astype(str).tolist()

    names = (
        sample_table[sample_column] if sample_column in sample_table.columns
        else pd.Series(sample_table.index, index=sample_table.index)
    ).astype(str)
    group_values = sample_table[group_column].astype(str)
    selected = []
    for group in groups:
        selected.extend(names[group_values == group].tolist())
    return list(dict.fromkeys(selected))


def _row_labels(genes: Sequence[str], table: pd.DataFrame, symbol_column: str | None) -> list[str]:
    """Symbols where available, otherwise the feature id."""
    if not symbol_column or symbol_column not in table.columns:
        return list(genes)
    symbols = table.set_index("id")[symbol_column]
    labels = []
    for gene in genes:
        symbol = symbols.get(gene)
        labels.append(str(symbol) if pd.notna(symbol) and str(symbol).strip() else gene)
    return labels


# ──────────────────────────────────────────────────────────────────────
# Per-comparison report
# ──────────────────────────────────────────────────────────────────────

def report_comparison(
    comparison: str,
    results_df: pd.DataFrame,
    values: pd.DataFrame,
    sample_table: pd.DataFrame,
    params: ReportParams,
) -> pd.DataFrame:
    """
    Write volcano plot, tables, heatmap and MA plot of one comparison.

    Parameters
    ----------
    comparison : str
        Comparison name, used in every file name.
    results_df : pd.DataFrame
        Annotated, unfiltered results (with ``id`` column).
    values : pd.DataFrame
        Features × samples matrix shown in the heatmap (VST for
        DESeq2, log expression for limma).
    sample_table : pd.DataFrame
        Sample annotation indexed by sample name.

    Returns
    -------
    pd.DataFrame
        Filtered DEG table.
    """
    folder = Path(params.projectfolder)
    prefix = params.prefix

    # ── Volcano plot + filtered table ──────────────────────────────
    volcano_file = folder / "Volcano_plots" / f"Volcano_{prefix}{comparison}.png"
    logger.info("Write Volcano plot to %s", volcano_file)
    volcano_df = prepare_volcano_data(
        results_df, params.p_column, params.fc_column,
        params.p_value_threshold, params.fc_threshold,
    )
    fig = create_volcano_plot(
        volcano_df, params.p_column, params.fc_column,
        params.p_value_threshold, params.fc_threshold,
        title=comparison, symbol_column=params.symbol_column,
    )
    save_figure(fig, volcano_file, dpi=params.figure_res)

    filtered = filter_results(
        volcano_df.drop(columns=_PLOT_COLUMNS), params.p_column, params.fc_column,
        params.p_value_threshold, params.fc_threshold,
    )

    # ── Tables ─────────────────────────────────────────────────────
    unfilt_file = params.unfiltered_dir / f"{prefix}{comparison}_unfilt.txt"
    filt_file = params.filtered_dir / f"{prefix}{comparison}.txt"
    write_table(results_df, unfilt_file)
    write_table(filtered, filt_file)
    logger.info("%d differentially regulated elements for comparison: %s",
                len(filtered), comparison)
    logger.info("Write gene tables to %s and %s", unfilt_file, filt_file)

    # ── Heatmap ────────────────────────────────────────────────────
    if len(filtered) > 1:
        heatmap_file = folder / "Heatmaps" / f"Heatmap_{prefix}{comparison}.png"
        logger.info("Write Heatmap to %s", heatmap_file)
        genes = [g for g in filtered["id"].head(params.max_hm) if g in values.index]
        samples = heatmap_samples(
            comparison, sample_table, params.sample_column, params.group_column,
            params.hm_include_relevant_samples_only,
        )
        samples = [s for s in samples if s in values.columns]
        if not samples:
            raise ValueError(
                f"No sample of column '{params.sample_column}' matches the columns "
                f"of the expression data (e.g. {list(values.columns[:3])})."
            )
        heatmap_df = prepare_heatmap_data(values, genes, samples, params.scale)
        groups = sample_table[params.group_column].astype(str)
        groups.index = sample_table.index.astype(str)
        fig = create_heatmap(
            heatmap_df, groups,
            key_label=heatmap_key_label(params.scale),
            color_map=params.group_colors or None,
            cmap=params.color_palette,
            cex_row=params.hm_cex_row, cex_col=params.hm_cex_col,
            title=comparison,
            row_labels=_row_labels(genes, results_df, params.symbol_column),
        )
        save_figure(fig, heatmap_file, FIGURE_CONFIG["heatmap_size_mm"], params.figure_res)

    # ── MA plot ────────────────────────────────────────────────────
    ma_file = folder / "MA_plots" / f"MA_plot_{prefix}{comparison}.png"
    logger.info("Write MA-plot to %s", ma_file)
    ma_df = prepare_ma_data(
        results_df, params.mean_column, params.fc_column, params.p_column,
        alpha=MA_PLOT_CONFIG["alpha"], log_mean=params.log_mean,
    )
    fig = create_ma_plot(ma_df, title=comparison, xlabel=params.ma_xlabel)
    save_figure(fig, ma_file, dpi=params.figure_res)

    return filtered


# ──────────────────────────────────────────────────────────────────────
# Venn diagrams
# ──────────────────────────────────────────────────────────────────────

def normalize_venn_comparisons(
    venn_comparisons: Sequence[str] | Mapping[str, Sequence[str]] | Sequence[Sequence[str]],
) -> dict[str, list[str]]:
    """
    Bring the accepted ``venn_comparisons`` forms into ``{name: [comps]}``.

    A flat list of comparisons is one set; a list of lists gives one set
    per element; unnamed sets are called ``Vennset<i>`` (1-based).
    """
    prefix = VENN_CONFIG["set_prefix"]
    if isinstance(venn_comparisons, Mapping):
        return {str(k): list(v) for k, v in venn_comparisons.items()}
    if isinstance(venn_comparisons, str):
        return {f"{prefix}1": [venn_comparisons]}
    items = list(venn_comparisons)
    if all(isinstance(item, str) for item in items):
        return {f"{prefix}1": items}
    return {f"{prefix}{i}": list(item) for i, item in enumerate(items, start=1)}


def write_venn_diagrams(
    venn_comparisons,
    degenes: Mapping[str, pd.DataFrame],
    projectfolder: str | Path,
    prefix: str,
    figure_res: int = FIGURE_CONFIG["dpi"],
    palette: Sequence[str] | None = None,
) -> list[Path]:
    """
    Draw one Venn diagram per set of comparisons.

    Sets with more than ``VENN_CONFIG["max_sets"]`` comparisons and sets
    whose DEG lists are all empty are skipped with a warning.

    Returns
    -------
    list[Path]
        Files written.
    """
    written = []
    for name, comps in normalize_venn_comparisons(venn_comparisons).items():
        venn_file = Path(projectfolder) / f"Venn_Diagram_{prefix}{name}.png"
        if len(comps) > VENN_CONFIG["max_sets"]:
            logger.warning(
                "Venn set %s has %d comparisons (max %d); skipped.",
                name, len(comps), VENN_CONFIG["max_sets"],
            )
            continue
        unknown = [c for c in comps if c not in degenes]
        if unknown:
            logger.warning("Venn set %s: comparisons %s not analysed; ignored.", name, unknown)
        sets = {c: set(degenes[c]["id"]) for c in comps if c in degenes}
        if not sets:
            continue
        fig = create_venn_diagram(sets, palette=palette)
        if fig is None:
            logger.warning("Venn set %s: no DEGs in any comparison; skipped.", name)
            continue
        logger.info("Write Venn diagram to %s", venn_file)
        written.append(save_figure(fig, venn_file, dpi=figure_res))
    return written
