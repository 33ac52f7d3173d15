"""
deseq.py — Differential expression of RNA-seq counts with DESeq2.

``wrap_deseq2`` runs a DESeq2 analysis (pydeseq2) for any number of
group comparisons and writes, into one project folder:

- sample plots: PCA (log2 and VST), RLE (raw counts and VST),
  dispersion estimates;
- per comparison: volcano plot, unfiltered and filtered DEG tables,
  heatmap of the top DEGs and MA plot (see ``gexkit.reporting``);
- Venn diagrams across comparisons;
- a JSON run record.

Usage example
-------------
    from gexkit import CountDataSet, wrap_deseq2

    dds = CountDataSet(counts_df, col_data=samples_df, row_data=genes_df)
    res = wrap_deseq2(dds, ["treated-control"], symbol_column="symbol",
                      projectfolder="GEX/deseq", projectname="study")
    res["DEgenes"]["treated-control"].head()
"""

from __future__ import annotations

import logging
import math
import time
from pathlib import Path
from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from gexkit.audit import build_run_record, write_run_record
from gexkit.config import DESEQ2_DEFAULTS, FIGURE_CONFIG, HEATMAP_CONFIG
from gexkit.containers import CountDataSet
from gexkit.data_io import ensure_dirs, project_prefix
from gexkit.deseq_runner import (
    build_deseq_dataset,
    compute_contrast,
    dispersion_table,
    run_deseq2,
    variance_stabilize,
)
from gexkit.reporting import (
    ReportParams,
    annotate_results,
    report_comparison,
    write_venn_diagrams,
)
from gexkit.validation import (
    check_class_imbalance,
    check_counts_are_raw,
    filter_by_rowsum,
    parse_comparison,
    require_columns,
    resolve_thresholds,
    validate_adjust_method,
    validate_comparison_groups,
)
from gexkit.visualization import (
    create_dispersion_plot,
    create_pca_plot,
    create_rle_plot,
    group_color_map,
    prepare_pca_data,
    save_figure,
)

logger = logging.getLogger(__name__)


def _sample_plots(
    counts_df: pd.DataFrame,
    vst_df: pd.DataFrame,
    groups: pd.Series,
    folder: Path,
    prefix: str,
    dpi: int,
    color_map: dict[str, str],
) -> None:
    """PCA and RLE plots written before the model fit."""
    log_counts = np.log2(counts_df.astype(float) + 1)
    top_n = DESEQ2_DEFAULTS["pca_top_n"]

    pca_inputs = [
        ("pca_plot_log2_all_genes.png", log_counts, None, "PCA log2(counts + 1), all genes"),
        ("pca_plot_vst_all_genes.png", vst_df, None, "PCA VST, all genes"),
        (f"pca_plot_vst_top{top_n}_genes.png", vst_df, top_n, f"PCA VST, top {top_n} genes"),
    ]
    for filename, values, n_top, title in pca_inputs:
        path = folder / f"{prefix}{filename}"
        logger.info("Write pca plot to %s", path)
        pca_df = prepare_pca_data(values, groups, top_n=n_top)
        save_figure(create_pca_plot(pca_df, title=title, color_map=color_map), path, dpi=dpi)

    rle_inputs = [
        ("rle_plot_raw_counts.png", log_counts, "Rel. log expression of raw counts"),
        ("rle_plot_vst.png", vst_df, "Rel. log expression of vst transformed counts"),
    ]
    for filename, values, title in rle_inputs:
        path = folder / f"{prefix}{filename}"
        logger.info("Write RLE plot to %s", path)
        save_figure(create_rle_plot(values, groups, title=title, color_map=color_map),
                    path, dpi=dpi)


def wrap_deseq2(
    dds: CountDataSet,
    comparisons: Sequence[str],
    min_rowsum: float = DESEQ2_DEFAULTS["min_rowsum"],
    p_value_threshold: float | None = DESEQ2_DEFAULTS["p_value_threshold"],
    adjust_method: str = DESEQ2_DEFAULTS["adjust_method"],
    fc_threshold: float | None = DESEQ2_DEFAULTS["fc_threshold"],
    projectfolder: str | Path = DESEQ2_DEFAULTS["projectfolder"],
    projectname: str | None = "",
    symbol_column: str | None = None,
    sample_column: str = DESEQ2_DEFAULTS["sample_column"],
    group_column: str = DESEQ2_DEFAULTS["group_column"],
    add_anno_columns: Sequence[str] | None = None,
    venn_comparisons=None,
    max_hm: int = HEATMAP_CONFIG["max_hm"],
    scale: str = HEATMAP_CONFIG["scale"],
    hm_cex_row: float = HEATMAP_CONFIG["cex_row"],
    hm_cex_col: float = HEATMAP_CONFIG["cex_col"],
    figure_res: int = FIGURE_CONFIG["dpi"],
    hm_include_relevant_samples_only: bool | Mapping[str, Sequence[str]] = True,
    color_palette: str | Sequence[str] | None = None,
    group_palette: Sequence[str] | None = None,
) -> dict | None:
    """
    Differential expression analysis with DESeq2 for several comparisons.

    Parameters
    ----------
    dds : CountDataSet
        Raw (un-normalised) counts with sample table ``col_data``.
    comparisons : sequence of str
        Group comparisons ``"groupA-groupB"``; fold changes are A vs B.
        Group names must be levels of *group_column*.
    min_rowsum : float
        Genes with ``rowSums(counts) < min_rowsum`` are removed before
        fitting.
    p_value_threshold : float or None
        Threshold on ``padj`` for the filtered tables (None = 1).
    adjust_method : str
        ``"none"``, ``"BH"``, ``"BY"``, ``"holm"``, ``"bonferroni"``,
        ``"hochberg"`` or ``"hommel"``.
    fc_threshold : float or None
        Threshold on ``|log2FoldChange|`` (None = 0).
    projectfolder : str or Path
        Output directory (created if missing).
    projectname : str
        Optional prefix for output file names.
    symbol_column : str, optional
        Gene-symbol column of ``row_data``; used for volcano labels and
        heatmap row names, and added to the tables.
    sample_column, group_column : str
        Sample-name and group columns of ``col_data``.
    add_anno_columns : sequence of str, optional
        ``row_data`` columns added to the output tables.
    venn_comparisons : list, list of lists or dict, optional
        Comparisons shown together in a Venn diagram (max 5 per set).
    max_hm : int
        Max number of top DEGs in a heatmap.
    scale : str
        ``"none"``, ``"row"`` or ``"column"`` heatmap scaling.
    hm_cex_row, hm_cex_col : float
        Label size factors of the heatmap.
    figure_res : int
        PNG resolution (dpi).
    hm_include_relevant_samples_only : bool or dict
        Samples shown in the heatmaps; see
        :func:`gexkit.reporting.heatmap_samples`.
    color_palette : str or sequence of str, optional
        Colour map of the heatmaps: a matplotlib colormap name or a list
        of colours.  Defaults to ``HEATMAP_CONFIG["cmap"]``.
    group_palette : sequence of str, optional
        Group colours of sample plots, heatmap colour bars and Venn sets.

    Returns
    -------
    dict or None
        ``{"DEgenes": {comp: filtered_df}, "DEgenes_unfilt": {comp: df}}``,
        or None if no gene passes the ``min_rowsum`` pre-filter.

    Raises
    ------
    TypeError
        If *dds* is not a CountDataSet.
    ValueError
        For unknown groups, annotation columns or adjust methods.
    """
    if not isinstance(dds, CountDataSet):
        raise TypeError("dds is not of class CountDataSet")

    start = time.monotonic()
    prefix = project_prefix(projectname)
    p_value_threshold, fc_threshold = resolve_thresholds(p_value_threshold, fc_threshold)
    validate_adjust_method(adjust_method)

    col_data = dds.col_data
    require_columns(col_data, group_column, "sample table")
    groups = col_data[group_column].astype(str)
    groups.index = col_data.index.astype(str)
    validate_comparison_groups(comparisons, groups.unique(), group_column)
    for comparison in comparisons:
        if "(" in comparison or comparison.count("-") != 1:
            raise ValueError(
                f"Comparison '{comparison}': DESeq2 contrasts must have the form "
                f"'groupA-groupB'."
            )
    require_columns(dds.row_data, add_anno_columns, "input object")

    raw_check = check_counts_are_raw(dds.counts)
    if raw_check["is_suspect"]:
        logger.warning("Counts may not be raw: %s.", raw_check["reason"])

    imbalance = check_class_imbalance(col_data, group_column)
    if imbalance:
        logger.warning(
            "Imbalanced groups: %s (n=%d) vs %s (n=%d).",
            imbalance["large_group"], imbalance["large_n"],
            imbalance["small_group"], imbalance["small_n"],
        )

    # ── Pre-filtering ──────────────────────────────────────────────
    n_genes_raw = dds.shape[0]
    counts_df = filter_by_rowsum(dds.counts, min_rowsum)
    logger.info(
        "Apply pre-filtering for rowSums >= %s. %d genes remaining.",
        min_rowsum, counts_df.shape[0],
    )
    if counts_df.empty:
        return None

    folder = Path(projectfolder)
    params = ReportParams(
        method="deseq",
        projectfolder=folder,
        prefix=prefix,
        p_column="padj",
        fc_column="log2FoldChange",
        mean_column="baseMean",
        p_value_threshold=p_value_threshold,
        fc_threshold=fc_threshold,
        symbol_column=symbol_column,
        sample_column=sample_column,
        group_column=group_column,
        max_hm=max_hm,
        scale=scale,
        hm_cex_row=hm_cex_row,
        hm_cex_col=hm_cex_col,
        figure_res=figure_res,
        hm_include_relevant_samples_only=hm_include_relevant_samples_only,
        color_palette=color_palette,
        group_colors=group_color_map(sorted(groups.unique()), group_palette),
    )
    ensure_dirs(folder, *params.subfolders)

    # ── Variance-stabilised data for sample plots and heatmaps ────
    logger.info("Using variance stabilizing transformation for generating heatmaps and pca plot")
    vst_df, transform = variance_stabilize(counts_df, groups)
    _sample_plots(counts_df, vst_df, groups, folder, prefix, figure_res, params.group_colors)

    # ── Differential expression ────────────────────────────────────
    logger.info("Differential expression analysis with DESeq2.")
    deseq_dataset = build_deseq_dataset(counts_df, groups, n_cpus=DESEQ2_DEFAULTS["n_cpus"])
    deseq_dataset, step_timings = run_deseq2(deseq_dataset)

    disp_file = folder / f"{prefix}Dispersion_plot.png"
    logger.info("Write Dispersion plot to %s", disp_file)
    save_figure(create_dispersion_plot(dispersion_table(deseq_dataset)), disp_file, dpi=figure_res)

    # ── Group comparisons ──────────────────────────────────────────
    table_filt: dict[str, pd.DataFrame] = {}
    table_unfilt: dict[str, pd.DataFrame] = {}
    for i, comparison in enumerate(comparisons, start=1):
        logger.info("Processing comparison %d: %s", i, comparison)
        test_level, reference_level = parse_comparison(comparison)
        results_df = compute_contrast(
            deseq_dataset, test_level, reference_level,
            alpha=DESEQ2_DEFAULTS["alpha"], adjust_method=adjust_method,
        )
        n_missing = int(results_df["padj"].isna().sum())
        logger.info("Remove %d entries with missing p-values", n_missing)
        results_df = results_df.loc[results_df["padj"].notna()]

        unfilt = annotate_results(results_df, dds.row_data, add_anno_columns, symbol_column)
        table_unfilt[comparison] = unfilt
        table_filt[comparison] = report_comparison(
            comparison, unfilt, vst_df, col_data, params,
        )

    # ── Venn diagrams ──────────────────────────────────────────────
    if venn_comparisons is not None:
        write_venn_diagrams(
            venn_comparisons, table_filt, folder, prefix, figure_res, group_palette,
        )

    # ── Run record ─────────────────────────────────────────────────
    record = build_run_record(
        "deseq2",
        parameters={
            "comparisons": list(comparisons),
            "min_rowsum": min_rowsum,
            "p_value_threshold": p_value_threshold,
            "adjust_method": adjust_method,
            "fc_threshold": fc_threshold,
            "fc_threshold_linear": math.pow(2, fc_threshold),
            "group_column": group_column,
            "size_factors_fit_type": deseq_dataset.size_factors_fit_type,
            "heatmap_transform": transform,
            "scale": scale,
            "max_hm": max_hm,
        },
        input_data={
            "n_samples": dds.shape[1],
            "n_genes_raw": n_genes_raw,
            "n_genes_after_filter": counts_df.shape[0],
            "group_sizes": groups.value_counts().to_dict(),
        },
        results_summary={
            comp: {
                "n_tested": len(table_unfilt[comp]),
                "n_significant": len(table_filt[comp]),
                "n_up": int((table_filt[comp]["log2FoldChange"] > 0).sum()),
                "n_down": int((table_filt[comp]["log2FoldChange"] < 0).sum()),
            }
            for comp in comparisons
        },
        elapsed_seconds=time.monotonic() - start,
    )
    record["execution"]["step_timings_seconds"] = {k: round(v, 3) for k, v in step_timings.items()}
    write_run_record(record, folder / f"{prefix}run_info_deseq2.json")

    return {"DEgenes": table_filt, "DEgenes_unfilt": table_unfilt}
