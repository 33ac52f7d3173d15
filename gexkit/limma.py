"""
limma.py — Differential expression of microarray data (limma workflow).

``wrap_limma`` fits a cell-means linear model (plus optional covariates)
to log-scale expression values, moderates the gene-wise variances by
empirical Bayes (``gexkit.linear_models``) and writes the same
per-comparison outputs as ``wrap_deseq2``:

    limma_unfiltered/  limma_filtered/  Heatmaps/  Volcano_plots/  MA_plots/

Contrasts of contrasts ``"(A-B)-(C-D)"`` are supported in addition to
simple comparisons.

Usage example
-------------
    from gexkit import process_eset, wrap_limma

    eset = process_eset(raw_eset, method_norm="quantile", transform="log2")
    res = wrap_limma(eset, ["treated-control"], symbol_column="SYMBOL")
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Mapping, Sequence

import pandas as pd

from gexkit.audit import build_run_record, write_run_record
from gexkit.config import FIGURE_CONFIG, HEATMAP_CONFIG, LIMMA_DEFAULTS
from gexkit.containers import ExpressionSet
from gexkit.data_io import ensure_dirs, project_prefix
from gexkit.linear_models import contrast_matrix, contrasts_fit, design_matrix, ebayes, lm_fit, top_table
from gexkit.reporting import (
    ReportParams,
    annotate_results,
    report_comparison,
    write_venn_diagrams,
)
from gexkit.validation import (
    require_columns,
    resolve_thresholds,
    validate_adjust_method,
    validate_comparison_groups,
)
from gexkit.visualization import (
    create_expression_boxplot,
    create_pca_plot,
    group_color_map,
    prepare_pca_data,
    save_figure,
)

logger = logging.getLogger(__name__)


def wrap_limma(
    eset: ExpressionSet,
    comparisons: Sequence[str],
    p_value_threshold: float | None = LIMMA_DEFAULTS["p_value_threshold"],
    adjust_method: str = LIMMA_DEFAULTS["adjust_method"],
    fc_threshold: float | None = LIMMA_DEFAULTS["fc_threshold"],
    projectfolder: str | Path = LIMMA_DEFAULTS["projectfolder"],
    projectname: str | None = "",
    symbol_column: str | None = None,
    sample_column: str = LIMMA_DEFAULTS["sample_column"],
    group_column: str = LIMMA_DEFAULTS["group_column"],
    covariates: Sequence[str] | None = None,
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
) -> dict:
    """
    Differential expression analysis with moderated t statistics.

    Parameters
    ----------
    eset : ExpressionSet
        Normalised, log-scale expression data (see ``process_eset``).
    comparisons : sequence of str
        ``"groupA-groupB"`` or ``"(groupA-groupB)-(groupC-groupD)"``.
    covariates : sequence of str, optional
        ``pheno_data`` columns added to the design (e.g. batch, sex).

    All other parameters are as in :func:`gexkit.deseq.wrap_deseq2`;
    p-value filtering acts on ``adj.P.Val`` and fold-change filtering on
    ``|logFC|``.

    Returns
    -------
    dict
        ``{"DEgenes": {comp: filtered_df}, "DEgenes_unfilt": {comp: df}}``.

    Raises
    ------
    TypeError
        If *eset* is not an ExpressionSet.
    ValueError
        For unknown groups, covariates, annotation columns or adjust
        methods, or a rank-deficient design.
    """
    if not isinstance(eset, ExpressionSet):
        raise TypeError("eset is not of class ExpressionSet")

    start = time.monotonic()
    prefix = project_prefix(projectname)
    p_value_threshold, fc_threshold = resolve_thresholds(p_value_threshold, fc_threshold)
    validate_adjust_method(adjust_method)

    pheno = eset.pheno_data
    require_columns(pheno, group_column, "phenotype data")
    require_columns(pheno, covariates, "phenotype data")
    require_columns(eset.feature_data, add_anno_columns, "input object")
    groups = pheno[group_column].astype(str)
    validate_comparison_groups(comparisons, groups.unique(), group_column)

    # ── Expression matrix ──────────────────────────────────────────
    expr = eset.exprs
    complete = expr.notna().all(axis=1)
    if not complete.all():
        logger.info("Remove %d features with missing values.", int((~complete).sum()))
        expr = expr.loc[complete]
    if expr.empty:
        raise ValueError("No features without missing values left.")

    folder = Path(projectfolder)
    params = ReportParams(
        method="limma",
        projectfolder=folder,
        prefix=prefix,
        p_column="adj.P.Val",
        fc_column="logFC",
        mean_column="AveExpr",
        p_value_threshold=p_value_threshold,
        fc_threshold=fc_threshold,
        log_mean=False,
        ma_xlabel="Average log-expression",
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

    # ── Sample plots ───────────────────────────────────────────────
    pca_file = folder / f"{prefix}pca_plot_all_genes.png"
    logger.info("Write pca plot to %s", pca_file)
    pca_df = prepare_pca_data(expr, groups)
    save_figure(create_pca_plot(pca_df, title="PCA, all features", color_map=params.group_colors),
                pca_file, dpi=figure_res)

    box_file = folder / f"{prefix}boxplot_expression.png"
    logger.info("Write expression boxplot to %s", box_file)
    save_figure(create_expression_boxplot(expr, groups, title="Expression per sample",
                                          color_map=params.group_colors),
                box_file, dpi=figure_res)

    # ── Linear model ───────────────────────────────────────────────
    logger.info("Differential expression analysis with limma-style linear models.")
    design = design_matrix(pheno, group_column, covariates)
    contrasts = contrast_matrix(comparisons, design.columns)
    fit = ebayes(contrasts_fit(lm_fit(expr, design), contrasts))

    table_filt: dict[str, pd.DataFrame] = {}
    table_unfilt: dict[str, pd.DataFrame] = {}
    for i, comparison in enumerate(comparisons, start=1):
        logger.info("Processing comparison %d: %s", i, comparison)
        results_df = top_table(fit, comparison, adjust_method)
        unfilt = annotate_results(results_df, eset.feature_data, add_anno_columns, symbol_column)
        table_unfilt[comparison] = unfilt
        table_filt[comparison] = report_comparison(comparison, unfilt, expr, pheno, params)

    if venn_comparisons is not None:
        write_venn_diagrams(
            venn_comparisons, table_filt, folder, prefix, figure_res, group_palette,
        )

    record = build_run_record(
        "limma",
        parameters={
            "comparisons": list(comparisons),
            "p_value_threshold": p_value_threshold,
            "adjust_method": adjust_method,
            "fc_threshold": fc_threshold,
            "group_column": group_column,
            "covariates": list(covariates or []),
            "design_columns": list(design.columns),
            "scale": scale,
            "max_hm": max_hm,
        },
        input_data={
            "n_samples": eset.shape[1],
            "n_features": eset.shape[0],
            "n_features_complete": expr.shape[0],
            "annotation": eset.annotation,
            "group_sizes": groups.value_counts().to_dict(),
        },
        results_summary={
            "df_prior": fit.df_prior,
            "s2_prior": fit.s2_prior,
            "comparisons": {
                comp: {
                    "n_significant": len(table_filt[comp]),
                    "n_up": int((table_filt[comp]["logFC"] > 0).sum()),
                    "n_down": int((table_filt[comp]["logFC"] < 0).sum()),
                }
                for comp in comparisons
            },
        },
        elapsed_seconds=time.monotonic() - start,
    )
    write_run_record(record, folder / f"{prefix}run_info_limma.json")

    return {"DEgenes": table_filt, "DEgenes_unfilt": table_unfilt}
