"""
visualization.py — Plots shared by the differential-expression wrappers.

Every function takes plain pandas objects and returns a matplotlib
``Figure``; writing the figure to disk is left to :func:`save_figure`,
which applies the physical size in millimetres and the resolution
(the project folders hold PNG files only).

Gene categories used by the volcano and MA plots:
1. Not Significant: light grey.
2. Up-regulated: dark green.
3. Down-regulated: red.

Functions
---------
save_figure(fig, path, size_mm, dpi)
    → Writes a figure at a fixed physical size and closes it.

group_color_map(levels, palette)
    → Stable colour per sample group.

prepare_volcano_data / create_volcano_plot
    → Significance classification and volcano plot.

prepare_ma_data / create_ma_plot
    → Mean expression vs fold change.

prepare_pca_data / create_pca_plot
    → Sample PCA (scikit-learn) coloured by group.

create_rle_plot / create_expression_boxplot / create_dispersion_plot
    → Sample-level quality plots.

prepare_heatmap_data / create_heatmap
    → Clustered heatmap of the top genes (seaborn clustermap).

create_venn_diagram
    → Overlap of gene sets (matplotlib-venn or UpSet).

Usage example
-------------
    from gexkit.visualization import prepare_volcano_data, create_volcano_plot

    volcano_df = prepare_volcano_data(results_df, "padj", "log2FoldChange",
                                      p_threshold=0.05, fc_threshold=0.58)
    fig = create_volcano_plot(volcano_df, "padj", "log2FoldChange",
                              p_threshold=0.05, fc_threshold=0.58)
    save_figure(fig, "Volcano.png")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd
import matplotlib
import matplotlib.pyplot as plt
import matplotlib.figure
from matplotlib.colors import Colormap, ListedColormap

from gexkit.config import (
    FIGURE_CONFIG,
    VOLCANO_PLOT_CONFIG,
    PCA_PLOT_CONFIG,
    MA_PLOT_CONFIG,
    HEATMAP_CONFIG,
    VENN_CONFIG,
    THEME,
)

logger = logging.getLogger(__name__)

MM_PER_INCH = 25.4

# ── Classification categories ────────────────────────────────────────
# Deliberate order: least prominent first (NS), then the significant ones.
CATEGORY_ORDER = ["NS", "Down", "Up"]


def save_figure(
    fig: matplotlib.figure.Figure,
    path: str | Path,
    size_mm: tuple[float, float] | None = None,
    dpi: int | None = None,
) -> Path:
    """
    Write *fig* to *path* at ``size_mm`` (width, height) and close it.

    Parameters
    ----------
    size_mm : tuple, optional
        Physical size in millimetres; defaults to
        ``FIGURE_CONFIG["default_size_mm"]``.  ``None`` values in the
        config keep the figure's own size.
    dpi : int, optional
        Resolution; defaults to ``FIGURE_CONFIG["dpi"]``.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    width_mm, height_mm = size_mm or FIGURE_CONFIG["default_size_mm"]
    fig.set_size_inches(width_mm / MM_PER_INCH, height_mm / MM_PER_INCH)
    fig.savefig(path, dpi=dpi or FIGURE_CONFIG["dpi"], bbox_inches="tight")
    plt.close(fig)
    logger.debug("Figure written: %s", path)
    return path


def group_color_map(
    levels: Sequence[str],
    palette: Sequence[str] | None = None,
) -> dict[str, str]:
    """Map each group level to a palette colour, cycling if needed."""
    palette = list(palette or PCA_PLOT_CONFIG["color_palette"])
    return {lvl: palette[i % len(palette)] for i, lvl in enumerate(levels)}


def _style_axes(ax, y_grid: bool = True) -> None:
    """Minimalist axes: light background, no top/right spines."""
    ax.set_facecolor(THEME["surface"])
    ax.figure.patch.set_facecolor(THEME["bg"])
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    ax.spines["left"].set_color(THEME["border"])
    ax.spines["bottom"].set_color(THEME["border"])
    if y_grid:
        ax.yaxis.grid(True, linestyle=":", linewidth=0.5, color=THEME["border"])
        ax.xaxis.grid(False)
    ax.set_axisbelow(True)
    ax.tick_params(
        axis="both", which="major", labelsize=8, colors=THEME["text_muted"],
        direction="out", length=3, width=0.8,
    )


def _apply_legend(ax, loc: str = "best", fontsize: int = 8, **extra_kw) -> None:
    """Create a legend on *ax* with consistent styling."""
    legend_kw = dict(
        loc=loc,
        fontsize=fontsize,
        frameon=True,
        framealpha=0.9,
        facecolor=THEME["bg"],
        edgecolor=THEME["border"],
    )
    legend_kw.update(extra_kw)
    legend = ax.legend(**legend_kw)
    legend.set_zorder(10)


def _classify(
    df: pd.DataFrame,
    p_column: str,
    fc_column: str,
    p_threshold: float,
    fc_threshold: float,
) -> pd.DataFrame:
    df["significant"] = (df[p_column] <= p_threshold) & (df[fc_column].abs() >= fc_threshold)
    df["category"] = "NS"
    df.loc[df["significant"] & (df[fc_column] > 0), "category"] = "Up"
    df.loc[df["significant"] & (df[fc_column] < 0), "category"] = "Down"
    return df


# ═══════════════════════════════════════════════════════════════════════
# VOLCANO PLOT
# ═══════════════════════════════════════════════════════════════════════

def prepare_volcano_data(
    results_df: pd.DataFrame,
    p_column: str,
    fc_column: str,
    p_threshold: float,
    fc_threshold: float,
) -> pd.DataFrame:
    """
    Classify genes for the volcano plot.

    A gene is significant when ``p <= p_threshold`` and
    ``|fc| >= fc_threshold``; the same rule produces the filtered DEG
    tables, so the plot and the tables always agree.

    Returns
    -------
    pd.DataFrame
        Copy of the rows with a p-value, plus the columns
        "neg_log10_p", "significant" and "category" (NS / Up / Down).
    """
    volcano_df = results_df.dropna(subset=[p_column, fc_column]).copy()

    # p = 0 would be +inf on the y-axis; cap at the smallest positive p.
    p_values = volcano_df[p_column].astype(float)
    positive = p_values[p_values > 0]
    floor = positive.min() if not positive.empty else 1e-300
    volcano_df["neg_log10_p"] = -np.log10(p_values.clip(lower=floor))

    return _classify(volcano_df, p_column, fc_column, p_threshold, fc_threshold)


def create_volcano_plot(
    volcano_df: pd.DataFrame,
    p_column: str,
    fc_column: str,
    p_threshold: float,
    fc_threshold: float,
    title: str | None = None,
    symbol_column: str | None = None,
    n_labels: int | None = None,
) -> matplotlib.figure.Figure:
    """
    Volcano plot: fold change vs ``-log10(p)``.

    Threshold lines are drawn at ``p_threshold`` (skipped when it is 1)
    and ``±fc_threshold`` (skipped when it is 0).  With *symbol_column*
    the ``n_labels`` most significant DEGs are labelled by symbol.
    """
    cfg = VOLCANO_PLOT_CONFIG
    if n_labels is None:
        n_labels = cfg["n_labels"]

    with plt.style.context("seaborn-v0_8-whitegrid"):
        fig, ax = plt.subplots()
    _style_axes(ax)

    cat_style = {
        "NS": {"color": cfg["color_ns"], "alpha": cfg["alpha_ns"],
               "size": cfg["size_ns"], "marker": "o", "label": "Not significant"},
        "Down": {"color": cfg["color_down"], "alpha": cfg["alpha_sig"],
                 "size": cfg["size_sig"], "marker": "v", "label": "Down-regulated"},
        "Up": {"color": cfg["color_up"], "alpha": cfg["alpha_sig"],
               "size": cfg["size_sig"], "marker": "^", "label": "Up-regulated"},
    }

    for cat in CATEGORY_ORDER:
        mask = volcano_df["category"] == cat
        n = int(mask.sum())
        if n == 0:
            continue
        style = cat_style[cat]
        ax.scatter(
            volcano_df.loc[mask, fc_column],
            volcano_df.loc[mask, "neg_log10_p"],
            c=style["color"],
            alpha=style["alpha"],
            s=style["size"],
            marker=style["marker"],
            label=f'{style["label"]} ({n:,})',
            edgecolors="white",
            linewidths=0.3,
            zorder=1 if cat == "NS" else 2,
        )

    threshold_kw = dict(
        linestyle=cfg["threshold_linestyle"],
        color=cfg["threshold_color"],
        linewidth=cfg["threshold_linewidth"],
        zorder=0,
    )
    if 0 < p_threshold < 1:
        ax.axhline(-np.log10(p_threshold), **threshold_kw)
    if fc_threshold > 0:
        ax.axvline(-fc_threshold, **threshold_kw)
        ax.axvline(fc_threshold, **threshold_kw)

    if symbol_column and symbol_column in volcano_df.columns and n_labels > 0:
        top = (
            volcano_df[volcano_df["significant"]]
            .dropna(subset=[symbol_column])
            .nsmallest(n_labels, p_column)
        )
        texts = [
            ax.text(row[fc_column], row["neg_log10_p"], str(row[symbol_column]),
                    fontsize=cfg["font_annotation"], color=THEME["text"], zorder=10)
            for _, row in top.iterrows()
            if str(row[symbol_column]).strip()
        ]
        if len(texts) > 1:
            from adjustText import adjust_text

            adjust_text(
                texts, ax=ax,
                arrowprops=dict(arrowstyle="-", color=THEME["text_subtle"], lw=0.5),
            )

    ax.set_xlabel(cfg["xlabel"], fontsize=cfg["font_axes"])
    ax.set_ylabel(cfg["ylabel_template"].format(p_column=p_column), fontsize=cfg["font_axes"])
    if title:
        ax.set_title(title, fontsize=cfg["font_title"], fontweight="bold")
    if ax.get_legend_handles_labels()[0]:
        _apply_legend(ax, loc="upper left")
    fig.tight_layout()
    return fig


# ═══════════════════════════════════════════════════════════════════════
# MA PLOT
# ═══════════════════════════════════════════════════════════════════════

def prepare_ma_data(
    results_df: pd.DataFrame,
    mean_column: str,
    fc_column: str,
    p_column: str,
    alpha: float = MA_PLOT_CONFIG["alpha"],
    log_mean: bool = True,
) -> pd.DataFrame:
    """
    Prepare data for an MA plot: A (mean expression) vs M (fold change).

    Genes are coloured by ``p < alpha`` only, as in the classic DESeq2
    MA plot.  For counts (``log_mean=True``) A is ``log10(mean + 1)``;
    for log-scale microarray data (limma ``AveExpr``) A is used as is.
    """
    ma_df = results_df.dropna(subset=[mean_column, fc_column]).copy()
    ma_df["A"] = np.log10(ma_df[mean_column] + 1) if log_mean else ma_df[mean_column]
    ma_df["M"] = ma_df[fc_column]
    significant = ma_df[p_column].fillna(1.0) < alpha
    ma_df["category"] = "NS"
    ma_df.loc[significant & (ma_df["M"] > 0), "category"] = "Up"
    ma_df.loc[significant & (ma_df["M"] < 0), "category"] = "Down"
    return ma_df


def create_ma_plot(
    ma_df: pd.DataFrame,
    title: str | None = None,
    xlabel: str = r"$\log_{10}$(mean of normalized counts + 1)",
    ylabel: str = r"$\log_{2}$ Fold Change",
    ylim: tuple[float, float] | None = None,
) -> matplotlib.figure.Figure:
    """
    MA plot.  Points beyond *ylim* are drawn as triangles on the border.
    """
    cfg = MA_PLOT_CONFIG
    ylim = ylim or cfg["ylim"]

    with plt.style.context("seaborn-v0_8-whitegrid"):
        fig, ax = plt.subplots()
    _style_axes(ax)

    colors = {"NS": cfg["color_ns"], "Down": cfg["color_down"], "Up": cfg["color_up"]}
    for cat in CATEGORY_ORDER:
        subset = ma_df[ma_df["category"] == cat]
        if subset.empty:
            continue
        m = subset["M"].to_numpy()
        inside = (m >= ylim[0]) & (m <= ylim[1])
        ax.scatter(
            subset["A"].to_numpy()[inside], m[inside],
            c=colors[cat], s=cfg["size"],
            alpha=cfg["alpha_ns"] if cat == "NS" else cfg["alpha_sig"],
            edgecolors="none", label=f"{cat} ({len(subset):,})",
            zorder=1 if cat == "NS" else 2,
        )
        for bound, marker in ((ylim[1], "^"), (ylim[0], "v")):
            outside = m > bound if marker == "^" else m < bound
            if outside.any():
                ax.scatter(
                    subset["A"].to_numpy()[outside], np.full(outside.sum(), bound),
                    c=colors[cat], s=cfg["size"] * 1.5, marker=marker,
                    edgecolors="none", zorder=2,
                )

    ax.axhline(0, color=cfg["hline_color"], linewidth=1, zorder=0)
    ax.set_ylim(ylim[0] * 1.05, ylim[1] * 1.05)
    ax.set_xlabel(xlabel, fontsize=cfg["font_axes"])
    ax.set_ylabel(ylabel, fontsize=cfg["font_axes"])
    if title:
        ax.set_title(title, fontsize=cfg["font_title"], fontweight="bold")
    if ax.get_legend_handles_labels()[0]:
        _apply_legend(ax, loc="lower right")
    fig.tight_layout()
    return fig


# ═══════════════════════════════════════════════════════════════════════
# SAMPLE-LEVEL PLOTS
# ═══════════════════════════════════════════════════════════════════════

def prepare_pca_data(
    expr: pd.DataFrame,
    groups: pd.Series,
    top_n: int | None = None,
) -> pd.DataFrame:
    """
    PCA of samples on a (log-scale) expression matrix.

    Parameters
    ----------
    expr : pd.DataFrame
        Genes × samples, already transformed (log2 / VST).
    groups : pd.Series
        Group label per sample (index = sample names).
    top_n : int, optional
        Restrict to the ``top_n`` most variable genes.

    Returns
    -------
    pd.DataFrame
        Columns PC1, PC2, group; attrs["var_explained"] holds the
        explained variance ratios.
    """
    from sklearn.decomposition import PCA

    expr = expr.dropna()
    expr = expr.loc[expr.var(axis=1) > 0]
    if top_n is not None and expr.shape[0] > top_n:
        expr = expr.loc[expr.var(axis=1).nlargest(top_n).index]

    n_components = min(2, expr.shape[1], expr.shape[0])
    pca = PCA(n_components=n_components)
    coords = pca.fit_transform(expr.T.to_numpy())
    if n_components < 2:
        coords = np.column_stack([coords, np.zeros(coords.shape[0])])

    pca_df = pd.DataFrame(
        {"PC1": coords[:, 0], "PC2": coords[:, 1]},
        index=expr.columns,
    )
    pca_df.index.name = "sample"
    pca_df["group"] = groups.reindex(pca_df.index).astype(str).values
    var_explained = np.zeros(2)
    var_explained[:n_components] = pca.explained_variance_ratio_
    pca_df.attrs["var_explained"] = var_explained
    return pca_df


def create_pca_plot(
    pca_df: pd.DataFrame,
    title: str | None = None,
    color_map: dict[str, str] | None = None,
) -> matplotlib.figure.Figure:
    """PCA scatter coloured by group; samples labelled when few."""
    cfg = PCA_PLOT_CONFIG
    var_explained = pca_df.attrs.get("var_explained", [0, 0])
    levels = list(dict.fromkeys(pca_df["group"]))
    color_map = color_map or group_color_map(levels)

    with plt.style.context("seaborn-v0_8-whitegrid"):
        fig, ax = plt.subplots()
    _style_axes(ax, y_grid=False)

    for lvl in levels:
        subset = pca_df[pca_df["group"] == lvl]
        ax.scatter(
            subset["PC1"], subset["PC2"],
            c=color_map.get(lvl, THEME["color_ns"]),
            s=cfg["point_size"], alpha=cfg["point_alpha"],
            label=f"{lvl} (n={len(subset)})",
            edgecolors="white", linewidths=0.8, zorder=2,
        )

    if cfg["show_labels"] and len(pca_df) <= cfg["label_max_samples"]:
        for sample, row in pca_df.iterrows():
            ax.text(row["PC1"], row["PC2"], f"  {sample}",
                    fontsize=cfg["label_fontsize"], color=THEME["text_muted"],
                    ha="left", va="center", zorder=3)

    ax.set_xlabel(f"PC1 ({var_explained[0] * 100:.1f}%)", fontsize=cfg["font_axes"])
    ax.set_ylabel(f"PC2 ({var_explained[1] * 100:.1f}%)", fontsize=cfg["font_axes"])
    if title:
        ax.set_title(title, fontsize=cfg["font_title"], fontweight="bold")
    _apply_legend(ax, fontsize=cfg["font_legend"])
    fig.tight_layout()
    return fig


def _sample_boxplot(
    values: pd.DataFrame,
    groups: pd.Series,
    ylabel: str,
    title: str | None,
    color_map: dict[str, str] | None,
    hline: float | None = None,
) -> matplotlib.figure.Figure:
    levels = list(dict.fromkeys(groups.astype(str)))
    color_map = color_map or group_color_map(levels)
    samples = values.columns.tolist()
    colors = [color_map.get(str(groups.get(s)), THEME["color_ns"]) for s in samples]

    fig, ax = plt.subplots()
    _style_axes(ax)
    data = [values[s].dropna().to_numpy() for s in samples]
    bp = ax.boxplot(data, patch_artist=True, showfliers=False, widths=0.7)
    for patch, color in zip(bp["boxes"], colors):
        patch.set_facecolor(color)
        patch.set_alpha(0.85)
    for median in bp["medians"]:
        median.set_color(THEME["text"])
    if hline is not None:
        ax.axhline(hline, color=THEME["text_subtle"], linestyle="--", linewidth=0.8)

    ax.set_xticks(range(1, len(samples) + 1))
    ax.set_xticklabels(samples, rotation=90, fontsize=6)
    ax.set_ylabel(ylabel, fontsize=THEME["font_axes"])
    if title:
        ax.set_title(title, fontsize=THEME["font_title"], fontweight="bold")

    from matplotlib.patches import Patch

    handles = [Patch(facecolor=color_map[lvl], label=lvl) for lvl in levels]
    ax.legend(handles=handles, fontsize=THEME["font_legend"], loc="best")
    fig.tight_layout()
    return fig


def create_rle_plot(
    log_expr: pd.DataFrame,
    groups: pd.Series,
    title: str | None = None,
    color_map: dict[str, str] | None = None,
) -> matplotlib.figure.Figure:
    """
    Relative log expression: per sample, the distribution of each
    gene's deviation from its median across samples.
    """
    rle = log_expr.sub(log_expr.median(axis=1), axis=0)
    return _sample_boxplot(rle, groups, "Relative log expression", title, color_map, hline=0.0)


def create_expression_boxplot(
    expr: pd.DataFrame,
    groups: pd.Series,
    title: str | None = None,
    color_map: dict[str, str] | None = None,
) -> matplotlib.figure.Figure:
    """Per-sample distribution of (log-scale) expression values."""
    return _sample_boxplot(expr, groups, "Expression (log2)", title, color_map)


def create_dispersion_plot(dispersions: pd.DataFrame) -> matplotlib.figure.Figure:
    """
    Dispersion estimates against mean of normalised counts.

    Parameters
    ----------
    dispersions : pd.DataFrame
        Columns "mean", "genewise", "fitted" and "final" (one row per gene).
    """
    df = dispersions.replace([np.inf, -np.inf], np.nan).dropna(subset=["mean"])
    df = df[df["mean"] > 0]

    fig, ax = plt.subplots()
    _style_axes(ax, y_grid=False)
    ax.scatter(df["mean"], df["genewise"], s=3, c="black", alpha=0.5,
               edgecolors="none", label="gene-est")
    ax.scatter(df["mean"], df["final"], s=3, c="#1f77b4", alpha=0.6,
               edgecolors="none", label="final")
    trend = df.sort_values("mean")
    ax.plot(trend["mean"], trend["fitted"], color="red", linewidth=1.2, label="fitted")
    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("mean of normalized counts", fontsize=THEME["font_axes"])
    ax.set_ylabel("dispersion", fontsize=THEME["font_axes"])
    _apply_legend(ax, loc="lower left", markerscale=3)
    fig.tight_layout()
    return fig


# ═══════════════════════════════════════════════════════════════════════
# HEATMAP
# ═══════════════════════════════════════════════════════════════════════

def prepare_heatmap_data(
    values: pd.DataFrame,
    genes: Sequence[str],
    samples: Sequence[str],
    scale: str = HEATMAP_CONFIG["scale"],
) -> pd.DataFrame:
    """
    Sub-matrix of *values* for the heatmap, optionally z-scored.

    ``scale`` containing "row" z-scores each gene, containing "col"
    z-scores each sample; anything else leaves the values untouched.
    """
    matrix = values.loc[list(genes), list(samples)].astype(float)
    arr = matrix.to_numpy()
    if "row" in scale:
        std = arr.std(axis=1, ddof=1, keepdims=True)
        std[~(std > 0)] = 1.0
        arr = (arr - arr.mean(axis=1, keepdims=True)) / std
    elif "col" in scale:
        std = arr.std(axis=0, ddof=1, keepdims=True)
        std[~(std > 0)] = 1.0
        arr = (arr - arr.mean(axis=0, keepdims=True)) / std
    return pd.DataFrame(arr, index=matrix.index, columns=matrix.columns)


def heatmap_key_label(scale: str) -> str:
    """Colour-key label for a heatmap *scale* mode."""
    labels = HEATMAP_CONFIG["key_labels"]
    if "row" in scale:
        return labels["row"]
    if "col" in scale:
        return labels["column"]
    return labels["none"]


def create_heatmap(
    heatmap_df: pd.DataFrame,
    groups: pd.Series,
    key_label: str,
    color_map: dict[str, str] | None = None,
    cmap: str | Sequence[str] | None = None,
    cex_row: float = HEATMAP_CONFIG["cex_row"],
    cex_col: float = HEATMAP_CONFIG["cex_col"],
    title: str | None = None,
    row_labels: Sequence[str] | None = None,
) -> matplotlib.figure.Figure:
    """
    Clustered heatmap (average linkage, Euclidean) with a group colour bar.

    ``cex_row``/``cex_col`` scale the label font size relative to
    ``HEATMAP_CONFIG["base_fontsize"]``.
    *cmap* is a colormap name or a list of colours (default
    ``HEATMAP_CONFIG["cmap"]``).
    """
    import seaborn as sns
    from matplotlib.patches import Patch

    cfg = HEATMAP_CONFIG
    heatmap_df = heatmap_df.copy()
    if row_labels is not None:
        heatmap_df.index = list(row_labels)

    group_labels = groups.reindex(heatmap_df.columns).astype(str)
    levels = list(dict.fromkeys(group_labels))
    color_map = color_map or group_color_map(levels, cfg["color_palette"])
    col_colors = group_labels.map(color_map).rename("group")
    if cmap is None:
        cmap = cfg["cmap"]
    elif not isinstance(cmap, (str, Colormap)):
        cmap = ListedColormap(list(cmap))

    g = sns.clustermap(
        heatmap_df,
        method=cfg["linkage_method"],
        metric=cfg["distance_metric"],
        cmap=cmap,
        row_cluster=heatmap_df.shape[0] > 1,
        col_cluster=heatmap_df.shape[1] > 1,
        col_colors=col_colors,
        dendrogram_ratio=cfg["dendrogram_ratio"],
        cbar_kws={"label": key_label},
        xticklabels=True,
        yticklabels=True,
    )
    base = cfg["base_fontsize"]
    g.ax_heatmap.set_yticklabels(g.ax_heatmap.get_yticklabels(),
                                 fontsize=base * cex_row, rotation=0)
    g.ax_heatmap.set_xticklabels(g.ax_heatmap.get_xticklabels(),
                                 fontsize=base * cex_col, rotation=90)
    g.ax_heatmap.set_xlabel("")
    g.ax_heatmap.set_ylabel("")

    handles = [Patch(facecolor=color_map[lvl], label=lvl) for lvl in levels]
    g.ax_col_dendrogram.legend(handles=handles, loc="center left",
                               bbox_to_anchor=(1.0, 0.5), fontsize=base, frameon=False)
    if title:
        g.fig.suptitle(title, fontsize=cfg["font_title"], fontweight="bold")
    return g.fig


# ═══════════════════════════════════════════════════════════════════════
# VENN DIAGRAM
# ═══════════════════════════════════════════════════════════════════════

def wrap_venn_label(label: str, width: int = VENN_CONFIG["label_wrap"]) -> str:
    """Break labels longer than *width* after their first ``-``."""
    if len(label) > width:
        return label.replace("-", "-\n", 1)
    return label


def create_venn_diagram(
    sets: dict[str, set],
    title: str | None = None,
    palette: Sequence[str] | None = None,
) -> matplotlib.figure.Figure | None:
    """
    Overlap diagram of up to ``VENN_CONFIG["max_sets"]`` gene sets.

    Two or three non-empty sets give a classic Venn diagram
    (matplotlib-venn); any other case an UpSet plot.  Returns ``None``
    when all sets are empty.
    """
    cfg = VENN_CONFIG
    if len(sets) > cfg["max_sets"]:
        raise ValueError(f"At most {cfg['max_sets']} sets can be drawn, got {len(sets)}.")
    if not set().union(*sets.values()):
        return None

    labels = [wrap_venn_label(name) for name in sets]
    palette = list(palette or PCA_PLOT_CONFIG["color_palette"])
    values = [set(v) for v in sets.values()]

    if len(values) in (2, 3) and all(values):
        from matplotlib_venn import venn2, venn3

        fig, ax = plt.subplots()
        venn_fn = venn2 if len(values) == 2 else venn3
        venn_fn(values, set_labels=labels, set_colors=palette[:len(values)],
                alpha=cfg["alpha"], ax=ax)
    else:
        from upsetplot import UpSet, from_contents

        contents = {label: sorted(v) for label, v in zip(labels, values)}
        fig = plt.figure()
        UpSet(from_contents(contents), subset_size="count", show_counts=True).plot(fig=fig)

    if title:
        fig.suptitle(title, fontsize=THEME["font_title"], fontweight="bold")
    return fig
