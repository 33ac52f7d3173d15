"""
wgcna.py — Weighted gene co-expression network analysis.

Steps, all on the ``top_variable_genes`` most variable genes:

1. Sample clustering (outlier check).
2. Soft-threshold selection: scale-free topology fit per power.
3. Adjacency → topological overlap (TOM) → average-linkage clustering
   of ``1 - TOM`` → static tree cut into modules, labelled by colour
   (largest module first; ``"grey"`` = unassigned).
4. Module eigengenes (first principal component) and merging of
   modules with similar eigengenes.
5. Module–trait correlation and gene module membership (kME).

Outputs in ``projectfolder``:

    sample_clustering.png        soft_threshold.txt / .png
    gene_dendrogram_modules.png  module_trait_relationships.png
    module_eigengenes.txt        module_trait_correlation.txt
    module_trait_pvalue.txt      gene_modules.txt

Usage example
-------------
    from gexkit.wgcna import wrap_wgcna

    res = wrap_wgcna(eset, traits=clinical_df, projectname="cohort1")
    res["modules"].value_counts()
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from matplotlib.colors import to_rgb
from scipy import stats
from scipy.cluster import hierarchy
from scipy.spatial.distance import squareform

from gexkit.audit import build_run_record, write_run_record
from gexkit.config import FIGURE_CONFIG, HEATMAP_CONFIG, THEME, WGCNA_DEFAULTS
from gexkit.containers import ExpressionSet
from gexkit.data_io import ensure_dirs, project_prefix, write_table
from gexkit.visualization import save_figure

logger = logging.getLogger(__name__)

NETWORK_TYPES = ("unsigned", "signed")

# Colour names without a matplotlib equivalent.
_PLOT_COLORS = {"grey60": "#999999"}


# ──────────────────────────────────────────────────────────────────────
# Input preparation
# ──────────────────────────────────────────────────────────────────────

def _prepare_expression(expr: pd.DataFrame, top_variable_genes: int | None) -> pd.DataFrame:
    expr = expr.astype(float)
    complete = expr.notna().all(axis=1)
    variance = expr.var(axis=1)
    keep = complete & (variance > 0)
    n_removed = int((~keep).sum())
    if n_removed:
        logger.info("Remove %d genes with missing values or zero variance.", n_removed)
    expr = expr.loc[keep]

    if top_variable_genes is not None and len(expr) > top_variable_genes:
        top = variance.loc[expr.index].nlargest(top_variable_genes).index
        expr = expr.loc[top]
        logger.info("Keep the %d most variable genes.", top_variable_genes)

    if expr.shape[1] < 3:
        raise ValueError(f"At least 3 samples are needed, got {expr.shape[1]}.")
    if len(expr) < 2:
        raise ValueError("Fewer than 2 genes left after filtering.")
    return expr


def _prepare_traits(traits: pd.DataFrame | None, samples: pd.Index) -> pd.DataFrame:
    """Numeric trait matrix aligned to *samples*; categories one-hot encoded."""
    if traits is None or traits.empty:
        return pd.DataFrame(index=samples)

    missing = [s for s in samples if s not in traits.index]
    if missing:
        raise ValueError(f"Samples {missing} not found in traits.")
    traits = traits.loc[samples]

    numeric = traits.select_dtypes(include="number")
    categorical = traits.drop(columns=numeric.columns)
    # Identifier-like columns (one level per sample) carry no trait.
    categorical = categorical.loc[:, categorical.nunique() < len(samples)]
    parts = [numeric.astype(float)]
    if not categorical.empty:
        parts.append(pd.get_dummies(categorical.astype(str), dtype=float))
    encoded = pd.concat(parts, axis=1)

    constant = encoded.columns[encoded.nunique(dropna=True) < 2]
    if len(constant):
        logger.warning("Ignore constant traits: %s", ", ".join(map(str, constant)))
        encoded = encoded.drop(columns=constant)
    return encoded


# ──────────────────────────────────────────────────────────────────────
# Network construction
# ──────────────────────────────────────────────────────────────────────

def adjacency(cor: np.ndarray, power: float, network_type: str = "unsigned") -> np.ndarray:
    """Soft-thresholded adjacency with zero diagonal."""
    if network_type == "unsigned":
        adj = np.abs(cor) ** power
    elif network_type == "signed":
        adj = ((1 + cor) / 2) ** power
    else:
        raise ValueError(
            f"network_type must be one of {NETWORK_TYPES}, got '{network_type}'."
        )
    np.fill_diagonal(adj, 0.0)
    return adj


def scale_free_fit(connectivity: np.ndarray, n_breaks: int = WGCNA_DEFAULTS["n_breaks"]) -> tuple[float, float]:
    """
    Scale-free topology fit of a connectivity distribution.

    Returns
    -------
    tuple[float, float]
        (signed R², slope) of ``log10 p(k)`` on ``log10 k`` over
        *n_breaks* equal-width bins.
    """
    counts, edges = np.histogram(connectivity, bins=n_breaks)
    midpoints = (edges[:-1] + edges[1:]) / 2
    bin_index = np.clip(np.digitize(connectivity, edges[1:-1]), 0, n_breaks - 1)
    mean_k = np.array([
        connectivity[bin_index == b].mean() if counts[b] else midpoints[b]
        for b in range(n_breaks)
    ])
    p_k = counts / counts.sum()

    usable = mean_k > 0
    x = np.log10(mean_k[usable])
    y = np.log10(p_k[usable] + 1e-9)
    if x.size < 2 or np.ptp(x) == 0:
        return 0.0, 0.0
    fit = stats.linregress(x, y)
    return float(-np.sign(fit.slope) * fit.rvalue ** 2), float(fit.slope)


def pick_soft_threshold(
    cor: np.ndarray,
    powers: Sequence[float],
    network_type: str,
    rsquared_cut: float,
    n_breaks: int = WGCNA_DEFAULTS["n_breaks"],
) -> tuple[float, pd.DataFrame]:
    """
    Fit indices per power and the chosen power.

    The chosen power is the lowest with signed R² >= *rsquared_cut*, or
    the best-fitting one if none reaches it.
    """
    rows = []
    for power in powers:
        k = adjacency(cor, power, network_type).sum(axis=1)
        r2, slope = scale_free_fit(k, n_breaks)
        rows.append({
            "Power": power,
            "SFT.R.sq": r2,
            "slope": slope,
            "mean.k.": k.mean(),
            "median.k.": np.median(k),
            "max.k.": k.max(),
        })
    table = pd.DataFrame(rows)

    reached = table.loc[table["SFT.R.sq"] >= rsquared_cut, "Power"]
    if len(reached):
        power = reached.iloc[0]
    else:
        power = table.loc[table["SFT.R.sq"].idxmax(), "Power"]
        logger.warning(
            "No power reaches a scale-free fit of %.2f; using the best fit (power %s, R² %.2f).",
            rsquared_cut, power, table["SFT.R.sq"].max(),
        )
    return power, table


def topological_overlap(adj: np.ndarray) -> np.ndarray:
    """TOM similarity of an adjacency with zero diagonal; diagonal set to 1."""
    k = adj.sum(axis=1)
    shared = adj @ adj
    tom = (shared + adj) / (np.minimum.outer(k, k) + 1 - adj)
    np.fill_diagonal(tom, 1.0)
    return tom


# ──────────────────────────────────────────────────────────────────────
# Modules
# ──────────────────────────────────────────────────────────────────────

def module_color_names(n_modules: int, colors: Sequence[str] = WGCNA_DEFAULTS["module_colors"]) -> list[str]:
    """*n_modules* colour labels, cycling with a numeric suffix past the list."""
    names = []
    for i in range(n_modules):
        cycle, pos = divmod(i, len(colors))
        names.append(colors[pos] if cycle == 0 else f"{colors[pos]}{cycle + 1}")
    return names


def _plot_color(name: str) -> tuple:
    if name in _PLOT_COLORS:
        return to_rgb(_PLOT_COLORS[name])
    return to_rgb(re.sub(r"\d+$", "", name))


def cut_tree_static(
    tree: np.ndarray,
    genes: pd.Index,
    cut_height: float,
    min_module_size: int,
) -> pd.Series:
    """Modules of a static tree cut, coloured by decreasing size."""
    unassigned = WGCNA_DEFAULTS["unassigned_color"]
    labels = pd.Series(hierarchy.fcluster(tree, t=cut_height, criterion="distance"), index=genes)
    sizes = labels.value_counts()
    kept = sizes[sizes >= min_module_size]
    # Sort by size, ties by first appearance.
    order = sorted(kept.index, key=lambda lbl: (-kept[lbl], lbl))
    colors = dict(zip(order, module_color_names(len(order))))
    return labels.map(lambda lbl: colors.get(lbl, unassigned)).rename("module")


def module_eigengenes(expr: pd.DataFrame, modules: pd.Series) -> pd.DataFrame:
    """
    First principal component of each module (samples × ``ME<colour>``).

    Genes are standardised first; the sign is chosen so the eigengene
    correlates positively with the module's average expression.
    """
    unassigned = WGCNA_DEFAULTS["unassigned_color"]
    eigengenes = {}
    for color in modules.unique():
        if color == unassigned:
            continue
        block = expr.loc[modules.index[modules == color]].to_numpy()
        scaled = (block - block.mean(axis=1, keepdims=True)) / block.std(axis=1, ddof=1, keepdims=True)
        _, _, vt = np.linalg.svd(scaled, full_matrices=False)
        eigengene = vt[0]
        if np.corrcoef(eigengene, scaled.mean(axis=0))[0, 1] < 0:
            eigengene = -eigengene
        eigengenes[f"ME{color}"] = eigengene
    return pd.DataFrame(eigengenes, index=expr.columns)


def merge_close_modules(
    expr: pd.DataFrame,
    modules: pd.Series,
    merge_cut_height: float,
) -> pd.Series:
    """
    Merge modules whose eigengene dissimilarity ``1 - cor`` lies below
    *merge_cut_height*; merged modules take the colour of their largest
    member.  Repeated until nothing merges.
    """
    while True:
        eigengenes = module_eigengenes(expr, modules)
        if eigengenes.shape[1] < 2:
            return modules
        dissimilarity = 1 - eigengenes.corr().to_numpy()
        np.fill_diagonal(dissimilarity, 0.0)
        tree = hierarchy.linkage(squareform(dissimilarity, checks=False), method="average")
        groups = hierarchy.fcluster(tree, t=merge_cut_height, criterion="distance")
        if len(set(groups)) == eigengenes.shape[1]:
            return modules

        sizes = modules.value_counts()
        colors = [c[2:] for c in eigengenes.columns]
        mapping = {}
        for group in set(groups):
            members = [c for c, g in zip(colors, groups) if g == group]
            target = max(members, key=lambda c: sizes[c])
            mapping.update({c: target for c in members})
        logger.info(
            "Merge modules: %s",
            ", ".join(f"{c}→{t}" for c, t in mapping.items() if c != t),
        )
        modules = modules.map(lambda c: mapping.get(c, c))


def correlation_pvalues(cor: pd.DataFrame, n: int) -> pd.DataFrame:
    """Two-sided Student p-values of Pearson correlations on *n* samples."""
    r = cor.to_numpy().clip(-1, 1)
    with np.errstate(divide="ignore", invalid="ignore"):
        t = r * np.sqrt((n - 2) / (1 - r ** 2))
    p = 2 * stats.t.sf(np.abs(t), n - 2)
    return pd.DataFrame(p, index=cor.index, columns=cor.columns)


def _cross_correlation(a: pd.DataFrame, b: pd.DataFrame) -> pd.DataFrame:
    """Pearson correlations between the columns of *a* and of *b*."""
    za = (a - a.mean()) / a.std(ddof=1)
    zb = (b - b.mean()) / b.std(ddof=1)
    cor = za.T.to_numpy() @ zb.to_numpy() / (len(a) - 1)
    return pd.DataFrame(cor, index=a.columns, columns=b.columns)


# ──────────────────────────────────────────────────────────────────────
# Plots
# ──────────────────────────────────────────────────────────────────────

def _sample_dendrogram_plot(expr: pd.DataFrame):
    tree = hierarchy.linkage(expr.T.to_numpy(), method="average", metric="euclidean")
    fig, ax = plt.subplots()
    hierarchy.dendrogram(tree, labels=list(expr.columns), ax=ax, leaf_rotation=90,
                         leaf_font_size=6, color_threshold=0, above_threshold_color="black")
    ax.set_title("Sample clustering", fontsize=THEME["font_title"], fontweight="bold")
    ax.set_ylabel("Height", fontsize=THEME["font_axes"])
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    return fig


def _soft_threshold_plot(table: pd.DataFrame, rsquared_cut: float, power):
    fig, (ax_fit, ax_k) = plt.subplots(1, 2)
    ax_fit.plot(table["Power"], table["SFT.R.sq"], color=THEME["color_ns"], linewidth=0.8)
    for _, row in table.iterrows():
        color = THEME["color_down"] if row["Power"] == power else THEME["text_muted"]
        ax_fit.text(row["Power"], row["SFT.R.sq"], f"{row['Power']:g}", color=color,
                    ha="center", va="center", fontsize=7)
    ax_fit.axhline(rsquared_cut, color=THEME["color_down"], linestyle="--", linewidth=0.8)
    ax_fit.set_xlabel("Soft threshold (power)", fontsize=THEME["font_axes"])
    ax_fit.set_ylabel("Scale-free topology fit, signed R²", fontsize=THEME["font_axes"])
    ax_fit.set_title("Scale independence", fontsize=THEME["font_title"])

    ax_k.plot(table["Power"], table["mean.k."], color=THEME["color_ns"], linewidth=0.8)
    for _, row in table.iterrows():
        ax_k.text(row["Power"], row["mean.k."], f"{row['Power']:g}", color=THEME["text_muted"],
                  ha="center", va="center", fontsize=7)
    ax_k.set_xlabel("Soft threshold (power)", fontsize=THEME["font_axes"])
    ax_k.set_ylabel("Mean connectivity", fontsize=THEME["font_axes"])
    ax_k.set_title("Mean connectivity", fontsize=THEME["font_title"])
    fig.tight_layout()
    return fig


def _gene_dendrogram_plot(tree: np.ndarray, modules: pd.Series, cut_height: float):
    fig, (ax_tree, ax_bar) = plt.subplots(
        2, 1, gridspec_kw={"height_ratios": [4, 1]}, sharex=False,
    )
    dendro = hierarchy.dendrogram(tree, no_labels=True, ax=ax_tree, color_threshold=0,
                                  above_threshold_color="black")
    ax_tree.axhline(cut_height, color=THEME["color_down"], linestyle="--", linewidth=0.8)
    ax_tree.set_ylabel("Height (1 - TOM)", fontsize=THEME["font_axes"])
    ax_tree.set_title("Gene dendrogram and module colours",
                      fontsize=THEME["font_title"], fontweight="bold")
    ax_tree.spines["top"].set_visible(False)
    ax_tree.spines["right"].set_visible(False)

    ordered = modules.iloc[dendro["leaves"]]
    ax_bar.imshow([[_plot_color(c) for c in ordered]], aspect="auto", interpolation="nearest")
    ax_bar.set_yticks([0])
    ax_bar.set_yticklabels(["Module"], fontsize=THEME["font_axes"])
    ax_bar.set_xticks([])
    fig.tight_layout()
    return fig


def _module_trait_plot(cor: pd.DataFrame, pvalues: pd.DataFrame):
    annot = cor.round(2).astype(str) + "\n(" + pvalues.apply(lambda col: col.map("{:.1e}".format)) + ")"
    fig, ax = plt.subplots()
    sns.heatmap(
        cor, annot=annot, fmt="", cmap=HEATMAP_CONFIG["cmap"], vmin=-1, vmax=1, center=0,
        annot_kws={"fontsize": 6}, cbar_kws={"label": "Pearson r"}, ax=ax,
    )
    ax.set_title("Module-trait relationships", fontsize=THEME["font_title"], fontweight="bold")
    ax.tick_params(labelsize=7)
    fig.tight_layout()
    return fig


# ──────────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────────

def wrap_wgcna(
    expr,
    traits: pd.DataFrame | None = None,
    powers: Sequence[float] = WGCNA_DEFAULTS["powers"],
    network_type: str = WGCNA_DEFAULTS["network_type"],
    rsquared_cut: float = WGCNA_DEFAULTS["rsquared_cut"],
    soft_power: float | None = None,
    top_variable_genes: int | None = WGCNA_DEFAULTS["top_variable_genes"],
    min_module_size: int = WGCNA_DEFAULTS["min_module_size"],
    cut_height: float | None = None,
    merge_cut_height: float = WGCNA_DEFAULTS["merge_cut_height"],
    projectfolder: str | Path = WGCNA_DEFAULTS["projectfolder"],
    projectname: str | None = "",
    figure_res: int = FIGURE_CONFIG["dpi"],
) -> dict:
    """
    Co-expression modules and their relation to sample traits.

    Parameters
    ----------
    expr : ExpressionSet or pd.DataFrame
        Log-scale expression, genes × samples.
    traits : pd.DataFrame, optional
        Samples × traits.  Without it, the ``pheno_data`` of an
        ExpressionSet is used.
    soft_power : float, optional
        Fixed power; skips the automatic choice (the fit table is still
        written).
    cut_height : float, optional
        Static cut height on the ``1 - TOM`` dendrogram; default 99 % of
        its height range.

    Returns
    -------
    dict
        ``power``, ``soft_threshold``, ``modules`` (gene → colour),
        ``eigengenes``, ``module_trait_cor``, ``module_trait_p``,
        ``gene_info``.
    """
    if network_type not in NETWORK_TYPES:
        raise ValueError(f"network_type must be one of {NETWORK_TYPES}, got '{network_type}'.")
    if isinstance(expr, ExpressionSet):
        if traits is None:
            traits = expr.pheno_data
        expr = expr.exprs
    elif not isinstance(expr, pd.DataFrame):
        raise TypeError("expr must be an ExpressionSet or a pandas DataFrame")

    start = time.monotonic()
    prefix = project_prefix(projectname)
    folder = ensure_dirs(projectfolder)

    expr = _prepare_expression(expr, top_variable_genes)
    trait_df = _prepare_traits(traits, expr.columns)
    logger.info("WGCNA on %d genes and %d samples.", *expr.shape)

    path = folder / f"{prefix}sample_clustering.png"
    logger.info("Write sample clustering to %s", path)
    save_figure(_sample_dendrogram_plot(expr), path, dpi=figure_res)

    # ── Soft threshold ─────────────────────────────────────────────
    cor = np.corrcoef(expr.to_numpy())
    chosen, sft_table = pick_soft_threshold(cor, powers, network_type, rsquared_cut)
    power = soft_power if soft_power is not None else chosen
    logger.info("Soft-thresholding power: %s", power)
    write_table(sft_table, folder / f"{prefix}soft_threshold.txt")
    save_figure(_soft_threshold_plot(sft_table, rsquared_cut, power),
                folder / f"{prefix}soft_threshold.png", dpi=figure_res)

    # ── Modules ────────────────────────────────────────────────────
    dissimilarity = 1 - topological_overlap(adjacency(cor, power, network_type))
    tree = hierarchy.linkage(squareform(dissimilarity, checks=False), method="average")
    if cut_height is None:
        heights = tree[:, 2]
        cut_height = heights.min() + WGCNA_DEFAULTS["cut_height_fraction"] * np.ptp(heights)
    modules = cut_tree_static(tree, expr.index, cut_height, min_module_size)
    modules = merge_close_modules(expr, modules, merge_cut_height)
    logger.info("Module sizes:\n%s", modules.value_counts().to_string())

    path = folder / f"{prefix}gene_dendrogram_modules.png"
    logger.info("Write gene dendrogram to %s", path)
    save_figure(_gene_dendrogram_plot(tree, modules, cut_height), path, dpi=figure_res)

    eigengenes = module_eigengenes(expr, modules)
    write_table(eigengenes.rename_axis("sample").reset_index(),
                folder / f"{prefix}module_eigengenes.txt")

    # ── Module membership ──────────────────────────────────────────
    kme = pd.Series(np.nan, index=expr.index, name="kME")
    if not eigengenes.empty:
        membership = _cross_correlation(expr.T, eigengenes)
        for color in modules.unique():
            column = f"ME{color}"
            if column in membership.columns:
                genes = modules.index[modules == color]
                kme.loc[genes] = membership.loc[genes, column]
    gene_info = pd.DataFrame({"gene": expr.index, "module": modules.values, "kME": kme.values})
    write_table(gene_info, folder / f"{prefix}gene_modules.txt")

    # ── Traits ─────────────────────────────────────────────────────
    if trait_df.empty or eigengenes.empty:
        logger.warning("No traits or no modules; module-trait relationships skipped.")
        trait_cor = pd.DataFrame(index=eigengenes.columns)
        trait_p = pd.DataFrame(index=eigengenes.columns)
    else:
        trait_cor = _cross_correlation(eigengenes, trait_df)
        trait_p = correlation_pvalues(trait_cor, len(expr.columns))
        write_table(trait_cor.rename_axis("module").reset_index(),
                    folder / f"{prefix}module_trait_correlation.txt")
        write_table(trait_p.rename_axis("module").reset_index(),
                    folder / f"{prefix}module_trait_pvalue.txt")
        path = folder / f"{prefix}module_trait_relationships.png"
        logger.info("Write module-trait heatmap to %s", path)
        save_figure(_module_trait_plot(trait_cor, trait_p), path,
                    size_mm=FIGURE_CONFIG["heatmap_size_mm"], dpi=figure_res)

    record = build_run_record(
        "wgcna",
        parameters={
            "powers": list(powers),
            "network_type": network_type,
            "rsquared_cut": rsquared_cut,
            "soft_power": soft_power,
            "top_variable_genes": top_variable_genes,
            "min_module_size": min_module_size,
            "cut_height": cut_height,
            "merge_cut_height": merge_cut_height,
        },
        input_data={"n_genes": expr.shape[0], "n_samples": expr.shape[1],
                    "traits": list(trait_df.columns)},
        results_summary={"power": power, "module_sizes": modules.value_counts().to_dict()},
        elapsed_seconds=time.monotonic() - start,
    )
    write_run_record(record, folder / f"{prefix}run_info_wgcna.json")

    return {
        "power": power,
        "soft_threshold": sft_table,
        "modules": modules,
        "eigengenes": eigengenes,
        "module_trait_cor": trait_cor,
        "module_trait_p": trait_p,
        "gene_info": gene_info,
    }
