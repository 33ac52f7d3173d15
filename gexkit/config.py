"""
config.py — Central configuration for the gexkit analysis wrappers.

This module centralises ALL default parameters, thresholds and plot
settings used by the wrapper functions. Keeping them in a single place
avoids magic numbers scattered across the modules and lets an analyst
change a default once for a whole project.

Sections
--------
0. THEME / set_theme()
   → Shared colours for every plot (light and dark presets).

1. Analysis defaults
   → DESEQ2_DEFAULTS, LIMMA_DEFAULTS, FILTER_DEFAULTS,
     ENRICHMENT_DEFAULTS, PWM_DEFAULTS, WGCNA_DEFAULTS, REGION_DEFAULTS.

2. Plot configuration
   → FIGURE_CONFIG, VOLCANO_PLOT_CONFIG, PCA_PLOT_CONFIG, MA_PLOT_CONFIG,
     HEATMAP_CONFIG, VENN_CONFIG.

3. I/O and remote services
   → FILE_CONFIG, ENSEMBL_CONFIG.

4. Logging
   → LOGGING_CONFIG, setup_logging().

Usage example
-------------
    from gexkit.config import DESEQ2_DEFAULTS, VOLCANO_PLOT_CONFIG

    min_rowsum = DESEQ2_DEFAULTS["min_rowsum"]
    color_up = VOLCANO_PLOT_CONFIG["color_up"]
"""

from __future__ import annotations

import logging
import math

# ──────────────────────────────────────────────────────────────────────
# 0. Plot theme (Light and Dark presets)
# ──────────────────────────────────────────────────────────────────────
# Every plotting function reads from the mutable ``THEME`` dict, so
# switching it at runtime (via ``set_theme()``) propagates everywhere.

THEME_LIGHT: dict = {
    # ── Surfaces ──────────────────────────────────────────────────────
    "bg":          "#ffffff",
    "surface":     "#fafafa",
    "border":      "#cccccc",
    # ── Typography ────────────────────────────────────────────────────
    "text":        "#1f2328",
    "text_muted":  "#555555",
    "text_subtle": "#8b949e",
    # ── Semantic ──────────────────────────────────────────────────────
    "color_up": "darkgreen", "color_down": "red", "color_ns": "#bdbdbd",
    "color_highlight": "#6a1b9a",
    # ── Group palette (Set2 + extras) ─────────────────────────────────
    "palette": [
        "#66c2a5", "#fc8d62", "#8da0cb", "#e78ac3", "#a6d854",
        "#ffd92f", "#e5c494", "#b3b3b3", "#1b9e77", "#d95f02",
        "#7570b3", "#e7298a", "#66a61e", "#e6ab02", "#a6761d",
    ],
    # ── Colormaps ─────────────────────────────────────────────────────
    "cmap_heatmap":    "YlOrRd",
    "cmap_diverging":  "RdBu_r",
    # ── Font sizes ────────────────────────────────────────────────────
    "font_title": 12, "font_axes": 10, "font_legend": 8,
    "font_annotation": 8,
}

THEME_DARK: dict = {
    "bg":          "#0e1117",
    "surface":     "#161b22",
    "border":      "#2a3444",
    "text":        "#e6edf3",
    "text_muted":  "#8b949e",
    "text_subtle": "#6e7681",
    "color_up": "#3fb950", "color_down": "#f85149", "color_ns": "#484f58",
    "color_highlight": "#bc8cff",
    "palette": [
        "#58d5c1", "#f85149", "#58a6ff", "#d29922", "#bc8cff",
        "#f778ba", "#3fb950", "#db6d28", "#79c0ff", "#d2a8ff",
        "#56d364", "#ff7b72", "#a5d6ff", "#e3b341", "#7ee787",
    ],
    "cmap_heatmap":    "magma",
    "cmap_diverging":  "RdBu_r",
    "font_title": 12, "font_axes": 10, "font_legend": 8,
    "font_annotation": 8,
}

THEME_PRESETS: dict = {
    "light": THEME_LIGHT,
    "dark":  THEME_DARK,
}

# ── Active theme (mutable, swapped in place by set_theme()) ─────────
THEME: dict = dict(THEME_LIGHT)


def set_theme(name: str) -> None:
    """Switch the active theme in place.

    Parameters
    ----------
    name : str
        One of ``"light"`` or ``"dark"``.

    Plot configs computed at import time (``VOLCANO_PLOT_CONFIG``, etc.)
    are refreshed so they stay in sync with the new preset.
    """
    preset = THEME_PRESETS.get(name)
    if preset is None:
        raise ValueError(f"Unknown theme '{name}'. Choose from: {list(THEME_PRESETS)}")
    THEME.clear()
    THEME.update(preset)
    _refresh_plot_configs()


def _refresh_plot_configs() -> None:
    """Re-sync every plot config dict with the current THEME values.

    The dicts are updated **in place** so that modules which imported
    them via ``from gexkit.config import VOLCANO_PLOT_CONFIG`` see the
    new colours immediately.
    """
    VOLCANO_PLOT_CONFIG.update({
        "color_ns":        THEME["color_ns"],
        "color_up":        THEME["color_up"],
        "color_down":      THEME["color_down"],
        "threshold_color": THEME["border"],
        "font_title":      THEME["font_title"],
        "font_axes":       THEME["font_axes"],
        "font_annotation": THEME["font_annotation"],
    })
    PCA_PLOT_CONFIG.update({
        "color_palette": THEME["palette"],
        "font_title":    THEME["font_title"],
        "font_axes":     THEME["font_axes"],
        "font_legend":   THEME["font_legend"],
    })
    MA_PLOT_CONFIG.update({
        "color_ns":    THEME["color_ns"],
        "color_up":    THEME["color_up"],
        "color_down":  THEME["color_down"],
        "hline_color": THEME["text_subtle"],
        "font_title":  THEME["font_title"],
        "font_axes":   THEME["font_axes"],
    })
    HEATMAP_CONFIG.update({
        "cmap":          THEME["cmap_heatmap"],
        "color_palette": THEME["palette"],
        "font_title":    THEME["font_title"],
    })
    REGION_PLOT_CONFIG.update({
        "lead_color": THEME["color_highlight"],
        "font_title": THEME["font_title"],
        "font_axes":  THEME["font_axes"],
    })


# ──────────────────────────────────────────────────────────────────────
# 1. Analysis defaults
# ──────────────────────────────────────────────────────────────────────

# Group comparisons are written "groupA-groupB"; contrasts of contrasts
# (limma only) are written "(A-B)-(C-D)".
COMPARISON_SEPARATOR = "-"

# Supported multiple-testing corrections → statsmodels method names.
ADJUST_METHODS: dict = {
    "none":       None,
    "BH":         "fdr_bh",
    "fdr":        "fdr_bh",
    "BY":         "fdr_by",
    "holm":       "holm",
    "bonferroni": "bonferroni",
    "hochberg":   "simes-hochberg",
    "hommel":     "hommel",
}

DESEQ2_DEFAULTS: dict = {
    # Genes with rowSums(counts) < min_rowsum are removed before fitting.
    # Reduces memory; independent filtering inside the Wald test does the
    # stricter filtering.
    "min_rowsum": 10,

    # Thresholds for the filtered DEG tables.
    "p_value_threshold": 0.05,
    "fc_threshold": math.log2(1.5),
    "adjust_method": "BH",

    # alpha used by the independent filtering of the Wald test and by the
    # MA plot colouring (fixed, as in the classic DESeq2 workflow).
    "alpha": 0.05,

    "projectfolder": "GEX/deseq",
    "sample_column": "Sample_Name",
    "group_column": "Sample_Group",

    # Samples where every gene has at least one zero use "poscounts".
    "size_factors_fit_type": "ratio",

    # PyDESeq2 joblib workers; each gets a copy of the counts matrix.
    "n_cpus": 1,

    # PCA on the top-N most variable genes (in addition to all genes).
    "pca_top_n": 500,
}

LIMMA_DEFAULTS: dict = {
    "p_value_threshold": 0.05,
    "fc_threshold": math.log2(1.5),
    "adjust_method": "BH",
    "projectfolder": "GEX/limma",
    "sample_column": "Sample_Name",
    "group_column": "Sample_Group",
    # Newton iteration for the prior degrees of freedom.
    "trigamma_inverse_tol": 1e-8,
    "trigamma_inverse_maxiter": 50,
}

FILTER_DEFAULTS: dict = {
    "p_value_threshold": 0.05,
    "p_column": "padj",
    "fc_threshold": 0.0,
    "fc_column": "log2FoldChange",
    "directions": ("both", "up", "down"),
}

ENRICHMENT_DEFAULTS: dict = {
    "symbol_column": "symbol",
    "p_value_cutoff": 0.05,
    "min_size": 10,
    "max_size": 500,
    "gsea_permutations": 1000,
    "seed": 42,
    "organism": "Human",
    "show_category": 20,
    "projectfolder": "GEX/enrichment",
    "figsize": (6.5, 7.0),
}

PWM_DEFAULTS: dict = {
    "score_threshold": 0.8,
    "pseudocount": 0.25,
    "p_value_threshold": 0.05,
    "adjust_method": "BH",
    "seed": 1,
    "top_motifs": 20,
    "projectfolder": "TFBS/pwmenrich",
    "alphabet": "ACGT",
}

WGCNA_DEFAULTS: dict = {
    "powers": tuple(range(1, 21)),
    "network_type": "unsigned",
    "rsquared_cut": 0.85,
    "top_variable_genes": 5000,
    "min_module_size": 30,
    # Static tree cut at this fraction of the dendrogram height range.
    "cut_height_fraction": 0.99,
    "merge_cut_height": 0.25,
    "n_breaks": 10,
    "projectfolder": "GEX/WGCNA",
    # Standard WGCNA colour sequence; label 0 is always "grey".
    "module_colors": [
        "turquoise", "blue", "brown", "yellow", "green", "red", "black",
        "pink", "magenta", "purple", "greenyellow", "tan", "salmon",
        "cyan", "midnightblue", "lightcyan", "grey60", "lightgreen",
        "lightyellow", "royalblue", "darkred", "darkgreen",
        "darkturquoise", "darkgrey", "orange", "darkorange", "white",
        "skyblue", "saddlebrown", "steelblue", "paleturquoise", "violet",
        "darkolivegreen", "darkmagenta",
    ],
    "unassigned_color": "grey",
}

REGION_DEFAULTS: dict = {
    "flank": 250_000,
    "genome_build": "GRCh38",
    "snp_column": "SNP",
    "chr_column": "CHR",
    "pos_column": "BP",
    "p_column": "P",
    "gene_biotypes": ("protein_coding",),
    "significance_line": 5e-8,
    "projectfolder": "GWAS/region_plots",
}

# ──────────────────────────────────────────────────────────────────────
# 2. Plot configuration
# ──────────────────────────────────────────────────────────────────────

FIGURE_CONFIG: dict = {
    # Sizes in millimetres (as passed to the PNG device in the old scripts).
    "default_size_mm": (150, 150),
    "heatmap_size_mm": (210, 297),
    "region_size_mm": (220, 160),
    "dpi": 300,
    "format": "png",
}

VOLCANO_PLOT_CONFIG: dict = {
    "color_ns":   THEME["color_ns"],
    "alpha_ns":   0.6,
    "size_ns":    10,

    "color_up":   THEME["color_up"],
    "color_down": THEME["color_down"],
    "alpha_sig":  0.85,
    "size_sig":   16,

    "threshold_linestyle": "--",
    "threshold_color": THEME["border"],
    "threshold_linewidth": 0.9,

    # Number of significant genes labelled with their symbol.
    "n_labels": 10,

    "xlabel": r"$\log_{2}$ Fold Change",
    "ylabel_template": r"$-\log_{{10}}$({p_column})",

    "font_title":      THEME["font_title"],
    "font_axes":       THEME["font_axes"],
    "font_annotation": THEME["font_annotation"],
}

PCA_PLOT_CONFIG: dict = {
    "point_size":  60,
    "point_alpha": 0.85,
    "color_palette": THEME["palette"],
    "show_labels":    True,
    "label_max_samples": 40,
    "label_fontsize": 6,
    "font_title":  THEME["font_title"],
    "font_axes":   THEME["font_axes"],
    "font_legend": THEME["font_legend"],
}

MA_PLOT_CONFIG: dict = {
    "color_ns":   THEME["color_ns"],
    "color_up":   THEME["color_up"],
    "color_down": THEME["color_down"],
    "alpha_ns":   0.5,
    "alpha_sig":  0.85,
    "size":       8,
    "ylim":       (-2, 2),
    "alpha":      0.05,
    "hline_color": THEME["text_subtle"],
    "font_title": THEME["font_title"],
    "font_axes":  THEME["font_axes"],
}

HEATMAP_CONFIG: dict = {
    "cmap": THEME["cmap_heatmap"],
    "color_palette": THEME["palette"],
    "max_hm": 50,
    "scale": "none",
    "cex_row": 1.1,
    "cex_col": 1.1,
    # cex 1.0 corresponds to this font size in points.
    "base_fontsize": 7,
    "linkage_method": "average",
    "distance_metric": "euclidean",
    "dendrogram_ratio": 0.15,
    "font_title": THEME["font_title"],
    # Colour-key labels keyed by scale mode.
    "key_labels": {
        "none": "log2(counts)",
        "row": "row z-score",
        "column": "column z-score",
    },
}

VENN_CONFIG: dict = {
    "max_sets": 5,
    # Labels longer than this get a line break after the first "-".
    "label_wrap": 15,
    "alpha": 0.3,
    "set_prefix": "Vennset",
}

REGION_PLOT_CONFIG: dict = {
    # LD (r²) bins and colours (LocusZoom-like).
    "ld_bins":   [0.0, 0.2, 0.4, 0.6, 0.8, 1.0],
    "ld_colors": ["#357ebd", "#46b8da", "#5cb85c", "#eea236", "#d43f3a"],
    "ld_unknown_color": "#b0b0b0",
    "lead_color": THEME["color_highlight"],
    "point_size": 22,
    "gene_color": "#2c3e50",
    "gene_row_height": 1.0,
    "gene_label_fontsize": 7,
    "font_title": THEME["font_title"],
    "font_axes":  THEME["font_axes"],
}

# ──────────────────────────────────────────────────────────────────────
# 3. I/O and remote services
# ──────────────────────────────────────────────────────────────────────

FILE_CONFIG: dict = {
    # Separators recognised by file extension.
    "separators": {
        "tsv": "\t",
        "txt": "\t",
        "tab": "\t",
        "csv": ",",
    },
    # Characters accepted in nucleotide sequences.
    "sequence_alphabet": "ACGTN",
    "table_suffix": ".txt",
}

ENSEMBL_CONFIG: dict = {
    "hosts": {
        "GRCh38": "https://rest.ensembl.org",
        "GRCh37": "https://grch37.rest.ensembl.org",
    },
    "species": "human",
    "request_timeout": 60,
    "max_retries": 3,
    "backoff_base": 2,
    # Ensembl limits overlap queries to 5 Mb.
    "max_region_bp": 5_000_000,
}

# ──────────────────────────────────────────────────────────────────────
# 4. Logging
# ──────────────────────────────────────────────────────────────────────

LOGGING_CONFIG: dict = {
    "format": "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    "datefmt": "%H:%M:%S",
    "level": "INFO",
}


def setup_logging(level: str | int | None = None) -> None:
    """Attach a console handler to the ``gexkit`` logger.

    Library modules only create loggers; scripts and notebooks call this
    once to see the progress messages of the wrapper functions.
    """
    logger = logging.getLogger("gexkit")
    logger.setLevel(level or LOGGING_CONFIG["level"])
    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter(LOGGING_CONFIG["format"], LOGGING_CONFIG["datefmt"])
        )
        logger.addHandler(handler)
