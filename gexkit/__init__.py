"""
gexkit -- Gene-expression analysis wrappers.

Differential expression (DESeq2 via pydeseq2, limma-style linear
models), enrichment, motif, co-expression and regional association
analyses that write their tables and figures into a project folder.

Usage:
    from gexkit import CountDataSet, wrap_deseq2
    from gexkit.eset import process_eset
    from gexkit.config import setup_logging
"""

from gexkit.containers import CountDataSet, ExpressionSet
from gexkit.eset import process_eset
from gexkit.gene_lists import filter_gene_lists
from gexkit.config import set_theme, setup_logging, THEME, THEME_PRESETS
from gexkit.audit import get_library_versions, format_run_record

# --- Lazy imports for heavy analysis dependencies (pydeseq2, gseapy) ---
_LAZY_NAMES = {
    "wrap_deseq2": "gexkit.deseq",
    "wrap_limma": "gexkit.limma",
    "wrap_cluster_profiler": "gexkit.enrichment",
    "wrap_pwm_enrich": "gexkit.motifs",
    "wrap_wgcna": "gexkit.wgcna",
    "plot_region": "gexkit.region",
}


def __getattr__(name: str):
    if name in _LAZY_NAMES:
        import importlib
        return getattr(importlib.import_module(_LAZY_NAMES[name]), name)
    raise AttributeError(f"module 'gexkit' has no attribute {name!r}")


__all__ = [
    "CountDataSet",
    "ExpressionSet",
    "process_eset",
    "filter_gene_lists",
    "wrap_deseq2",
    "wrap_limma",
    "wrap_cluster_profiler",
    "wrap_pwm_enrich",
    "wrap_wgcna",
    "plot_region",
    "set_theme",
    "setup_logging",
    "THEME",
    "THEME_PRESETS",
    "get_library_versions",
    "format_run_record",
]
