"""
enrichment.py — Gene-set enrichment of DEG lists (gseapy).

Over-representation analysis (hypergeometric test, offline
``gseapy.enrich``) for every gene list × gene-set library, and
optionally pre-ranked GSEA (``gseapy.prerank``) on fold changes.

Output layout below ``projectfolder``::

    ORA/<prefix><list>_<library>.txt
    ORA/Dotplot_<prefix><list>_<library>.png
    GSEA/<prefix><list>_<library>.txt

Functions
---------
load_gene_sets(source, min_size, max_size, universe, organism)
    → Gene-set dict from a dict, a GMT file or an Enrichr library name,
      filtered by size.

extract_symbols(gene_list, symbol_column)
    → Unique, non-empty symbols of a DEG table or iterable.

run_ora(genes, gene_sets, universe) / run_prerank(ranking, gene_sets, ...)
    → Thin gseapy calls returning result tables.

wrap_cluster_profiler(gene_lists, gene_sets, ...)
    → Full enrichment run with tables and dot plots.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Iterable, Mapping

import gseapy as gp
import pandas as pd

from gexkit.audit import build_run_record, write_run_record
from gexkit.config import ENRICHMENT_DEFAULTS, FIGURE_CONFIG
from gexkit.data_io import ensure_dirs, project_prefix, write_table
from gexkit.validation import require_columns
from gexkit.visualization import MM_PER_INCH, save_figure

logger = logging.getLogger(__name__)

ORA_P_COLUMN = "Adjusted P-value"
GSEA_P_COLUMN = "FDR q-val"


def load_gene_sets(
    source: Mapping[str, Iterable[str]] | str | Path,
    min_size: int = ENRICHMENT_DEFAULTS["min_size"],
    max_size: int = ENRICHMENT_DEFAULTS["max_size"],
    universe: Iterable[str] | None = None,
    organism: str = ENRICHMENT_DEFAULTS["organism"],
) -> dict[str, list[str]]:
    """
    Read a gene-set library and keep sets with ``min_size <= n <= max_size``.

    *source* is a ``{term: genes}`` dict, the path of a GMT file, or the
    name of an Enrichr library (e.g. ``"MSigDB_Hallmark_2020"``), which
    is downloaded for *organism*.  With a *universe*, set sizes are
    counted within the universe.
    """
    if isinstance(source, Path) or (
        isinstance(source, str) and (source.lower().endswith(".gmt") or Path(source).is_file())
    ):
        gene_sets = gp.read_gmt(str(source))
    elif isinstance(source, str):
        logger.info("Downloading Enrichr library %s (%s)", source, organism)
        gene_sets = gp.get_library(name=source, organism=organism)
    else:
        gene_sets = {str(term): list(genes) for term, genes in source.items()}

    universe_set = set(universe) if universe is not None else None
    kept = {}
    for term, genes in gene_sets.items():
        members = set(genes) if universe_set is None else set(genes) & universe_set
        if min_size <= len(members) <= max_size:
            kept[term] = sorted(members)
    logger.info("%d of %d gene sets within size range [%d, %d]",
                len(kept), len(gene_sets), min_size, max_size)
    return kept


def extract_symbols(
    gene_list: pd.DataFrame | Iterable[str],
    symbol_column: str = ENRICHMENT_DEFAULTS["symbol_column"],
) -> list[str]:
    """Unique, non-empty gene symbols in input order."""
    if isinstance(gene_list, pd.DataFrame):
        require_columns(gene_list, symbol_column, "gene list")
        values = gene_list[symbol_column].dropna().astype(str)
    else:
        values = pd.Series(list(gene_list), dtype=object).dropna().astype(str)
    values = values.str.strip()
    return list(dict.fromkeys(values[values != ""]))


def run_ora(
    genes: list[str],
    gene_sets: dict[str, list[str]],
    universe: list[str] | None = None,
) -> pd.DataFrame:
    """
    Hypergeometric over-representation test of *genes* in *gene_sets*.

    Returns the gseapy results table (Term, Overlap, P-value,
    Adjusted P-value, Odds Ratio, Combined Score, Genes), sorted by
    adjusted p-value; empty when no set overlaps the list.
    """
    try:
        enr = gp.enrich(
            gene_list=genes,
            gene_sets=gene_sets,
            background=universe,
            outdir=None,
            cutoff=1.0,
            no_plot=True,
            verbose=False,
        )
    except ValueError as exc:
        logger.warning("No enrichment result: %s", exc)
        return pd.DataFrame(columns=["Term", "Overlap", "P-value", ORA_P_COLUMN, "Genes"])
    results = enr.results
    if results is None or len(results) == 0:
        return pd.DataFrame(columns=["Term", "Overlap", "P-value", ORA_P_COLUMN, "Genes"])
    results = results.drop(columns=["Gene_set"], errors="ignore")
    return results.sort_values(ORA_P_COLUMN, kind="mergesort").reset_index(drop=True)


def run_prerank(
    ranking: pd.Series,
    gene_sets: dict[str, list[str]],
    min_size: int = ENRICHMENT_DEFAULTS["min_size"],
    max_size: int = ENRICHMENT_DEFAULTS["max_size"],
    permutations: int = ENRICHMENT_DEFAULTS["gsea_permutations"],
    seed: int = ENRICHMENT_DEFAULTS["seed"],
) -> pd.DataFrame:
    """
    Pre-ranked GSEA.  *ranking* is indexed by gene, values are the
    ranking statistic (e.g. log2 fold change).
    """
    ranking = ranking.sort_values(ascending=False)
    res = gp.prerank(
        rnk=ranking,
        gene_sets=gene_sets,
        min_size=min_size,
        max_size=max_size,
        permutation_num=permutations,
        seed=seed,
        threads=1,
        outdir=None,
        no_plot=True,
        verbose=False,
    )
    results = res.res2d.drop(columns=["Name"], errors="ignore")
    return results.sort_values(GSEA_P_COLUMN, kind="mergesort").reset_index(drop=True)


def _ranking(table: pd.DataFrame, symbol_column: str, fc_column: str) -> pd.Series:
    """Fold change per symbol; duplicated symbols keep the largest |fc|."""
    require_columns(table, [symbol_column, fc_column], "gene list")
    ranked = table[[symbol_column, fc_column]].dropna()
    ranked = ranked[ranked[symbol_column].astype(str).str.strip() != ""]
    ranked = ranked.reindex(ranked[fc_column].abs().sort_values(ascending=False).index)
    ranked = ranked.drop_duplicates(subset=symbol_column)
    return ranked.set_index(ranked[symbol_column].astype(str))[fc_column].astype(float)


def _expand_lists(
    gene_lists: Mapping[str, pd.DataFrame | Iterable[str]],
    fc_column: str | None,
    split_by_direction: bool,
) -> dict:
    """Add ``<name>_up`` / ``<name>_down`` subsets of DEG tables."""
    expanded = {}
    for name, gene_list in gene_lists.items():
        expanded[name] = gene_list
        if split_by_direction and fc_column and isinstance(gene_list, pd.DataFrame):
            require_columns(gene_list, fc_column, "gene list")
            expanded[f"{name}_up"] = gene_list[gene_list[fc_column] > 0]
            expanded[f"{name}_down"] = gene_list[gene_list[fc_column] < 0]
    return expanded


def _dotplot(results: pd.DataFrame, title: str, path: Path, cutoff: float,
             show_category: int, figure_res: int) -> None:
    figsize = ENRICHMENT_DEFAULTS["figsize"]
    ax = gp.dotplot(
        results,
        column=ORA_P_COLUMN,
        title=title,
        cutoff=cutoff,
        top_term=show_category,
        figsize=figsize,
    )
    save_figure(ax.figure, path,
                size_mm=(figsize[0] * MM_PER_INCH, figsize[1] * MM_PER_INCH),
                dpi=figure_res)


def wrap_cluster_profiler(
    gene_lists: Mapping[str, pd.DataFrame | Iterable[str]],
    gene_sets: Mapping[str, Mapping[str, Iterable[str]] | str | Path],
    universe: Iterable[str] | None = None,
    symbol_column: str = ENRICHMENT_DEFAULTS["symbol_column"],
    fc_column: str | None = None,
    split_by_direction: bool = False,
    p_value_cutoff: float = ENRICHMENT_DEFAULTS["p_value_cutoff"],
    min_size: int = ENRICHMENT_DEFAULTS["min_size"],
    max_size: int = ENRICHMENT_DEFAULTS["max_size"],
    run_gsea: bool = False,
    gsea_permutations: int = ENRICHMENT_DEFAULTS["gsea_permutations"],
    seed: int = ENRICHMENT_DEFAULTS["seed"],
    organism: str = ENRICHMENT_DEFAULTS["organism"],
    show_category: int = ENRICHMENT_DEFAULTS["show_category"],
    projectfolder: str | Path = ENRICHMENT_DEFAULTS["projectfolder"],
    projectname: str | None = "",
    figure_res: int = FIGURE_CONFIG["dpi"],
    plot: bool = True,
) -> dict:
    """
    Over-representation analysis (and optional GSEA) of gene lists.

    Parameters
    ----------
    gene_lists : dict
        Name → DEG table (symbols in *symbol_column*) or iterable of
        symbols, e.g. ``wrap_deseq2(...)["DEgenes"]``.
    gene_sets : dict
        Library name → ``{term: genes}``, path of a GMT file, or name of
        an Enrichr library.
    universe : iterable of str, optional
        Background genes (e.g. all tested genes).
    organism : str
        Organism of Enrichr libraries named in *gene_sets*.
    fc_column : str, optional
        Fold-change column; needed for ``split_by_direction`` and GSEA.
    split_by_direction : bool
        Also test up- and down-regulated genes separately.
    p_value_cutoff : float
        Adjusted p-value for dot plots.
    run_gsea : bool
        Run pre-ranked GSEA on each DEG table ranked by *fc_column*.
    plot : bool
        Write dot plots of significant ORA terms.

    Returns
    -------
    dict
        ``{"ORA": {list: {library: df}}, "GSEA": {list: {library: df}}}``.

    Raises
    ------
    ValueError
        If GSEA is requested without *fc_column*, or columns are missing.
    """
    if run_gsea and not fc_column:
        raise ValueError("run_gsea requires fc_column.")

    start = time.monotonic()
    prefix = project_prefix(projectname)
    folder = ensure_dirs(projectfolder, "ORA", *(("GSEA",) if run_gsea else ()))

    universe_list = list(dict.fromkeys(universe)) if universe is not None else None
    libraries = {
        str(lib): load_gene_sets(source, min_size, max_size, universe_list, organism)
        for lib, source in gene_sets.items()
    }

    results: dict[str, dict] = {"ORA": {}, "GSEA": {}}
    for name, gene_list in _expand_lists(gene_lists, fc_column, split_by_direction).items():
        genes = extract_symbols(gene_list, symbol_column)
        if not genes:
            logger.warning("Gene list %s is empty; skipped.", name)
            continue
        logger.info("Over-representation analysis of %s (%d genes)", name, len(genes))
        results["ORA"][name] = {}
        for lib, sets in libraries.items():
            if not sets:
                logger.warning("Library %s has no gene sets in size range; skipped.", lib)
                continue
            table = run_ora(genes, sets, universe_list)
            results["ORA"][name][lib] = table
            write_table(table, folder / "ORA" / f"{prefix}{name}_{lib}.txt")
            n_sig = int((table[ORA_P_COLUMN] <= p_value_cutoff).sum()) if len(table) else 0
            logger.info("%s / %s: %d significant terms", name, lib, n_sig)
            if plot and n_sig > 0:
                _dotplot(table, f"{name} ({lib})",
                         folder / "ORA" / f"Dotplot_{prefix}{name}_{lib}.png",
                         p_value_cutoff, show_category, figure_res)

    if run_gsea:
        for name, gene_list in gene_lists.items():
            if not isinstance(gene_list, pd.DataFrame):
                logger.warning("GSEA of %s needs a table with %s; skipped.", name, fc_column)
                continue
            ranking = _ranking(gene_list, symbol_column, fc_column)
            if ranking.empty:
                logger.warning("Gene list %s has no ranked genes; skipped.", name)
                continue
            logger.info("Pre-ranked GSEA of %s (%d genes)", name, len(ranking))
            results["GSEA"][name] = {}
            for lib, sets in libraries.items():
                if not sets:
                    continue
                table = run_prerank(ranking, sets, min_size, max_size, gsea_permutations, seed)
                results["GSEA"][name][lib] = table
                write_table(table, folder / "GSEA" / f"{prefix}{name}_{lib}.txt")

    record = build_run_record(
        "enrichment",
        parameters={
            "libraries": list(libraries),
            "organism": organism,
            "p_value_cutoff": p_value_cutoff,
            "min_size": min_size,
            "max_size": max_size,
            "split_by_direction": split_by_direction,
            "run_gsea": run_gsea,
            "gsea_permutations": gsea_permutations,
        },
        input_data={
            "gene_lists": list(gene_lists),
            "universe_size": len(universe_list) if universe_list is not None else None,
            "gene_sets_per_library": {lib: len(s) for lib, s in libraries.items()},
        },
        results_summary={
            "ora_lists": list(results["ORA"]),
            "gsea_lists": list(results["GSEA"]),
        },
        seeds={"gsea_seed": seed} if run_gsea else None,
        elapsed_seconds=time.monotonic() - start,
    )
    write_run_record(record, folder / f"{prefix}run_info_enrichment.json")
    return results
