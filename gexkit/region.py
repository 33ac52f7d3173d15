"""
region.py — Regional association plots (LocusZoom style).

Association results around a locus are drawn as -log10(p) against the
genomic position, coloured by linkage disequilibrium (r²) with the lead
SNP, above a track of the genes in the region.  Genes come from a
user-supplied table or from the Ensembl REST API (``overlap/region``).

Functions
---------
fetch_ensembl_genes(chrom, start, end, genome_build, biotypes)
    → Genes overlapping a region, from Ensembl.

pack_gene_rows(genes, min_gap)
    → Row index per gene so that neighbouring genes do not overlap.

plot_region(assoc, chrom, start, end, lead_snp, ...)
    → Figure and region table written to ``projectfolder``.

Usage example
-------------
    from gexkit.region import plot_region

    res = plot_region(gwas_df, lead_snp="rs1234", ld=ld_series,
                      fetch_genes=True, projectname="height")
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Mapping, Sequence

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import requests

from gexkit.config import ENSEMBL_CONFIG, FIGURE_CONFIG, REGION_DEFAULTS, REGION_PLOT_CONFIG, THEME
from gexkit.data_io import ensure_dirs, project_prefix, write_table
from gexkit.validation import require_columns
from gexkit.visualization import save_figure

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = ENSEMBL_CONFIG["request_timeout"]
MAX_RETRIES = ENSEMBL_CONFIG["max_retries"]
BACKOFF_BASE = ENSEMBL_CONFIG["backoff_base"]

GENE_COLUMNS = ["gene_name", "chrom", "start", "end", "strand"]


# ──────────────────────────────────────────────────────────────────────
# Ensembl REST
# ──────────────────────────────────────────────────────────────────────

def _request_with_retry(
    method: str,
    url: str,
    retries: int = MAX_RETRIES,
    **kwargs,
) -> requests.Response:
    """
    Make an HTTP request with exponential-backoff retry.

    Client errors (4xx) other than 429 (rate limit) are raised at once.

    Raises
    ------
    ValueError
        If *retries* is smaller than 1.
    requests.HTTPError
        On a client error, or after all retries are exhausted.
    """
    if retries < 1:
        raise ValueError(f"retries must be >= 1, got {retries}.")
    kwargs.setdefault("timeout", REQUEST_TIMEOUT)

    for attempt in range(retries):
        try:
            resp = requests.request(method, url, **kwargs)
            resp.raise_for_status()
            return resp
        except requests.RequestException as exc:
            status = getattr(exc.response, "status_code", None)
            if status is not None and 400 <= status < 500 and status != 429:
                raise
            logger.warning("Request to %s failed (attempt %d/%d): %s",
                           url, attempt + 1, retries, exc)
            if attempt == retries - 1:
                raise
            time.sleep(BACKOFF_BASE ** attempt)



def _normalize_chrom(chrom) -> str:
    chrom = str(chrom)
    return chrom[3:] if chrom.lower().startswith("chr") else chrom


def fetch_ensembl_genes(
    chrom,
    start: int,
    end: int,
    genome_build: str = REGION_DEFAULTS["genome_build"],
    biotypes: Sequence[str] | None = REGION_DEFAULTS["gene_biotypes"],
) -> pd.DataFrame:
    """
    Genes overlapping ``chrom:start-end`` from the Ensembl REST API.

    Regions larger than the Ensembl limit are queried in chunks.

    Returns
    -------
    pd.DataFrame
        Columns gene_name, chrom, start, end, strand (+1/-1), biotype,
        gene_id.
    """
    hosts = ENSEMBL_CONFIG["hosts"]
    if genome_build not in hosts:
        raise ValueError(f"genome_build must be one of {list(hosts)}, got '{genome_build}'.")
    chrom = _normalize_chrom(chrom)
    base = f"{hosts[genome_build]}/overlap/region/{ENSEMBL_CONFIG['species']}"

    records = []
    chunk = ENSEMBL_CONFIG["max_region_bp"]
    for chunk_start in range(int(start), int(end) + 1, chunk):
        chunk_end = min(chunk_start + chunk - 1, int(end))
        url = f"{base}/{chrom}:{max(chunk_start, 1)}-{chunk_end}"
        logger.info("Fetching genes from %s", url)
        resp = _request_with_retry(
            "GET", url,
            params={"feature": "gene"},
            headers={"Content-Type": "application/json"},
        )
        records.extend(resp.json())

    genes = pd.DataFrame.from_records(records)
    if genes.empty:
        return pd.DataFrame(columns=GENE_COLUMNS + ["biotype", "gene_id"])

    genes = genes.drop_duplicates("id")
    out = pd.DataFrame({
        "gene_name": genes.get("external_name", genes["id"]).fillna(genes["id"]),
        "chrom": genes["seq_region_name"].astype(str),
        "start": genes["start"].astype(int),
        "end": genes["end"].astype(int),
        "strand": genes["strand"].astype(int),
        "biotype": genes.get("biotype", pd.Series(np.nan, index=genes.index)),
        "gene_id": genes["id"],
    })
    if biotypes:
        out = out[out["biotype"].isin(biotypes)]
    return out.sort_values("start").reset_index(drop=True)


# ──────────────────────────────────────────────────────────────────────
# Gene track
# ──────────────────────────────────────────────────────────────────────

def _prepare_genes(
    genes: pd.DataFrame,
    chrom: str,
    start: int,
    end: int,
    biotypes: Sequence[str] | None,
) -> pd.DataFrame:
    require_columns(genes, GENE_COLUMNS, "genes")
    genes = genes.copy()
    genes["chrom"] = genes["chrom"].map(_normalize_chrom)
    genes["strand"] = genes["strand"].map(
        lambda s: -1 if str(s).strip() in ("-", "-1") else 1
    )
    in_region = (genes["chrom"] == chrom) & (genes["end"] >= start) & (genes["start"] <= end)
    genes = genes[in_region]
    if biotypes and "biotype" in genes.columns:
        genes = genes[genes["biotype"].isin(biotypes)]
    return genes.sort_values("start").reset_index(drop=True)


def pack_gene_rows(genes: pd.DataFrame, min_gap: float = 0) -> pd.Series:
    """
    Greedy row assignment: each gene goes to the first row whose last
    gene ends more than *min_gap* before it starts.
    """
    row_ends: list[float] = []
    rows = []
    for gene_start, gene_end in zip(genes["start"], genes["end"]):
        for i, row_end in enumerate(row_ends):
            if gene_start > row_end + min_gap:
                row_ends[i] = gene_end
                rows.append(i)
                break
        else:
            row_ends.append(gene_end)
            rows.append(len(row_ends) - 1)
    return pd.Series(rows, index=genes.index, dtype=int)


def _draw_genes(ax, genes: pd.DataFrame, start: int, end: int) -> None:
    cfg = REGION_PLOT_CONFIG
    if genes.empty:
        ax.text(0.5, 0.5, "No genes in region", transform=ax.transAxes,
                ha="center", va="center", color=THEME["text_subtle"], fontsize=cfg["gene_label_fontsize"])
        ax.set_yticks([])
        return

    # Labels need roughly a tenth of the window.
    rows = pack_gene_rows(genes, min_gap=(end - start) * 0.1)
    height = cfg["gene_row_height"]
    for (_, gene), row in zip(genes.iterrows(), rows):
        y = -row * height
        left = max(gene["start"], start) / 1e6
        right = min(gene["end"], end) / 1e6
        tail, head = (left, right) if gene["strand"] > 0 else (right, left)
        ax.annotate(
            "", xy=(head, y), xytext=(tail, y),
            arrowprops=dict(arrowstyle="-|>", color=cfg["gene_color"], linewidth=1.2,
                            mutation_scale=6, shrinkA=0, shrinkB=0),
        )
        ax.text((left + right) / 2, y + 0.3 * height, gene["gene_name"],
                ha="center", va="bottom", fontsize=cfg["gene_label_fontsize"],
                fontstyle="italic", color=cfg["gene_color"])
    ax.set_ylim(-(rows.max() + 0.7) * height, 0.8 * height)
    ax.set_yticks([])


# ──────────────────────────────────────────────────────────────────────
# Association track
# ──────────────────────────────────────────────────────────────────────

def ld_colors(r2: pd.Series) -> pd.Series:
    """Colour of each point by its LD bin; unknown r² in grey."""
    cfg = REGION_PLOT_CONFIG
    bins = pd.cut(r2, bins=cfg["ld_bins"], labels=False, include_lowest=True)
    return bins.map(lambda b: cfg["ld_unknown_color"] if pd.isna(b) else cfg["ld_colors"][int(b)])


def _draw_association(ax, data: pd.DataFrame, lead_snp: str, snp_column: str,
                      pos_column: str, significance_line: float | None) -> None:
    cfg = REGION_PLOT_CONFIG
    others = data[data[snp_column] != lead_snp]
    lead = data[data[snp_column] == lead_snp]

    ax.scatter(others[pos_column] / 1e6, others["neg_log10_p"], c=others["ld_color"],
               s=cfg["point_size"], edgecolors="black", linewidths=0.3)
    ax.scatter(lead[pos_column] / 1e6, lead["neg_log10_p"], c=cfg["lead_color"],
               s=cfg["point_size"] * 3, marker="D", edgecolors="black", linewidths=0.5, zorder=3)
    for _, row in lead.iterrows():
        ax.annotate(lead_snp, (row[pos_column] / 1e6, row["neg_log10_p"]),
                    xytext=(0, 6), textcoords="offset points", ha="center", fontsize=7)
    if significance_line:
        ax.axhline(-np.log10(significance_line), color=THEME["text_subtle"],
                   linestyle="--", linewidth=0.8)

    handles = [
        plt.Line2D([0], [0], marker="o", linestyle="", markerfacecolor=color,
                   markeredgecolor="black", markersize=5,
                   label=f"{lo:.1f}-{hi:.1f}")
        for lo, hi, color in zip(cfg["ld_bins"][:-1], cfg["ld_bins"][1:], cfg["ld_colors"])
    ][::-1]
    ax.legend(handles=handles, title="r²", fontsize=6, title_fontsize=7,
              loc="upper right", frameon=False)
    ax.set_ylabel(r"$-\log_{10}(p)$", fontsize=cfg["font_axes"])
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)


# ──────────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────────

def plot_region(
    assoc: pd.DataFrame,
    chrom=None,
    start: int | None = None,
    end: int | None = None,
    lead_snp: str | None = None,
    flank: int = REGION_DEFAULTS["flank"],
    ld: pd.Series | Mapping[str, float] | None = None,
    genes: pd.DataFrame | None = None,
    fetch_genes: bool = False,
    genome_build: str = REGION_DEFAULTS["genome_build"],
    snp_column: str = REGION_DEFAULTS["snp_column"],
    chr_column: str = REGION_DEFAULTS["chr_column"],
    pos_column: str = REGION_DEFAULTS["pos_column"],
    p_column: str = REGION_DEFAULTS["p_column"],
    gene_biotypes: Sequence[str] | None = REGION_DEFAULTS["gene_biotypes"],
    significance_line: float | None = REGION_DEFAULTS["significance_line"],
    projectfolder: str | Path = REGION_DEFAULTS["projectfolder"],
    projectname: str | None = "",
    filename: str | None = None,
    title: str | None = None,
    figure_res: int = FIGURE_CONFIG["dpi"],
) -> dict:
    """
    Regional association plot around a locus.

    Parameters
    ----------
    assoc : pd.DataFrame
        Association results with SNP, chromosome, position and p-value
        columns.
    chrom, start, end
        Region; alternatively *lead_snp* ± *flank*.
    lead_snp : str, optional
        Reference SNP; default: smallest p in the region.
    ld : pd.Series or dict, optional
        SNP → r² with the lead SNP.
    genes : pd.DataFrame, optional
        gene_name, chrom, start, end, strand (optionally biotype).
    fetch_genes : bool
        Fetch genes from Ensembl when *genes* is not given.

    Returns
    -------
    dict
        ``{"data": region df, "genes": gene df, "lead_snp": str,
        "file": path of the figure}``.

    Raises
    ------
    ValueError
        Missing columns, no region, unknown lead SNP or an empty region.
    requests.HTTPError
        If the Ensembl request still fails after all retries.
    """
    require_columns(assoc, [snp_column, chr_column, pos_column, p_column], "association data")
    assoc = assoc.copy()
    assoc["_chrom"] = assoc[chr_column].map(_normalize_chrom)
    assoc[snp_column] = assoc[snp_column].astype(str)

    if lead_snp is not None and lead_snp not in set(assoc[snp_column]):
        raise ValueError(f"Lead SNP '{lead_snp}' not found in column '{snp_column}'.")

    if chrom is not None and start is not None and end is not None:
        chrom = _normalize_chrom(chrom)
        start, end = int(start), int(end)
    elif lead_snp is not None:
        row = assoc.loc[assoc[snp_column] == lead_snp].iloc[0]
        chrom = row["_chrom"]
        start = max(int(row[pos_column]) - flank, 0)
        end = int(row[pos_column]) + flank
    else:
        raise ValueError("Give either chrom, start and end or a lead_snp.")
    if start > end:
        raise ValueError(f"Region start {start} lies after end {end}.")

    in_region = (
        (assoc["_chrom"] == chrom)
        & (assoc[pos_column] >= start)
        & (assoc[pos_column] <= end)
        & assoc[p_column].notna()
    )
    data = assoc.loc[in_region].drop(columns="_chrom").sort_values(pos_column).reset_index(drop=True)
    if data.empty:
        raise ValueError(f"No association results in chr{chrom}:{start}-{end}.")

    if lead_snp is None:
        lead_snp = data.loc[data[p_column].idxmin(), snp_column]
    elif lead_snp not in set(data[snp_column]):
        raise ValueError(f"Lead SNP '{lead_snp}' lies outside chr{chrom}:{start}-{end}.")
    logger.info("Region chr%s:%d-%d, %d SNPs, lead SNP %s", chrom, start, end, len(data), lead_snp)

    p = data[p_column].astype(float)
    data["neg_log10_p"] = -np.log10(p.clip(lower=p[p > 0].min() if (p > 0).any() else 1e-300))
    r2 = pd.Series(ld, dtype=float) if ld is not None else pd.Series(dtype=float)
    data["r2"] = data[snp_column].map(r2)
    data.loc[data[snp_column] == lead_snp, "r2"] = 1.0
    data["ld_color"] = ld_colors(data["r2"])

    if genes is not None:
        gene_df = _prepare_genes(genes, chrom, start, end, gene_biotypes)
    elif fetch_genes:
        gene_df = fetch_ensembl_genes(chrom, start, end, genome_build, gene_biotypes)
    else:
        gene_df = pd.DataFrame(columns=GENE_COLUMNS)

    # ── Figure ─────────────────────────────────────────────────────
    fig, (ax_assoc, ax_genes) = plt.subplots(
        2, 1, sharex=True, gridspec_kw={"height_ratios": [3, 1]},
    )
    _draw_association(ax_assoc, data, lead_snp, snp_column, pos_column, significance_line)
    _draw_genes(ax_genes, gene_df, start, end)
    ax_genes.set_xlim(start / 1e6, end / 1e6)
    ax_genes.set_xlabel(f"Position on chr{chrom} (Mb, {genome_build})",
                        fontsize=REGION_PLOT_CONFIG["font_axes"])
    ax_genes.spines["top"].set_visible(False)
    ax_genes.spines["right"].set_visible(False)
    ax_genes.spines["left"].set_visible(False)
    ax_assoc.set_title(title or f"chr{chrom}:{start:,}-{end:,}",
                       fontsize=REGION_PLOT_CONFIG["font_title"], fontweight="bold")
    fig.tight_layout()

    prefix = project_prefix(projectname)
    folder = ensure_dirs(projectfolder)
    name = filename or f"chr{chrom}_{start}_{end}"
    path = folder / f"{prefix}{name}.png"
    logger.info("Write region plot to %s", path)
    save_figure(fig, path, size_mm=FIGURE_CONFIG["region_size_mm"], dpi=figure_res)
    write_table(data.drop(columns="ld_color"), folder / f"{prefix}{name}.txt")

    return {"data": data, "genes": gene_df, "lead_snp": lead_snp, "file": path}
