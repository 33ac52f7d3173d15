"""
data_io.py — Reading and writing data files.

This module centralizes ALL of the package's file I/O: input tables
(counts, sample sheets, DEG tables), sequence and gene-set files, and
the tab-delimited result tables and folders of a project.

The column separator is detected from the file extension and
ZIP-compressed tables (e.g. ``samples.csv.zip``) are supported.

Functions
---------
detect_separator(filename)
    → Detects the separator based on the file extension.

read_table(path, index_col=None)
    → Reads a CSV/TSV/TXT table, or the first one inside a ZIP.

read_counts_file(path) / read_sample_table(path, sample_column)
    → Typed readers for count matrices and sample sheets.

write_table(df, path)
    → Writes a tab-delimited, unquoted table without row index.

project_prefix(projectname) / ensure_dirs(folder, *subfolders)
    → Project-folder conventions shared by all wrappers.

read_fasta(path)
    → FASTA reader (upper-cased sequences).

Usage example
--------------
    from gexkit.data_io import read_counts_file, read_sample_table

    counts_df = read_counts_file("counts.tsv")
    samples_df = read_sample_table("samples.csv", "Sample_Name")
"""

from __future__ import annotations

import csv
import io
import logging
import zipfile
from pathlib import Path

import pandas as pd

from gexkit.config import FILE_CONFIG

logger = logging.getLogger(__name__)


def detect_separator(filename: str | Path) -> str:
    """
    Detect the column separator based on the file extension.

    - .tsv / .txt / .tab → tab
    - .csv → comma

    Raises
    ------
    ValueError
        If the extension is not recognized (not in FILE_CONFIG).

    Example
    -------
        >>> detect_separator("my_counts.tsv")
        '\\t'
        >>> detect_separator("samples.csv")
        ','
    """
    extension = str(filename).rsplit(".", maxsplit=1)[-1].lower()
    separators = FILE_CONFIG["separators"]

    if extension in separators:
        return separators[extension]

    raise ValueError(
        f"Extension '.{extension}' not recognized. "
        f"Supported extensions: {list(separators.keys())}."
    )


def extract_from_zip(path: str | Path) -> tuple[io.BytesIO, str]:
    """
    Extract the first table file found inside a ZIP archive.

    Returns
    -------
    tuple[io.BytesIO, str]
        - BytesIO with the content of the extracted file.
        - Name of the internal file (e.g. "samples.csv").

    Raises
    ------
    ValueError
        If the ZIP is corrupt, empty, or does not contain a table file.
    """
    try:
        with zipfile.ZipFile(path, "r") as zf:
            names = zf.namelist()
            if not names:
                raise ValueError(
                    "The ZIP file is empty. "
                    "It must contain at least one CSV or TSV file."
                )

            valid_extensions = tuple(f".{ext}" for ext in FILE_CONFIG["separators"])
            target = next(
                (name for name in names if name.lower().endswith(valid_extensions)),
                None,
            )
            if target is None:
                raise ValueError(
                    f"The ZIP file does not contain files with valid extensions "
                    f"({valid_extensions}). Files found: {names}."
                )
            return io.BytesIO(zf.read(target)), target

    except zipfile.BadZipFile as exc:
        raise ValueError(f"The file '{path}' is not a valid ZIP or is corrupt.") from exc


def read_table(
    path: str | Path,
    index_col: int | str | None = None,
    **kwargs,
) -> pd.DataFrame:
    """
    Read a delimited table, transparently unpacking ZIP archives.

    Parameters
    ----------
    path : str or Path
        CSV/TSV/TXT file or ZIP containing one.
    index_col : int, str or None
        Forwarded to ``pd.read_csv``.
    **kwargs
        Extra arguments forwarded to ``pd.read_csv``.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")

    if path.suffix.lower() == ".zip":
        source, name = extract_from_zip(path)
    else:
        source, name = path, path.name

    return pd.read_csv(source, sep=detect_separator(name), index_col=index_col, **kwargs)


def read_counts_file(path: str | Path) -> pd.DataFrame:
    """
    Read a raw counts matrix (first column = gene ids, then samples).

    Expected format:
        gene_id     sample_1    sample_2    sample_3
        GENE_A      120         340         256
        GENE_B      0           15          8
    """
    counts_df = read_table(path, index_col=0)
    counts_df.index = counts_df.index.astype(str).str.strip()
    counts_df.columns = counts_df.columns.astype(str).str.strip()
    counts_df.index.name = "gene_id"
    logger.info(
        "Read count matrix %s: %d genes x %d samples",
        path, counts_df.shape[0], counts_df.shape[1],
    )
    return counts_df


def read_sample_table(path: str | Path, sample_column: str) -> pd.DataFrame:
    """
    Read a sample sheet and index it by *sample_column*.

    The sample column is kept as a regular column too (the heatmap
    sample selection looks samples up by that column).

    Raises
    ------
    ValueError
        If the sample column is missing or has duplicated names.
    """
    samples_df = read_table(path)
    if sample_column not in samples_df.columns:
        raise ValueError(
            f"Sample column '{sample_column}' not found in {path}. "
            f"Available columns: {list(samples_df.columns)}."
        )
    samples_df[sample_column] = samples_df[sample_column].astype(str).str.strip()
    if samples_df[sample_column].duplicated().any():
        dups = samples_df.loc[samples_df[sample_column].duplicated(), sample_column]
        raise ValueError(f"Duplicated sample names: {dups.tolist()[:10]}")
    return samples_df.set_index(sample_column, drop=False)


def write_table(df: pd.DataFrame, path: str | Path) -> Path:
    """Write *df* tab-delimited, unquoted, without the row index."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep="\t", index=False, quoting=csv.QUOTE_NONE, escapechar="\\")
    return path


# ──────────────────────────────────────────────────────────────────────
# Project-folder conventions
# ──────────────────────────────────────────────────────────────────────

def project_prefix(projectname: str | None) -> str:
    """
    Turn a project name into a file-name prefix.

    ``"study"`` → ``"study_"``; ``"study_"`` stays; empty/None → ``""``.
    """
    if projectname and not projectname.endswith("_"):
        return f"{projectname}_"
    return projectname or ""


def ensure_dirs(folder: str | Path, *subfolders: str) -> Path:
    """Create *folder* and its *subfolders* if not yet existing."""
    folder = Path(folder)
    folder.mkdir(parents=True, exist_ok=True)
    for sub in subfolders:
        (folder / sub).mkdir(exist_ok=True)
    return folder


# ──────────────────────────────────────────────────────────────────────
# Sequences
# ──────────────────────────────────────────────────────────────────────

def read_fasta(path: str | Path) -> dict[str, str]:
    """
    Read a FASTA file into ``{name: sequence}`` (upper case).

    The record name is the first word of the header line.
    """
    sequences: dict[str, str] = {}
    name = None
    chunks: list[str] = []
    with open(path) as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            if line.startswith(">"):
                if name is not None:
                    sequences[name] = "".join(chunks).upper()
                name = line[1:].split()[0] if len(line) > 1 else f"seq{len(sequences) + 1}"
                chunks = []
            else:
                if name is None:
                    raise ValueError(f"{path} is not a FASTA file (no header line).")
                chunks.append(line)
    if name is not None:
        sequences[name] = "".join(chunks).upper()
    return sequences

