"""
motifs.py — Transcription-factor binding-site enrichment with PWMs.

Position weight matrices (log-odds, base 2) are built from count or
frequency matrices, every sequence is scanned on both strands, and a
sequence counts as a hit for a motif when its best relative score
``(s - min) / (max - min)`` reaches the score threshold.  Hit counts in
the target set are compared with a background set by a one-sided
Fisher exact test.

Without a background set, shuffled copies of the target sequences
(same nucleotide composition, seeded) are used.

Functions
---------
read_jaspar(path)
    → ``{motif name: 4 × L count matrix}`` from a JASPAR file.

build_pwm(counts, background_freq, pseudocount)
    → Log-odds PWM.

best_relative_scores(sequences, pwm)
    → Best relative score of every sequence on either strand.

shuffle_sequences(sequences, n, seed)
    → Composition-preserving background sequences.

wrap_pwm_enrich(sequences, motifs, background=None, ...)
    → Group and sequence reports plus a bar chart of the top motifs.
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Mapping

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from scipy.stats import fisher_exact
from statsmodels.stats.multitest import multipletests

from gexkit.audit import build_run_record, write_run_record
from gexkit.config import FIGURE_CONFIG, FILE_CONFIG, PWM_DEFAULTS, THEME
from gexkit.data_io import ensure_dirs, project_prefix, read_fasta, write_table
from gexkit.validation import validate_adjust_method
from gexkit.visualization import save_figure

logger = logging.getLogger(__name__)

ALPHABET = PWM_DEFAULTS["alphabet"]
_CODES = {base: i for i, base in enumerate(ALPHABET)}
_UNKNOWN = len(ALPHABET)

_JASPAR_ROW = re.compile(r"^\s*([ACGT])\s*\[?([^\]]*)\]?\s*$")


# ──────────────────────────────────────────────────────────────────────
# Input
# ──────────────────────────────────────────────────────────────────────

def read_jaspar(path: str | Path) -> dict[str, np.ndarray]:
    """
    Read motifs in JASPAR format.

    Each record is a ``>ID name`` header followed by four rows, either
    labelled (``A [ 4 19 0 ]``) or plain numbers in A, C, G, T order.
    The motif is named ``"ID name"`` (or ``"ID"`` without a name).
    """
    motifs: dict[str, np.ndarray] = {}
    name = None
    rows: dict[str, list[float]] = {}
    plain: list[list[float]] = []

    def _flush():
        if name is None:
            return
        if rows:
            matrix = [rows[b] for b in ALPHABET]
        else:
            matrix = plain
        if len(matrix) != 4 or len({len(r) for r in matrix}) != 1:
            raise ValueError(f"Motif '{name}' in {path} is not a 4-row matrix.")
        motifs[name] = np.asarray(matrix, dtype=float)

    with open(path) as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            if line.startswith(">"):
                _flush()
                name = " ".join(line[1:].split()[:2])
                rows, plain = {}, []
                continue
            labelled = _JASPAR_ROW.match(line)
            if labelled:
                rows[labelled.group(1)] = [float(v) for v in labelled.group(2).split()]
            else:
                plain.append([float(v) for v in line.split()])
    _flush()
    return motifs


def _load_sequences(source, what: str) -> dict[str, str]:
    if isinstance(source, (str, Path)):
        sequences = read_fasta(source)
    else:
        sequences = {str(k): str(v).upper() for k, v in source.items()}
    if not sequences:
        raise ValueError(f"No {what} sequences given.")
    allowed = set(FILE_CONFIG["sequence_alphabet"])
    for name, seq in sequences.items():
        invalid = set(seq) - allowed
        if invalid:
            raise ValueError(
                f"{what.capitalize()} sequence '{name}' contains invalid characters "
                f"{sorted(invalid)}; allowed are {FILE_CONFIG['sequence_alphabet']}."
            )
    return sequences


def _load_motifs(motifs) -> dict[str, np.ndarray]:
    if isinstance(motifs, (str, Path)):
        return read_jaspar(motifs)
    loaded: dict[str, np.ndarray] = {}
    for name, matrix in motifs.items():
        if isinstance(matrix, (str, Path)):
            loaded.update(read_jaspar(matrix))
            continue
        if isinstance(matrix, pd.DataFrame) and set(ALPHABET) <= set(map(str, matrix.index)):
            matrix = matrix.loc[list(ALPHABET)]
        arr = np.asarray(matrix, dtype=float)
        if arr.ndim != 2 or arr.shape[0] != 4:
            raise ValueError(f"Motif '{name}' must be a 4 x L matrix (rows A, C, G, T).")
        loaded[str(name)] = arr
    if not loaded:
        raise ValueError("No motifs given.")
    return loaded


# ──────────────────────────────────────────────────────────────────────
# PWM scoring
# ──────────────────────────────────────────────────────────────────────

def nucleotide_frequencies(sequences: Mapping[str, str]) -> np.ndarray:
    """A, C, G, T frequencies (N ignored); uniform if nothing counted."""
    counts = np.array([sum(seq.count(b) for seq in sequences.values()) for b in ALPHABET],
                      dtype=float)
    if counts.sum() == 0:
        return np.full(4, 0.25)
    return counts / counts.sum()


def build_pwm(
    counts: np.ndarray,
    background_freq: np.ndarray,
    pseudocount: float = PWM_DEFAULTS["pseudocount"],
) -> np.ndarray:
    """
    Log-odds PWM ``log2(p / background)``.

    Frequency matrices (columns summing to 1) are scaled to 100
    observations before the pseudocount is added.
    """
    background_freq = np.asarray(background_freq, dtype=float)
    if background_freq.shape != (4,) or not (background_freq > 0).all():
        raise ValueError(
            f"Background frequencies of A, C, G, T must be four values > 0, "
            f"got {background_freq.tolist()}."
        )
    counts = np.asarray(counts, dtype=float)
    col_sums = counts.sum(axis=0)
    if np.allclose(col_sums, 1.0):
        counts = counts * 100
        col_sums = counts.sum(axis=0)
    probs = (counts + pseudocount * background_freq[:, None]) / (col_sums + pseudocount)
    return np.log2(probs / background_freq[:, None])


def _encode(seq: str) -> np.ndarray:
    return np.fromiter((_CODES.get(b, _UNKNOWN) for b in seq), dtype=np.int64, count=len(seq))


def _best_score(codes: np.ndarray, weights: np.ndarray) -> float:
    length = weights.shape[1]
    if codes.size < length:
        return -np.inf
    windows = np.lib.stride_tricks.sliding_window_view(codes, length)
    scores = weights[windows, np.arange(length)].sum(axis=1)
    return float(scores.max())


def best_relative_scores(sequences: Mapping[str, str], pwm: np.ndarray) -> pd.Series:
    """
    Best relative PWM score of each sequence over both strands.

    Windows containing N are not scored.  Sequences shorter than the
    motif (or consisting of N only) get NaN.
    """
    # Extra row for N → -inf so such windows never win.
    weights = np.vstack([pwm, np.full(pwm.shape[1], -np.inf)])
    min_score = pwm.min(axis=0).sum()
    max_score = pwm.max(axis=0).sum()
    span = max_score - min_score

    scores = {}
    for name, seq in sequences.items():
        codes = _encode(seq)
        rc = np.where(codes == _UNKNOWN, _UNKNOWN, 3 - codes)[::-1]
        best = max(_best_score(codes, weights), _best_score(rc, weights))
        if not np.isfinite(best) or span <= 0:
            scores[name] = np.nan
        else:
            scores[name] = (best - min_score) / span
    return pd.Series(scores, dtype=float)


def shuffle_sequences(
    sequences: Mapping[str, str],
    n: int | None = None,
    seed: int = PWM_DEFAULTS["seed"],
) -> dict[str, str]:
    """
    Composition-preserving shuffles of *sequences*.

    *n* background sequences are produced by cycling through the targets
    (default: one shuffle per target).
    """
    rng = np.random.default_rng(seed)
    names = list(sequences)
    n = len(names) if n is None else n
    shuffled = {}
    for i in range(n):
        source = names[i % len(names)]
        chars = np.array(list(sequences[source]))
        rng.shuffle(chars)
        shuffled[f"shuffled{i + 1}_{source}"] = "".join(chars)
    return shuffled


# ──────────────────────────────────────────────────────────────────────
# Enrichment
# ──────────────────────────────────────────────────────────────────────

def _group_report(
    target_scores: pd.DataFrame,
    background_scores: pd.DataFrame,
    score_threshold: float,
    adjust_method: str,
) -> pd.DataFrame:
    method = validate_adjust_method(adjust_method)
    n_target = len(target_scores)
    n_background = len(background_scores)

    rows = []
    for motif in target_scores.columns:
        t_hits = int((target_scores[motif] >= score_threshold).sum())
        b_hits = int((background_scores[motif] >= score_threshold).sum())
        _, p_value = fisher_exact(
            [[t_hits, n_target - t_hits], [b_hits, n_background - b_hits]],
            alternative="greater",
        )
        t_frac = t_hits / n_target
        b_frac = b_hits / n_background
        rows.append({
            "motif": motif,
            "target_hits": t_hits,
            "target_total": n_target,
            "target_fraction": t_frac,
            "background_hits": b_hits,
            "background_total": n_background,
            "background_fraction": b_frac,
            "fold_enrichment": t_frac / b_frac if b_frac > 0 else np.inf if t_frac > 0 else np.nan,
            "p_value": p_value,
        })

    report = pd.DataFrame(rows)
    p = report["p_value"].to_numpy()
    report["p_adjusted"] = p if method is None else multipletests(p, method=method)[1]
    return report.sort_values(["p_value", "motif"], kind="mergesort").reset_index(drop=True)


def _top_motif_plot(report: pd.DataFrame, top_n: int, p_threshold: float):
    top = report.head(top_n).iloc[::-1]
    neg_log_p = -np.log10(top["p_adjusted"].clip(lower=1e-300))
    colors = [THEME["color_up"] if p <= p_threshold else THEME["color_ns"]
              for p in top["p_adjusted"]]

    fig, ax = plt.subplots()
    ax.barh(top["motif"], neg_log_p, color=colors)
    if 0 < p_threshold < 1:
        ax.axvline(-np.log10(p_threshold), color=THEME["text_subtle"], linestyle="--", linewidth=0.8)
    ax.set_xlabel(r"$-\log_{10}$(adjusted p-value)", fontsize=THEME["font_axes"])
    ax.set_title(f"Top {len(top)} motifs", fontsize=THEME["font_title"], fontweight="bold")
    ax.tick_params(axis="y", labelsize=6)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    return fig


def wrap_pwm_enrich(
    sequences,
    motifs,
    background=None,
    n_background: int | None = None,
    score_threshold: float = PWM_DEFAULTS["score_threshold"],
    pseudocount: float = PWM_DEFAULTS["pseudocount"],
    p_value_threshold: float = PWM_DEFAULTS["p_value_threshold"],
    adjust_method: str = PWM_DEFAULTS["adjust_method"],
    seed: int = PWM_DEFAULTS["seed"],
    top_motifs: int = PWM_DEFAULTS["top_motifs"],
    projectfolder: str | Path = PWM_DEFAULTS["projectfolder"],
    projectname: str | None = "",
    figure_res: int = FIGURE_CONFIG["dpi"],
) -> dict:
    """
    Motif enrichment of target sequences against a background.

    Parameters
    ----------
    sequences : dict or path
        Target sequences (name → sequence) or a FASTA file.
    motifs : dict or path
        Name → 4 × L count/frequency matrix (rows A, C, G, T) or
        JASPAR file path; or a single JASPAR file path.
    background : dict or path, optional
        Background sequences; default: shuffled targets.
    n_background : int, optional
        Number of background sequences (shuffles, or a seeded sample of
        the given background).
    score_threshold : float
        Minimum best relative score of a hit (0..1).
    pseudocount : float
        Pseudocount added to the count matrices.

    Returns
    -------
    dict
        ``{"group_report": df, "sequence_report": df}``.

    Raises
    ------
    ValueError
        For sequences with characters other than ACGTN, malformed
        motifs or an unknown adjust method.
    """
    if not 0 <= score_threshold <= 1:
        raise ValueError(f"score_threshold must be between 0 and 1, got {score_threshold}.")
    validate_adjust_method(adjust_method)

    start = time.monotonic()
    prefix = project_prefix(projectname)
    folder = ensure_dirs(projectfolder)

    targets = _load_sequences(sequences, "target")
    matrices = _load_motifs(motifs)
    if background is None:
        logger.info("No background given; shuffling target sequences (seed %d).", seed)
        bg_sequences = shuffle_sequences(targets, n_background, seed)
    else:
        bg_sequences = _load_sequences(background, "background")
        if n_background is not None and n_background < len(bg_sequences):
            rng = np.random.default_rng(seed)
            keep = rng.choice(list(bg_sequences), size=n_background, replace=False)
            bg_sequences = {k: bg_sequences[k] for k in keep}

    bg_freq = nucleotide_frequencies(bg_sequences)
    logger.info(
        "Scanning %d target and %d background sequences for %d motifs.",
        len(targets), len(bg_sequences), len(matrices),
    )

    target_scores = {}
    background_scores = {}
    for name, counts in matrices.items():
        pwm = build_pwm(counts, bg_freq, pseudocount)
        target_scores[name] = best_relative_scores(targets, pwm)
        background_scores[name] = best_relative_scores(bg_sequences, pwm)
    target_scores = pd.DataFrame(target_scores)
    background_scores = pd.DataFrame(background_scores)

    group_report = _group_report(target_scores, background_scores, score_threshold, adjust_method)
    sequence_report = target_scores.rename_axis("sequence").reset_index()

    write_table(group_report, folder / f"{prefix}motif_enrichment_group_report.txt")
    write_table(sequence_report, folder / f"{prefix}motif_enrichment_sequence_report.txt")
    n_sig = int((group_report["p_adjusted"] <= p_value_threshold).sum())
    logger.info("%d of %d motifs enriched (adjusted p <= %s).",
                n_sig, len(group_report), p_value_threshold)

    plot_file = folder / f"{prefix}motif_enrichment_top{top_motifs}.png"
    logger.info("Write motif plot to %s", plot_file)
    save_figure(_top_motif_plot(group_report, top_motifs, p_value_threshold), plot_file, dpi=figure_res)

    record = build_run_record(
        "pwm_enrich",
        parameters={
            "score_threshold": score_threshold,
            "pseudocount": pseudocount,
            "p_value_threshold": p_value_threshold,
            "adjust_method": adjust_method,
            "background": "shuffled" if background is None else "given",
        },
        input_data={
            "n_targets": len(targets),
            "n_background": len(bg_sequences),
            "n_motifs": len(matrices),
            "background_frequencies": dict(zip(ALPHABET, bg_freq)),
        },
        results_summary={"n_enriched": n_sig},
        seeds={"background": seed},
        elapsed_seconds=time.monotonic() - start,
    )
    write_run_record(record, folder / f"{prefix}run_info_pwm_enrich.json")

    return {"group_report": group_report, "sequence_report": sequence_report}
