"""
eset.py — Processing of microarray expression data.

Normalisation, transformation and probe-quality filtering of an
``ExpressionSet``.  The transformation is applied first, then the
between-array normalisation, as for Illumina BeadArray data.

If a column ``PROBEQUALITY`` is present in the feature data (Illumina
annotation), probes graded ``Bad`` or ``No match`` are removed after
normalisation.  Removing them discards lowly expressed probes as well
as probes with high signal caused by non-specific hybridisation.

Functions
---------
process_eset(eset, method_norm, transform)
    → Transformed, normalised and quality-filtered ExpressionSet.

transform_values(values, transform) / normalize_values(values, method)
    → The numerical steps on a plain features × samples array.

Usage example
-------------
    from gexkit.eset import process_eset

    eset = process_eset(raw_eset, method_norm="quantile", transform="log2")
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd
from scipy.interpolate import PchipInterpolator
from scipy.stats import rankdata

from gexkit.containers import ExpressionSet

logger = logging.getLogger(__name__)

TRANSFORMS = ("none", "log2", "vst")
NORMALIZATIONS = ("quantile", "qspline", "rankInvariant", "median", "none")

# Methods of the source ecosystem that need bead-level data or an
# external model which an ExpressionSet does not carry.
UNSUPPORTED_TRANSFORMS = ("neqc", "rsn")
UNSUPPORTED_NORMALIZATIONS = ("vsn",)

BAD_PROBE_QUALITY = ("Bad", "No match")

# Fraction of the rank range within which a probe counts as rank invariant.
RANK_INVARIANT_THRESHOLD = 0.05
QSPLINE_GRID_SIZE = 1000


# ──────────────────────────────────────────────────────────────────────
# Transformations
# ──────────────────────────────────────────────────────────────────────

def transform_values(values: np.ndarray, transform: str) -> np.ndarray:
    """
    Apply a transformation to a features × samples array.

    - ``"log2"``: values <= 0 are floored to the smallest positive value.
    - ``"vst"``: ``asinh(x / 2) / ln 2``; equals log2 for large
      intensities and stays finite near zero.
    """
    if transform == "none":
        return values.copy()
    if transform == "log2":
        positive = values[values > 0]
        floor = positive.min() if positive.size else 1.0
        return np.log2(np.where(values > 0, values, floor))
    if transform == "vst":
        return np.arcsinh(values / 2.0) / np.log(2.0)
    raise ValueError(f"Unknown transform '{transform}'.")


# ──────────────────────────────────────────────────────────────────────
# Normalisations
# ──────────────────────────────────────────────────────────────────────

def _quantile(values: np.ndarray) -> np.ndarray:
    n = values.shape[0]
    reference = np.sort(values, axis=0).mean(axis=1)
    positions = np.arange(1, n + 1)
    out = np.empty_like(values)
    for j in range(values.shape[1]):
        # Tied values get the mean of the reference values they span.
        out[:, j] = np.interp(rankdata(values[:, j], method="average"), positions, reference)
    return out


def _qspline(values: np.ndarray) -> np.ndarray:
    probs = np.linspace(0, 1, min(QSPLINE_GRID_SIZE, values.shape[0]))
    quantiles = np.quantile(values, probs, axis=0)
    target = quantiles.mean(axis=1)
    out = np.empty_like(values)
    for j in range(values.shape[1]):
        x, idx = np.unique(quantiles[:, j], return_index=True)
        if x.size < 2:
            out[:, j] = values[:, j]
            continue
        spline = PchipInterpolator(x, target[idx], extrapolate=True)
        out[:, j] = spline(values[:, j])
    return out


def _rank_invariant(values: np.ndarray) -> np.ndarray:
    n = values.shape[0]
    reference = values.mean(axis=1)
    ref_rank = rankdata(reference) / n
    out = np.empty_like(values)
    for j in range(values.shape[1]):
        col = values[:, j]
        invariant = np.abs(rankdata(col) / n - ref_rank) < RANK_INVARIANT_THRESHOLD
        if invariant.sum() < 2:
            invariant = np.ones(n, dtype=bool)
        slope, intercept = np.polyfit(col[invariant], reference[invariant], 1)
        out[:, j] = slope * col + intercept
    return out


def _median(values: np.ndarray) -> np.ndarray:
    medians = np.median(values, axis=0)
    return values - medians + medians.mean()


_NORMALIZERS = {
    "quantile": _quantile,
    "qspline": _qspline,
    "rankInvariant": _rank_invariant,
    "median": _median,
    "none": lambda values: values.copy(),
}


def normalize_values(values: np.ndarray, method: str) -> np.ndarray:
    """Between-array normalisation of a features × samples array."""
    if method not in _NORMALIZERS:
        raise ValueError(f"Unknown normalisation method '{method}'.")
    return _NORMALIZERS[method](values)


# ──────────────────────────────────────────────────────────────────────
# ExpressionSet processing
# ──────────────────────────────────────────────────────────────────────

def _check_methods(method_norm: str, transform: str) -> None:
    if transform in UNSUPPORTED_TRANSFORMS or transform not in TRANSFORMS:
        raise ValueError(
            f"transform '{transform}' is not supported. "
            f"Options are {', '.join(TRANSFORMS)}."
        )
    if method_norm in UNSUPPORTED_NORMALIZATIONS or method_norm not in NORMALIZATIONS:
        raise ValueError(
            f"method_norm '{method_norm}' is not supported. "
            f"Options are {', '.join(NORMALIZATIONS)}."
        )


def _quality_filter(eset: ExpressionSet) -> ExpressionSet:
    """Drop control probes and probes of bad annotation quality."""
    fdata = eset.feature_data
    if "PROBEQUALITY" not in fdata.columns:
        return eset

    if "Status" in fdata.columns:
        regular = fdata["Status"].astype(str) == "regular"
        eset = eset.subset_features(regular.to_numpy())
        fdata = eset.feature_data

    quality = fdata["PROBEQUALITY"]
    remove = quality.isna() | quality.isin(BAD_PROBE_QUALITY)
    logger.info(
        "Remove %d of %d probes with bad quality (column PROBEQUALITY required "
        "in feature data).", int(remove.sum()), len(remove),
    )
    logger.info("Probe quality:\n%s", quality.value_counts(dropna=False).to_string())
    return eset.subset_features((~remove).to_numpy())


def process_eset(
    eset: ExpressionSet,
    method_norm: str = "quantile",
    transform: str = "none",
) -> ExpressionSet:
    """
    Normalise, transform and probe-quality filter expression data.

    Parameters
    ----------
    eset : ExpressionSet
        Raw expression data (features × samples).
    method_norm : str
        ``"quantile"``, ``"qspline"``, ``"rankInvariant"``, ``"median"``
        or ``"none"``.
    transform : str
        ``"none"``, ``"log2"`` or ``"vst"``.

    Returns
    -------
    ExpressionSet
        New, processed set; the input is not modified.

    Raises
    ------
    TypeError
        If *eset* is not an ExpressionSet.
    ValueError
        For unknown or unsupported methods (``vsn``, ``neqc``, ``rsn``).
    """
    if not isinstance(eset, ExpressionSet):
        raise TypeError("eset is not of class ExpressionSet")
    _check_methods(method_norm, transform)

    logger.info(
        "normalising (%s) and/or transforming (%s) expression data.",
        method_norm, transform,
    )
    values = eset.exprs.to_numpy(dtype=float)
    values = normalize_values(transform_values(values, transform), method_norm)

    processed = ExpressionSet(
        pd.DataFrame(values, index=eset.exprs.index, columns=eset.exprs.columns),
        eset.pheno_data.copy(),
        eset.feature_data.copy(),
        eset.annotation,
    )
    return _quality_filter(processed)
