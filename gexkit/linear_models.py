"""
linear_models.py — Gene-wise linear models with empirical-Bayes moderation.

A compact rendition of the limma workflow for log-scale expression data
(features × samples):

1. ``design_matrix``: one column per group (cell means) plus
   covariate columns.
2. ``lm_fit``: least squares for all features at once.
3. ``contrasts_fit``: coefficients and unscaled standard errors of
   the requested group contrasts.
4. ``ebayes``: prior degrees of freedom and prior variance
   estimated from the residual variances (Smyth 2004); moderated t and
   two-sided p-values.
5. ``top_table``: results of one contrast with adjusted p-values.

All steps work on whole matrices; there is no per-gene Python loop.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Sequence

import numpy as np
import pandas as pd
from scipy import special, stats
from statsmodels.stats.multitest import multipletests

from gexkit.config import LIMMA_DEFAULTS
from gexkit.validation import parse_comparison, validate_adjust_method

logger = logging.getLogger(__name__)

_NESTED_CONTRAST = re.compile(r"^\((?P<left>[^()]+)\)-\((?P<right>[^()]+)\)$")


@dataclass
class LinearModelFit:
    """Result of :func:`lm_fit` / :func:`contrasts_fit` / :func:`ebayes`.

    Matrices are DataFrames indexed by feature; columns are the design
    coefficients or contrasts.
    """

    coefficients: pd.DataFrame
    stdev_unscaled: pd.DataFrame
    sigma2: pd.Series
    df_residual: pd.Series
    amean: pd.Series
    cov_coefficients: pd.DataFrame
    t: pd.DataFrame | None = None
    p_value: pd.DataFrame | None = None
    df_prior: float | None = None
    s2_prior: float | None = None
    s2_post: pd.Series | None = None
    df_total: pd.Series | None = None


# ──────────────────────────────────────────────────────────────────────
# Design and contrasts
# ──────────────────────────────────────────────────────────────────────

def design_matrix(
    sample_table: pd.DataFrame,
    group_column: str,
    covariates: Sequence[str] | None = None,
) -> pd.DataFrame:
    """
    Cell-means design: an indicator column per group level (sorted),
    followed by the covariates.

    Numeric covariates enter as one centred column; categorical ones as
    indicator columns ``<covariate><level>`` for every level but the
    first.
    """
    groups = sample_table[group_column].astype(str)
    levels = sorted(groups.unique())
    design = pd.DataFrame(
        {lvl: (groups == lvl).astype(float).values for lvl in levels},
        index=sample_table.index,
    )
    for cov in covariates or []:
        values = sample_table[cov]
        if pd.api.types.is_numeric_dtype(values):
            design[cov] = (values - values.mean()).astype(float).values
        else:
            dummies = pd.get_dummies(values.astype(str), prefix=cov, prefix_sep="",
                                     drop_first=True, dtype=float)
            design = pd.concat([design, dummies.set_index(design.index)], axis=1)
    return design


def _simple_contrast(comparison: str, columns: Sequence[str]) -> pd.Series:
    test, reference = parse_comparison(comparison)
    unknown = [g for g in (test, reference) if g not in columns]
    if unknown:
        raise ValueError(
            f"Groups {unknown} of comparison '{comparison}' not in design "
            f"columns {list(columns)}."
        )
    vec = pd.Series(0.0, index=columns)
    vec[test] += 1.0
    vec[reference] -= 1.0
    return vec


def contrast_matrix(comparisons: Sequence[str], columns: Sequence[str]) -> pd.DataFrame:
    """
    Contrast matrix (design columns × comparisons).

    Supports ``"A-B"`` and contrasts of contrasts ``"(A-B)-(C-D)"``.
    """
    columns = list(columns)
    contrasts = {}
    for comparison in comparisons:
        nested = _NESTED_CONTRAST.match(comparison.replace(" ", ""))
        if nested:
            contrasts[comparison] = (
                _simple_contrast(nested["left"], columns)
                - _simple_contrast(nested["right"], columns)
            )
        else:
            contrasts[comparison] = _simple_contrast(comparison, columns)
    return pd.DataFrame(contrasts, index=columns)


# ──────────────────────────────────────────────────────────────────────
# Model fit
# ──────────────────────────────────────────────────────────────────────

def lm_fit(expr: pd.DataFrame, design: pd.DataFrame) -> LinearModelFit:
    """
    Ordinary least squares of every feature on *design*.

    Parameters
    ----------
    expr : pd.DataFrame
        Features × samples, no missing values.
    design : pd.DataFrame
        Samples × coefficients, rows aligned to ``expr.columns``.
    """
    X = design.loc[expr.columns].to_numpy(dtype=float)
    Y = expr.to_numpy(dtype=float)
    n_samples = X.shape[0]

    rank = np.linalg.matrix_rank(X)
    if rank < X.shape[1]:
        raise ValueError(
            "Design matrix is not of full rank; check groups and covariates "
            "for confounding."
        )
    df_residual = n_samples - rank
    if df_residual < 1:
        raise ValueError("No residual degrees of freedom: need replicates per group.")

    coef, _, _, _ = np.linalg.lstsq(X, Y.T, rcond=None)
    residuals = Y - (X @ coef).T
    sigma2 = (residuals ** 2).sum(axis=1) / df_residual

    cov = np.linalg.inv(X.T @ X)
    stdev_unscaled = np.tile(np.sqrt(np.diag(cov)), (Y.shape[0], 1))

    index = expr.index
    cols = design.columns
    return LinearModelFit(
        coefficients=pd.DataFrame(coef.T, index=index, columns=cols),
        stdev_unscaled=pd.DataFrame(stdev_unscaled, index=index, columns=cols),
        sigma2=pd.Series(sigma2, index=index),
        df_residual=pd.Series(float(df_residual), index=index),
        amean=expr.mean(axis=1),
        cov_coefficients=pd.DataFrame(cov, index=cols, columns=cols),
    )


def contrasts_fit(fit: LinearModelFit, contrasts: pd.DataFrame) -> LinearModelFit:
    """Re-express the fit in terms of the *contrasts* columns."""
    C = contrasts.loc[fit.coefficients.columns].to_numpy(dtype=float)
    coef = fit.coefficients.to_numpy() @ C
    cov = C.T @ fit.cov_coefficients.to_numpy() @ C
    stdev = np.tile(np.sqrt(np.diag(cov)), (coef.shape[0], 1))
    index = fit.coefficients.index
    cols = contrasts.columns
    return replace(
        fit,
        coefficients=pd.DataFrame(coef, index=index, columns=cols),
        stdev_unscaled=pd.DataFrame(stdev, index=index, columns=cols),
        cov_coefficients=pd.DataFrame(cov, index=cols, columns=cols),
    )


# ──────────────────────────────────────────────────────────────────────
# Empirical Bayes
# ──────────────────────────────────────────────────────────────────────

def trigamma_inverse(
    x: float,
    tol: float = LIMMA_DEFAULTS["trigamma_inverse_tol"],
    maxiter: int = LIMMA_DEFAULTS["trigamma_inverse_maxiter"],
) -> float:
    """Solve ``trigamma(y) = x`` for y by Newton iteration."""
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x
    y = 0.5 + 1.0 / x
    for _ in range(maxiter):
        tri = special.polygamma(1, y)
        dif = tri * (1.0 - tri / x) / special.polygamma(2, y)
        y += dif
        if -dif / y < tol:
            break
    else:
        logger.warning("trigamma_inverse: iteration limit exceeded")
    return float(y)


def fit_f_dist(s2: np.ndarray, df: np.ndarray) -> tuple[float, float]:
    """
    Moment estimation of the scaled F-distribution of sample variances.

    Returns
    -------
    tuple[float, float]
        (prior variance s0², prior degrees of freedom d0); d0 is
        ``inf`` when the variances show no extra dispersion.
    """
    ok = np.isfinite(s2) & (s2 > 0) & np.isfinite(df) & (df > 0)
    if ok.sum() < 2:
        return float(np.nanmean(s2)), 0.0
    s2, df = s2[ok], df[ok]

    z = np.log(s2)
    e = z - special.digamma(df / 2) + np.log(df / 2)
    emean = e.mean()
    evar = ((e - emean) ** 2).sum() / (e.size - 1) - special.polygamma(1, df / 2).mean()

    if evar > 0:
        df_prior = 2 * trigamma_inverse(evar)
        s2_prior = np.exp(emean + special.digamma(df_prior / 2) - np.log(df_prior / 2))
    else:
        df_prior = np.inf
        s2_prior = np.exp(emean)
    return float(s2_prior), float(df_prior)


def ebayes(fit: LinearModelFit) -> LinearModelFit:
    """Moderated t statistics and p-values for every coefficient/contrast."""
    s2 = fit.sigma2.to_numpy()
    df = fit.df_residual.to_numpy()
    s2_prior, df_prior = fit_f_dist(s2, df)

    if np.isinf(df_prior):
        s2_post = np.full_like(s2, s2_prior)
    else:
        s2_post = (df_prior * s2_prior + df * s2) / (df_prior + df)

    df_pooled = df.sum()
    df_total = np.minimum(df + df_prior, df_pooled)

    coef = fit.coefficients.to_numpy()
    t = coef / (fit.stdev_unscaled.to_numpy() * np.sqrt(s2_post)[:, None])
    p_value = 2 * stats.t.sf(np.abs(t), df_total[:, None])

    logger.info("eBayes: prior df = %.3g, prior variance = %.3g", df_prior, s2_prior)
    index, cols = fit.coefficients.index, fit.coefficients.columns
    return replace(
        fit,
        t=pd.DataFrame(t, index=index, columns=cols),
        p_value=pd.DataFrame(p_value, index=index, columns=cols),
        df_prior=df_prior,
        s2_prior=s2_prior,
        s2_post=pd.Series(s2_post, index=index),
        df_total=pd.Series(df_total, index=index),
    )


def top_table(
    fit: LinearModelFit,
    coef: str,
    adjust_method: str = LIMMA_DEFAULTS["adjust_method"],
) -> pd.DataFrame:
    """
    Results of one coefficient/contrast of an eBayes fit.

    Columns: logFC, AveExpr, t, P.Value, adj.P.Val; sorted by P.Value.
    """
    if fit.t is None:
        raise ValueError("top_table needs an eBayes fit; call ebayes() first.")
    method = validate_adjust_method(adjust_method)

    table = pd.DataFrame({
        "logFC": fit.coefficients[coef],
        "AveExpr": fit.amean,
        "t": fit.t[coef],
        "P.Value": fit.p_value[coef],
    })
    p = table["P.Value"].to_numpy()
    table["adj.P.Val"] = p if method is None else multipletests(p, method=method)[1]
    return table.sort_values("P.Value", kind="mergesort")
