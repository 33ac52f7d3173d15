"""
deseq_runner.py — pydeseq2 model fitting for count data.

Only this module imports pydeseq2.  ``gexkit.deseq.wrap_deseq2`` owns
folders, tables and plots and calls in here for anything that needs a
``DeseqDataSet``.

Steps of a DESeq2 fit
---------------------
1. Size factors (median-of-ratios, or ``poscounts`` for sparse data).
2. Per-gene dispersions, shrunk towards a fitted mean trend.
3. Negative binomial GLM on ``~ group``.
4. Wald test per comparison.
5. Independent filtering on the mean of normalised counts, then
   multiple-testing adjustment.

Functions
---------
build_deseq_dataset(counts_df, groups, size_factors_fit_type, n_cpus)
    -> DeseqDataSet with the design ``~ group``.

run_deseq2(dds)
    -> Fits the model one step at a time and returns step timings.

variance_stabilize(counts_df, groups, size_factors_fit_type)
    -> Blind variance-stabilising transformation (genes x samples).

normalized_counts(dds) / dispersion_table(dds)
    -> Data behind the RLE and dispersion plots.

compute_contrast(dds, test_level, reference_level, alpha, adjust_method)
    -> Results table of one comparison.

Usage example
--------------
    from gexkit.deseq_runner import build_deseq_dataset, run_deseq2, compute_contrast

    dds = build_deseq_dataset(counts_df, groups)
    dds, timings = run_deseq2(dds)
    results_df = compute_contrast(dds, "treated", "control")
"""


from __future__ import annotations

import gc
import logging
import time

import numpy as np
import pandas as pd

from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats
from statsmodels.stats.multitest import multipletests

from gexkit.config import DESEQ2_DEFAULTS
from gexkit.validation import check_sparse_data, validate_adjust_method

logger = logging.getLogger(__name__)

# Column of the metadata passed to pydeseq2; the design is "~ group".
GROUP_FACTOR = "group"


def _transpose(counts_df: pd.DataFrame) -> pd.DataFrame:
    return pd.DataFrame(counts_df.to_numpy().T, index=counts_df.columns, columns=counts_df.index)


def build_deseq_dataset(
    counts_df: pd.DataFrame,
    groups: pd.Series,
    size_factors_fit_type: str | None = None,
    n_cpus: int = DESEQ2_DEFAULTS["n_cpus"],
) -> DeseqDataSet:
    """
    Wrap a genes x samples count matrix in a ``DeseqDataSet``.

    pydeseq2 works on samples x genes, so the matrix is transposed on
    the way in.

    Parameters
    ----------
    counts_df : pd.DataFrame
        Raw counts, genes in rows and samples in columns.
    groups : pd.Series
        Group label per sample (index = sample names).
    size_factors_fit_type : str, optional
        "ratio" or "poscounts".  If None, "poscounts" is chosen when
        every gene has at least one zero count, else "ratio".
    n_cpus : int
        joblib workers used by pydeseq2.

    Notes
    -----
    Whatever the user's group column is called, the labels end up as
    strings in a metadata column named ``group`` and the design is
    ``"~ group"``.
    """
    if size_factors_fit_type is None:
        size_factors_fit_type = (
            "poscounts" if check_sparse_data(counts_df)
            else DESEQ2_DEFAULTS["size_factors_fit_type"]
        )

    metadata_df = pd.DataFrame(
        {GROUP_FACTOR: groups.reindex(counts_df.columns).astype(str).values},
        index=counts_df.columns,
    )
    counts_t = _transpose(counts_df)

    dds = DeseqDataSet(
        counts=counts_t,
        metadata=metadata_df,
        design=f"~ {GROUP_FACTOR}",
        size_factors_fit_type=size_factors_fit_type,
        n_cpus=n_cpus,
        quiet=True,
    )
    del counts_t
    gc.collect()
    return dds


def _fit_size_factors(dds: DeseqDataSet) -> None:
    dds.fit_size_factors(fit_type=dds.size_factors_fit_type, control_genes=dds.control_genes)


def _fit_dispersion_trend(dds: DeseqDataSet) -> None:
    dds.fit_dispersion_trend()
    dds.fit_dispersion_prior()


def _fit_cooks(dds: DeseqDataSet) -> None:
    dds.calculate_cooks()
    if dds.refit_cooks:
        dds.refit()
    dds.cooks_outlier()


# (timing key, log message, step)
_FIT_STEPS = (
    ("size_factors", "estimating size factors", _fit_size_factors),
    ("genewise_disp", "estimating dispersions", DeseqDataSet.fit_genewise_dispersions),
    ("disp_trend", "fitting mean-dispersion relationship", _fit_dispersion_trend),
    ("map_disp", "final dispersion estimates", DeseqDataSet.fit_MAP_dispersions),
    ("fit_lfc", "fitting model and testing", DeseqDataSet.fit_LFC),
    ("cooks", "flagging count outliers", _fit_cooks),
)


def run_deseq2(dds: DeseqDataSet) -> tuple[DeseqDataSet, dict[str, float]]:
    """
    Fit the DESeq2 model in place, the same sequence ``dds.deseq2()``
    runs, but logging and timing every step.

    Returns
    -------
    tuple[DeseqDataSet, dict[str, float]]
        The fitted dataset and seconds spent per step.
    """
    step_timings: dict[str, float] = {}
    for key, message, step in _FIT_STEPS:
        t0 = time.monotonic()
        logger.info("DESeq2: %s", message)
        step(dds)
        step_timings[key] = time.monotonic() - t0
        gc.collect()
    return dds, step_timings


def variance_stabilize(
    counts_df: pd.DataFrame,
    groups: pd.Series,
    size_factors_fit_type: str | None = None,
) -> tuple[pd.DataFrame, str]:
    """
    Blind variance-stabilising transformation of the raw counts.

    A separate dataset is used so that the fitted model of the main
    analysis is left untouched.  If the VST fit fails (e.g. too few
    genes for the dispersion trend) the function falls back to
    ``log2(normalized counts + 1)`` and logs a warning.

    Returns
    -------
    tuple[pd.DataFrame, str]
        - Transformed values (genes x samples).
        - Name of the transformation used ("vst" or "log2").
    """
    dds_vst = build_deseq_dataset(counts_df, groups, size_factors_fit_type)
    try:
        dds_vst.vst(use_design=False)
        values = dds_vst.layers["vst_counts"]
        transform = "vst"
    except (ValueError, RuntimeError, FloatingPointError, np.linalg.LinAlgError) as exc:
        logger.warning("VST failed (%s); using log2(normalized counts + 1).", exc)
        if "normed_counts" not in dds_vst.layers:
            dds_vst.fit_size_factors(fit_type=dds_vst.size_factors_fit_type)
        values = np.log2(dds_vst.layers["normed_counts"] + 1)
        transform = "log2"

    vst_df = pd.DataFrame(
        np.asarray(values).T, index=counts_df.index, columns=counts_df.columns,
    )
    del dds_vst
    gc.collect()
    return vst_df, transform


def normalized_counts(dds: DeseqDataSet) -> pd.DataFrame:
    """Size-factor normalised counts (genes x samples) of a fitted dataset."""
    return pd.DataFrame(
        np.asarray(dds.layers["normed_counts"]).T,
        index=dds.var_names,
        columns=dds.obs_names,
    )


def dispersion_table(dds: DeseqDataSet) -> pd.DataFrame:
    """
    Per-gene dispersion estimates for the dispersion plot.

    Columns: mean (of normalised counts), genewise, fitted, final.
    """
    normed = np.asarray(dds.layers["normed_counts"])
    return pd.DataFrame(
        {
            "mean": normed.mean(axis=0),
            "genewise": np.asarray(dds.var["genewise_dispersions"]),
            "fitted": np.asarray(dds.var["fitted_dispersions"]),
            "final": np.asarray(dds.var["dispersions"]),
        },
        index=dds.var_names,
    )


def compute_contrast(
    dds: DeseqDataSet,
    test_level: str,
    reference_level: str,
    alpha: float = DESEQ2_DEFAULTS["alpha"],
    adjust_method: str = DESEQ2_DEFAULTS["adjust_method"],
) -> pd.DataFrame:
    """
    Wald test of *test_level* against *reference_level*.

    Returns the pydeseq2 results table, one row per gene with
    baseMean, log2FoldChange, lfcSE, stat, pvalue and padj.

    pydeseq2 always adjusts with Benjamini-Hochberg after independent
    filtering.  For any other *adjust_method* the raw p-values of the
    genes that passed independent filtering (``padj`` not missing) are
    re-adjusted with statsmodels; filtered-out genes keep a missing
    ``padj``.

    Parameters
    ----------
    dds : DeseqDataSet
        Dataset fitted by ``run_deseq2``.
    test_level, reference_level : str
        Group levels; fold changes are test vs reference.
    alpha : float
        Target FDR of the independent filtering.
    adjust_method : str
        One of ``gexkit.config.ADJUST_METHODS``.
    """
    method = validate_adjust_method(adjust_method)

    stats = DeseqStats(
        dds,
        contrast=[GROUP_FACTOR, test_level, reference_level],
        alpha=alpha,
        quiet=True,
    )
    stats.summary()
    results_df = stats.results_df.copy()

    if method != "fdr_bh":
        tested = results_df["padj"].notna() & results_df["pvalue"].notna()
        if method is None:
            results_df.loc[tested, "padj"] = results_df.loc[tested, "pvalue"]
        elif tested.any():
            results_df.loc[tested, "padj"] = multipletests(
                results_df.loc[tested, "pvalue"].to_numpy(), method=method,
            )[1]
        logger.info("p-values re-adjusted with method '%s'", adjust_method)

    return results_df
