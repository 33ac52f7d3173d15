"""
audit.py -- Run records for reproducibility.

Every wrapper writes a JSON run record next to its results: parameters,
library versions, data dimensions, seeds, elapsed time and a results
summary.  Nothing here touches the statistics.

Functions
---------
get_library_versions()
    Return a dict of library name -> version string.

build_run_record(analysis, parameters, input_data, results_summary, ...)
    Build a JSON-serializable run record.

write_run_record(record, path)
    Write a run record as indented JSON.

format_run_record(record)
    Format a run record as human-readable text for lab notebooks.
"""

from __future__ import annotations

import datetime
import json
import logging
import platform
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════
# Library versions
# ══════════════════════════════════════════════════════════════════════

_TRACKED_LIBRARIES = (
    "gexkit",
    "pydeseq2",
    "pandas",
    "numpy",
    "scipy",
    "statsmodels",
    "sklearn",
    "matplotlib",
    "seaborn",
    "gseapy",
    "matplotlib_venn",
    "upsetplot",
    "requests",
)


def get_library_versions() -> dict[str, str]:
    """Return ``{library: version}`` for all relevant scientific packages.

    Libraries that are not installed return ``"not installed"``.
    """
    libs: dict[str, str] = {}
    for name in _TRACKED_LIBRARIES:
        try:
            mod = __import__(name)
            libs[name] = getattr(mod, "__version__", "unknown")
        except ImportError:
            libs[name] = "not installed"
    return libs


# ══════════════════════════════════════════════════════════════════════
# JSON-safe serialiser
# ══════════════════════════════════════════════════════════════════════

def _safe_serialize(obj: Any) -> Any:
    """Recursively convert *obj* to JSON-safe Python primitives.

    Handles numpy scalars and arrays, dataclasses, pandas objects,
    paths and timestamps.  NaN becomes ``None``.
    """
    if obj is None or isinstance(obj, (str, bool)):
        return obj
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, (float, np.floating)):
        return None if np.isnan(obj) else float(obj)
    if isinstance(obj, int):
        return obj
    if isinstance(obj, np.ndarray):
        return _safe_serialize(obj.tolist())
    if is_dataclass(obj) and not isinstance(obj, type):
        return _safe_serialize(asdict(obj))
    if isinstance(obj, dict):
        return {str(k): _safe_serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, range)):
        return [_safe_serialize(v) for v in obj]
    if isinstance(obj, pd.Series):
        return _safe_serialize(obj.to_dict())
    if isinstance(obj, pd.DataFrame):
        return {"shape": list(obj.shape)}
    if isinstance(obj, (datetime.datetime, pd.Timestamp)):
        return obj.isoformat()
    # Fallback: stringify
    return str(obj)


# ══════════════════════════════════════════════════════════════════════
# Run record builder
# ══════════════════════════════════════════════════════════════════════

def build_run_record(
    analysis: str,
    parameters: dict | Any,
    input_data: dict,
    results_summary: dict,
    seeds: dict | None = None,
    elapsed_seconds: float | None = None,
) -> dict:
    """Build a JSON-serializable run record.

    Parameters
    ----------
    analysis : str
        Name of the wrapper (e.g. ``"deseq2"``).
    parameters : dict or dataclass
        Parameters the wrapper was called with.
    input_data : dict
        Data dimensions (samples, genes before/after filtering ...).
    results_summary : dict
        Counts of significant genes per comparison and similar.
    seeds : dict, optional
        Random seeds used.
    elapsed_seconds : float, optional
        Total wall-clock time of the run.

    Returns
    -------
    dict
        Complete run record, safe for ``json.dumps()``.
    """
    record = {
        "gexkit": {
            "analysis": analysis,
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        },
        "environment": {
            "python": platform.python_version(),
            "platform": platform.platform(),
            "libraries": get_library_versions(),
        },
        "input_data": input_data,
        "parameters": parameters,
        "execution": {"total_seconds": elapsed_seconds},
        "results_summary": results_summary,
    }
    if seeds:
        record["seeds"] = seeds
    return _safe_serialize(record)


def write_run_record(record: dict, path: str | Path) -> Path:
    """Write *record* as indented JSON to *path*."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(record, indent=2))
    logger.info("Run record written to %s", path)
    return path


# ══════════════════════════════════════════════════════════════════════
# Human-readable text formatter
# ══════════════════════════════════════════════════════════════════════

def _format_section(title: str, values: dict, lines: list[str]) -> None:
    lines.append(f"--- {title} ---")
    for k, v in values.items():
        if isinstance(v, dict):
            lines.append(f"  {k}:")
            for sk, sv in v.items():
                lines.append(f"    {sk}: {sv}")
        else:
            lines.append(f"  {k}: {v}")
    lines.append("")


def format_run_record(record: dict) -> str:
    """Format a run record as a human-readable text report.

    Suitable for pasting into a methods section, lab notebook, or
    supplementary materials.

    Parameters
    ----------
    record : dict
        Output of ``build_run_record()``.

    Returns
    -------
    str
        Multi-line plain-text summary.
    """
    lines: list[str] = []
    sep = "=" * 60

    lines.append(sep)
    lines.append("gexkit -- Run Record")
    lines.append(sep)
    lines.append("")

    meta = record.get("gexkit", {})
    lines.append(f"Analysis : {meta.get('analysis', 'unknown')}")
    lines.append(f"Timestamp: {meta.get('timestamp', 'unknown')}")
    lines.append("")

    _format_section("Environment", record.get("environment", {}), lines)
    _format_section("Input Data", record.get("input_data", {}), lines)
    _format_section("Parameters", record.get("parameters", {}), lines)
    if "seeds" in record:
        _format_section("Seeds", record["seeds"], lines)

    lines.append("--- Execution ---")
    total = record.get("execution", {}).get("total_seconds")
    if total is not None:
        lines.append(f"  Total time: {total:.1f}s")
    lines.append("")

    _format_section("Results Summary", record.get("results_summary", {}), lines)

    lines.append(sep)
    return "\n".join(lines)
