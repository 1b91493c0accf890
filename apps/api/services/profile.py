"""Deterministic statistics over uploaded CSV text.

The analysis flow overlays these numbers on the model output so that row and
column counts, missing values and column types never depend on model
inference.
"""

from __future__ import annotations

import io
import logging
from typing import Any, Dict, List

import pandas as pd

LOGGER = logging.getLogger(__name__)

_MAX_SUMMARY_COLUMNS = 8


def count_rows(csv_data: str) -> int:
    """Number of non-empty lines minus the header line."""
    lines = [line for line in csv_data.strip().split("\n") if line.strip()]
    return max(0, len(lines) - 1)


def profile_csv(csv_data: str) -> Dict[str, Any]:
    """Return counts, column names, missing values, types and numeric summary stats.

    Falls back to a header/line-count estimate when pandas cannot parse the text.
    """
    try:
        df = pd.read_csv(io.StringIO(csv_data))
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError, ValueError) as exc:
        LOGGER.warning("CSV profile fell back to line scan: %s", exc)
        header = csv_data.strip().split("\n", 1)[0] if csv_data.strip() else ""
        names = [h.strip() for h in header.split(",")] if header else []
        return {
            "rowCount": count_rows(csv_data),
            "columnCount": len(names),
            "columnNames": names,
            "missingValues": [],
            "columnTypes": [],
            "summaryStats": [],
        }

    rows = count_rows(csv_data)
    names = [str(c) for c in df.columns]

    missing: List[Dict[str, Any]] = []
    for col in df.columns:
        miss = int(df[col].isna().sum())
        if miss:
            missing.append({"columnName": str(col), "value": miss})
    missing.sort(key=lambda s: -s["value"])

    types = [{"columnName": str(col), "value": infer_column_type(df[col])} for col in df.columns]

    stats: List[Dict[str, Any]] = []
    num_cols = [c for c in df.columns if _is_numeric(df[c])]
    for col in num_cols[:_MAX_SUMMARY_COLUMNS]:
        s = df[col].dropna()
        if s.empty:
            continue
        stats.append({"columnName": f"{col} (mean)", "value": round(float(s.mean()), 4)})
        stats.append({"columnName": f"{col} (min)", "value": round(float(s.min()), 4)})
        stats.append({"columnName": f"{col} (max)", "value": round(float(s.max()), 4)})

    return {
        "rowCount": rows,
        "columnCount": len(names),
        "columnNames": names,
        "missingValues": missing,
        "columnTypes": types,
        "summaryStats": stats,
    }


def infer_column_type(series: pd.Series) -> str:
    if _is_numeric(series):
        return "Numeric"
    values = series.dropna().astype(str)
    if values.empty:
        return "Text"
    parsed = pd.to_datetime(values, errors="coerce", format="mixed")
    if parsed.notna().mean() >= 0.9:
        return "Date"
    # 低カーディナリティ文字列はカテゴリ扱い
    unique_ratio = values.nunique() / float(len(values))
    if values.nunique() <= 20 or unique_ratio <= 0.5:
        return "Categorical"
    return "Text"


def _is_numeric(series: pd.Series) -> bool:
    # string/object 列 (pandas 3 の StringDtype を含む) と bool 列は除外
    return pd.api.types.is_numeric_dtype(series.dtype) and not pd.api.types.is_bool_dtype(series.dtype)
