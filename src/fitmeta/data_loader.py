"""
Data loading and conversion of tables into typed unit records.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from .config import PropagationSettings
from .constants import GROUPING_FIELDS, OBSERVATION_COLUMNS, REFERENCE_COLUMNS
from .records import ObservationUnit, ReferenceUnit


def sanitize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """
    Standardize column names to lower-case identifiers.

    Whitespace, hyphens, dots and other punctuation become underscores, so
    "Mean Start" and "mean-start" both map to ``mean_start``.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame with potentially inconsistent column names.

    Returns
    -------
    pd.DataFrame
        DataFrame with sanitized column names.
    """
    rename_map = {
        col: re.sub(r"[^0-9a-zA-Z]+", "_", str(col).strip()).strip("_").lower()
        for col in df.columns
    }
    return df.rename(columns=rename_map)


def load_table(path: str | Path, sheet_name: Optional[str] = None) -> pd.DataFrame:
    """
    Load a CSV or Excel table from disk.

    Parameters
    ----------
    path : str | Path
        File path to CSV or Excel file.
    sheet_name : Optional[str]
        Sheet name for Excel files. If None, uses first sheet.

    Returns
    -------
    pd.DataFrame
        Loaded and sanitized DataFrame.

    Raises
    ------
    ValueError
        If file format is not CSV or XLSX.
    """
    p = Path(path)
    if p.suffix.lower() == ".csv":
        df = pd.read_csv(p)
    elif p.suffix.lower() in [".xlsx", ".xls"]:
        df = pd.read_excel(p, sheet_name=sheet_name or 0)
    else:
        raise ValueError(f"Unsupported file format: {p.suffix}")
    return sanitize_columns(df)


def require_columns(df: pd.DataFrame, columns: Sequence[str], what: str) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"{what} table is missing required columns: {missing}")


def _replicate_counts(df: pd.DataFrame, settings: PropagationSettings) -> pd.Series:
    if "n_replicates" not in df.columns:
        return pd.Series(settings.n_replicates, index=df.index)
    counts = pd.to_numeric(df["n_replicates"], errors="coerce").fillna(settings.n_replicates)
    return counts.astype(int)


def _float_columns(df: pd.DataFrame, columns: Sequence[str], key: str) -> pd.DataFrame:
    out = df.copy()
    for col in columns:
        out[col] = pd.to_numeric(out[col], errors="coerce")
        bad = out[col].isna().to_numpy()
        if bad.any():
            row = int(np.flatnonzero(bad)[0])
            raise ValueError(
                f"Column {col!r} is missing or non-numeric for {key} {df[key].iloc[row]!r}"
            )
    return out


def _require_labels(df: pd.DataFrame, columns: Sequence[str], key: Optional[str] = None) -> None:
    for col in columns:
        missing = df[col].isna().to_numpy() | (df[col].astype(str).str.strip() == "").to_numpy()
        if missing.any():
            row = int(np.flatnonzero(missing)[0])
            where = f"for {key} {df[key].iloc[row]!r}" if key else f"in row {row}"
            raise ValueError(f"Column {col!r} is missing {where}")


def observation_units_from_frame(
    df: pd.DataFrame,
    settings: Optional[PropagationSettings] = None,
    moderator_columns: Sequence[str] = (),
) -> list[ObservationUnit]:
    """
    Convert an observation table into ``ObservationUnit`` records.

    Parameters
    ----------
    df : pd.DataFrame
        Table with the observation schema (``n_replicates`` optional).
    settings : Optional[PropagationSettings]
        Supplies the replicate count used where ``n_replicates`` is missing.
    moderator_columns : Sequence[str]
        Extra columns (e.g. a generation count) carried as moderators.

    Returns
    -------
    list[ObservationUnit]
        One record per row, in table order.
    """
    settings = settings or PropagationSettings()
    required = [c for c in OBSERVATION_COLUMNS if c != "n_replicates"]
    require_columns(df, list(required) + list(moderator_columns), "Observation")
    _require_labels(df, ["block_id"])
    if df["block_id"].astype(str).duplicated().any():
        dup = df.loc[df["block_id"].astype(str).duplicated(), "block_id"].iloc[0]
        raise ValueError(f"Duplicate block_id {dup!r} in observation table")
    _require_labels(df, ["population", *GROUPING_FIELDS, "reference_block_id"], "block_id")

    numeric = _float_columns(df, ["mean_start", "mean_end", "var_start", "var_end"], "block_id")
    counts = _replicate_counts(df, settings)
    units = []
    for idx, row in numeric.iterrows():
        units.append(
            ObservationUnit(
                block_id=str(row["block_id"]),
                population=str(row["population"]),
                isoline=str(row["isoline"]),
                temperature=str(row["temperature"]),
                reproduction_type=str(row["reproduction_type"]),
                mean_start=float(row["mean_start"]),
                mean_end=float(row["mean_end"]),
                var_start=float(row["var_start"]),
                var_end=float(row["var_end"]),
                reference_block_id=str(row["reference_block_id"]),
                n_replicates=int(counts.loc[idx]),
                moderators={col: row[col] for col in moderator_columns},
            )
        )
    return units


def reference_units_from_frame(
    df: pd.DataFrame,
    settings: Optional[PropagationSettings] = None,
) -> dict[str, ReferenceUnit]:
    """Convert a reference table into ``ReferenceUnit`` records keyed by reference_block_id."""
    settings = settings or PropagationSettings()
    require_columns(df, [c for c in REFERENCE_COLUMNS if c != "n_replicates"], "Reference")
    _require_labels(df, ["reference_block_id"])
    numeric = _float_columns(df, ["mean_start", "mean_end", "var_start", "var_end"], "reference_block_id")
    counts = _replicate_counts(df, settings)
    units: dict[str, ReferenceUnit] = {}
    for idx, row in numeric.iterrows():
        key = str(row["reference_block_id"])
        if key in units:
            raise ValueError(f"Duplicate reference_block_id {key!r} in reference table")
        units[key] = ReferenceUnit(
            reference_block_id=key,
            mean_start=float(row["mean_start"]),
            mean_end=float(row["mean_end"]),
            var_start=float(row["var_start"]),
            var_end=float(row["var_end"]),
            n_replicates=int(counts.loc[idx]),
        )
    return units
