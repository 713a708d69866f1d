"""
Reduction of replicate-level proportions to per-unit means and variances.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

from .config import PropagationSettings
from .constants import REPLICATE_COLUMNS, TIME_POINTS
from .data_loader import require_columns
from .exceptions import DomainError
from .logging_utils import get_logger
from .propagation import average_variance, binomial_variance

logger = get_logger(__name__)


def aggregate_replicates(
    df: pd.DataFrame,
    settings: Optional[PropagationSettings] = None,
    key: str = "block_id",
) -> pd.DataFrame:
    """
    Average replicate proportions per unit and time point.

    Each replicate contributes a binomial variance ``p(1-p)/N`` (``N`` from an
    optional ``count`` column, else ``settings.assumed_count``); the variance
    of the replicate mean uses ``average_variance`` with the configured
    correlation correction.

    Parameters
    ----------
    df : pd.DataFrame
        Replicate table with columns ``block_id``, ``time`` ("start"/"end"),
        ``proportion`` and optionally ``count``.
    settings : Optional[PropagationSettings]
        Correlation, representative variance and assumed count.
    key : str, default="block_id"
        Unit identifier column.

    Returns
    -------
    pd.DataFrame
        One row per unit: key, mean_start, mean_end, var_start, var_end, n_replicates
    """
    settings = settings or PropagationSettings()
    require_columns(df, [key] + [c for c in REPLICATE_COLUMNS if c != "block_id"], "Replicate")
    data = df.copy()
    data[key] = data[key].astype(str)
    data["time"] = data["time"].astype(str).str.strip().str.lower()
    unknown = sorted(set(data["time"]) - set(TIME_POINTS))
    if unknown:
        raise ValueError(f"Replicate table has unknown time points {unknown}; expected {list(TIME_POINTS)}")
    data["proportion"] = pd.to_numeric(data["proportion"], errors="coerce")
    counts = (
        pd.to_numeric(data["count"], errors="coerce")
        if "count" in data.columns
        else pd.Series(np.nan, index=data.index)
    )

    rows = []
    for unit, sub in data.groupby(key, sort=True):
        row: dict = {key: unit}
        n_by_time = {}
        for time in TIME_POINTS:
            part = sub[sub["time"] == time]
            if part.empty or part["proportion"].isna().any():
                raise ValueError(f"{key} {unit!r} has no complete {time!r} replicates")
            variances = [
                binomial_variance(p, None if np.isnan(n) else n, settings.assumed_count)
                for p, n in zip(part["proportion"], counts.loc[part.index])
            ]
            mean = float(part["proportion"].mean())
            if not 0.0 < mean < 1.0:
                raise DomainError(f"{key} {unit!r}: mean {time} proportion must lie in (0, 1), got {mean}")
            row[f"mean_{time}"] = mean
            row[f"var_{time}"] = average_variance(
                variances,
                correlation=settings.replicate_correlation,
                representative_variance=settings.representative_variance,
            )
            n_by_time[time] = len(part)
        if n_by_time["start"] != n_by_time["end"]:
            logger.warning(
                "%s %r has %d start and %d end replicates; using the smaller count",
                key, unit, n_by_time["start"], n_by_time["end"],
            )
        row["n_replicates"] = min(n_by_time.values())
        rows.append(row)

    return pd.DataFrame(
        rows, columns=[key, "mean_start", "mean_end", "var_start", "var_end", "n_replicates"]
    )


def merge_aggregates(units: pd.DataFrame, aggregates: pd.DataFrame, key: str) -> pd.DataFrame:
    """
    Attach aggregated proportions to a unit metadata table.

    ``aggregates`` is keyed by ``block_id``; rows of ``units`` are matched on
    ``key``. Existing proportion columns in ``units`` are replaced.
    """
    value_cols = ["mean_start", "mean_end", "var_start", "var_end", "n_replicates"]
    base = units.drop(columns=[c for c in value_cols if c in units.columns])
    agg = aggregates.rename(columns={"block_id": key})
    merged = base.assign(**{key: base[key].astype(str)}).merge(agg, on=key, how="left")
    missing = merged.loc[merged["mean_start"].isna(), key]
    if not missing.empty:
        raise KeyError(f"No replicate data for {key} {missing.iloc[0]!r}")
    return merged
