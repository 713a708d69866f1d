"""
Typed records passed between pipeline stages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

import pandas as pd


@dataclass(frozen=True)
class ReferenceUnit:
    """Ancestral/control unit keyed by ``reference_block_id``."""

    reference_block_id: str
    mean_start: float
    mean_end: float
    var_start: float
    var_end: float
    n_replicates: int


@dataclass(frozen=True)
class ObservationUnit:
    """
    One experimental replicate group.

    ``moderators`` holds any further covariates (e.g. a generation count)
    that should travel with the unit into the effect-size table.
    """

    block_id: str
    population: str
    isoline: str
    temperature: str
    reproduction_type: str
    mean_start: float
    mean_end: float
    var_start: float
    var_end: float
    reference_block_id: str
    n_replicates: int
    moderators: Mapping[str, Any] = field(default_factory=dict)

    def grouping_fields(self) -> dict[str, Any]:
        out = {
            "isoline": self.isoline,
            "temperature": self.temperature,
            "reproduction_type": self.reproduction_type,
        }
        out.update(self.moderators)
        return out


@dataclass(frozen=True)
class FitnessEstimate:
    """Scalar fitness value of one unit with its propagated variance."""

    value: float
    variance: float
    n_replicates: int
    transform: str


@dataclass(frozen=True)
class EffectSizeRecord:
    """Standardised effect size for one observation unit."""

    block_id: str
    population: str
    esid: str
    d: float
    var_d: float
    moderators: Mapping[str, Any] = field(default_factory=dict)


def effect_sizes_to_frame(
    records: Sequence[EffectSizeRecord],
    moderator_order: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Flatten effect-size records into the output table.

    Parameters
    ----------
    records : Sequence[EffectSizeRecord]
        Records to flatten.
    moderator_order : Optional[Sequence[str]]
        Column order for the moderator fields. Defaults to first-seen order.

    Returns
    -------
    pd.DataFrame
        Columns: block_id, population, esid, moderator fields..., d, var_d
    """
    if moderator_order is None:
        moderator_order = list(dict.fromkeys(k for r in records for k in r.moderators))
    rows = []
    for r in records:
        row: dict[str, Any] = {"block_id": r.block_id, "population": r.population, "esid": r.esid}
        for key in moderator_order:
            row[key] = r.moderators.get(key)
        row["d"] = r.d
        row["var_d"] = r.var_d
        rows.append(row)
    columns = ["block_id", "population", "esid", *moderator_order, "d", "var_d"]
    return pd.DataFrame(rows, columns=columns)
