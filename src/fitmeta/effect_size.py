"""
Bias-corrected standardised effect sizes (Hedges' g) from fitness estimates.
"""

from __future__ import annotations

import math
from typing import Mapping, Sequence, Union

import pandas as pd

from .constants import DEFAULT_FITNESS_TRANSFORM
from .exceptions import DomainError
from .logging_utils import get_logger
from .propagation import fitness_estimate
from .records import (
    EffectSizeRecord,
    FitnessEstimate,
    ObservationUnit,
    ReferenceUnit,
    effect_sizes_to_frame,
)

logger = get_logger(__name__)


def _degrees_of_freedom(n_exp: int, n_ref: int) -> int:
    if n_exp < 1 or n_ref < 1:
        raise DomainError(f"replicate counts must be >= 1, got n_exp={n_exp}, n_ref={n_ref}")
    df = n_exp + n_ref - 2
    if df < 1:
        raise DomainError("pooled SD needs n_exp + n_ref > 2")
    return df


def pooled_sd(var_exp: float, n_exp: int, var_ref: float, n_ref: int) -> float:
    """Pooled standard deviation of two groups."""
    df = _degrees_of_freedom(n_exp, n_ref)
    pooled_var = ((n_exp - 1) * var_exp + (n_ref - 1) * var_ref) / df
    return math.sqrt(pooled_var) if pooled_var >= 0 else math.nan


def small_sample_correction(n_exp: int, n_ref: int) -> float:
    """Hedges' approximate bias correction ``J = 1 - 3 / (4 df - 1)``."""
    df = _degrees_of_freedom(n_exp, n_ref)
    return 1.0 - 3.0 / (4.0 * df - 1.0)


def hedges_g(experimental: FitnessEstimate, reference: FitnessEstimate) -> tuple[float, float]:
    """
    Compute Hedges' g and its sampling variance.

    Only the mean, variance and replicate count of each estimate are used,
    so the result does not depend on which fitness transform produced them.

    Parameters
    ----------
    experimental : FitnessEstimate
        Fitness of the evolved/experimental unit.
    reference : FitnessEstimate
        Fitness of the paired ancestral/reference unit.

    Returns
    -------
    tuple[float, float]
        ``(d, var_d)`` with
        ``d = J (mean_exp - mean_ref) / pooled_sd`` and
        ``var_d = (n_e + n_r) / (n_e n_r) + d**2 / (2 (n_e + n_r))``.

    Raises
    ------
    DomainError
        If the pooled SD is zero or not finite.
    """
    n_e, n_r = experimental.n_replicates, reference.n_replicates
    sd = pooled_sd(experimental.variance, n_e, reference.variance, n_r)
    if not math.isfinite(sd) or sd == 0:
        raise DomainError(f"pooled SD must be positive and finite, got {sd}")

    j = small_sample_correction(n_e, n_r)
    d = j * (experimental.value - reference.value) / sd
    var_d = (n_e + n_r) / (n_e * n_r) + d**2 / (2 * (n_e + n_r))
    return d, var_d


def effect_size_record(
    unit: ObservationUnit,
    reference: ReferenceUnit,
    esid: str,
    transform: str = DEFAULT_FITNESS_TRANSFORM,
) -> EffectSizeRecord:
    """Build the effect-size record of one observation against its reference."""
    exp_fit = fitness_estimate(unit, transform)
    ref_fit = fitness_estimate(reference, transform)
    try:
        d, var_d = hedges_g(exp_fit, ref_fit)
    except DomainError as exc:
        raise DomainError(f"unit {unit.block_id!r}: {exc}") from exc
    return EffectSizeRecord(
        block_id=unit.block_id,
        population=unit.population,
        esid=esid,
        d=d,
        var_d=var_d,
        moderators=unit.grouping_fields(),
    )


def compute_effect_sizes(
    observations: Sequence[ObservationUnit],
    references: Union[Mapping[str, ReferenceUnit], Sequence[ReferenceUnit]],
    transform: str = DEFAULT_FITNESS_TRANSFORM,
) -> list[EffectSizeRecord]:
    """
    Pair every observation with its reference and compute effect sizes.

    Parameters
    ----------
    observations : Sequence[ObservationUnit]
        Experimental units.
    references : Mapping[str, ReferenceUnit] | Sequence[ReferenceUnit]
        Reference units, keyed (or keyable) by ``reference_block_id``.
    transform : str, default="log_ratio"
        Fitness transform applied to both sides.

    Returns
    -------
    list[EffectSizeRecord]
        One record per observation, in input order; ``esid`` is ``es1``, ``es2``, ...

    Raises
    ------
    KeyError
        If an observation's reference key has no reference unit.
    """
    if not isinstance(references, Mapping):
        references = {r.reference_block_id: r for r in references}

    records = []
    for i, unit in enumerate(observations):
        if unit.reference_block_id not in references:
            raise KeyError(
                f"unit {unit.block_id!r}: no reference unit with key {unit.reference_block_id!r}"
            )
        records.append(
            effect_size_record(unit, references[unit.reference_block_id], f"es{i + 1}", transform)
        )
    logger.info("Computed %d effect sizes using the %s transform", len(records), transform)
    return records


def effect_size_table(
    observations: Sequence[ObservationUnit],
    references: Union[Mapping[str, ReferenceUnit], Sequence[ReferenceUnit]],
    transform: str = DEFAULT_FITNESS_TRANSFORM,
) -> pd.DataFrame:
    """Effect sizes as a DataFrame (see ``effect_sizes_to_frame``)."""
    return effect_sizes_to_frame(compute_effect_sizes(observations, references, transform))
