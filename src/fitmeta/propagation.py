"""
Delta-method variance propagation for proportion-based fitness estimates.
"""

from __future__ import annotations

import math
from math import comb
from typing import Optional, Sequence, Union

import numpy as np

from .constants import (
    DEFAULT_REPLICATE_CORRELATION,
    DEFAULT_REPRESENTATIVE_VARIANCE,
    FITNESS_TRANSFORMS,
)
from .exceptions import DomainError
from .records import FitnessEstimate, ObservationUnit, ReferenceUnit

Unit = Union[ObservationUnit, ReferenceUnit]


def _check_variance(value: float, what: str) -> None:
    if not math.isfinite(value) or value < 0:
        raise DomainError(f"{what} must be a finite non-negative number, got {value}")


def binomial_variance(p: float, n: Optional[float], assumed_count: float) -> float:
    """
    Sampling variance ``p(1-p)/N`` of one replicate proportion.

    Parameters
    ----------
    p : float
        Observed proportion of a single replicate, in [0, 1]. The endpoints are
        allowed here; only unit means must lie strictly inside (0, 1).
    n : Optional[float]
        Individuals scored. ``None`` or NaN falls back to ``assumed_count``.
    assumed_count : float
        Count used when ``n`` is missing (see ``ASSUMED_REPLICATE_COUNT``).

    Returns
    -------
    float
        Binomial variance of the proportion.
    """
    if not math.isfinite(p) or not 0.0 <= p <= 1.0:
        raise DomainError(f"proportion must lie in [0, 1], got {p}")
    if n is None or (isinstance(n, float) and math.isnan(n)):
        n = assumed_count
    if n <= 0:
        raise DomainError(f"replicate count must be positive, got {n}")
    return p * (1.0 - p) / n


def average_variance(
    variances: Sequence[float],
    correlation: float = DEFAULT_REPLICATE_CORRELATION,
    representative_variance: float = DEFAULT_REPRESENTATIVE_VARIANCE,
    n: Optional[int] = None,
) -> float:
    """
    Variance of the mean of ``n`` correlated replicate estimates.

    The independent part is ``sum(var_i) / n**2``. Pairwise covariances are
    not observable, so every pair is approximated by
    ``r * sqrt(v_rep * v_rep)`` with one representative per-replicate
    variance ``v_rep``, giving the correction ``2 * C(n, 2) * r * v_rep``.

    Parameters
    ----------
    variances : Sequence[float]
        Per-replicate sampling variances.
    correlation : float, default=0.8
        Between-replicate correlation r, in [0, 1].
    representative_variance : float, default=0.0005
        Representative per-replicate proportion variance.
    n : Optional[int]
        Replicate count. Defaults to ``len(variances)``.

    Returns
    -------
    float
        Variance of the replicate mean.

    Raises
    ------
    DomainError
        If a variance is negative or non-finite, or ``n`` disagrees with the
        number of variances supplied.
    """
    values = [float(v) for v in variances]
    if n is None:
        n = len(values)
    if n < 1:
        raise DomainError("at least one replicate variance is required")
    if len(values) != n:
        raise DomainError(f"expected {n} replicate variances, got {len(values)}")
    if not 0.0 <= correlation <= 1.0:
        raise DomainError(f"correlation must lie in [0, 1], got {correlation}")
    for i, v in enumerate(values):
        _check_variance(v, f"variance of replicate {i}")
    _check_variance(representative_variance, "representative_variance")

    correction = 2 * comb(n, 2) * correlation * math.sqrt(representative_variance * representative_variance)
    return sum(values) / n**2 + correction


def difference_variance(var_a: float, var_b: float) -> float:
    """
    Variance of ``a - b``.

    Assumes ``a`` and ``b`` are independent; no covariance term is included.
    """
    _check_variance(var_a, "var_a")
    _check_variance(var_b, "var_b")
    return var_a + var_b


def log_ratio_variance(mean_num: float, var_num: float, mean_denom: float, var_denom: float) -> float:
    """
    Delta-method variance of ``ln(num / denom)``.

    Returns ``var_num / mean_num**2 + var_denom / mean_denom**2``.

    Raises
    ------
    DomainError
        If either mean is <= 0.
    """
    if not mean_num > 0:
        raise DomainError(f"log-ratio numerator mean must be > 0, got {mean_num}")
    if not mean_denom > 0:
        raise DomainError(f"log-ratio denominator mean must be > 0, got {mean_denom}")
    _check_variance(var_num, "var_num")
    _check_variance(var_denom, "var_denom")
    return var_num / mean_num**2 + var_denom / mean_denom**2


def ratio_variance(mean_num: float, var_num: float, mean_denom: float, var_denom: float) -> float:
    """Delta-method variance of ``num / denom``."""
    ratio = mean_num / mean_denom if mean_denom > 0 else np.nan
    return ratio**2 * log_ratio_variance(mean_num, var_num, mean_denom, var_denom)


def fitness_estimate(unit: Unit, transform: str) -> FitnessEstimate:
    """
    Derive a unit's fitness value and its variance from start/end proportions.

    Parameters
    ----------
    unit : ObservationUnit | ReferenceUnit
        Unit with mean proportions and their variances.
    transform : str
        "difference" (end - start), "ratio" (end / start) or
        "log_ratio" (ln(end / start)).

    Returns
    -------
    FitnessEstimate
        Fitness value with its propagated variance.

    Raises
    ------
    DomainError
        If the unit's values fall outside the transform's domain; the message
        names the unit.
    ValueError
        If ``transform`` is unknown.
    """
    if transform not in FITNESS_TRANSFORMS:
        raise ValueError(f"Unknown fitness transform {transform!r}; expected one of {FITNESS_TRANSFORMS}")
    label = getattr(unit, "block_id", None) or unit.reference_block_id
    start, end = unit.mean_start, unit.mean_end

    try:
        for name, p in (("mean_start", start), ("mean_end", end)):
            if not math.isfinite(p) or not 0.0 < p < 1.0:
                raise DomainError(f"{name} must lie in (0, 1), got {p}")
        if transform == "difference":
            value = end - start
            variance = difference_variance(unit.var_end, unit.var_start)
        elif transform == "ratio":
            variance = ratio_variance(end, unit.var_end, start, unit.var_start)
            value = end / start
        else:
            variance = log_ratio_variance(end, unit.var_end, start, unit.var_start)
            value = math.log(end / start)
    except DomainError as exc:
        raise DomainError(f"unit {label!r}: {exc}") from exc

    return FitnessEstimate(
        value=value,
        variance=variance,
        n_replicates=int(unit.n_replicates),
        transform=transform,
    )
