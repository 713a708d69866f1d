"""
Configuration objects for variance propagation and model fitting.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from .constants import (
    ASSUMED_REPLICATE_COUNT,
    DEFAULT_ALPHA,
    DEFAULT_MAX_ITER,
    DEFAULT_N_REPLICATES,
    DEFAULT_REPLICATE_CORRELATION,
    DEFAULT_REPRESENTATIVE_VARIANCE,
    DEFAULT_TEST,
    DEFAULT_TOL,
    TEST_TYPES,
)


@dataclass(frozen=True)
class PropagationSettings:
    """
    Assumptions used when propagating replicate-level variances.

    Parameters
    ----------
    replicate_correlation : float, default=0.8
        Correlation r between replicate measurements of one unit, in [0, 1].
    representative_variance : float, default=0.0005
        Single per-replicate proportion variance standing in for the
        unobservable pairwise covariances in the correlation correction.
    n_replicates : int, default=4
        Replicates per unit when a record does not say otherwise.
    assumed_count : float, default=ASSUMED_REPLICATE_COUNT
        Individuals scored per replicate when the count N is missing.
    """

    replicate_correlation: float = DEFAULT_REPLICATE_CORRELATION
    representative_variance: float = DEFAULT_REPRESENTATIVE_VARIANCE
    n_replicates: int = DEFAULT_N_REPLICATES
    assumed_count: float = ASSUMED_REPLICATE_COUNT

    def __post_init__(self) -> None:
        if not 0.0 <= self.replicate_correlation <= 1.0:
            raise ValueError(
                f"replicate_correlation must lie in [0, 1], got {self.replicate_correlation}"
            )
        if not math.isfinite(self.representative_variance) or self.representative_variance < 0:
            raise ValueError(
                f"representative_variance must be a finite non-negative number, "
                f"got {self.representative_variance}"
            )
        if int(self.n_replicates) != self.n_replicates or self.n_replicates < 1:
            raise ValueError(f"n_replicates must be a positive integer, got {self.n_replicates}")
        if not math.isfinite(self.assumed_count) or self.assumed_count <= 0:
            raise ValueError(f"assumed_count must be positive, got {self.assumed_count}")


@dataclass(frozen=True)
class FitSettings:
    """
    Controls for the REML fit and the coefficient report.

    Parameters
    ----------
    max_iter : int, default=100
        Iteration budget; exceeding it yields ``converged=False``.
    tol : float, default=1e-8
        Convergence tolerance on the change in REML log-likelihood.
    test : str, default="z"
        Reference distribution for coefficient tests and intervals ("z" or "t").
    alpha : float, default=0.05
        Significance level; confidence level is ``1 - alpha``.
    p_adjust : Optional[str]
        ``multipletests`` method for an adjusted p-value column (e.g. "holm").
    """

    max_iter: int = DEFAULT_MAX_ITER
    tol: float = DEFAULT_TOL
    test: str = DEFAULT_TEST
    alpha: float = DEFAULT_ALPHA
    p_adjust: Optional[str] = None

    def __post_init__(self) -> None:
        if self.max_iter < 0:
            raise ValueError(f"max_iter must be >= 0, got {self.max_iter}")
        if not self.tol > 0:
            raise ValueError(f"tol must be positive, got {self.tol}")
        if self.test not in TEST_TYPES:
            raise ValueError(f"test must be one of {TEST_TYPES}, got {self.test!r}")
        if not 0.0 < self.alpha < 1.0:
            raise ValueError(f"alpha must lie in (0, 1), got {self.alpha}")
