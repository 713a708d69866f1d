"""
End-to-end chaining of the effect-size and meta-regression stages.

Each stage takes the previous stage's output and returns a new object;
nothing is mutated in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence, Union

import pandas as pd

from .config import FitSettings
from .constants import DEFAULT_FITNESS_TRANSFORM
from .design import Continuous, DesignSpec, Factor, RandomGrouping, Term, full_factorial
from .effect_size import compute_effect_sizes
from .meta_regression import FittedModel, fit_meta_regression
from .records import ObservationUnit, ReferenceUnit, effect_sizes_to_frame


@dataclass(frozen=True)
class ModelSpec:
    """
    Moderators and random groupings of a meta-regression.

    Parameters
    ----------
    factors : Sequence[str]
        Categorical moderators.
    covariates : Sequence[str]
        Continuous moderators (e.g. generations).
    interactions : bool, default=True
        Cross all moderators (``a * b * c``) instead of main effects only.
    random : Sequence[str]
        Effect-table columns used as random-effect groupings.
    reference_levels : Mapping[str, str]
        Reference level per factor; defaults to the first sorted level.
    """

    factors: tuple[str, ...] = ("temperature", "reproduction_type")
    covariates: tuple[str, ...] = ()
    interactions: bool = True
    random: tuple[str, ...] = ("population", "esid")
    reference_levels: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("factors", "covariates", "random"):
            object.__setattr__(self, name, tuple(getattr(self, name)))

    def design_spec(self) -> DesignSpec:
        mains: list[Union[Factor, Continuous]] = [
            Factor(name, reference=self.reference_levels.get(name)) for name in self.factors
        ]
        mains.extend(Continuous(name) for name in self.covariates)
        terms: list[Term] = full_factorial(*mains) if self.interactions else list(mains)
        return DesignSpec(terms)


@dataclass(frozen=True)
class PipelineResult:
    effect_sizes: pd.DataFrame
    fitted: FittedModel


def fit_effect_sizes(
    effects: pd.DataFrame,
    model: ModelSpec,
    settings: Optional[FitSettings] = None,
    fixed_variances: Optional[Mapping[str, float]] = None,
) -> FittedModel:
    """Fit ``model`` to an effect-size table (columns ``d``, ``var_d`` and moderators)."""
    design = model.design_spec().fit(effects)
    groupings = [RandomGrouping.from_frame(effects, col) for col in model.random]
    labels = effects["block_id"].astype(str).tolist() if "block_id" in effects.columns else None
    return fit_meta_regression(
        effects["d"].to_numpy(dtype=float),
        effects["var_d"].to_numpy(dtype=float),
        design,
        groupings,
        settings=settings,
        fixed_variances=fixed_variances,
        labels=labels,
    )


def run_pipeline(
    observations: Sequence[ObservationUnit],
    references: Union[Mapping[str, ReferenceUnit], Sequence[ReferenceUnit]],
    model: ModelSpec,
    transform: str = DEFAULT_FITNESS_TRANSFORM,
    settings: Optional[FitSettings] = None,
) -> PipelineResult:
    """Observation/reference units -> effect sizes -> fitted model."""
    records = compute_effect_sizes(observations, references, transform)
    effects = effect_sizes_to_frame(records)
    return PipelineResult(effect_sizes=effects, fitted=fit_effect_sizes(effects, model, settings))
