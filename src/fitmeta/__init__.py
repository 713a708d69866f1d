"""
fitmeta - Standardised fitness effect sizes and multilevel meta-regression.

This package turns start/end proportion data of experimental and ancestral
units into bias-corrected effect sizes with analytically propagated
variances, and fits a REML meta-regression with known sampling variances
and several random-effect groupings.
"""

from .constants import *
from .aggregation import aggregate_replicates, merge_aggregates
from .config import FitSettings, PropagationSettings
from .data_loader import (
    load_table,
    observation_units_from_frame,
    reference_units_from_frame,
    sanitize_columns,
)
from .design import (
    Continuous,
    DesignMatrix,
    DesignSpec,
    Factor,
    Interaction,
    RandomGrouping,
    full_factorial,
)
from .effect_size import (
    compute_effect_sizes,
    effect_size_record,
    effect_size_table,
    hedges_g,
    pooled_sd,
    small_sample_correction,
)
from .exceptions import (
    DimensionMismatchError,
    DomainError,
    FitmetaError,
    SingularDesignError,
)
from .meta_regression import FittedModel, VarianceComponentSet, fit_meta_regression
from .pipeline import ModelSpec, PipelineResult, fit_effect_sizes, run_pipeline
from .prediction import predict, predict_frame, prediction_grid
from .propagation import (
    average_variance,
    binomial_variance,
    difference_variance,
    fitness_estimate,
    log_ratio_variance,
    ratio_variance,
)
from .records import (
    EffectSizeRecord,
    FitnessEstimate,
    ObservationUnit,
    ReferenceUnit,
    effect_sizes_to_frame,
)

__version__ = "0.1.0"

__all__ = [
    # Records
    "ObservationUnit",
    "ReferenceUnit",
    "FitnessEstimate",
    "EffectSizeRecord",
    "effect_sizes_to_frame",
    # Configuration
    "PropagationSettings",
    "FitSettings",
    # Errors
    "FitmetaError",
    "DomainError",
    "SingularDesignError",
    "DimensionMismatchError",
    # Data loading
    "load_table",
    "sanitize_columns",
    "observation_units_from_frame",
    "reference_units_from_frame",
    "aggregate_replicates",
    "merge_aggregates",
    # Variance propagation
    "binomial_variance",
    "average_variance",
    "difference_variance",
    "log_ratio_variance",
    "ratio_variance",
    "fitness_estimate",
    # Effect sizes
    "pooled_sd",
    "small_sample_correction",
    "hedges_g",
    "effect_size_record",
    "compute_effect_sizes",
    "effect_size_table",
    # Design
    "Factor",
    "Continuous",
    "Interaction",
    "full_factorial",
    "DesignSpec",
    "DesignMatrix",
    "RandomGrouping",
    # Meta-regression
    "fit_meta_regression",
    "FittedModel",
    "VarianceComponentSet",
    "predict",
    "predict_frame",
    "prediction_grid",
    # Pipeline
    "ModelSpec",
    "PipelineResult",
    "fit_effect_sizes",
    "run_pipeline",
]
