"""
Command-line interface for batch effect-size meta-regression.
"""

import argparse
from pathlib import Path
from typing import Optional, Sequence

from .aggregation import aggregate_replicates, merge_aggregates
from .config import FitSettings, PropagationSettings
from .constants import (
    ASSUMED_REPLICATE_COUNT,
    DEFAULT_ALPHA,
    DEFAULT_FITNESS_TRANSFORM,
    DEFAULT_MAX_ITER,
    DEFAULT_N_REPLICATES,
    DEFAULT_REPLICATE_CORRELATION,
    DEFAULT_REPRESENTATIVE_VARIANCE,
    DEFAULT_TOL,
    FITNESS_TRANSFORMS,
    TEST_TYPES,
)
from .data_loader import load_table, observation_units_from_frame, reference_units_from_frame
from .logging_utils import configure_logging
from .pipeline import ModelSpec, run_pipeline
from .prediction import predict_frame, prediction_grid


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fitmeta",
        description="Effect sizes against ancestral references and multilevel REML meta-regression",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fitmeta --observations evolved.csv --references ancestors.csv \\
    --factors temperature reproduction_type --random population esid --outdir results/

  fitmeta --observations evolved.csv --references ancestors.csv --replicates reps.csv \\
    --transform difference --covariates generations --no-interactions --predict-grid
        """,
    )

    # Required arguments
    parser.add_argument("--observations", required=True, help="CSV/XLSX of experimental units")
    parser.add_argument("--references", required=True, help="CSV/XLSX of reference units")

    # Inputs
    parser.add_argument(
        "--replicates",
        default=None,
        help="Replicate-level proportions (block_id, time, proportion[, count]) to aggregate",
    )
    parser.add_argument("--sheet-name", default=None, help="Sheet name for XLSX files")

    # Propagation assumptions
    parser.add_argument(
        "--transform",
        choices=FITNESS_TRANSFORMS,
        default=DEFAULT_FITNESS_TRANSFORM,
        help=f"Fitness transform (default: {DEFAULT_FITNESS_TRANSFORM})",
    )
    parser.add_argument(
        "--replicate-correlation",
        type=float,
        default=DEFAULT_REPLICATE_CORRELATION,
        help=f"Between-replicate correlation r (default: {DEFAULT_REPLICATE_CORRELATION})",
    )
    parser.add_argument(
        "--representative-variance",
        type=float,
        default=DEFAULT_REPRESENTATIVE_VARIANCE,
        help=f"Representative replicate variance (default: {DEFAULT_REPRESENTATIVE_VARIANCE})",
    )
    parser.add_argument(
        "--n-replicates",
        type=int,
        default=DEFAULT_N_REPLICATES,
        help=f"Replicates per unit when not recorded (default: {DEFAULT_N_REPLICATES})",
    )
    parser.add_argument(
        "--assumed-count",
        type=float,
        default=ASSUMED_REPLICATE_COUNT,
        help=f"Individuals per replicate when count is missing (default: {ASSUMED_REPLICATE_COUNT})",
    )

    # Model
    parser.add_argument("--factors", nargs="*", default=["temperature", "reproduction_type"],
                        help="Categorical moderators")
    parser.add_argument("--covariates", nargs="*", default=[], help="Continuous moderators")
    parser.add_argument("--no-interactions", action="store_true",
                        help="Main effects only instead of the full factorial")
    parser.add_argument("--random", nargs="*", default=["population", "esid"],
                        help="Random-effect groupings (columns of the effect-size table)")
    parser.add_argument("--max-iter", type=int, default=DEFAULT_MAX_ITER)
    parser.add_argument("--tol", type=float, default=DEFAULT_TOL)
    parser.add_argument("--test", choices=TEST_TYPES, default="z")
    parser.add_argument("--alpha", type=float, default=DEFAULT_ALPHA)
    parser.add_argument("--p-adjust", default=None, help="multipletests method, e.g. holm")

    # Output
    parser.add_argument("--predict-grid", action="store_true",
                        help="Write predictions for every factor-level combination")
    parser.add_argument("--outdir", default="outputs", help="Output directory (default: outputs/)")
    parser.add_argument("--verbose", action="store_true", help="Log REML iterations")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main CLI entry point.

    Computes effect sizes, fits the meta-regression and writes CSV reports.
    Returns 0 on convergence and 2 when the fit ran out of iterations.
    """
    args = build_parser().parse_args(argv)
    configure_logging("DEBUG" if args.verbose else "WARNING")

    outdir = Path(args.outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    propagation = PropagationSettings(
        replicate_correlation=args.replicate_correlation,
        representative_variance=args.representative_variance,
        n_replicates=args.n_replicates,
        assumed_count=args.assumed_count,
    )
    fit_settings = FitSettings(
        max_iter=args.max_iter,
        tol=args.tol,
        test=args.test,
        alpha=args.alpha,
        p_adjust=args.p_adjust,
    )

    print(f"Loading observations from: {args.observations}")
    obs_df = load_table(args.observations, sheet_name=args.sheet_name)
    ref_df = load_table(args.references, sheet_name=args.sheet_name)
    if args.replicates:
        print(f"Aggregating replicates from: {args.replicates}")
        aggregates = aggregate_replicates(load_table(args.replicates, sheet_name=args.sheet_name), propagation)
        obs_df = merge_aggregates(obs_df, aggregates, "block_id")
        ref_df = merge_aggregates(ref_df, aggregates, "reference_block_id")

    observations = observation_units_from_frame(obs_df, propagation, moderator_columns=args.covariates)
    references = reference_units_from_frame(ref_df, propagation)
    print(f"Data loaded: {len(observations)} observation units, {len(references)} reference units")

    model = ModelSpec(
        factors=args.factors,
        covariates=args.covariates,
        interactions=not args.no_interactions,
        random=args.random,
    )
    result = run_pipeline(observations, references, model, transform=args.transform, settings=fit_settings)
    result.effect_sizes.to_csv(outdir / "effect_sizes.csv", index=False)
    print(f"✓ Effect sizes complete ({args.transform})")

    fitted = result.fitted
    fitted.coefficient_table().to_csv(outdir / "coefficients.csv", index=False)
    fitted.variance_components.to_frame().to_csv(outdir / "variance_components.csv", index=False)
    fitted.fit_statistics().to_csv(outdir / "fit_statistics.csv", index=False)
    if fitted.converged:
        print(f"✓ Meta-regression converged after {fitted.n_iter} iterations")
    else:
        print(f"! Meta-regression did not converge ({fitted.status}) after {fitted.n_iter} iterations")

    if args.predict_grid and fitted.design is not None:
        predict_frame(fitted, prediction_grid(fitted.design)).to_csv(outdir / "predictions.csv", index=False)
        print("✓ Predictions complete")

    print(f"\nReports saved to: {outdir.resolve()}")
    for csv_file in sorted(outdir.glob("*.csv")):
        print(f"  - {csv_file.name}")
    return 0 if fitted.converged else 2


if __name__ == "__main__":
    raise SystemExit(main())
