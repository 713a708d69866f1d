import pandas as pd
import pytest

from fitmeta.cli import main
from fitmeta.config import FitSettings
from fitmeta.pipeline import ModelSpec, fit_effect_sizes, run_pipeline


def test_run_pipeline_full_factorial(observations, references):
    model = ModelSpec(factors=["temperature", "reproduction_type"], random=["population", "esid"])
    result = run_pipeline(observations, references, model, transform="log_ratio")
    assert len(result.effect_sizes) == 8
    assert result.fitted.column_names == (
        "Intercept",
        "temperature[T.25]",
        "reproduction_type[T.sex]",
        "temperature[T.25]:reproduction_type[T.sex]",
    )
    assert set(result.fitted.variance_components.values) == {"population", "esid"}
    assert all(t >= 0 for t in result.fitted.variance_components.values.values())


def test_fit_effect_sizes_with_covariate(observations, references):
    effects = run_pipeline(
        observations, references, ModelSpec(factors=["temperature"], random=["esid"])
    ).effect_sizes
    model = ModelSpec(factors=["temperature"], covariates=["generations"], interactions=False, random=["population"])
    fitted = fit_effect_sizes(effects, model, FitSettings(test="t"))
    assert fitted.column_names == ("Intercept", "temperature[T.25]", "generations")
    assert fitted.df_resid == 5


def test_fit_effect_sizes_forced_zero_components(observations, references):
    effects = run_pipeline(observations, references, ModelSpec(random=["esid"])).effect_sizes
    fitted = fit_effect_sizes(
        effects, ModelSpec(random=["population", "esid"]), fixed_variances={"population": 0.0, "esid": 0.0}
    )
    assert fitted.converged
    assert fitted.n_iter == 0


def test_cli_writes_reports(tmp_path, observation_frame, reference_frame):
    obs_path = tmp_path / "obs.csv"
    ref_path = tmp_path / "ref.csv"
    observation_frame.to_csv(obs_path, index=False)
    reference_frame.to_csv(ref_path, index=False)
    outdir = tmp_path / "out"

    code = main([
        "--observations", str(obs_path),
        "--references", str(ref_path),
        "--covariates", "generations",
        "--no-interactions",
        "--predict-grid",
        "--outdir", str(outdir),
    ])
    assert code in (0, 2)
    for name in ["effect_sizes", "coefficients", "variance_components", "fit_statistics", "predictions"]:
        assert (outdir / f"{name}.csv").exists()
    coefficients = pd.read_csv(outdir / "coefficients.csv")
    assert coefficients["term"].tolist() == [
        "Intercept", "temperature[T.25]", "reproduction_type[T.sex]", "generations",
    ]
    predictions = pd.read_csv(outdir / "predictions.csv")
    assert len(predictions) == 4


def test_cli_aggregates_replicates(tmp_path, observation_frame, reference_frame):
    rows = []
    keys = list(observation_frame["block_id"]) + list(reference_frame["reference_block_id"])
    for k, key in enumerate(keys):
        for time, base in (("start", 0.2 + 0.01 * (k % 3)), ("end", 0.45 + 0.02 * k)):
            for rep in range(4):
                rows.append({"block_id": key, "time": time, "proportion": base + 0.02 * rep, "count": 80})
    reps_path = tmp_path / "reps.csv"
    pd.DataFrame(rows).to_csv(reps_path, index=False)
    obs_path = tmp_path / "obs.csv"
    ref_path = tmp_path / "ref.csv"
    observation_frame.drop(columns=["mean_start", "mean_end", "var_start", "var_end"]).to_csv(obs_path, index=False)
    reference_frame[["reference_block_id"]].to_csv(ref_path, index=False)

    code = main([
        "--observations", str(obs_path),
        "--references", str(ref_path),
        "--replicates", str(reps_path),
        "--transform", "difference",
        "--random", "population",
        "--outdir", str(tmp_path / "out"),
    ])
    assert code in (0, 2)
    effects = pd.read_csv(tmp_path / "out" / "effect_sizes.csv")
    assert len(effects) == 8
    assert effects["var_d"].ge(0.5).all()
    assert effects["d"].ne(0).all()


def test_cli_rejects_bad_correlation(tmp_path, observation_frame, reference_frame):
    observation_frame.to_csv(tmp_path / "obs.csv", index=False)
    reference_frame.to_csv(tmp_path / "ref.csv", index=False)
    with pytest.raises(ValueError):
        main([
            "--observations", str(tmp_path / "obs.csv"),
            "--references", str(tmp_path / "ref.csv"),
            "--replicate-correlation", "1.5",
            "--outdir", str(tmp_path / "out"),
        ])
