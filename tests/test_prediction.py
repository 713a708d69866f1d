import math

import numpy as np
import pandas as pd
import pytest

from fitmeta.design import DesignSpec, Factor, RandomGrouping
from fitmeta.exceptions import DimensionMismatchError
from fitmeta.meta_regression import fit_meta_regression
from fitmeta.prediction import predict, predict_frame, prediction_grid


@pytest.fixture
def fitted():
    design = DesignSpec([Factor("group")]).fit(pd.DataFrame({"group": ["A", "A", "B"]}))
    return fit_meta_regression([1.0, 1.0, 3.0], [0.25, 0.25, 0.25], design)


def test_predict_values_and_standard_errors(fitted):
    out = predict(fitted, [[1.0, 0.0], [1.0, 1.0]])
    np.testing.assert_allclose(out["pred"], [1.0, 3.0])
    np.testing.assert_allclose(out["se"], [math.sqrt(0.125), 0.5])
    z = 1.959963984540054
    np.testing.assert_allclose(out["ci_low"], out["pred"] - z * out["se"])
    np.testing.assert_allclose(out["ci_high"], out["pred"] + z * out["se"])
    # no random effects: prediction interval equals confidence interval
    np.testing.assert_allclose(out["pi_low"], out["ci_low"])


def test_predict_single_row(fitted):
    out = predict(fitted, np.array([1.0, 1.0]))
    assert len(out) == 1
    assert out["pred"].iloc[0] == pytest.approx(3.0)


def test_predict_no_rows_returns_empty_table(fitted):
    out = predict(fitted, [])
    assert out.empty
    assert list(out.columns) == ["row", "pred", "se", "ci_low", "ci_high", "pi_low", "pi_high"]


def test_short_row_raises(fitted):
    with pytest.raises(DimensionMismatchError, match="row 1"):
        predict(fitted, [[1.0, 0.0], [1.0]])


def test_column_mapping_must_match_order(fitted):
    predict(fitted, [[1.0, 1.0]], column_names={0: "Intercept", 1: "group[T.B]"})
    with pytest.raises(DimensionMismatchError, match="Column 0"):
        predict(fitted, [[1.0, 1.0]], column_names=["group[T.B]", "Intercept"])


def test_dataframe_rows_checked_by_name(fitted):
    rows = pd.DataFrame([[1.0, 1.0]], columns=["Intercept", "group[T.B]"])
    assert predict(fitted, rows)["pred"].iloc[0] == pytest.approx(3.0)
    with pytest.raises(DimensionMismatchError):
        predict(fitted, rows[["group[T.B]", "Intercept"]])


def test_prediction_grid_round_trip(fitted):
    grid = prediction_grid(fitted.design)
    assert grid["group"].tolist() == ["A", "B"]
    out = predict_frame(fitted, grid)
    np.testing.assert_allclose(out["pred"], [1.0, 3.0])
    assert "group" in out.columns


def test_prediction_interval_includes_heterogeneity():
    design = DesignSpec([]).fit(pd.DataFrame(index=range(8)))
    fitted = fit_meta_regression(
        np.arange(8, dtype=float), np.full(8, 0.1), design, [RandomGrouping("esid", range(8))]
    )
    out = predict(fitted, [[1.0]])
    tau2 = fitted.variance_components["esid"]
    z = 1.959963984540054
    expected_half_width = z * math.sqrt(out["se"].iloc[0] ** 2 + tau2)
    assert out["pi_high"].iloc[0] - out["pred"].iloc[0] == pytest.approx(expected_half_width)
    assert out["pi_high"].iloc[0] > out["ci_high"].iloc[0]
