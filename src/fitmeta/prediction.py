"""
Predictions and intervals for linear combinations of fitted coefficients.
"""

from __future__ import annotations

from itertools import product
from typing import Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .design import Continuous, DesignMatrix, Factor
from .exceptions import DimensionMismatchError
from .meta_regression import FittedModel

ColumnMapping = Union[Sequence[str], Mapping[int, str]]


def _check_column_mapping(fitted: FittedModel, column_names: ColumnMapping) -> None:
    if isinstance(column_names, Mapping):
        if sorted(column_names) != list(range(len(column_names))):
            raise DimensionMismatchError(
                "Column mapping keys must be the consecutive indices 0..k-1"
            )
        names = [column_names[i] for i in range(len(column_names))]
    else:
        names = list(column_names)
    if len(names) != fitted.n_coef:
        raise DimensionMismatchError(
            f"Column mapping has {len(names)} entries; model has {fitted.n_coef} coefficients"
        )
    for i, (given, expected) in enumerate(zip(names, fitted.column_names)):
        if given != expected:
            raise DimensionMismatchError(
                f"Column {i} is {given!r} but the fitted coefficient at that position is {expected!r}"
            )


def _as_rows(fitted: FittedModel, rows) -> np.ndarray:
    if isinstance(rows, pd.DataFrame):
        _check_column_mapping(fitted, list(rows.columns))
        return rows.to_numpy(dtype=float)

    arr = np.asarray(rows, dtype=object)
    if arr.ndim >= 1 and arr.shape[0] == 0:
        return np.empty((0, fitted.n_coef))
    if arr.ndim == 1 and np.isscalar(arr[0]):
        rows = [rows]
    out = []
    for i, row in enumerate(rows):
        values = np.asarray(row, dtype=float).ravel()
        if values.size != fitted.n_coef:
            raise DimensionMismatchError(
                f"Prediction row {i} has {values.size} columns; model has {fitted.n_coef} coefficients"
            )
        out.append(values)
    return np.vstack(out) if out else np.empty((0, fitted.n_coef))


def predict(
    fitted: FittedModel,
    rows,
    column_names: Optional[ColumnMapping] = None,
) -> pd.DataFrame:
    """
    Predicted values with standard errors, confidence and prediction intervals.

    Parameters
    ----------
    fitted : FittedModel
        Fitted model.
    rows : array-like | pd.DataFrame
        Design rows laid out like the fitted design matrix. A DataFrame's
        column labels are checked against the coefficient names.
    column_names : Optional[Sequence[str] | Mapping[int, str]]
        Explicit column-index -> coefficient-name mapping; must match the
        fitted coefficient order exactly.

    Returns
    -------
    pd.DataFrame
        Columns: row, pred, se, ci_low, ci_high, pi_low, pi_high

    Raises
    ------
    DimensionMismatchError
        If a row length or the column mapping does not match the fit.
    """
    if column_names is not None:
        _check_column_mapping(fitted, column_names)
    X = _as_rows(fitted, rows)

    pred = X @ fitted.coefficients
    se = np.sqrt(np.einsum("ij,jk,ik->i", X, fitted.vcov, X))
    pi_se = np.sqrt(se**2 + fitted.variance_components.total())
    crit = fitted.critical_value()
    return pd.DataFrame(
        {
            "row": np.arange(len(X)),
            "pred": pred,
            "se": se,
            "ci_low": pred - crit * se,
            "ci_high": pred + crit * se,
            "pi_low": pred - crit * pi_se,
            "pi_high": pred + crit * pi_se,
        }
    )


def predict_frame(fitted: FittedModel, frame: pd.DataFrame) -> pd.DataFrame:
    """Encode moderator values with the fitted design and predict them."""
    if fitted.design is None:
        raise ValueError("Fitted model carries no design; use predict() with explicit rows")
    out = predict(fitted, fitted.design.transform(frame))
    return pd.concat([frame.reset_index(drop=True), out.drop(columns="row").reset_index(drop=True)], axis=1)


def prediction_grid(design: DesignMatrix) -> pd.DataFrame:
    """
    Every combination of factor levels, with continuous moderators at their mean.

    Returns
    -------
    pd.DataFrame
        One column per main-effect moderator.
    """
    main = design.spec.main_terms
    factors = [name for name, t in main.items() if isinstance(t, Factor)]
    combos = list(product(*[design.levels[name] for name in factors])) if factors else [()]
    grid = pd.DataFrame(combos, columns=factors)
    for name, term in main.items():
        if isinstance(term, Continuous):
            grid[name] = design.continuous_means[name]
    return grid
