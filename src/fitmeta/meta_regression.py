"""
Multilevel meta-regression with known sampling variances.

Model: ``d = X beta + sum_k Z_k u_k + e`` with ``u_k ~ N(0, tau2_k I)`` and
``e ~ N(0, diag(var_d))``. Variance components are estimated by restricted
maximum likelihood using Fisher scoring with step halving; ``beta`` is the
generalised least squares estimate given the components.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import linalg, stats
from statsmodels.stats.multitest import multipletests

from .config import FitSettings
from .constants import INTERCEPT_NAME, MAX_STEP_HALVINGS
from .design import DesignMatrix, RandomGrouping, check_full_rank
from .exceptions import DomainError, SingularDesignError
from .logging_utils import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class VarianceComponentSet:
    """Estimated variance per random-effect grouping."""

    values: Mapping[str, float]
    n_levels: Mapping[str, int]
    fixed: frozenset = frozenset()

    def __getitem__(self, name: str) -> float:
        return self.values[name]

    def total(self) -> float:
        return float(sum(self.values.values()))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    "grouping": name,
                    "tau2": tau2,
                    "sd": math.sqrt(tau2),
                    "n_levels": self.n_levels[name],
                    "fixed": name in self.fixed,
                }
                for name, tau2 in self.values.items()
            ],
            columns=["grouping", "tau2", "sd", "n_levels", "fixed"],
        )


@dataclass(frozen=True, eq=False)
class FittedModel:
    """
    Result of one REML fit. Read-only; refitting creates a new instance.

    ``converged`` is False when the iteration budget ran out or no step
    halving improved the REML criterion (``line_search_failed``); the last
    iterate is still reported so it can be inspected.
    """

    coefficients: np.ndarray
    vcov: np.ndarray
    column_names: tuple[str, ...]
    variance_components: VarianceComponentSet
    log_likelihood: float
    converged: bool
    n_iter: int
    n_obs: int
    settings: FitSettings
    qe: float = math.nan
    qe_pvalue: float = math.nan
    qm: float = math.nan
    qm_pvalue: float = math.nan
    line_search_failed: bool = False
    design: Optional[DesignMatrix] = field(default=None, repr=False, compare=False)

    @property
    def n_coef(self) -> int:
        return len(self.column_names)

    @property
    def df_resid(self) -> int:
        return self.n_obs - self.n_coef

    @property
    def std_errors(self) -> np.ndarray:
        return np.sqrt(np.diag(self.vcov))

    @property
    def status(self) -> str:
        if self.converged:
            return "converged"
        return "line_search_failed" if self.line_search_failed else "max_iter_reached"

    def critical_value(self) -> float:
        """Two-sided critical value at ``1 - alpha`` for the configured test."""
        q = 1.0 - self.settings.alpha / 2.0
        if self.settings.test == "t":
            return float(stats.t.ppf(q, self.df_resid))
        return float(stats.norm.ppf(q))

    def coefficient_table(self) -> pd.DataFrame:
        """
        Coefficient estimates with standard errors, tests and intervals.

        Returns
        -------
        pd.DataFrame
            Columns: term, estimate, std_error, z (or t), p_value, ci_low, ci_high
            and, with ``settings.p_adjust``, p_value_adjusted.
        """
        se = self.std_errors
        with np.errstate(divide="ignore", invalid="ignore"):
            stat = self.coefficients / se
        if self.settings.test == "t":
            p = 2.0 * stats.t.sf(np.abs(stat), self.df_resid)
        else:
            p = 2.0 * stats.norm.sf(np.abs(stat))
        crit = self.critical_value()
        table = pd.DataFrame(
            {
                "term": list(self.column_names),
                "estimate": self.coefficients,
                "std_error": se,
                self.settings.test: stat,
                "p_value": p,
                "ci_low": self.coefficients - crit * se,
                "ci_high": self.coefficients + crit * se,
            }
        )
        if self.settings.p_adjust:
            _, p_adj, _, _ = multipletests(p, alpha=self.settings.alpha, method=self.settings.p_adjust)
            table["p_value_adjusted"] = p_adj
        return table

    def fit_statistics(self) -> pd.DataFrame:
        """Log-likelihood, information criteria and heterogeneity tests."""
        k = self.n_coef + sum(
            1 for name in self.variance_components.values if name not in self.variance_components.fixed
        )
        ll = self.log_likelihood
        n_eff = self.df_resid
        aic = -2.0 * ll + 2.0 * k
        bic = -2.0 * ll + k * math.log(n_eff) if n_eff > 0 else math.nan
        aicc = aic + 2.0 * k * (k + 1) / (n_eff - k - 1) if n_eff - k - 1 > 0 else math.nan
        rows = [
            ("logLik", ll),
            ("deviance", -2.0 * ll),
            ("AIC", aic),
            ("BIC", bic),
            ("AICc", aicc),
            ("QE", self.qe),
            ("QE_pvalue", self.qe_pvalue),
            ("QM", self.qm),
            ("QM_pvalue", self.qm_pvalue),
            ("n_iter", float(self.n_iter)),
            ("converged", float(self.converged)),
        ]
        return pd.DataFrame(rows, columns=["statistic", "value"])

    def report(self) -> dict[str, Any]:
        """Plain-dict summary: coefficients, variance components, criterion, status."""
        table = self.coefficient_table()
        return {
            "coefficients": {
                row["term"]: (row["estimate"], row["std_error"], row[self.settings.test], row["p_value"])
                for _, row in table.iterrows()
            },
            "variance_components": dict(self.variance_components.values),
            "reml_criterion": self.log_likelihood,
            "converged": self.converged,
            "status": self.status,
            "n_iter": self.n_iter,
        }


@dataclass
class _RemlState:
    tau2: np.ndarray
    beta: np.ndarray
    vcov: np.ndarray
    log_likelihood: float
    p_matrix: np.ndarray
    p_y: np.ndarray


def _validate_inputs(
    y: np.ndarray,
    v: np.ndarray,
    X: np.ndarray,
    groupings: Sequence[RandomGrouping],
    labels: Sequence[str],
) -> None:
    n = len(y)
    if len(v) != n or X.shape[0] != n:
        raise ValueError(
            f"Length mismatch: {n} effect sizes, {len(v)} variances, {X.shape[0]} design rows"
        )
    if len(labels) != n:
        raise ValueError(f"Expected {n} row labels, got {len(labels)}")
    for values, what in ((y, "effect size"), (v, "sampling variance")):
        bad = np.flatnonzero(~np.isfinite(values))
        if bad.size:
            i = int(bad[0])
            raise DomainError(f"Non-finite {what} at row {i} ({labels[i]})")
    negative = np.flatnonzero(v < 0)
    if negative.size:
        i = int(negative[0])
        raise DomainError(f"Negative sampling variance {v[i]} at row {i} ({labels[i]})")
    names = [g.name for g in groupings]
    if len(set(names)) != len(names):
        raise ValueError(f"Random groupings must have unique names, got {names}")
    for g in groupings:
        if len(g.levels) != n:
            raise ValueError(f"Grouping {g.name!r} has {len(g.levels)} levels for {n} observations")


def _marginal_cholesky(V: np.ndarray, labels: Sequence[str]):
    try:
        return linalg.cho_factor(V, lower=True)
    except linalg.LinAlgError as exc:
        diag = np.diag(V)
        bad = np.flatnonzero(diag <= 0)
        where = f" at row {int(bad[0])} ({labels[int(bad[0])]})" if bad.size else ""
        raise SingularDesignError(f"Marginal covariance V is not positive definite{where}") from exc


def _reml_state(
    tau2: np.ndarray,
    y: np.ndarray,
    v: np.ndarray,
    X: np.ndarray,
    gram: Sequence[np.ndarray],
    logdet_xtx: float,
    labels: Sequence[str],
) -> _RemlState:
    n, p = X.shape
    V = np.diag(v)
    for t, g in zip(tau2, gram):
        V = V + t * g
    cV = _marginal_cholesky(V, labels)
    Vinv_X = linalg.cho_solve(cV, X)
    Vinv_y = linalg.cho_solve(cV, y)
    xtvx = X.T @ Vinv_X
    try:
        cX = linalg.cho_factor(xtvx, lower=True)
    except linalg.LinAlgError as exc:
        raise SingularDesignError("X^T V^-1 X is not invertible") from exc
    beta = linalg.cho_solve(cX, X.T @ Vinv_y)
    vcov = linalg.cho_solve(cX, np.eye(p))

    Vinv = linalg.cho_solve(cV, np.eye(n))
    P = Vinv - Vinv_X @ vcov @ Vinv_X.T
    Py = P @ y
    logdet_v = 2.0 * np.sum(np.log(np.diag(cV[0])))
    logdet_xtvx = 2.0 * np.sum(np.log(np.diag(cX[0])))
    ll = -0.5 * ((n - p) * math.log(2.0 * math.pi) - logdet_xtx + logdet_v + logdet_xtvx + y @ Py)
    return _RemlState(tau2=tau2, beta=beta, vcov=vcov, log_likelihood=float(ll), p_matrix=P, p_y=Py)


def _score_and_information(
    state: _RemlState,
    indicators: Sequence[np.ndarray],
    free: Sequence[int],
) -> tuple[np.ndarray, np.ndarray]:
    """REML score and expected information for the free components."""
    P, Py = state.p_matrix, state.p_y
    pz = {k: P @ indicators[k] for k in free}
    score = np.array(
        [
            -0.5 * np.sum(indicators[k] * pz[k]) + 0.5 * np.sum((indicators[k].T @ Py) ** 2)
            for k in free
        ]
    )
    info = np.empty((len(free), len(free)))
    for a, k in enumerate(free):
        for b, m in enumerate(free[a:], start=a):
            value = 0.5 * np.sum((indicators[k].T @ pz[m]) ** 2)
            info[a, b] = info[b, a] = value
    return score, info


def _initial_variances(
    y: np.ndarray,
    v: np.ndarray,
    X: np.ndarray,
    n_free: int,
) -> float:
    """Split the excess of the OLS residual variance over mean(v) across free components."""
    n, p = X.shape
    if n_free == 0 or n <= p:
        return 0.0
    beta, *_ = np.linalg.lstsq(X, y, rcond=None)
    resid = y - X @ beta
    excess = resid @ resid / (n - p) - float(np.mean(v))
    return max(excess, 0.0) / n_free


def _heterogeneity_tests(
    y: np.ndarray,
    v: np.ndarray,
    X: np.ndarray,
    beta: np.ndarray,
    vcov: np.ndarray,
    column_names: Sequence[str],
    test: str,
) -> tuple[float, float, float, float]:
    n, p = X.shape
    qe = qe_p = math.nan
    if np.all(v > 0) and n > p:
        w = 1.0 / v
        xtwx = X.T @ (X * w[:, None])
        b_fe = np.linalg.solve(xtwx, X.T @ (w * y))
        resid = y - X @ b_fe
        qe = float(np.sum(w * resid**2))
        qe_p = float(stats.chi2.sf(qe, n - p))

    mods = [i for i, name in enumerate(column_names) if name != INTERCEPT_NAME]
    qm = qm_p = math.nan
    if mods:
        b = beta[mods]
        qm = float(b @ np.linalg.solve(vcov[np.ix_(mods, mods)], b))
        if test == "t":
            qm = qm / len(mods)
            qm_p = float(stats.f.sf(qm, len(mods), n - p)) if n > p else math.nan
        else:
            qm_p = float(stats.chi2.sf(qm, len(mods)))
    return qe, qe_p, qm, qm_p


def fit_meta_regression(
    y: Sequence[float],
    v: Sequence[float],
    design: DesignMatrix,
    groupings: Sequence[RandomGrouping] = (),
    settings: Optional[FitSettings] = None,
    fixed_variances: Optional[Mapping[str, float]] = None,
    initial_variances: Optional[Mapping[str, float]] = None,
    labels: Optional[Sequence[str]] = None,
) -> FittedModel:
    """
    Fit the multilevel meta-regression by REML.

    Parameters
    ----------
    y : Sequence[float]
        Effect sizes ``d``.
    v : Sequence[float]
        Known sampling variances ``var_d``.
    design : DesignMatrix
        Fixed-effect design (see ``DesignSpec.fit``).
    groupings : Sequence[RandomGrouping]
        Independent random-effect groupings (e.g. population, block, esid).
    settings : Optional[FitSettings]
        Iteration budget, tolerance and test type. Defaults to ``FitSettings()``.
    fixed_variances : Optional[Mapping[str, float]]
        Components held at the given value instead of estimated.
    initial_variances : Optional[Mapping[str, float]]
        Starting values for estimated components.
    labels : Optional[Sequence[str]]
        Row labels (e.g. block ids) used in error messages.

    Returns
    -------
    FittedModel
        Coefficients, covariance, variance components and convergence status.

    Raises
    ------
    DomainError
        Non-finite effect size or negative/non-finite variance.
    SingularDesignError
        Rank-deficient design or non-invertible marginal covariance.
    """
    settings = settings or FitSettings()
    y = np.asarray(y, dtype=float)
    v = np.asarray(v, dtype=float)
    X = np.asarray(design.matrix, dtype=float)
    groupings = list(groupings)
    labels = list(labels) if labels is not None else [f"row {i}" for i in range(len(y))]
    _validate_inputs(y, v, X, groupings, labels)
    check_full_rank(X, design.column_names)

    names = [g.name for g in groupings]
    fixed = dict(fixed_variances or {})
    unknown = sorted(set(fixed) - set(names))
    if unknown:
        raise ValueError(f"fixed_variances names unknown groupings {unknown}")
    for name, value in fixed.items():
        if not math.isfinite(value) or value < 0:
            raise ValueError(f"Fixed variance for {name!r} must be finite and >= 0, got {value}")
    for g in groupings:
        if g.name not in fixed and g.n_levels < 2:
            logger.warning("Grouping %r has a single level; holding its variance at 0", g.name)
            fixed[g.name] = 0.0

    indicators = [g.indicator() for g in groupings]
    gram = [z @ z.T for z in indicators]
    free = [k for k, name in enumerate(names) if name not in fixed]

    start = _initial_variances(y, v, X, len(free))
    tau2 = np.array([fixed.get(name, start) for name in names], dtype=float)
    for name, value in (initial_variances or {}).items():
        if name not in names:
            raise ValueError(f"initial_variances names unknown grouping {name!r}")
        if name not in fixed:
            tau2[names.index(name)] = max(float(value), 0.0)

    logdet_xtx = float(np.linalg.slogdet(X.T @ X)[1])
    state = _reml_state(tau2, y, v, X, gram, logdet_xtx, labels)

    converged = not free
    line_search_failed = False
    n_iter = 0
    while not converged and n_iter < settings.max_iter:
        n_iter += 1
        score, info = _score_and_information(state, indicators, free)
        # components pinned at zero with a non-positive score stay at zero
        moving = [i for i, k in enumerate(free) if state.tau2[k] > 0 or score[i] > 0]
        if not moving:
            converged = True
            break
        sub_info = info[np.ix_(moving, moving)]
        if np.linalg.cond(sub_info) > 1.0 / np.finfo(float).eps:
            logger.warning("REML information matrix is singular; using a pseudo-inverse step")
            step = np.linalg.pinv(sub_info) @ score[moving]
        else:
            step = np.linalg.solve(sub_info, score[moving])
        targets = [free[i] for i in moving]

        candidate = None
        for _ in range(MAX_STEP_HALVINGS):
            proposal = state.tau2.copy()
            proposal[targets] = np.maximum(state.tau2[targets] + step, 0.0)
            trial = _reml_state(proposal, y, v, X, gram, logdet_xtx, labels)
            if trial.log_likelihood >= state.log_likelihood - settings.tol:
                candidate = trial
                break
            step = step / 2.0
        if candidate is None:
            line_search_failed = True
            logger.warning("REML step halving failed at iteration %d; stopping", n_iter)
            break

        change = abs(candidate.log_likelihood - state.log_likelihood)
        state = candidate
        logger.debug(
            "REML iteration %d: logLik=%.10g tau2=%s",
            n_iter,
            state.log_likelihood,
            dict(zip(names, np.round(state.tau2, 10))),
        )
        if change < settings.tol:
            converged = True

    if not converged and not line_search_failed:
        logger.warning(
            "REML did not converge within %d iterations; reporting the last iterate", settings.max_iter
        )
    else:
        logger.info("REML converged after %d iterations (logLik=%.6g)", n_iter, state.log_likelihood)

    qe, qe_p, qm, qm_p = _heterogeneity_tests(
        y, v, X, state.beta, state.vcov, design.column_names, settings.test
    )
    coefficients = state.beta.copy()
    vcov = state.vcov.copy()
    coefficients.setflags(write=False)
    vcov.setflags(write=False)
    components = VarianceComponentSet(
        values={name: float(t) for name, t in zip(names, state.tau2)},
        n_levels={g.name: g.n_levels for g in groupings},
        fixed=frozenset(fixed),
    )
    return FittedModel(
        coefficients=coefficients,
        vcov=vcov,
        column_names=tuple(design.column_names),
        variance_components=components,
        log_likelihood=state.log_likelihood,
        converged=converged,
        line_search_failed=line_search_failed,
        n_iter=n_iter,
        n_obs=len(y),
        settings=settings,
        qe=qe,
        qe_pvalue=qe_p,
        qm=qm,
        qm_pvalue=qm_p,
        design=design,
    )
