"""
Explicit fixed-effect design matrices and random-effect groupings.

Categorical moderators are treatment coded: the first level (sorted, or the
declared order) is the reference and gets no column. Interaction columns are
products of the component columns, named ``a[T.x]:b[T.y]`` in the same
convention statsmodels formulas use.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from itertools import combinations, product
from typing import Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .constants import INTERCEPT_NAME
from .exceptions import SingularDesignError


@dataclass(frozen=True)
class Factor:
    """
    Categorical moderator.

    Parameters
    ----------
    name : str
        Column name in the data.
    levels : Optional[Sequence[str]]
        Level order. If None, sorted unique values of the data are used.
    reference : Optional[str]
        Level to drop. Defaults to the first level.
    """

    name: str
    levels: Optional[tuple[str, ...]] = None
    reference: Optional[str] = None

    def __post_init__(self) -> None:
        if self.levels is not None:
            object.__setattr__(self, "levels", tuple(str(v) for v in self.levels))
        if self.reference is not None:
            object.__setattr__(self, "reference", str(self.reference))


@dataclass(frozen=True)
class Continuous:
    """Numeric moderator entered as a single column."""

    name: str


@dataclass(frozen=True)
class Interaction:
    """Product of two or more declared main-effect terms, by name."""

    names: tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "names", tuple(self.names))
        if len(self.names) < 2:
            raise ValueError("An interaction needs at least two terms")
        if len(set(self.names)) != len(self.names):
            raise ValueError(f"Interaction repeats a term: {self.names}")


Term = Union[Factor, Continuous, Interaction]


def full_factorial(*terms: Union[Factor, Continuous]) -> list[Term]:
    """
    Main effects plus every interaction among them (``a * b * c``).

    Interactions are ordered by size, then by declaration order.
    """
    out: list[Term] = list(terms)
    names = [t.name for t in terms]
    for size in range(2, len(names) + 1):
        out.extend(Interaction(combo) for combo in combinations(names, size))
    return out


@dataclass(frozen=True)
class DesignSpec:
    """Ordered term list; ``fit`` resolves factor levels from data."""

    terms: tuple[Term, ...]
    intercept: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "terms", tuple(self.terms))
        main = [t.name for t in self.terms if not isinstance(t, Interaction)]
        if len(set(main)) != len(main):
            raise ValueError(f"Duplicate main-effect terms: {main}")
        for t in self.terms:
            if isinstance(t, Interaction):
                missing = [n for n in t.names if n not in main]
                if missing:
                    raise ValueError(
                        f"Interaction {':'.join(t.names)} refers to undeclared terms {missing}"
                    )

    @property
    def main_terms(self) -> dict[str, Union[Factor, Continuous]]:
        return {t.name: t for t in self.terms if not isinstance(t, Interaction)}

    def fit(self, frame: pd.DataFrame) -> "DesignMatrix":
        """
        Build the design matrix for ``frame``.

        Parameters
        ----------
        frame : pd.DataFrame
            Data holding one column per main-effect term.

        Returns
        -------
        DesignMatrix
            Matrix, column names and the resolved factor levels.
        """
        levels: dict[str, tuple[str, ...]] = {}
        means: dict[str, float] = {}
        for name, term in self.main_terms.items():
            _require_column(frame, name)
            if isinstance(term, Factor):
                levels[name] = _resolve_levels(term, frame[name])
            else:
                means[name] = float(_numeric_column(frame, name).mean())
        matrix, names = _encode(self, frame, levels)
        return DesignMatrix(
            matrix=matrix,
            column_names=tuple(names),
            spec=self,
            levels=levels,
            continuous_means=means,
        )


@dataclass(frozen=True)
class DesignMatrix:
    """Encoded fixed-effect design with its column-name contract."""

    matrix: np.ndarray
    column_names: tuple[str, ...]
    spec: DesignSpec
    levels: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    continuous_means: Mapping[str, float] = field(default_factory=dict)

    @property
    def n_columns(self) -> int:
        return len(self.column_names)

    def column_index(self) -> dict[str, int]:
        return {name: i for i, name in enumerate(self.column_names)}

    def transform(self, frame: pd.DataFrame) -> np.ndarray:
        """Encode new rows with the fitted levels and column layout."""
        matrix, _ = _encode(self.spec, frame, self.levels)
        return matrix

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.matrix, columns=list(self.column_names))


def _require_column(frame: pd.DataFrame, name: str) -> None:
    if name not in frame.columns:
        raise KeyError(f"Moderator column {name!r} not found in data")


def _numeric_column(frame: pd.DataFrame, name: str) -> pd.Series:
    values = pd.to_numeric(frame[name], errors="coerce")
    bad = np.flatnonzero(~np.isfinite(values.to_numpy(dtype=float)))
    if bad.size:
        raise ValueError(f"Continuous moderator {name!r} is missing or non-numeric at row {bad[0]}")
    return values.astype(float)


def _resolve_levels(term: Factor, values: pd.Series) -> tuple[str, ...]:
    observed = values.astype(str)
    if term.levels is not None:
        unknown = sorted(set(observed) - set(term.levels))
        if unknown:
            raise ValueError(f"Factor {term.name!r} has undeclared levels {unknown}")
        levels = list(term.levels)
    else:
        levels = sorted(observed.unique())
    if term.reference is not None:
        if term.reference not in levels:
            raise ValueError(f"Reference level {term.reference!r} not among levels of {term.name!r}")
        levels.remove(term.reference)
        levels.insert(0, term.reference)
    return tuple(levels)


def _term_columns(
    term: Union[Factor, Continuous],
    frame: pd.DataFrame,
    levels: Mapping[str, tuple[str, ...]],
) -> tuple[list[np.ndarray], list[str]]:
    """Columns contributed by one main-effect term."""
    _require_column(frame, term.name)
    if isinstance(term, Continuous):
        return [_numeric_column(frame, term.name).to_numpy()], [term.name]

    term_levels = levels[term.name]
    observed = frame[term.name].astype(str).to_numpy()
    unseen = ~np.isin(observed, term_levels)
    if unseen.any():
        row = int(np.flatnonzero(unseen)[0])
        raise ValueError(f"Factor {term.name!r} has unknown level {observed[row]!r} at row {row}")
    cols = [(observed == lvl).astype(float) for lvl in term_levels[1:]]
    names = [f"{term.name}[T.{lvl}]" for lvl in term_levels[1:]]
    return cols, names


def _encode(
    spec: DesignSpec,
    frame: pd.DataFrame,
    levels: Mapping[str, tuple[str, ...]],
) -> tuple[np.ndarray, list[str]]:
    n = len(frame)
    main = spec.main_terms
    columns: list[np.ndarray] = []
    names: list[str] = []
    if spec.intercept:
        columns.append(np.ones(n))
        names.append(INTERCEPT_NAME)

    cache: dict[str, tuple[list[np.ndarray], list[str]]] = {}
    for term in spec.terms:
        if isinstance(term, Interaction):
            parts = []
            for name in term.names:
                if name not in cache:
                    cache[name] = _term_columns(main[name], frame, levels)
                parts.append(cache[name])
            for combo in product(*[list(zip(cols, labels)) for cols, labels in parts]):
                col = np.ones(n)
                for values, _ in combo:
                    col = col * values
                columns.append(col)
                names.append(":".join(label for _, label in combo))
        else:
            cache[term.name] = _term_columns(term, frame, levels)
            cols, labels = cache[term.name]
            columns.extend(cols)
            names.extend(labels)

    if not columns:
        return np.empty((n, 0)), names
    return np.column_stack(columns), names


def check_full_rank(matrix: np.ndarray, column_names: Sequence[str]) -> None:
    """
    Raise ``SingularDesignError`` unless ``matrix`` has full column rank.

    The message names the first column that is a linear combination of the
    columns before it.
    """
    n, p = matrix.shape
    if p == 0:
        raise SingularDesignError("Design matrix has no columns")
    if n < p:
        raise SingularDesignError(f"Design matrix has {p} columns but only {n} observations")
    if np.linalg.matrix_rank(matrix) == p:
        return
    for j in range(p):
        if np.linalg.matrix_rank(matrix[:, : j + 1]) < j + 1:
            raise SingularDesignError(
                f"Design matrix is rank deficient: column {column_names[j]!r} (index {j}) "
                f"is linearly dependent on earlier columns"
            )
    raise SingularDesignError("Design matrix is rank deficient")


@dataclass(frozen=True)
class RandomGrouping:
    """
    Random-effect grouping: one level label per observation.

    Each grouping contributes ``tau2 * Z Z^T`` to the marginal covariance,
    where ``Z`` is its observation-by-level indicator matrix.
    """

    name: str
    levels: tuple

    def __post_init__(self) -> None:
        object.__setattr__(self, "levels", tuple(self.levels))

    @classmethod
    def from_frame(cls, frame: pd.DataFrame, column: str, name: Optional[str] = None) -> "RandomGrouping":
        _require_column(frame, column)
        if frame[column].isna().any():
            row = int(np.flatnonzero(frame[column].isna().to_numpy())[0])
            raise ValueError(f"Grouping {column!r} is missing a level at row {row}")
        return cls(name or column, tuple(frame[column].astype(str)))

    @classmethod
    def nested(cls, name: str, outer: Sequence, inner: Sequence) -> "RandomGrouping":
        """Grouping whose levels are ``inner`` within ``outer`` (``outer/inner``)."""
        if len(outer) != len(inner):
            raise ValueError("outer and inner labels must have the same length")
        return cls(name, tuple(f"{o}/{i}" for o, i in zip(outer, inner)))

    @property
    def n_levels(self) -> int:
        return len(set(self.levels))

    def indicator(self) -> np.ndarray:
        codes, _ = pd.factorize(pd.Series(self.levels, dtype=str), sort=True)
        z = np.zeros((len(codes), codes.max() + 1 if len(codes) else 0))
        z[np.arange(len(codes)), codes] = 1.0
        return z
