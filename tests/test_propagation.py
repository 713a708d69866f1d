import math

import pytest

from fitmeta.config import PropagationSettings
from fitmeta.exceptions import DomainError
from fitmeta.propagation import (
    average_variance,
    binomial_variance,
    difference_variance,
    fitness_estimate,
    log_ratio_variance,
    ratio_variance,
)
from fitmeta.records import ReferenceUnit


@pytest.mark.parametrize("p, n", [(0.1, 20), (0.5, 100), (0.93, 7)])
def test_single_replicate_without_correlation_is_binomial(p, n):
    v = binomial_variance(p, n, assumed_count=100)
    assert average_variance([v], correlation=0.0, representative_variance=0.0005) == p * (1 - p) / n


def test_binomial_variance_uses_assumed_count_when_missing():
    assert binomial_variance(0.3, None, assumed_count=50) == pytest.approx(0.3 * 0.7 / 50)
    assert binomial_variance(0.3, float("nan"), assumed_count=50) == pytest.approx(0.3 * 0.7 / 50)


def test_binomial_variance_rejects_bad_proportion():
    with pytest.raises(DomainError):
        binomial_variance(1.2, 10, assumed_count=100)


def test_average_variance_four_replicates_with_correction():
    variances = [0.001, 0.002, 0.0015, 0.0025]
    expected = sum(variances) / 16 + 2 * 6 * 0.8 * 0.0005
    assert average_variance(variances, correlation=0.8, representative_variance=0.0005) == pytest.approx(expected)


def test_average_variance_accepts_other_replicate_counts():
    variances = [0.001] * 6
    expected = 0.006 / 36 + 2 * 15 * 0.5 * 0.0004
    result = average_variance(variances, correlation=0.5, representative_variance=0.0004, n=6)
    assert result == pytest.approx(expected)


def test_average_variance_count_mismatch():
    with pytest.raises(DomainError):
        average_variance([0.001, 0.001], n=4)


def test_average_variance_is_deterministic():
    variances = [0.0012, 0.0007, 0.0009, 0.0011]
    assert average_variance(variances) == average_variance(list(variances))


def test_difference_variance_sums():
    assert difference_variance(0.01, 0.02) == pytest.approx(0.03)
    with pytest.raises(DomainError):
        difference_variance(-0.01, 0.02)


def test_log_ratio_variance_symmetry():
    m, v = 0.4, 0.003
    assert log_ratio_variance(m, v, m, v) == pytest.approx(2 * v / m**2)


@pytest.mark.parametrize("num, denom", [(0.0, 0.5), (0.5, 0.0), (-0.1, 0.5)])
def test_log_ratio_variance_domain(num, denom):
    with pytest.raises(DomainError):
        log_ratio_variance(num, 0.001, denom, 0.001)


def test_ratio_variance_delta_method():
    num, vn, den, vd = 0.6, 0.002, 0.3, 0.001
    expected = (num / den) ** 2 * (vn / num**2 + vd / den**2)
    assert ratio_variance(num, vn, den, vd) == pytest.approx(expected)


def test_fitness_estimate_transforms():
    unit = ReferenceUnit("R1", mean_start=0.2, mean_end=0.5, var_start=0.001, var_end=0.002, n_replicates=4)

    diff = fitness_estimate(unit, "difference")
    assert diff.value == pytest.approx(0.3)
    assert diff.variance == pytest.approx(0.003)

    ratio = fitness_estimate(unit, "ratio")
    assert ratio.value == pytest.approx(2.5)
    assert ratio.variance == pytest.approx(2.5**2 * (0.002 / 0.25 + 0.001 / 0.04))

    log_ratio = fitness_estimate(unit, "log_ratio")
    assert log_ratio.value == pytest.approx(math.log(2.5))
    assert log_ratio.variance == pytest.approx(0.002 / 0.25 + 0.001 / 0.04)
    assert log_ratio.n_replicates == 4
    assert log_ratio.transform == "log_ratio"


def test_fitness_estimate_names_unit_on_domain_error():
    unit = ReferenceUnit("R9", mean_start=0.0, mean_end=0.5, var_start=0.001, var_end=0.002, n_replicates=4)
    with pytest.raises(DomainError, match="R9"):
        fitness_estimate(unit, "log_ratio")


@pytest.mark.parametrize("transform", ["difference", "ratio", "log_ratio"])
@pytest.mark.parametrize("start, end", [(0.0, 0.5), (0.5, 1.0), (0.0, 1.0), (1.0, 0.5)])
def test_fitness_estimate_rejects_boundary_proportions(transform, start, end):
    unit = ReferenceUnit("R0", mean_start=start, mean_end=end, var_start=0.001, var_end=0.001, n_replicates=4)
    with pytest.raises(DomainError, match=r"R0.*\(0, 1\)"):
        fitness_estimate(unit, transform)


def test_fitness_estimate_unknown_transform():
    unit = ReferenceUnit("R1", 0.2, 0.5, 0.001, 0.002, 4)
    with pytest.raises(ValueError):
        fitness_estimate(unit, "odds")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"replicate_correlation": 1.5},
        {"replicate_correlation": -0.1},
        {"representative_variance": -1.0},
        {"n_replicates": 0},
        {"assumed_count": 0},
    ],
)
def test_propagation_settings_validation(kwargs):
    with pytest.raises(ValueError):
        PropagationSettings(**kwargs)
