import math
from datetime import datetime, timedelta

import pytest

from qc.errors import InsufficientData, InvalidConfiguration, InvalidMeasurement
from qc.statistics import compute_statistics, period_bounds, sample_sd, statistics_for_period
from qc.westgard import QCObservation

START = datetime(2024, 3, 1, 8, 0)
VALUES = [98, 102, 99, 101, 100, 103, 97, 100, 99, 101]


def _observations(values, start=START, **kwargs):
    return [QCObservation(value=v, run_date=start + timedelta(days=i), **kwargs) for i, v in enumerate(values)]


def test_sample_sd_uses_n_minus_one():
    mean = sum(VALUES) / len(VALUES)
    expected = math.sqrt(sum((v - mean) ** 2 for v in VALUES) / 9)
    assert sample_sd(VALUES) == pytest.approx(expected, abs=1e-9)
    # Hand computed: squared deviations sum to 30, 30 / 9.
    assert sample_sd(VALUES) == pytest.approx(math.sqrt(30 / 9), abs=1e-9)


def test_statistics_match_hand_computation():
    stats = compute_statistics(_observations(VALUES), target_mean=100.0, target_sd=2.0)
    assert stats.n == 10
    assert stats.mean == pytest.approx(100.0)
    assert stats.sd == pytest.approx(math.sqrt(30 / 9), abs=1e-9)
    assert stats.cv == pytest.approx(stats.sd / stats.mean * 100)
    assert stats.bias == pytest.approx(0.0)
    assert stats.minimum == 97
    assert stats.maximum == 103
    assert stats.median == pytest.approx(100.0)
    assert stats.total_error == pytest.approx(abs(stats.bias) + 1.65 * stats.cv)
    assert stats.sigma is None


def test_band_counts_use_target_mean_and_are_nested():
    stats = compute_statistics(_observations([100, 101, 103, 105, 107, 90]), target_mean=100.0, target_sd=2.0)
    assert stats.within_sd.one_sd == 2
    assert stats.within_sd.two_sd == 3
    assert stats.within_sd.three_sd == 4
    assert stats.within_sd.one_sd <= stats.within_sd.two_sd <= stats.within_sd.three_sd <= stats.n


def test_band_boundaries_are_inclusive():
    stats = compute_statistics(_observations([102, 96]), target_mean=100.0, target_sd=2.0)
    assert stats.within_sd.one_sd == 1
    assert stats.within_sd.two_sd == 2


def test_bias_is_relative_to_target():
    stats = compute_statistics(_observations([104, 106]), target_mean=100.0, target_sd=5.0)
    assert stats.bias == pytest.approx(5.0)


def test_sigma_only_with_allowable_error():
    observations = _observations([104, 106])
    stats = compute_statistics(observations, target_mean=100.0, target_sd=5.0, allowable_error=10.0)
    assert stats.sigma == pytest.approx((10.0 - abs(stats.bias)) / stats.cv)
    assert compute_statistics(observations, target_mean=100.0, target_sd=5.0).sigma is None


def test_sigma_is_omitted_when_cv_is_zero():
    stats = compute_statistics(_observations([100, 100]), target_mean=100.0, target_sd=5.0, allowable_error=10.0)
    assert stats.cv == 0
    assert stats.sigma is None


def test_statistics_are_idempotent():
    observations = _observations(VALUES)
    assert compute_statistics(observations, 100.0, 2.0, allowable_error=7.0) == compute_statistics(
        observations, 100.0, 2.0, allowable_error=7.0
    )


def test_empty_observations_raise_insufficient_data():
    with pytest.raises(InsufficientData) as excinfo:
        compute_statistics([], 100.0, 2.0)
    assert excinfo.value.n == 0


def test_single_observation_reports_mean_but_no_sd():
    with pytest.raises(InsufficientData, match="single observation") as excinfo:
        compute_statistics(_observations([101.5]), 100.0, 2.0)
    assert excinfo.value.n == 1
    assert excinfo.value.mean == pytest.approx(101.5)


def test_zero_mean_makes_cv_undefined():
    with pytest.raises(InsufficientData, match="CV"):
        compute_statistics(_observations([-1.0, 1.0]), 1.0, 0.5)


def test_invalid_targets_are_rejected():
    with pytest.raises(InvalidConfiguration):
        compute_statistics(_observations(VALUES), 100.0, 0.0)
    with pytest.raises(InvalidConfiguration, match="non-zero"):
        compute_statistics(_observations(VALUES), 0.0, 1.0)


def test_non_finite_observations_are_rejected():
    with pytest.raises(InvalidMeasurement):
        compute_statistics(_observations(VALUES + [math.nan]), 100.0, 2.0)
    stats = compute_statistics(
        _observations(VALUES) + [QCObservation(value=math.inf, run_date=START, excluded=True)], 100.0, 2.0
    )
    assert stats.n == 10


def test_excluded_observations_are_ignored():
    observations = _observations(VALUES) + [QCObservation(value=500, run_date=START, excluded=True)]
    assert compute_statistics(observations, 100.0, 2.0).n == 10


def test_period_defaults_to_observation_dates():
    stats = compute_statistics(_observations(VALUES), 100.0, 2.0)
    assert stats.period_start == START
    assert stats.period_end == START + timedelta(days=9)


def test_statistics_for_period_filters_by_named_window():
    now = START + timedelta(days=9)
    stats = statistics_for_period(_observations(VALUES), 100.0, 2.0, "weekly", now=now)
    assert stats.n == 8
    assert stats.period_start == now - timedelta(days=7)
    assert stats.period_end == now


def test_unknown_period_is_rejected():
    with pytest.raises(ValueError, match="fortnightly"):
        period_bounds("fortnightly", START)


def test_statistics_json_shape():
    payload = compute_statistics(_observations(VALUES), 100.0, 2.0).to_json()
    assert payload["withinSDCount"] == {"oneSD": 8, "twoSD": 10, "threeSD": 10}
    assert payload["periodStart"] == START.isoformat()
