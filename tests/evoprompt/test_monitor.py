"""Tests for the diversity monitor."""

import pytest

from evoprompt.diversity.monitor import DiversityMonitor
from evoprompt.diversity.types import DiversityLevel, DiversityMetrics
from evoprompt.errors import ValidationError


def observed(diversity: float) -> DiversityMetrics:
    return DiversityMetrics(
        pairwise_diversity=diversity,
        entropy=0.0,
        coverage=1.0,
        uniqueness_ratio=1.0,
        clustering_coefficient=0.0,
        convergence_risk=1.0 - diversity,
        diversity_level=DiversityLevel.MODERATE,
    )


def feed(monitor, values):
    for generation, value in enumerate(values):
        monitor.record(generation, observed(value))


@pytest.mark.parametrize(
    "values,expected",
    [
        ([], "unknown"),
        ([0.5], "unknown"),
        ([0.9, 0.7, 0.5], "decreasing"),
        ([0.2, 0.4, 0.6], "increasing"),
        ([0.5, 0.5, 0.505], "stable"),
    ],
)
def test_trend(values, expected):
    monitor = DiversityMonitor()
    feed(monitor, values)
    assert monitor.trend() == expected


def test_trend_uses_recent_window_only():
    monitor = DiversityMonitor(trend_window=3)
    feed(monitor, [0.1, 0.2, 0.9, 0.7, 0.5])
    assert monitor.slope() == pytest.approx(-0.2)


def test_collapse_requires_consecutive_critical_generations():
    monitor = DiversityMonitor(patience=3)
    feed(monitor, [0.1, 0.05])
    assert not monitor.collapsed

    monitor.record(2, observed(0.5))
    monitor.record(3, observed(0.1))
    assert not monitor.collapsed

    monitor.record(4, observed(0.1))
    monitor.record(5, observed(0.0))
    assert monitor.collapsed


def test_warning_zone_and_reset():
    monitor = DiversityMonitor()
    assert not monitor.in_warning_zone

    feed(monitor, [0.5, 0.2])
    assert monitor.in_warning_zone
    assert [obs.generation for obs in monitor.history] == [0, 1]

    monitor.reset()
    assert monitor.history == ()
    assert monitor.trend() == "unknown"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"critical_threshold": 0.4, "warning_threshold": 0.3},
        {"trend_window": 1},
        {"patience": 0},
    ],
)
def test_invalid_monitor_settings(kwargs):
    with pytest.raises(ValidationError):
        DiversityMonitor(**kwargs)
