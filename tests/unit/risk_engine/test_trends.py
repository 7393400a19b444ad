"""
Tests for trend analysis.

Covers:
- Increasing, decreasing and constant series
- Fewer than two points is insufficient data, not an error
- Orientation for metrics where lower is better
- Period grouping (Sunday weeks, months) with gaps preserved
- Significant changes and projections
"""

from __future__ import annotations

import math
from datetime import UTC, date, datetime, timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from risk_engine.domain.errors import ValidationError
from risk_engine.domain.models import (
    Period,
    Significance,
    TrendConfidence,
    TrendDirection,
    TrendResult,
)
from risk_engine.services.trends import (
    TrendAnalyzer,
    analyze_trend,
    buckets_to_series,
    group_by_period,
    linear_fit,
    overall_direction,
    period_start,
    project,
    significant_changes,
)


def _series(values: list[float]) -> list[tuple[float, float]]:
    return [(float(i), v) for i, v in enumerate(values)]


class TestAnalyzeTrend:
    def test_increasing_series_is_improving_and_significant(self) -> None:
        result = analyze_trend(_series([10, 20, 30, 40]))

        assert result.direction == TrendDirection.IMPROVING
        assert result.slope == pytest.approx(10.0)
        assert result.correlation == pytest.approx(1.0)
        assert result.significance == Significance.SIGNIFICANT
        assert result.confidence == TrendConfidence.HIGH

    def test_decreasing_series_is_declining(self) -> None:
        result = analyze_trend(_series([40, 30, 20, 10]))

        assert result.direction == TrendDirection.DECLINING
        assert result.correlation == pytest.approx(-1.0)

    def test_constant_series_is_stable_with_zero_correlation(self) -> None:
        result = analyze_trend(_series([5, 5, 5, 5]))

        assert result.direction == TrendDirection.STABLE
        assert result.slope == 0.0
        assert result.correlation == 0.0
        assert result.significance == Significance.NOT_SIGNIFICANT

    @pytest.mark.parametrize("values", [[], [42.0]])
    def test_short_series_is_insufficient_data(self, values: list[float]) -> None:
        result = analyze_trend(_series(values))

        assert result.significance == Significance.INSUFFICIENT_DATA
        assert result.direction == TrendDirection.STABLE
        assert result.confidence == TrendConfidence.LOW
        assert result.sample_size == len(values)

    def test_lower_is_better_flips_direction(self) -> None:
        result = analyze_trend(_series([60, 45, 30]), higher_is_better=False)

        assert result.direction == TrendDirection.IMPROVING

    def test_noisy_series_has_medium_confidence(self) -> None:
        result = analyze_trend(_series([10, 14, 11, 16, 13, 18]))

        assert result.direction == TrendDirection.IMPROVING
        assert 0.5 < abs(result.correlation) <= 0.8
        assert result.confidence == TrendConfidence.MEDIUM

    def test_non_finite_values_are_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            analyze_trend([(0.0, 1.0), (1.0, math.nan)])

        assert exc_info.value.field == "series[1]"

    def test_series_order_is_the_callers(self) -> None:
        # Indexes are used as given, so out-of-order points are not re-sorted
        assert analyze_trend([(1.0, 20.0), (0.0, 10.0)]).slope == pytest.approx(10.0)

    @given(
        start=st.floats(min_value=-1000, max_value=1000),
        step=st.floats(min_value=0.01, max_value=100),
        n=st.integers(min_value=2, max_value=30),
    )
    def test_strictly_increasing_lines_always_improve(self, start: float, step: float, n: int) -> None:
        result = analyze_trend(_series([start + step * i for i in range(n)]))

        assert result.direction == TrendDirection.IMPROVING
        assert -1.0 <= result.correlation <= 1.0

    def test_linear_fit_intercept(self) -> None:
        slope, intercept, _ = linear_fit([(0.0, 3.0), (1.0, 5.0), (2.0, 7.0)])

        assert slope == pytest.approx(2.0)
        assert intercept == pytest.approx(3.0)


class TestPeriods:
    def test_weeks_start_on_sunday(self) -> None:
        wednesday = datetime(2024, 3, 6, 12, tzinfo=UTC)
        sunday = date(2024, 3, 3)

        assert period_start(wednesday, Period.WEEK) == sunday
        assert period_start(sunday, Period.WEEK) == sunday

    def test_month_buckets_average_values(self) -> None:
        buckets = group_by_period(
            [
                (datetime(2024, 1, 5, tzinfo=UTC), 10),
                (datetime(2024, 1, 20, tzinfo=UTC), 20),
                (datetime(2024, 2, 2, tzinfo=UTC), 40),
            ],
            "month",
        )

        assert [(b.key, b.mean, b.count) for b in buckets] == [("2024-01", 15.0, 2), ("2024-02", 40.0, 1)]

    def test_series_index_preserves_gaps(self) -> None:
        first = datetime(2024, 3, 3, tzinfo=UTC)
        buckets = group_by_period(
            [(first, 10), (first + timedelta(weeks=1), 20), (first + timedelta(weeks=4), 50)], Period.WEEK
        )

        assert [x for x, _ in buckets_to_series(buckets, Period.WEEK)] == [0.0, 1.0, 4.0]

    def test_analyzer_groups_unsorted_observations(self) -> None:
        first = datetime(2024, 3, 3, tzinfo=UTC)
        observations = [
            (first + timedelta(days=2), 30.0),
            (first, 10.0),
            (first + timedelta(days=1), 20.0),
        ]

        result, buckets = TrendAnalyzer().analyze_observations(observations, Period.DAY, metric="score")

        assert [b.mean for b in buckets] == [10.0, 20.0, 30.0]
        assert result.metric == "score"
        assert result.slope == pytest.approx(10.0)


class TestDerivedViews:
    def test_significant_changes_use_threshold(self) -> None:
        changes = significant_changes([100, 105, 80, 0, 50], threshold_percent=10)

        assert [(c.index, c.percent_change) for c in changes] == [(2, -23.81), (3, -100.0)]

    def test_projection_only_for_significant_trends(self) -> None:
        significant = analyze_trend(_series([1, 2, 3]))
        flat = analyze_trend(_series([1, 1, 1]))

        projection = project(significant, from_index=2, horizon=2)

        assert projection is not None
        assert projection.values == [pytest.approx(4.0), pytest.approx(5.0)]
        assert project(flat, from_index=2) is None

    def test_overall_direction_is_majority_vote(self) -> None:
        def trend(direction: TrendDirection) -> TrendResult:
            return TrendResult(
                metric="m",
                slope=0.0,
                correlation=0.0,
                significance=Significance.NOT_SIGNIFICANT,
                direction=direction,
                confidence=TrendConfidence.LOW,
                sample_size=3,
            )

        assert overall_direction([trend(TrendDirection.IMPROVING)] * 2 + [trend(TrendDirection.DECLINING)]) == TrendDirection.IMPROVING
        assert overall_direction([trend(TrendDirection.IMPROVING), trend(TrendDirection.DECLINING)]) == TrendDirection.STABLE
        assert overall_direction([]) == TrendDirection.STABLE

    def test_analyze_metrics_runs_each_series(self) -> None:
        results = TrendAnalyzer().analyze_metrics({"a": _series([1, 2]), "b": _series([2, 1])})

        assert results["a"].direction == TrendDirection.IMPROVING
        assert results["b"].direction == TrendDirection.DECLINING
