"""
Linear trend analysis over ordered observation series.

`analyze_trend` fits an ordinary least-squares line of value against index
and reports the Pearson correlation of the same pairs. Input order is the
caller's: nothing here re-sorts a series by time. Fewer than two points is
not an error; it yields a stable, low-confidence result.
"""

import math
from collections.abc import Iterable, Mapping, Sequence
from datetime import date, datetime, timedelta

import structlog
from pydantic import BaseModel, Field

from risk_engine.domain.errors import ValidationError
from risk_engine.domain.models import (
    Period,
    Significance,
    TrendConfidence,
    TrendDirection,
    TrendResult,
)

logger = structlog.get_logger(__name__)

SeriesPoint = tuple[float, float]

DEFAULT_EPSILON = 1e-9
DEFAULT_SIGNIFICANCE = 0.5
HIGH_CONFIDENCE_CORRELATION = 0.8


class PeriodBucket(BaseModel):
    key: str
    start: date
    mean: float
    count: int = Field(ge=1)


class SignificantChange(BaseModel):
    index: int
    from_value: float
    to_value: float
    percent_change: float


class TrendProjection(BaseModel):
    metric: str
    from_index: float
    horizon: int
    values: list[float]


def _check_finite(series: Sequence[SeriesPoint]) -> None:
    for position, (x, y) in enumerate(series):
        if not (math.isfinite(x) and math.isfinite(y)):
            raise ValidationError(
                f"Series point {position} is not finite: ({x}, {y})",
                field=f"series[{position}]",
                validation_type="finite",
            )


def linear_fit(series: Sequence[SeriesPoint]) -> tuple[float, float, float]:
    """Return (slope, intercept, correlation) for at least two points."""
    n = len(series)
    mean_x = sum(x for x, _ in series) / n
    mean_y = sum(y for _, y in series) / n

    sxx = sum((x - mean_x) ** 2 for x, _ in series)
    syy = sum((y - mean_y) ** 2 for _, y in series)
    sxy = sum((x - mean_x) * (y - mean_y) for x, y in series)

    slope = sxy / sxx if sxx > 0 else 0.0
    intercept = mean_y - slope * mean_x
    denominator = math.sqrt(sxx * syy)
    correlation = sxy / denominator if denominator > 0 else 0.0
    return slope, intercept, max(-1.0, min(1.0, correlation))


def analyze_trend(
    series: Sequence[SeriesPoint],
    metric: str = "value",
    *,
    epsilon: float = DEFAULT_EPSILON,
    significance_threshold: float = DEFAULT_SIGNIFICANCE,
    higher_is_better: bool = True,
) -> TrendResult:
    """
    Classify the trend of `series`.

    Direction follows the slope sign with an epsilon dead-band. When
    `higher_is_better` is False (e.g. a fall-risk total), a falling slope is
    reported as improving.
    """
    points = [(float(x), float(y)) for x, y in series]
    if len(points) < 2:
        return TrendResult(
            metric=metric,
            slope=0.0,
            intercept=points[0][1] if points else 0.0,
            correlation=0.0,
            significance=Significance.INSUFFICIENT_DATA,
            direction=TrendDirection.STABLE,
            confidence=TrendConfidence.LOW,
            sample_size=len(points),
        )

    _check_finite(points)
    slope, intercept, correlation = linear_fit(points)

    if slope > epsilon:
        direction = TrendDirection.IMPROVING if higher_is_better else TrendDirection.DECLINING
    elif slope < -epsilon:
        direction = TrendDirection.DECLINING if higher_is_better else TrendDirection.IMPROVING
    else:
        direction = TrendDirection.STABLE

    strength = abs(correlation)
    significance = (
        Significance.SIGNIFICANT if strength > significance_threshold else Significance.NOT_SIGNIFICANT
    )
    if strength > HIGH_CONFIDENCE_CORRELATION:
        confidence = TrendConfidence.HIGH
    elif strength > significance_threshold:
        confidence = TrendConfidence.MEDIUM
    else:
        confidence = TrendConfidence.LOW

    return TrendResult(
        metric=metric,
        slope=slope,
        intercept=intercept,
        correlation=correlation,
        significance=significance,
        direction=direction,
        confidence=confidence,
        sample_size=len(points),
    )


def period_start(moment: datetime | date, period: Period) -> date:
    day = moment.date() if isinstance(moment, datetime) else moment
    if period == Period.DAY:
        return day
    if period == Period.WEEK:
        # Weeks start on Sunday
        return day - timedelta(days=(day.weekday() + 1) % 7)
    return day.replace(day=1)


def _period_key(start: date, period: Period) -> str:
    return start.strftime("%Y-%m") if period == Period.MONTH else start.isoformat()


def _periods_between(first: date, other: date, period: Period) -> int:
    if period == Period.DAY:
        return (other - first).days
    if period == Period.WEEK:
        return (other - first).days // 7
    return (other.year - first.year) * 12 + (other.month - first.month)


def group_by_period(
    observations: Iterable[tuple[datetime, float]], period: Period | str
) -> list[PeriodBucket]:
    """Average observations per calendar period, ordered chronologically."""
    period = Period(period)
    sums: dict[date, list[float]] = {}
    for moment, value in observations:
        sums.setdefault(period_start(moment, period), []).append(float(value))

    return [
        PeriodBucket(
            key=_period_key(start, period),
            start=start,
            mean=sum(values) / len(values),
            count=len(values),
        )
        for start, values in sorted(sums.items())
    ]


def buckets_to_series(buckets: Sequence[PeriodBucket], period: Period | str) -> list[SeriesPoint]:
    """Index each bucket by periods elapsed since the first, so gaps stay visible."""
    if not buckets:
        return []
    period = Period(period)
    first = buckets[0].start
    return [(float(_periods_between(first, b.start, period)), b.mean) for b in buckets]


def overall_direction(results: Iterable[TrendResult]) -> TrendDirection:
    improving = declining = 0
    for result in results:
        if result.direction == TrendDirection.IMPROVING:
            improving += 1
        elif result.direction == TrendDirection.DECLINING:
            declining += 1
    if improving > declining:
        return TrendDirection.IMPROVING
    if declining > improving:
        return TrendDirection.DECLINING
    return TrendDirection.STABLE


def significant_changes(
    values: Sequence[float], threshold_percent: float = 10.0
) -> list[SignificantChange]:
    """Consecutive changes larger than `threshold_percent` of the earlier value."""
    changes = []
    for i in range(1, len(values)):
        previous, current = values[i - 1], values[i]
        if previous == 0:
            continue
        percent = (current - previous) / abs(previous) * 100.0
        if abs(percent) > threshold_percent:
            changes.append(
                SignificantChange(
                    index=i, from_value=previous, to_value=current, percent_change=round(percent, 2)
                )
            )
    return changes


def project(
    result: TrendResult, from_index: float, horizon: int = 7
) -> TrendProjection | None:
    """Extend a significant trend `horizon` steps past `from_index`."""
    if result.significance != Significance.SIGNIFICANT or horizon < 1:
        return None
    values = [
        round(result.intercept + result.slope * (from_index + step), 4)
        for step in range(1, horizon + 1)
    ]
    return TrendProjection(metric=result.metric, from_index=from_index, horizon=horizon, values=values)


class TrendAnalyzer:
    """Trend analysis with configured tolerance and significance threshold."""

    def __init__(
        self, epsilon: float = DEFAULT_EPSILON, significance_threshold: float = DEFAULT_SIGNIFICANCE
    ) -> None:
        self.epsilon = epsilon
        self.significance_threshold = significance_threshold
        self.logger = logger.bind(component="trend_analyzer")

    def analyze_trend(
        self, series: Sequence[SeriesPoint], metric: str = "value", higher_is_better: bool = True
    ) -> TrendResult:
        result = analyze_trend(
            series,
            metric,
            epsilon=self.epsilon,
            significance_threshold=self.significance_threshold,
            higher_is_better=higher_is_better,
        )
        self.logger.debug(
            "trend_analyzed",
            metric=metric,
            sample_size=result.sample_size,
            slope=round(result.slope, 6),
            correlation=round(result.correlation, 4),
            direction=result.direction.value,
        )
        return result

    def analyze_observations(
        self,
        observations: Iterable[tuple[datetime, float]],
        period: Period | str,
        metric: str = "value",
        higher_is_better: bool = True,
    ) -> tuple[TrendResult, list[PeriodBucket]]:
        """Group timestamped observations by period, then analyze the bucket means."""
        ordered = sorted(observations, key=lambda item: item[0])
        buckets = group_by_period(ordered, period)
        series = buckets_to_series(buckets, period)
        return self.analyze_trend(series, metric, higher_is_better), buckets

    def analyze_metrics(
        self, named_series: Mapping[str, Sequence[SeriesPoint]]
    ) -> dict[str, TrendResult]:
        return {name: self.analyze_trend(series, name) for name, series in named_series.items()}
