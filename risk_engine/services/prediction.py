"""
Goal achievement prediction from progress trends.

The probability starts from the goal's latest progress (as a 0-1 fraction)
and is nudged by the trend slope: positive slopes are damped by 0.5 and
negative slopes by 0.3 by default, then the result is clamped to [0, 1].
Confidence is the absolute correlation of the same trend.
"""

import math
from collections.abc import Sequence
from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel, Field

from risk_engine.domain.models import Goal, Period, TrendDirection, TrendResult
from risk_engine.services.trends import SeriesPoint, TrendAnalyzer

logger = structlog.get_logger(__name__)

PERIOD_LENGTH = {
    Period.DAY: timedelta(days=1),
    Period.WEEK: timedelta(weeks=1),
    Period.MONTH: timedelta(days=30),
}


class AchievementPrediction(BaseModel):
    goal_id: str
    probability: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    direction: TrendDirection
    current_progress: float
    estimated_periods: int | None = None
    estimated_completion: datetime | None = None
    recommendations: list[str] = Field(default_factory=list)
    trend: TrendResult


def goal_recommendations(progress: float, direction: TrendDirection | None = None) -> list[str]:
    """Tiered guidance by progress percentage."""
    if progress < 30:
        recommendations = [
            "Review goal feasibility with the care team",
            "Increase intervention frequency",
            "Break the goal into smaller milestones",
        ]
    elif progress < 70:
        recommendations = [
            "Maintain current interventions",
            "Monitor progress weekly",
        ]
    else:
        recommendations = [
            "Prepare for goal completion",
            "Plan maintenance strategies",
        ]
    if direction == TrendDirection.DECLINING:
        recommendations.insert(0, "Reassess interventions: progress is declining")
    return recommendations


def estimate_time_to_completion(progress: float, slope: float, epsilon: float = 0.0) -> int | None:
    """
    Periods until 100% at the current slope.

    None when the goal is done or the slope is within `epsilon` of flat, the
    same tolerance the analyzer uses to call a trend stable.
    """
    if progress >= 100.0 or slope <= epsilon:
        return None
    return max(1, math.ceil((100.0 - progress) / slope))


class PredictiveModel:
    """Combines a goal's latest progress with its trend."""

    def __init__(
        self,
        analyzer: TrendAnalyzer | None = None,
        improving_damping: float = 0.5,
        declining_damping: float = 0.3,
    ) -> None:
        self.analyzer = analyzer or TrendAnalyzer()
        self.improving_damping = improving_damping
        self.declining_damping = declining_damping
        self.logger = logger.bind(component="predictive_model")

    def achievement_probability(self, progress: float, trend: TrendResult) -> float:
        probability = progress / 100.0
        if trend.direction == TrendDirection.IMPROVING:
            probability += trend.slope / 100.0 * self.improving_damping
        elif trend.direction == TrendDirection.DECLINING:
            probability -= abs(trend.slope) / 100.0 * self.declining_damping
        return min(max(probability, 0.0), 1.0)

    def estimate_time_to_completion(self, series: Sequence[SeriesPoint], goal: Goal) -> int | None:
        trend = self.analyzer.analyze_trend(series, metric=f"goal:{goal.id}")
        return estimate_time_to_completion(goal.progress, trend.slope, self.analyzer.epsilon)

    def predict_goal_achievement(
        self,
        series: Sequence[SeriesPoint],
        goal: Goal,
        period: Period | None = None,
        now: datetime | None = None,
    ) -> AchievementPrediction:
        """
        Predict whether `goal` will be achieved.

        `series` holds (index, progress %) pairs in temporal order. When
        `period` and `now` are given, the period estimate is also turned into
        a completion date.
        """
        trend = self.analyzer.analyze_trend(series, metric=f"goal:{goal.id}")
        probability = self.achievement_probability(goal.progress, trend)
        periods = estimate_time_to_completion(goal.progress, trend.slope, self.analyzer.epsilon)

        completion = None
        if periods is not None and period is not None and now is not None:
            completion = now + PERIOD_LENGTH[period] * periods

        prediction = AchievementPrediction(
            goal_id=goal.id,
            probability=round(probability, 4),
            confidence=round(abs(trend.correlation), 4),
            direction=trend.direction,
            current_progress=goal.progress,
            estimated_periods=periods,
            estimated_completion=completion,
            recommendations=goal_recommendations(goal.progress, trend.direction),
            trend=trend,
        )

        self.logger.info(
            "goal_prediction_generated",
            goal_id=goal.id,
            probability=prediction.probability,
            confidence=prediction.confidence,
            estimated_periods=periods,
        )
        return prediction
