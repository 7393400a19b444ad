"""Tests for goal achievement prediction."""

from __future__ import annotations

import math
from datetime import datetime, timedelta

import pytest

from risk_engine.domain.models import Goal, Period, Significance, TrendDirection
from risk_engine.services.prediction import (
    PredictiveModel,
    estimate_time_to_completion,
    goal_recommendations,
)
from risk_engine.services.progress import ProgressGoalTracker
from risk_engine.services.trends import TrendAnalyzer


@pytest.fixture
def now(wall_clock) -> datetime:
    return wall_clock()


def _goal(now: datetime, current_value: float) -> Goal:
    return ProgressGoalTracker().create_smart_goal(
        {"description": "Independent transfers", "target_value": 100, "current_value": current_value},
        now,
    )


class TestAchievementPrediction:
    def test_improving_trend_raises_probability(self, now: datetime) -> None:
        goal = _goal(now, 40)

        prediction = PredictiveModel().predict_goal_achievement(
            [(0, 20), (1, 30), (2, 40)], goal, period=Period.WEEK, now=now
        )

        assert prediction.direction == TrendDirection.IMPROVING
        assert prediction.probability == pytest.approx(0.45)
        assert prediction.confidence == pytest.approx(1.0)
        assert prediction.estimated_periods == 6
        assert prediction.estimated_completion == now + timedelta(weeks=6)

    def test_declining_trend_is_damped_less(self, now: datetime) -> None:
        goal = _goal(now, 40)

        prediction = PredictiveModel().predict_goal_achievement([(0, 60), (1, 50), (2, 40)], goal)

        assert prediction.direction == TrendDirection.DECLINING
        assert prediction.probability == pytest.approx(0.37)
        assert prediction.estimated_periods is None
        assert prediction.estimated_completion is None
        assert prediction.recommendations[0].startswith("Reassess interventions")

    def test_probability_is_clamped_to_one(self, now: datetime) -> None:
        goal = _goal(now, 100)

        prediction = PredictiveModel().predict_goal_achievement([(0, 80), (1, 90), (2, 100)], goal)

        assert prediction.probability == 1.0
        assert prediction.estimated_periods is None

    def test_custom_damping(self, now: datetime) -> None:
        model = PredictiveModel(improving_damping=1.0)

        prediction = model.predict_goal_achievement([(0, 20), (1, 30), (2, 40)], _goal(now, 40))

        assert prediction.probability == pytest.approx(0.5)

    def test_single_observation_uses_progress_alone(self, now: datetime) -> None:
        goal = _goal(now, 25)

        prediction = PredictiveModel().predict_goal_achievement([(0, 25)], goal)

        assert prediction.trend.significance == Significance.INSUFFICIENT_DATA
        assert prediction.probability == pytest.approx(0.25)
        assert prediction.confidence == 0.0
        assert prediction.estimated_periods is None

    def test_model_time_estimate_uses_its_analyzer(self, now: datetime) -> None:
        model = PredictiveModel(analyzer=TrendAnalyzer(epsilon=0.5))

        assert model.estimate_time_to_completion([(0, 20), (1, 30), (2, 40)], _goal(now, 40)) == 6

    def test_stable_trend_has_no_estimate(self, now: datetime) -> None:
        model = PredictiveModel(analyzer=TrendAnalyzer(epsilon=0.5))

        prediction = model.predict_goal_achievement([(0, 40.0), (1, 40.4), (2, 40.8)], _goal(now, 40.8))

        assert prediction.direction == TrendDirection.STABLE
        assert prediction.estimated_periods is None


class TestTimeToCompletion:
    @pytest.mark.parametrize(
        ("progress", "slope", "expected"),
        [
            (50.0, 0.0, None),
            (50.0, -5.0, None),
            (100.0, 10.0, None),
            (95.0, 10.0, 1),
            (40.0, 7.0, 9),
        ],
    )
    def test_periods_remaining(self, progress: float, slope: float, expected: int | None) -> None:
        assert estimate_time_to_completion(progress, slope) == expected

    def test_slope_within_tolerance_is_not_progress(self) -> None:
        assert estimate_time_to_completion(50.0, 1e-12, epsilon=1e-9) is None
        assert estimate_time_to_completion(50.0, 1e-12) == math.ceil(50.0 / 1e-12)


class TestRecommendations:
    def test_low_progress_reviews_feasibility(self) -> None:
        assert "Review goal feasibility with the care team" in goal_recommendations(10)

    def test_mid_progress_maintains(self) -> None:
        assert goal_recommendations(50) == ["Maintain current interventions", "Monitor progress weekly"]

    def test_high_progress_prepares_for_completion(self) -> None:
        assert goal_recommendations(85)[0] == "Prepare for goal completion"
