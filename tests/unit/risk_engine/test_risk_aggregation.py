"""
Tests for risk aggregation.

Covers:
- Overall level is the most severe level present
- Alerts on HIGH/CRITICAL levels and on values at or above the threshold
- Recommendation dedup merges colliding entries across risk types
- Priority ordering, monitoring plan and input validation
"""

from __future__ import annotations

import pytest

from risk_engine.domain.errors import ValidationError
from risk_engine.domain.models import Priority, RiskLevel, RiskScore
from risk_engine.services.risk_aggregation import (
    RecommendationSet,
    RiskAssessmentAggregator,
    aggregate,
    normalize_text,
    overall_level,
)


def _score(risk_type: str, value: float, level: RiskLevel, factors: list[str] | None = None) -> RiskScore:
    return RiskScore(risk_type=risk_type, value=value, level=level, factors=factors or [])


def test_empty_scores_are_low_with_nothing_to_do() -> None:
    result = aggregate({})

    assert result.overall_level == RiskLevel.LOW
    assert result.alerts == []
    assert result.recommendations == []


def test_overall_level_is_the_maximum_severity() -> None:
    scores = {
        "fall-risk": _score("fall-risk", 30, RiskLevel.MEDIUM),
        "sepsis": _score("sepsis", 90, RiskLevel.CRITICAL),
        "medication": _score("medication", 10, RiskLevel.LOW),
    }

    assert overall_level(scores) == RiskLevel.CRITICAL


def test_high_level_raises_alert_with_factor_action() -> None:
    result = aggregate(
        {"fall-risk": _score("fall-risk", 60, RiskLevel.HIGH, ["Requires ambulatory aid"])}
    )

    assert len(result.alerts) == 1
    alert = result.alerts[0]
    assert alert.recommended_action == "Keep ambulatory aid within reach and assist all transfers"
    assert alert.triggering_factor == "Requires ambulatory aid"
    assert result.recommendations[0].priority == Priority.HIGH


def test_value_threshold_alerts_even_when_level_is_low() -> None:
    result = RiskAssessmentAggregator(alert_value_threshold=50).aggregate(
        {"readmission": _score("readmission", 55, RiskLevel.LOW)}
    )

    assert [a.risk_type for a in result.alerts] == ["readmission"]
    assert result.alerts[0].recommended_action.startswith("Schedule comprehensive discharge")


def test_colliding_recommendations_are_merged_not_dropped() -> None:
    result = aggregate(
        {
            "readmission": _score(
                "readmission", 80, RiskLevel.HIGH, ["Polypharmacy (>=10 medications)"]
            ),
            "medication": _score("medication", 80, RiskLevel.HIGH),
        }
    )

    review = [r for r in result.recommendations if r.text == "Conduct comprehensive medication review"]
    assert len(review) == 1
    assert set(review[0].risk_types) == {"readmission", "medication"}


def test_factor_and_default_action_collapse_to_one_entry() -> None:
    result = aggregate(
        {"fall-risk": _score("fall-risk", 70, RiskLevel.HIGH, ["History of falls or cognitive impairment"])}
    )

    texts = [normalize_text(r.text) for r in result.recommendations]
    assert texts.count("implement fall prevention protocol immediately") == 1


def test_recommendations_are_sorted_by_priority() -> None:
    result = aggregate(
        {
            "pressure-ulcer": _score("pressure-ulcer", 40, RiskLevel.MEDIUM),
            "sepsis": _score("sepsis", 80, RiskLevel.HIGH),
        }
    )

    ranks = [r.priority.rank for r in result.recommendations]
    assert ranks == sorted(ranks, reverse=True)
    assert result.monitoring_plan == {
        "pressure-ulcer": "Skin assessment every 8 hours",
        "sepsis": "Monitor vital signs every 2 hours",
    }


def test_alerts_are_ordered_by_severity_then_value() -> None:
    result = aggregate(
        {
            "fall-risk": _score("fall-risk", 60, RiskLevel.HIGH),
            "sepsis": _score("sepsis", 70, RiskLevel.CRITICAL),
            "readmission": _score("readmission", 90, RiskLevel.HIGH),
        }
    )

    assert [a.risk_type for a in result.alerts] == ["sepsis", "readmission", "fall-risk"]


def test_low_scores_get_no_monitoring_plan() -> None:
    result = aggregate({"medication": _score("medication", 5, RiskLevel.LOW)})

    assert result.monitoring_plan == {}
    assert result.recommendations == []


def test_non_risk_score_values_are_rejected() -> None:
    with pytest.raises(ValidationError) as exc_info:
        aggregate({"fall-risk": {"value": 10}})  # type: ignore[dict-item]

    assert exc_info.value.field == "scores.fall-risk"


def test_recommendation_set_keeps_highest_priority_and_first_text() -> None:
    recommendations = RecommendationSet()
    recommendations.add("Reassess each shift.", Priority.LOW, "a")
    recommendations.add("  reassess   EACH shift ", Priority.HIGH, "b")

    (only,) = recommendations.sorted()
    assert only.text == "Reassess each shift."
    assert only.priority == Priority.HIGH
    assert only.risk_types == ["a", "b"]
