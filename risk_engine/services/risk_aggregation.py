"""
Combines per-type risk scores into an overall patient picture.

The overall level is the most severe level present. Alerts fire for scores
at or above HIGH, or with a value at or above the alert threshold. The
recommendation list is deduplicated on normalized text; colliding entries are
merged so no risk type loses its recommendation.
"""

import re
from collections.abc import Mapping
from datetime import datetime

import structlog
from pydantic import BaseModel, Field

from risk_engine.domain.errors import ValidationError
from risk_engine.domain.models import Priority, RiskLevel, RiskScore, utc_now

logger = structlog.get_logger(__name__)


class RiskAlert(BaseModel):
    risk_type: str
    level: RiskLevel
    value: float
    message: str
    recommended_action: str
    triggering_factor: str | None = None


class Recommendation(BaseModel):
    text: str
    priority: Priority
    risk_types: list[str] = Field(default_factory=list)


class RiskAggregate(BaseModel):
    overall_level: RiskLevel
    scores: dict[str, RiskScore]
    alerts: list[RiskAlert] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)
    monitoring_plan: dict[str, str] = Field(default_factory=dict)
    generated_at: datetime = Field(default_factory=utc_now)


# Contributing factor keyword -> immediate action. First match wins.
FACTOR_ACTIONS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("history_of_falls", "history of falls"), "Implement fall prevention protocol immediately"),
    (("ambulatory", "walker", "wheelchair"), "Keep ambulatory aid within reach and assist all transfers"),
    (("gait",), "Supervise ambulation and provide gait support"),
    (("iv_therapy", "iv access", "anticoagulation"), "Review IV lines and anticoagulation for bleeding and fall hazards"),
    (("mental_status", "cognitive", "orientation", "recall", "altered mental"), "Reorient the patient frequently and increase supervision"),
    (("respiratory rate",), "Request rapid response respiratory assessment"),
    (("systolic bp", "hypotension"), "Initiate sepsis evaluation and fluid resuscitation per protocol"),
    (("temperature", "wbc"), "Obtain cultures and notify the provider of infection markers"),
    (("moisture", "incontinence"), "Start moisture management and continence care"),
    (("mobility", "activity", "friction_shear", "friction"), "Reposition at least every 2 hours on a pressure-redistribution surface"),
    (("nutrition",), "Request a dietitian consult for nutritional support"),
    (("sensory_perception", "sensory"), "Inspect skin at pressure points every shift"),
    (("high-risk medications",), "Verify high-alert medication dosing with pharmacy"),
    (("polypharmacy", "multiple medications"), "Conduct comprehensive medication review"),
    (("social isolation",), "Arrange transitional care follow-up within 48 hours of discharge"),
)

DEFAULT_ACTIONS: dict[str, str] = {
    "fall-risk": "Implement fall prevention protocol immediately",
    "pressure-ulcer": "Implement pressure ulcer prevention protocol",
    "cognitive": "Perform a cognitive safety assessment and increase supervision",
    "sepsis": "Initiate sepsis evaluation and treatment",
    "readmission": "Schedule comprehensive discharge planning and follow-up",
    "medication": "Conduct comprehensive medication review",
}
GENERIC_ACTION = "Escalate to the care team for immediate review"

MONITORING_PLANS: dict[str, str] = {
    "fall-risk": "Monitor every 4 hours",
    "pressure-ulcer": "Skin assessment every 8 hours",
    "cognitive": "Cognitive screening each shift",
    "sepsis": "Monitor vital signs every 2 hours",
    "readmission": "Follow-up call within 72 hours of discharge",
    "medication": "Daily medication review",
}
DEFAULT_MONITORING = "Reassess each shift"

PREVENTION_STRATEGIES: dict[str, str] = {
    "fall-risk": "Fall prevention education and environmental modifications",
    "pressure-ulcer": "Pressure ulcer prevention and skin care protocols",
    "cognitive": "Cognitive stimulation and safety-focused care planning",
    "sepsis": "Infection prevention protocols and early warning systems",
    "readmission": "Discharge education and care transition planning",
    "medication": "Medication reconciliation and monitoring protocols",
}

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Casefold, collapse whitespace and strip trailing punctuation."""
    return _WHITESPACE.sub(" ", text.casefold()).strip().rstrip(".!;:,").strip()


def overall_level(scores: Mapping[str, RiskScore]) -> RiskLevel:
    if not scores:
        return RiskLevel.LOW
    return max((s.level for s in scores.values()), key=lambda level: level.severity)


def recommended_action(risk_type: str, factors: list[str]) -> tuple[str, str | None]:
    """Action for an alert: factor match, then risk-type default, then generic."""
    for factor in factors:
        lowered = factor.casefold()
        for keywords, action in FACTOR_ACTIONS:
            if any(keyword in lowered for keyword in keywords):
                return action, factor
    return DEFAULT_ACTIONS.get(risk_type, GENERIC_ACTION), None


class RecommendationSet:
    """Collects recommendations, merging entries whose normalized text collides."""

    def __init__(self) -> None:
        self._items: dict[str, Recommendation] = {}

    def add(self, text: str, priority: Priority, risk_type: str) -> None:
        key = normalize_text(text)
        if not key:
            return
        existing = self._items.get(key)
        if existing is None:
            self._items[key] = Recommendation(text=text.strip(), priority=priority, risk_types=[risk_type])
            return
        if priority.rank > existing.priority.rank:
            existing.priority = priority
        if risk_type not in existing.risk_types:
            existing.risk_types.append(risk_type)

    def sorted(self) -> list[Recommendation]:
        # sorted() is stable, so ties keep insertion order
        return sorted(self._items.values(), key=lambda r: r.priority.rank, reverse=True)

    def __len__(self) -> int:
        return len(self._items)


class RiskAssessmentAggregator:
    """Builds the overall level, alerts, recommendations and monitoring plan."""

    def __init__(self, alert_value_threshold: float = 75.0) -> None:
        self.alert_value_threshold = alert_value_threshold
        self.logger = logger.bind(component="risk_aggregator")

    def aggregate(self, scores: Mapping[str, RiskScore]) -> RiskAggregate:
        for risk_type, score in scores.items():
            if not isinstance(score, RiskScore):
                raise ValidationError(
                    f"Score for '{risk_type}' must be a RiskScore",
                    field=f"scores.{risk_type}",
                    validation_type="type",
                )

        alerts: list[RiskAlert] = []
        recommendations = RecommendationSet()
        monitoring: dict[str, str] = {}

        for risk_type, score in scores.items():
            is_alert = (
                score.level.severity >= RiskLevel.HIGH.severity
                or score.value >= self.alert_value_threshold
            )
            if is_alert:
                action, factor = recommended_action(risk_type, score.factors)
                alerts.append(
                    RiskAlert(
                        risk_type=risk_type,
                        level=score.level,
                        value=score.value,
                        message=f"{risk_type} risk is {score.level.value} ({score.value:.0f}/100)",
                        recommended_action=action,
                        triggering_factor=factor,
                    )
                )
                recommendations.add(action, Priority.HIGH, risk_type)
                default_action = DEFAULT_ACTIONS.get(risk_type)
                if default_action:
                    recommendations.add(default_action, Priority.HIGH, risk_type)

            if score.level != RiskLevel.LOW:
                plan = MONITORING_PLANS.get(risk_type, DEFAULT_MONITORING)
                monitoring[risk_type] = plan
                recommendations.add(plan, Priority.MEDIUM, risk_type)
                strategy = PREVENTION_STRATEGIES.get(risk_type)
                if strategy:
                    recommendations.add(strategy, Priority.LOW, risk_type)

        alerts.sort(key=lambda a: (a.level.severity, a.value), reverse=True)
        result = RiskAggregate(
            overall_level=overall_level(scores),
            scores=dict(scores),
            alerts=alerts,
            recommendations=recommendations.sorted(),
            monitoring_plan=monitoring,
        )

        self.logger.info(
            "risk_aggregated",
            overall_level=result.overall_level.value,
            risk_types=len(scores),
            alerts=len(alerts),
            recommendations=len(result.recommendations),
        )
        return result


def aggregate(scores: Mapping[str, RiskScore], alert_value_threshold: float = 75.0) -> RiskAggregate:
    return RiskAssessmentAggregator(alert_value_threshold).aggregate(scores)
