"""
Goal-directed progress tracking.

Goal lifecycle:
- active is the initial state
- active -> completed once progress reaches 100
- active -> overdue once the time bound passes while still active
- the tracker never moves a goal back; only `reset_goal_status` (an explicit
  clinician action) can

Milestones are reached the first time progress meets their threshold and stay
reached from then on. Every progress update is also appended to the goal's
progress history, which later feeds trend analysis and prediction.
"""

import random
import string
from collections import Counter
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from risk_engine.domain.errors import ModelT, ValidationError, parse_payload
from risk_engine.domain.models import (
    EffectivenessImpact,
    Goal,
    GoalStatus,
    Intervention,
    Milestone,
    Priority,
    ProgressMetrics,
    ProgressObservation,
    ProgressRecord,
    ensure_utc,
    utc_now,
)

logger = structlog.get_logger(__name__)

DEFAULT_GOAL_WINDOW = timedelta(days=30)


class MilestoneInput(BaseModel):
    description: str = Field(min_length=1)
    threshold: float = Field(ge=0.0, le=100.0)


class GoalInput(BaseModel):
    """Caller payload for a new goal. SMART fields default from the description."""

    model_config = ConfigDict(extra="ignore")

    description: str = Field(min_length=1)
    specific: str | None = None
    measurable: str | None = None
    achievable: str | None = None
    relevant: str | None = None
    time_bound: datetime | None = None
    category: str = "general"
    priority: Priority = Priority.MEDIUM
    target_value: float = Field(gt=0.0)
    current_value: float = 0.0
    unit: str = "points"
    milestones: list[MilestoneInput] = Field(default_factory=list)

    @field_validator("time_bound")
    @classmethod
    def time_bound_aware(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None


class InterventionInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = Field(min_length=1)
    description: str = ""
    goal_ids: list[str] = Field(default_factory=list)
    recorded_at: datetime | None = None
    effectiveness: float | None = Field(None, ge=0.0, le=100.0)
    # Goal measurements taken with the intervention: goal id -> current value
    goal_updates: dict[str, float] = Field(default_factory=dict)

    @field_validator("recorded_at")
    @classmethod
    def recorded_at_aware(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None


class GoalUpdate(BaseModel):
    """Outcome of recomputing one goal."""

    goal_id: str
    previous_progress: float
    progress: float
    previous_status: GoalStatus
    status: GoalStatus
    reached_milestones: list[Milestone] = Field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.previous_status != GoalStatus.COMPLETED and self.status == GoalStatus.COMPLETED


class InterventionOutcome(BaseModel):
    intervention: Intervention
    goal_updates: list[GoalUpdate] = Field(default_factory=list)
    unknown_goal_ids: list[str] = Field(default_factory=list)


class ProgressChange(BaseModel):
    metric: str
    old_value: Any = None
    new_value: Any = None
    absolute: float | None = None
    percentage: float | None = None
    direction: Literal["increase", "decrease", "stable", "changed"]


class GoalAnalytics(BaseModel):
    goal_id: str
    description: str
    progress: float
    status: GoalStatus
    days_remaining: int | None
    intervention_count: int
    on_track: bool
    risk_level: Literal["low", "medium", "high"]


class InterventionAnalytics(BaseModel):
    total: int
    average_effectiveness: float | None
    most_effective_id: str | None
    by_type: dict[str, int]
    recent: int


class ProgressAlert(BaseModel):
    type: Literal["goal_overdue", "progress_stalled"]
    severity: Literal["high", "medium"]
    message: str
    goal_id: str


def clamp_progress(current_value: float, target_value: float) -> float:
    """Percentage of target reached, clamped to [0, 100]."""
    if target_value <= 0:
        raise ValidationError(
            "target_value must be greater than zero", field="target_value", validation_type="range"
        )
    return min(max(current_value / target_value * 100.0, 0.0), 100.0)


def generate_intervention_id(now: datetime) -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=5))
    return f"INT_{int(now.timestamp() * 1000)}_{suffix}"


def impact_for(score: float | None) -> EffectivenessImpact:
    if score is None:
        return EffectivenessImpact.UNKNOWN
    if score > 70:
        return EffectivenessImpact.HIGH
    if score > 40:
        return EffectivenessImpact.MODERATE
    return EffectivenessImpact.LOW


def calculate_change(old_value: Any, new_value: Any) -> ProgressChange:
    numeric = (int, float)
    if (
        isinstance(old_value, numeric)
        and isinstance(new_value, numeric)
        and not isinstance(old_value, bool)
        and not isinstance(new_value, bool)
    ):
        absolute = float(new_value) - float(old_value)
        percentage = absolute / float(old_value) * 100 if old_value != 0 else 0.0
        if new_value > old_value:
            direction: Literal["increase", "decrease", "stable", "changed"] = "increase"
        elif new_value < old_value:
            direction = "decrease"
        else:
            direction = "stable"
        return ProgressChange(
            metric="",
            old_value=old_value,
            new_value=new_value,
            absolute=absolute,
            percentage=percentage,
            direction=direction,
        )
    return ProgressChange(metric="", old_value=old_value, new_value=new_value, direction="changed")


def track_progress_changes(
    old: Mapping[str, Any], new: Mapping[str, Any]
) -> list[ProgressChange]:
    """Changes for every key of `new` whose value differs from `old`."""
    changes = []
    for key, new_value in new.items():
        old_value = old.get(key)
        if old_value != new_value:
            changes.append(calculate_change(old_value, new_value).model_copy(update={"metric": key}))
    return changes


def has_significant_changes(changes: list[ProgressChange], threshold_percent: float = 10.0) -> bool:
    return any(
        c.percentage is not None and abs(c.percentage) > threshold_percent for c in changes
    )


class ProgressGoalTracker:
    """Goal lifecycle, intervention recording and progress metrics."""

    def __init__(self, stalled_after_days: int = 7) -> None:
        self.stalled_after = timedelta(days=stalled_after_days)
        self.logger = logger.bind(component="progress_tracker")

    # Goals

    def create_smart_goal(self, data: Mapping[str, Any] | GoalInput, now: datetime) -> Goal:
        payload = self._parse(GoalInput, data, "goal")
        time_bound = payload.time_bound or now + DEFAULT_GOAL_WINDOW
        goal = Goal(
            description=payload.description,
            specific=payload.specific or payload.description,
            measurable=payload.measurable or f"Reach {payload.target_value:g} {payload.unit}",
            achievable=payload.achievable or "Agreed with patient and care team",
            relevant=payload.relevant or payload.category,
            time_bound=time_bound,
            category=payload.category,
            priority=payload.priority,
            target_value=payload.target_value,
            current_value=payload.current_value,
            unit=payload.unit,
            milestones=[
                Milestone(description=m.description, threshold=m.threshold)
                for m in sorted(payload.milestones, key=lambda m: m.threshold)
            ],
            created_at=now,
        )
        self.update_progress(goal, payload.current_value, now)
        return goal

    def update_progress(
        self,
        goal: Goal,
        current_value: float,
        now: datetime,
        observed_at: datetime | None = None,
        observe: bool = True,
    ) -> GoalUpdate:
        """
        Recompute progress from `current_value`, then milestones, then status.

        With `observe` the new value is appended to the goal's progress history.
        """
        previous_progress = goal.progress
        previous_status = goal.status

        goal.current_value = current_value
        goal.progress = clamp_progress(current_value, goal.target_value)
        if observe:
            goal.progress_history.append(
                ProgressObservation(
                    timestamp=observed_at or now, value=current_value, progress=goal.progress
                )
            )

        reached = self.check_milestones(goal, now)
        self.evaluate_status(goal, now)

        if goal.status != previous_status:
            self.logger.info(
                "goal_status_changed",
                goal_id=goal.id,
                from_status=previous_status.value,
                to_status=goal.status.value,
            )

        return GoalUpdate(
            goal_id=goal.id,
            previous_progress=previous_progress,
            progress=goal.progress,
            previous_status=previous_status,
            status=goal.status,
            reached_milestones=reached,
        )

    def check_milestones(self, goal: Goal, now: datetime) -> list[Milestone]:
        """Reach every unreached milestone whose threshold the progress now meets."""
        reached = []
        for milestone in goal.milestones:
            if not milestone.reached and goal.progress >= milestone.threshold:
                milestone.reached = True
                milestone.reached_at = now
                reached.append(milestone.model_copy())
        return reached

    def evaluate_status(self, goal: Goal, now: datetime) -> GoalStatus:
        if goal.status != GoalStatus.COMPLETED and goal.progress >= 100.0:
            goal.status = GoalStatus.COMPLETED
            goal.completed_at = now
        elif goal.status == GoalStatus.ACTIVE and now > goal.time_bound:
            goal.status = GoalStatus.OVERDUE
        return goal.status

    def reset_goal_status(self, goal: Goal, status: GoalStatus | str) -> GoalStatus:
        """Explicit clinician override. Milestones keep their reached state."""
        try:
            new_status = GoalStatus(status)
        except ValueError as e:
            raise ValidationError(
                f"Unknown goal status '{status}'", field="status", validation_type="enum"
            ) from e
        goal.status = new_status
        if new_status != GoalStatus.COMPLETED:
            goal.completed_at = None
        return new_status

    # Interventions

    def record_intervention(
        self,
        record: ProgressRecord,
        data: Mapping[str, Any] | InterventionInput,
        actor: str,
        now: datetime,
    ) -> InterventionOutcome:
        """
        Append an intervention and recompute every linked goal.

        Measurements in `goal_updates` are applied at the intervention
        timestamp. Effectiveness compares each linked goal's progress just
        before the intervention with its latest progress afterwards.
        """
        payload = self._parse(InterventionInput, data, "intervention")
        recorded_at = payload.recorded_at or now

        linked_ids = list(dict.fromkeys([*payload.goal_ids, *payload.goal_updates]))
        linked = [(gid, record.goal(gid)) for gid in linked_ids]
        unknown = [gid for gid, goal in linked if goal is None]
        known_goals = [goal for _, goal in linked if goal is not None]
        known = [goal.id for goal in known_goals]
        if unknown:
            self.logger.warning("intervention_unknown_goals", record_id=record.id, goal_ids=unknown)

        intervention = Intervention(
            id=generate_intervention_id(recorded_at),
            type=payload.type,
            description=payload.description,
            goal_ids=known,
            recorded_at=recorded_at,
            recorded_by=actor,
        )

        updates = []
        for goal in known_goals:
            goal.intervention_ids.append(intervention.id)
            if goal.id in payload.goal_updates:
                update = self.update_progress(
                    goal, payload.goal_updates[goal.id], now, observed_at=recorded_at
                )
            else:
                update = self.update_progress(goal, goal.current_value, now, observe=False)
            updates.append(update)

        if payload.effectiveness is not None:
            intervention.effectiveness = payload.effectiveness
            intervention.effectiveness_source = "reported"
        else:
            intervention.effectiveness = self.estimate_effectiveness(record, intervention)
        intervention.effectiveness_impact = impact_for(intervention.effectiveness)

        record.interventions.append(intervention)
        record.metrics = self.calculate_metrics(record, now)

        self.logger.info(
            "intervention_recorded",
            record_id=record.id,
            intervention_id=intervention.id,
            linked_goals=len(known),
            effectiveness=intervention.effectiveness,
        )
        return InterventionOutcome(
            intervention=intervention, goal_updates=updates, unknown_goal_ids=unknown
        )

    def estimate_effectiveness(self, record: ProgressRecord, intervention: Intervention) -> float | None:
        """
        Share of the remaining progress gap closed after the intervention, 0-100.

        For each linked goal the baseline is the last observation strictly
        before the intervention and the outcome is the latest observation at or
        after it. Goals without both are skipped; None when none qualify.
        """
        scores = []
        for goal_id in intervention.goal_ids:
            goal = record.goal(goal_id)
            if goal is None:
                continue
            before = [o for o in goal.progress_history if o.timestamp < intervention.recorded_at]
            after = [o for o in goal.progress_history if o.timestamp >= intervention.recorded_at]
            if not before or not after:
                continue
            baseline = before[-1].progress
            outcome = after[-1].progress
            remaining = 100.0 - baseline
            if remaining <= 0:
                scores.append(100.0)
                continue
            scores.append(min(max((outcome - baseline) / remaining * 100.0, 0.0), 100.0))

        if not scores:
            return None
        return round(sum(scores) / len(scores), 2)

    def reevaluate_interventions(self, record: ProgressRecord, goal_id: str) -> list[Intervention]:
        """Refresh estimated effectiveness for interventions linked to `goal_id`."""
        refreshed = []
        for intervention in record.interventions:
            if goal_id not in intervention.goal_ids:
                continue
            if intervention.effectiveness_source == "reported":
                continue
            score = self.estimate_effectiveness(record, intervention)
            if score != intervention.effectiveness:
                intervention.effectiveness = score
                intervention.effectiveness_impact = impact_for(score)
                refreshed.append(intervention)
        return refreshed

    # Metrics and analytics

    def calculate_metrics(self, record: ProgressRecord, now: datetime) -> ProgressMetrics:
        goals = record.goals
        metrics = ProgressMetrics(intervention_count=len(record.interventions), calculated_at=now)
        if not goals:
            return metrics

        metrics.active_goals = sum(g.status == GoalStatus.ACTIVE for g in goals)
        metrics.completed_goals = sum(g.status == GoalStatus.COMPLETED for g in goals)
        metrics.overdue_goals = sum(g.status == GoalStatus.OVERDUE for g in goals)
        metrics.goal_completion_rate = round(metrics.completed_goals / len(goals) * 100, 2)
        metrics.average_goal_progress = round(sum(g.progress for g in goals) / len(goals), 2)
        metrics.overall_progress = metrics.average_goal_progress
        return metrics

    def refresh_statuses(self, record: ProgressRecord, now: datetime) -> list[str]:
        """Apply time-based transitions to every goal. Returns ids whose status changed."""
        changed = []
        for goal in record.goals:
            before = goal.status
            if self.evaluate_status(goal, now) != before:
                changed.append(goal.id)
        return changed

    def is_goal_on_track(self, goal: Goal, now: datetime) -> bool:
        """On track when progress is at least 80% of the linear expectation."""
        if goal.status == GoalStatus.COMPLETED:
            return True
        if goal.status == GoalStatus.OVERDUE:
            return False
        window = (goal.time_bound - goal.created_at).total_seconds()
        if window <= 0:
            window = DEFAULT_GOAL_WINDOW.total_seconds()
        elapsed = (now - goal.created_at).total_seconds()
        expected = min(max(elapsed / window * 100.0, 0.0), 100.0)
        return goal.progress >= expected * 0.8

    def goal_risk(self, goal: Goal, now: datetime) -> Literal["low", "medium", "high"]:
        if goal.status == GoalStatus.COMPLETED:
            return "low"
        if goal.status == GoalStatus.OVERDUE:
            return "high"
        return "low" if self.is_goal_on_track(goal, now) else "medium"

    def goal_analytics(self, record: ProgressRecord, now: datetime) -> list[GoalAnalytics]:
        results = []
        for goal in record.goals:
            remaining = goal.time_bound - now
            results.append(
                GoalAnalytics(
                    goal_id=goal.id,
                    description=goal.description,
                    progress=goal.progress,
                    status=goal.status,
                    days_remaining=-(-int(remaining.total_seconds()) // 86400),
                    intervention_count=len(goal.intervention_ids),
                    on_track=self.is_goal_on_track(goal, now),
                    risk_level=self.goal_risk(goal, now),
                )
            )
        return results

    def intervention_analytics(self, record: ProgressRecord, now: datetime) -> InterventionAnalytics:
        interventions = record.interventions
        scored = [i for i in interventions if i.effectiveness is not None]
        most_effective = max(scored, key=lambda i: i.effectiveness or 0.0, default=None)
        return InterventionAnalytics(
            total=len(interventions),
            average_effectiveness=(
                round(sum(i.effectiveness or 0.0 for i in scored) / len(scored), 2)
                if scored
                else None
            ),
            most_effective_id=most_effective.id if most_effective else None,
            by_type=dict(Counter(i.type for i in interventions)),
            recent=sum(now - i.recorded_at < timedelta(days=7) for i in interventions),
        )

    def is_progress_stalled(self, goal: Goal, now: datetime) -> bool:
        cutoff = now - self.stalled_after
        return not any(o.timestamp > cutoff for o in goal.progress_history)

    def progress_alerts(self, record: ProgressRecord, now: datetime) -> list[ProgressAlert]:
        alerts = []
        for goal in record.goals:
            if goal.status == GoalStatus.OVERDUE or (
                goal.status == GoalStatus.ACTIVE and now > goal.time_bound
            ):
                alerts.append(
                    ProgressAlert(
                        type="goal_overdue",
                        severity="high",
                        message=f'Goal "{goal.description}" is overdue',
                        goal_id=goal.id,
                    )
                )
            elif goal.status == GoalStatus.ACTIVE and self.is_progress_stalled(goal, now):
                alerts.append(
                    ProgressAlert(
                        type="progress_stalled",
                        severity="medium",
                        message=f'Progress on goal "{goal.description}" has stalled',
                        goal_id=goal.id,
                    )
                )
        return alerts

    @staticmethod
    def _parse(model: type[ModelT], data: Any, prefix: str) -> ModelT:
        return parse_payload(model, data, prefix)


def new_progress_record(patient_id: str, author_id: str, now: datetime | None = None) -> ProgressRecord:
    now = now or utc_now()
    return ProgressRecord(patient_id=patient_id, author_id=author_id, created_at=now, updated_at=now)
