"""
Service facade: the single entry point for clinical callers.

Every public operation runs the same pipeline:
1. Validate the payload and the acting user
2. Rate-limit by actor
3. Load and persist through breaker- and retry-guarded repository calls
4. Compute in the domain (scoring, tracking, trends, prediction)
5. Optionally enrich with AI insights (never retried, never fatal)
6. Persist, refresh the cache and publish events fire-and-forget
7. Return a ServiceResponse; errors never escape as exceptions

Assessments and progress records are only ever mutated here. Each mutation
appends a history entry and increments the entity version.
"""

import asyncio
import math
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field

from risk_engine.config import AppConfig, get_config
from risk_engine.domain.errors import (
    NON_RETRYABLE,
    EngineError,
    ErrorSeverity,
    NotFoundError,
    StaleVersionError,
    ValidationError,
    parse_payload,
)
from risk_engine.domain.models import (
    TOOL_ASSESSMENT_TYPES,
    Assessment,
    AssessmentInsights,
    AssessmentType,
    GoalStatus,
    HistoryEntry,
    Period,
    ProgressRecord,
    RecordStatus,
    RiskScore,
    ToolType,
    TrendDirection,
    TrendResult,
    category_values,
    utc_now,
)
from risk_engine.scales import ScaleDefinition, load_scales
from risk_engine.services.insights import ClinicalInsights, InsightGenerator, build_insight_generator
from risk_engine.services.ports import EventPublisher, Page, Repository
from risk_engine.services.prediction import AchievementPrediction, PredictiveModel
from risk_engine.services.progress import (
    GoalAnalytics,
    GoalInput,
    GoalUpdate,
    InterventionAnalytics,
    InterventionOutcome,
    ProgressAlert,
    ProgressGoalTracker,
    has_significant_changes,
    new_progress_record,
    track_progress_changes,
)
from risk_engine.services.resilience import ResilienceLayer, make_cache_key
from risk_engine.services.result import Result
from risk_engine.services.risk_aggregation import RiskAggregate, RiskAssessmentAggregator
from risk_engine.services.risk_calculators import PatientProfile, calculate_comprehensive_risk
from risk_engine.services.scoring import AssessmentScoringEngine, ScoreResult, parse_tool
from risk_engine.services.trends import (
    PeriodBucket,
    SeriesPoint,
    SignificantChange,
    TrendAnalyzer,
    TrendProjection,
    buckets_to_series,
    group_by_period,
    overall_direction,
    project,
    significant_changes,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

MAX_PAGE_SIZE = 100
EVENT_SOURCE = "clinical_risk_engine"


# Caller contract


class ErrorInfo(BaseModel):
    code: str
    message: str
    severity: ErrorSeverity
    field: str | None = None
    retry_after_seconds: int | None = None
    dependency: str | None = None

    @classmethod
    def from_error(cls, error: EngineError) -> "ErrorInfo":
        return cls(
            code=error.code,
            message=error.message,
            severity=error.severity,
            field=getattr(error, "field", None),
            retry_after_seconds=getattr(error, "retry_after_seconds", None),
            dependency=getattr(error, "dependency", None),
        )


class ServiceResponse(BaseModel):
    """Outcome of one facade operation: either `data` or `error` is set."""

    success: bool
    data: Any = None
    error: ErrorInfo | None = None
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def ok(cls, data: Any, warnings: list[str] | None = None) -> "ServiceResponse":
        return cls(success=True, data=data, warnings=warnings or [])

    @classmethod
    def fail(cls, error: EngineError) -> "ServiceResponse":
        return cls(success=False, error=ErrorInfo.from_error(error))


# Request payloads


class AssessmentInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    patient_id: str = Field(min_length=1)
    tool_type: str = Field(min_length=1)
    categories: dict[str, Any]
    assessment_type: AssessmentType | None = None
    notes: str = ""


class AssessmentUpdateInput(BaseModel):
    """Partial update: supplied categories are merged over the stored values."""

    model_config = ConfigDict(extra="ignore")

    categories: dict[str, Any] = Field(default_factory=dict)
    tool_type: str | None = None
    notes: str | None = None


class ProgressRecordInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    patient_id: str = Field(min_length=1)
    goals: list[GoalInput] = Field(default_factory=list)


class RiskRequest(BaseModel):
    """Risk picture from explicit scores, a patient profile and/or stored assessments."""

    model_config = ConfigDict(extra="ignore")

    patient_id: str | None = None
    scores: dict[str, RiskScore] = Field(default_factory=dict)
    profile: PatientProfile | None = None
    include_assessments: bool = False


# Operation results


class ScoreTrendReport(BaseModel):
    patient_id: str
    tool: ToolType
    period: Period
    trend: TrendResult
    buckets: list[PeriodBucket]
    significant_changes: list[SignificantChange] = Field(default_factory=list)
    projection: TrendProjection | None = None


class PatientRiskReport(BaseModel):
    patient_id: str | None
    aggregate: RiskAggregate
    sources: dict[str, str] = Field(default_factory=dict)
    insights: ClinicalInsights | None = None


class GoalProgressOutcome(BaseModel):
    record: ProgressRecord
    update: GoalUpdate
    significant_change: bool


class InterventionResult(BaseModel):
    record: ProgressRecord
    outcome: InterventionOutcome


class ProgressAnalyticsReport(BaseModel):
    record_id: str
    patient_id: str
    overview: dict[str, Any]
    goals: list[GoalAnalytics]
    interventions: InterventionAnalytics
    alerts: list[ProgressAlert]
    goal_trends: dict[str, TrendResult]
    overall_trend: TrendDirection
    insights: ClinicalInsights | None = None


@dataclass
class RequestMetrics:
    """Counters exposed by the health check."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    by_operation: Counter[str] = field(default_factory=Counter)
    errors_by_code: Counter[str] = field(default_factory=Counter)
    total_duration_seconds: float = 0.0

    def record(self, operation: str, duration: float, error: EngineError | None) -> None:
        self.total += 1
        self.by_operation[operation] += 1
        self.total_duration_seconds += duration
        if error is None:
            self.succeeded += 1
        else:
            self.failed += 1
            self.errors_by_code[error.code] += 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "average_duration_seconds": (
                round(self.total_duration_seconds / self.total, 6) if self.total else 0.0
            ),
            "by_operation": dict(self.by_operation),
            "errors_by_code": dict(self.errors_by_code),
        }


def _copy_page(page: Page[Assessment]) -> Page[Assessment]:
    return Page(
        items=[a.model_copy(deep=True) for a in page.items],
        total=page.total,
        page=page.page,
        limit=page.limit,
    )


def _diff(old: Mapping[str, Any], new: Mapping[str, Any]) -> dict[str, Any]:
    return {
        key: {"from": old.get(key), "to": new.get(key)}
        for key in dict.fromkeys([*old, *new])
        if old.get(key) != new.get(key)
    }


class ClinicalEngineService:
    """
    Orchestrates scoring, progress tracking and analytics behind one API.

    Collaborators are injected: repositories for assessments and progress
    records, an optional insight generator and an optional event publisher.
    `clock` supplies wall-clock time for domain timestamps; the resilience
    layer keeps its own monotonic clock.
    """

    def __init__(
        self,
        assessments: Repository[Assessment],
        progress_records: Repository[ProgressRecord],
        config: AppConfig | None = None,
        insight_generator: InsightGenerator | None = None,
        event_publisher: EventPublisher | None = None,
        clock: Callable[[], datetime] = utc_now,
        resilience: ResilienceLayer | None = None,
        scales: Mapping[ToolType, ScaleDefinition] | None = None,
    ) -> None:
        self.config = config or get_config()
        self.assessments = assessments
        self.progress_records = progress_records
        self.insights = insight_generator
        self.events = event_publisher
        self._clock = clock
        self.logger = logger.bind(component="clinical_engine")

        self.resilience = resilience or ResilienceLayer(self.config.resilience)
        if scales is None:
            scales = load_scales(self.config.scoring.thresholds_file)
        self.scoring = AssessmentScoringEngine(scales)

        analytics = self.config.analytics
        self.aggregator = RiskAssessmentAggregator(analytics.alert_value_threshold)
        self.tracker = ProgressGoalTracker(analytics.stalled_after_days)
        self.analyzer = TrendAnalyzer(analytics.trend_epsilon, analytics.significance_threshold)
        self.predictor = PredictiveModel(
            self.analyzer, analytics.improving_damping, analytics.declining_damping
        )

        self.metrics = RequestMetrics()
        self._pending_events: set[asyncio.Task[None]] = set()

        self.logger.info(
            "clinical_engine_initialized",
            insights_enabled=self.insights is not None,
            events_enabled=self.events is not None,
            tools=[t.value for t in self.scoring.scales],
        )

    # Pipeline

    async def _attempt(
        self,
        actor: str,
        work: Callable[..., Awaitable[T]],
        validate: Callable[[], Any] | None = None,
    ) -> Result[T, EngineError]:
        """
        Validate, rate-limit, then run `work`.

        `validate` checks the request payload before the caller's quota is
        touched and its return value is passed to `work`. Checks that need
        stored state (versions, archived status, goal ids) run inside `work`.
        """
        try:
            if not isinstance(actor, str) or not actor.strip():
                raise ValidationError("actor is required", field="actor", validation_type="required")
            args = () if validate is None else (validate(),)
            self.resilience.rate_limiter.check(actor)
            return Result.ok(await work(*args))
        except EngineError as e:
            return Result.err(e)
        except Exception as e:
            self.logger.exception("unexpected_error", error=str(e), error_type=type(e).__name__)
            return Result.err(EngineError("An internal error occurred", code="INTERNAL_ERROR"))

    async def _execute(
        self,
        operation: str,
        actor: str,
        work: Callable[..., Awaitable[T]],
        warnings: Callable[[T], list[str]] | None = None,
        validate: Callable[[], Any] | None = None,
    ) -> ServiceResponse:
        started = time.perf_counter()
        result = await self._attempt(actor, work, validate)
        duration = time.perf_counter() - started

        if result.is_err():
            error = result.unwrap_err()
            self.metrics.record(operation, duration, error)
            log = self.logger.warning if isinstance(error, NON_RETRYABLE) else self.logger.error
            log(
                "operation_failed",
                operation=operation,
                actor=actor,
                code=error.code,
                severity=error.severity.value,
                error=error.message,
            )
            return ServiceResponse.fail(error)

        value = result.unwrap()
        self.metrics.record(operation, duration, None)
        self.logger.debug("operation_succeeded", operation=operation, duration_seconds=round(duration, 4))
        return ServiceResponse.ok(value, warnings(value) if warnings else None)

    async def _repo(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.resilience.guarded("repository", operation)

    def _publish(self, event_type: str, payload: Mapping[str, Any]) -> None:
        if self.events is None:
            return
        task = asyncio.create_task(self._deliver(event_type, dict(payload)))
        self._pending_events.add(task)
        task.add_done_callback(self._pending_events.discard)

    async def _deliver(self, event_type: str, payload: dict[str, Any]) -> None:
        assert self.events is not None
        try:
            await self.events.publish(event_type, payload, {"source": EVENT_SOURCE})
        except Exception as e:
            self.logger.warning("event_publish_failed", event_type=event_type, error=str(e))

    async def drain_events(self) -> None:
        """Wait for in-flight event deliveries (shutdown and tests)."""
        if self._pending_events:
            await asyncio.gather(*list(self._pending_events))

    async def _generate_insights(self, domain_data: Mapping[str, Any]) -> ClinicalInsights | None:
        if self.insights is None:
            return None
        generator = self.insights
        try:
            return await self.resilience.guarded_once(
                "ai", lambda: generator.generate_insights(domain_data)
            )
        except Exception as e:
            self.logger.warning("insights_unavailable", error=str(e))
            return None

    @staticmethod
    def _check_version(entity_id: str, actual: int, expected: int | None) -> None:
        if expected is not None and expected != actual:
            raise StaleVersionError(entity_id, expected, actual)

    @staticmethod
    def _check_active(kind: str, entity_id: str, status: RecordStatus) -> None:
        if status == RecordStatus.ARCHIVED:
            raise ValidationError(
                f"{kind} {entity_id} is archived", field="status", validation_type="state"
            )

    def _touch(
        self,
        entity: Assessment | ProgressRecord,
        actor: str,
        action: str,
        diff: dict[str, Any],
        now: datetime,
    ) -> None:
        entity.history.append(HistoryEntry(timestamp=now, actor=actor, action=action, diff=diff))
        entity.version += 1
        entity.updated_at = now

    # Assessments

    async def _load_assessment(self, assessment_id: str) -> Assessment:
        assessment = await self._repo(lambda: self.assessments.find_by_id(assessment_id))
        if assessment is None:
            raise NotFoundError("assessment", assessment_id)
        return assessment

    async def _save_assessment(self, assessment: Assessment) -> Assessment:
        saved = await self._repo(lambda: self.assessments.save(assessment))
        self.resilience.cache.set(f"assessment:{saved.id}", saved.model_copy(deep=True))
        self.resilience.cache.invalidate_prefix(f"patient:{saved.patient_id}")
        return saved

    async def _assessment_insights(
        self, assessment: Assessment, scored: ScoreResult
    ) -> AssessmentInsights | None:
        insights = await self._generate_insights(
            {
                "assessment_type": assessment.assessment_type.value,
                "tool": scored.tool.value,
                "total_score": scored.total,
                "score_range": [scored.min_score, scored.max_score],
                "risk_level": scored.level,
                "categories": category_values(scored.categories),
                "missing_categories": scored.missing,
            }
        )
        if insights is None:
            return None
        return AssessmentInsights(
            recommendations=insights.recommendations,
            alerts=insights.alerts,
            narrative=insights.narrative,
            generated_at=self._clock(),
        )

    @staticmethod
    def _assessment_event(assessment: Assessment) -> dict[str, Any]:
        return {
            "assessment_id": assessment.id,
            "patient_id": assessment.patient_id,
            "tool_type": assessment.tool_type.value,
            "total_score": assessment.total_score,
            "risk_level": assessment.risk_level,
            "normalized_risk": assessment.normalized_risk.value,
            "version": assessment.version,
        }

    async def create_assessment(self, payload: Mapping[str, Any], actor: str) -> ServiceResponse:
        """Score and persist a new assessment. The total is always recomputed."""

        def validate() -> tuple[AssessmentInput, ScoreResult]:
            data = parse_payload(AssessmentInput, payload, "assessment")
            tool = parse_tool(data.tool_type)
            expected_type = TOOL_ASSESSMENT_TYPES[tool]
            if data.assessment_type is not None and data.assessment_type != expected_type:
                raise ValidationError(
                    f"{tool.value} scores {expected_type.value}, not {data.assessment_type.value}",
                    field="assessment_type",
                    validation_type="mismatch",
                )
            return data, self.scoring.score(tool, data.categories)

        async def work(checked: tuple[AssessmentInput, ScoreResult]) -> Assessment:
            data, scored = checked
            tool = scored.tool
            expected_type = TOOL_ASSESSMENT_TYPES[tool]
            now = self._clock()
            assessment = Assessment(
                patient_id=data.patient_id,
                author_id=actor,
                assessment_type=expected_type,
                tool_type=tool,
                categories=scored.categories,
                missing_categories=scored.missing,
                total_score=scored.total,
                risk_level=scored.level,
                normalized_risk=scored.risk,
                warnings=scored.warnings,
                notes=data.notes,
                history=[
                    HistoryEntry(
                        timestamp=now,
                        actor=actor,
                        action="created",
                        diff={"total_score": scored.total, "risk_level": scored.level},
                    )
                ],
                created_at=now,
                updated_at=now,
            )
            assessment.insights = await self._assessment_insights(assessment, scored)

            saved = await self._save_assessment(assessment)
            self.logger.info(
                "assessment_created",
                assessment_id=saved.id,
                tool=tool.value,
                total_score=saved.total_score,
                risk_level=saved.risk_level,
            )
            self._publish("assessment_created", self._assessment_event(saved))
            return saved

        return await self._execute(
            "create_assessment", actor, work, lambda a: list(a.warnings), validate=validate
        )

    async def update_assessment(
        self,
        assessment_id: str,
        payload: Mapping[str, Any],
        actor: str,
        expected_version: int | None = None,
    ) -> ServiceResponse:
        """Merge category changes, rescore and record the diff in history."""

        def validate() -> AssessmentUpdateInput:
            return parse_payload(AssessmentUpdateInput, payload, "assessment")

        async def work(data: AssessmentUpdateInput) -> Assessment:
            assessment = await self._load_assessment(assessment_id)
            self._check_active("Assessment", assessment_id, assessment.status)
            self._check_version(assessment_id, assessment.version, expected_version)

            if data.tool_type is not None and parse_tool(data.tool_type) != assessment.tool_type:
                raise ValidationError(
                    "tool_type cannot change on an existing assessment",
                    field="tool_type",
                    validation_type="immutable",
                )

            old_values = assessment.answered_categories()
            merged = {**old_values, **{k: v for k, v in data.categories.items() if k != "tool"}}
            scored = self.scoring.score(assessment.tool_type, merged)
            new_values = {
                k: v for k, v in category_values(scored.categories).items() if k not in scored.missing
            }

            diff = _diff(old_values, new_values)
            diff.update(
                _diff(
                    {"total_score": assessment.total_score, "risk_level": assessment.risk_level},
                    {"total_score": scored.total, "risk_level": scored.level},
                )
            )
            if data.notes is not None and data.notes != assessment.notes:
                diff["notes"] = {"from": assessment.notes, "to": data.notes}
                assessment.notes = data.notes

            now = self._clock()
            assessment.categories = scored.categories
            assessment.missing_categories = scored.missing
            assessment.total_score = scored.total
            assessment.risk_level = scored.level
            assessment.normalized_risk = scored.risk
            assessment.warnings = scored.warnings
            self._touch(assessment, actor, "updated", diff, now)
            if data.categories:
                assessment.insights = await self._assessment_insights(assessment, scored)

            saved = await self._save_assessment(assessment)
            self.logger.info(
                "assessment_updated",
                assessment_id=saved.id,
                version=saved.version,
                changed=sorted(diff),
            )
            self._publish("assessment_updated", {**self._assessment_event(saved), "changes": diff})
            return saved

        return await self._execute(
            "update_assessment", actor, work, lambda a: list(a.warnings), validate=validate
        )

    async def archive_assessment(self, assessment_id: str, actor: str) -> ServiceResponse:
        """Archive instead of deleting, so the audit history survives."""

        async def work() -> Assessment:
            assessment = await self._load_assessment(assessment_id)
            if assessment.status == RecordStatus.ARCHIVED:
                return assessment

            previous = assessment.status
            self._touch(
                assessment,
                actor,
                "archived",
                {"status": {"from": previous.value, "to": RecordStatus.ARCHIVED.value}},
                self._clock(),
            )
            assessment.status = RecordStatus.ARCHIVED
            saved = await self._save_assessment(assessment)
            self.logger.info("assessment_archived", assessment_id=saved.id)
            self._publish("assessment_archived", self._assessment_event(saved))
            return saved

        return await self._execute("archive_assessment", actor, work)

    async def get_assessment(self, assessment_id: str, actor: str) -> ServiceResponse:
        async def work() -> Assessment:
            key = f"assessment:{assessment_id}"
            cached = self.resilience.cache.get(key)
            if cached is not None:
                return cached.model_copy(deep=True)
            assessment = await self._load_assessment(assessment_id)
            self.resilience.cache.set(key, assessment.model_copy(deep=True))
            return assessment

        return await self._execute("get_assessment", actor, work)

    async def get_patient_assessments(
        self,
        patient_id: str,
        actor: str,
        assessment_type: AssessmentType | str | None = None,
        status: RecordStatus | str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> ServiceResponse:
        """Newest first, 1-based pages of at most 100 items."""

        async def work() -> Page[Assessment]:
            if not patient_id:
                raise ValidationError("patient_id is required", field="patient_id", validation_type="required")
            if page < 1:
                raise ValidationError("page must be at least 1", field="page", validation_type="range")
            if not 1 <= limit <= MAX_PAGE_SIZE:
                raise ValidationError(
                    f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit", validation_type="range"
                )

            query: dict[str, Any] = {"patient_id": patient_id}
            try:
                if assessment_type is not None:
                    query["assessment_type"] = AssessmentType(assessment_type)
                if status is not None:
                    query["status"] = RecordStatus(status)
            except ValueError as e:
                raise ValidationError(str(e), field="query", validation_type="enum") from e

            key = make_cache_key(
                f"patient:{patient_id}",
                {**{k: str(getattr(v, "value", v)) for k, v in query.items()}, "page": page, "limit": limit},
            )
            cached = self.resilience.cache.get(key)
            if cached is not None:
                return _copy_page(cached)

            result = await self._repo(
                lambda: self.assessments.find(query, sort="-created_at", page=page, limit=limit)
            )
            self.resilience.cache.set(key, _copy_page(result))
            return result

        return await self._execute("get_patient_assessments", actor, work)

    async def _all_assessments(self, query: Mapping[str, Any]) -> list[Assessment]:
        items: list[Assessment] = []
        page = 1
        while True:
            current = page
            batch = await self._repo(
                lambda: self.assessments.find(query, sort="created_at", page=current, limit=MAX_PAGE_SIZE)
            )
            items.extend(batch.items)
            if current >= batch.pages:
                return items
            page += 1

    async def assessment_score_trend(
        self,
        patient_id: str,
        tool: ToolType | str,
        actor: str,
        period: Period | str = Period.WEEK,
    ) -> ServiceResponse:
        """
        Trend of a patient's totals for one tool, averaged per period.

        `improving` always means lower risk: falling Morse totals and rising
        Braden or MMSE totals both improve.
        """

        async def work() -> ScoreTrendReport:
            if not patient_id:
                raise ValidationError(
                    "patient_id is required", field="patient_id", validation_type="required"
                )
            parsed_tool = parse_tool(tool)
            try:
                parsed_period = Period(period)
            except ValueError as e:
                raise ValidationError(
                    f"Unknown period '{period}'", field="period", validation_type="enum"
                ) from e

            history = await self._all_assessments(
                {"patient_id": patient_id, "tool_type": parsed_tool, "status": RecordStatus.ACTIVE}
            )
            scale = self.scoring.scale(parsed_tool)
            higher_is_better = scale.risk_increases_with == "lower"

            trend, buckets = self.analyzer.analyze_observations(
                [(a.created_at, float(a.total_score)) for a in history],
                parsed_period,
                metric=f"{parsed_tool.value}_total",
                higher_is_better=higher_is_better,
            )
            series = buckets_to_series(buckets, parsed_period)
            return ScoreTrendReport(
                patient_id=patient_id,
                tool=parsed_tool,
                period=parsed_period,
                trend=trend,
                buckets=buckets,
                significant_changes=significant_changes(
                    [b.mean for b in buckets], self.config.analytics.significant_change_percent
                ),
                projection=project(trend, series[-1][0]) if series else None,
            )

        return await self._execute("assessment_score_trend", actor, work)

    # Risk aggregation

    async def _latest_assessment_scores(self, patient_id: str) -> dict[str, RiskScore]:
        latest: dict[ToolType, Assessment] = {}
        for assessment in await self._all_assessments(
            {"patient_id": patient_id, "status": RecordStatus.ACTIVE}
        ):
            current = latest.get(assessment.tool_type)
            if current is None or assessment.created_at >= current.created_at:
                latest[assessment.tool_type] = assessment

        scores = {}
        for tool, assessment in latest.items():
            scored = self.scoring.score(tool, assessment.answered_categories())
            score = self.scoring.risk_score(scored)
            scores[score.risk_type] = score
        return scores

    async def assess_patient_risk(self, payload: Mapping[str, Any], actor: str) -> ServiceResponse:
        """
        Aggregate risk from explicit scores, a profile and/or stored assessments.

        Precedence per risk type: explicit scores, then assessments, then the
        profile calculators.
        """

        def validate() -> RiskRequest:
            request = parse_payload(RiskRequest, payload, "risk_request")
            if not request.scores and request.profile is None and not request.include_assessments:
                raise ValidationError(
                    "Provide scores, a profile or include_assessments",
                    field="scores",
                    validation_type="required",
                )
            patient_id = request.patient_id or (request.profile.patient_id if request.profile else None)
            if request.include_assessments and not patient_id:
                raise ValidationError(
                    "patient_id is required to include assessments",
                    field="patient_id",
                    validation_type="required",
                )
            return request

        async def work(request: RiskRequest) -> PatientRiskReport:
            patient_id = request.patient_id or (request.profile.patient_id if request.profile else None)
            scores: dict[str, RiskScore] = {}
            sources: dict[str, str] = {}
            if request.profile is not None:
                for risk_type, score in calculate_comprehensive_risk(request.profile).items():
                    scores[risk_type] = score
                    sources[risk_type] = "profile"
            if request.include_assessments and patient_id:
                for risk_type, score in (await self._latest_assessment_scores(patient_id)).items():
                    scores[risk_type] = score
                    sources[risk_type] = "assessment"
            for risk_type, score in request.scores.items():
                scores[risk_type] = score
                sources[risk_type] = "provided"

            aggregate = self.aggregator.aggregate(scores)
            insights = None
            if aggregate.alerts or aggregate.overall_level.severity > 0:
                insights = await self._generate_insights(
                    {
                        "overall_level": aggregate.overall_level.value,
                        "scores": {k: v.model_dump(mode="json") for k, v in scores.items()},
                        "alerts": [a.message for a in aggregate.alerts],
                    }
                )

            if aggregate.alerts:
                self._publish(
                    "risk_alerts_raised",
                    {
                        "patient_id": patient_id,
                        "overall_level": aggregate.overall_level.value,
                        "alerts": [a.model_dump(mode="json") for a in aggregate.alerts],
                    },
                )
            return PatientRiskReport(
                patient_id=patient_id, aggregate=aggregate, sources=sources, insights=insights
            )

        return await self._execute("assess_patient_risk", actor, work, validate=validate)

    # Progress records

    async def _load_record(self, record_id: str) -> ProgressRecord:
        record = await self._repo(lambda: self.progress_records.find_by_id(record_id))
        if record is None:
            raise NotFoundError("progress_record", record_id)
        return record

    async def _load_active_record(self, record_id: str, expected_version: int | None) -> ProgressRecord:
        record = await self._load_record(record_id)
        self._check_active("Progress record", record_id, record.status)
        self._check_version(record_id, record.version, expected_version)
        return record

    async def _save_record(self, record: ProgressRecord) -> ProgressRecord:
        saved = await self._repo(lambda: self.progress_records.save(record))
        self.resilience.cache.set(f"progress:{saved.id}", saved.model_copy(deep=True))
        return saved

    def _publish_goal_updates(self, record: ProgressRecord, updates: list[GoalUpdate]) -> None:
        for update in updates:
            for milestone in update.reached_milestones:
                self._publish(
                    "milestone_reached",
                    {
                        "record_id": record.id,
                        "patient_id": record.patient_id,
                        "goal_id": update.goal_id,
                        "milestone": milestone.description,
                        "threshold": milestone.threshold,
                    },
                )
            if update.completed:
                self._publish(
                    "goal_completed",
                    {"record_id": record.id, "patient_id": record.patient_id, "goal_id": update.goal_id},
                )

    async def create_progress_record(self, payload: Mapping[str, Any], actor: str) -> ServiceResponse:
        def validate() -> ProgressRecordInput:
            return parse_payload(ProgressRecordInput, payload, "progress_record")

        async def work(data: ProgressRecordInput) -> ProgressRecord:
            now = self._clock()
            record = new_progress_record(data.patient_id, actor, now)
            record.goals = [self.tracker.create_smart_goal(goal, now) for goal in data.goals]
            record.metrics = self.tracker.calculate_metrics(record, now)
            record.history.append(
                HistoryEntry(timestamp=now, actor=actor, action="created", diff={"goals": len(record.goals)})
            )

            saved = await self._save_record(record)
            self.logger.info("progress_record_created", record_id=saved.id, goals=len(saved.goals))
            self._publish(
                "progress_record_created",
                {"record_id": saved.id, "patient_id": saved.patient_id, "goals": len(saved.goals)},
            )
            return saved

        return await self._execute("create_progress_record", actor, work, validate=validate)

    async def get_progress_record(self, record_id: str, actor: str) -> ServiceResponse:
        async def work() -> ProgressRecord:
            key = f"progress:{record_id}"
            cached = self.resilience.cache.get(key)
            if cached is not None:
                return cached.model_copy(deep=True)
            record = await self._load_record(record_id)
            self.resilience.cache.set(key, record.model_copy(deep=True))
            return record

        return await self._execute("get_progress_record", actor, work)

    async def add_goal(
        self,
        record_id: str,
        goal_payload: Mapping[str, Any],
        actor: str,
        expected_version: int | None = None,
    ) -> ServiceResponse:
        async def work() -> ProgressRecord:
            record = await self._load_active_record(record_id, expected_version)
            now = self._clock()
            goal = self.tracker.create_smart_goal(goal_payload, now)
            record.goals.append(goal)
            record.metrics = self.tracker.calculate_metrics(record, now)
            self._touch(
                record, actor, "goal_added", {"goal_id": goal.id, "description": goal.description}, now
            )

            saved = await self._save_record(record)
            self.logger.info("goal_added", record_id=saved.id, goal_id=goal.id)
            self._publish(
                "goal_added", {"record_id": saved.id, "patient_id": saved.patient_id, "goal_id": goal.id}
            )
            return saved

        return await self._execute("add_goal", actor, work)

    async def update_goal_progress(
        self,
        record_id: str,
        goal_id: str,
        current_value: float,
        actor: str,
        expected_version: int | None = None,
    ) -> ServiceResponse:
        """Apply a new measurement; reached milestones are reported on the outcome."""

        def validate() -> float:
            if (
                isinstance(current_value, bool)
                or not isinstance(current_value, (int, float))
                or not math.isfinite(current_value)
            ):
                raise ValidationError(
                    "current_value must be a finite number", field="current_value", validation_type="type"
                )
            return float(current_value)

        async def work(value: float) -> GoalProgressOutcome:
            record = await self._load_active_record(record_id, expected_version)
            goal = record.goal(goal_id)
            if goal is None:
                raise NotFoundError("goal", goal_id)

            now = self._clock()
            before = {"current_value": goal.current_value, "progress": goal.progress}
            update = self.tracker.update_progress(goal, value, now)
            self.tracker.reevaluate_interventions(record, goal_id)
            record.metrics = self.tracker.calculate_metrics(record, now)

            changes = track_progress_changes(
                before, {"current_value": goal.current_value, "progress": goal.progress}
            )
            diff = {c.metric: {"from": c.old_value, "to": c.new_value} for c in changes}
            if update.status != update.previous_status:
                diff["status"] = {"from": update.previous_status.value, "to": update.status.value}
            self._touch(record, actor, "goal_progress_updated", {"goal_id": goal_id, **diff}, now)

            saved = await self._save_record(record)
            self._publish(
                "goal_progress_updated",
                {
                    "record_id": saved.id,
                    "patient_id": saved.patient_id,
                    "goal_id": goal_id,
                    "progress": update.progress,
                    "status": update.status.value,
                },
            )
            self._publish_goal_updates(saved, [update])
            return GoalProgressOutcome(
                record=saved,
                update=update,
                significant_change=has_significant_changes(
                    changes, self.config.analytics.significant_change_percent
                ),
            )

        return await self._execute("update_goal_progress", actor, work, validate=validate)

    async def reset_goal_status(
        self, record_id: str, goal_id: str, status: GoalStatus | str, actor: str
    ) -> ServiceResponse:
        """Clinician override of a goal's status; the only way a status moves backwards."""

        async def work() -> ProgressRecord:
            record = await self._load_active_record(record_id, None)
            goal = record.goal(goal_id)
            if goal is None:
                raise NotFoundError("goal", goal_id)

            now = self._clock()
            previous = goal.status
            new_status = self.tracker.reset_goal_status(goal, status)
            if new_status == GoalStatus.COMPLETED and goal.completed_at is None:
                goal.completed_at = now
            record.metrics = self.tracker.calculate_metrics(record, now)
            self._touch(
                record,
                actor,
                "goal_status_reset",
                {"goal_id": goal_id, "status": {"from": previous.value, "to": new_status.value}},
                now,
            )

            saved = await self._save_record(record)
            self.logger.info(
                "goal_status_reset", record_id=saved.id, goal_id=goal_id, status=new_status.value
            )
            self._publish(
                "goal_status_reset",
                {"record_id": saved.id, "goal_id": goal_id, "status": new_status.value},
            )
            return saved

        return await self._execute("reset_goal_status", actor, work)

    async def record_intervention(
        self, record_id: str, payload: Mapping[str, Any], actor: str
    ) -> ServiceResponse:
        async def work() -> InterventionResult:
            record = await self._load_active_record(record_id, None)
            now = self._clock()
            outcome = self.tracker.record_intervention(record, payload, actor, now)
            intervention = outcome.intervention
            self._touch(
                record,
                actor,
                "intervention_recorded",
                {"intervention_id": intervention.id, "goal_ids": intervention.goal_ids},
                now,
            )

            saved = await self._save_record(record)
            self._publish(
                "intervention_recorded",
                {
                    "record_id": saved.id,
                    "patient_id": saved.patient_id,
                    "intervention_id": intervention.id,
                    "type": intervention.type,
                    "effectiveness": intervention.effectiveness,
                    "impact": intervention.effectiveness_impact.value,
                },
            )
            self._publish_goal_updates(saved, outcome.goal_updates)
            return InterventionResult(record=saved, outcome=outcome)

        return await self._execute(
            "record_intervention",
            actor,
            work,
            lambda r: [f"Unknown goal '{gid}' ignored" for gid in r.outcome.unknown_goal_ids],
        )

    async def archive_progress_record(self, record_id: str, actor: str) -> ServiceResponse:
        async def work() -> ProgressRecord:
            record = await self._load_record(record_id)
            if record.status == RecordStatus.ARCHIVED:
                return record

            self._touch(
                record,
                actor,
                "archived",
                {"status": {"from": record.status.value, "to": RecordStatus.ARCHIVED.value}},
                self._clock(),
            )
            record.status = RecordStatus.ARCHIVED
            saved = await self._save_record(record)
            self.logger.info("progress_record_archived", record_id=saved.id)
            self._publish("progress_record_archived", {"record_id": saved.id, "patient_id": saved.patient_id})
            return saved

        return await self._execute("archive_progress_record", actor, work)

    # Analytics

    @staticmethod
    def _goal_series(observations: list[Any]) -> list[SeriesPoint]:
        return [(float(i), o.progress) for i, o in enumerate(observations)]

    async def progress_analytics(self, record_id: str, actor: str) -> ServiceResponse:
        """
        Read-only analytics snapshot.

        Time-based status changes are evaluated on a copy for the report and
        are not persisted.
        """

        async def work() -> ProgressAnalyticsReport:
            record = await self._load_record(record_id)
            now = self._clock()
            self.tracker.refresh_statuses(record, now)
            metrics = self.tracker.calculate_metrics(record, now)

            goal_trends = {
                goal.id: self.analyzer.analyze_trend(
                    self._goal_series(goal.progress_history), metric=f"goal:{goal.id}"
                )
                for goal in record.goals
            }
            report = ProgressAnalyticsReport(
                record_id=record.id,
                patient_id=record.patient_id,
                overview=metrics.model_dump(mode="json"),
                goals=self.tracker.goal_analytics(record, now),
                interventions=self.tracker.intervention_analytics(record, now),
                alerts=self.tracker.progress_alerts(record, now),
                goal_trends=goal_trends,
                overall_trend=overall_direction(goal_trends.values()),
            )
            if report.alerts:
                report.insights = await self._generate_insights(
                    {
                        "overview": report.overview,
                        "alerts": [a.message for a in report.alerts],
                        "goal_trends": {k: v.direction.value for k, v in goal_trends.items()},
                    }
                )
            return report

        return await self._execute("progress_analytics", actor, work)

    async def predict_goal(
        self,
        record_id: str,
        goal_id: str,
        actor: str,
        period: Period | str | None = None,
    ) -> ServiceResponse:
        """
        Achievement prediction for one goal.

        Without `period` each progress observation is one step. With a period
        observations are averaged per calendar bucket first, and the step
        estimate is converted into a completion date.
        """

        async def work() -> AchievementPrediction:
            record = await self._load_record(record_id)
            goal = record.goal(goal_id)
            if goal is None:
                raise NotFoundError("goal", goal_id)

            parsed_period: Period | None = None
            if period is None:
                series = self._goal_series(goal.progress_history)
            else:
                try:
                    parsed_period = Period(period)
                except ValueError as e:
                    raise ValidationError(
                        f"Unknown period '{period}'", field="period", validation_type="enum"
                    ) from e
                buckets = group_by_period(
                    sorted((o.timestamp, o.progress) for o in goal.progress_history), parsed_period
                )
                series = buckets_to_series(buckets, parsed_period)

            return self.predictor.predict_goal_achievement(
                series, goal, period=parsed_period, now=self._clock()
            )

        return await self._execute("predict_goal", actor, work)

    # Operations

    def health_check(self) -> dict[str, Any]:
        """Resilience state, request metrics and collaborator status."""
        resilience = self.resilience.status()
        degraded = bool(resilience["open_breakers"])
        return {
            "status": "degraded" if degraded else "healthy",
            "timestamp": self._clock().isoformat(),
            "environment": self.config.environment,
            "insights_enabled": self.insights is not None,
            "events_enabled": self.events is not None,
            "pending_events": len(self._pending_events),
            "requests": self.metrics.as_dict(),
            **resilience,
        }

    def service_status(self) -> ServiceResponse:
        return ServiceResponse.ok(self.health_check())

    def reset_circuit_breakers(self) -> None:
        self.resilience.breakers.reset_all()
        self.logger.info("circuit_breakers_reset")

    def clear_cache(self) -> None:
        self.resilience.cache.clear()
        self.logger.info("cache_cleared")


def create_service(
    config: AppConfig | None = None,
    event_publisher: EventPublisher | None = None,
) -> ClinicalEngineService:
    """In-process wiring: memory repositories plus an AI generator when a key is set."""
    # adapters import this package, so they are resolved at call time
    from adapters.memory import InMemoryRepository, LocalEventPublisher

    config = config or get_config()
    return ClinicalEngineService(
        assessments=InMemoryRepository[Assessment]("assessments"),
        progress_records=InMemoryRepository[ProgressRecord]("progress_records"),
        config=config,
        insight_generator=build_insight_generator(config.ai_provider),
        event_publisher=event_publisher if event_publisher is not None else LocalEventPublisher(),
    )
