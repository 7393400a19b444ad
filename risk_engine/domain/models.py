"""
Domain models for clinical risk scoring and progress tracking.

These models represent the core clinical concepts and are framework-agnostic.
They use Pydantic for validation; mutation happens only through the service
facade, which appends history entries and bumps versions on every change.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _new_id() -> str:
    return uuid4().hex


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so all comparisons are between aware values."""
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


class AssessmentType(str, Enum):
    """Clinical concern an assessment addresses."""

    FALL_RISK = "fall-risk"
    PRESSURE_ULCER = "pressure-ulcer"
    COGNITIVE = "cognitive"


class ToolType(str, Enum):
    """Standardized instrument used to score an assessment."""

    MORSE = "morse"
    BRADEN = "braden"
    MMSE = "mmse"


TOOL_ASSESSMENT_TYPES: dict[ToolType, AssessmentType] = {
    ToolType.MORSE: AssessmentType.FALL_RISK,
    ToolType.BRADEN: AssessmentType.PRESSURE_ULCER,
    ToolType.MMSE: AssessmentType.COGNITIVE,
}


class RecordStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class RiskLevel(str, Enum):
    """Normalized risk levels, ordered by severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def severity(self) -> int:
        return _RISK_SEVERITY[self]


_RISK_SEVERITY = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class GoalStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    OVERDUE = "overdue"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 2, "medium": 1, "low": 0}[self.value]


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class Significance(str, Enum):
    SIGNIFICANT = "significant"
    NOT_SIGNIFICANT = "not_significant"
    INSUFFICIENT_DATA = "insufficient_data"


class TrendConfidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Period(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class EffectivenessImpact(str, Enum):
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"
    UNKNOWN = "unknown"


# Per-tool category variants. Exactly one variant exists per tool, so a
# Braden category can never be attached to a Morse assessment.
class MorseCategories(BaseModel):
    """Morse Fall Scale item values."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tool: Literal[ToolType.MORSE] = ToolType.MORSE
    history_of_falls: int = 0
    secondary_diagnosis: int = 0
    ambulatory_aid: int = 0
    iv_therapy: int = 0
    gait: int = 0
    mental_status: int = 0


class BradenCategories(BaseModel):
    """Braden Scale item values."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tool: Literal[ToolType.BRADEN] = ToolType.BRADEN
    sensory_perception: int = 0
    moisture: int = 0
    activity: int = 0
    mobility: int = 0
    nutrition: int = 0
    friction_shear: int = 0


class MMSECategories(BaseModel):
    """Mini-Mental State Examination sub-domain values."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tool: Literal[ToolType.MMSE] = ToolType.MMSE
    orientation: int = 0
    registration: int = 0
    attention_calculation: int = 0
    recall: int = 0
    language: int = 0


AssessmentCategories = Annotated[
    MorseCategories | BradenCategories | MMSECategories, Field(discriminator="tool")
]

CATEGORY_MODELS: dict[ToolType, type[BaseModel]] = {
    ToolType.MORSE: MorseCategories,
    ToolType.BRADEN: BradenCategories,
    ToolType.MMSE: MMSECategories,
}


def category_values(categories: BaseModel) -> dict[str, int]:
    """Return the scored item values of a category variant, without the tag."""
    return {k: v for k, v in categories.model_dump().items() if k != "tool"}


class HistoryEntry(BaseModel):
    """Append-only audit entry."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    actor: str
    action: str
    diff: dict[str, Any] = Field(default_factory=dict)


class AssessmentInsights(BaseModel):
    """Optional AI enrichment attached to an assessment."""

    recommendations: list[str] = Field(default_factory=list)
    alerts: list[str] = Field(default_factory=list)
    narrative: str = ""
    generated_at: datetime = Field(default_factory=utc_now)


class Assessment(BaseModel):
    """A scored clinical assessment. Totals are derived, never caller-supplied."""

    id: str = Field(default_factory=_new_id)
    patient_id: str = Field(min_length=1)
    author_id: str = Field(min_length=1)
    assessment_type: AssessmentType
    tool_type: ToolType
    categories: AssessmentCategories
    missing_categories: list[str] = Field(
        default_factory=list, description="Items not supplied; stored as 0 but never rescored"
    )
    total_score: int
    risk_level: str
    normalized_risk: RiskLevel = RiskLevel.LOW
    status: RecordStatus = RecordStatus.ACTIVE
    version: int = Field(default=1, ge=1)
    history: list[HistoryEntry] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    notes: str = ""
    insights: AssessmentInsights | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def answered_categories(self) -> dict[str, int]:
        """Item values that were actually supplied, ready to rescore."""
        missing = set(self.missing_categories)
        return {k: v for k, v in category_values(self.categories).items() if k not in missing}


class Milestone(BaseModel):
    description: str
    threshold: float = Field(ge=0.0, le=100.0, description="Progress percentage")
    reached: bool = False
    reached_at: datetime | None = None


class ProgressObservation(BaseModel):
    """One point of a goal's progress history."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    value: float
    progress: float = Field(ge=0.0, le=100.0)


class Goal(BaseModel):
    """SMART goal with derived progress percentage."""

    id: str = Field(default_factory=_new_id)
    description: str = Field(min_length=1)
    specific: str
    measurable: str
    achievable: str
    relevant: str
    time_bound: datetime
    category: str = "general"
    priority: Priority = Priority.MEDIUM
    target_value: float = Field(gt=0.0)
    current_value: float = 0.0
    unit: str = "points"
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    status: GoalStatus = GoalStatus.ACTIVE
    completed_at: datetime | None = None
    milestones: list[Milestone] = Field(default_factory=list)
    intervention_ids: list[str] = Field(default_factory=list)
    progress_history: list[ProgressObservation] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


class Intervention(BaseModel):
    id: str = Field(default_factory=_new_id)
    type: str = Field(min_length=1)
    description: str
    effectiveness: float | None = Field(default=None, ge=0.0, le=100.0)
    effectiveness_impact: EffectivenessImpact = EffectivenessImpact.UNKNOWN
    # "reported" values come from a clinician and are never re-estimated
    effectiveness_source: Literal["estimated", "reported"] = "estimated"
    goal_ids: list[str] = Field(default_factory=list)
    recorded_at: datetime = Field(default_factory=utc_now)
    recorded_by: str = ""


class ProgressMetrics(BaseModel):
    """Snapshot of aggregate progress across a record's goals."""

    overall_progress: float = 0.0
    goal_completion_rate: float = 0.0
    active_goals: int = 0
    completed_goals: int = 0
    overdue_goals: int = 0
    average_goal_progress: float = 0.0
    intervention_count: int = 0
    calculated_at: datetime = Field(default_factory=utc_now)


class ProgressRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    patient_id: str = Field(min_length=1)
    author_id: str = Field(min_length=1)
    goals: list[Goal] = Field(default_factory=list)
    interventions: list[Intervention] = Field(default_factory=list)
    metrics: ProgressMetrics = Field(default_factory=ProgressMetrics)
    status: RecordStatus = RecordStatus.ACTIVE
    version: int = Field(default=1, ge=1)
    history: list[HistoryEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def goal(self, goal_id: str) -> Goal | None:
        return next((g for g in self.goals if g.id == goal_id), None)


class RiskScore(BaseModel):
    """Normalized per-type risk score on a 0-100 scale."""

    model_config = ConfigDict(frozen=True)

    risk_type: str
    value: float = Field(ge=0.0, le=100.0)
    level: RiskLevel
    factors: list[str] = Field(default_factory=list)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    interpretation: str = ""

    @field_validator("risk_type")
    @classmethod
    def risk_type_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("risk_type must not be blank")
        return v


class TrendResult(BaseModel):
    """Linear trend over an ordered series."""

    model_config = ConfigDict(frozen=True)

    metric: str
    slope: float
    intercept: float = 0.0
    correlation: float = Field(ge=-1.0, le=1.0)
    significance: Significance
    direction: TrendDirection
    confidence: TrendConfidence
    sample_size: int = Field(ge=0)
