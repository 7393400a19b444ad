"""
Standardized assessment scoring.

Every scorer is a pure function of a raw category mapping and a scale
definition. Totals are always recomputed here; a caller-supplied total is
never trusted. Unknown items are warned about and ignored, and missing items
count as zero with a warning so partially completed assessments still score.
"""

import numbers
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from risk_engine.domain.errors import ValidationError
from risk_engine.domain.models import (
    CATEGORY_MODELS,
    TOOL_ASSESSMENT_TYPES,
    AssessmentCategories,
    RiskLevel,
    RiskScore,
    ToolType,
)
from risk_engine.scales import DEFAULT_SCALES, ScaleDefinition


class ScoreResult(BaseModel):
    """Outcome of scoring one assessment."""

    model_config = ConfigDict(frozen=True)

    tool: ToolType
    total: int
    level: str
    risk: RiskLevel
    min_score: int
    max_score: int
    categories: AssessmentCategories
    warnings: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)
    present: list[str] = Field(default_factory=list)


def _coerce_item(name: str, raw: Any) -> int:
    if isinstance(raw, bool) or not isinstance(raw, numbers.Real):
        raise ValidationError(
            f"Category '{name}' must be a number, got {type(raw).__name__}",
            field=name,
            validation_type="type",
        )
    if isinstance(raw, numbers.Integral):
        return int(raw)
    if float(raw).is_integer():
        return int(raw)
    raise ValidationError(
        f"Category '{name}' must be a whole number, got {raw}",
        field=name,
        validation_type="integer",
    )


def score_with_scale(scale: ScaleDefinition, categories: Mapping[str, Any]) -> ScoreResult:
    """Validate `categories` against `scale` and compute total and band."""
    if not isinstance(categories, Mapping):
        raise ValidationError(
            "Categories must be a mapping of item name to value",
            field="categories",
            validation_type="type",
        )

    warnings: list[str] = []
    known = set(scale.category_names)
    for key in categories:
        if key not in known and key != "tool":
            warnings.append(f"Unknown category '{key}' ignored")

    values: dict[str, int] = {}
    missing: list[str] = []
    for definition in scale.categories:
        raw = categories.get(definition.name)
        if raw is None:
            missing.append(definition.name)
            warnings.append(f"Missing category '{definition.name}' scored as 0")
            values[definition.name] = 0
            continue

        value = _coerce_item(definition.name, raw)
        if value not in definition.allowed_values:
            allowed = ", ".join(str(v) for v in definition.allowed_values)
            raise ValidationError(
                f"Category '{definition.name}' value {value} is not one of: {allowed}",
                field=definition.name,
                validation_type="allowed_values",
            )
        values[definition.name] = value

    total = sum(values.values())
    band = scale.band_for(total)
    variant = CATEGORY_MODELS[scale.tool](**values)

    return ScoreResult(
        tool=scale.tool,
        total=total,
        level=band.level,
        risk=band.risk,
        min_score=scale.min_score,
        max_score=scale.max_score,
        categories=variant,  # type: ignore[arg-type]
        warnings=warnings,
        missing=missing,
        present=[name for name in scale.category_names if name not in missing],
    )


def score_fall_risk(
    categories: Mapping[str, Any], scale: ScaleDefinition | None = None
) -> ScoreResult:
    """Morse Fall Scale: discrete item values summed to 0-125."""
    return score_with_scale(scale or DEFAULT_SCALES[ToolType.MORSE], categories)


def score_pressure_ulcer_risk(
    categories: Mapping[str, Any], scale: ScaleDefinition | None = None
) -> ScoreResult:
    """Braden Scale: lower totals mean higher pressure-ulcer risk."""
    return score_with_scale(scale or DEFAULT_SCALES[ToolType.BRADEN], categories)


def score_cognition(
    categories: Mapping[str, Any], scale: ScaleDefinition | None = None
) -> ScoreResult:
    """MMSE: sub-domain scores summed to a maximum of 30."""
    return score_with_scale(scale or DEFAULT_SCALES[ToolType.MMSE], categories)


def to_risk_score(result: ScoreResult, scale: ScaleDefinition | None = None) -> RiskScore:
    """
    Normalize a tool score onto the 0-100 risk scale.

    Inverse instruments are flipped so a higher value always means more risk.
    Confidence is the share of items actually supplied.
    """
    scale = scale or DEFAULT_SCALES[result.tool]
    span = result.max_score - result.min_score
    fraction = (result.total - result.min_score) / span if span else 0.0
    fraction = min(max(fraction, 0.0), 1.0)
    if scale.risk_increases_with == "lower":
        fraction = 1.0 - fraction

    factors: list[str] = []
    item_values = result.categories.model_dump(exclude={"tool"})
    for definition in scale.categories:
        value = item_values[definition.name]
        if definition.name in result.missing:
            continue
        if scale.risk_increases_with == "higher" and value > definition.minimum:
            factors.append(f"{definition.name}={value}")
        elif scale.risk_increases_with == "lower" and value < definition.maximum:
            factors.append(f"{definition.name}={value}")

    required = len(scale.categories)
    return RiskScore(
        risk_type=TOOL_ASSESSMENT_TYPES[result.tool].value,
        value=round(fraction * 100, 2),
        level=result.risk,
        factors=factors,
        confidence=round(len(result.present) / required, 4) if required else 0.0,
        interpretation=f"{scale.name}: {result.total} ({result.level})",
    )


class AssessmentScoringEngine:
    """Holds the active scale definitions and dispatches by tool."""

    def __init__(self, scales: Mapping[ToolType, ScaleDefinition] | None = None) -> None:
        self.scales: dict[ToolType, ScaleDefinition] = dict(scales or DEFAULT_SCALES)

    def scale(self, tool: ToolType) -> ScaleDefinition:
        try:
            return self.scales[tool]
        except KeyError as e:
            raise ValidationError(
                f"Unsupported tool '{tool}'", field="tool_type", validation_type="enum"
            ) from e

    def score(self, tool: ToolType | str, categories: Mapping[str, Any]) -> ScoreResult:
        return score_with_scale(self.scale(parse_tool(tool)), categories)

    def risk_score(self, result: ScoreResult) -> RiskScore:
        return to_risk_score(result, self.scale(result.tool))


def parse_tool(tool: ToolType | str) -> ToolType:
    if isinstance(tool, ToolType):
        return tool
    try:
        return ToolType(str(tool).strip().lower())
    except ValueError as e:
        allowed = ", ".join(t.value for t in ToolType)
        raise ValidationError(
            f"Unsupported tool '{tool}'; expected one of: {allowed}",
            field="tool_type",
            validation_type="enum",
        ) from e
