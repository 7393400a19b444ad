"""
Scale definitions for the supported clinical instruments.

Thresholds are business rules supplied as data. The defaults below can be
replaced per tool from a JSON file (see `load_scales`), so changing a band
never requires touching the scoring code.
"""

import json
from pathlib import Path
from typing import Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator

from risk_engine.domain.models import CATEGORY_MODELS, RiskLevel, ToolType

logger = structlog.get_logger(__name__)


class CategoryDefinition(BaseModel):
    """One scored item and the discrete values it may take."""

    model_config = ConfigDict(frozen=True)

    name: str
    allowed_values: tuple[int, ...] = Field(min_length=1)

    @property
    def minimum(self) -> int:
        return min(self.allowed_values)

    @property
    def maximum(self) -> int:
        return max(self.allowed_values)


class ScaleBand(BaseModel):
    """A band starting at `min_total` and running up to the next band's start."""

    model_config = ConfigDict(frozen=True)

    level: str
    min_total: int
    risk: RiskLevel


class ScaleDefinition(BaseModel):
    """Items, bands and orientation of a scoring instrument."""

    model_config = ConfigDict(frozen=True)

    tool: ToolType
    name: str
    categories: tuple[CategoryDefinition, ...] = Field(min_length=1)
    bands: tuple[ScaleBand, ...] = Field(min_length=1)
    # "higher" when a larger total means more risk (Morse); "lower" when a
    # smaller total means more risk (Braden, MMSE).
    risk_increases_with: Literal["higher", "lower"] = "higher"

    @model_validator(mode="after")
    def check_bands_and_items(self) -> "ScaleDefinition":
        thresholds = [band.min_total for band in self.bands]
        if any(b <= a for a, b in zip(thresholds, thresholds[1:], strict=False)):
            raise ValueError(f"{self.tool.value} bands must have strictly ascending thresholds")
        names = [c.name for c in self.categories]
        if len(names) != len(set(names)):
            raise ValueError(f"{self.tool.value} categories must be unique")
        expected = set(CATEGORY_MODELS[self.tool].model_fields) - {"tool"}
        if set(names) != expected:
            raise ValueError(
                f"{self.tool.value} categories must be exactly: {', '.join(sorted(expected))}"
            )
        return self

    @property
    def category_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.categories)

    @property
    def min_score(self) -> int:
        return sum(c.minimum for c in self.categories)

    @property
    def max_score(self) -> int:
        return sum(c.maximum for c in self.categories)

    def category(self, name: str) -> CategoryDefinition | None:
        return next((c for c in self.categories if c.name == name), None)

    def band_for(self, total: int) -> ScaleBand:
        """Map a total to its band. Totals below the first threshold take the first band."""
        selected = self.bands[0]
        for band in self.bands:
            if total >= band.min_total:
                selected = band
            else:
                break
        return selected


def _range(low: int, high: int) -> tuple[int, ...]:
    return tuple(range(low, high + 1))


MORSE_SCALE = ScaleDefinition(
    tool=ToolType.MORSE,
    name="Morse Fall Scale",
    categories=(
        CategoryDefinition(name="history_of_falls", allowed_values=(0, 25)),
        CategoryDefinition(name="secondary_diagnosis", allowed_values=(0, 15)),
        CategoryDefinition(name="ambulatory_aid", allowed_values=(0, 15, 30)),
        CategoryDefinition(name="iv_therapy", allowed_values=(0, 20)),
        CategoryDefinition(name="gait", allowed_values=(0, 10, 20)),
        CategoryDefinition(name="mental_status", allowed_values=(0, 15)),
    ),
    bands=(
        ScaleBand(level="low", min_total=0, risk=RiskLevel.LOW),
        ScaleBand(level="moderate", min_total=25, risk=RiskLevel.MEDIUM),
        ScaleBand(level="high", min_total=45, risk=RiskLevel.HIGH),
    ),
    risk_increases_with="higher",
)

BRADEN_SCALE = ScaleDefinition(
    tool=ToolType.BRADEN,
    name="Braden Scale",
    categories=(
        CategoryDefinition(name="sensory_perception", allowed_values=_range(1, 4)),
        CategoryDefinition(name="moisture", allowed_values=_range(1, 4)),
        CategoryDefinition(name="activity", allowed_values=_range(1, 4)),
        CategoryDefinition(name="mobility", allowed_values=_range(1, 4)),
        CategoryDefinition(name="nutrition", allowed_values=_range(1, 4)),
        CategoryDefinition(name="friction_shear", allowed_values=_range(1, 3)),
    ),
    bands=(
        ScaleBand(level="high", min_total=6, risk=RiskLevel.HIGH),
        ScaleBand(level="moderate", min_total=10, risk=RiskLevel.MEDIUM),
        ScaleBand(level="mild", min_total=13, risk=RiskLevel.MEDIUM),
        ScaleBand(level="minimal", min_total=15, risk=RiskLevel.LOW),
        ScaleBand(level="none", min_total=19, risk=RiskLevel.LOW),
    ),
    risk_increases_with="lower",
)

MMSE_SCALE = ScaleDefinition(
    tool=ToolType.MMSE,
    name="Mini-Mental State Examination",
    categories=(
        CategoryDefinition(name="orientation", allowed_values=_range(0, 10)),
        CategoryDefinition(name="registration", allowed_values=_range(0, 3)),
        CategoryDefinition(name="attention_calculation", allowed_values=_range(0, 5)),
        CategoryDefinition(name="recall", allowed_values=_range(0, 3)),
        CategoryDefinition(name="language", allowed_values=_range(0, 9)),
    ),
    bands=(
        ScaleBand(level="severe", min_total=0, risk=RiskLevel.HIGH),
        ScaleBand(level="moderate", min_total=10, risk=RiskLevel.MEDIUM),
        ScaleBand(level="mild", min_total=19, risk=RiskLevel.LOW),
        ScaleBand(level="normal", min_total=24, risk=RiskLevel.LOW),
    ),
    risk_increases_with="lower",
)

DEFAULT_SCALES: dict[ToolType, ScaleDefinition] = {
    ToolType.MORSE: MORSE_SCALE,
    ToolType.BRADEN: BRADEN_SCALE,
    ToolType.MMSE: MMSE_SCALE,
}


def load_scales(path: str | Path | None = None) -> dict[ToolType, ScaleDefinition]:
    """
    Return scale definitions, overriding defaults from a JSON file if given.

    The file maps tool names to full scale definitions, e.g.
    ``{"morse": {"tool": "morse", "name": "...", "categories": [...], "bands": [...]}}``.
    Tools absent from the file keep their defaults.
    """
    scales = dict(DEFAULT_SCALES)
    if path is None:
        return scales

    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Scale override file {path} must contain a JSON object")

    for tool_name, definition in raw.items():
        tool = ToolType(tool_name)
        scale = ScaleDefinition.model_validate({"tool": tool.value, **definition})
        scales[tool] = scale
        logger.info("scale_override_loaded", tool=tool.value, bands=len(scale.bands), path=str(path))

    return scales
