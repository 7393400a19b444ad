"""
Tests for standardized assessment scoring.

Covers:
- Morse, Braden and MMSE totals and bands
- Unknown and missing categories become warnings
- Type, integer and allowed-value validation
- Normalization to a 0-100 RiskScore (inverted for Braden and MMSE)
- Property: totals stay in range and levels are monotonic in the total
"""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from risk_engine.domain.errors import ValidationError
from risk_engine.domain.models import MorseCategories, RiskLevel, ToolType
from risk_engine.scales import BRADEN_SCALE, DEFAULT_SCALES, MMSE_SCALE, MORSE_SCALE, ScaleDefinition
from risk_engine.services.scoring import (
    AssessmentScoringEngine,
    parse_tool,
    score_cognition,
    score_fall_risk,
    score_pressure_ulcer_risk,
    to_risk_score,
)


def _morse(**values: int) -> dict[str, int]:
    base = {name: 0 for name in MORSE_SCALE.category_names}
    base.update(values)
    return base


def _scale_inputs(scale: ScaleDefinition) -> st.SearchStrategy[dict[str, int]]:
    return st.fixed_dictionaries(
        {c.name: st.sampled_from(c.allowed_values) for c in scale.categories}
    )


class TestMorseFallScale:
    @pytest.mark.parametrize(
        ("values", "level"),
        [
            ({"history_of_falls": 25, "secondary_diagnosis": 15, "gait": 10}, "high"),
            ({"secondary_diagnosis": 15, "ambulatory_aid": 15}, "moderate"),
            ({"gait": 10}, "low"),
        ],
    )
    def test_reference_totals_map_to_expected_levels(self, values: dict[str, int], level: str) -> None:
        result = score_fall_risk(_morse(**values))

        assert result.total == sum(values.values())
        assert result.level == level
        assert result.warnings == []

    def test_band_boundaries_are_inclusive(self) -> None:
        assert score_fall_risk(_morse(history_of_falls=25)).level == "moderate"
        assert score_fall_risk(_morse(history_of_falls=25, gait=20)).level == "high"
        assert score_fall_risk(_morse(gait=20)).level == "low"

    def test_maximum_total_is_125(self) -> None:
        result = score_fall_risk(
            _morse(
                history_of_falls=25,
                secondary_diagnosis=15,
                ambulatory_aid=30,
                iv_therapy=20,
                gait=20,
                mental_status=15,
            )
        )

        assert result.total == 125
        assert result.max_score == 125
        assert result.risk == RiskLevel.HIGH

    def test_result_carries_typed_categories(self) -> None:
        result = score_fall_risk(_morse(gait=10))

        assert isinstance(result.categories, MorseCategories)
        assert result.categories.gait == 10


class TestBradenScale:
    def test_lower_totals_mean_higher_risk(self) -> None:
        worst = score_pressure_ulcer_risk({name: 1 for name in BRADEN_SCALE.category_names})
        best = score_pressure_ulcer_risk(
            {name: BRADEN_SCALE.category(name).maximum for name in BRADEN_SCALE.category_names}  # type: ignore[union-attr]
        )

        assert worst.total == 6
        assert worst.level == "high"
        assert worst.risk == RiskLevel.HIGH
        assert best.total == 23
        assert best.level == "none"
        assert best.risk == RiskLevel.LOW

    def test_friction_shear_only_allows_one_to_three(self) -> None:
        values = {name: 2 for name in BRADEN_SCALE.category_names}
        values["friction_shear"] = 4

        with pytest.raises(ValidationError) as exc_info:
            score_pressure_ulcer_risk(values)

        assert exc_info.value.field == "friction_shear"
        assert exc_info.value.validation_type == "allowed_values"


class TestMMSE:
    def test_full_marks_score_thirty_and_normal(self) -> None:
        values = {c.name: c.maximum for c in MMSE_SCALE.categories}
        result = score_cognition(values)

        assert result.total == 30
        assert result.level == "normal"

    def test_moderate_impairment_band(self) -> None:
        result = score_cognition(
            {"orientation": 5, "registration": 3, "attention_calculation": 2, "recall": 1, "language": 4}
        )

        assert result.total == 15
        assert result.level == "moderate"
        assert result.risk == RiskLevel.MEDIUM


class TestValidation:
    def test_unknown_category_is_warned_and_ignored(self) -> None:
        result = score_fall_risk({**_morse(gait=10), "shoe_size": 42})

        assert result.total == 10
        assert any("shoe_size" in w for w in result.warnings)

    def test_missing_category_scores_zero_with_warning(self) -> None:
        values = _morse(gait=10)
        del values["mental_status"]

        result = score_fall_risk(values)

        assert result.total == 10
        assert result.missing == ["mental_status"]
        assert any("mental_status" in w for w in result.warnings)

    @pytest.mark.parametrize("bad", ["25", True, [25]])
    def test_non_numeric_values_are_rejected(self, bad: object) -> None:
        with pytest.raises(ValidationError) as exc_info:
            score_fall_risk(_morse(history_of_falls=bad))  # type: ignore[arg-type]

        assert exc_info.value.validation_type == "type"

    def test_fractional_values_are_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            score_fall_risk({**_morse(), "gait": 10.5})

        assert exc_info.value.validation_type == "integer"

    def test_whole_floats_are_accepted(self) -> None:
        assert score_fall_risk({**_morse(), "gait": 10.0}).total == 10

    def test_value_outside_allowed_set_is_rejected(self) -> None:
        with pytest.raises(ValidationError, match="history_of_falls"):
            score_fall_risk(_morse(history_of_falls=10))

    def test_categories_must_be_a_mapping(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            score_fall_risk([("gait", 10)])  # type: ignore[arg-type]

        assert exc_info.value.field == "categories"

    def test_parse_tool_accepts_names_and_rejects_unknown(self) -> None:
        assert parse_tool(" Morse ") == ToolType.MORSE
        with pytest.raises(ValidationError) as exc_info:
            parse_tool("glasgow")
        assert exc_info.value.field == "tool_type"


class TestRiskNormalization:
    def test_morse_value_scales_to_hundred(self) -> None:
        score = to_risk_score(score_fall_risk(_morse(history_of_falls=25, gait=20, mental_status=15)))

        assert score.risk_type == "fall-risk"
        assert score.value == pytest.approx(48.0)
        assert score.level == RiskLevel.HIGH
        assert "history_of_falls=25" in score.factors
        assert score.confidence == 1.0

    def test_braden_is_inverted(self) -> None:
        worst = to_risk_score(score_pressure_ulcer_risk({n: 1 for n in BRADEN_SCALE.category_names}))

        assert worst.value == 100.0
        assert worst.risk_type == "pressure-ulcer"

    def test_confidence_reflects_missing_items(self) -> None:
        values = _morse(gait=10)
        del values["gait"]
        del values["iv_therapy"]

        score = to_risk_score(score_fall_risk(values))

        assert score.confidence == pytest.approx(4 / 6, rel=1e-3)

    def test_engine_dispatches_by_tool_name(self) -> None:
        engine = AssessmentScoringEngine()
        result = engine.score("braden", {n: 3 for n in BRADEN_SCALE.category_names})

        assert result.tool == ToolType.BRADEN
        assert engine.risk_score(result).risk_type == "pressure-ulcer"


class TestScoringProperties:
    @pytest.mark.parametrize("scale", list(DEFAULT_SCALES.values()), ids=lambda s: s.tool.value)
    def test_total_always_within_declared_range(self, scale: ScaleDefinition) -> None:
        @given(values=_scale_inputs(scale))
        def check(values: dict[str, int]) -> None:
            result = AssessmentScoringEngine().score(scale.tool, values)
            assert scale.min_score <= result.total <= scale.max_score
            assert result.warnings == []

        check()

    @given(a=st.integers(min_value=0, max_value=125), b=st.integers(min_value=0, max_value=125))
    def test_morse_level_is_monotonic_in_total(self, a: int, b: int) -> None:
        low, high = sorted((a, b))
        assert MORSE_SCALE.band_for(low).risk.severity <= MORSE_SCALE.band_for(high).risk.severity

    @given(a=st.integers(min_value=0, max_value=30), b=st.integers(min_value=0, max_value=30))
    def test_mmse_level_is_monotonic_in_total(self, a: int, b: int) -> None:
        low, high = sorted((a, b))
        # Inverse instrument: a higher total never means more risk
        assert MMSE_SCALE.band_for(low).risk.severity >= MMSE_SCALE.band_for(high).risk.severity
