"""
Rule-based risk calculators driven by a patient profile.

These complement instrument scoring when no completed assessment exists:
each calculator inspects conditions, medications, functional status and
vitals and returns a normalized RiskScore with the factors that fired.
Matching is case-insensitive substring matching on free-text entries.
"""

import re
from collections.abc import Iterable

from pydantic import BaseModel, Field

from risk_engine.domain.models import RiskLevel, RiskScore


class VitalSigns(BaseModel):
    respiratory_rate: float | None = Field(None, ge=0.0)
    systolic_bp: float | None = Field(None, ge=0.0)
    temperature_f: float | None = Field(None, ge=0.0)
    heart_rate: float | None = Field(None, ge=0.0)


class PatientProfile(BaseModel):
    """Clinical context used by the profile-based calculators."""

    patient_id: str
    age: int | None = Field(None, ge=0, le=130)
    conditions: list[str] = Field(default_factory=list)
    medications: list[str] = Field(default_factory=list)
    risk_factors: list[str] = Field(default_factory=list)
    functional_status: str = ""
    social_history: str = ""
    recent_labs: list[str] = Field(default_factory=list)
    vitals: VitalSigns = Field(default_factory=VitalSigns)


HIGH_RISK_CONDITIONS = ("heart failure", "copd", "diabetes", "dementia", "kidney disease")
HIGH_RISK_MEDICATIONS = ("warfarin", "digoxin", "insulin", "opioid", "benzodiazepine")
_IV_PATTERN = re.compile(r"\biv\b|heparin", re.IGNORECASE)

INTERPRETATIONS: dict[str, dict[RiskLevel, str]] = {
    "fall-risk": {
        RiskLevel.LOW: "Low fall risk. Continue standard fall prevention measures.",
        RiskLevel.MEDIUM: "Moderate fall risk. Implement enhanced fall prevention protocols.",
        RiskLevel.HIGH: "High fall risk. Implement comprehensive fall prevention immediately.",
    },
    "sepsis": {
        RiskLevel.LOW: "Low sepsis risk. Continue standard monitoring.",
        RiskLevel.MEDIUM: "Moderate sepsis risk. Close monitoring and early intervention.",
        RiskLevel.HIGH: "High sepsis risk. Immediate evaluation and treatment required.",
        RiskLevel.CRITICAL: "Sepsis criteria met across all qSOFA items. Escalate now.",
    },
    "readmission": {
        RiskLevel.LOW: "Low readmission risk. Standard discharge planning appropriate.",
        RiskLevel.MEDIUM: "Moderate readmission risk. Enhanced discharge planning recommended.",
        RiskLevel.HIGH: "High readmission risk. Comprehensive discharge planning required.",
    },
    "medication": {
        RiskLevel.LOW: "Low medication risk. Standard medication management appropriate.",
        RiskLevel.MEDIUM: "Moderate medication risk. Enhanced medication monitoring recommended.",
        RiskLevel.HIGH: "High medication risk. Comprehensive medication review required.",
    },
    "pressure-ulcer": {
        RiskLevel.LOW: "Low pressure ulcer risk. Standard skin care appropriate.",
        RiskLevel.MEDIUM: "Moderate pressure ulcer risk. Enhanced skin care and positioning.",
        RiskLevel.HIGH: "High pressure ulcer risk. Full prevention protocol required.",
    },
}


def _any_contains(items: Iterable[str], *needles: str) -> bool:
    lowered = [item.casefold() for item in items]
    return any(needle in item for item in lowered for needle in needles)


def _contains(text: str, *needles: str) -> bool:
    lowered = text.casefold()
    return any(needle in lowered for needle in needles)


def _score(
    risk_type: str, raw: float, maximum: float, level: RiskLevel, factors: list[str], confidence: float
) -> RiskScore:
    value = min(max(raw / maximum * 100, 0.0), 100.0) if maximum else 0.0
    return RiskScore(
        risk_type=risk_type,
        value=round(value, 2),
        level=level,
        factors=factors,
        confidence=round(confidence, 4),
        interpretation=INTERPRETATIONS[risk_type][level],
    )


def calculate_fall_risk(profile: PatientProfile) -> RiskScore:
    """Morse-style fall risk inferred from the profile (raw range 0-125)."""
    score = 0
    factors: list[str] = []
    status = profile.functional_status

    if _any_contains(profile.risk_factors, "fall") or _any_contains(
        profile.conditions, "fall", "dementia"
    ):
        score += 25
        factors.append("History of falls or cognitive impairment")

    if len(profile.conditions) > 2:
        score += 15
        factors.append("Multiple comorbidities")

    if _contains(status, "walker", "wheelchair"):
        score += 30
        factors.append("Requires ambulatory aid")
    elif _contains(status, "assistance"):
        score += 15
        factors.append("Requires assistance with mobility")

    if any(_IV_PATTERN.search(m) for m in profile.medications):
        score += 20
        factors.append("IV access or anticoagulation")

    if _contains(status, "limited"):
        score += 20
        factors.append("Impaired gait")
    elif _contains(status, "assistance"):
        score += 10
        factors.append("Gait requires assistance")

    if _any_contains(profile.conditions, "dementia", "cognitive"):
        score += 15
        factors.append("Cognitive impairment")

    if score >= 45:
        level = RiskLevel.HIGH
    elif score >= 25:
        level = RiskLevel.MEDIUM
    else:
        level = RiskLevel.LOW

    confidence = 1.0 if (profile.conditions or status) else 0.5
    return _score("fall-risk", score, 125, level, factors, confidence)


def calculate_sepsis_risk(profile: PatientProfile) -> RiskScore:
    """qSOFA and SIRS screening from vitals, labs and mental status."""
    vitals = profile.vitals
    qsofa = 0
    sirs = 0
    factors: list[str] = []

    if vitals.respiratory_rate is not None and vitals.respiratory_rate > 22:
        qsofa += 1
        factors.append("Respiratory rate > 22")
    if vitals.systolic_bp is not None and vitals.systolic_bp < 100:
        qsofa += 1
        factors.append("Systolic BP < 100 mmHg")
    if _any_contains(profile.conditions, "cognitive", "dementia"):
        qsofa += 1
        factors.append("Altered mental status")

    if vitals.temperature_f is not None and (
        vitals.temperature_f > 100.4 or vitals.temperature_f < 96.8
    ):
        sirs += 1
        factors.append("Temperature abnormality")
    if vitals.heart_rate is not None and vitals.heart_rate > 90:
        sirs += 1
        factors.append("Heart rate > 90")
    if vitals.respiratory_rate is not None and vitals.respiratory_rate > 20:
        sirs += 1
        factors.append("Respiratory rate > 20")
    if any("wbc" in lab.casefold() and (">12" in lab or "<4" in lab) for lab in profile.recent_labs):
        sirs += 1
        factors.append("WBC abnormality")

    if qsofa >= 3:
        level = RiskLevel.CRITICAL
    elif qsofa >= 2:
        level = RiskLevel.HIGH
    elif sirs >= 2 or qsofa >= 1:
        level = RiskLevel.MEDIUM
    else:
        level = RiskLevel.LOW

    observed = sum(
        v is not None
        for v in (vitals.respiratory_rate, vitals.systolic_bp, vitals.temperature_f, vitals.heart_rate)
    )
    weighted = (qsofa / 3) * 60 + (sirs / 4) * 40
    return _score("sepsis", weighted, 100, level, factors, observed / 4)


def calculate_readmission_risk(profile: PatientProfile) -> RiskScore:
    score = 0
    factors: list[str] = []
    age = profile.age
    med_count = len(profile.medications)
    condition_count = len(profile.conditions)

    if age is not None and age >= 75:
        score += 3
        factors.append("Age >= 75 years")
    elif age is not None and age >= 65:
        score += 2
        factors.append("Age >= 65 years")

    if med_count >= 10:
        score += 3
        factors.append("Polypharmacy (>=10 medications)")
    elif med_count >= 5:
        score += 2
        factors.append("Multiple medications (>=5)")

    if condition_count >= 5:
        score += 3
        factors.append("Multiple chronic conditions")
    elif condition_count >= 3:
        score += 2
        factors.append("Multiple comorbidities")

    if _any_contains(profile.conditions, *HIGH_RISK_CONDITIONS):
        score += 2
        factors.append("High-risk chronic conditions")

    if _contains(profile.social_history, "alone", "isolation"):
        score += 2
        factors.append("Social isolation")

    if score >= 8:
        level = RiskLevel.HIGH
    elif score >= 5:
        level = RiskLevel.MEDIUM
    else:
        level = RiskLevel.LOW

    confidence = 1.0 if age is not None else 0.7
    return _score("readmission", score, 13, level, factors, confidence)


def calculate_medication_risk(profile: PatientProfile) -> RiskScore:
    score = 0
    factors: list[str] = []
    med_count = len(profile.medications)

    if med_count >= 10:
        score += 4
        factors.append("Polypharmacy (>=10 medications)")
    elif med_count >= 5:
        score += 2
        factors.append("Multiple medications (>=5)")

    if _any_contains(profile.medications, *HIGH_RISK_MEDICATIONS):
        score += 3
        factors.append("High-risk medications present")

    if profile.age is not None and profile.age >= 75:
        score += 2
        factors.append("Advanced age (>=75)")

    if _any_contains(profile.conditions, "kidney", "liver"):
        score += 2
        factors.append("Renal or hepatic impairment")

    if _any_contains(profile.conditions, "dementia", "cognitive"):
        score += 2
        factors.append("Cognitive impairment")

    if score >= 8:
        level = RiskLevel.HIGH
    elif score >= 5:
        level = RiskLevel.MEDIUM
    else:
        level = RiskLevel.LOW

    confidence = 1.0 if profile.medications else 0.6
    return _score("medication", score, 13, level, factors, confidence)


def calculate_pressure_ulcer_risk(profile: PatientProfile) -> RiskScore:
    """Braden-style deductions from a full score of 23; lower means more risk."""
    braden = 23
    factors: list[str] = []
    status = profile.functional_status
    cognitive = _any_contains(profile.conditions, "dementia", "cognitive")

    if cognitive:
        braden -= 2
        factors.append("Impaired sensory perception")
    if _any_contains(profile.conditions, "incontinence"):
        braden -= 2
        factors.append("Moisture exposure")
    if _contains(status, "wheelchair", "bedbound"):
        braden -= 3
        factors.append("Limited mobility")
    elif _contains(status, "assistance"):
        braden -= 1
        factors.append("Reduced activity")
    if _contains(status, "wheelchair"):
        braden -= 2
        factors.append("Impaired mobility")
    if cognitive:
        braden -= 1
        factors.append("Potential nutrition issues")
    if _contains(status, "assistance"):
        braden -= 1
        factors.append("Friction and shear risk")

    if braden <= 9:
        level = RiskLevel.HIGH
    elif braden <= 12:
        level = RiskLevel.MEDIUM
    else:
        level = RiskLevel.LOW

    confidence = 1.0 if status else 0.6
    return _score("pressure-ulcer", 23 - braden, 17, level, factors, confidence)


def calculate_comprehensive_risk(profile: PatientProfile) -> dict[str, RiskScore]:
    """Run every calculator; the result feeds the aggregator."""
    scores = (
        calculate_fall_risk(profile),
        calculate_sepsis_risk(profile),
        calculate_readmission_risk(profile),
        calculate_medication_risk(profile),
        calculate_pressure_ulcer_risk(profile),
    )
    return {score.risk_type: score for score in scores}
