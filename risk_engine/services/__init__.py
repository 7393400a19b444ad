"""
Services for the clinical risk engine.

This package contains scoring, risk aggregation, progress tracking, trend
analysis and prediction, the resilience primitives, and the service facade
that ties them together.
"""

from .facade import ClinicalEngineService, ErrorInfo, ServiceResponse, create_service
from .prediction import PredictiveModel
from .progress import ProgressGoalTracker
from .resilience import ResilienceLayer
from .result import Result
from .risk_aggregation import RiskAssessmentAggregator
from .scoring import AssessmentScoringEngine
from .trends import TrendAnalyzer

__all__ = [
    "AssessmentScoringEngine",
    "ClinicalEngineService",
    "ErrorInfo",
    "PredictiveModel",
    "ProgressGoalTracker",
    "ResilienceLayer",
    "Result",
    "RiskAssessmentAggregator",
    "ServiceResponse",
    "TrendAnalyzer",
    "create_service",
]
