"""
AI-generated clinical insights using Pydantic AI.

Key decisions:
- Structured output: the agent must return a validated ClinicalInsights model
- Failures propagate: provider errors and timeouts are logged and re-raised so
  the caller's circuit breaker sees them; the facade degrades them to None
- Never retried: a failed enrichment is simply skipped for that request
"""

import json
import textwrap
from collections import deque
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Protocol, cast

import structlog
from pydantic import BaseModel, Field
from pydantic_ai import Agent

from risk_engine.config import AIProviderConfig
from risk_engine.domain.errors import OperationTimeoutError
from risk_engine.services.resilience import with_timeout

logger = structlog.get_logger(__name__)


class ClinicalInsights(BaseModel):
    """Structured enrichment returned by the insight generator."""

    recommendations: list[str] = Field(default_factory=list, max_length=10)
    alerts: list[str] = Field(default_factory=list, max_length=10)
    narrative: str = Field(default="", max_length=2000)


class InsightGenerator(Protocol):
    """Produces recommendations, alerts and a narrative for domain data."""

    async def generate_insights(self, domain_data: Mapping[str, Any]) -> ClinicalInsights | None:
        """Return insights, or None when there is nothing to review. Provider failures raise."""
        ...


class InsightsConfig(BaseModel):
    model_name: str = "openai:gpt-4o-mini"
    temperature: float = Field(default=0.1, ge=0.0, le=1.0)
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    history_size: int = Field(default=100, gt=0)

    @classmethod
    def from_provider(cls, provider: AIProviderConfig) -> "InsightsConfig":
        return cls(
            model_name=provider.insights_model,
            temperature=provider.default_temperature,
            timeout_seconds=provider.default_timeout_seconds,
        )


class AgentInsightGenerator:
    """
    Clinical insight agent.

    Design principles:
    - Decision support only: it never changes scores, levels or goal status
    - Grounded: the prompt carries the computed scores and trends verbatim
    - Bounded: each call races the provider timeout; failures are logged and raised
    """

    def __init__(self, config: InsightsConfig | None = None) -> None:
        self.config = config or InsightsConfig()
        self.logger = logger.bind(component="insight_generator")
        self.history: deque[dict[str, Any]] = deque(maxlen=self.config.history_size)

        self.agent = Agent(
            model=self.config.model_name,
            output_type=ClinicalInsights,
            system_prompt=self._build_system_prompt(),
            # Resolve the provider on first run so construction never needs credentials
            defer_model_check=True,
        )

    def _build_system_prompt(self) -> str:
        return textwrap.dedent(
            """\
            You are a clinical nurse specialist supporting a care team with risk
            mitigation and care-plan progress reviews.

            You receive scores and trends that have already been computed by
            standardized instruments. Do not recompute or contradict them.

            Respond with:
            - recommendations: specific, evidence-based nursing actions
            - alerts: only findings that need attention within this shift
            - narrative: two or three sentences a clinician can read at a glance

            Keep recommendations actionable and avoid generic advice."""
        )

    def _build_user_prompt(self, domain_data: Mapping[str, Any]) -> str:
        body = json.dumps(domain_data, indent=2, sort_keys=True, default=str)
        return f"Review the following clinical data and provide insights.\n\n{body}"

    async def generate_insights(self, domain_data: Mapping[str, Any]) -> ClinicalInsights | None:
        if not domain_data:
            self.logger.warning("no_domain_data_provided")
            return None

        start_time = datetime.now(UTC)
        try:
            result = await with_timeout(
                self.agent.run(
                    user_prompt=self._build_user_prompt(domain_data),
                    message_history=[],
                ),
                self.config.timeout_seconds,
                "ai",
            )
            insights = cast(ClinicalInsights, cast(Any, result).output)

            duration = (datetime.now(UTC) - start_time).total_seconds()
            self.history.append(
                {
                    "generated_at": start_time,
                    "duration_seconds": round(duration, 3),
                    "recommendations": len(insights.recommendations),
                    "alerts": len(insights.alerts),
                }
            )
            self.logger.info(
                "insights_generated",
                recommendations=len(insights.recommendations),
                alerts=len(insights.alerts),
                duration_seconds=round(duration, 3),
            )
            return insights

        except OperationTimeoutError:
            self.logger.error("insight_generation_timeout", timeout_seconds=self.config.timeout_seconds)
            raise
        except Exception as e:
            self.logger.error("insight_generation_failed", error=str(e), error_type=type(e).__name__)
            raise


def build_insight_generator(provider: AIProviderConfig) -> InsightGenerator | None:
    """Agent-backed generator when an API key is configured, otherwise None."""
    if not provider.enabled:
        logger.info("insights_disabled", reason="no_api_key")
        return None
    return AgentInsightGenerator(InsightsConfig.from_provider(provider))
