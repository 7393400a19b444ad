"""
Tests for AI insight generation.

These tests avoid real API calls by patching the underlying Agent.run to return
pre-constructed results with an `.output` attribute.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from risk_engine.config import AIProviderConfig
from risk_engine.domain.errors import OperationTimeoutError
from risk_engine.services.insights import (
    AgentInsightGenerator,
    ClinicalInsights,
    InsightsConfig,
    build_insight_generator,
)


class _FakeAgentResult:
    """Minimal stand-in for pydantic-ai AgentRunResult with .output"""

    def __init__(self, output: Any) -> None:
        self.output = output


@pytest.fixture
def domain_data() -> dict[str, Any]:
    return {
        "patient_id": "p-1",
        "overall_level": "high",
        "scores": {"fall-risk": {"value": 82.0, "level": "high"}},
    }


@pytest.mark.asyncio
async def test_returns_structured_insights(domain_data: dict[str, Any]) -> None:
    generator = AgentInsightGenerator(InsightsConfig())
    expected = ClinicalInsights(
        recommendations=["Hourly rounding", "Bed in lowest position"],
        alerts=["High fall risk"],
        narrative="Fall risk is high and rising.",
    )
    prompts: list[str] = []

    async def fake_run(*args, **kwargs):
        prompts.append(kwargs["user_prompt"])
        return _FakeAgentResult(expected)

    generator.agent.run = fake_run  # type: ignore[assignment]

    result = await generator.generate_insights(domain_data)

    assert result == expected
    assert '"fall-risk"' in prompts[0]
    assert len(generator.history) == 1
    assert generator.history[0]["alerts"] == 1


@pytest.mark.asyncio
async def test_empty_domain_data_skips_the_agent() -> None:
    generator = AgentInsightGenerator(InsightsConfig())

    async def fail_run(*args, **kwargs):
        raise AssertionError("agent should not be called")

    generator.agent.run = fail_run  # type: ignore[assignment]

    assert await generator.generate_insights({}) is None


@pytest.mark.asyncio
async def test_provider_failure_propagates(domain_data: dict[str, Any]) -> None:
    generator = AgentInsightGenerator(InsightsConfig())

    async def fake_run(*args, **kwargs):
        raise RuntimeError("upstream 503")

    generator.agent.run = fake_run  # type: ignore[assignment]

    with pytest.raises(RuntimeError, match="upstream 503"):
        await generator.generate_insights(domain_data)
    assert len(generator.history) == 0


@pytest.mark.asyncio
async def test_timeout_raises_operation_timeout(domain_data: dict[str, Any]) -> None:
    generator = AgentInsightGenerator(InsightsConfig(timeout_seconds=0.01))

    async def slow_run(*args, **kwargs):
        await asyncio.sleep(1)
        return _FakeAgentResult(ClinicalInsights())

    generator.agent.run = slow_run  # type: ignore[assignment]

    with pytest.raises(OperationTimeoutError) as excinfo:
        await generator.generate_insights(domain_data)
    assert excinfo.value.dependency == "ai"
    assert excinfo.value.code == "OPERATION_TIMEOUT"


def test_insights_config_follows_provider() -> None:
    provider = AIProviderConfig(insights_model="openai:gpt-4o", default_temperature=0.3, default_timeout_seconds=5)

    config = InsightsConfig.from_provider(provider)

    assert config.model_name == "openai:gpt-4o"
    assert config.temperature == 0.3
    assert config.timeout_seconds == 5


def test_generator_disabled_without_api_key() -> None:
    assert build_insight_generator(AIProviderConfig(openai_api_key=None)) is None


def test_generator_built_with_api_key() -> None:
    generator = build_insight_generator(AIProviderConfig(openai_api_key="sk-test"))

    assert isinstance(generator, AgentInsightGenerator)
