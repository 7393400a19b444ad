"""
Tests for configuration management in `risk_engine/config.py`.

Covers:
- Environment parsing and debug defaults
- structlog renderer selection
- Logging level coercion to the expected Literal
- API key validation and the insights switch
- Resilience limits from the environment
- Scale threshold overrides
- get_config cache behavior
- AppConfig validation (debug only allowed in development)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog
from pydantic import ValidationError as PydanticValidationError

from risk_engine.config import (
    AIProviderConfig,
    AppConfig,
    LoggingConfig,
    RetryConfig,
    get_config,
    load_config_from_env,
)
from risk_engine.domain.models import RiskLevel, ToolType
from risk_engine.logging_setup import configure_logging
from risk_engine.scales import DEFAULT_SCALES, MORSE_SCALE, load_scales


def test_load_config_dev_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "dev")
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.delenv("LOG_FORMAT", raising=False)

    config = load_config_from_env()

    assert config.environment == "development"
    assert config.debug is True
    assert config.logging.format == "console"
    assert config.logging.level == "INFO"


def test_production_defaults_to_json_logs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "prod")
    monkeypatch.delenv("LOG_FORMAT", raising=False)

    config = load_config_from_env()

    assert config.environment == "production"
    assert config.debug is False
    assert config.logging.format == "json"


def test_logging_level_literal_coercion(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "staging")

    # Unknown level should coerce to INFO
    monkeypatch.setenv("LOG_LEVEL", "unknown")
    config = load_config_from_env()
    assert config.logging.level == "INFO"

    # Known level should pass through
    monkeypatch.setenv("LOG_LEVEL", "error")
    config = load_config_from_env()
    assert config.logging.level == "ERROR"


def test_resilience_limits_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "5")
    monkeypatch.setenv("CIRCUIT_BREAKER_THRESHOLD", "2")
    monkeypatch.setenv("CACHE_TTL_SECONDS", "15")

    config = load_config_from_env()

    assert config.resilience.rate_limit.max_requests == 5
    assert config.resilience.circuit_breaker.failure_threshold == 2
    assert config.resilience.cache.ttl_seconds == 15.0


def test_invalid_limit_fails_fast(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "0")

    with pytest.raises(PydanticValidationError):
        load_config_from_env()


def test_api_key_validation() -> None:
    assert AIProviderConfig(openai_api_key="your-openai-api-key-here").enabled is False
    assert AIProviderConfig(openai_api_key="sk-live").enabled is True

    with pytest.raises(ValueError, match="must start with 'sk-'"):
        AIProviderConfig(openai_api_key="pk-wrong")


def test_retry_ceiling_must_cover_base() -> None:
    with pytest.raises(ValueError, match="max_delay_seconds"):
        RetryConfig(base_delay_seconds=5.0, max_delay_seconds=1.0)


def test_get_config_cache(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "development")

    c1 = get_config()
    c2 = get_config()
    assert c1 is c2  # same object due to lru_cache


def test_app_config_debug_only_in_dev_validation() -> None:
    with pytest.raises(ValueError, match="debug mode is only allowed"):
        AppConfig(environment="production", debug=True)


class TestScaleOverrides:
    def test_defaults_without_file(self) -> None:
        assert load_scales(None) == DEFAULT_SCALES

    def test_file_replaces_only_named_tools(self, tmp_path: Path) -> None:
        morse = MORSE_SCALE.model_dump(mode="json")
        morse["bands"] = [
            {"level": "low", "min_total": 0, "risk": "low"},
            {"level": "high", "min_total": 35, "risk": "high"},
        ]
        path = tmp_path / "scales.json"
        path.write_text(json.dumps({"morse": morse}), encoding="utf-8")

        scales = load_scales(path)

        assert scales[ToolType.MORSE].band_for(40).risk == RiskLevel.HIGH
        assert scales[ToolType.BRADEN] is DEFAULT_SCALES[ToolType.BRADEN]

    def test_descending_bands_are_rejected(self, tmp_path: Path) -> None:
        morse = MORSE_SCALE.model_dump(mode="json")
        morse["bands"] = [
            {"level": "high", "min_total": 45, "risk": "high"},
            {"level": "low", "min_total": 0, "risk": "low"},
        ]
        path = tmp_path / "scales.json"
        path.write_text(json.dumps({"morse": morse}), encoding="utf-8")

        with pytest.raises(ValueError, match="strictly ascending"):
            load_scales(path)

    def test_items_must_match_the_tool(self, tmp_path: Path) -> None:
        braden = DEFAULT_SCALES[ToolType.BRADEN].model_dump(mode="json")
        braden["categories"] = [c for c in braden["categories"] if c["name"] != "nutrition"]
        braden["categories"].append({"name": "hydration", "allowed_values": [1, 2, 3, 4]})
        path = tmp_path / "scales.json"
        path.write_text(json.dumps({"braden": braden}), encoding="utf-8")

        with pytest.raises(ValueError, match="braden categories must be exactly"):
            load_scales(path)


class TestLoggingSetup:
    @pytest.fixture(autouse=True)
    def _restore_logging(self):
        root = logging.getLogger()
        level = root.level
        yield
        structlog.reset_defaults()
        root.setLevel(level)

    def test_json_renderer_and_level(self) -> None:
        configure_logging(LoggingConfig(level="WARNING", format="json"))

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert logging.getLogger().level == logging.WARNING

    def test_console_renderer(self) -> None:
        configure_logging(LoggingConfig(format="console"))

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
