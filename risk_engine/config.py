"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Clinical thresholds and resilience limits are data, not constants
- Secure defaults (no API keys in code; AI enrichment is off without one)
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Load environment variables from .env file
load_dotenv()


class AIProviderConfig(BaseModel):
    """AI insight provider configuration. Optional: the engine runs without it."""

    openai_api_key: str | None = Field(None, description="OpenAI API key")
    insights_model: str = Field(
        default="openai:gpt-4o-mini", description="Model used for clinical insight generation"
    )

    default_temperature: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Default temperature for AI models"
    )
    default_timeout_seconds: float = Field(
        default=30.0, gt=0.0, description="Default timeout for AI models"
    )

    @field_validator("openai_api_key")
    def validate_api_key(cls, v):
        if not v or v == "your-openai-api-key-here":
            return None
        if not v.startswith("sk-"):
            raise ValueError("AI provider API key must start with 'sk-'")
        return v

    @property
    def enabled(self) -> bool:
        return self.openai_api_key is not None


class RateLimitConfig(BaseModel):
    """Fixed-window limit applied per caller identity."""

    max_requests: int = Field(default=100, gt=0, description="Requests admitted per window")
    window_seconds: float = Field(default=60.0, gt=0.0, description="Window length")


class CacheConfig(BaseModel):
    ttl_seconds: float = Field(default=300.0, gt=0.0, description="Entry time-to-live")
    max_size: int = Field(default=1000, gt=0, description="Maximum number of cached entries")


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = Field(
        default=5, gt=0, description="Consecutive failures before the breaker opens"
    )
    recovery_timeout_seconds: float = Field(
        default=60.0, gt=0.0, description="Time open before a half-open probe is allowed"
    )


class RetryConfig(BaseModel):
    """Exponential backoff with jitter for repository calls."""

    max_attempts: int = Field(default=3, gt=0, description="Total attempts including the first")
    base_delay_seconds: float = Field(default=1.0, ge=0.0, description="Delay before 2nd attempt")
    max_delay_seconds: float = Field(default=10.0, ge=0.0, description="Backoff ceiling")
    jitter_seconds: float = Field(default=0.25, ge=0.0, description="Random extra delay bound")

    @model_validator(mode="after")
    def ceiling_above_base(self) -> "RetryConfig":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class TimeoutConfig(BaseModel):
    operation_timeout_seconds: float = Field(
        default=30.0, gt=0.0, description="Timeout for a single dependency call"
    )


class ResilienceConfig(BaseModel):
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    timeout: TimeoutConfig = Field(default_factory=TimeoutConfig)


class AnalyticsConfig(BaseModel):
    """Trend and prediction tuning."""

    trend_epsilon: float = Field(
        default=1e-9, ge=0.0, description="Slopes within +/- epsilon classify as stable"
    )
    significance_threshold: float = Field(
        default=0.5, ge=0.0, le=1.0, description="|r| above this is significant"
    )
    improving_damping: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Weight of a positive slope in predictions"
    )
    declining_damping: float = Field(
        default=0.3, ge=0.0, le=1.0, description="Weight of a negative slope in predictions"
    )
    alert_value_threshold: float = Field(
        default=75.0, ge=0.0, le=100.0, description="Risk values at or above this raise alerts"
    )
    significant_change_percent: float = Field(
        default=10.0, gt=0.0, description="Percent change flagged as significant progress"
    )
    stalled_after_days: int = Field(
        default=7, gt=0, description="Days without progress before a goal counts as stalled"
    )


class ScoringConfig(BaseModel):
    thresholds_file: str | None = Field(
        default=None, description="JSON file overriding scale bands and item values"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    ai_provider: AIProviderConfig = Field(default_factory=AIProviderConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _format_to_literal(val: str | None, debug: bool) -> Literal["json", "console"]:
        if val is None:
            return "console" if debug else "json"
        return "console" if val.strip().lower() == "console" else "json"

    # Detect environment
    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    ai_config = AIProviderConfig(
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        insights_model=os.getenv("INSIGHTS_MODEL", "openai:gpt-4o-mini"),
        default_timeout_seconds=float(os.getenv("INSIGHTS_TIMEOUT_SECONDS", "30.0")),
    )

    resilience_config = ResilienceConfig(
        rate_limit=RateLimitConfig(
            max_requests=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100")),
            window_seconds=float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60")),
        ),
        cache=CacheConfig(
            ttl_seconds=float(os.getenv("CACHE_TTL_SECONDS", "300")),
            max_size=int(os.getenv("CACHE_MAX_SIZE", "1000")),
        ),
        circuit_breaker=CircuitBreakerConfig(
            failure_threshold=int(os.getenv("CIRCUIT_BREAKER_THRESHOLD", "5")),
            recovery_timeout_seconds=float(os.getenv("CIRCUIT_BREAKER_TIMEOUT_SECONDS", "60")),
        ),
        retry=RetryConfig(
            max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
            base_delay_seconds=float(os.getenv("RETRY_BASE_DELAY_SECONDS", "1.0")),
        ),
        timeout=TimeoutConfig(
            operation_timeout_seconds=float(os.getenv("OPERATION_TIMEOUT_SECONDS", "30")),
        ),
    )

    analytics_config = AnalyticsConfig(
        significance_threshold=float(os.getenv("TREND_SIGNIFICANCE_THRESHOLD", "0.5")),
        alert_value_threshold=float(os.getenv("RISK_ALERT_VALUE_THRESHOLD", "75")),
    )

    scoring_config = ScoringConfig(thresholds_file=os.getenv("SCORING_THRESHOLDS_FILE") or None)

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format=_format_to_literal(os.getenv("LOG_FORMAT"), debug),
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        ai_provider=ai_config,
        resilience=resilience_config,
        analytics=analytics_config,
        scoring=scoring_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def print_config_summary(config: AppConfig | None = None) -> None:
    """Print configuration summary for debugging."""
    config = config or get_config()
    resilience = config.resilience

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level} ({config.logging.format})")

    print("\nAI INSIGHTS")
    print(f"Enabled: {config.ai_provider.enabled}")
    print(f"Model: {config.ai_provider.insights_model}")

    print("\nRESILIENCE")
    print(
        f"Rate Limit: {resilience.rate_limit.max_requests} req / "
        f"{resilience.rate_limit.window_seconds}s"
    )
    print(f"Cache: ttl={resilience.cache.ttl_seconds}s max={resilience.cache.max_size}")
    print(
        f"Circuit Breaker: threshold={resilience.circuit_breaker.failure_threshold} "
        f"timeout={resilience.circuit_breaker.recovery_timeout_seconds}s"
    )
    print(f"Retry: attempts={resilience.retry.max_attempts}")

    print("\nSCORING")
    print(f"Threshold overrides: {config.scoring.thresholds_file or 'defaults'}")


if __name__ == "__main__":
    print_config_summary()
