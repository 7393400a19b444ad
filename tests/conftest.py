"""Shared fixtures: controllable clocks and a fully in-memory service."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import pytest

from adapters.memory import InMemoryRepository, LocalEventPublisher
from risk_engine.config import AppConfig, ResilienceConfig, RetryConfig, get_config
from risk_engine.domain.models import Assessment, ProgressRecord
from risk_engine.services.facade import ClinicalEngineService
from risk_engine.services.resilience import ResilienceLayer

START = datetime(2024, 3, 3, 9, 0, tzinfo=UTC)  # a Sunday


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    """Wall clock for domain timestamps, advanced by hand."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(autouse=True)
def clear_config_cache() -> Iterator[None]:
    """Ensure get_config cache is cleared before and after each test."""
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        resilience=ResilienceConfig(
            retry=RetryConfig(max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0, jitter_seconds=0.0)
        )
    )


@pytest.fixture
def assessment_repo() -> InMemoryRepository[Assessment]:
    return InMemoryRepository[Assessment]("assessments")


@pytest.fixture
def progress_repo() -> InMemoryRepository[ProgressRecord]:
    return InMemoryRepository[ProgressRecord]("progress_records")


@pytest.fixture
def events() -> LocalEventPublisher:
    return LocalEventPublisher()


@pytest.fixture
def service(
    app_config: AppConfig,
    assessment_repo: InMemoryRepository[Assessment],
    progress_repo: InMemoryRepository[ProgressRecord],
    events: LocalEventPublisher,
    wall_clock: FakeWallClock,
    fake_clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> ClinicalEngineService:
    return ClinicalEngineService(
        assessments=assessment_repo,
        progress_records=progress_repo,
        config=app_config,
        event_publisher=events,
        clock=wall_clock,
        resilience=ResilienceLayer(app_config.resilience, clock=fake_clock, sleep=recording_sleep),
    )
