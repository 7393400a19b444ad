"""Tests for the event publisher adapters."""

from __future__ import annotations

import pytest

from adapters.memory import LocalEventPublisher, NullEventPublisher
from risk_engine.services.ports import DomainEvent


@pytest.mark.asyncio
async def test_delivers_to_type_and_wildcard_subscribers() -> None:
    publisher = LocalEventPublisher()
    typed: list[str] = []
    everything: list[str] = []

    publisher.subscribe("goal_completed", lambda e: typed.append(e.payload["goal_id"]))
    publisher.subscribe("*", lambda e: everything.append(e.event_type))

    await publisher.publish("goal_completed", {"goal_id": "g1"}, {"source": "test"})
    await publisher.publish("goal_added", {"goal_id": "g2"})

    assert typed == ["g1"]
    assert everything == ["goal_completed", "goal_added"]
    assert publisher.events_of("goal_completed")[0].options == {"source": "test"}


@pytest.mark.asyncio
async def test_async_handlers_are_awaited() -> None:
    publisher = LocalEventPublisher()
    seen: list[DomainEvent] = []

    async def handler(event: DomainEvent) -> None:
        seen.append(event)

    publisher.subscribe("assessment_created", handler)
    await publisher.publish("assessment_created", {"assessment_id": "a1"})

    assert len(seen) == 1


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others() -> None:
    publisher = LocalEventPublisher()
    delivered: list[str] = []

    def broken(event: DomainEvent) -> None:
        raise RuntimeError("subscriber bug")

    publisher.subscribe("risk_alerts_raised", broken)
    publisher.subscribe("risk_alerts_raised", lambda e: delivered.append(e.event_type))

    await publisher.publish("risk_alerts_raised", {"patient_id": "p1"})

    assert delivered == ["risk_alerts_raised"]


@pytest.mark.asyncio
async def test_unsubscribe_and_bounded_history() -> None:
    publisher = LocalEventPublisher(history_size=2)
    calls: list[str] = []

    def handler(event: DomainEvent) -> None:
        calls.append(event.event_type)

    publisher.subscribe("goal_added", handler)
    publisher.unsubscribe("goal_added", handler)
    for i in range(3):
        await publisher.publish("goal_added", {"n": i})

    assert calls == []
    assert [e.payload["n"] for e in publisher.history] == [1, 2]


@pytest.mark.asyncio
async def test_null_publisher_accepts_everything() -> None:
    assert await NullEventPublisher().publish("anything", {}) is None
