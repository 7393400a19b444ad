"""
Event publisher strategies.

`LocalEventPublisher` delivers to in-process subscribers and keeps a bounded
history; `NullEventPublisher` drops everything. Either can be handed to the
service facade at construction time.
"""

import inspect
from collections import defaultdict, deque
from collections.abc import Mapping
from typing import Any

import structlog

from risk_engine.services.ports import DomainEvent, EventHandler

logger = structlog.get_logger(__name__)

WILDCARD = "*"


class LocalEventPublisher:
    """In-process pub/sub. Handler failures are logged and never propagate."""

    def __init__(self, history_size: int = 1000) -> None:
        self._subscribers: defaultdict[str, list[EventHandler]] = defaultdict(list)
        self.history: deque[DomainEvent] = deque(maxlen=history_size)
        self.logger = logger.bind(component="local_event_publisher")

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Register `handler` for `event_type`, or for every event with ``"*"``."""
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(
        self,
        event_type: str,
        payload: Mapping[str, Any],
        options: Mapping[str, Any] | None = None,
    ) -> None:
        event = DomainEvent(event_type=event_type, payload=dict(payload), options=dict(options or {}))
        self.history.append(event)

        handlers = [*self._subscribers.get(event_type, []), *self._subscribers.get(WILDCARD, [])]
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error("event_handler_failed", event_type=event_type, error=str(e))

        self.logger.debug("event_published", event_type=event_type, handlers=len(handlers))

    def events_of(self, event_type: str) -> list[DomainEvent]:
        return [e for e in self.history if e.event_type == event_type]


class NullEventPublisher:
    """Discards events; used when no transport is configured."""

    async def publish(
        self,
        event_type: str,
        payload: Mapping[str, Any],
        options: Mapping[str, Any] | None = None,
    ) -> None:
        return None
