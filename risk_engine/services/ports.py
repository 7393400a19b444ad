"""
Interfaces for the engine's external collaborators.

Why Protocol over ABC: Structural typing, easier test doubles, less coupling.
Concrete implementations live outside the core (see `adapters`).
"""

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel

EntityT = TypeVar("EntityT", bound=BaseModel)


@dataclass
class Page(Generic[EntityT]):
    items: list[EntityT]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0


class Repository(Protocol[EntityT]):
    """
    Durable storage for one entity type.

    Failures raised from any method are treated as transient and retried
    with backoff by the service layer.
    """

    async def find_by_id(self, entity_id: str) -> EntityT | None: ...

    async def find(
        self,
        query: Mapping[str, Any],
        sort: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[EntityT]:
        """
        Equality-match `query` against entity fields.

        `sort` names a field, prefixed with ``-`` for descending order.
        Pages are 1-based.
        """
        ...

    async def save(self, entity: EntityT) -> EntityT: ...

    async def update_many(self, filter: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
        """Apply `patch` to every entity matching `filter`; returns the count updated."""
        ...


@dataclass(frozen=True)
class DomainEvent:
    event_type: str
    payload: Mapping[str, Any]
    options: Mapping[str, Any] = field(default_factory=dict)
    published_at: datetime = field(default_factory=lambda: datetime.now(UTC))


EventHandler = Callable[[DomainEvent], Awaitable[None] | None]


class EventPublisher(Protocol):
    """
    Best-effort event transport, chosen at construction time.

    Publishing is fire-and-forget: the primary operation never depends on it.
    """

    async def publish(
        self,
        event_type: str,
        payload: Mapping[str, Any],
        options: Mapping[str, Any] | None = None,
    ) -> None: ...
