"""
In-memory repository used for development, demos and tests.

Entities are deep-copied on the way in and out, so callers can never mutate
stored state without going through `save`.
"""

import asyncio
from collections.abc import Mapping
from enum import Enum
from typing import Any, Generic

import structlog

from risk_engine.services.ports import EntityT, Page

logger = structlog.get_logger(__name__)


def _field_value(entity: Any, name: str) -> Any:
    value: Any = entity
    for part in name.split("."):
        value = getattr(value, part, None)
        if value is None:
            return None
    return value


def _comparable(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _matches(entity: Any, query: Mapping[str, Any]) -> bool:
    return all(
        _comparable(_field_value(entity, name)) == _comparable(expected)
        for name, expected in query.items()
    )


class InMemoryRepository(Generic[EntityT]):
    """Dict-backed implementation of the Repository protocol."""

    def __init__(self, name: str = "entities") -> None:
        self.name = name
        self._items: dict[str, EntityT] = {}
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component="memory_repository", collection=name)

    async def find_by_id(self, entity_id: str) -> EntityT | None:
        entity = self._items.get(entity_id)
        return entity.model_copy(deep=True) if entity is not None else None

    async def find(
        self,
        query: Mapping[str, Any],
        sort: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[EntityT]:
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be positive")

        matched = [e for e in self._items.values() if _matches(e, query)]
        if sort:
            descending = sort.startswith("-")
            field = sort.lstrip("+-")
            # None sorts last regardless of direction
            present = [e for e in matched if _field_value(e, field) is not None]
            absent = [e for e in matched if _field_value(e, field) is None]
            present.sort(key=lambda e: _comparable(_field_value(e, field)), reverse=descending)
            matched = present + absent

        start = (page - 1) * limit
        items = [e.model_copy(deep=True) for e in matched[start : start + limit]]
        return Page(items=items, total=len(matched), page=page, limit=limit)

    async def save(self, entity: EntityT) -> EntityT:
        entity_id = getattr(entity, "id", None)
        if not entity_id:
            raise ValueError(f"{self.name}: entity has no id")
        async with self._lock:
            self._items[entity_id] = entity.model_copy(deep=True)
        return entity.model_copy(deep=True)

    async def update_many(self, filter: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
        async with self._lock:
            updated = 0
            for entity_id, entity in list(self._items.items()):
                if _matches(entity, filter):
                    self._items[entity_id] = entity.model_copy(update=dict(patch), deep=True)
                    updated += 1
        self.logger.debug("entities_patched", count=updated, fields=sorted(patch))
        return updated

    def __len__(self) -> int:
        return len(self._items)
