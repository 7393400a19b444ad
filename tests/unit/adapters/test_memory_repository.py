"""Tests for the in-memory repository adapter."""

from __future__ import annotations

import pytest
from pydantic import BaseModel

from adapters.memory import InMemoryRepository
from risk_engine.domain.models import RecordStatus


class Note(BaseModel):
    id: str
    patient_id: str
    status: RecordStatus = RecordStatus.ACTIVE
    score: int | None = None
    tags: list[str] = []


@pytest.fixture
def repo() -> InMemoryRepository[Note]:
    return InMemoryRepository[Note]("notes")


async def _seed(repo: InMemoryRepository[Note]) -> None:
    await repo.save(Note(id="n1", patient_id="p1", score=30))
    await repo.save(Note(id="n2", patient_id="p1", score=10))
    await repo.save(Note(id="n3", patient_id="p1"))
    await repo.save(Note(id="n4", patient_id="p2", score=50, status=RecordStatus.ARCHIVED))


@pytest.mark.asyncio
async def test_save_and_find_by_id_return_copies(repo: InMemoryRepository[Note]) -> None:
    note = Note(id="n1", patient_id="p1", tags=["a"])
    await repo.save(note)
    note.tags.append("mutated after save")

    stored = await repo.find_by_id("n1")
    assert stored is not None
    assert stored.tags == ["a"]

    stored.tags.append("mutated after read")
    again = await repo.find_by_id("n1")
    assert again is not None
    assert again.tags == ["a"]


@pytest.mark.asyncio
async def test_missing_id_returns_none(repo: InMemoryRepository[Note]) -> None:
    assert await repo.find_by_id("nope") is None


@pytest.mark.asyncio
async def test_find_matches_enums_by_value(repo: InMemoryRepository[Note]) -> None:
    await _seed(repo)

    archived = await repo.find({"status": "archived"})
    active_p1 = await repo.find({"patient_id": "p1", "status": RecordStatus.ACTIVE})

    assert [n.id for n in archived.items] == ["n4"]
    assert active_p1.total == 3


@pytest.mark.asyncio
async def test_sort_puts_missing_values_last(repo: InMemoryRepository[Note]) -> None:
    await _seed(repo)

    ascending = await repo.find({"patient_id": "p1"}, sort="score")
    descending = await repo.find({"patient_id": "p1"}, sort="-score")

    assert [n.id for n in ascending.items] == ["n2", "n1", "n3"]
    assert [n.id for n in descending.items] == ["n1", "n2", "n3"]


@pytest.mark.asyncio
async def test_pagination(repo: InMemoryRepository[Note]) -> None:
    await _seed(repo)

    page = await repo.find({}, sort="id", page=2, limit=3)

    assert [n.id for n in page.items] == ["n4"]
    assert page.total == 4
    assert page.pages == 2

    with pytest.raises(ValueError):
        await repo.find({}, page=0)


@pytest.mark.asyncio
async def test_update_many_patches_matches(repo: InMemoryRepository[Note]) -> None:
    await _seed(repo)

    count = await repo.update_many({"patient_id": "p1"}, {"status": RecordStatus.ARCHIVED})

    assert count == 3
    assert (await repo.find({"status": "archived"})).total == 4


@pytest.mark.asyncio
async def test_save_requires_an_id(repo: InMemoryRepository[Note]) -> None:
    with pytest.raises(ValueError, match="no id"):
        await repo.save(Note(id="", patient_id="p1"))
