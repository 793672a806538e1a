"""Unit tests for plain listings: recent, by importance and an entry's associations."""

import pytest
from conftest import axis

from associative_memory.models.memory import MemoryEntry


async def _put(storage, content, i, created_at, importance=0.5, scope="team", owner="core") -> MemoryEntry:
    entry = MemoryEntry(scope=scope, scope_owner_id=owner, content=content, importance=importance, created_at=created_at)
    await storage.insert_entry(entry, axis(i))
    return entry


class TestGetRecent:
    @pytest.mark.asyncio
    async def test_newest_first_within_partition(self, memory_service, storage):
        old = await _put(storage, "standup at 9", 0, created_at=1_000.0)
        new = await _put(storage, "standup moved to 10", 1, created_at=2_000.0)
        await _put(storage, "other team note", 2, created_at=3_000.0, owner="infra")

        recent = await memory_service.get_recent("team", "core")

        assert [e.id for e in recent] == [new.id, old.id]

    @pytest.mark.asyncio
    async def test_limit(self, memory_service, storage):
        await _put(storage, "a", 0, created_at=1.0)
        await _put(storage, "b", 1, created_at=2.0)
        assert len(await memory_service.get_recent("team", "core", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_owner_required(self, memory_service):
        with pytest.raises(ValueError):
            await memory_service.get_recent("team", None)


class TestGetByImportance:
    @pytest.mark.asyncio
    async def test_threshold_and_order(self, memory_service, storage):
        await _put(storage, "lunch spot", 0, created_at=1.0, importance=0.2)
        key = await _put(storage, "prod credentials rotate monthly", 1, created_at=2.0, importance=0.9)
        mid = await _put(storage, "release branch naming", 2, created_at=3.0, importance=0.6)

        important = await memory_service.get_by_importance("team", "core", min_importance=0.5)

        assert [e.id for e in important] == [key.id, mid.id]


class TestGetAssociations:
    @pytest.mark.asyncio
    async def test_edges_touching_entry(self, memory_service, associations):
        await associations.upsert_association("a", "b", 0.8)
        await associations.upsert_association("c", "d", 0.5)

        edges = await memory_service.get_associations("a")

        assert [(e.other("a"), e.weight) for e in edges] == [("b", 0.8)]
