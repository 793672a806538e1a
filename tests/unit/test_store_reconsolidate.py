"""
Unit tests for the write path: store, reconsolidation and auto-linking.

Vectors come from a table-driven fake encoder, so every similarity in these
scenarios is chosen exactly.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from conftest import axis, blend

from associative_memory.exceptions import ConcurrencyConflictError, EmbeddingError

DARK = "User prefers dark mode"
DARK_EDITORS = "User prefers dark mode in all editors"
THEME = "User likes high-contrast themes"
BIRTHDAY = "User's birthday is in March"


@pytest.fixture
def table(encoder):
    encoder.table.update(
        {
            DARK: axis(0),
            DARK_EDITORS: blend(0, 1, 0.95),
            THEME: blend(0, 2, 0.8),
            BIRTHDAY: axis(5),
        }
    )
    return encoder.table


class TestStoreNew:
    @pytest.mark.asyncio
    async def test_first_store_creates_entry(self, memory_service, storage, table):
        result = await memory_service.store("personal", "alice", DARK, memory_type="preference", importance=0.6)

        assert result.action == "created"
        assert not result.reconsolidated
        assert result.entry.strength == 1.0
        assert result.entry.access_count == 0
        assert result.entry.decay_rate == pytest.approx(0.02)
        assert result.entry.memory_type == "preference"
        assert await storage.count_entries() == 1

    @pytest.mark.asyncio
    async def test_importance_is_clamped(self, memory_service, table):
        result = await memory_service.store("personal", "alice", DARK, importance=1.7)
        assert result.entry.importance == 1.0

    @pytest.mark.asyncio
    async def test_global_scope_drops_owner(self, memory_service, table):
        result = await memory_service.store("global", "ignored", DARK)
        assert result.entry.scope_owner_id is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "scope,owner,content",
        [
            ("personal", None, DARK),
            ("team", "", DARK),
            ("galaxy", "alice", DARK),
            ("personal", "alice", "   "),
        ],
    )
    async def test_invalid_input_rejected(self, memory_service, storage, table, scope, owner, content):
        with pytest.raises(ValueError):
            await memory_service.store(scope, owner, content)
        assert await storage.count_entries() == 0

    @pytest.mark.asyncio
    async def test_partitions_are_isolated(self, memory_service, storage, table):
        await memory_service.store("personal", "alice", DARK)
        result = await memory_service.store("personal", "bob", DARK)

        assert result.action == "created"
        assert await storage.count_entries() == 2

    @pytest.mark.asyncio
    async def test_embedding_failure_stores_nothing(self, memory_service, storage, encoder):
        with patch.object(encoder, "encode", side_effect=RuntimeError("model offline")):
            with pytest.raises(EmbeddingError):
                await memory_service.store("personal", "alice", DARK)
        assert await storage.count_entries() == 0


class TestReconsolidation:
    @pytest.mark.asyncio
    async def test_near_duplicate_updates_in_place(self, memory_service, storage, table):
        first = await memory_service.store("personal", "alice", DARK, importance=0.7)

        second = await memory_service.store("personal", "alice", DARK_EDITORS, importance=0.4)

        assert second.reconsolidated
        assert second.entry.id == first.entry.id
        assert second.nearest_similarity == pytest.approx(0.95, abs=1e-5)
        stored = await storage.get_entry(first.entry.id)
        assert stored.content == DARK_EDITORS
        assert stored.importance == pytest.approx(0.7)
        assert stored.strength == 1.0
        assert stored.access_count == 1
        assert await storage.count_entries() == 1

    @pytest.mark.asyncio
    async def test_storing_same_content_twice_keeps_one_entry(self, memory_service, storage, table):
        await memory_service.store("personal", "alice", DARK)
        again = await memory_service.store("personal", "alice", DARK)

        assert again.reconsolidated
        assert await storage.count_entries() == 1

    @pytest.mark.asyncio
    async def test_vector_replaced_with_new_content(self, memory_service, storage, table):
        first = await memory_service.store("personal", "alice", DARK)
        second = await memory_service.store("personal", "alice", DARK_EDITORS)

        reembed = second.effect("reembed")
        assert reembed is not None and reembed.ok
        nearest = await storage.find_nearest("personal", "alice", table[DARK_EDITORS], k=1)
        assert nearest[0][0].id == first.entry.id
        assert nearest[0][1] == pytest.approx(1.0, abs=1e-5)

    @pytest.mark.asyncio
    async def test_lost_races_raise_conflict(self, memory_service, storage, table):
        await memory_service.store("personal", "alice", DARK)

        with patch.object(storage, "update_entry", AsyncMock(return_value=False)):
            with pytest.raises(ConcurrencyConflictError):
                await memory_service.store("personal", "alice", DARK_EDITORS)

        assert (await storage.list_recent("personal", "alice", 5))[0].content == DARK


class TestConcurrentStores:
    @pytest.mark.asyncio
    async def test_near_identical_stores_converge_to_one_entry(self, memory_service, storage, table):
        contents = [DARK, DARK_EDITORS] * 3

        results = await asyncio.gather(*(memory_service.store("personal", "alice", c) for c in contents))

        assert sorted(r.action for r in results) == ["created"] + ["reconsolidated"] * 5
        assert len({r.entry.id for r in results}) == 1
        assert await storage.count_entries() == 1
        assert (await storage.get_entry(results[0].entry.id)).access_count == 5

    @pytest.mark.asyncio
    async def test_partition_locks_released_after_stores(self, memory_service, table):
        await asyncio.gather(
            memory_service.store("personal", "alice", DARK),
            memory_service.store("personal", "bob", DARK),
            memory_service.store("team", "core", BIRTHDAY),
        )

        assert len(memory_service._partition_locks) == 0


class TestAutoLink:
    @pytest.mark.asyncio
    async def test_related_entry_is_linked(self, memory_service, associations, table):
        dark = await memory_service.store("personal", "alice", DARK)
        theme = await memory_service.store("personal", "alice", THEME)

        assert theme.action == "created"
        assert theme.effect("auto_link").detail == {"linked": 1}
        edges = await associations.get_associations([theme.entry.id])
        assert len(edges) == 1
        assert edges[0].other(theme.entry.id) == dark.entry.id
        # floor + (1 - floor) * (0.8 - 0.7) / 0.3
        assert edges[0].weight == pytest.approx(0.3 + 0.7 / 3, abs=1e-4)

    @pytest.mark.asyncio
    async def test_unrelated_entry_is_not_linked(self, memory_service, associations, table):
        await memory_service.store("personal", "alice", DARK)
        birthday = await memory_service.store("personal", "alice", BIRTHDAY)

        assert birthday.effect("auto_link").detail == {"linked": 0}
        assert await associations.count_associations() == 0

    @pytest.mark.asyncio
    async def test_graph_failure_does_not_fail_store(self, memory_service, storage, associations, table):
        await memory_service.store("personal", "alice", DARK)

        with patch.object(associations, "upsert_association", AsyncMock(side_effect=ConnectionError("down"))):
            result = await memory_service.store("personal", "alice", THEME)

        assert result.action == "created"
        effect = result.effect("auto_link")
        assert not effect.ok
        assert "down" in effect.error
        assert await storage.count_entries() == 2
