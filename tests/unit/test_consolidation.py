"""
Unit tests for memory consolidation.

Tests the consolidation cycle: decay persistence, pruning, duplicate
merging and association cleanup, plus per-phase fault isolation. Runs
against the in-memory storage backend and association store.
"""

import time
from unittest.mock import AsyncMock, patch

import pytest
from conftest import axis, blend

from associative_memory.config import ConsolidationSettings
from associative_memory.models.memory import MemoryEntry
from associative_memory.services.consolidation_service import ConsolidationService

HOUR = 3600.0

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def consolidation(storage, associations, decay):
    return ConsolidationService(storage, associations, decay, ConsolidationSettings())


async def _put(storage, content, vector, owner="alice", **fields) -> MemoryEntry:
    now = time.time()
    values = {"importance": 0.5, "strength": 1.0, "created_at": now, "last_accessed_at": now}
    values.update(fields)
    entry = MemoryEntry(scope="personal", scope_owner_id=owner, content=content, **values)
    await storage.insert_entry(entry, vector)
    return entry


# =============================================================================
# Prune
# =============================================================================


class TestPrune:
    @pytest.mark.asyncio
    async def test_forgotten_unimportant_entry_removed(self, consolidation, storage):
        forgotten = await _put(storage, "old trivia", axis(0), strength=0.02, importance=0.2)
        protected = await _put(storage, "critical allergy", axis(1), strength=0.02, importance=0.85)

        result = await consolidation.consolidate()

        assert result.memories_pruned == 1
        assert await storage.get_entry(forgotten.id) is None
        assert await storage.get_entry(protected.id) is not None

    @pytest.mark.asyncio
    async def test_consolidation_authored_entries_are_protected(self, consolidation, storage):
        summary = await _put(storage, "weekly rollup", axis(0), strength=0.02, importance=0.2, source="consolidation")

        result = await consolidation.consolidate()

        assert result.memories_pruned == 0
        assert await storage.get_entry(summary.id) is not None

    @pytest.mark.asyncio
    async def test_decay_is_evaluated_not_stored_strength(self, consolidation, storage):
        # Stored strength is high but a year of idleness has faded it
        stale = await _put(
            storage, "one-off remark", axis(0), strength=0.9, importance=0.0, last_accessed_at=time.time() - 8760 * HOUR
        )

        result = await consolidation.consolidate()

        assert result.memories_pruned == 1
        assert await storage.get_entry(stale.id) is None

    @pytest.mark.asyncio
    async def test_pruned_entry_edges_removed(self, consolidation, storage, associations):
        forgotten = await _put(storage, "old trivia", axis(0), strength=0.02, importance=0.2)
        kept = await _put(storage, "related fact", axis(1))
        await associations.upsert_association(forgotten.id, kept.id, 0.9)

        await consolidation.consolidate()

        assert await associations.get_associations([kept.id]) == []


# =============================================================================
# Deduplicate
# =============================================================================


class TestDeduplicate:
    @pytest.mark.asyncio
    async def test_near_duplicates_merged_into_stronger(self, consolidation, storage):
        winner = await _put(storage, "likes dark mode", axis(0), importance=0.7, strength=0.8, access_count=3)
        loser = await _put(storage, "likes dark themes", blend(0, 1, 0.97), importance=0.5, access_count=1)

        result = await consolidation.consolidate()

        assert result.duplicates_found == 1
        assert result.memories_merged == 1
        assert await storage.get_entry(loser.id) is None
        merged = await storage.get_entry(winner.id)
        assert merged.strength == pytest.approx(0.85)
        assert merged.access_count == 4

    @pytest.mark.asyncio
    async def test_loser_edges_move_to_winner(self, consolidation, storage, associations):
        winner = await _put(storage, "likes dark mode", axis(0), importance=0.9)
        loser = await _put(storage, "likes dark themes", blend(0, 1, 0.97), importance=0.1)
        shared = await _put(storage, "uses vim", axis(5))
        other = await _put(storage, "works nights", axis(6))
        await associations.upsert_association(winner.id, shared.id, 0.4)
        await associations.upsert_association(loser.id, shared.id, 0.6)
        await associations.upsert_association(loser.id, other.id, 0.7)

        await consolidation.consolidate()

        weights = {e.other(winner.id): e.weight for e in await associations.get_associations([winner.id])}
        # Winner's own edge is kept on conflict
        assert weights == {shared.id: pytest.approx(0.4), other.id: pytest.approx(0.7)}
        assert await associations.get_associations([loser.id]) == []

    @pytest.mark.asyncio
    async def test_lost_boost_races_keep_both_entries(self, consolidation, storage, associations):
        winner = await _put(storage, "likes dark mode", axis(0), importance=0.9, access_count=2)
        loser = await _put(storage, "likes dark themes", blend(0, 1, 0.97), importance=0.1, access_count=7)
        other = await _put(storage, "works nights", axis(6))
        await associations.upsert_association(loser.id, other.id, 0.7)

        with patch.object(storage, "update_entry", AsyncMock(return_value=False)):
            removed = await consolidation._merge_pair(winner.id, loser.id)

        assert removed is None
        assert await storage.get_entry(loser.id) is not None
        assert (await storage.get_entry(winner.id)).access_count == 2
        assert [e.other(loser.id) for e in await associations.get_associations([loser.id])] == [other.id]

        # The next cycle completes the merge with the full access count
        assert await consolidation._merge_pair(winner.id, loser.id) == loser.id
        assert (await storage.get_entry(winner.id)).access_count == 9
        assert await storage.get_entry(loser.id) is None

    @pytest.mark.asyncio
    async def test_below_threshold_not_merged(self, consolidation, storage):
        await _put(storage, "likes dark mode", axis(0))
        await _put(storage, "likes dark terminals", blend(0, 1, 0.93))

        result = await consolidation.consolidate()

        assert result.duplicates_found == 0
        assert await storage.count_entries() == 2

    @pytest.mark.asyncio
    async def test_partitions_never_merged(self, consolidation, storage):
        await _put(storage, "likes dark mode", axis(0), owner="alice")
        await _put(storage, "likes dark mode", axis(0), owner="bob")

        result = await consolidation.consolidate()

        assert result.memories_merged == 0
        assert await storage.count_entries() == 2

    @pytest.mark.asyncio
    async def test_duplicate_cap_respected(self, storage, associations, decay):
        service = ConsolidationService(storage, associations, decay, ConsolidationSettings(max_duplicates_per_run=1))
        for owner in ("alice", "bob", "carol"):
            await _put(storage, "likes dark mode", axis(0), owner=owner)
            await _put(storage, "likes dark themes", blend(0, 1, 0.99), owner=owner)

        result = await service.consolidate()

        assert result.duplicates_found == 1
        assert await storage.count_entries() == 5


# =============================================================================
# Association cleanup and cycle behaviour
# =============================================================================


class TestAssociationCleanup:
    @pytest.mark.asyncio
    async def test_orphans_and_weak_edges_removed(self, consolidation, storage, associations):
        a = await _put(storage, "likes dark mode", axis(0))
        b = await _put(storage, "uses vim", axis(5))
        c = await _put(storage, "works nights", axis(6))
        await associations.upsert_association(a.id, "22222222-2222-2222-2222-222222222222", 0.9)
        await associations.upsert_association(a.id, b.id, 0.05)
        await associations.upsert_association(a.id, c.id, 0.5)

        result = await consolidation.consolidate()

        assert result.associations_cleaned == 2
        edges = await associations.get_associations([a.id])
        assert [e.other(a.id) for e in edges] == [c.id]


class TestCycle:
    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, consolidation, storage):
        await _put(storage, "old trivia", axis(0), strength=0.02, importance=0.2)
        await _put(storage, "likes dark mode", axis(1))
        await _put(storage, "likes dark themes", blend(1, 2, 0.97))

        first = await consolidation.consolidate()
        second = await consolidation.consolidate()

        assert first.memories_pruned == 1 and first.memories_merged == 1
        assert second.memories_pruned == 0
        assert second.duplicates_found == 0
        assert second.associations_cleaned == 0

    @pytest.mark.asyncio
    async def test_failed_phase_does_not_stop_others(self, consolidation, storage, decay):
        forgotten = await _put(storage, "old trivia", axis(0), strength=0.02, importance=0.2)

        with patch.object(decay, "persist_decay", AsyncMock(side_effect=RuntimeError("disk full"))):
            result = await consolidation.consolidate()

        assert not result.success
        assert result.errors == ["decay: disk full"]
        assert result.memories_pruned == 1
        assert await storage.get_entry(forgotten.id) is None
        assert result.to_dict()["success"] is False

    @pytest.mark.asyncio
    async def test_idle_entries_have_decay_persisted(self, consolidation, storage, decay):
        idle = await _put(storage, "likes dark mode", axis(0), last_accessed_at=time.time() - 48 * HOUR)

        result = await consolidation.consolidate()

        assert result.memories_decayed == 1
        assert (await storage.get_entry(idle.id)).strength < 1.0
