"""
Unit tests for deep recall (multi-hop spreading activation).

The weak-seed scenario keeps the association chain out of the vector
candidate pool (overfetch factor 1, chain nodes orthogonal to the query):

    S (sim 0.3, strength 0.5, importance 0.2)  -> 0.355
    D1..D4 distractors (sim 0.2, strength 0.1)  -> 0.21
    S - N1 - N2 - N3 - N4, every edge weight 1.0

A chain node at hop h scores 0.6 * 0.355 * 0.5**h + 0.4 * intrinsic, where
intrinsic = (effective strength 1.0 + importance 0.5 + frequency 0.0) / 3.
"""

import time

import pytest
from conftest import axis, blend

from associative_memory.config import SearchSettings
from associative_memory.models.memory import MemoryEntry
from associative_memory.services.memory_service import MemoryService

QUERY = "what did we decide about the deployment pipeline"
SEED_SCORE = 0.355
INTRINSIC = 0.5


def _deep_score(hop: int) -> float:
    return 0.6 * SEED_SCORE * 0.5**hop + 0.4 * INTRINSIC


async def _put(storage, content, vector, **fields) -> MemoryEntry:
    now = time.time()
    values = {"importance": 0.5, "strength": 1.0, "created_at": now, "last_accessed_at": now}
    values.update(fields)
    entry = MemoryEntry(scope="personal", scope_owner_id="alice", content=content, **values)
    await storage.insert_entry(entry, vector)
    return entry


@pytest.fixture
def service(storage, embeddings, associations, decay):
    return MemoryService(
        storage,
        embeddings,
        associations,
        decay=decay,
        search_config=SearchSettings(overfetch_factor=1, reinforce_on_recall=False),
    )


@pytest.fixture
def chain(encoder, storage, associations):
    encoder.table[QUERY] = axis(0)

    async def build():
        seed = await _put(storage, "pipeline runs on merge", blend(0, 1, 0.3), strength=0.5, importance=0.2)
        for i in range(4):
            await _put(storage, f"distractor {i}", blend(0, 2 + i, 0.2), strength=0.1, importance=0.0)
        nodes = []
        previous = seed
        for i in range(4):
            node = await _put(storage, f"chain node {i + 1}", axis(8 + i))
            await associations.upsert_association(previous.id, node.id, 1.0)
            nodes.append(node)
            previous = node
        return seed, nodes

    return build


class TestWeakSeeds:
    @pytest.mark.asyncio
    async def test_activation_spreads_up_to_max_hops(self, service, chain):
        seed, (n1, n2, n3, n4) = await chain()

        results = await service.deep_search(QUERY, "personal", "alice", limit=5, max_hops=3)

        by_id = {r.id: r for r in results}
        assert results[0].id == seed.id
        assert results[0].final_score < 0.5
        assert n4.id not in by_id
        for hop, node in enumerate((n1, n2, n3), start=1):
            assert by_id[node.id].hops == hop
            assert by_id[node.id].origin == "association"
            assert by_id[node.id].final_score == pytest.approx(_deep_score(hop), abs=1e-3)

    @pytest.mark.asyncio
    async def test_activation_damps_with_each_hop(self, service, chain):
        seed, (n1, n2, n3, _) = await chain()

        results = await service.deep_search(QUERY, "personal", "alice", limit=5, max_hops=3)

        by_id = {r.id: r for r in results}
        activations = [by_id[n.id].activation for n in (n1, n2, n3)]
        assert activations == pytest.approx([SEED_SCORE * 0.5, SEED_SCORE * 0.25, SEED_SCORE * 0.125], abs=1e-3)

    @pytest.mark.asyncio
    async def test_single_hop_limit(self, service, chain):
        seed, (n1, n2, _, _) = await chain()

        results = await service.deep_search(QUERY, "personal", "alice", limit=5, max_hops=1)

        ids = {r.id for r in results}
        assert n1.id in ids
        assert n2.id not in ids

    @pytest.mark.asyncio
    async def test_zero_hops_returns_vector_seeds(self, service, chain):
        seed, nodes = await chain()

        results = await service.deep_search(QUERY, "personal", "alice", limit=5, max_hops=0)

        assert results[0].id == seed.id
        assert len(results) == 5
        assert not {n.id for n in nodes} & {r.id for r in results}
        assert all(r.origin == "vector" for r in results)

    @pytest.mark.asyncio
    async def test_cycles_visit_each_entry_once(self, service, chain, associations):
        seed, (n1, n2, _, _) = await chain()
        await associations.upsert_association(n2.id, seed.id, 1.0)

        results = await service.deep_search(QUERY, "personal", "alice", limit=8, max_hops=3)

        ids = [r.id for r in results]
        assert len(ids) == len(set(ids))
        assert {r.id: r.hops for r in results}[n2.id] == 1

    @pytest.mark.asyncio
    async def test_results_are_always_reinforced(self, service, storage, chain):
        seed, (n1, _, _, _) = await chain()

        results = await service.deep_search(QUERY, "personal", "alice", limit=5, max_hops=3)
        await service.wait_for_background()

        assert (await storage.get_entry(seed.id)).access_count == 1
        assert (await storage.get_entry(n1.id)).access_count == 1
        assert len(results) == 5


class TestConfidentSeeds:
    @pytest.mark.asyncio
    async def test_strong_top_hit_uses_one_hop_expansion(self, memory_service, storage, associations, encoder):
        encoder.table[QUERY] = axis(0)
        top = await _put(storage, "deploys go through the blue-green pipeline", blend(0, 1, 0.85))
        neighbor = await _put(storage, "rollbacks take five minutes", axis(4), strength=0.2, importance=0.1)
        await _put(storage, "staging mirrors production", blend(0, 2, 0.3), strength=0.3, importance=0.1)
        await associations.upsert_association(top.id, neighbor.id, 1.0)

        results = await memory_service.deep_search(QUERY, "personal", "alice", limit=2)

        assert results[0].id == top.id
        assert results[0].final_score >= 0.5
        lifted = results[1]
        assert lifted.id == neighbor.id
        # One-hop rule: activation itself, no intrinsic blend
        assert lifted.final_score == pytest.approx(results[0].final_score * 0.5, abs=1e-6)


class TestEdgeCases:
    @pytest.mark.asyncio
    async def test_zero_limit(self, service, chain):
        await chain()
        assert await service.deep_search(QUERY, "personal", "alice", limit=0) == []

    @pytest.mark.asyncio
    async def test_empty_partition(self, service, encoder):
        encoder.table[QUERY] = axis(0)
        assert await service.deep_search(QUERY, "personal", "alice") == []
