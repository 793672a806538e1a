"""
Consolidation Service - periodic maintenance of the memory store.

Mimics sleep consolidation: persist decay, forget what has faded, merge
near-duplicates that slipped past the write path, and clean the association
graph. Each phase is fault-isolated; a failed phase is logged and recorded
while the remaining phases still run.
"""

import logging
import time

from ..config import ConsolidationSettings
from ..graph.base import AssociationStore
from ..models.memory import MemoryEntry
from ..models.results import ConsolidationResult
from ..storage.base import MemoryStorage
from .decay_service import DecayService

logger = logging.getLogger(__name__)

MERGE_MAX_RETRIES = 3


class ConsolidationService:
    """Runs consolidation cycles against a storage backend and association store."""

    def __init__(
        self,
        storage: MemoryStorage,
        associations: AssociationStore,
        decay: DecayService,
        config: ConsolidationSettings | None = None,
    ):
        self.storage = storage
        self.associations = associations
        self.decay = decay
        self.config = config or ConsolidationSettings()

    async def consolidate(self, now: float | None = None) -> ConsolidationResult:
        """
        Run one consolidation cycle.

        Phases:
        1. Decay persistence: write effective strength back for idle entries
        2. Prune: delete forgotten, unprotected entries
        3. Deduplicate: merge entry pairs above the dedup threshold
        4. Association cleanup: drop orphaned and weak edges

        Idempotent per cycle and safe to run alongside live store/search traffic.
        """
        now = time.time() if now is None else now
        result = ConsolidationResult()

        try:
            result.memories_decayed = await self.decay.persist_decay(now=now, batch_size=self.config.batch_size)
        except Exception as e:
            logger.error(f"Consolidation decay persistence failed: {e}")
            result.errors.append(f"decay: {e}")

        try:
            result.memories_pruned = await self._prune(now)
        except Exception as e:
            logger.error(f"Consolidation pruning failed: {e}")
            result.errors.append(f"prune: {e}")

        try:
            result.duplicates_found, result.memories_merged = await self._deduplicate()
        except Exception as e:
            logger.error(f"Consolidation duplicate detection failed: {e}")
            result.errors.append(f"dedup: {e}")

        try:
            result.associations_cleaned = await self._cleanup_associations()
        except Exception as e:
            logger.error(f"Consolidation association cleanup failed: {e}")
            result.errors.append(f"associations: {e}")

        logger.info(f"Consolidation complete: {result.to_dict()}")
        return result

    # ── Prune ────────────────────────────────────────────────────────────

    def _is_forgotten(self, entry: MemoryEntry, now: float) -> bool:
        return (
            self.decay.effective_strength(entry, now) < self.config.prune_threshold
            and entry.importance < self.config.protected_importance
            and entry.source != "consolidation"
        )

    async def _prune(self, now: float) -> int:
        candidates: list[str] = []
        async for batch in self.storage.iter_entries(batch_size=self.config.batch_size):
            candidates.extend(entry.id for entry, _ in batch if self._is_forgotten(entry, now))
        if not candidates:
            return 0

        # Re-check fresh copies; anything recalled since the scan is spared
        fresh = await self.storage.get_entries(candidates)
        doomed = [entry_id for entry_id, entry in fresh.items() if self._is_forgotten(entry, now)]
        pruned = await self.storage.delete_entries(doomed)

        try:
            await self.associations.delete_entries(doomed)
        except Exception as e:
            # Left for the association cleanup phase
            logger.warning(f"Edge removal for pruned memories failed (non-fatal): {e}")

        logger.info(f"Pruned {pruned} forgotten memories")
        return pruned

    # ── Deduplicate ──────────────────────────────────────────────────────

    def _merge_score(self, entry: MemoryEntry) -> float:
        return entry.importance + entry.strength + entry.access_count * self.config.access_count_weight

    async def _deduplicate(self) -> tuple[int, int]:
        """
        Find and merge near-duplicate pairs within each partition.

        Returns:
            (pairs found, pairs merged)
        """
        found = 0
        merged = 0
        removed: set[str] = set()
        cap = self.config.max_duplicates_per_run

        async for batch in self.storage.iter_entries(batch_size=self.config.batch_size, with_vectors=True):
            for entry, vector in batch:
                if found >= cap:
                    return found, merged
                if entry.id in removed or vector is None:
                    continue

                neighbors = await self.storage.find_nearest(
                    entry.scope,
                    entry.scope_owner_id,
                    vector,
                    k=self.config.dedup_neighbors,
                    exclude_ids=removed | {entry.id},
                )
                for candidate, similarity in neighbors:
                    if similarity < self.config.dedup_threshold:
                        break
                    found += 1
                    loser_id = await self._merge_pair(entry.id, candidate.id)
                    if loser_id is not None:
                        removed.add(loser_id)
                        merged += 1
                    if loser_id == entry.id or found >= cap:
                        break

        return found, merged

    async def _merge_pair(self, first_id: str, second_id: str) -> str | None:
        """
        Merge two duplicates; the higher combined score survives.

        The winner absorbs the loser's access count and gets a small strength
        boost, then the loser's edges move to the winner (the winner's own
        edges win on conflict) and the loser is deleted. If the boost loses
        every compare-and-set race, nothing is deleted and the pair is left
        for the next cycle.

        Returns:
            The removed entry id, or None if the pair was skipped
        """
        try:
            pair = await self.storage.get_entries([first_id, second_id])
            if len(pair) < 2:
                return None
            a, b = pair[first_id], pair[second_id]
            winner, loser = (a, b) if self._merge_score(a) >= self._merge_score(b) else (b, a)

            if not await self._absorb(winner.id, loser):
                logger.warning(f"Merge boost for {winner.id[:8]} lost {MERGE_MAX_RETRIES} races, pair left for next cycle")
                return None

            await self.associations.repoint(loser.id, winner.id)
            await self.storage.delete_entries([loser.id])

            logger.info(f"Merged duplicate: kept {winner.id[:8]}, removed {loser.id[:8]}")
            return loser.id
        except Exception as e:
            logger.warning(f"Failed to merge duplicate pair: {e}")
            return None

    async def _absorb(self, winner_id: str, loser: MemoryEntry) -> bool:
        """Compare-and-set the winner's strength boost and access-count transfer."""
        for _ in range(MERGE_MAX_RETRIES):
            current = await self.storage.get_entry(winner_id)
            if current is None:
                return False
            boosted = current.model_copy(
                update={
                    "strength": min(1.0, current.strength + self.config.merge_strength_boost),
                    "access_count": current.access_count + loser.access_count,
                }
            )
            if await self.storage.update_entry(boosted, current.version):
                return True
        return False

    # ── Association cleanup ──────────────────────────────────────────────

    async def _cleanup_associations(self) -> int:
        graph_ids = await self.associations.list_entry_ids()
        existing: set[str] = set()
        ids = sorted(graph_ids)
        for start in range(0, len(ids), self.config.batch_size):
            existing |= await self.storage.existing_ids(ids[start : start + self.config.batch_size])

        orphans = graph_ids - existing
        cleaned = await self.associations.delete_entries(orphans) if orphans else 0
        cleaned += await self.associations.prune_weak(self.config.min_association_weight)
        logger.info(f"Cleaned {cleaned} stale associations")
        return cleaned
