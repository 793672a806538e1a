"""
Decay Service - query-time strength scoring and recall reinforcement.

Read-side helpers are pure and never touch storage. The two mutating jobs,
``on_batch_recall`` and ``persist_decay``, write through the storage
compare-and-set so they never clobber a concurrent reconsolidation or merge.
"""

import logging
import time
from collections.abc import Iterable

from ..config import DecaySettings
from ..models.memory import MemoryEntry
from ..storage.base import MemoryStorage
from ..utils.decay import (
    effective_strength,
    frequency_score,
    hours_between,
    recency_score,
    reinforced_strength,
    tightened_decay_rate,
)

logger = logging.getLogger(__name__)


class DecayService:
    """Forgetting curve, recency and frequency signals plus the recall/persist jobs."""

    def __init__(self, storage: MemoryStorage, config: DecaySettings | None = None):
        self.storage = storage
        self.config = config or DecaySettings()

    # ── Pure signals ─────────────────────────────────────────────────────

    def effective_strength(self, entry: MemoryEntry, now: float | None = None) -> float:
        return effective_strength(entry, now, self.config.importance_resistance)

    def recency_score(self, entry: MemoryEntry, now: float | None = None) -> float:
        return recency_score(entry, now, self.config.recency_half_life_hours)

    def frequency_score(self, entry: MemoryEntry) -> float:
        return frequency_score(entry.access_count, self.config.frequency_saturation)

    def reinforce(self, entry: MemoryEntry, now: float) -> MemoryEntry:
        """Copy of *entry* after one recall at *now* (not persisted)."""
        current = self.effective_strength(entry, now)
        return entry.model_copy(
            update={
                "strength": reinforced_strength(current, self.config.reinforcement_rate),
                "decay_rate": tightened_decay_rate(
                    entry.decay_rate, self.config.recall_decay_multiplier, self.config.min_decay_rate
                ),
                "access_count": entry.access_count + 1,
                "last_accessed_at": now,
            }
        )

    # ── Mutating jobs ────────────────────────────────────────────────────

    async def on_batch_recall(self, entry_ids: Iterable[str], now: float | None = None) -> int:
        """
        Record one recall for each distinct id.

        Duplicate ids in one batch count as a single recall; ids that no longer
        exist are skipped silently.

        Returns:
            Number of entries reinforced
        """
        now = time.time() if now is None else now
        reinforced = 0
        for entry_id in dict.fromkeys(entry_ids):
            for _ in range(self.config.recall_max_retries):
                entry = await self.storage.get_entry(entry_id)
                if entry is None:
                    break
                if await self.storage.update_entry(self.reinforce(entry, now), entry.version):
                    reinforced += 1
                    break
            else:
                logger.warning(f"Recall reinforcement for {entry_id[:8]} lost {self.config.recall_max_retries} races, skipped")
        return reinforced

    async def persist_decay(self, now: float | None = None, batch_size: int = 200) -> int:
        """
        Write effective strength back into stored strength for idle entries.

        Only entries idle longer than ``persist_after_hours`` and still above
        ``persist_min_strength`` are rewritten. ``last_accessed_at`` moves to *now*
        together with the new strength, so the elapsed time is never decayed twice.
        An entry that changes concurrently is left for the next cycle.

        Returns:
            Number of entries touched
        """
        now = time.time() if now is None else now
        touched = 0
        async for batch in self.storage.iter_entries(batch_size=batch_size):
            for entry, _ in batch:
                anchor = entry.last_accessed_at if entry.last_accessed_at is not None else entry.created_at
                if hours_between(anchor, now) <= self.config.persist_after_hours:
                    continue
                if entry.strength <= self.config.persist_min_strength:
                    continue
                decayed = entry.model_copy(
                    update={"strength": self.effective_strength(entry, now), "last_accessed_at": now}
                )
                if await self.storage.update_entry(decayed, entry.version):
                    touched += 1
        logger.info(f"Persisted decay for {touched} entries")
        return touched
