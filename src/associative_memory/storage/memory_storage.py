# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
In-process storage backend.

Keeps entries, vectors, episodes and goals in dictionaries and answers
nearest-neighbor queries with a numpy cosine scan. Used for tests and ephemeral
runs; every read returns copies so callers never alias stored state.
"""

import logging
from collections.abc import AsyncIterator, Iterable

import numpy as np

from ..embeddings.service import EmbeddingService
from ..models.goals import Goal
from ..models.memory import ConversationSummary, EpisodeMatch, MemoryEntry
from ..models.validators import partition_key
from .base import EntryBatch, MemoryStorage

logger = logging.getLogger(__name__)


class InMemoryStorage(MemoryStorage):
    """Dictionary-backed :class:`MemoryStorage`."""

    def __init__(self) -> None:
        self._entries: dict[str, MemoryEntry] = {}
        self._vectors: dict[str, np.ndarray] = {}
        self._episodes: dict[str, ConversationSummary] = {}
        self._episode_vectors: dict[str, np.ndarray] = {}
        self._goals: dict[str, Goal] = {}

    async def initialize(self) -> None:
        logger.info("Using in-memory storage backend")

    async def close(self) -> None:
        return None

    # ── Entries ──────────────────────────────────────────────────────────

    async def insert_entry(self, entry: MemoryEntry, vector: list[float]) -> None:
        if entry.id in self._entries:
            raise ValueError(f"Entry {entry.id} already exists")
        self._entries[entry.id] = entry.model_copy(deep=True)
        self._vectors[entry.id] = np.asarray(vector, dtype=np.float32)

    async def get_entry(self, entry_id: str) -> MemoryEntry | None:
        entry = self._entries.get(entry_id)
        return entry.model_copy(deep=True) if entry is not None else None

    async def get_entries(self, entry_ids: Iterable[str]) -> dict[str, MemoryEntry]:
        return {i: self._entries[i].model_copy(deep=True) for i in entry_ids if i in self._entries}

    async def update_entry(self, entry: MemoryEntry, expected_version: int) -> bool:
        current = self._entries.get(entry.id)
        if current is None or current.version != expected_version:
            return False
        self._entries[entry.id] = entry.model_copy(update={"version": expected_version + 1}, deep=True)
        return True

    async def replace_vector(self, entry_id: str, vector: list[float]) -> bool:
        if entry_id not in self._entries:
            return False
        self._vectors[entry_id] = np.asarray(vector, dtype=np.float32)
        return True

    async def delete_entries(self, entry_ids: Iterable[str]) -> int:
        deleted = 0
        for entry_id in set(entry_ids):
            if self._entries.pop(entry_id, None) is not None:
                self._vectors.pop(entry_id, None)
                deleted += 1
        return deleted

    async def find_nearest(
        self,
        scope: str,
        owner_id: str | None,
        vector: list[float],
        k: int,
        exclude_ids: Iterable[str] | None = None,
    ) -> list[tuple[MemoryEntry, float]]:
        if k <= 0:
            return []
        key = partition_key(scope, owner_id)
        excluded = set(exclude_ids or ())
        ids = [i for i, e in self._entries.items() if e.partition == key and i not in excluded and i in self._vectors]
        ranked = EmbeddingService.top_k_similar(vector, [self._vectors[i] for i in ids], k)
        return [(self._entries[ids[idx]].model_copy(deep=True), sim) for idx, sim in ranked]

    async def iter_entries(self, batch_size: int = 200, with_vectors: bool = False) -> AsyncIterator[EntryBatch]:
        # Snapshot the id list so deletions during the walk are tolerated
        ids = list(self._entries)
        for start in range(0, len(ids), batch_size):
            batch: EntryBatch = []
            for entry_id in ids[start : start + batch_size]:
                entry = self._entries.get(entry_id)
                if entry is None:
                    continue
                vector = self._vectors[entry_id].tolist() if with_vectors and entry_id in self._vectors else None
                batch.append((entry.model_copy(deep=True), vector))
            if batch:
                yield batch

    async def existing_ids(self, entry_ids: Iterable[str]) -> set[str]:
        return {i for i in entry_ids if i in self._entries}

    def _partition(self, scope: str, owner_id: str | None) -> list[MemoryEntry]:
        key = partition_key(scope, owner_id)
        return [e for e in self._entries.values() if e.partition == key]

    async def list_recent(self, scope: str, owner_id: str | None, limit: int) -> list[MemoryEntry]:
        entries = sorted(self._partition(scope, owner_id), key=lambda e: e.created_at or 0.0, reverse=True)
        return [e.model_copy(deep=True) for e in entries[: max(0, limit)]]

    async def list_by_importance(
        self, scope: str, owner_id: str | None, min_importance: float, limit: int
    ) -> list[MemoryEntry]:
        entries = [e for e in self._partition(scope, owner_id) if e.importance >= min_importance]
        entries.sort(key=lambda e: e.importance, reverse=True)
        return [e.model_copy(deep=True) for e in entries[: max(0, limit)]]

    async def count_entries(self) -> int:
        return len(self._entries)

    # ── Episodes ─────────────────────────────────────────────────────────

    async def insert_episode(self, episode: ConversationSummary, vector: list[float]) -> None:
        self._episodes[episode.id] = episode.model_copy(deep=True)
        self._episode_vectors[episode.id] = np.asarray(vector, dtype=np.float32)

    async def find_nearest_episodes(
        self,
        vector: list[float],
        user_id: str | None,
        team_id: str | None,
        k: int,
    ) -> list[EpisodeMatch]:
        if k <= 0 or (not user_id and not team_id):
            return []
        ids = [
            i
            for i, ep in self._episodes.items()
            if (user_id and ep.user_id == user_id) or (team_id and ep.team_id == team_id)
        ]
        ranked = EmbeddingService.top_k_similar(vector, [self._episode_vectors[i] for i in ids], k)
        return [EpisodeMatch(episode=self._episodes[ids[idx]].model_copy(deep=True), similarity=sim) for idx, sim in ranked]

    # ── Goals ────────────────────────────────────────────────────────────

    async def insert_goal(self, goal: Goal) -> None:
        if goal.id in self._goals:
            raise ValueError(f"Goal {goal.id} already exists")
        self._goals[goal.id] = goal.model_copy(deep=True)

    async def get_goal(self, goal_id: str) -> Goal | None:
        goal = self._goals.get(goal_id)
        return goal.model_copy(deep=True) if goal else None

    async def update_goal(self, goal: Goal, expected_version: int) -> bool:
        current = self._goals.get(goal.id)
        if current is None or current.version != expected_version:
            return False
        self._goals[goal.id] = goal.model_copy(update={"version": expected_version + 1}, deep=True)
        return True

    async def list_goals(self, scope: str, owner_id: str, status: str | None = None) -> list[Goal]:
        return [
            g.model_copy(deep=True)
            for g in self._goals.values()
            if g.scope == scope and g.scope_owner_id == owner_id and (status is None or g.status == status)
        ]
