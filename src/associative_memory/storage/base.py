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
Abstract base class for memory storage backends.

The storage layer owns persistence only: entries with their vectors,
episodic summaries with theirs, and scoped goals. All scoring, decay and linking logic lives in
the service layer so it can run unchanged against any backend.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable

from ..models.goals import Goal
from ..models.memory import ConversationSummary, EpisodeMatch, MemoryEntry

# A batch from iter_entries; the vector is None unless requested
EntryBatch = list[tuple[MemoryEntry, list[float] | None]]


class MemoryStorage(ABC):
    """Persistence contract for memory entries, their embeddings, episodes and goals."""

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare collections/indexes. Safe to call more than once."""

    @abstractmethod
    async def close(self) -> None:
        """Release client resources. Idempotent."""

    # ── Entries ──────────────────────────────────────────────────────────

    @abstractmethod
    async def insert_entry(self, entry: MemoryEntry, vector: list[float]) -> None:
        """Write a new entry and its embedding as one point."""

    @abstractmethod
    async def get_entry(self, entry_id: str) -> MemoryEntry | None:
        """Return a snapshot of the entry, or None if it does not exist."""

    @abstractmethod
    async def get_entries(self, entry_ids: Iterable[str]) -> dict[str, MemoryEntry]:
        """Fetch several entries; missing ids are simply absent from the result."""

    @abstractmethod
    async def update_entry(self, entry: MemoryEntry, expected_version: int) -> bool:
        """Compare-and-set write of an entry's fields (the vector is untouched).

        The write happens only if the stored version still equals
        *expected_version*; the stored copy then carries ``expected_version + 1``.

        Returns:
            True if written, False if the entry changed or disappeared meanwhile.
        """

    @abstractmethod
    async def replace_vector(self, entry_id: str, vector: list[float]) -> bool:
        """Swap an entry's embedding. Returns False if the entry is gone."""

    @abstractmethod
    async def delete_entries(self, entry_ids: Iterable[str]) -> int:
        """Delete entries (and their embeddings). Returns how many existed."""

    async def delete_entry(self, entry_id: str) -> bool:
        return await self.delete_entries([entry_id]) > 0

    @abstractmethod
    async def find_nearest(
        self,
        scope: str,
        owner_id: str | None,
        vector: list[float],
        k: int,
        exclude_ids: Iterable[str] | None = None,
    ) -> list[tuple[MemoryEntry, float]]:
        """Top-*k* entries in the ``(scope, owner)`` partition by cosine similarity.

        Results are ordered by descending similarity; ties keep the backend's order.
        """

    @abstractmethod
    def iter_entries(self, batch_size: int = 200, with_vectors: bool = False) -> AsyncIterator[EntryBatch]:
        """Walk every entry in batches (used by maintenance jobs)."""

    @abstractmethod
    async def existing_ids(self, entry_ids: Iterable[str]) -> set[str]:
        """Subset of *entry_ids* that still exist."""

    @abstractmethod
    async def list_recent(self, scope: str, owner_id: str | None, limit: int) -> list[MemoryEntry]:
        """Entries in a partition, newest first."""

    @abstractmethod
    async def list_by_importance(
        self, scope: str, owner_id: str | None, min_importance: float, limit: int
    ) -> list[MemoryEntry]:
        """Entries in a partition with importance ≥ *min_importance*, most important first."""

    @abstractmethod
    async def count_entries(self) -> int:
        """Total number of entries across all partitions."""

    # ── Episodes ─────────────────────────────────────────────────────────

    @abstractmethod
    async def insert_episode(self, episode: ConversationSummary, vector: list[float]) -> None:
        """Persist an episodic summary with its embedding."""

    @abstractmethod
    async def find_nearest_episodes(
        self,
        vector: list[float],
        user_id: str | None,
        team_id: str | None,
        k: int,
    ) -> list[EpisodeMatch]:
        """Nearest episodes owned by *user_id* or *team_id* (either matches)."""

    # ── Goals ────────────────────────────────────────────────────────────

    @abstractmethod
    async def insert_goal(self, goal: Goal) -> None:
        """Persist a new goal."""

    @abstractmethod
    async def get_goal(self, goal_id: str) -> Goal | None:
        """Return a snapshot of the goal, or None if it does not exist."""

    @abstractmethod
    async def update_goal(self, goal: Goal, expected_version: int) -> bool:
        """Compare-and-set write of a goal, with the same contract as :meth:`update_entry`."""

    @abstractmethod
    async def list_goals(self, scope: str, owner_id: str, status: str | None = None) -> list[Goal]:
        """Goals of a ``(scope, owner)`` partition, optionally filtered by status (unordered)."""
