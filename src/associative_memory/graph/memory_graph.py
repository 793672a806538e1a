"""In-process association graph (adjacency dictionaries)."""

import logging
from collections.abc import Iterable

from ..models.memory import MemoryAssociation
from .base import AssociationStore

logger = logging.getLogger(__name__)


class InMemoryAssociationStore(AssociationStore):
    """Dictionary-backed :class:`AssociationStore`.

    No method awaits between reading and writing its state, so each call is
    atomic with respect to other coroutines on the same loop.
    """

    def __init__(self) -> None:
        self._weights: dict[tuple[str, str], float] = {}
        self._adjacency: dict[str, set[str]] = {}

    async def initialize(self) -> None:
        logger.info("Using in-process association graph")

    async def close(self) -> None:
        return None

    @staticmethod
    def _key(a: str, b: str) -> tuple[str, str]:
        return (a, b) if a <= b else (b, a)

    def _link(self, a: str, b: str, weight: float) -> None:
        self._weights[self._key(a, b)] = weight
        self._adjacency.setdefault(a, set()).add(b)
        self._adjacency.setdefault(b, set()).add(a)

    def _unlink(self, a: str, b: str) -> None:
        self._weights.pop(self._key(a, b), None)
        for x, y in ((a, b), (b, a)):
            neighbors = self._adjacency.get(x)
            if neighbors is not None:
                neighbors.discard(y)
                if not neighbors:
                    del self._adjacency[x]

    async def upsert_association(self, source_id: str, target_id: str, weight: float) -> MemoryAssociation:
        edge = MemoryAssociation(source_id=source_id, target_id=target_id, weight=weight)
        key = (edge.source_id, edge.target_id)
        edge.weight = max(self._weights.get(key, 0.0), edge.weight)
        self._link(edge.source_id, edge.target_id, edge.weight)
        return edge

    async def get_associations(self, entry_ids: Iterable[str]) -> list[MemoryAssociation]:
        seen: set[tuple[str, str]] = set()
        edges = []
        for entry_id in entry_ids:
            for neighbor in self._adjacency.get(entry_id, ()):
                key = self._key(entry_id, neighbor)
                if key in seen:
                    continue
                seen.add(key)
                edges.append(MemoryAssociation(source_id=key[0], target_id=key[1], weight=self._weights[key]))
        return edges

    async def repoint(self, loser_id: str, winner_id: str) -> int:
        moved = 0
        for neighbor in list(self._adjacency.get(loser_id, ())):
            weight = self._weights[self._key(loser_id, neighbor)]
            self._unlink(loser_id, neighbor)
            if neighbor == winner_id or self._key(winner_id, neighbor) in self._weights:
                continue
            self._link(winner_id, neighbor, weight)
            moved += 1
        return moved

    async def delete_entries(self, entry_ids: Iterable[str]) -> int:
        removed = 0
        for entry_id in set(entry_ids):
            for neighbor in list(self._adjacency.get(entry_id, ())):
                self._unlink(entry_id, neighbor)
                removed += 1
        return removed

    async def list_entry_ids(self) -> set[str]:
        return set(self._adjacency)

    async def prune_weak(self, threshold: float) -> int:
        weak = [key for key, weight in self._weights.items() if weight < threshold]
        for a, b in weak:
            self._unlink(a, b)
        return len(weak)

    async def count_associations(self) -> int:
        return len(self._weights)
