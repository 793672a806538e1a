"""
Association store contract.

Edges are undirected and weighted; one edge per unordered pair. Every mutating
call is a single atomic write from the caller's point of view, so an abandoned
request never leaves a half-written edge behind.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable

from ..models.memory import MemoryAssociation


class AssociationStore(ABC):
    @abstractmethod
    async def initialize(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def upsert_association(self, source_id: str, target_id: str, weight: float) -> MemoryAssociation:
        """Create the edge or raise its weight to *weight*; never lowers an existing weight.

        Returns the edge as stored after the merge.
        """

    @abstractmethod
    async def get_associations(self, entry_ids: Iterable[str]) -> list[MemoryAssociation]:
        """Every edge touching any of *entry_ids*, each edge once."""

    @abstractmethod
    async def repoint(self, loser_id: str, winner_id: str) -> int:
        """Move the loser's edges onto the winner, then drop the loser's node.

        An edge the winner already has keeps its weight (first writer wins);
        the loser–winner edge itself is discarded. Returns the number of edges moved.
        """

    @abstractmethod
    async def delete_entries(self, entry_ids: Iterable[str]) -> int:
        """Remove the nodes for *entry_ids* and all their edges. Returns edges removed."""

    @abstractmethod
    async def list_entry_ids(self) -> set[str]:
        """Ids of every entry the graph holds a node for."""

    @abstractmethod
    async def prune_weak(self, threshold: float) -> int:
        """Delete edges with weight below *threshold*. Returns edges removed."""

    @abstractmethod
    async def count_associations(self) -> int: ...
