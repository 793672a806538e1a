"""
FalkorDB graph client for the memory association graph.

Each mutation is a single Cypher statement; FalkorDB executes a statement
atomically, so concurrent upserts of the same pair converge on one edge
carrying the highest weight.
"""

import logging
import time
from collections.abc import Iterable

from falkordb.asyncio import FalkorDB
from redis.asyncio import BlockingConnectionPool

from ..models.memory import MemoryAssociation
from .base import AssociationStore
from .schema import ASSOCIATION_TYPE, SCHEMA_STATEMENTS

logger = logging.getLogger(__name__)


def _canonical(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a <= b else (b, a)


class GraphClient(AssociationStore):
    """
    Async FalkorDB client for the association graph.

    Reads run concurrently over a shared Redis connection pool.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        password: str | None = None,
        graph_name: str = "memory_associations",
        max_connections: int = 16,
    ):
        self.host = host
        self.port = port
        self.password = password
        self.graph_name = graph_name
        self.max_connections = max_connections

        self._pool: BlockingConnectionPool | None = None
        self._db: FalkorDB | None = None
        self._graph = None
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize connection pool, select graph, and apply schema."""
        if self._initialized:
            return

        self._pool = BlockingConnectionPool(
            host=self.host,
            port=self.port,
            password=self.password,
            max_connections=self.max_connections,
            timeout=None,
            decode_responses=True,
        )

        self._db = FalkorDB(connection_pool=self._pool)
        self._graph = self._db.select_graph(self.graph_name)

        for stmt in SCHEMA_STATEMENTS:
            try:
                await self._graph.query(stmt)
            except Exception as e:
                # Index already exists is not an error
                if "already indexed" not in str(e).lower():
                    logger.warning(f"Schema statement warning: {stmt} -> {e}")

        self._initialized = True
        logger.info(f"GraphClient initialized: {self.host}:{self.port}/{self.graph_name}")

    @property
    def graph(self):
        """Expose graph for direct query access."""
        if self._graph is None:
            raise RuntimeError("GraphClient not initialized. Call initialize() first.")
        return self._graph

    @staticmethod
    def _count(result) -> int:
        return int(result.result_set[0][0]) if result.result_set else 0

    # ── Writes (single statement each) ──────────────────────────────────

    async def upsert_association(self, source_id: str, target_id: str, weight: float) -> MemoryAssociation:
        edge = MemoryAssociation(source_id=source_id, target_id=target_id, weight=weight)
        result = await self.graph.query(
            "MERGE (a:Memory {entry_id: $src}) "
            "MERGE (b:Memory {entry_id: $dst}) "
            f"MERGE (a)-[e:{ASSOCIATION_TYPE}]->(b) "
            "ON CREATE SET e.weight = $w, e.created_at = $ts "
            "ON MATCH SET e.weight = CASE WHEN e.weight < $w THEN $w ELSE e.weight END "
            "RETURN e.weight",
            params={"src": edge.source_id, "dst": edge.target_id, "w": edge.weight, "ts": time.time()},
        )
        if result.result_set:
            edge.weight = float(result.result_set[0][0])
        return edge

    async def _insert_if_absent(self, source_id: str, target_id: str, weight: float) -> bool:
        src, dst = _canonical(source_id, target_id)
        result = await self.graph.query(
            "MERGE (a:Memory {entry_id: $src}) "
            "MERGE (b:Memory {entry_id: $dst}) "
            f"MERGE (a)-[e:{ASSOCIATION_TYPE}]->(b) "
            "ON CREATE SET e.weight = $w, e.created_at = $ts "
            # An existing edge keeps its own created_at
            "RETURN e.created_at = $ts",
            params={"src": src, "dst": dst, "w": weight, "ts": time.time()},
        )
        return bool(result.result_set and result.result_set[0][0])

    async def repoint(self, loser_id: str, winner_id: str) -> int:
        moved = 0
        for edge in await self.get_associations([loser_id]):
            neighbor = edge.other(loser_id)
            if neighbor == winner_id:
                continue
            if await self._insert_if_absent(winner_id, neighbor, edge.weight):
                moved += 1
        await self.delete_entries([loser_id])
        logger.debug(f"Re-pointed {moved} edges from {loser_id} to {winner_id}")
        return moved

    async def delete_entries(self, entry_ids: Iterable[str]) -> int:
        ids = list(set(entry_ids))
        if not ids:
            return 0
        counted = await self.graph.query(
            f"MATCH (m:Memory)-[e:{ASSOCIATION_TYPE}]-() WHERE m.entry_id IN $ids RETURN count(DISTINCT e)",
            params={"ids": ids},
        )
        await self.graph.query(
            "MATCH (m:Memory) WHERE m.entry_id IN $ids DETACH DELETE m",
            params={"ids": ids},
        )
        return self._count(counted)

    async def prune_weak(self, threshold: float) -> int:
        """
        Delete edges with weight below threshold, then nodes left without edges.

        Idempotent: pruning already-deleted edges is a no-op.
        """
        result = await self.graph.query(
            f"MATCH ()-[e:{ASSOCIATION_TYPE}]->() WHERE e.weight < $thresh DELETE e RETURN count(e)",
            params={"thresh": threshold},
        )
        await self.graph.query(f"MATCH (m:Memory) WHERE NOT (m)-[:{ASSOCIATION_TYPE}]-() DELETE m")
        count = self._count(result)
        logger.info(f"Pruned {count} edges below weight {threshold}")
        return count

    # ── Reads (concurrent, no locks) ─────────────────────────────────────

    async def get_associations(self, entry_ids: Iterable[str]) -> list[MemoryAssociation]:
        ids = list(set(entry_ids))
        if not ids:
            return []
        result = await self.graph.query(
            f"MATCH (a:Memory)-[e:{ASSOCIATION_TYPE}]-(b:Memory) "
            "WHERE a.entry_id IN $ids "
            "RETURN a.entry_id, b.entry_id, e.weight",
            params={"ids": ids},
        )

        # Undirected match returns an edge once per matching endpoint
        edges: dict[tuple[str, str], MemoryAssociation] = {}
        for row in result.result_set:
            key = _canonical(row[0], row[1])
            if key not in edges:
                edges[key] = MemoryAssociation(source_id=key[0], target_id=key[1], weight=float(row[2]))
        return list(edges.values())

    async def list_entry_ids(self) -> set[str]:
        result = await self.graph.query("MATCH (m:Memory) RETURN m.entry_id")
        return {row[0] for row in result.result_set}

    async def count_associations(self) -> int:
        result = await self.graph.query(f"MATCH ()-[e:{ASSOCIATION_TYPE}]->() RETURN count(e)")
        return self._count(result)

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            try:
                await self._pool.aclose()
                logger.info("GraphClient connection pool closed")
            except Exception as e:
                logger.warning(f"Error closing GraphClient pool: {e}")
            finally:
                self._pool = None
                self._db = None
                self._graph = None
                self._initialized = False
