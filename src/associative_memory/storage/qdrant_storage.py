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
Qdrant storage backend for the associative memory engine.

Entries live in one collection, episodic summaries in a sibling
``<name>_episodes`` collection and goals in a vectorless ``<name>_goals``
collection. Every entry point carries a ``partition``
payload (``scope:owner``) so nearest-neighbor queries stay inside one
ownership partition. Calls go through a circuit breaker and retry transient
5xx responses with exponential backoff.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Callable, Iterable
from datetime import datetime, timedelta
from typing import Any, TypeVar

from qdrant_client import QdrantClient
from qdrant_client.http import exceptions as qdrant_exceptions
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    HasIdCondition,
    HnswConfigDiff,
    MatchValue,
    PayloadSchemaType,
    PointIdsList,
    PointStruct,
    PointVectors,
    Range,
    VectorParams,
)
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..config import QdrantSettings
from ..exceptions import StorageError
from ..models.goals import Goal
from ..models.memory import ConversationSummary, EpisodeMatch, MemoryEntry
from ..models.validators import partition_key
from .base import EntryBatch, MemoryStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCROLL_PAGE_SIZE = 256


def is_retryable_error(exception: BaseException) -> bool:
    """
    Determine if an exception is retryable (transient 5xx server errors only).

    Notes:
        - 5xx server errors are transient and retryable
        - 4xx client errors are permanent (configuration/validation) and NOT retryable
    """
    if isinstance(exception, qdrant_exceptions.UnexpectedResponse):
        return hasattr(exception, "status_code") and 500 <= exception.status_code < 600
    return False


def _point_ids(entry_ids: Iterable[str]) -> list[str]:
    """Keep ids Qdrant can address (UUID strings); anything else cannot exist."""
    valid = []
    for entry_id in entry_ids:
        try:
            uuid.UUID(str(entry_id))
        except ValueError:
            logger.debug(f"Skipping non-UUID point id {entry_id!r}")
            continue
        valid.append(str(entry_id))
    return valid


class QdrantStorage(MemoryStorage):
    """
    Qdrant storage implementation (embedded, in-process or server mode).

    Compare-and-set updates are serialized through an asyncio lock, which makes
    them atomic for every writer sharing this instance.
    """

    def __init__(
        self,
        vector_size: int,
        collection_name: str = "memories",
        storage_path: str | None = None,
        url: str | None = None,
        config: QdrantSettings | None = None,
    ):
        """
        Args:
            vector_size: Embedding dimension of both collections
            collection_name: Entry collection; episodes use ``<name>_episodes``,
                goals ``<name>_goals``
            storage_path: Path to Qdrant storage directory (embedded mode)
            url: Qdrant server URL, or ":memory:" for an in-process instance
        """
        if url and storage_path:
            raise ValueError("Cannot specify both url and storage_path. Choose embedded OR server mode.")
        if not url and not storage_path:
            raise ValueError("Must specify either url (server mode) or storage_path (embedded mode).")

        self.url = url
        self.storage_path = storage_path
        self.vector_size = vector_size
        self.collection_name = collection_name
        self.episode_collection_name = f"{collection_name}_episodes"
        self.goal_collection_name = f"{collection_name}_goals"
        self.config = config or QdrantSettings()

        # Circuit breaker state
        self._failure_count = 0
        self._circuit_open_until: datetime | None = None
        self._failure_threshold = 5  # Open circuit after 5 consecutive failures
        self._circuit_timeout = 60  # Reclose circuit after 60 seconds

        self._cas_lock = asyncio.Lock()
        self.client: QdrantClient | None = None
        self._initialized = False

        mode = "server" if self.url else "embedded"
        logger.info(
            f"Initializing QdrantStorage: mode={mode}, location={self.url or self.storage_path}, "
            f"collection={collection_name}, vector_size={vector_size}"
        )

    async def initialize(self) -> None:
        """Create client, collections and payload indexes; verify vector dimensions."""
        if self._initialized:
            logger.debug("QdrantStorage already initialized")
            return

        loop = asyncio.get_running_loop()
        if self.url:
            # location= accepts both a server URL and ":memory:"
            self.client = await loop.run_in_executor(None, lambda: QdrantClient(location=self.url))
            logger.info(f"Connected to Qdrant at {self.url}")
        else:
            self.client = await loop.run_in_executor(None, lambda: QdrantClient(path=self.storage_path))
            logger.info(f"Initialized Qdrant embedded storage at {self.storage_path}")

        for name in (self.collection_name, self.episode_collection_name):
            if await self._collection_exists(name):
                await self._verify_vector_size(name)
            else:
                await self._create_collection(name)
        if not await self._collection_exists(self.goal_collection_name):
            await self._create_goal_collection()

        await self._ensure_payload_indexes()
        self._initialized = True
        logger.info("QdrantStorage initialization complete")

    async def _collection_exists(self, name: str) -> bool:
        loop = asyncio.get_running_loop()
        collections = await loop.run_in_executor(None, self.client.get_collections)
        return name in [col.name for col in collections.collections]

    async def _verify_vector_size(self, name: str) -> None:
        """Fail fast when the embedding model changed under an existing collection."""
        loop = asyncio.get_running_loop()
        info = await loop.run_in_executor(None, self.client.get_collection, name)
        stored = info.config.params.vectors.size
        if stored != self.vector_size:
            raise StorageError(
                f"Collection '{name}' holds {stored}-dimensional vectors but the embedding model "
                f"produces {self.vector_size}. Re-embed into a new collection before switching models."
            )
        logger.info(f"Collection '{name}' exists, vector size verified ({stored})")

    async def _create_collection(self, name: str) -> None:
        loop = asyncio.get_running_loop()
        hnsw_config = HnswConfigDiff(
            m=self.config.HNSW_M,
            ef_construct=self.config.HNSW_EF_CONSTRUCT,
            full_scan_threshold=self.config.HNSW_FULL_SCAN_THRESHOLD,
        )
        await loop.run_in_executor(
            None,
            lambda: self.client.create_collection(
                collection_name=name,
                vectors_config=VectorParams(size=self.vector_size, distance=Distance.COSINE),
                hnsw_config=hnsw_config,
                on_disk_payload=self.config.ON_DISK_PAYLOAD,
            ),
        )
        logger.info(f"Created collection '{name}' with vector size {self.vector_size}")

    async def _create_goal_collection(self) -> None:
        """Goals are payload-only points: the collection declares no vectors."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: self.client.create_collection(collection_name=self.goal_collection_name, vectors_config={}),
        )
        logger.info(f"Created goal collection '{self.goal_collection_name}'")

    async def _ensure_payload_indexes(self) -> None:
        """Idempotent; Qdrant ignores re-creation of an identical index."""
        loop = asyncio.get_running_loop()
        indexes = [
            (self.collection_name, "partition", PayloadSchemaType.KEYWORD),
            (self.collection_name, "created_at", PayloadSchemaType.FLOAT),
            (self.collection_name, "importance", PayloadSchemaType.FLOAT),
            (self.episode_collection_name, "user_id", PayloadSchemaType.KEYWORD),
            (self.episode_collection_name, "team_id", PayloadSchemaType.KEYWORD),
            (self.goal_collection_name, "partition", PayloadSchemaType.KEYWORD),
            (self.goal_collection_name, "status", PayloadSchemaType.KEYWORD),
        ]
        for collection, field, schema in indexes:
            await loop.run_in_executor(
                None,
                lambda c=collection, f=field, s=schema: self.client.create_payload_index(
                    collection_name=c, field_name=f, field_schema=s
                ),
            )
        logger.info("Ensured payload indexes on entry, episode and goal collections")

    # ── Fault tolerance ──────────────────────────────────────────────────

    def _check_circuit_breaker(self) -> None:
        """
        Check if circuit breaker is open and fail fast if so.

        Raises:
            StorageError: If circuit breaker is open with retry timestamp
        """
        if self._circuit_open_until is not None:
            if datetime.now() < self._circuit_open_until:
                retry_time = self._circuit_open_until.strftime("%Y-%m-%d %H:%M:%S")
                raise StorageError(f"Circuit breaker is open until {retry_time}. Service temporarily unavailable.")
            logger.info("Circuit breaker timeout expired, resetting to closed state")
            self._circuit_open_until = None
            self._failure_count = 0

    def _record_failure(self) -> None:
        """Record a failure; opens the circuit after 5 consecutive failures for 60 seconds."""
        self._failure_count += 1
        logger.warning(f"Recorded failure #{self._failure_count}")

        if self._failure_count >= self._failure_threshold:
            self._circuit_open_until = datetime.now() + timedelta(seconds=self._circuit_timeout)
            logger.error(
                f"Circuit breaker opened after {self._failure_count} consecutive failures. "
                f"Will retry at {self._circuit_open_until.strftime('%Y-%m-%d %H:%M:%S')}"
            )

    def _record_success(self) -> None:
        if self._failure_count > 0:
            logger.info(f"Operation successful, resetting circuit breaker (was at {self._failure_count} failures)")
            self._failure_count = 0
            self._circuit_open_until = None

    @retry(
        retry=retry_if_exception(is_retryable_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def _execute(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    async def _call(self, operation: str, fn: Callable[[], T]) -> T:
        """Run a blocking client call behind the circuit breaker and retry policy.

        Raises:
            StorageError: the call failed after retries (transient, caller may retry).
        """
        if self.client is None:
            raise StorageError("QdrantStorage is not initialized")
        self._check_circuit_breaker()
        try:
            result = await self._execute(fn)
        except Exception as e:
            self._record_failure()
            logger.error(f"Qdrant {operation} failed: {e}")
            raise StorageError(f"Qdrant {operation} failed: {e}") from e
        self._record_success()
        return result

    # ── Conversion helpers ───────────────────────────────────────────────

    @staticmethod
    def _partition_filter(scope: str, owner_id: str | None, *extra: Any) -> Filter:
        must = [FieldCondition(key="partition", match=MatchValue(value=partition_key(scope, owner_id))), *extra]
        return Filter(must=must)

    @staticmethod
    def _point_to_entry(point: Any) -> MemoryEntry:
        payload = dict(point.payload or {})
        payload.setdefault("id", str(point.id))
        return MemoryEntry.from_payload(payload)

    # ── Entries ──────────────────────────────────────────────────────────

    async def insert_entry(self, entry: MemoryEntry, vector: list[float]) -> None:
        if len(vector) != self.vector_size:
            raise ValueError(
                f"Embedding dimension mismatch: expected {self.vector_size}, got {len(vector)}. "
                f"This indicates a configuration error or model version change."
            )
        point = PointStruct(id=entry.id, vector=vector, payload=entry.to_payload())
        await self._call(
            "insert",
            lambda: self.client.upsert(collection_name=self.collection_name, points=[point], wait=True),
        )
        logger.debug(f"Stored entry {entry.id[:8]}... in partition {entry.partition}")

    async def get_entry(self, entry_id: str) -> MemoryEntry | None:
        entries = await self.get_entries([entry_id])
        return entries.get(entry_id)

    async def get_entries(self, entry_ids: Iterable[str]) -> dict[str, MemoryEntry]:
        ids = _point_ids(entry_ids)
        if not ids:
            return {}
        points = await self._call(
            "retrieve",
            lambda: self.client.retrieve(
                collection_name=self.collection_name, ids=ids, with_payload=True, with_vectors=False
            ),
        )
        entries = (self._point_to_entry(p) for p in points)
        return {e.id: e for e in entries}

    async def update_entry(self, entry: MemoryEntry, expected_version: int) -> bool:
        async with self._cas_lock:
            current = await self.get_entry(entry.id)
            if current is None or current.version != expected_version:
                return False
            payload = entry.model_copy(update={"version": expected_version + 1}).to_payload()
            await self._call(
                "update",
                lambda: self.client.overwrite_payload(
                    collection_name=self.collection_name, payload=payload, points=[entry.id], wait=True
                ),
            )
            return True

    async def replace_vector(self, entry_id: str, vector: list[float]) -> bool:
        if not await self.existing_ids([entry_id]):
            return False
        await self._call(
            "update_vectors",
            lambda: self.client.update_vectors(
                collection_name=self.collection_name,
                points=[PointVectors(id=entry_id, vector=vector)],
                wait=True,
            ),
        )
        return True

    async def delete_entries(self, entry_ids: Iterable[str]) -> int:
        existing = await self.existing_ids(entry_ids)
        if not existing:
            return 0
        await self._call(
            "delete",
            lambda: self.client.delete(
                collection_name=self.collection_name,
                points_selector=PointIdsList(points=list(existing)),
                wait=True,
            ),
        )
        return len(existing)

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
        excluded = _point_ids(exclude_ids or ())
        query_filter = Filter(
            must=self._partition_filter(scope, owner_id).must,
            must_not=[HasIdCondition(has_id=excluded)] if excluded else None,
        )

        response = await self._call(
            "query",
            lambda: self.client.query_points(
                collection_name=self.collection_name,
                query=vector,
                query_filter=query_filter,
                limit=k,
                with_payload=True,
                with_vectors=False,
            ),
        )
        return [(self._point_to_entry(p), float(p.score)) for p in response.points]

    async def iter_entries(self, batch_size: int = 200, with_vectors: bool = False) -> AsyncIterator[EntryBatch]:
        next_offset = None
        while True:
            points, next_offset = await self._call(
                "scroll",
                lambda off=next_offset: self.client.scroll(
                    collection_name=self.collection_name,
                    limit=batch_size,
                    offset=off,
                    with_payload=True,
                    with_vectors=with_vectors,
                ),
            )
            if points:
                yield [
                    (self._point_to_entry(p), list(p.vector) if with_vectors and p.vector is not None else None)
                    for p in points
                ]
            if next_offset is None:
                break

    async def existing_ids(self, entry_ids: Iterable[str]) -> set[str]:
        ids = _point_ids(entry_ids)
        if not ids:
            return set()
        points = await self._call(
            "retrieve",
            lambda: self.client.retrieve(
                collection_name=self.collection_name, ids=ids, with_payload=False, with_vectors=False
            ),
        )
        return {str(p.id) for p in points}

    async def _scroll_filtered(self, scroll_filter: Filter) -> list[MemoryEntry]:
        """Collect every entry matching *scroll_filter*; ordering is done by the caller."""
        entries: list[MemoryEntry] = []
        next_offset = None
        while True:
            points, next_offset = await self._call(
                "scroll",
                lambda off=next_offset: self.client.scroll(
                    collection_name=self.collection_name,
                    scroll_filter=scroll_filter,
                    limit=SCROLL_PAGE_SIZE,
                    offset=off,
                    with_payload=True,
                    with_vectors=False,
                ),
            )
            entries.extend(self._point_to_entry(p) for p in points)
            if next_offset is None or not points:
                return entries

    async def list_recent(self, scope: str, owner_id: str | None, limit: int) -> list[MemoryEntry]:
        if limit <= 0:
            return []
        entries = await self._scroll_filtered(self._partition_filter(scope, owner_id))
        entries.sort(key=lambda e: e.created_at or 0.0, reverse=True)
        return entries[:limit]

    async def list_by_importance(
        self, scope: str, owner_id: str | None, min_importance: float, limit: int
    ) -> list[MemoryEntry]:
        if limit <= 0:
            return []
        importance = FieldCondition(key="importance", range=Range(gte=min_importance))
        entries = await self._scroll_filtered(self._partition_filter(scope, owner_id, importance))
        entries.sort(key=lambda e: e.importance, reverse=True)
        return entries[:limit]

    async def count_entries(self) -> int:
        result = await self._call(
            "count", lambda: self.client.count(collection_name=self.collection_name, exact=True)
        )
        return result.count

    # ── Episodes ─────────────────────────────────────────────────────────

    async def insert_episode(self, episode: ConversationSummary, vector: list[float]) -> None:
        point = PointStruct(id=episode.id, vector=vector, payload=episode.model_dump())
        await self._call(
            "insert_episode",
            lambda: self.client.upsert(collection_name=self.episode_collection_name, points=[point], wait=True),
        )
        logger.debug(f"Stored episode {episode.id[:8]}... for session {episode.session_id}")

    async def find_nearest_episodes(
        self,
        vector: list[float],
        user_id: str | None,
        team_id: str | None,
        k: int,
    ) -> list[EpisodeMatch]:
        should = []
        if user_id:
            should.append(FieldCondition(key="user_id", match=MatchValue(value=user_id)))
        if team_id:
            should.append(FieldCondition(key="team_id", match=MatchValue(value=team_id)))
        if k <= 0 or not should:
            return []

        response = await self._call(
            "query_episodes",
            lambda: self.client.query_points(
                collection_name=self.episode_collection_name,
                query=vector,
                query_filter=Filter(should=should),
                limit=k,
                with_payload=True,
                with_vectors=False,
            ),
        )
        matches = []
        for point in response.points:
            payload = dict(point.payload or {})
            payload.setdefault("id", str(point.id))
            matches.append(EpisodeMatch(episode=ConversationSummary.model_validate(payload), similarity=float(point.score)))
        return matches

    # ── Goals ────────────────────────────────────────────────────────────

    @staticmethod
    def _point_to_goal(point: Any) -> Goal:
        payload = dict(point.payload or {})
        payload.setdefault("id", str(point.id))
        return Goal.from_payload(payload)

    async def insert_goal(self, goal: Goal) -> None:
        point = PointStruct(id=goal.id, vector={}, payload=goal.to_payload())
        await self._call(
            "insert_goal",
            lambda: self.client.upsert(collection_name=self.goal_collection_name, points=[point], wait=True),
        )
        logger.debug(f"Stored goal {goal.id[:8]}... for {goal.scope}:{goal.scope_owner_id}")

    async def get_goal(self, goal_id: str) -> Goal | None:
        ids = _point_ids([goal_id])
        if not ids:
            return None
        points = await self._call(
            "retrieve_goal",
            lambda: self.client.retrieve(
                collection_name=self.goal_collection_name, ids=ids, with_payload=True, with_vectors=False
            ),
        )
        return self._point_to_goal(points[0]) if points else None

    async def update_goal(self, goal: Goal, expected_version: int) -> bool:
        async with self._cas_lock:
            current = await self.get_goal(goal.id)
            if current is None or current.version != expected_version:
                return False
            payload = goal.model_copy(update={"version": expected_version + 1}).to_payload()
            await self._call(
                "update_goal",
                lambda: self.client.overwrite_payload(
                    collection_name=self.goal_collection_name, payload=payload, points=[goal.id], wait=True
                ),
            )
            return True

    async def list_goals(self, scope: str, owner_id: str, status: str | None = None) -> list[Goal]:
        extra = [FieldCondition(key="status", match=MatchValue(value=status))] if status else []
        scroll_filter = self._partition_filter(scope, owner_id, *extra)
        goals: list[Goal] = []
        next_offset = None
        while True:
            points, next_offset = await self._call(
                "scroll_goals",
                lambda off=next_offset: self.client.scroll(
                    collection_name=self.goal_collection_name,
                    scroll_filter=scroll_filter,
                    limit=SCROLL_PAGE_SIZE,
                    offset=off,
                    with_payload=True,
                    with_vectors=False,
                ),
            )
            goals.extend(self._point_to_goal(p) for p in points)
            if next_offset is None or not points:
                return goals

    async def close(self) -> None:
        """
        Close the Qdrant client connection.

        Safe to call multiple times. Idempotent operation.
        """
        if self.client is not None:
            try:
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, self.client.close)
                logger.info("Qdrant client closed successfully")
            except Exception as e:
                logger.warning(f"Error closing Qdrant client: {e}")
            finally:
                self.client = None
                self._initialized = False
