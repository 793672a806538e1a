"""
Memory Service - store/reconsolidate and hybrid associative recall.

Write path: embed, then (under a short per-partition lock) either fold the
content into its near-duplicate or create a new entry, then link the new entry
to related ones. Read path: over-fetch nearest neighbors, rank them on five
signals, expand through the association graph, and reinforce what was recalled
in the background.
"""

import asyncio
import logging
import time
import weakref
from collections.abc import Iterable, Sequence

from ..config import DecaySettings, SearchSettings, StoreSettings
from ..embeddings.service import EmbeddingService
from ..exceptions import ConcurrencyConflictError
from ..graph.base import AssociationStore
from ..models.memory import (
    ChatMessage,
    ConversationSummary,
    EpisodeMatch,
    HybridWeights,
    MemoryAssociation,
    MemoryEntry,
    ScoredMemory,
)
from ..models.results import EffectOutcome, StoreResult
from ..models.validators import clamp_unit, partition_key, validate_partition
from ..storage.base import MemoryStorage
from ..utils.scoring import allocate_scope_limits, link_weight, merge_by_max, propagate, rank, score_candidate
from ..utils.summariser import build_episode
from .decay_service import DecayService

logger = logging.getLogger(__name__)


class MemoryService:
    """
    Caller-facing memory operations.

    Construct once per process (or per test) and pass by reference; the service
    holds no global state.
    """

    def __init__(
        self,
        storage: MemoryStorage,
        embeddings: EmbeddingService,
        associations: AssociationStore,
        decay: DecayService | None = None,
        store_config: StoreSettings | None = None,
        search_config: SearchSettings | None = None,
    ):
        self.storage = storage
        self.embeddings = embeddings
        self.associations = associations
        self.decay = decay or DecayService(storage, DecaySettings())
        self.store_config = store_config or StoreSettings()
        self.search_config = search_config or SearchSettings()

        cfg = self.search_config
        self.default_weights = HybridWeights(
            similarity=cfg.weight_similarity,
            strength=cfg.weight_strength,
            frequency=cfg.weight_frequency,
            recency=cfg.weight_recency,
            importance=cfg.weight_importance,
        )

        # Entries disappear once no store holds or awaits the lock
        self._partition_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._background: set[asyncio.Task] = set()

    def _lock_for(self, partition: str) -> asyncio.Lock:
        lock = self._partition_locks.get(partition)
        if lock is None:
            lock = self._partition_locks[partition] = asyncio.Lock()
        return lock

    # ── Write path ───────────────────────────────────────────────────────

    async def store(
        self,
        scope: str,
        owner_id: str | None,
        content: str,
        memory_type: str = "fact",
        importance: float = 0.5,
        source: str = "explicit",
    ) -> StoreResult:
        """
        Store content, reconsolidating into a near-duplicate when one exists.

        Args:
            scope: personal, team or global
            owner_id: user/team id (ignored for global)
            content: the fact or preference text
            memory_type: free-form classification (fact, preference, skill-note, ...)
            importance: 0.0-1.0, clamped
            source: explicit, conversation, inference or consolidation

        Returns:
            StoreResult with the stored entry and auxiliary effect outcomes

        Raises:
            ValueError: invalid scope/owner or empty content
            EmbeddingError, StorageError: transient failures, safe to retry
            ConcurrencyConflictError: lost every compare-and-set retry
        """
        owner_id = validate_partition(scope, owner_id)
        content = content.strip() if content else ""
        if not content:
            raise ValueError("content must not be empty")
        importance = clamp_unit(importance)

        # Embedding happens before any lock is taken
        vector = await self.embeddings.embed(content, kind="passage")
        partition = partition_key(scope, owner_id)

        for attempt in range(1, self.store_config.max_conflict_retries + 1):
            async with self._lock_for(partition):
                nearest = await self.storage.find_nearest(scope, owner_id, vector, k=1)
                similarity = nearest[0][1] if nearest else 0.0

                if nearest and similarity >= self.store_config.reconsolidation_threshold:
                    existing = nearest[0][0]
                    updated = self._reconsolidated(existing, content, memory_type, importance)
                    if not await self.storage.update_entry(updated, existing.version):
                        logger.debug(f"Reconsolidation of {existing.id[:8]} conflicted (attempt {attempt}), retrying")
                        continue
                    entry = updated.model_copy(update={"version": existing.version + 1})
                    logger.info(f"Reconsolidated into {entry.id[:8]} (similarity={similarity:.3f})")
                    result = StoreResult(entry=entry, action="reconsolidated", nearest_similarity=similarity)
                    break

                entry = MemoryEntry(
                    scope=scope,
                    scope_owner_id=owner_id,
                    memory_type=memory_type,
                    content=content,
                    importance=importance,
                    strength=1.0,
                    decay_rate=self.decay.config.default_decay_rate,
                    last_accessed_at=time.time(),
                    source=source,
                )
                await self.storage.insert_entry(entry, vector)
                logger.info(f"Stored new memory {entry.id[:8]} in {partition}")
                result = StoreResult(entry=entry, action="created", nearest_similarity=similarity)
                break
        else:
            raise ConcurrencyConflictError(
                f"store into {partition} lost {self.store_config.max_conflict_retries} compare-and-set races"
            )

        if result.reconsolidated:
            result.effects.append(await self._reembed(result.entry, vector))
        else:
            result.effects.append(await self._auto_link(result.entry, vector))
        return result

    def _reconsolidated(self, existing: MemoryEntry, content: str, memory_type: str, importance: float) -> MemoryEntry:
        """New content supersedes old; importance and decay keep the better value."""
        return existing.model_copy(
            update={
                "content": content,
                "memory_type": memory_type,
                "importance": max(existing.importance, importance),
                "strength": 1.0,
                "decay_rate": min(existing.decay_rate, self.decay.config.default_decay_rate),
                "access_count": existing.access_count + 1,
                "last_accessed_at": time.time(),
            }
        )

    async def _reembed(self, entry: MemoryEntry, vector: list[float]) -> EffectOutcome:
        try:
            replaced = await self.storage.replace_vector(entry.id, vector)
            return EffectOutcome(name="reembed", ok=replaced, detail={"replaced": replaced})
        except Exception as e:
            logger.warning(f"Re-embedding {entry.id[:8]} failed (non-fatal): {e}")
            return EffectOutcome(name="reembed", ok=False, error=str(e))

    async def _auto_link(self, entry: MemoryEntry, vector: list[float]) -> EffectOutcome:
        """Link *entry* to related (not duplicate) entries in its partition."""
        if self.store_config.link_candidates <= 0:
            return EffectOutcome(name="auto_link", ok=True, detail={"linked": 0})
        try:
            candidates = await self.storage.find_nearest(
                entry.scope,
                entry.scope_owner_id,
                vector,
                k=self.store_config.link_candidates,
                exclude_ids=[entry.id],
            )
            linked = 0
            for candidate, similarity in candidates:
                if similarity < self.store_config.link_threshold:
                    continue
                weight = link_weight(similarity, self.store_config.link_threshold, self.store_config.link_weight_floor)
                await self.associations.upsert_association(entry.id, candidate.id, weight)
                linked += 1
            if linked:
                logger.debug(f"Auto-linked {entry.id[:8]} to {linked} related memories")
            return EffectOutcome(name="auto_link", ok=True, detail={"linked": linked})
        except Exception as e:
            logger.warning(f"Auto-linking {entry.id[:8]} failed (non-fatal): {e}")
            return EffectOutcome(name="auto_link", ok=False, error=str(e))

    async def store_episode(self, episode: ConversationSummary) -> ConversationSummary:
        """Persist an episodic summary indexed by its summary and topics."""
        vector = await self.embeddings.embed(episode.embedding_text, kind="passage")
        await self.storage.insert_episode(episode, vector)
        logger.info(f"Stored episode {episode.id[:8]} for session {episode.session_id}")
        return episode

    async def summarise_session(
        self,
        session_id: str,
        messages: Sequence[ChatMessage],
        user_id: str | None = None,
        team_id: str | None = None,
    ) -> ConversationSummary | None:
        """Build an episode from a message window and store it; None if the window is too short."""
        episode = build_episode(session_id, messages, user_id=user_id, team_id=team_id)
        if episode is None:
            return None
        return await self.store_episode(episode)

    # ── Read path ────────────────────────────────────────────────────────

    def _score(self, entry: MemoryEntry, similarity: float, weights: HybridWeights, now: float) -> ScoredMemory:
        cfg = self.decay.config
        return score_candidate(
            entry,
            similarity,
            weights,
            now,
            importance_resistance=cfg.importance_resistance,
            recency_half_life_hours=cfg.recency_half_life_hours,
            frequency_saturation=cfg.frequency_saturation,
        )

    async def _candidates(
        self,
        vector: list[float],
        scope: str,
        owner_id: str | None,
        limit: int,
        weights: HybridWeights,
        now: float,
    ) -> list[ScoredMemory]:
        """Over-fetched nearest neighbors, scored and ranked (not truncated)."""
        k = min(self.search_config.overfetch_factor * limit, self.search_config.max_candidates)
        nearest = await self.storage.find_nearest(scope, owner_id, vector, k=k)
        return rank(self._score(entry, similarity, weights, now) for entry, similarity in nearest)

    def _activated(
        self,
        entry: MemoryEntry,
        activation: float,
        score: float,
        hops: int,
        pooled: ScoredMemory | None,
        weights: HybridWeights,
        now: float,
    ) -> ScoredMemory:
        if pooled is not None and pooled.final_score >= score:
            # Own vector score wins; only the activation is recorded
            return pooled.model_copy(update={"activation": activation})
        base = pooled or self._score(entry, 0.0, weights, now)
        return base.model_copy(
            update={
                "final_score": score,
                "activation": activation,
                "hops": hops,
                "origin": "association",
            }
        )

    async def _expand_one_hop(
        self,
        pool: list[ScoredMemory],
        seeds: list[ScoredMemory],
        limit: int,
        weights: HybridWeights,
        now: float,
    ) -> list[ScoredMemory]:
        """
        Spreading activation one hop out from the seed set.

        Neighbor score = seed score * edge weight * damping (max over edges).
        A neighbor the vector query already scored keeps the higher of the two.
        """
        if not seeds:
            return []
        by_id = {s.id: s for s in pool}
        partition = seeds[0].memory.partition

        edges = await self.associations.get_associations([s.id for s in seeds])
        activations = propagate({s.id: s.final_score for s in seeds}, edges, self.search_config.damping)
        if not activations:
            return seeds

        fetched = await self.storage.get_entries(i for i in activations if i not in by_id)
        expanded = []
        for entry_id, activation in activations.items():
            pooled = by_id.get(entry_id)
            entry = pooled.memory if pooled else fetched.get(entry_id)
            # Deleted since the edge was read, or linked across partitions
            if entry is None or entry.partition != partition:
                continue
            expanded.append(self._activated(entry, activation, activation, 1, pooled, weights, now))

        return rank(merge_by_max(seeds, expanded), limit)

    async def _search_vector(
        self,
        vector: list[float],
        scope: str,
        owner_id: str | None,
        limit: int,
        weights: HybridWeights,
        now: float,
    ) -> list[ScoredMemory]:
        pool = await self._candidates(vector, scope, owner_id, limit, weights, now)
        seeds = pool[:limit]
        try:
            return await self._expand_one_hop(pool, seeds, limit, weights, now)
        except Exception as e:
            logger.warning(f"Associative expansion failed (non-fatal), returning seed results: {e}")
            return seeds

    async def search(
        self,
        query: str,
        scope: str,
        owner_id: str | None,
        limit: int = 10,
        weights: HybridWeights | None = None,
        reinforce: bool | None = None,
    ) -> list[ScoredMemory]:
        """
        Hybrid search within one partition, expanded one hop through associations.

        Returns:
            Scored memories ordered by descending final score (at most *limit*)
        """
        if limit <= 0:
            return []
        owner_id = validate_partition(scope, owner_id)
        now = time.time()
        vector = await self.embeddings.embed(query, kind="query")
        results = await self._search_vector(vector, scope, owner_id, limit, weights or self.default_weights, now)
        if self._should_reinforce(reinforce):
            self._schedule_recall([r.id for r in results])
        return results

    async def search_all_scopes(
        self,
        query: str,
        user_id: str | None,
        team_id: str | None,
        limit: int = 10,
        weights: HybridWeights | None = None,
        reinforce: bool | None = None,
    ) -> list[ScoredMemory]:
        """
        Fan out over personal, team and global memories (~40/30/30 of *limit*).

        Scopes without an owner id are skipped. Results are deduplicated by id
        (first occurrence wins) and re-sorted by final score.
        """
        if limit <= 0:
            return []
        cfg = self.search_config
        personal_k, team_k, global_k = allocate_scope_limits(
            limit, (cfg.personal_share, cfg.team_share, cfg.global_share)
        )
        weights = weights or self.default_weights
        now = time.time()
        vector = await self.embeddings.embed(query, kind="query")

        plans = [("global", None, global_k)]
        if team_id:
            plans.insert(0, ("team", team_id, team_k))
        if user_id:
            plans.insert(0, ("personal", user_id, personal_k))

        groups = await asyncio.gather(
            *(self._search_vector(vector, scope, owner, k, weights, now) for scope, owner, k in plans)
        )

        seen: dict[str, ScoredMemory] = {}
        for group in groups:
            for item in group:
                seen.setdefault(item.id, item)
        results = rank(seen.values(), limit)

        if self._should_reinforce(reinforce):
            self._schedule_recall([r.id for r in results])
        return results

    async def deep_search(
        self,
        query: str,
        scope: str,
        owner_id: str | None,
        limit: int = 8,
        max_hops: int | None = None,
        weights: HybridWeights | None = None,
    ) -> list[ScoredMemory]:
        """
        Deep recall: multi-hop spreading activation when the best direct hit is weak.

        If the top hybrid result already clears ``confident_score`` the ordinary
        one-hop result is returned. Otherwise activation spreads for up to
        *max_hops* rounds; a neighbor at hop h scores
        ``share * path_activation * damping**h + (1 - share) * intrinsic`` where
        intrinsic is the mean of effective strength, importance and frequency.
        A *max_hops* of 0 returns the ranked vector seeds without expansion.
        The final top-*limit* is always reinforced.
        """
        if limit <= 0:
            return []
        owner_id = validate_partition(scope, owner_id)
        cfg = self.search_config
        max_hops = cfg.deep_max_hops if max_hops is None else max(0, min(max_hops, cfg.deep_max_hops))
        weights = weights or self.default_weights
        now = time.time()
        vector = await self.embeddings.embed(query, kind="query")

        pool = await self._candidates(vector, scope, owner_id, limit, weights, now)
        seeds = pool[:limit]
        if not seeds:
            return []

        if max_hops == 0:
            results = seeds
        elif seeds[0].final_score >= cfg.confident_score:
            try:
                results = await self._expand_one_hop(pool, seeds, limit, weights, now)
            except Exception as e:
                logger.warning(f"Associative expansion failed (non-fatal), returning seed results: {e}")
                results = seeds
        else:
            try:
                results = await self._expand_multi_hop(pool, seeds, limit, max_hops, weights, now)
            except Exception as e:
                logger.warning(f"Deep recall expansion failed (non-fatal), returning seed results: {e}")
                results = seeds

        self._schedule_recall([r.id for r in results])
        return results

    async def _expand_multi_hop(
        self,
        pool: list[ScoredMemory],
        seeds: list[ScoredMemory],
        limit: int,
        max_hops: int,
        weights: HybridWeights,
        now: float,
    ) -> list[ScoredMemory]:
        cfg = self.search_config
        by_id = {s.id: s for s in pool}
        partition = seeds[0].memory.partition

        # Undamped path activation; damping is applied per hop count
        frontier = {s.id: s.final_score for s in seeds}
        visited = set(frontier)
        discovered: list[ScoredMemory] = []

        for hop in range(1, max_hops + 1):
            edges = await self.associations.get_associations(frontier)
            paths = propagate(frontier, edges, damping=1.0, exclude=visited)
            if not paths:
                break

            fetched = await self.storage.get_entries(i for i in paths if i not in by_id)
            next_frontier: dict[str, float] = {}
            for entry_id, path_activation in paths.items():
                visited.add(entry_id)
                pooled = by_id.get(entry_id)
                entry = pooled.memory if pooled else fetched.get(entry_id)
                if entry is None or entry.partition != partition:
                    continue
                activation = path_activation * cfg.damping**hop
                intrinsic = (
                    self.decay.effective_strength(entry, now)
                    + entry.importance
                    + self.decay.frequency_score(entry)
                ) / 3.0
                score = cfg.propagation_share * activation + (1.0 - cfg.propagation_share) * intrinsic
                discovered.append(self._activated(entry, activation, score, hop, pooled, weights, now))
                next_frontier[entry_id] = path_activation

            if not next_frontier:
                break
            frontier = next_frontier
            logger.debug(f"Deep recall hop {hop}: {len(next_frontier)} new neighbors")

        return rank(merge_by_max(seeds, discovered), limit)

    async def search_episodic(
        self,
        query: str,
        user_id: str | None,
        team_id: str | None,
        limit: int = 5,
        min_similarity: float = 0.0,
    ) -> list[EpisodeMatch]:
        """Semantic search over episodes owned by the user and/or team (no decay, no graph)."""
        if limit <= 0 or (not user_id and not team_id):
            return []
        vector = await self.embeddings.embed(query, kind="query")
        matches = await self.storage.find_nearest_episodes(vector, user_id, team_id, limit)
        return [m for m in matches if m.similarity >= min_similarity]

    # ── Listings ─────────────────────────────────────────────────────────

    async def get_recent(self, scope: str, owner_id: str | None, limit: int = 20) -> list[MemoryEntry]:
        owner_id = validate_partition(scope, owner_id)
        return await self.storage.list_recent(scope, owner_id, limit)

    async def get_by_importance(
        self, scope: str, owner_id: str | None, min_importance: float = 0.0, limit: int = 20
    ) -> list[MemoryEntry]:
        owner_id = validate_partition(scope, owner_id)
        return await self.storage.list_by_importance(scope, owner_id, min_importance, limit)

    async def get_associations(self, entry_id: str) -> list[MemoryAssociation]:
        return await self.associations.get_associations([entry_id])

    # ── Recall reinforcement (fire-and-forget) ───────────────────────────

    def _should_reinforce(self, reinforce: bool | None) -> bool:
        return self.search_config.reinforce_on_recall if reinforce is None else reinforce

    def _schedule_recall(self, entry_ids: Iterable[str]) -> None:
        """
        Schedule recall reinforcement as a background task.

        Non-blocking, non-fatal: reinforcement failures never affect reads.
        """
        ids = list(entry_ids)
        if not ids:
            return

        async def _do_recall():
            try:
                reinforced = await self.decay.on_batch_recall(ids)
                logger.debug(f"Reinforced {reinforced}/{len(ids)} recalled memories")
            except Exception as e:
                logger.warning(f"Recall reinforcement failed (non-fatal): {e}")

        task = asyncio.ensure_future(_do_recall())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_for_background(self) -> None:
        """Await pending background reinforcement (shutdown and tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
