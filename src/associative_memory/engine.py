"""
Engine assembly.

Builds the embedding gateway, storage backend, association store and
services from one :class:`Settings` object. Each call creates an isolated
engine; nothing is cached at module level.
"""

import logging
from dataclasses import dataclass

from .config import Settings
from .embeddings.service import EmbeddingService
from .graph.base import AssociationStore
from .graph.factory import create_association_store
from .services.consolidation_service import ConsolidationService
from .services.decay_service import DecayService
from .services.goal_service import GoalService
from .services.memory_service import MemoryService
from .storage.base import MemoryStorage
from .storage.factory import create_storage_instance

logger = logging.getLogger(__name__)


@dataclass
class MemoryEngine:
    settings: Settings
    embeddings: EmbeddingService
    storage: MemoryStorage
    associations: AssociationStore
    decay: DecayService
    memory: MemoryService
    consolidation: ConsolidationService
    goals: GoalService

    async def close(self) -> None:
        """Drain background reinforcement, then release backends."""
        await self.memory.wait_for_background()
        await self.associations.close()
        await self.storage.close()
        logger.info("Memory engine closed")


async def create_memory_engine(
    settings: Settings | None = None,
    embeddings: EmbeddingService | None = None,
) -> MemoryEngine:
    """
    Construct and initialize a memory engine.

    Args:
        settings: Root settings (a fresh ``Settings()`` from the environment if omitted)
        embeddings: Pre-built embedding service, e.g. one wrapping a custom encoder
    """
    settings = settings or Settings()
    embeddings = embeddings or EmbeddingService(settings.embedding)

    storage = await create_storage_instance(settings, vector_size=embeddings.dimension)
    try:
        associations = await create_association_store(settings.graph)
    except Exception:
        await storage.close()
        raise

    decay = DecayService(storage, settings.decay)
    memory = MemoryService(
        storage,
        embeddings,
        associations,
        decay=decay,
        store_config=settings.store,
        search_config=settings.search,
    )
    consolidation = ConsolidationService(storage, associations, decay, settings.consolidation)
    goals = GoalService(storage)

    logger.info(
        f"Memory engine ready: storage={settings.storage_backend}, "
        f"graph={'falkordb' if settings.graph.enabled else 'in-process'}, model={settings.embedding.model_name}"
    )
    return MemoryEngine(
        settings=settings,
        embeddings=embeddings,
        storage=storage,
        associations=associations,
        decay=decay,
        memory=memory,
        consolidation=consolidation,
        goals=goals,
    )
