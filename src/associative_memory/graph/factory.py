"""
Factory for creating and initializing the association graph.

Returns the FalkorDB-backed GraphClient when enabled (MEM_GRAPH_ENABLED=true),
otherwise the in-process graph.
"""

import logging

from ..config import GraphSettings
from .base import AssociationStore
from .client import GraphClient
from .memory_graph import InMemoryAssociationStore

logger = logging.getLogger(__name__)


async def create_association_store(config: GraphSettings) -> AssociationStore:
    """Create and initialize the configured association store."""
    if not config.enabled:
        logger.info("FalkorDB graph layer disabled (MEM_GRAPH_ENABLED=false), associations are process-local")
        store: AssociationStore = InMemoryAssociationStore()
        await store.initialize()
        return store

    password = config.password.get_secret_value() if config.password else None
    client = GraphClient(
        host=config.host,
        port=config.port,
        password=password,
        graph_name=config.graph_name,
        max_connections=config.max_connections,
    )
    await client.initialize()
    logger.info(f"Graph layer initialized: {config.host}:{config.port}/{config.graph_name}")
    return client
