"""
Graph layer for the associative memory engine.

Weighted, undirected association edges between memory entries:
- FalkorDB-backed GraphClient for shared, persistent graphs
- InMemoryAssociationStore for tests and single-process runs
"""

from .base import AssociationStore
from .client import GraphClient
from .factory import create_association_store
from .memory_graph import InMemoryAssociationStore

__all__ = [
    "AssociationStore",
    "GraphClient",
    "InMemoryAssociationStore",
    "create_association_store",
]
