from .base import MemoryStorage
from .factory import create_storage_instance
from .memory_storage import InMemoryStorage
from .qdrant_storage import QdrantStorage

__all__ = ["InMemoryStorage", "MemoryStorage", "QdrantStorage", "create_storage_instance"]
