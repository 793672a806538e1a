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
Storage backend factory.

Creates and initializes the configured storage backend.
"""

import logging

from ..config import Settings
from .base import MemoryStorage
from .memory_storage import InMemoryStorage
from .qdrant_storage import QdrantStorage

logger = logging.getLogger(__name__)


async def create_storage_instance(settings: Settings, vector_size: int) -> MemoryStorage:
    """
    Create and initialize the storage backend named by ``settings.storage_backend``.

    Args:
        settings: Root settings
        vector_size: Embedding dimension the collections are created with

    Returns:
        Initialized storage instance
    """
    if settings.storage_backend == "memory":
        storage: MemoryStorage = InMemoryStorage()
    elif settings.qdrant.url:
        storage = QdrantStorage(
            vector_size=vector_size,
            collection_name=settings.qdrant.collection_name,
            url=settings.qdrant.url,
            config=settings.qdrant,
        )
        logger.info(f"Initialized Qdrant storage in server mode: {settings.qdrant.url}")
    else:
        storage = QdrantStorage(
            vector_size=vector_size,
            collection_name=settings.qdrant.collection_name,
            storage_path=settings.qdrant.storage_path,
            config=settings.qdrant,
        )
        logger.info(f"Initialized Qdrant storage in embedded mode: {settings.qdrant.storage_path}")

    await storage.initialize()
    logger.info(f"{type(storage).__name__} initialized successfully")
    return storage
