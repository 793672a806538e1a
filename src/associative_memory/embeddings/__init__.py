"""Embedding gateway: text → vector, plus similarity primitives."""

from .service import MODEL_DIMENSIONS, EmbeddingService

__all__ = ["EmbeddingService", "MODEL_DIMENSIONS"]
