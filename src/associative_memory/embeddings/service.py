"""
Embedding gateway.

Turns text into fixed-dimension vectors and exposes the similarity primitives
the rest of the engine builds on. The provider is sentence-transformers by
default (lazily loaded, thread-safe); any object with an ``encode(list[str])``
method returning a 2-D array can be injected instead.
"""

import asyncio
import logging
import threading
from collections.abc import Sequence
from typing import Any, Literal, Protocol

import numpy as np

from ..config import EmbeddingSettings
from ..exceptions import EmbeddingError

logger = logging.getLogger(__name__)

# Known output dimensions; unknown models are measured with one encode call
MODEL_DIMENSIONS: dict[str, int] = {
    "all-MiniLM-L6-v2": 384,
    "all-MiniLM-L12-v2": 384,
    "all-mpnet-base-v2": 768,
    "intfloat/e5-small": 384,
    "intfloat/e5-base": 768,
    "intfloat/e5-large": 1024,
    "BAAI/bge-small-en-v1.5": 384,
    "BAAI/bge-base-en-v1.5": 768,
    "BAAI/bge-large-en-v1.5": 1024,
    "nomic-ai/nomic-embed-text-v1.5": 768,
    "Snowflake/snowflake-arctic-embed-m-v2.0": 768,
}

TextKind = Literal["query", "passage"]


class Encoder(Protocol):
    def encode(self, sentences: list[str], **kwargs: Any) -> Any: ...


class EmbeddingService:
    """Text → vector capability shared by the write, read and maintenance paths."""

    def __init__(self, config: EmbeddingSettings | None = None, encoder: Encoder | None = None):
        self.config = config or EmbeddingSettings()
        self._encoder = encoder
        self._model_lock = threading.Lock()
        self._dimension: int | None = self.config.dimension

    # ── Provider ─────────────────────────────────────────────────────────

    def _get_encoder(self) -> Encoder:
        """Return the encoder, loading the sentence-transformers model on first use."""
        if self._encoder is not None:
            return self._encoder

        # Double-checked so concurrent first calls load the model once
        with self._model_lock:
            if self._encoder is None:
                from sentence_transformers import SentenceTransformer

                logger.info(f"Loading embedding model: {self.config.model_name}")
                self._encoder = SentenceTransformer(
                    self.config.model_name,
                    device=self.config.device,
                    trust_remote_code=True,
                )
                logger.info(f"Loaded model: {self.config.model_name}")
        return self._encoder

    def _prompt_name(self, kind: TextKind) -> str:
        return self.config.query_prompt_name if kind == "query" else self.config.passage_prompt_name

    def _encode_sync(self, texts: list[str], kind: TextKind) -> list[list[float]]:
        encoder = self._get_encoder()
        prompts = getattr(encoder, "prompts", None) or {}
        prompt_name = self._prompt_name(kind)
        if prompt_name in prompts:
            # Instruction-tuned models (E5, BGE, Nomic) need their query/passage prefix
            embeddings = encoder.encode(texts, prompt_name=prompt_name, normalize_embeddings=True)
        else:
            embeddings = encoder.encode(texts)

        vectors = [list(map(float, e)) for e in np.asarray(embeddings, dtype=np.float32)]
        if not vectors or not vectors[0]:
            raise ValueError("Generated embedding is empty")
        if self._dimension is None:
            self._dimension = len(vectors[0])
            logger.info(f"Detected vector size from actual embedding: {self._dimension}")
        return vectors

    # ── Public API ───────────────────────────────────────────────────────

    @property
    def dimension(self) -> int:
        """Vector dimension produced by the provider."""
        if self._dimension is not None:
            return self._dimension
        for known_model, dims in MODEL_DIMENSIONS.items():
            if self.config.model_name.endswith(known_model):
                self._dimension = dims
                return dims
        self._encode_sync(["dimension check"], "passage")
        return self._dimension  # type: ignore[return-value]

    async def embed(self, text: str, kind: TextKind = "passage") -> list[float]:
        """Embed one text.

        Raises:
            EmbeddingError: the provider failed (retryable by the caller).
        """
        return (await self.embed_batch([text], kind=kind))[0]

    async def embed_batch(self, texts: Sequence[str], kind: TextKind = "passage") -> list[list[float]]:
        """Embed several texts in one forward pass."""
        if not texts:
            return []
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._encode_sync, list(texts), kind)
        except Exception as e:
            logger.error(f"Failed to generate embedding: {e.__class__.__name__}: {e}")
            raise EmbeddingError(f"Embedding generation failed: {e}") from e

    # ── Similarity primitives ────────────────────────────────────────────

    @staticmethod
    def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
        """Cosine similarity of two vectors; 0.0 when either has zero magnitude."""
        va = np.asarray(a, dtype=np.float64)
        vb = np.asarray(b, dtype=np.float64)
        denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
        if denom == 0.0:
            return 0.0
        return float(np.dot(va, vb) / denom)

    @staticmethod
    def top_k_similar(
        query: Sequence[float],
        candidates: Sequence[Sequence[float]],
        k: int,
    ) -> list[tuple[int, float]]:
        """Indices and cosine similarities of the *k* nearest candidates, best first.

        Ties keep candidate order (stable sort).
        """
        if k <= 0 or len(candidates) == 0:
            return []
        matrix = np.asarray(candidates, dtype=np.float64)
        q = np.asarray(query, dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(norms > 0, matrix @ q / norms, 0.0)
        order = np.argsort(-sims, kind="stable")[:k]
        return [(int(i), float(sims[i])) for i in order]
