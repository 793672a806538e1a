"""Unit tests for the embedding gateway (encoder injected, no model download)."""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from associative_memory.config import EmbeddingSettings
from associative_memory.embeddings.service import EmbeddingService
from associative_memory.exceptions import EmbeddingError


class PromptedEncoder:
    """Encoder exposing instruction prompts like E5/BGE sentence-transformers models."""

    prompts = {"query": "query: ", "passage": "passage: "}

    def __init__(self):
        self.calls = []

    def encode(self, sentences, **kwargs):
        self.calls.append(kwargs)
        return np.ones((len(sentences), 3), dtype=np.float32)


class TestEmbed:
    @pytest.mark.asyncio
    async def test_embed_uses_injected_encoder(self, embeddings, encoder):
        encoder.table["hello"] = [1.0] + [0.0] * 15

        vector = await embeddings.embed("hello")

        assert vector[0] == 1.0
        assert len(vector) == 16

    @pytest.mark.asyncio
    async def test_prompt_names_follow_text_kind(self):
        encoder = PromptedEncoder()
        service = EmbeddingService(EmbeddingSettings(), encoder=encoder)

        await service.embed("q", kind="query")
        await service.embed("p", kind="passage")

        assert [c["prompt_name"] for c in encoder.calls] == ["query", "passage"]
        assert all(c["normalize_embeddings"] for c in encoder.calls)

    @pytest.mark.asyncio
    async def test_provider_failure_is_embedding_error(self, embeddings, encoder):
        with patch.object(encoder, "encode", side_effect=RuntimeError("CUDA out of memory")):
            with pytest.raises(EmbeddingError):
                await embeddings.embed("hello")

    @pytest.mark.asyncio
    async def test_empty_batch(self, embeddings):
        assert await embeddings.embed_batch([]) == []


class TestDimension:
    def test_configured_dimension_wins(self):
        assert EmbeddingService(EmbeddingSettings(dimension=42), encoder=MagicMock()).dimension == 42

    def test_known_model_table(self):
        service = EmbeddingService(EmbeddingSettings(model_name="sentence-transformers/all-MiniLM-L6-v2"))
        assert service.dimension == 384

    def test_unknown_model_dimension_is_measured(self):
        encoder = PromptedEncoder()
        service = EmbeddingService(EmbeddingSettings(model_name="acme/custom-embedder"), encoder=encoder)
        assert service.dimension == 3


class TestSimilarity:
    def test_cosine(self):
        assert EmbeddingService.cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
        assert EmbeddingService.cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
        assert EmbeddingService.cosine_similarity([0, 0], [1, 0]) == 0.0

    def test_top_k_stable_order(self):
        candidates = [[0, 1], [1, 0], [1, 0], [1, 1]]
        ranked = EmbeddingService.top_k_similar([1, 0], candidates, k=3)
        assert [i for i, _ in ranked] == [1, 2, 3]

    def test_top_k_empty(self):
        assert EmbeddingService.top_k_similar([1, 0], [], k=3) == []
        assert EmbeddingService.top_k_similar([1, 0], [[1, 0]], k=0) == []
