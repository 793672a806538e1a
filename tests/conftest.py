import hashlib
import math
import os
import sys

import numpy as np
import pytest

# Force CPU-only mode for tests (avoids CUDA compatibility issues)
os.environ["CUDA_VISIBLE_DEVICES"] = ""

# Keep tests off any configured Qdrant server or FalkorDB instance
os.environ.setdefault("MEM_STORAGE_BACKEND", "memory")
os.environ.setdefault("MEM_GRAPH_ENABLED", "false")

# Add src directory to Python path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

from associative_memory.config import DecaySettings, EmbeddingSettings, SearchSettings, StoreSettings  # noqa: E402
from associative_memory.embeddings.service import EmbeddingService  # noqa: E402
from associative_memory.graph.memory_graph import InMemoryAssociationStore  # noqa: E402
from associative_memory.services.decay_service import DecayService  # noqa: E402
from associative_memory.services.memory_service import MemoryService  # noqa: E402
from associative_memory.storage.memory_storage import InMemoryStorage  # noqa: E402

DIM = 16


def axis(i: int) -> list[float]:
    """Unit vector along dimension *i*."""
    v = [0.0] * DIM
    v[i] = 1.0
    return v


def blend(a: int, b: int, similarity: float) -> list[float]:
    """Unit vector whose cosine with ``axis(a)`` is exactly *similarity* (the rest goes to ``axis(b)``)."""
    v = [0.0] * DIM
    v[a] = similarity
    v[b] = math.sqrt(max(0.0, 1.0 - similarity * similarity))
    return v


class FakeEncoder:
    """Table-driven encoder: known texts map to fixed vectors, others to a stable pseudo-random one."""

    def __init__(self, table: dict[str, list[float]] | None = None):
        self.table: dict[str, list[float]] = dict(table or {})
        self.calls = 0

    def _vector(self, text: str) -> list[float]:
        if text in self.table:
            return self.table[text]
        seed = int.from_bytes(hashlib.sha256(text.encode()).digest()[:4], "little")
        return np.random.default_rng(seed).normal(size=DIM).tolist()

    def encode(self, sentences, **kwargs):
        self.calls += 1
        return np.asarray([self._vector(s) for s in sentences], dtype=np.float32)


@pytest.fixture
def encoder():
    return FakeEncoder()


@pytest.fixture
def embeddings(encoder):
    return EmbeddingService(EmbeddingSettings(dimension=DIM), encoder=encoder)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def associations():
    return InMemoryAssociationStore()


@pytest.fixture
def decay(storage):
    return DecayService(storage, DecaySettings())


@pytest.fixture
def memory_service(storage, embeddings, associations, decay):
    return MemoryService(
        storage,
        embeddings,
        associations,
        decay=decay,
        store_config=StoreSettings(),
        search_config=SearchSettings(reinforce_on_recall=False),
    )
