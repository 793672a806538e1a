"""
Configuration for the associative memory engine.

Each concern gets its own pydantic-settings group with a dedicated env prefix
(``MEM_<GROUP>_*``). The root :class:`Settings` aggregates them. A module-level
``settings`` instance exists for process entry points; services take their
settings groups as constructor arguments.
"""

import logging
from typing import Literal, Self

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class EmbeddingSettings(BaseSettings):
    """Embedding provider (sentence-transformers) configuration."""

    model_config = SettingsConfigDict(env_prefix="MEM_EMBEDDING_", extra="ignore")

    model_name: str = "BAAI/bge-base-en-v1.5"
    device: str | None = None
    # Overrides the known-model dimension table (and the sample encode)
    dimension: int | None = Field(default=None, ge=1)
    query_prompt_name: str = "query"
    passage_prompt_name: str = "passage"


class QdrantSettings(BaseSettings):
    """Qdrant vector store configuration."""

    model_config = SettingsConfigDict(env_prefix="MEM_QDRANT_", extra="ignore")

    # Server URL, or ":memory:" for an in-process instance
    url: str | None = None
    storage_path: str = "./data/qdrant"
    collection_name: str = "memories"

    HNSW_M: int = Field(default=16, ge=4)
    HNSW_EF_CONSTRUCT: int = Field(default=128, ge=8)
    HNSW_FULL_SCAN_THRESHOLD: int = Field(default=10000, ge=0)
    ON_DISK_PAYLOAD: bool = False


class GraphSettings(BaseSettings):
    """Association graph backend. Disabled means the in-process graph is used."""

    model_config = SettingsConfigDict(env_prefix="MEM_GRAPH_", extra="ignore")

    enabled: bool = False
    host: str = "localhost"
    port: int = Field(default=6379, ge=1, le=65535)
    password: SecretStr | None = None
    graph_name: str = "memory_associations"
    max_connections: int = Field(default=16, ge=1)


class DecaySettings(BaseSettings):
    """Forgetting curve and recall reinforcement constants.

    effective = strength * exp(-decay_rate * (1 - importance_resistance * importance) * hours_since_access)
    """

    model_config = SettingsConfigDict(env_prefix="MEM_DECAY_", extra="ignore")

    # Per hour
    default_decay_rate: float = Field(default=0.02, gt=0.0)
    min_decay_rate: float = Field(default=0.01, gt=0.0)
    importance_resistance: float = Field(default=0.7, ge=0.0, le=1.0)
    reinforcement_rate: float = Field(default=0.1, gt=0.0, lt=1.0)
    recall_decay_multiplier: float = Field(default=0.85, gt=0.0, le=1.0)
    recency_half_life_hours: float = Field(default=72.0, gt=0.0)
    frequency_saturation: int = Field(default=100, ge=1)
    # persist_decay only rewrites entries idle longer than this
    persist_after_hours: float = Field(default=24.0, ge=0.0)
    persist_min_strength: float = Field(default=0.01, ge=0.0, le=1.0)
    recall_max_retries: int = Field(default=3, ge=1)


class StoreSettings(BaseSettings):
    """Write-path thresholds: reconsolidation and auto-linking."""

    model_config = SettingsConfigDict(env_prefix="MEM_STORE_", extra="ignore")

    reconsolidation_threshold: float = Field(default=0.90, ge=0.0, le=1.0)
    link_threshold: float = Field(default=0.70, ge=0.0, le=1.0)
    link_candidates: int = Field(default=5, ge=0)
    link_weight_floor: float = Field(default=0.3, ge=0.0, le=1.0)
    max_conflict_retries: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def check_threshold_order(self) -> Self:
        if self.link_threshold >= self.reconsolidation_threshold:
            raise ValueError(
                f"link_threshold ({self.link_threshold}) must be lower than "
                f"reconsolidation_threshold ({self.reconsolidation_threshold})"
            )
        return self


class SearchSettings(BaseSettings):
    """Read-path scoring, expansion and scope fan-out."""

    model_config = SettingsConfigDict(env_prefix="MEM_SEARCH_", extra="ignore")

    weight_similarity: float = Field(default=0.45, ge=0.0)
    weight_strength: float = Field(default=0.20, ge=0.0)
    weight_frequency: float = Field(default=0.15, ge=0.0)
    weight_recency: float = Field(default=0.10, ge=0.0)
    weight_importance: float = Field(default=0.10, ge=0.0)

    overfetch_factor: int = Field(default=4, ge=1)
    max_candidates: int = Field(default=100, ge=1)

    damping: float = Field(default=0.5, gt=0.0, lt=1.0)
    confident_score: float = Field(default=0.5, ge=0.0, le=1.0)
    deep_max_hops: int = Field(default=3, ge=1, le=5)
    # Share of a deep-recall neighbor score taken from propagated activation
    propagation_share: float = Field(default=0.6, ge=0.0, le=1.0)
    reinforce_on_recall: bool = True

    personal_share: float = Field(default=0.4, gt=0.0, le=1.0)
    team_share: float = Field(default=0.3, gt=0.0, le=1.0)
    global_share: float = Field(default=0.3, gt=0.0, le=1.0)


class ConsolidationSettings(BaseSettings):
    """Periodic maintenance cycle configuration."""

    model_config = SettingsConfigDict(env_prefix="MEM_CONSOLIDATION_", extra="ignore")

    prune_threshold: float = Field(default=0.05, ge=0.0, le=1.0)
    protected_importance: float = Field(default=0.8, ge=0.0, le=1.0)
    dedup_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    max_duplicates_per_run: int = Field(default=100, ge=0)
    dedup_neighbors: int = Field(default=5, ge=1)
    merge_strength_boost: float = Field(default=0.05, ge=0.0, le=1.0)
    access_count_weight: float = Field(default=0.01, ge=0.0)
    min_association_weight: float = Field(default=0.1, ge=0.0, le=1.0)
    batch_size: int = Field(default=200, ge=1)
    interval_hours: float = Field(default=6.0, gt=0.0)


class ServerSettings(BaseSettings):
    """MCP server transport."""

    model_config = SettingsConfigDict(env_prefix="MEM_SERVER_", extra="ignore")

    transport: Literal["stdio", "http"] = "stdio"
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)


class Settings(BaseSettings):
    """Root settings aggregating every group."""

    model_config = SettingsConfigDict(env_prefix="MEM_", extra="ignore")

    storage_backend: Literal["qdrant", "memory"] = "qdrant"
    log_level: str = "INFO"

    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    qdrant: QdrantSettings = Field(default_factory=QdrantSettings)
    graph: GraphSettings = Field(default_factory=GraphSettings)
    decay: DecaySettings = Field(default_factory=DecaySettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    consolidation: ConsolidationSettings = Field(default_factory=ConsolidationSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    @model_validator(mode="after")
    def check_dedup_stricter_than_reconsolidation(self) -> Self:
        if self.consolidation.dedup_threshold < self.store.reconsolidation_threshold:
            raise ValueError(
                "consolidation.dedup_threshold must be >= store.reconsolidation_threshold "
                f"({self.consolidation.dedup_threshold} < {self.store.reconsolidation_threshold})"
            )
        return self


settings = Settings()
