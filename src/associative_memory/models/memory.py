"""Memory-related data models.

Pydantic v2 models for atomic memory entries, their scored search results,
association edges and episodic conversation summaries.
"""

import time
import uuid
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .validators import (
    ClampedUnitFloat,
    EntryId,
    MemoryScope,
    MemorySource,
    NonNegativeInt,
    SearchOrigin,
    Timestamp,
    partition_key,
)


def new_entry_id() -> str:
    """Random identifier for a new entry (UUID string, valid as a Qdrant point id)."""
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Memory entry
# ---------------------------------------------------------------------------


class MemoryEntry(BaseModel):
    """A single atomic fact or preference with its decay bookkeeping."""

    model_config = ConfigDict(populate_by_name=True)

    id: EntryId = Field(default_factory=new_entry_id)
    scope: MemoryScope
    scope_owner_id: str | None = None
    # str, not Literal: callers classify freely: fact, preference, skill-note, ...
    memory_type: str = "fact"
    content: str = Field(min_length=1)

    importance: ClampedUnitFloat = 0.5
    strength: ClampedUnitFloat = 1.0
    decay_rate: float = Field(default=0.02, gt=0.0)

    last_accessed_at: Timestamp = None
    access_count: NonNegativeInt = 0
    source: MemorySource = "explicit"
    created_at: Timestamp = Field(default_factory=time.time)

    # Optimistic concurrency counter, bumped on every successful update
    version: NonNegativeInt = 0

    @model_validator(mode="after")
    def normalise_owner(self) -> Self:
        """Global memories never carry an owner."""
        if self.scope == "global":
            self.scope_owner_id = None
        return self

    @property
    def partition(self) -> str:
        return partition_key(self.scope, self.scope_owner_id)

    def to_payload(self) -> dict[str, Any]:
        """Storage payload (flat, JSON-safe)."""
        payload = self.model_dump()
        payload["partition"] = self.partition
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "MemoryEntry":
        """Rebuild an entry from a storage payload, ignoring unknown keys."""
        known = {k: v for k, v in payload.items() if k in cls.model_fields}
        return cls.model_validate(known)


class ScoredMemory(BaseModel):
    """A memory entry with the signals and final score computed for one query."""

    memory: MemoryEntry
    similarity: float = 0.0
    effective_strength: float = 0.0
    recency_score: float = 0.0
    frequency_score: float = 0.0
    final_score: float = 0.0

    # Set for entries surfaced (or lifted) by associative expansion
    activation: float | None = None
    hops: int = 0
    origin: SearchOrigin = "vector"

    @property
    def id(self) -> str:
        return self.memory.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.memory.id,
            "scope": self.memory.scope,
            "scope_owner_id": self.memory.scope_owner_id,
            "memory_type": self.memory.memory_type,
            "content": self.memory.content,
            "importance": self.memory.importance,
            "similarity": round(self.similarity, 4),
            "effective_strength": round(self.effective_strength, 4),
            "recency_score": round(self.recency_score, 4),
            "final_score": round(self.final_score, 4),
            "origin": self.origin,
            "hops": self.hops,
        }


class HybridWeights(BaseModel):
    """Weights of the five ranking signals."""

    similarity: float = Field(default=0.45, ge=0.0)
    strength: float = Field(default=0.20, ge=0.0)
    frequency: float = Field(default=0.15, ge=0.0)
    recency: float = Field(default=0.10, ge=0.0)
    importance: float = Field(default=0.10, ge=0.0)


# ---------------------------------------------------------------------------
# Associations
# ---------------------------------------------------------------------------


class MemoryAssociation(BaseModel):
    """Undirected weighted edge; endpoints are kept in canonical (sorted) order."""

    source_id: EntryId
    target_id: EntryId
    weight: ClampedUnitFloat

    @model_validator(mode="after")
    def canonical_order(self) -> Self:
        if self.source_id == self.target_id:
            raise ValueError("an association needs two distinct entries")
        if self.source_id > self.target_id:
            self.source_id, self.target_id = self.target_id, self.source_id
        return self

    def touches(self, entry_id: str) -> bool:
        return entry_id in (self.source_id, self.target_id)

    def other(self, entry_id: str) -> str:
        """The endpoint opposite *entry_id*."""
        return self.target_id if entry_id == self.source_id else self.source_id


# ---------------------------------------------------------------------------
# Episodes
# ---------------------------------------------------------------------------


class ConversationSummary(BaseModel):
    """Narrative rollup of a time-bounded conversation ("episode")."""

    id: EntryId = Field(default_factory=new_entry_id)
    session_id: str
    user_id: str | None = None
    team_id: str | None = None
    summary: str = Field(min_length=1)
    topics: list[str] = Field(default_factory=list)
    decisions: list[str] = Field(default_factory=list)
    message_count: NonNegativeInt = 0
    period_start: Timestamp = None
    period_end: Timestamp = None
    created_at: Timestamp = Field(default_factory=time.time)

    @property
    def embedding_text(self) -> str:
        """Text indexed for semantic episode search."""
        return f"{self.summary}\nTopics: {', '.join(self.topics)}"


class ChatMessage(BaseModel):
    """One message of a conversation window handed to the episode summariser."""

    role: str
    content: str = ""
    created_at: Timestamp = None

    @property
    def is_user(self) -> bool:
        return self.role.lower() == "user"


class EpisodeMatch(BaseModel):
    """Episode search result: narrative fields plus similarity."""

    episode: ConversationSummary
    similarity: float
