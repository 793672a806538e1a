"""Operation result models.

Primary results are kept apart from the outcome of auxiliary, best-effort
side effects (auto-linking, re-embedding, recall reinforcement) so a failed
side effect is visible to observability without failing the operation.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field

from .memory import MemoryEntry


class EffectOutcome(BaseModel):
    """Outcome of one best-effort side effect."""

    name: str
    ok: bool
    detail: Any = None
    error: str | None = None


class StoreResult(BaseModel):
    """Result of ``MemoryService.store``."""

    entry: MemoryEntry
    action: Literal["created", "reconsolidated"]
    # Similarity to the nearest existing entry at decision time (0.0 when the partition was empty)
    nearest_similarity: float = 0.0
    effects: list[EffectOutcome] = Field(default_factory=list)

    @property
    def reconsolidated(self) -> bool:
        return self.action == "reconsolidated"

    def effect(self, name: str) -> EffectOutcome | None:
        return next((e for e in self.effects if e.name == name), None)


class ConsolidationResult(BaseModel):
    """Per-phase counts of one consolidation cycle."""

    memories_decayed: int = 0
    memories_pruned: int = 0
    duplicates_found: int = 0
    memories_merged: int = 0
    associations_cleaned: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump()
        data["success"] = self.success
        return data
