from .goals import Goal, GoalRevision
from .memory import (
    ChatMessage,
    ConversationSummary,
    EpisodeMatch,
    HybridWeights,
    MemoryAssociation,
    MemoryEntry,
    ScoredMemory,
)
from .results import ConsolidationResult, EffectOutcome, StoreResult

__all__ = [
    "ChatMessage",
    "ConsolidationResult",
    "ConversationSummary",
    "EffectOutcome",
    "EpisodeMatch",
    "Goal",
    "GoalRevision",
    "HybridWeights",
    "MemoryAssociation",
    "MemoryEntry",
    "ScoredMemory",
    "StoreResult",
]
