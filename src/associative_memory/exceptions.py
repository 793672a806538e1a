"""Exception hierarchy for the memory engine.

Transient errors are the ones a caller may retry: the embedding provider or the
store was unavailable, or an optimistic update kept losing its race.
"""


class MemoryEngineError(Exception):
    """Base class for engine errors."""


class TransientError(MemoryEngineError):
    """Retryable infrastructure failure."""


class StorageError(TransientError):
    """Storage-related errors."""


class EmbeddingError(TransientError):
    """Embedding generation failed."""


class ConcurrencyConflictError(TransientError):
    """A compare-and-set update lost every retry against concurrent writers."""


class GoalNotFoundError(MemoryEngineError, ValueError):
    """No goal with the given id (a caller input error, not retryable)."""
