"""
Forgetting-curve decay and recall reinforcement.

Implements two memory dynamics:

1. Forgetting curve (Ebbinghaus, 1885):
   Retrievability falls exponentially with time since last access. Important
   memories resist decay: the effective rate is scaled by
   ``1 - importance_resistance * importance``.

2. Recall reinforcement (spaced repetition):
   Each recall moves strength a fixed fraction of the way toward 1.0 and
   slows future decay, so repeated recall approaches but never exceeds the
   ceiling.

All functions are pure: they take ``now`` explicitly and never mutate their
input, so they can be evaluated any number of times at query time.
"""

from __future__ import annotations

import math
import time

from ..models.memory import MemoryEntry

SECONDS_PER_HOUR = 3600.0


def hours_between(start: float | None, now: float) -> float:
    """Elapsed hours from *start* to *now*; 0.0 when *start* is missing or in the future."""
    if start is None or not math.isfinite(start):
        return 0.0
    return max(0.0, (now - start) / SECONDS_PER_HOUR)


def _clamp(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


def effective_strength(
    entry: MemoryEntry,
    now: float | None = None,
    importance_resistance: float = 0.7,
) -> float:
    """
    Decay-adjusted strength of *entry* at *now*.

    Formula:
        strength * exp(-decay_rate * (1 - importance_resistance * importance) * hours_since_access)

    A missing ``last_accessed_at`` falls back to ``created_at``; when both are
    missing the stored strength is returned unchanged.
    """
    now = time.time() if now is None else now
    anchor = entry.last_accessed_at if entry.last_accessed_at is not None else entry.created_at
    hours = hours_between(anchor, now)
    rate = entry.decay_rate * (1.0 - importance_resistance * entry.importance)
    return _clamp(entry.strength * math.exp(-max(0.0, rate) * hours))


def recency_score(entry: MemoryEntry, now: float | None = None, half_life_hours: float = 72.0) -> float:
    """
    Newness of *entry* (0.0–1.0), halving every *half_life_hours* since creation.

    Independent of recall history: an old entry that is recalled often stays
    strong but is not "recent".
    """
    now = time.time() if now is None else now
    hours = hours_between(entry.created_at, now)
    return _clamp(math.exp(-math.log(2) * hours / half_life_hours))


def frequency_score(access_count: int, saturation: int = 100) -> float:
    """
    Saturating score of recall count: ``log(1 + n) / log(1 + saturation)``, capped at 1.0.

    The 2nd recall moves the score far more than the 50th.
    """
    if access_count <= 0:
        return 0.0
    return min(1.0, math.log1p(access_count) / math.log1p(saturation))


def reinforced_strength(current: float, reinforcement_rate: float = 0.1) -> float:
    """Move *current* a fraction of the remaining way toward 1.0 (never reaches it from below)."""
    current = _clamp(current)
    return _clamp(current + reinforcement_rate * (1.0 - current))


def tightened_decay_rate(decay_rate: float, multiplier: float = 0.85, floor: float = 0.01) -> float:
    """Slow future decay after a recall, bounded below by *floor*."""
    return max(floor, decay_rate * multiplier)
