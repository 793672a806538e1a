"""
Hybrid scoring and associative expansion.

Pure functions over :class:`ScoredMemory` lists; the service layer supplies
the candidates and the association edges.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from ..models.memory import HybridWeights, MemoryAssociation, MemoryEntry, ScoredMemory
from .decay import effective_strength, frequency_score, recency_score


def score_candidate(
    entry: MemoryEntry,
    similarity: float,
    weights: HybridWeights,
    now: float,
    importance_resistance: float = 0.7,
    recency_half_life_hours: float = 72.0,
    frequency_saturation: int = 100,
) -> ScoredMemory:
    """Compute the five signals for one candidate and their weighted sum."""
    strength = effective_strength(entry, now, importance_resistance)
    recency = recency_score(entry, now, recency_half_life_hours)
    frequency = frequency_score(entry.access_count, frequency_saturation)
    final = (
        weights.similarity * similarity
        + weights.strength * strength
        + weights.frequency * frequency
        + weights.recency * recency
        + weights.importance * entry.importance
    )
    return ScoredMemory(
        memory=entry,
        similarity=similarity,
        effective_strength=strength,
        recency_score=recency,
        frequency_score=frequency,
        final_score=final,
    )


def rank(scored: Iterable[ScoredMemory], limit: int | None = None) -> list[ScoredMemory]:
    """Sort by descending final score; equal scores keep their input order."""
    ordered = sorted(scored, key=lambda s: s.final_score, reverse=True)
    return ordered if limit is None else ordered[: max(0, limit)]


def link_weight(similarity: float, link_threshold: float, floor: float = 0.3) -> float:
    """
    Edge weight for a pair whose similarity clears *link_threshold*.

    Rises linearly from *floor* at the threshold to 1.0 at similarity 1.0.
    """
    if similarity < link_threshold:
        return 0.0
    span = 1.0 - link_threshold
    fraction = 1.0 if span <= 0 else (similarity - link_threshold) / span
    return min(1.0, floor + (1.0 - floor) * max(0.0, fraction))


def propagate(
    frontier: dict[str, float],
    edges: Iterable[MemoryAssociation],
    damping: float,
    exclude: Iterable[str] = (),
) -> dict[str, float]:
    """
    One round of spreading activation.

    Each neighbor of a frontier node receives ``score * weight * damping``; a
    neighbor reached over several edges keeps the maximum. Nodes in *exclude*
    and the frontier itself are never activated (no self-reinforcing cycles).
    """
    blocked = set(exclude) | set(frontier)
    activations: dict[str, float] = {}
    for edge in edges:
        for source in (edge.source_id, edge.target_id):
            if source not in frontier:
                continue
            neighbor = edge.other(source)
            if neighbor in blocked:
                continue
            activation = frontier[source] * edge.weight * damping
            if activation > activations.get(neighbor, 0.0):
                activations[neighbor] = activation
    return activations


def merge_by_max(*groups: Iterable[ScoredMemory]) -> list[ScoredMemory]:
    """Union keyed by entry id; the higher final score wins, first seen breaks ties."""
    best: dict[str, ScoredMemory] = {}
    for group in groups:
        for item in group:
            current = best.get(item.id)
            if current is None or item.final_score > current.final_score:
                best[item.id] = item
    return list(best.values())


def allocate_scope_limits(limit: int, shares: tuple[float, float, float]) -> tuple[int, int, int]:
    """Per-scope limits for a fan-out search, each share of *limit* rounded up."""
    if limit <= 0:
        return (0, 0, 0)
    # round() first so 10 * 0.3 == 3.0000000000000004 does not ceil to 4
    personal, team, global_ = (max(1, math.ceil(round(limit * share, 6))) for share in shares)
    return personal, team, global_
