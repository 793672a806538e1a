"""Prompt-ready rendering of active goals, recalled memories and episodes."""

from collections.abc import Sequence

from ..models.goals import Goal
from ..models.memory import EpisodeMatch, ScoredMemory

HIGH_CONFIDENCE = 0.7
MEDIUM_CONFIDENCE = 0.4


def confidence_label(score: float) -> str:
    if score >= HIGH_CONFIDENCE:
        return "high"
    if score >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


def format_memory_block(
    memories: Sequence[ScoredMemory],
    episodes: Sequence[EpisodeMatch] = (),
    heading: str = "Relevant Context from Memory",
    goals: Sequence[Goal] = (),
) -> str:
    """Markdown sections: active goals, then memories with a relevance label, then past episodes.

    Goals always lead because they are never summarised away. Returns an empty
    string when there is nothing to show.
    """
    sections: list[list[str]] = []
    if goals:
        sections.append(["## Active Goals", *(f"- [{g.priority.upper()}] {g.description}" for g in goals)])
    if memories:
        sections.append(
            [f"## {heading}", *(f"- [{confidence_label(m.final_score)} relevance] {m.memory.content}" for m in memories)]
        )
    if episodes:
        lines = ["## Past Conversations"]
        for match in episodes:
            ep = match.episode
            line = f"- {ep.summary}"
            if ep.topics:
                line += f" Topics: {', '.join(ep.topics)}."
            if ep.decisions:
                line += f" Decisions: {'; '.join(ep.decisions)}."
            lines.append(line)
        sections.append(lines)
    return "\n\n".join("\n".join(lines) for lines in sections)
