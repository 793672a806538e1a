"""Episode summarisation: extractive, zero-cost heuristics over a conversation window.

Produces the narrative rollup stored as an episode:

1. **Summary**: date, message counts and the opening user request
2. **Topics**: most frequent non-stop-words across user messages (top 8)
3. **Decisions**: recommendation phrases found in assistant messages (at most 5)

No LLM call is involved; an external summariser may replace any field before
the episode is stored.
"""

import logging
import re
from collections import Counter
from collections.abc import Sequence
from datetime import UTC, datetime

from ..models.memory import ChatMessage, ConversationSummary

logger = logging.getLogger(__name__)

MIN_MESSAGES_FOR_SUMMARY = 4
MAX_TOPICS = 8
MAX_DECISIONS = 5
# Characters of the opening user message quoted in the summary
TOPIC_HINT_CHARS = 100

STOP_WORDS: frozenset[str] = frozenset(
    """
    the a an is are was were be been being have has had do does did will would could
    should may might can shall to of in for on with at by from it its this that
    and or but not no so if then than i me my we you your he she they them
    what which who whom how when where why all each every both few more most some
    such just also very too only about up out into over after before between under
    again further there here any other like get got want know think make go see
    come take give tell say said much many well back even still way use her him
    """.split()
)

_WORD_CLEAN = re.compile(r"[^a-z0-9\s-]")

_DECISION_PATTERNS = [
    re.compile(
        r"(?:I recommend|I suggest|you should|let's go with|the best approach|I'd recommend|we should)\s+(.{10,80})",
        re.IGNORECASE,
    ),
    re.compile(r"(?:decision|conclusion|plan|recommendation):\s*(.{10,80})", re.IGNORECASE),
]
_TRAILING_PUNCT = re.compile(r"[.!?,;]+$")


def extract_topics(user_messages: Sequence[str], max_topics: int = MAX_TOPICS) -> list[str]:
    """Most frequent meaningful words (length > 2, not stop words), ties in first-seen order."""
    counts: Counter[str] = Counter()
    for message in user_messages:
        words = _WORD_CLEAN.sub(" ", message.lower()).split()
        counts.update(w for w in words if len(w) > 2 and w not in STOP_WORDS)
    return [word for word, _ in counts.most_common(max_topics)]


def extract_decisions(assistant_messages: Sequence[str], max_decisions: int = MAX_DECISIONS) -> list[str]:
    """Recommendation phrases from assistant messages, in order of appearance."""
    decisions: list[str] = []
    for message in assistant_messages:
        for pattern in _DECISION_PATTERNS:
            for match in pattern.finditer(message):
                decision = _TRAILING_PUNCT.sub("", match.group(1).strip())
                if len(decision) > 10 and len(decisions) < max_decisions:
                    decisions.append(decision)
    return decisions


def _format_date(ts: float | None) -> str:
    dt = datetime.fromtimestamp(ts, tz=UTC) if ts is not None else datetime.now(tz=UTC)
    return f"{dt:%b} {dt.day}, {dt.year}"


def build_episode(
    session_id: str,
    messages: Sequence[ChatMessage],
    user_id: str | None = None,
    team_id: str | None = None,
) -> ConversationSummary | None:
    """Summarise a message window into an episode.

    Returns:
        The episode, or None when the window has fewer than
        ``MIN_MESSAGES_FOR_SUMMARY`` messages.
    """
    if len(messages) < MIN_MESSAGES_FOR_SUMMARY:
        logger.debug(f"Session {session_id}: {len(messages)} messages, below summary minimum")
        return None

    user_messages = [m.content.strip() for m in messages if m.is_user and m.content.strip()]
    assistant_messages = [m.content.strip() for m in messages if not m.is_user and m.content.strip()]

    first = user_messages[0] if user_messages else ""
    topic_hint = first[:TOPIC_HINT_CHARS] + "..." if len(first) > TOPIC_HINT_CHARS else first

    summary = (
        f"On {_format_date(messages[0].created_at)}, a conversation of {len(messages)} messages took place. "
        f'The user started by discussing: "{topic_hint}". '
        f"{len(user_messages)} user messages and {len(assistant_messages)} AI responses were exchanged."
    )

    timestamps = [m.created_at for m in messages if m.created_at is not None]
    return ConversationSummary(
        session_id=session_id,
        user_id=user_id,
        team_id=team_id,
        summary=summary,
        topics=extract_topics(user_messages),
        decisions=extract_decisions(assistant_messages),
        message_count=len(messages),
        period_start=min(timestamps) if timestamps else None,
        period_end=max(timestamps) if timestamps else None,
    )
