"""Shared Pydantic types and validators for reuse across models.

Centralises score clamping, tolerant timestamp coercion, identifier
constraints, and Literal enums so every model speaks the same language.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Annotated, Any, Literal

from dateutil import parser as dateutil_parser
from pydantic import BeforeValidator, Field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Numeric types
# ---------------------------------------------------------------------------


def clamp_unit(v: Any) -> float:
    """Coerce *v* to a float inside [0.0, 1.0].

    Non-numeric and non-finite input collapses to 0.0 rather than failing,
    since stored rows may predate validation.
    """
    try:
        f = float(v)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(f):
        return 0.0
    return max(0.0, min(1.0, f))


ClampedUnitFloat = Annotated[float, BeforeValidator(clamp_unit)]
"""Float silently clamped into [0.0, 1.0]: importance and strength."""

UnitFloat = Annotated[float, Field(ge=0.0, le=1.0)]
"""Float validated to [0.0, 1.0] for caller-supplied thresholds and weights."""

NonNegativeInt = Annotated[int, Field(ge=0)]
"""Integer ≥ 0 for counts."""


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def coerce_timestamp(v: Any) -> float | None:
    """Accept epoch floats, ISO strings or datetimes; malformed input becomes None.

    * ``1718000000`` → ``1718000000.0``
    * ``"2024-06-10T06:13:20Z"`` → epoch float (UTC)
    * ``"not a date"`` → ``None`` (logged)
    """
    if v is None or v == "":
        return None
    if isinstance(v, bool):
        return None
    if isinstance(v, int | float):
        f = float(v)
        return f if math.isfinite(f) and f >= 0 else None
    if isinstance(v, datetime):
        return v.timestamp()
    if isinstance(v, str):
        try:
            return dateutil_parser.isoparse(v).timestamp()
        except (ValueError, OverflowError):
            logger.warning("Unparseable timestamp %r, treating as missing", v)
            return None
    return None


Timestamp = Annotated[float | None, BeforeValidator(coerce_timestamp)]
"""Epoch seconds, or None when missing or malformed."""


# ---------------------------------------------------------------------------
# String constraints
# ---------------------------------------------------------------------------

EntryId = Annotated[str, Field(min_length=1)]
"""Non-empty entry identifier."""


# ---------------------------------------------------------------------------
# Literal enums
# ---------------------------------------------------------------------------

MemoryScope = Literal["personal", "team", "global"]
MemorySource = Literal["explicit", "conversation", "inference", "consolidation"]
EntryKind = Literal["memory", "episode"]
SearchOrigin = Literal["vector", "association"]
GoalScope = Literal["personal", "team"]
GoalPriority = Literal["high", "medium", "low"]
GoalStatus = Literal["active", "paused", "completed"]

SCOPES: tuple[str, ...] = ("personal", "team", "global")


def partition_key(scope: str, owner_id: str | None) -> str:
    """Storage partition for a (scope, owner) pair; global memories have no owner."""
    return f"{scope}:{owner_id or ''}"


def validate_partition(scope: str, owner_id: str | None) -> str | None:
    """Validate a (scope, owner) pair and return the normalised owner id.

    Raises:
        ValueError: unknown scope, or a personal/team scope without an owner.
    """
    if scope not in SCOPES:
        raise ValueError(f"Invalid scope '{scope}'. Must be one of: {', '.join(SCOPES)}")
    if scope == "global":
        return None
    if not owner_id:
        raise ValueError(f"scope '{scope}' requires an owner id")
    return owner_id
