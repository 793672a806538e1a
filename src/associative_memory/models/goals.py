"""Goal models.

Goals are long-lived personal or team objectives. Unlike memory entries they
never decay and are not recalled by similarity: every active goal of a scope
is always placed in the agent context.
"""

import time
from typing import Any

from pydantic import BaseModel, Field

from .memory import new_entry_id
from .validators import EntryId, GoalPriority, GoalScope, GoalStatus, NonNegativeInt, Timestamp, partition_key

# Sort key for "high first"
PRIORITY_RANK: dict[str, int] = {"high": 0, "medium": 1, "low": 2}


class GoalRevision(BaseModel):
    """One description change, kept on the goal as its history."""

    previous_description: str
    new_description: str
    source_session_id: str | None = None
    updated_at: Timestamp = Field(default_factory=time.time)


class Goal(BaseModel):
    """A scoped objective with priority, status and description history."""

    id: EntryId = Field(default_factory=new_entry_id)
    scope: GoalScope
    scope_owner_id: str = Field(min_length=1)
    description: str = Field(min_length=1)
    priority: GoalPriority = "medium"
    status: GoalStatus = "active"
    source_session_id: str | None = None
    created_at: Timestamp = Field(default_factory=time.time)
    updated_at: Timestamp = Field(default_factory=time.time)
    history: list[GoalRevision] = Field(default_factory=list)

    # Optimistic concurrency counter, bumped on every successful update
    version: NonNegativeInt = 0

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump()
        payload["partition"] = partition_key(self.scope, self.scope_owner_id)
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Goal":
        known = {k: v for k, v in payload.items() if k in cls.model_fields}
        return cls.model_validate(known)
