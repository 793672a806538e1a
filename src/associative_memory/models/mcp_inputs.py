"""MCP tool input models.

Each MCP tool validates its inputs by constructing the corresponding model;
scope/owner rules, range clamping and mode-dependent required fields live here
as declarative constraints.
"""

from __future__ import annotations

from typing import Literal, Self

from pydantic import BaseModel, Field, model_validator

from .memory import ChatMessage
from .validators import (
    ClampedUnitFloat,
    GoalPriority,
    GoalScope,
    GoalStatus,
    MemoryScope,
    MemorySource,
    Timestamp,
    validate_partition,
)

SearchMode = Literal["scope", "all", "deep"]


class StoreMemoryParams(BaseModel):
    """Validated input for the ``store_memory`` MCP tool."""

    content: str = Field(min_length=1)
    scope: MemoryScope = "personal"
    owner_id: str | None = None
    memory_type: str = "fact"
    importance: ClampedUnitFloat = 0.5
    source: MemorySource = "explicit"

    @model_validator(mode="after")
    def check_partition(self) -> Self:
        if not self.content.strip():
            raise ValueError("content must not be blank")
        self.owner_id = validate_partition(self.scope, self.owner_id)
        return self


class SearchMemoryParams(BaseModel):
    """Validated input for the ``search_memory`` MCP tool.

    ``scope`` and ``deep`` modes search one partition; ``all`` fans out over
    the user's personal, the team's and global memories.
    """

    query: str = Field(min_length=1)
    mode: SearchMode = "scope"
    scope: MemoryScope = "personal"
    owner_id: str | None = None
    user_id: str | None = None
    team_id: str | None = None
    limit: int = Field(default=10, ge=1, le=50)
    max_hops: int | None = Field(default=None, ge=0, le=5)
    include_episodes: bool = False
    episode_limit: int = Field(default=3, ge=1, le=20)
    min_episode_similarity: float = Field(default=0.3, ge=0.0, le=1.0)
    include_goals: bool = True
    reinforce: bool = True

    @model_validator(mode="after")
    def check_mode_fields(self) -> Self:
        if self.mode == "all":
            return self
        self.owner_id = validate_partition(self.scope, self.owner_id)
        return self


class StoreEpisodeParams(BaseModel):
    """Validated input for the ``store_episode`` MCP tool.

    Either a ready ``summary`` or a ``messages`` window to summarise is required.
    """

    session_id: str = Field(min_length=1)
    user_id: str | None = None
    team_id: str | None = None
    summary: str | None = None
    topics: list[str] = Field(default_factory=list)
    decisions: list[str] = Field(default_factory=list)
    message_count: int = Field(default=0, ge=0)
    period_start: Timestamp = None
    period_end: Timestamp = None
    messages: list[ChatMessage] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_source_fields(self) -> Self:
        if not self.user_id and not self.team_id:
            raise ValueError("user_id or team_id is required")
        if not (self.summary and self.summary.strip()) and not self.messages:
            raise ValueError("either summary or messages is required")
        return self


class StoreGoalParams(BaseModel):
    """Validated input for the ``store_goal`` MCP tool."""

    description: str = Field(min_length=1)
    scope: GoalScope = "personal"
    owner_id: str = Field(min_length=1)
    priority: GoalPriority = "medium"
    source_session_id: str | None = None


class UpdateGoalParams(BaseModel):
    """Validated input for the ``update_goal`` MCP tool; at least one change is required."""

    goal_id: str = Field(min_length=1)
    description: str | None = None
    status: GoalStatus | None = None
    priority: GoalPriority | None = None
    source_session_id: str | None = None

    @model_validator(mode="after")
    def check_has_change(self) -> Self:
        if self.description is not None and not self.description.strip():
            raise ValueError("description must not be blank")
        if self.description is None and self.status is None and self.priority is None:
            raise ValueError("one of description, status or priority is required")
        return self


class ListGoalsParams(BaseModel):
    """Validated input for the ``list_goals`` MCP tool."""

    scope: GoalScope = "personal"
    owner_id: str = Field(min_length=1)
    include_inactive: bool = False
    include_history: bool = False
