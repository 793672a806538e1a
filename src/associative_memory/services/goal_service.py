"""
Goal Service - scoped personal and team objectives.

Goals sit beside memory entries but follow different rules: they never decay,
are never merged, and every active goal of a scope belongs in the agent context.
Description changes keep the previous text as history on the goal itself, so
each change is a single compare-and-set write.
"""

import logging
import time
from collections.abc import Callable

from ..exceptions import ConcurrencyConflictError, GoalNotFoundError
from ..models.goals import PRIORITY_RANK, Goal, GoalRevision
from ..storage.base import MemoryStorage

logger = logging.getLogger(__name__)

GOAL_MAX_RETRIES = 3


class GoalService:
    """Create, revise and list goals for personal and team scopes."""

    def __init__(self, storage: MemoryStorage):
        self.storage = storage

    async def create_goal(
        self,
        scope: str,
        owner_id: str,
        description: str,
        priority: str = "medium",
        source_session_id: str | None = None,
    ) -> Goal:
        """
        Create an active goal.

        Raises:
            ValueError: scope other than personal/team, missing owner or empty description
        """
        goal = Goal(
            scope=scope,
            scope_owner_id=owner_id,
            description=description.strip() if description else "",
            priority=priority,
            source_session_id=source_session_id,
        )
        await self.storage.insert_goal(goal)
        logger.info(f"Created {goal.priority} goal {goal.id[:8]} for {scope}:{owner_id}")
        return goal

    async def _modify(self, goal_id: str, change: Callable[[Goal], dict]) -> Goal:
        for _ in range(GOAL_MAX_RETRIES):
            current = await self.storage.get_goal(goal_id)
            if current is None:
                raise GoalNotFoundError(f"Goal {goal_id} not found")
            update = change(current)
            update["updated_at"] = time.time()
            # Validate the changed fields the same way creation does
            updated = Goal.model_validate({**current.model_dump(), **update})
            if await self.storage.update_goal(updated, current.version):
                return updated.model_copy(update={"version": current.version + 1})
        raise ConcurrencyConflictError(f"goal {goal_id} lost {GOAL_MAX_RETRIES} compare-and-set races")

    async def update_goal(self, goal_id: str, new_description: str, source_session_id: str | None = None) -> Goal:
        """Replace the description, recording the previous one in the goal's history."""
        new_description = new_description.strip() if new_description else ""

        def change(goal: Goal) -> dict:
            revision = GoalRevision(
                previous_description=goal.description,
                new_description=new_description,
                source_session_id=source_session_id,
            )
            return {"description": new_description, "history": [*goal.history, revision]}

        goal = await self._modify(goal_id, change)
        logger.info(f"Updated goal {goal_id[:8]} (revision {len(goal.history)})")
        return goal

    async def set_status(self, goal_id: str, status: str) -> Goal:
        return await self._modify(goal_id, lambda goal: {"status": status})

    async def set_priority(self, goal_id: str, priority: str) -> Goal:
        return await self._modify(goal_id, lambda goal: {"priority": priority})

    async def get_active_goals(self, scope: str, owner_id: str) -> list[Goal]:
        """Active goals, highest priority first, then most recently updated."""
        goals = await self.storage.list_goals(scope, owner_id, status="active")
        goals.sort(key=lambda g: (PRIORITY_RANK[g.priority], -(g.updated_at or 0.0)))
        return goals

    async def get_all_goals(self, scope: str, owner_id: str) -> list[Goal]:
        goals = await self.storage.list_goals(scope, owner_id)
        goals.sort(key=lambda g: g.updated_at or 0.0, reverse=True)
        return goals

    async def get_goal_history(self, goal_id: str) -> list[GoalRevision]:
        """Description revisions, newest first."""
        goal = await self.storage.get_goal(goal_id)
        if goal is None:
            raise GoalNotFoundError(f"Goal {goal_id} not found")
        return list(reversed(goal.history))

    async def get_context_goals(self, user_id: str | None, team_id: str | None) -> list[Goal]:
        """Active personal goals followed by active team goals, for the agent context."""
        goals: list[Goal] = []
        if user_id:
            goals.extend(await self.get_active_goals("personal", user_id))
        if team_id:
            goals.extend(await self.get_active_goals("team", team_id))
        return goals
