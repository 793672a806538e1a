"""
MCP server for the associative memory engine.

Native MCP protocol implementation using FastMCP with Pydantic-validated
tool inputs. Tool bodies delegate to ``handle_*`` coroutines that take the
engine explicitly, so the wire mapping is testable without a transport.
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP
from pydantic import ValidationError

from .config import settings
from .engine import MemoryEngine, create_memory_engine
from .exceptions import GoalNotFoundError, TransientError
from .models.mcp_inputs import (
    ListGoalsParams,
    SearchMemoryParams,
    StoreEpisodeParams,
    StoreGoalParams,
    StoreMemoryParams,
    UpdateGoalParams,
)
from .models.memory import ConversationSummary
from .utils.formatting import format_memory_block

logger = logging.getLogger(__name__)


@dataclass
class MCPServerContext:
    """Application context for the MCP server."""

    engine: MemoryEngine


@asynccontextmanager
async def mcp_server_lifespan(server: FastMCP) -> AsyncIterator[MCPServerContext]:
    """Build the engine on startup and release its backends on shutdown."""
    engine = await create_memory_engine(settings)
    try:
        yield MCPServerContext(engine=engine)
    finally:
        logger.info("Shutting down memory engine...")
        await engine.close()


mcp = FastMCP("Associative Memory Engine", lifespan=mcp_server_lifespan)


def _error_response(e: Exception) -> dict[str, Any]:
    response: dict[str, Any] = {"success": False, "error": str(e)}
    if isinstance(e, TransientError):
        response["retryable"] = True
    return response


# =============================================================================
# HANDLERS
# =============================================================================


async def handle_store_memory(engine: MemoryEngine, params: StoreMemoryParams) -> dict[str, Any]:
    try:
        result = await engine.memory.store(
            params.scope,
            params.owner_id,
            params.content,
            memory_type=params.memory_type,
            importance=params.importance,
            source=params.source,
        )
    except (TransientError, ValueError) as e:
        logger.error(f"store_memory failed: {e}")
        return _error_response(e)

    return {
        "success": True,
        "id": result.entry.id,
        "action": result.action,
        "nearest_similarity": round(result.nearest_similarity, 4),
        "effects": [e.model_dump() for e in result.effects],
    }


async def handle_search_memory(engine: MemoryEngine, params: SearchMemoryParams) -> dict[str, Any]:
    memory = engine.memory
    try:
        if params.mode == "all":
            memories = await memory.search_all_scopes(
                params.query, params.user_id, params.team_id, limit=params.limit, reinforce=params.reinforce
            )
        elif params.mode == "deep":
            memories = await memory.deep_search(
                params.query, params.scope, params.owner_id, limit=params.limit, max_hops=params.max_hops
            )
        else:
            memories = await memory.search(
                params.query, params.scope, params.owner_id, limit=params.limit, reinforce=params.reinforce
            )

        user_id = params.user_id or (params.owner_id if params.scope == "personal" else None)
        team_id = params.team_id or (params.owner_id if params.scope == "team" else None)
        episodes = []
        if params.include_episodes:
            episodes = await memory.search_episodic(
                params.query,
                user_id,
                team_id,
                limit=params.episode_limit,
                min_similarity=params.min_episode_similarity,
            )
        goals = []
        if params.include_goals:
            goals = await engine.goals.get_context_goals(user_id, team_id)
    except (TransientError, ValueError) as e:
        logger.error(f"search_memory failed: {e}")
        return _error_response(e)

    return {
        "success": True,
        "mode": params.mode,
        "count": len(memories),
        "memories": [m.to_dict() for m in memories],
        "episodes": [
            {**match.episode.model_dump(), "similarity": round(match.similarity, 4)} for match in episodes
        ],
        "goals": [g.model_dump(exclude={"history"}) for g in goals],
        "context": format_memory_block(memories, episodes, goals=goals),
    }


async def handle_store_episode(engine: MemoryEngine, params: StoreEpisodeParams) -> dict[str, Any]:
    try:
        if params.summary and params.summary.strip():
            episode = await engine.memory.store_episode(
                ConversationSummary(
                    session_id=params.session_id,
                    user_id=params.user_id,
                    team_id=params.team_id,
                    summary=params.summary.strip(),
                    topics=params.topics,
                    decisions=params.decisions,
                    message_count=params.message_count or len(params.messages),
                    period_start=params.period_start,
                    period_end=params.period_end,
                )
            )
        else:
            episode = await engine.memory.summarise_session(
                params.session_id, params.messages, user_id=params.user_id, team_id=params.team_id
            )
    except (TransientError, ValueError) as e:
        logger.error(f"store_episode failed: {e}")
        return _error_response(e)

    if episode is None:
        return {"success": True, "stored": False, "message": "Conversation too short to summarise"}
    return {"success": True, "stored": True, "id": episode.id, "summary": episode.summary, "topics": episode.topics}


async def handle_store_goal(engine: MemoryEngine, params: StoreGoalParams) -> dict[str, Any]:
    try:
        goal = await engine.goals.create_goal(
            params.scope,
            params.owner_id,
            params.description,
            priority=params.priority,
            source_session_id=params.source_session_id,
        )
    except (TransientError, ValueError) as e:
        logger.error(f"store_goal failed: {e}")
        return _error_response(e)

    return {"success": True, "id": goal.id, "goal": goal.model_dump(exclude={"history"})}


async def handle_update_goal(engine: MemoryEngine, params: UpdateGoalParams) -> dict[str, Any]:
    goals = engine.goals
    try:
        if params.description is not None:
            goal = await goals.update_goal(params.goal_id, params.description, params.source_session_id)
        if params.priority is not None:
            goal = await goals.set_priority(params.goal_id, params.priority)
        if params.status is not None:
            goal = await goals.set_status(params.goal_id, params.status)
    except GoalNotFoundError as e:
        return _error_response(e)
    except (TransientError, ValueError) as e:
        logger.error(f"update_goal failed: {e}")
        return _error_response(e)

    return {"success": True, "goal": goal.model_dump(exclude={"history"}), "revisions": len(goal.history)}


async def handle_list_goals(engine: MemoryEngine, params: ListGoalsParams) -> dict[str, Any]:
    try:
        if params.include_inactive:
            goals = await engine.goals.get_all_goals(params.scope, params.owner_id)
        else:
            goals = await engine.goals.get_active_goals(params.scope, params.owner_id)
    except (TransientError, ValueError) as e:
        logger.error(f"list_goals failed: {e}")
        return _error_response(e)

    exclude = None if params.include_history else {"history"}
    return {"success": True, "count": len(goals), "goals": [g.model_dump(exclude=exclude) for g in goals]}


async def handle_consolidate(engine: MemoryEngine) -> dict[str, Any]:
    start = time.perf_counter()
    result = await engine.consolidation.consolidate()
    response = result.to_dict()
    response["duration_ms"] = round((time.perf_counter() - start) * 1000, 1)
    return response


# =============================================================================
# TOOLS
# =============================================================================


@mcp.tool()
async def store_memory(
    content: str,
    ctx: Context,
    scope: str = "personal",
    owner_id: str | None = None,
    memory_type: str = "fact",
    importance: float = 0.5,
    source: str = "explicit",
) -> dict[str, Any]:
    """Store a fact or preference; near-duplicates are updated in place.

    Args:
        content: Text of the memory
        scope: "personal", "team" or "global"
        owner_id: User id (personal) or team id (team); ignored for global
        memory_type: Free-form classification, e.g. "fact", "preference"
        importance: 0.0-1.0; important memories decay more slowly
        source: "explicit", "conversation", "inference" or "consolidation"

    Returns:
        {success, id, action} where action is "created" or "reconsolidated"
    """
    try:
        params = StoreMemoryParams(
            content=content,
            scope=scope,
            owner_id=owner_id,
            memory_type=memory_type,
            importance=importance,
            source=source,
        )
    except ValidationError as e:
        return {"success": False, "error": str(e)}

    engine = ctx.request_context.lifespan_context.engine
    return await handle_store_memory(engine, params)


@mcp.tool()
async def search_memory(
    query: str,
    ctx: Context,
    mode: str = "scope",
    scope: str = "personal",
    owner_id: str | None = None,
    user_id: str | None = None,
    team_id: str | None = None,
    limit: int = 10,
    max_hops: int | None = None,
    include_episodes: bool = False,
    episode_limit: int = 3,
    min_episode_similarity: float = 0.3,
    include_goals: bool = True,
    reinforce: bool = True,
) -> dict[str, Any]:
    """Recall memories ranked by similarity, strength, frequency, recency and importance.

    Args:
        query: Natural language query
        mode: Search strategy:
            - "scope" (default): one partition, expanded one hop through associations
            - "all": personal (user_id), team (team_id) and global memories combined
            - "deep": multi-hop spreading activation when direct hits are weak
        scope: Partition for "scope" and "deep" modes
        owner_id: Owner of that partition
        user_id: Personal owner for "all" mode and episode lookup
        team_id: Team owner for "all" mode and episode lookup
        limit: Max results (1-50)
        max_hops: Hop limit for "deep" mode; 0 returns the vector hits only
        include_episodes: Also search past conversation summaries
        episode_limit: Max episodes returned
        min_episode_similarity: Episode similarity floor (0.0-1.0)
        include_goals: Add the active personal and team goals to the context
        reinforce: Strengthen recalled memories (always on for "deep")

    Returns:
        {success, memories, episodes, goals, context} where context is a prompt-ready block
    """
    try:
        params = SearchMemoryParams(
            query=query,
            mode=mode,
            scope=scope,
            owner_id=owner_id,
            user_id=user_id,
            team_id=team_id,
            limit=limit,
            max_hops=max_hops,
            include_episodes=include_episodes,
            episode_limit=episode_limit,
            min_episode_similarity=min_episode_similarity,
            include_goals=include_goals,
            reinforce=reinforce,
        )
    except ValidationError as e:
        return {"success": False, "error": str(e)}

    engine = ctx.request_context.lifespan_context.engine
    return await handle_search_memory(engine, params)


@mcp.tool()
async def store_episode(
    session_id: str,
    ctx: Context,
    user_id: str | None = None,
    team_id: str | None = None,
    summary: str | None = None,
    topics: list[str] | None = None,
    decisions: list[str] | None = None,
    message_count: int = 0,
    period_start: str | float | None = None,
    period_end: str | float | None = None,
    messages: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Store a conversation episode, either pre-summarised or built from messages.

    Args:
        session_id: Conversation identifier
        user_id: Owning user (user_id or team_id required)
        team_id: Owning team
        summary: Ready narrative summary; when omitted, messages are summarised
        topics: Topic keywords for a ready summary
        decisions: Decisions taken in the conversation
        message_count: Number of messages covered
        period_start: Start of the conversation (epoch seconds or ISO 8601)
        period_end: End of the conversation
        messages: [{role, content, created_at}] window to summarise

    Returns:
        {success, stored, id} ; stored is false when the window is too short
    """
    try:
        params = StoreEpisodeParams(
            session_id=session_id,
            user_id=user_id,
            team_id=team_id,
            summary=summary,
            topics=topics or [],
            decisions=decisions or [],
            message_count=message_count,
            period_start=period_start,
            period_end=period_end,
            messages=messages or [],
        )
    except ValidationError as e:
        return {"success": False, "error": str(e)}

    engine = ctx.request_context.lifespan_context.engine
    return await handle_store_episode(engine, params)


@mcp.tool()
async def store_goal(
    description: str,
    owner_id: str,
    ctx: Context,
    scope: str = "personal",
    priority: str = "medium",
    source_session_id: str | None = None,
) -> dict[str, Any]:
    """Record a personal or team goal; active goals are added to every recall context.

    Args:
        description: What the user or team is working towards
        owner_id: User id (personal) or team id (team)
        scope: "personal" or "team"
        priority: "high", "medium" or "low"
        source_session_id: Conversation the goal came from

    Returns:
        {success, id, goal}
    """
    try:
        params = StoreGoalParams(
            description=description,
            owner_id=owner_id,
            scope=scope,
            priority=priority,
            source_session_id=source_session_id,
        )
    except ValidationError as e:
        return {"success": False, "error": str(e)}

    engine = ctx.request_context.lifespan_context.engine
    return await handle_store_goal(engine, params)


@mcp.tool()
async def update_goal(
    goal_id: str,
    ctx: Context,
    description: str | None = None,
    status: str | None = None,
    priority: str | None = None,
    source_session_id: str | None = None,
) -> dict[str, Any]:
    """Revise a goal's description, status or priority.

    Args:
        goal_id: Goal to change
        description: New description; the previous one is kept in the goal history
        status: "active", "paused" or "completed"
        priority: "high", "medium" or "low"
        source_session_id: Conversation the change came from

    Returns:
        {success, goal, revisions}
    """
    try:
        params = UpdateGoalParams(
            goal_id=goal_id,
            description=description,
            status=status,
            priority=priority,
            source_session_id=source_session_id,
        )
    except ValidationError as e:
        return {"success": False, "error": str(e)}

    engine = ctx.request_context.lifespan_context.engine
    return await handle_update_goal(engine, params)


@mcp.tool()
async def list_goals(
    owner_id: str,
    ctx: Context,
    scope: str = "personal",
    include_inactive: bool = False,
    include_history: bool = False,
) -> dict[str, Any]:
    """List the goals of one scope, active ones by priority unless include_inactive is set.

    Args:
        owner_id: User id (personal) or team id (team)
        scope: "personal" or "team"
        include_inactive: Also list paused and completed goals, newest first
        include_history: Include each goal's description revisions

    Returns:
        {success, count, goals}
    """
    try:
        params = ListGoalsParams(
            owner_id=owner_id,
            scope=scope,
            include_inactive=include_inactive,
            include_history=include_history,
        )
    except ValidationError as e:
        return {"success": False, "error": str(e)}

    engine = ctx.request_context.lifespan_context.engine
    return await handle_list_goals(engine, params)


@mcp.tool()
async def consolidate(ctx: Context) -> dict[str, Any]:
    """Run one consolidation cycle: persist decay, prune, merge duplicates, clean associations.

    Returns:
        Per-phase counts, errors and duration_ms
    """
    engine = ctx.request_context.lifespan_context.engine
    return await handle_consolidate(engine)


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main():
    """Main entry point for the MCP server."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    server = settings.server

    logger.info(f"Starting Associative Memory Engine MCP server ({server.transport})")
    logger.info(f"Storage backend: {settings.storage_backend}")

    if server.transport == "stdio":
        mcp.run(transport="stdio")
    else:
        mcp.run(transport="http", host=server.host, port=server.port, stateless_http=True)


if __name__ == "__main__":
    main()
