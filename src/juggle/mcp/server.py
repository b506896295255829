"""MCP server exposing ball tools to the running agent."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from juggle.config import Config, get_config
from juggle.core import balls as balls_mod
from juggle.core.balls import ALL_SESSION, BallStore
from juggle.core.sessions import SessionStore
from juggle.errors import JuggleError
from juggle.store.models import Ball


@dataclass
class AppContext:
    balls: BallStore
    sessions: SessionStore
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the project's stores for the lifetime of the server."""
    config = get_config()
    yield AppContext(
        balls=BallStore(config.project_dir, config.dir_name),
        sessions=SessionStore(config.project_dir, config.dir_name),
        config=config,
    )


mcp = FastMCP("juggle", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _ball_to_dict(ball: Ball) -> dict:
    data = ball.to_dict()
    data["short_id"] = ball.short_id
    return data


# ── Ball Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def list_balls(ctx: Context, session: str = ALL_SESSION, state: str | None = None) -> list[dict]:
    """List balls in a session (default: all balls), optionally filtered by state."""
    balls = _ctx(ctx).balls.balls_for_session(session)
    if state:
        balls = [b for b in balls if b.state == state]
    return [_ball_to_dict(b) for b in balls]


@mcp.tool()
def get_ball(ctx: Context, ball_id: str) -> dict:
    """Get a ball by full ID, short ID, or unique prefix."""
    try:
        return _ball_to_dict(_ctx(ctx).balls.get(ball_id))
    except JuggleError as e:
        return {"error": str(e)}


@mcp.tool()
def start_ball(ctx: Context, ball_id: str) -> dict:
    """Mark a ball in progress when you begin working on it."""
    try:
        return _ball_to_dict(balls_mod.start_ball(_ctx(ctx).balls, ball_id))
    except (JuggleError, ValueError) as e:
        return {"error": str(e)}


@mcp.tool()
def complete_ball(ctx: Context, ball_id: str, note: str = "") -> dict:
    """Mark a ball complete once its acceptance criteria are met."""
    try:
        return _ball_to_dict(balls_mod.complete_ball(_ctx(ctx).balls, ball_id, note))
    except (JuggleError, ValueError) as e:
        return {"error": str(e)}


@mcp.tool()
def block_ball(ctx: Context, ball_id: str, reason: str) -> dict:
    """Mark an in-progress ball blocked. A reason is required."""
    try:
        return _ball_to_dict(balls_mod.block_ball(_ctx(ctx).balls, ball_id, reason))
    except (JuggleError, ValueError) as e:
        return {"error": str(e)}


@mcp.tool()
def research_ball(ctx: Context, ball_id: str, output: str) -> dict:
    """Record research findings on a ball and mark it researched."""
    try:
        return _ball_to_dict(balls_mod.research_ball(_ctx(ctx).balls, ball_id, output))
    except (JuggleError, ValueError) as e:
        return {"error": str(e)}


@mcp.tool()
def set_tests_state(ctx: Context, ball_id: str, tests_state: str) -> dict:
    """Set tests state: not_needed, needed, or done."""
    try:
        return _ball_to_dict(balls_mod.set_tests_state(_ctx(ctx).balls, ball_id, tests_state))
    except (JuggleError, ValueError) as e:
        return {"error": str(e)}


@mcp.tool()
def add_dependency(ctx: Context, ball_id: str, depends_on: str) -> dict:
    """Make a ball depend on another. Rejected if it would create a cycle."""
    try:
        return _ball_to_dict(balls_mod.add_dependency(_ctx(ctx).balls, ball_id, depends_on))
    except (JuggleError, ValueError) as e:
        return {"error": str(e)}


# ── Session Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def get_session(ctx: Context, session: str) -> dict:
    """Get a session's description, context and acceptance criteria."""
    try:
        return _ctx(ctx).sessions.load(session).to_dict()
    except JuggleError as e:
        return {"error": str(e)}


@mcp.tool()
def append_progress(ctx: Context, session: str, text: str) -> dict:
    """Append notes to the session progress log for the next iteration."""
    try:
        _ctx(ctx).sessions.append_progress(session, text)
    except JuggleError as e:
        return {"error": str(e)}
    return {"session": session, "appended": True}
