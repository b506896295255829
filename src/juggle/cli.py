"""CLI entry point for juggle."""

import json
import logging
import sys
from datetime import timedelta

import click

from juggle.config import (
    get_config,
    load_global_config,
    load_project_config,
    merged_model_overrides,
)
from juggle.core import balls as balls_mod
from juggle.core.agents import (
    HEADLESS,
    INTERACTIVE,
    PERMISSION_ACCEPT_EDITS,
    PERMISSION_BYPASS,
    PERMISSION_PLAN,
    AgentRunner,
    get_provider,
)
from juggle.core.balls import ALL_SESSION, BallStore
from juggle.core.history import RunHistory
from juggle.core.lock import is_locked
from juggle.core.loop import AgentLoop, LoopOptions
from juggle.core.sessions import SessionStore
from juggle.errors import JuggleError
from juggle.integrations.vcs import VCSError, detect_vcs, get_backend


def _stores():
    config = get_config()
    return (
        config,
        BallStore(config.project_dir, config.dir_name),
        SessionStore(config.project_dir, config.dir_name),
    )


def _fail(message: str):
    click.echo(message, err=True)
    sys.exit(1)


@click.group()
def main():
    """juggle - run coding agents against a durable work queue"""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Ball Commands ────────────────────────────────────────────────────────────


@main.group("ball")
def ball_group():
    """Manage balls."""
    pass


@ball_group.command("add")
@click.argument("title")
@click.option("--context", "-c", default="", help="Background for the agent")
@click.option("--ac", "criteria", multiple=True, help="Acceptance criterion (repeatable)")
@click.option("--priority", "-p", default="medium", type=click.Choice(["low", "medium", "high", "urgent"]))
@click.option("--session", "-s", "sessions", multiple=True, help="Session tag (repeatable)")
@click.option("--depends-on", default=None, help="Comma-separated ball IDs this depends on")
@click.option("--model-size", default="", type=click.Choice(["", "small", "medium", "large"]))
def ball_add(title, context, criteria, priority, sessions, depends_on, model_size):
    """Create a new ball."""
    _, store, _ = _stores()
    deps = []
    try:
        if depends_on:
            deps = [store.get(d.strip()).id for d in depends_on.split(",") if d.strip()]
        ball = balls_mod.create_ball(
            store,
            title,
            context=context,
            acceptance_criteria=list(criteria),
            priority=priority,
            tags=list(sessions),
            depends_on=deps,
            model_size=model_size,
        )
    except (JuggleError, ValueError) as e:
        _fail(f"Error: {e}")
    click.echo(f"Created ball: {ball.id}")


@ball_group.command("list")
@click.option("--session", "-s", default=ALL_SESSION, help="Session ID")
@click.option("--state", default=None, help="Filter by state")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def ball_list(session, state, json_output):
    """List balls."""
    _, store, _ = _stores()
    balls = store.balls_for_session(session)
    if state:
        balls = [b for b in balls if b.state == state]

    if json_output:
        click.echo(json.dumps([b.to_dict() for b in balls], indent=2))
        return

    if not balls:
        click.echo("No balls found.")
        return

    state_icons = {
        "pending": "○",
        "in_progress": "●",
        "complete": "✓",
        "blocked": "✗",
        "researched": "✓",
        "on_hold": "‖",
    }
    short = balls_mod.compute_minimal_unique_ids(store.load_all())
    for ball in balls:
        icon = state_icons.get(ball.state, "?")
        deps = f" [depends: {', '.join(ball.depends_on)}]" if ball.depends_on else ""
        click.echo(f"  {icon} {short.get(ball.id, ball.short_id):<8} {ball.title} ({ball.priority}){deps}")


@ball_group.command("show")
@click.argument("ball_id")
def ball_show(ball_id):
    """Show ball details."""
    _, store, _ = _stores()
    try:
        ball = store.get(ball_id)
    except JuggleError as e:
        _fail(str(e))

    click.echo(f"Ball: {ball.id}")
    click.echo(f"  Title: {ball.title}")
    click.echo(f"  State: {ball.state}")
    click.echo(f"  Priority: {ball.priority}")
    if ball.blocked_reason:
        click.echo(f"  Blocked: {ball.blocked_reason}")
    if ball.context:
        click.echo(f"  Context: {ball.context}")
    for ac in ball.acceptance_criteria:
        click.echo(f"  - {ac}")
    if ball.depends_on:
        click.echo(f"  Depends on: {', '.join(ball.depends_on)}")
    if ball.tags:
        click.echo(f"  Tags: {', '.join(ball.tags)}")


@ball_group.command("archive")
@click.option("--session", "-s", default=None, help="Only archive balls in this session")
def ball_archive(session):
    """Archive every complete or researched ball."""
    _, store, _ = _stores()
    moved = store.archive_terminal(session)
    click.echo(f"Archived {len(moved)} ball(s)")


@ball_group.command("unarchive")
@click.argument("ball_id")
def ball_unarchive(ball_id):
    """Restore an archived ball as pending."""
    _, store, _ = _stores()
    try:
        ball = store.unarchive(ball_id)
    except JuggleError as e:
        _fail(str(e))
    click.echo(f"Restored ball: {ball.id}")


@ball_group.command("history")
@click.argument("query", required=False)
@click.option("--tag", "tags", multiple=True, help="Require tag (repeatable)")
@click.option("--priority", default=None, help="Filter by priority")
@click.option("--limit", "-n", default=20, type=int)
@click.option("--sort", default="completed", type=click.Choice(["completed", "priority"]))
def ball_history(query, tags, priority, limit, sort):
    """Search archived balls."""
    _, store, _ = _stores()
    balls = balls_mod.query_archive(store, query, list(tags), priority, limit, sort)
    if not balls:
        click.echo("No archived balls found.")
        return
    for ball in balls:
        done = ball.completed_at.strftime("%Y-%m-%d") if ball.completed_at else "-"
        click.echo(f"  {ball.short_id}  {done}  {ball.title}")


@ball_group.command("add-dep")
@click.argument("ball_id")
@click.argument("depends_on_id")
def ball_add_dep(ball_id, depends_on_id):
    """Add a dependency: BALL_ID depends on DEPENDS_ON_ID."""
    _, store, _ = _stores()
    try:
        ball = balls_mod.add_dependency(store, ball_id, depends_on_id)
    except (JuggleError, ValueError) as e:
        _fail(f"Error: {e}")
    click.echo(f"Added dependency: {ball.id} now depends on {', '.join(ball.depends_on)}")


@ball_group.command("remove-dep")
@click.argument("ball_id")
@click.argument("depends_on_id")
def ball_remove_dep(ball_id, depends_on_id):
    """Remove a dependency."""
    _, store, _ = _stores()
    try:
        ball = balls_mod.remove_dependency(store, ball_id, depends_on_id)
    except JuggleError as e:
        _fail(f"Error: {e}")
    click.echo(f"Removed dependency: {ball.id} no longer depends on {depends_on_id}")


# ── Session Commands ─────────────────────────────────────────────────────────


@main.group("session")
def session_group():
    """Manage sessions."""
    pass


@session_group.command("create")
@click.argument("session_id")
@click.option("--description", "-d", default="")
@click.option("--context", "-c", default="")
@click.option("--model", default="", help="Default model size for the session")
@click.option("--ac", "criteria", multiple=True, help="Acceptance criterion (repeatable)")
def session_create(session_id, description, context, model, criteria):
    """Create a session."""
    _, _, sessions = _stores()
    try:
        sessions.create(session_id, description, context, model, list(criteria))
    except ValueError as e:
        _fail(f"Error: {e}")
    click.echo(f"Created session: {session_id}")


@session_group.command("list")
def session_list():
    """List sessions."""
    _, store, sessions = _stores()
    found = sessions.list_all()
    if not found:
        click.echo("No sessions found.")
        return
    for session in found:
        counts = balls_mod.count_states(store.balls_for_session(session.id))
        summary = ", ".join(f"{k}: {v}" for k, v in sorted(counts.items())) or "no balls"
        click.echo(f"  {session.id}  {session.description}  ({summary})")


@session_group.command("progress")
@click.argument("session_id")
def session_progress(session_id):
    """Print the session progress log."""
    _, _, sessions = _stores()
    click.echo(sessions.load_progress(session_id), nl=False)


# ── Agent Commands ───────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Run and inspect agent loops."""
    pass


@agent_group.command("run")
@click.argument("session_id", default=ALL_SESSION)
@click.option("--iterations", "-n", default=10, type=int, help="Maximum iterations")
@click.option("--timeout", default=None, type=float, help="Per-iteration timeout in seconds")
@click.option("--model", "-m", default="", help="Model size or name")
@click.option("--provider", default=None, help="Agent provider (claude, opencode)")
@click.option("--interactive", is_flag=True, help="Run the agent attached to this terminal")
@click.option("--plan", "plan_mode", is_flag=True, help="Run in plan (read-only) mode")
@click.option("--trust", is_flag=True, help="Skip all permission prompts")
@click.option("--max-wait", default=60, type=int, help="Maximum total rate-limit wait in minutes")
@click.option("--reset-target", default=None, help="Revision to reset to after a blocked iteration")
def agent_run(session_id, iterations, timeout, model, provider, interactive, plan_mode, trust, max_wait, reset_target):
    """Run the agent loop for a session."""
    config, store, sessions = _stores()
    global_cfg = load_global_config(config)
    project_cfg = load_project_config(config)

    provider_name = provider or config.agent_provider or project_cfg.agent_provider or global_cfg.agent_provider
    try:
        runner = AgentRunner(
            get_provider(provider_name or None),
            model_overrides=merged_model_overrides(global_cfg, project_cfg),
        )
        vcs_type = detect_vcs(config.project_dir, config.vcs or project_cfg.vcs, global_cfg.vcs)
        vcs = get_backend(vcs_type, config.project_dir)
    except (ValueError, VCSError) as e:
        _fail(f"Error: {e}")

    permission = PERMISSION_ACCEPT_EDITS
    if trust:
        permission = PERMISSION_BYPASS
    elif plan_mode:
        permission = PERMISSION_PLAN

    loop = AgentLoop(
        store,
        sessions,
        RunHistory(config.project_dir, config.dir_name),
        runner,
        vcs,
        global_config=global_cfg,
        project_config=project_cfg,
    )
    opts = LoopOptions(
        max_iterations=iterations,
        timeout=timeout,
        model=model or config.agent_model or "",
        mode=INTERACTIVE if interactive else HEADLESS,
        permission=permission,
        max_wait=timedelta(minutes=max_wait),
        reset_target=reset_target,
    )
    try:
        record = loop.run(session_id, opts)
    except JuggleError as e:
        _fail(f"Error: {e}")

    click.echo(f"Run finished: {record.result} after {record.iterations} iteration(s)")
    click.echo(f"  Balls: {record.balls_complete}/{record.balls_total} complete, {record.balls_blocked} blocked")
    if record.blocked_reason:
        click.echo(f"  Blocked: {record.blocked_reason}")
    if record.isolated_revision:
        click.echo(f"  Work isolated in: {record.isolated_revision}")
    if record.error_message:
        click.echo(f"  Error: {record.error_message}")
    if record.result not in ("complete", "max_iterations"):
        sys.exit(2)


@agent_group.command("history")
@click.option("--session", "-s", default=None, help="Filter by session")
@click.option("--limit", "-n", default=10, type=int)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def agent_history(session, limit, json_output):
    """Show recent agent runs."""
    config = get_config()
    history = RunHistory(config.project_dir, config.dir_name)
    records = history.load_by_session(session) if session else history.load_all()
    records = records[:limit]

    if json_output:
        click.echo(json.dumps([r.to_dict() for r in records], indent=2))
        return

    if not records:
        click.echo("No agent runs recorded.")
        return

    for r in records:
        started = r.started_at.strftime("%Y-%m-%d %H:%M")
        click.echo(
            f"  {started}  {r.session_id:<16} {r.result:<15} "
            f"{r.iterations}/{r.max_iterations} iter  "
            f"{r.balls_complete}/{r.balls_total} done"
        )


# ── Lock Commands ────────────────────────────────────────────────────────────


@main.group("lock")
def lock_group():
    """Inspect session locks."""
    pass


@lock_group.command("status")
@click.argument("session_id", default=ALL_SESSION)
def lock_status(session_id):
    """Show whether an agent loop holds the session lock."""
    _, _, sessions = _stores()
    locked, info = is_locked(sessions, session_id)
    if not locked:
        click.echo(f"Session {session_id} is not locked")
        return
    if info:
        click.echo(f"Session {session_id} is locked by pid {info.pid} on {info.hostname}")
        click.echo(f"  Since: {info.started_at.isoformat()}")
    else:
        click.echo(f"Session {session_id} is locked")


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from juggle.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
