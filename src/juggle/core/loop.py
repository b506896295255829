"""The agent loop: lock a session, run iterations, classify, record."""

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from juggle.config import GlobalConfig, ProjectConfig
from juggle.core import balls as balls_mod
from juggle.core.agents import (
    AUTONOMOUS_SYSTEM_PROMPT,
    HEADLESS,
    PERMISSION_ACCEPT_EDITS,
    AgentRunner,
    RunOptions,
    RunResult,
    build_agent_prompt,
    select_model,
)
from juggle.core.balls import ALL_SESSION, BallStore
from juggle.core.history import RunHistory
from juggle.core.lock import acquire_session_lock
from juggle.core.sessions import SessionStore
from juggle.integrations.vcs import VCSBackend, VCSError
from juggle.store.jsonl import ensure_state_dir
from juggle.store.models import BLOCKED, COMPLETE, RunRecord, utcnow

logger = logging.getLogger(__name__)

RATE_LIMIT_BASE_WAIT = timedelta(seconds=30)
RATE_LIMIT_MAX_BACKOFF = timedelta(minutes=5)


@dataclass
class LoopOptions:
    max_iterations: int = 10
    timeout: float | None = None
    model: str = ""
    mode: str = HEADLESS
    permission: str = PERMISSION_ACCEPT_EDITS
    max_wait: timedelta = timedelta(minutes=60)
    reset_target: str | None = None
    iteration_delay: timedelta | None = None
    iteration_fuzz: timedelta | None = None


@dataclass
class _RunState:
    iterations: int = 0
    result: str = ""
    blocked_reason: str = ""
    timeout_message: str = ""
    error_message: str = ""
    wait: timedelta = timedelta(0)
    rate_limit_hits: int = 0
    isolated_revision: str = ""
    output_file: str = ""


class AgentLoop:
    """Drives agent iterations for one session at a time.

    All collaborators are passed in; nothing here reaches for globals.
    """

    def __init__(
        self,
        balls: BallStore,
        sessions: SessionStore,
        history: RunHistory,
        runner: AgentRunner,
        vcs: VCSBackend,
        global_config: GlobalConfig | None = None,
        project_config: ProjectConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.balls = balls
        self.sessions = sessions
        self.history = history
        self.runner = runner
        self.vcs = vcs
        self.global_config = global_config or GlobalConfig()
        self.project_config = project_config or ProjectConfig()
        self.sleep = sleep

    def run(self, session_id: str, opts: LoopOptions | None = None) -> RunRecord:
        """Run the loop until the session is done, blocked, or out of budget.

        Raises SessionLockedError if another loop already holds the session.
        """
        opts = opts or LoopOptions()
        ensure_state_dir(self.balls.juggle_dir)
        lock = acquire_session_lock(self.sessions, session_id)
        started = utcnow()
        state = _RunState()
        try:
            try:
                self._iterate(session_id, opts, state)
            except KeyboardInterrupt:
                logger.warning("Agent loop for %s cancelled", session_id)
                state.result = "cancelled"
            except Exception as e:
                logger.exception("Agent loop for %s failed", session_id)
                state.result = "error"
                state.error_message = str(e)

            record = self._record(session_id, opts, state, started)
            self.history.append(record)
            return record
        finally:
            lock.release()

    # ── iteration ────────────────────────────────────────────────────────────

    def _iterate(self, session_id: str, opts: LoopOptions, state: _RunState) -> None:
        session = None if session_id == ALL_SESSION else self.sessions.load(session_id)

        while state.iterations < opts.max_iterations:
            session_balls = self.balls.balls_for_session(session_id)
            if session_balls and all(b.is_terminal for b in session_balls):
                state.result = "complete"
                return

            state.iterations += 1
            logger.info("Session %s iteration %d/%d", session_id, state.iterations, opts.max_iterations)

            try:
                self.vcs.describe(f"juggle: {session_id} iteration {state.iterations}")
            except VCSError as e:
                logger.debug("describe failed: %s", e)

            prompt = build_agent_prompt(
                session,
                session_balls,
                progress=self.sessions.load_progress(session_id),
                project_criteria=self.project_config.default_acceptance_criteria,
            )
            result = self.runner.run(
                RunOptions(
                    prompt=prompt,
                    mode=opts.mode,
                    permission=opts.permission,
                    model=select_model(opts.model, session_balls, session),
                    system_prompt=AUTONOMOUS_SYSTEM_PROMPT,
                    working_dir=str(self.balls.project_dir),
                    timeout=opts.timeout,
                )
            )
            state.output_file = str(self.sessions.save_last_output(session_id, result.output))

            if self._handle(session_id, opts, state, result):
                return

            if state.iterations < opts.max_iterations:
                self._delay(opts, state)

        state.result = "max_iterations"

    def _handle(self, session_id: str, opts: LoopOptions, state: _RunState, result: RunResult) -> bool:
        """Act on one classified iteration. Returns True when the run is over."""
        if result.timed_out:
            msg = f"iteration timed out after {opts.timeout} seconds"
            balls_mod.block_in_progress(self.balls, session_id, msg)
            self._progress(session_id, state, msg)
            state.result = "timeout"
            state.timeout_message = msg
            return True

        if result.overload_exhausted:
            wait = timedelta(minutes=self.global_config.overload_retry_minutes or 10)
            self._progress(session_id, state, f"API overloaded, waiting {wait}")
            state.iterations -= 1
            return self._wait(opts, state, wait)

        if result.rate_limited and not (result.complete or result.continue_ or result.blocked):
            wait = result.retry_after
            if not wait:
                wait = min(RATE_LIMIT_BASE_WAIT * (2 ** state.rate_limit_hits), RATE_LIMIT_MAX_BACKOFF)
            state.rate_limit_hits += 1
            self._progress(session_id, state, f"rate limited, waiting {wait}")
            state.iterations -= 1
            return self._wait(opts, state, wait)
        state.rate_limit_hits = 0

        if result.blocked:
            state.blocked_reason = result.blocked_reason
            if self.vcs.has_changes():
                state.isolated_revision = self.vcs.isolate_and_reset(opts.reset_target)
                self._progress(
                    session_id, state,
                    f"blocked: {result.blocked_reason} (work isolated in {state.isolated_revision})",
                )
            else:
                self._progress(session_id, state, f"blocked: {result.blocked_reason}")
            state.result = "blocked"
            return True

        if result.complete or result.continue_:
            message = result.commit_message or f"juggle: {session_id} iteration {state.iterations}"
            commit = self.vcs.commit(message)
            if not commit.success:
                logger.warning("Commit failed: %s", commit.error)
            self._progress(session_id, state, f"committed {commit.hash}: {message}" if commit.hash else message)

        if result.complete:
            remaining = [
                b for b in self.balls.balls_for_session(session_id) if not b.is_terminal
            ]
            if not remaining:
                state.result = "complete"
                return True
            logger.warning(
                "Agent signalled COMPLETE but %d ball(s) remain open; continuing", len(remaining)
            )
        return False

    def _wait(self, opts: LoopOptions, state: _RunState, wait: timedelta) -> bool:
        if state.wait + wait > opts.max_wait:
            state.result = "rate_limit"
            return True
        logger.info("Waiting %s before retrying", wait)
        self.sleep(wait.total_seconds())
        state.wait += wait
        return False

    def _delay(self, opts: LoopOptions, state: _RunState) -> None:
        delay = opts.iteration_delay
        if delay is None:
            delay = timedelta(minutes=self.global_config.iteration_delay_minutes)
        fuzz = opts.iteration_fuzz
        if fuzz is None:
            fuzz = timedelta(minutes=self.global_config.iteration_delay_fuzz)
        seconds = delay.total_seconds()
        if fuzz:
            seconds += random.uniform(-fuzz.total_seconds(), fuzz.total_seconds())
        if seconds > 0:
            self.sleep(seconds)

    def _progress(self, session_id: str, state: _RunState, text: str) -> None:
        stamp = utcnow().strftime("%Y-%m-%d %H:%M:%S")
        self.sessions.append_progress(session_id, f"[{stamp}] iteration {state.iterations}: {text}")

    def _record(self, session_id: str, opts: LoopOptions, state: _RunState, started) -> RunRecord:
        session_balls = self.balls.balls_for_session(session_id)
        return RunRecord(
            id=str(int(started.timestamp() * 1_000_000_000)),
            session_id=session_id,
            started_at=started,
            ended_at=utcnow(),
            iterations=state.iterations,
            max_iterations=opts.max_iterations,
            result=state.result,
            blocked_reason=state.blocked_reason,
            timeout_message=state.timeout_message,
            error_message=state.error_message,
            total_wait_seconds=state.wait.total_seconds(),
            balls_complete=sum(1 for b in session_balls if b.state == COMPLETE),
            balls_blocked=sum(1 for b in session_balls if b.state == BLOCKED),
            balls_total=len(session_balls),
            output_file=state.output_file,
            project_dir=str(Path(self.balls.project_dir).resolve()),
            isolated_revision=state.isolated_revision,
        )
