"""Agent iteration: provider command lines, process supervision and prompts."""

import logging
import os
import signal
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TextIO

from juggle.core import signals
from juggle.core.balls import sort_balls_for_agent
from juggle.errors import AgentLaunchError
from juggle.store.models import BLOCKED, IN_PROGRESS, PENDING, Ball, Session

logger = logging.getLogger(__name__)

HEADLESS = "headless"
INTERACTIVE = "interactive"

PERMISSION_ACCEPT_EDITS = "accept_edits"
PERMISSION_PLAN = "plan"
PERMISSION_BYPASS = "bypass"

AUTONOMOUS_SYSTEM_PROMPT = (
    "CRITICAL: You are an autonomous agent. DO NOT ask questions or wait for "
    "confirmation. Make reasonable decisions and keep working until the task is "
    "done or you are genuinely blocked. When finished, emit exactly one promise "
    "signal as described in the instructions."
)

PROGRESS_TAIL_LINES = 50
_SIZE_RANK = {"small": 1, "medium": 2, "large": 3}


@dataclass
class RunOptions:
    prompt: str
    mode: str = HEADLESS
    permission: str = PERMISSION_ACCEPT_EDITS
    model: str = ""
    system_prompt: str = ""
    working_dir: str | None = None
    timeout: float | None = None


@dataclass
class RunResult:
    output: str = ""
    exit_code: int = 0
    error: str = ""
    timed_out: bool = False
    rate_limited: bool = False
    retry_after: timedelta = field(default_factory=timedelta)
    overload_exhausted: bool = False
    complete: bool = False
    continue_: bool = False
    blocked: bool = False
    blocked_reason: str = ""
    commit_message: str = ""


def classify(result: RunResult) -> RunResult:
    """Fill in the signal and failure flags from the captured output."""
    parsed = signals.parse_signals(result.output)
    result.complete = parsed.complete
    result.continue_ = parsed.continue_
    result.blocked = parsed.blocked
    result.blocked_reason = parsed.blocked_reason
    result.commit_message = parsed.commit_message

    result.rate_limited = signals.detect_rate_limit(result.output, result.error)
    if result.rate_limited:
        result.retry_after = signals.parse_retry_after(f"{result.output}\n{result.error}")
    result.overload_exhausted = signals.detect_overload_exhausted(
        result.output, result.error, result.exit_code
    )
    return result


# ── Providers ────────────────────────────────────────────────────────────────


class Provider(ABC):
    name = ""
    executable = ""
    models: dict[str, str] = {}
    prompt_on_stdin = False

    def map_model(self, model: str, overrides: dict | None = None) -> str:
        if not model:
            return ""
        if overrides and model in overrides:
            model = overrides[model]
        return self.models.get(model, model)

    @abstractmethod
    def build_command(self, opts: RunOptions, model: str) -> list[str]:
        raise NotImplementedError


class ClaudeProvider(Provider):
    name = "claude"
    executable = "claude"
    models = {"small": "haiku", "medium": "sonnet", "large": "opus"}
    prompt_on_stdin = True

    def build_command(self, opts: RunOptions, model: str) -> list[str]:
        cmd = [self.executable, "--disable-slash-commands"]
        if opts.system_prompt:
            cmd += ["--append-system-prompt", opts.system_prompt]
        if model:
            cmd += ["--model", model]
        if opts.permission == PERMISSION_BYPASS:
            cmd.append("--dangerously-skip-permissions")
        elif opts.permission == PERMISSION_PLAN:
            cmd += ["--permission-mode", "plan"]
        else:
            cmd += ["--permission-mode", "acceptEdits"]
        if opts.mode == INTERACTIVE:
            cmd.append(opts.prompt)
        else:
            cmd += ["-p", "-"]
        return cmd


class OpenCodeProvider(Provider):
    name = "opencode"
    executable = "opencode"
    models = {
        "small": "anthropic/claude-3-5-haiku-latest",
        "haiku": "anthropic/claude-3-5-haiku-latest",
        "medium": "anthropic/claude-sonnet-4-5",
        "sonnet": "anthropic/claude-sonnet-4-5",
        "large": "anthropic/claude-opus-4-5",
        "opus": "anthropic/claude-opus-4-5",
    }

    def build_command(self, opts: RunOptions, model: str) -> list[str]:
        cmd = [self.executable, "run"]
        if model:
            cmd += ["--model", model]
        agent = "plan" if opts.permission == PERMISSION_PLAN else "build"
        cmd += ["--agent", agent]
        prompt = opts.prompt
        if opts.system_prompt:
            prompt = f"{opts.system_prompt}\n\n{prompt}"
        cmd.append(prompt)
        return cmd


PROVIDERS = {
    ClaudeProvider.name: ClaudeProvider,
    OpenCodeProvider.name: OpenCodeProvider,
}


def get_provider(name: str | None) -> Provider:
    name = name or ClaudeProvider.name
    if name not in PROVIDERS:
        raise ValueError(f"Unknown agent provider: {name}")
    return PROVIDERS[name]()


# ── Runner ───────────────────────────────────────────────────────────────────


def _kill_group(proc: subprocess.Popen) -> None:
    """Kill the agent and any children it spawned."""
    try:
        os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


class AgentRunner:
    """Runs one agent iteration and classifies what it printed."""

    def __init__(
        self,
        provider: Provider,
        model_overrides: dict | None = None,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ):
        self.provider = provider
        self.model_overrides = model_overrides or {}
        self.stdout = stdout if stdout is not None else sys.stdout
        self.stderr = stderr if stderr is not None else sys.stderr

    def run(self, opts: RunOptions) -> RunResult:
        model = self.provider.map_model(opts.model, self.model_overrides)
        cmd = self.provider.build_command(opts, model)
        logger.info("Starting agent: %s (model=%s, mode=%s)", self.provider.name, model or "default", opts.mode)
        if opts.mode == INTERACTIVE:
            return self._run_interactive(cmd, opts)
        return self._run_headless(cmd, opts)

    def _run_interactive(self, cmd: list[str], opts: RunOptions) -> RunResult:
        try:
            proc = subprocess.Popen(cmd, cwd=opts.working_dir)
        except OSError as e:
            raise AgentLaunchError(f"Could not start {cmd[0]}: {e}") from e
        try:
            exit_code = proc.wait(timeout=opts.timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
            return RunResult(exit_code=-1, timed_out=True)
        result = RunResult(exit_code=exit_code)
        if exit_code != 0:
            result.error = f"{cmd[0]} exited with code {exit_code}"
        return result

    def _run_headless(self, cmd: list[str], opts: RunOptions) -> RunResult:
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=opts.working_dir,
                stdin=subprocess.PIPE if self.provider.prompt_on_stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            raise AgentLaunchError(f"Could not start {cmd[0]}: {e}") from e

        chunks: list[str] = []
        errors: list[str] = []
        buffer_lock = threading.Lock()

        def drain(stream, sink: TextIO, extra: list[str] | None):
            for line in iter(stream.readline, ""):
                with buffer_lock:
                    chunks.append(line)
                    if extra is not None:
                        extra.append(line)
                sink.write(line)
                sink.flush()
            stream.close()

        readers = [
            threading.Thread(target=drain, args=(proc.stdout, self.stdout, None), daemon=True),
            threading.Thread(target=drain, args=(proc.stderr, self.stderr, errors), daemon=True),
        ]
        for t in readers:
            t.start()

        if self.provider.prompt_on_stdin:
            try:
                proc.stdin.write(opts.prompt)
            except BrokenPipeError:
                logger.warning("Agent closed stdin before reading the prompt")
            finally:
                try:
                    proc.stdin.close()
                except BrokenPipeError:
                    pass

        timed_out = False
        try:
            exit_code = proc.wait(timeout=opts.timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            _kill_group(proc)
            exit_code = proc.wait()

        for t in readers:
            t.join()

        with buffer_lock:
            output = "".join(chunks)
            stderr_text = "".join(errors)

        if timed_out:
            logger.warning("Agent timed out after %s seconds", opts.timeout)
            return RunResult(output=output, exit_code=exit_code, timed_out=True)

        result = RunResult(output=output, exit_code=exit_code)
        if exit_code != 0:
            result.error = stderr_text.strip() or f"{cmd[0]} exited with code {exit_code}"
        return classify(result)


# ── Prompt / model selection ─────────────────────────────────────────────────


def select_model(explicit: str, balls: list[Ball], session: Session | None) -> str:
    """Explicit model, else the largest model_size of active balls, else the session default."""
    if explicit:
        return explicit
    sizes = [b.model_size for b in balls if b.state in (PENDING, IN_PROGRESS) and b.model_size]
    if sizes:
        return max(sizes, key=lambda s: _SIZE_RANK.get(s, 0))
    if session and session.default_model:
        return session.default_model
    return ""


def _format_ball(ball: Ball) -> str:
    header = f"## {ball.id} [{ball.state}] (priority: {ball.priority})"
    if ball.model_size:
        header += f" (model: {ball.model_size})"
    lines = [header, f"Title: {ball.title}"]
    if ball.context:
        lines.append(f"Context: {ball.context}")
    if ball.acceptance_criteria:
        lines.append("Acceptance Criteria:")
        lines += [f"  {i}. {ac}" for i, ac in enumerate(ball.acceptance_criteria, start=1)]
    if ball.depends_on:
        lines.append(f"Depends On: {', '.join(ball.depends_on)}")
    if ball.tests_state:
        lines.append(f"Tests: {ball.tests_state}")
    if ball.state == BLOCKED:
        lines.append(f"Blocked: {ball.blocked_reason}")
    if ball.tags:
        lines.append(f"Tags: {', '.join(ball.tags)}")
    return "\n".join(lines)


def build_agent_prompt(
    session: Session | None,
    balls: list[Ball],
    progress: str = "",
    project_criteria: list[str] | None = None,
    project_context: str = "",
) -> str:
    """Render the iteration prompt from session, progress and ball state."""
    parts = []

    if project_context:
        parts.append(f"<context>\n{project_context.strip()}\n</context>")

    if session is not None:
        session_lines = [f"Session: {session.id}"]
        if session.description:
            session_lines.append(f"Description: {session.description}")
        if session.context:
            session_lines.append(f"\n{session.context.strip()}")
        parts.append("<session>\n" + "\n".join(session_lines) + "\n</session>")

    if progress.strip():
        tail = progress.strip().splitlines()[-PROGRESS_TAIL_LINES:]
        parts.append("<progress>\n" + "\n".join(tail) + "\n</progress>")

    criteria = list(project_criteria or [])
    if session is not None:
        criteria += session.acceptance_criteria
    if criteria:
        parts.append(
            "<global-acceptance-criteria>\n"
            + "\n".join(f"- {c}" for c in criteria)
            + "\n</global-acceptance-criteria>"
        )

    ordered = sort_balls_for_agent(balls)
    if ordered:
        parts.append("<balls>\n" + "\n\n".join(_format_ball(b) for b in ordered) + "\n</balls>")
    else:
        parts.append("<balls>\nNo open balls.\n</balls>")

    parts.append(
        "<instructions>\n"
        "Work on the first ball that is not blocked by unfinished dependencies.\n"
        "Use the juggle MCP tools to record state changes: `start_ball` when you "
        "begin, `complete_ball` when acceptance criteria are met, `block_ball` with "
        "a reason if you cannot continue, and `append_progress` to leave notes for "
        "the next iteration.\n"
        "\n"
        "End your reply with exactly one signal:\n"
        "- <promise>COMPLETE: commit message</promise> when every ball is done\n"
        "- <promise>CONTINUE: commit message</promise> when you finished a ball and more remain\n"
        "- <promise>BLOCKED: reason</promise> when you cannot make progress\n"
        "</instructions>"
    )

    return "\n\n".join(parts)
