"""Version-control adapters (git and jj) driven through subprocess."""

import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

GIT = "git"
JJ = "jj"

MAX_COMMIT_MESSAGE = 5000
WIP_MESSAGE = "juggle: blocked WIP"
JJ_CLEAN_STATUS = "The working copy has no changes."


class VCSError(Exception):
    """Raised when a version-control command fails."""


class GitError(VCSError):
    """Raised when a git command fails."""


class JJError(VCSError):
    """Raised when a jj command fails."""


@dataclass
class CommitResult:
    success: bool
    hash: str = ""
    message: str = ""
    error: str = ""


def _run(tool: str, error_cls: type[VCSError], args: list[str], cwd: str | Path | None) -> str:
    cmd = [tool] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise error_cls(f"{tool} {' '.join(args)} failed: {e.stderr.strip()}") from e
    except FileNotFoundError as e:
        raise error_cls(f"{tool} is not installed") from e


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    return _run(GIT, GitError, args, cwd)


def run_jj(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a jj command and return stdout. Raises JJError on failure."""
    return _run(JJ, JJError, args, cwd)


def _validate_message(message: str) -> str | None:
    if not message.strip():
        return "commit message cannot be empty"
    if len(message) > MAX_COMMIT_MESSAGE:
        return f"commit message exceeds {MAX_COMMIT_MESSAGE} characters"
    return None


class VCSBackend(ABC):
    name = ""

    def __init__(self, repo_path: str | Path):
        self.repo_path = Path(repo_path)

    @abstractmethod
    def status(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def has_changes(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def commit(self, message: str) -> CommitResult:
        raise NotImplementedError

    @abstractmethod
    def last_revision_hash(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def describe(self, message: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def isolate_and_reset(self, target: str | None = None) -> str:
        raise NotImplementedError

    @abstractmethod
    def current_revision(self) -> str:
        raise NotImplementedError


# ── git ──────────────────────────────────────────────────────────────────────


class GitBackend(VCSBackend):
    name = GIT

    def _git(self, args: list[str]) -> str:
        return run_git(args, cwd=self.repo_path)

    def status(self) -> str:
        return self._git(["status", "--porcelain"])

    def has_changes(self) -> bool:
        return bool(self.status())

    def commit(self, message: str) -> CommitResult:
        if error := _validate_message(message):
            return CommitResult(success=False, error=error)
        if not self.has_changes():
            return CommitResult(success=True, message="No changes to commit")
        self._git(["add", "-A"])
        self._git(["commit", "-m", message])
        return CommitResult(success=True, hash=self.last_revision_hash(), message=message)

    def last_revision_hash(self) -> str:
        return self._git(["log", "-1", "--format=%h"])

    def describe(self, message: str) -> None:
        # git has no mutable working-copy description
        return None

    def branch_exists(self, branch: str) -> bool:
        try:
            self._git(["rev-parse", "--verify", f"refs/heads/{branch}"])
            return True
        except GitError:
            return False

    def _resolve_commit(self, ref: str) -> str | None:
        try:
            return self._git(["rev-parse", "--verify", f"{ref}^{{commit}}"])
        except GitError:
            return None

    def _default_target(self) -> str:
        for ref in ("origin/HEAD", "main", "master"):
            sha = self._resolve_commit(ref)
            if sha:
                return sha
        raise GitError("could not determine a reset target (tried origin/HEAD, main, master)")

    def isolate_and_reset(self, target: str | None = None) -> str:
        """Park uncommitted work on a side branch and reset to ``target``.

        The target is resolved before anything is committed so that a
        target naming the current branch means its pre-isolation commit.
        Returns the side branch name.
        """
        if target:
            target_sha = self._resolve_commit(target)
            if target_sha is None:
                raise GitError(f"unknown reset target: {target}")
        else:
            target_sha = self._default_target()

        if self.has_changes():
            self._git(["add", "-A"])
            self._git(["commit", "-m", WIP_MESSAGE])
        wip_sha = self._git(["rev-parse", "HEAD"])

        base = f"juggle/blocked-{datetime.now().strftime('%Y%m%d-%H%M%S')}"
        branch = base
        i = 2
        while self.branch_exists(branch):
            branch = f"{base}-{i}"
            i += 1

        self._git(["branch", branch, wip_sha])
        self._git(["reset", "--hard", target_sha])
        logger.info("Isolated work on %s, reset to %s", branch, target_sha[:8])
        return branch

    def current_revision(self) -> str:
        ref = self._git(["rev-parse", "--abbrev-ref", "HEAD"])
        if ref == "HEAD":
            return self._git(["rev-parse", "--short", "HEAD"])
        return ref


# ── jj ───────────────────────────────────────────────────────────────────────


class JJBackend(VCSBackend):
    name = JJ

    def _jj(self, args: list[str]) -> str:
        return run_jj(args, cwd=self.repo_path)

    def status(self) -> str:
        return self._jj(["status"])

    def has_changes(self) -> bool:
        return JJ_CLEAN_STATUS not in self.status()

    def commit(self, message: str) -> CommitResult:
        if error := _validate_message(message):
            return CommitResult(success=False, error=error)
        if not self.has_changes():
            return CommitResult(success=True, message="No changes to commit")
        self._jj(["commit", "-m", message])
        return CommitResult(success=True, hash=self.last_revision_hash(), message=message)

    def last_revision_hash(self) -> str:
        return self._jj(["log", "-r", "@-", "-n", "1", "--no-graph", "-T", "commit_id.short()"])

    def describe(self, message: str) -> None:
        self._jj(["desc", "-m", message])

    def isolate_and_reset(self, target: str | None = None) -> str:
        """Leave the current change where it is and start a new one on ``target``.

        Returns the change id holding the isolated work.
        """
        change_id = self._jj(["log", "-r", "@", "--no-graph", "-T", "change_id.short()"])
        self._jj(["new", target or "@-"])
        logger.info("Isolated work in change %s", change_id)
        return change_id

    def current_revision(self) -> str:
        return self._jj(["log", "-r", "@", "--no-graph", "-T", "change_id.short()"])


BACKENDS = {GIT: GitBackend, JJ: JJBackend}


def detect_vcs(
    project_dir: str | Path,
    project_vcs: str | None = None,
    global_vcs: str | None = None,
) -> str:
    """Pick a backend: project config, global config, .jj dir, .git dir, git."""
    for configured in (project_vcs, global_vcs):
        if configured:
            if configured not in BACKENDS:
                raise VCSError(f"Unknown VCS: {configured}")
            return configured
    path = Path(project_dir)
    if (path / ".jj").is_dir():
        return JJ
    if (path / ".git").exists():
        return GIT
    return GIT


def get_backend(vcs_type: str, project_dir: str | Path) -> VCSBackend:
    if vcs_type not in BACKENDS:
        raise VCSError(f"Unknown VCS: {vcs_type}")
    return BACKENDS[vcs_type](project_dir)
