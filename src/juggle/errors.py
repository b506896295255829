"""Exception types shared across the task store, sessions and agent loop."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from juggle.store.models import LockInfo


class JuggleError(Exception):
    """Base class for juggle errors."""


class BallNotFoundError(JuggleError, LookupError):
    """Raised when no ball matches an ID or prefix."""


class AmbiguousBallError(JuggleError, LookupError):
    """Raised when a prefix matches more than one ball."""

    def __init__(self, query: str, matches: list[str]):
        self.query = query
        self.matches = matches
        super().__init__(f"Ambiguous ball ID '{query}' matches: {', '.join(matches)}")


class BallExistsError(JuggleError, ValueError):
    """Raised when appending a ball whose ID is already stored."""


class InvalidTransitionError(JuggleError, ValueError):
    """Raised when a ball is moved to a state it cannot reach."""


class DependencyCycleError(JuggleError, ValueError):
    """Raised when a dependency edge would close a cycle."""

    def __init__(self, path: list[str]):
        self.path = path
        super().__init__(f"circular dependency detected: {' → '.join(path)}")


class SessionNotFoundError(JuggleError, LookupError):
    """Raised when a session directory or session.json is missing."""


class SessionLockedError(JuggleError):
    """Raised when another process holds the session's agent lock."""

    def __init__(self, session_id: str, holder: LockInfo | None = None):
        self.session_id = session_id
        self.holder = holder
        if holder is not None:
            msg = (
                f"Session '{session_id}' is locked by pid {holder.pid} "
                f"on {holder.hostname} since {holder.started_at.isoformat()}"
            )
        else:
            msg = f"Session '{session_id}' is locked by another process"
        super().__init__(msg)


class AgentLaunchError(JuggleError):
    """Raised when the agent executable cannot be started."""
