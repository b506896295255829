"""Per-session agent lock.

An exclusive, non-blocking ``flock`` on ``agent.lock`` in the session
directory guarantees a single agent loop per session. The holder's pid,
hostname and start time are written to ``agent.lock.info`` for diagnostics.
The kernel drops the flock when the holding process dies, so a crashed
holder never leaves the session locked.
"""

import fcntl
import json
import logging
import os
import socket
from pathlib import Path

from juggle.core.sessions import SessionStore
from juggle.errors import SessionLockedError
from juggle.store.models import LockInfo, utcnow

logger = logging.getLogger(__name__)

LOCK_FILE = "agent.lock"
INFO_FILE = "agent.lock.info"


def _read_info(session_dir: Path) -> LockInfo | None:
    try:
        data = json.loads((session_dir / INFO_FILE).read_text(encoding="utf-8"))
        return LockInfo.from_dict(data)
    except (OSError, ValueError, KeyError, TypeError):
        return None


class SessionLock:
    """A held session lock. Release it, or use it as a context manager."""

    def __init__(self, session_id: str, session_dir: Path, fd: int, info: LockInfo):
        self.session_id = session_id
        self.session_dir = session_dir
        self.info = info
        self._fd: int | None = fd

    @property
    def held(self) -> bool:
        return self._fd is not None

    def release(self) -> None:
        """Unlock and remove the lock files. Safe to call more than once."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        for name in (INFO_FILE, LOCK_FILE):
            try:
                (self.session_dir / name).unlink()
            except FileNotFoundError:
                pass
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug("Released lock for session %s", self.session_id)

    def __enter__(self) -> "SessionLock":
        return self

    def __exit__(self, *exc) -> None:
        self.release()


def acquire_session_lock(sessions: SessionStore, session_id: str) -> SessionLock:
    """Take the session's agent lock without blocking.

    Raises SessionNotFoundError for an unknown session and SessionLockedError
    if another holder has it.
    """
    session_dir = sessions.ensure_dir(session_id)
    lock_path = session_dir / LOCK_FILE

    while True:
        fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise SessionLockedError(session_id, _read_info(session_dir)) from None
        except BaseException:
            os.close(fd)
            raise

        # A releasing holder unlinks the file; make sure we locked the live one.
        try:
            same = os.fstat(fd).st_ino == os.stat(lock_path).st_ino
        except FileNotFoundError:
            same = False
        if same:
            break
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)

    info = LockInfo(pid=os.getpid(), hostname=socket.gethostname(), started_at=utcnow())
    try:
        (session_dir / INFO_FILE).write_text(json.dumps(info.to_dict()), encoding="utf-8")
    except OSError:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        raise

    logger.info("Acquired lock for session %s (pid %d)", session_id, info.pid)
    return SessionLock(session_id, session_dir, fd, info)


def is_locked(sessions: SessionStore, session_id: str) -> tuple[bool, LockInfo | None]:
    """Probe the lock without keeping it. Returns (locked, holder info)."""
    session_dir = sessions.session_dir(session_id)
    lock_path = session_dir / LOCK_FILE
    if not lock_path.exists():
        return False, None

    try:
        fd = os.open(lock_path, os.O_RDWR)
    except FileNotFoundError:
        return False, None
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return True, _read_info(session_dir)
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)
        return False, None
    finally:
        os.close(fd)
