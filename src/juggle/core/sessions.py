"""Session storage: session.json metadata and the append-only progress log."""

import fcntl
import logging
import re
import shutil
from contextlib import contextmanager
from pathlib import Path

from juggle.core.balls import ALL_SESSION
from juggle.errors import SessionNotFoundError
from juggle.store.jsonl import ensure_state_dir, read_json, write_json_atomic
from juggle.store.models import Session

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")


class SessionStore:
    """Sessions live in ``.juggle/sessions/<id>/``."""

    def __init__(self, project_dir: str | Path, dir_name: str = ".juggle"):
        self.project_dir = Path(project_dir)
        self.juggle_dir = self.project_dir / dir_name
        self.sessions_dir = self.juggle_dir / "sessions"

    def session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / session_id

    def _session_file(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "session.json"

    def exists(self, session_id: str) -> bool:
        return self._session_file(session_id).exists()

    def ensure_dir(self, session_id: str) -> Path:
        """Return the session directory, creating it for the aggregate session.

        Any other session must already exist.
        """
        path = self.session_dir(session_id)
        if session_id == ALL_SESSION:
            path.mkdir(parents=True, exist_ok=True)
        elif not self.exists(session_id):
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return path

    def create(
        self,
        session_id: str,
        description: str = "",
        context: str = "",
        default_model: str = "",
        acceptance_criteria: list[str] | None = None,
    ) -> Session:
        if session_id == ALL_SESSION or not _SESSION_ID_RE.match(session_id):
            raise ValueError(f"Invalid session ID: {session_id}")
        if self.exists(session_id):
            raise ValueError(f"Session already exists: {session_id}")

        ensure_state_dir(self.juggle_dir)
        session = Session(
            id=session_id,
            description=description,
            context=context,
            default_model=default_model,
            acceptance_criteria=list(acceptance_criteria or []),
        )
        write_json_atomic(self._session_file(session_id), session.to_dict())
        logger.info("Created session %s", session_id)
        return session

    def load(self, session_id: str) -> Session:
        data = read_json(self._session_file(session_id))
        if data is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return Session.from_dict(data)

    def list_all(self) -> list[Session]:
        if not self.sessions_dir.exists():
            return []
        sessions = []
        for path in sorted(self.sessions_dir.iterdir()):
            if not (path / "session.json").exists():
                continue
            try:
                sessions.append(self.load(path.name))
            except (KeyError, ValueError) as e:
                logger.warning("Skipping unreadable session %s: %s", path.name, e)
        return sessions

    def delete(self, session_id: str) -> None:
        path = self.session_dir(session_id)
        if not path.exists():
            raise SessionNotFoundError(f"Session not found: {session_id}")
        shutil.rmtree(path)

    # ── Progress log ─────────────────────────────────────────────────────────

    @contextmanager
    def _progress_lock(self, session_id: str):
        lock_path = self.session_dir(session_id) / "progress.txt.lock"
        with open(lock_path, "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def append_progress(self, session_id: str, text: str) -> None:
        """Append text to the session's progress log under an exclusive lock."""
        path = self.ensure_dir(session_id)
        if not text.endswith("\n"):
            text += "\n"
        with self._progress_lock(session_id):
            with open(path / "progress.txt", "a", encoding="utf-8") as f:
                f.write(text)

    def load_progress(self, session_id: str) -> str:
        path = self.session_dir(session_id) / "progress.txt"
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8")

    def clear_progress(self, session_id: str) -> None:
        path = self.ensure_dir(session_id)
        with self._progress_lock(session_id):
            (path / "progress.txt").write_text("", encoding="utf-8")

    def save_last_output(self, session_id: str, output: str) -> Path:
        path = self.ensure_dir(session_id) / "last_output.txt"
        path.write_text(output, encoding="utf-8")
        return path
