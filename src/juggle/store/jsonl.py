"""JSON Lines file access with single-write appends and atomic rewrites."""

import json
import logging
import os
import tempfile
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


def read_jsonl(path: str | Path) -> list[dict]:
    """Read every well-formed JSON object from a JSONL file.

    A missing file reads as empty. Blank lines are ignored; malformed lines
    are logged and skipped.
    """
    path = Path(path)
    if not path.exists():
        return []

    records = []
    with open(path, "rb") as f:
        for lineno, raw in enumerate(f, start=1):
            if not raw.strip():
                continue
            try:
                record = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.warning("Skipping malformed line %d in %s: %s", lineno, path, e)
                continue
            if not isinstance(record, dict):
                logger.warning("Skipping non-object line %d in %s", lineno, path)
                continue
            records.append(record)
    return records


def append_jsonl(path: str | Path, record: dict) -> None:
    """Append one record as a single line, written in one write call."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, ensure_ascii=False) + "\n"
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
    try:
        os.write(fd, line.encode("utf-8"))
    finally:
        os.close(fd)


@contextmanager
def atomic_writer(path: str | Path) -> Iterator:
    """Yield a text file that replaces ``path`` only if the block succeeds.

    The temp file lives in the target's directory so the final rename stays
    on one filesystem. On any failure the temp file is removed and the
    previous contents of ``path`` are left untouched.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def write_jsonl_atomic(path: str | Path, records: Iterable[dict]) -> None:
    """Rewrite a JSONL file in full through a temp file and rename."""
    with atomic_writer(path) as f:
        for record in records:
            f.write(json.dumps(record, ensure_ascii=False) + "\n")


def read_json(path: str | Path) -> dict | None:
    """Read a JSON object file. Returns None if the file does not exist."""
    path = Path(path)
    if not path.exists():
        return None
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a JSON object")
    return data


def write_json_atomic(path: str | Path, data: dict) -> None:
    with atomic_writer(path) as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
        f.write("\n")


def ensure_state_dir(path: str | Path) -> Path:
    """Create the state directory with a .gitignore that ignores all of it.

    Both git and jj honour the file, so ball data, progress logs and lock
    files never end up in commits or get wiped by a hard reset.
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    ignore = path / ".gitignore"
    if not ignore.exists():
        ignore.write_text("*\n", encoding="utf-8")
    return path
