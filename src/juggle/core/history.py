"""Append-only history of agent loop runs (``.juggle/agent_history.jsonl``)."""

import logging
from pathlib import Path

from juggle.store.jsonl import append_jsonl, read_jsonl
from juggle.store.models import RunRecord

logger = logging.getLogger(__name__)


class RunHistory:
    def __init__(self, project_dir: str | Path, dir_name: str = ".juggle"):
        self.path = Path(project_dir) / dir_name / "agent_history.jsonl"

    def append(self, record: RunRecord) -> None:
        append_jsonl(self.path, record.to_dict())

    def load_all(self) -> list[RunRecord]:
        """All runs, most recent first. Undecodable records are skipped."""
        records = []
        for data in read_jsonl(self.path):
            try:
                records.append(RunRecord.from_dict(data))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("Skipping bad history record: %s", e)
        records.sort(key=lambda r: r.started_at, reverse=True)
        return records

    def load_by_session(self, session_id: str) -> list[RunRecord]:
        return [r for r in self.load_all() if r.session_id == session_id]

    def load_recent(self, limit: int) -> list[RunRecord]:
        return self.load_all()[:limit]
