"""Data models for balls, sessions, lock records and run records.

Balls are written in one canonical shape but three historical shapes are
still read: a ``status`` field (oldest), an ``active_state`` field, and the
current ``state`` field.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETE = "complete"
BLOCKED = "blocked"
RESEARCHED = "researched"
ON_HOLD = "on_hold"

BALL_STATES = (PENDING, IN_PROGRESS, COMPLETE, BLOCKED, RESEARCHED, ON_HOLD)
TERMINAL_STATES = (COMPLETE, RESEARCHED)

PRIORITIES = ("low", "medium", "high", "urgent")
PRIORITY_WEIGHT = {"low": 1, "medium": 2, "high": 3, "urgent": 4}

TESTS_STATES = ("", "not_needed", "needed", "done")
MODEL_SIZES = ("", "small", "medium", "large")

# active_state values from the second on-disk shape
_V2_STATES = {
    "ready": PENDING,
    "juggling": IN_PROGRESS,
    "dropped": BLOCKED,
    "complete": COMPLETE,
}

# status values from the first on-disk shape
_V1_STATES = {
    "planned": PENDING,
    "active": IN_PROGRESS,
    "blocked": BLOCKED,
    "needs-review": IN_PROGRESS,
    "done": COMPLETE,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_dt(val: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp, tolerating 'Z' and nanosecond fractions."""
    if not val:
        return None
    if not isinstance(val, str):
        raise ValueError(f"timestamp is not a string: {val!r}")
    text = val.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        for ch in rest:
            if not ch.isdigit():
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest[len(digits):]}"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_dt(val: datetime | None) -> str | None:
    if val is None:
        return None
    return val.isoformat()


# ── Ball ─────────────────────────────────────────────────────────────────────


@dataclass
class Ball:
    id: str
    title: str
    context: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    priority: str = "medium"
    state: str = PENDING
    blocked_reason: str = ""
    tests_state: str = ""
    output: str = ""
    depends_on: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    model_size: str = ""
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    completion_note: str = ""
    update_count: int = 0

    @property
    def short_id(self) -> str:
        return self.id.rsplit("-", 1)[-1]

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def priority_weight(self) -> int:
        return PRIORITY_WEIGHT.get(self.priority, 2)

    def touch(self) -> None:
        """Record a mutation: bump update_count and last_activity."""
        self.update_count += 1
        self.last_activity = utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "context": self.context,
            "acceptance_criteria": list(self.acceptance_criteria),
            "priority": self.priority,
            "state": self.state,
            "blocked_reason": self.blocked_reason,
            "tests_state": self.tests_state,
            "output": self.output,
            "depends_on": list(self.depends_on),
            "tags": list(self.tags),
            "model_size": self.model_size,
            "created_at": format_dt(self.created_at),
            "last_activity": format_dt(self.last_activity),
            "completed_at": format_dt(self.completed_at),
            "completion_note": self.completion_note,
            "update_count": self.update_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Ball":
        """Decode any known on-disk shape into a canonical Ball.

        Shapes are tried newest first. Unknown states decode to pending.
        """
        if not isinstance(data, dict) or not data.get("id"):
            raise ValueError("ball record has no id")

        state, reason = _decode_state(data)

        title = data.get("title") or data.get("intent") or ""
        criteria = data.get("acceptance_criteria")
        if criteria is None:
            desc = data.get("description") or ""
            criteria = [desc] if desc else []

        priority = data.get("priority") or "medium"
        if priority not in PRIORITIES:
            priority = "medium"

        created = parse_dt(data.get("created_at")) or utcnow()
        ball = cls(
            id=data["id"],
            title=title,
            context=data.get("context") or "",
            acceptance_criteria=list(criteria),
            priority=priority,
            state=state,
            blocked_reason=reason,
            tests_state=data.get("tests_state") or "",
            output=data.get("output") or "",
            depends_on=list(data.get("depends_on") or []),
            tags=list(data.get("tags") or []),
            model_size=data.get("model_size") or "",
            created_at=created,
            last_activity=parse_dt(data.get("last_activity")) or created,
            completed_at=parse_dt(data.get("completed_at")),
            completion_note=data.get("completion_note") or "",
            update_count=int(data.get("update_count") or 0),
        )

        # blocked_reason is set exactly when the ball is blocked
        if ball.state == BLOCKED and not ball.blocked_reason:
            ball.blocked_reason = "unspecified"
        elif ball.state != BLOCKED:
            ball.blocked_reason = ""
        return ball


def _decode_state(data: dict) -> tuple[str, str]:
    if "state" in data:
        state = data.get("state") or PENDING
        if state not in BALL_STATES:
            logger.warning("Unknown state %r on ball %s, treating as pending", state, data["id"])
            state = PENDING
        return state, data.get("blocked_reason") or ""

    if "active_state" in data:
        state = _V2_STATES.get(data.get("active_state"), PENDING)
        reason = ""
        if state == BLOCKED:
            reason = data.get("state_message") or "dropped"
        return state, reason

    if "status" in data:
        state = _V1_STATES.get(data.get("status"), PENDING)
        reason = ""
        if state == BLOCKED:
            reason = data.get("blocker") or ""
        return state, reason

    return PENDING, ""


# ── Session ──────────────────────────────────────────────────────────────────


@dataclass
class Session:
    id: str
    description: str = ""
    context: str = ""
    default_model: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "context": self.context,
            "default_model": self.default_model,
            "acceptance_criteria": list(self.acceptance_criteria),
            "created_at": format_dt(self.created_at),
            "updated_at": format_dt(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        created = parse_dt(data.get("created_at")) or utcnow()
        return cls(
            id=data["id"],
            description=data.get("description") or "",
            context=data.get("context") or "",
            default_model=data.get("default_model") or "",
            acceptance_criteria=list(data.get("acceptance_criteria") or []),
            created_at=created,
            updated_at=parse_dt(data.get("updated_at")) or created,
        )


# ── Lock / Run records ───────────────────────────────────────────────────────


@dataclass
class LockInfo:
    pid: int
    hostname: str
    started_at: datetime

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "hostname": self.hostname,
            "started_at": format_dt(self.started_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LockInfo":
        return cls(
            pid=int(data["pid"]),
            hostname=data.get("hostname") or "",
            started_at=parse_dt(data.get("started_at")) or utcnow(),
        )


@dataclass(frozen=True)
class RunRecord:
    """One orchestrating-loop run. Appended once, never modified."""

    id: str
    session_id: str
    started_at: datetime
    ended_at: datetime
    iterations: int
    max_iterations: int
    result: str
    blocked_reason: str = ""
    timeout_message: str = ""
    error_message: str = ""
    total_wait_seconds: float = 0.0
    balls_complete: int = 0
    balls_blocked: int = 0
    balls_total: int = 0
    output_file: str = ""
    project_dir: str = ""
    isolated_revision: str = ""

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = format_dt(self.started_at)
        data["ended_at"] = format_dt(self.ended_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RunRecord":
        started = parse_dt(data.get("started_at"))
        ended = parse_dt(data.get("ended_at"))
        if started is None or ended is None or not data.get("session_id"):
            raise ValueError("run record is missing required fields")
        return cls(
            id=str(data.get("id") or ""),
            session_id=data["session_id"],
            started_at=started,
            ended_at=ended,
            iterations=int(data.get("iterations") or 0),
            max_iterations=int(data.get("max_iterations") or 0),
            result=data.get("result") or "",
            blocked_reason=data.get("blocked_reason") or "",
            timeout_message=data.get("timeout_message") or "",
            error_message=data.get("error_message") or "",
            total_wait_seconds=float(data.get("total_wait_seconds") or 0.0),
            balls_complete=int(data.get("balls_complete") or 0),
            balls_blocked=int(data.get("balls_blocked") or 0),
            balls_total=int(data.get("balls_total") or 0),
            output_file=data.get("output_file") or "",
            project_dir=data.get("project_dir") or "",
            isolated_revision=data.get("isolated_revision") or "",
        )
