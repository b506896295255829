"""Ball (work item) storage and operations.

Active balls live in ``.juggle/balls.jsonl``; archived ones in
``.juggle/archive/balls.jsonl``. Appends are single line writes, every other
mutation rewrites the whole file atomically.
"""

import logging
import uuid
from collections.abc import Iterable
from pathlib import Path

from juggle.errors import (
    AmbiguousBallError,
    BallExistsError,
    BallNotFoundError,
    DependencyCycleError,
    InvalidTransitionError,
)
from juggle.store.jsonl import append_jsonl, ensure_state_dir, read_jsonl, write_jsonl_atomic
from juggle.store.models import (
    BLOCKED,
    COMPLETE,
    IN_PROGRESS,
    MODEL_SIZES,
    ON_HOLD,
    PENDING,
    PRIORITIES,
    RESEARCHED,
    TESTS_STATES,
    Ball,
    utcnow,
)

logger = logging.getLogger(__name__)

ALL_SESSION = "_all"

TRANSITIONS = {
    PENDING: {IN_PROGRESS, ON_HOLD},
    IN_PROGRESS: {COMPLETE, BLOCKED, RESEARCHED},
    BLOCKED: {IN_PROGRESS, ON_HOLD},
    ON_HOLD: {PENDING},
    COMPLETE: set(),
    RESEARCHED: set(),
}


# ── Pure helpers ─────────────────────────────────────────────────────────────


def new_ball_id(project_dir: str | Path) -> str:
    project = Path(project_dir).resolve().name or "juggle"
    return f"{project}-{uuid.uuid4().hex[:8]}"


def resolve_balls(balls: Iterable[Ball], query: str) -> list[Ball]:
    """Find balls matching a full ID, a short ID, or a prefix of a short ID.

    Matching is case-insensitive. An exact full or short ID match wins over
    prefix matches, so 'abc' resolves to 'abc' even if 'abcdef' exists.
    """
    query = query.strip().lower()
    if not query:
        return []

    balls = list(balls)
    for ball in balls:
        if ball.id.lower() == query:
            return [ball]

    exact = [b for b in balls if b.short_id.lower() == query]
    if exact:
        return exact

    return [b for b in balls if b.short_id.lower().startswith(query)]


def compute_minimal_unique_ids(balls: Iterable[Ball]) -> dict[str, str]:
    """Map each ball ID to the shortest prefix of its short ID that is unique.

    A prefix of length L is unique when it is longer than the longest common
    prefix shared with every other short ID. At least one character is used;
    a short ID that is a prefix of another keeps its full length.
    """
    shorts = {b.id: b.short_id.lower() for b in balls}
    items = list(shorts.items())
    result = {}
    for ball_id, sid in items:
        longest = 0
        for other_id, other in items:
            if other_id == ball_id:
                continue
            lcp = 0
            for a, b in zip(sid, other):
                if a != b:
                    break
                lcp += 1
            longest = max(longest, lcp)
        length = min(max(longest + 1, 1), len(sid))
        result[ball_id] = sid[:length]
    return result


def _dependency_index(balls: Iterable[Ball]) -> tuple[dict[str, Ball], dict[str, str]]:
    by_id = {}
    by_short = {}
    for ball in balls:
        by_id[ball.id] = ball
        by_short[ball.short_id] = ball.id
    return by_id, by_short


def find_dependency_cycle(balls: Iterable[Ball]) -> list[str] | None:
    """Return a cycle path like [a, b, a] if the dependency graph has one.

    Dependencies may name a full ID or a short ID. Dependencies on balls
    that are not present are ignored.
    """
    by_id, by_short = _dependency_index(balls)

    def canonical(dep: str) -> str | None:
        if dep in by_id:
            return dep
        return by_short.get(dep)

    visiting: set[str] = set()
    done: set[str] = set()
    stack: list[str] = []

    def visit(node: str) -> list[str] | None:
        visiting.add(node)
        stack.append(node)
        for dep in by_id[node].depends_on:
            target = canonical(dep)
            if target is None:
                continue
            if target in visiting:
                start = stack.index(target)
                return stack[start:] + [target]
            if target not in done:
                cycle = visit(target)
                if cycle:
                    return cycle
        stack.pop()
        visiting.discard(node)
        done.add(node)
        return None

    for node in sorted(by_id):
        if node not in done:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def detect_cycles(balls: Iterable[Ball]) -> None:
    """Raise DependencyCycleError naming the cycle, if any."""
    cycle = find_dependency_cycle(balls)
    if cycle:
        raise DependencyCycleError(cycle)


def dependencies_satisfied(ball: Ball, balls: Iterable[Ball]) -> bool:
    by_id, by_short = _dependency_index(balls)
    for dep in ball.depends_on:
        target = by_id.get(dep) or by_id.get(by_short.get(dep, ""))
        if target is not None and not target.is_terminal:
            return False
    return True


def sort_balls_for_agent(balls: list[Ball]) -> list[Ball]:
    """Order non-terminal balls for the agent prompt.

    In-progress first, then pending, then blocked. Within a group, balls
    whose dependencies are all terminal come first, then higher priority.
    """
    order = {IN_PROGRESS: 0, PENDING: 1, BLOCKED: 2}
    active = [b for b in balls if b.state in order]

    def key(ball: Ball):
        return (
            order[ball.state],
            0 if dependencies_satisfied(ball, balls) else 1,
            -ball.priority_weight,
            ball.created_at,
        )

    return sorted(active, key=key)


def count_states(balls: Iterable[Ball]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for ball in balls:
        counts[ball.state] = counts.get(ball.state, 0) + 1
    return counts


def transition(ball: Ball, new_state: str, reason: str = "") -> Ball:
    """Move a ball to a new state, keeping blocked_reason consistent."""
    if new_state not in TRANSITIONS.get(ball.state, set()):
        raise InvalidTransitionError(
            f"Cannot move ball {ball.id} from {ball.state} to {new_state}"
        )
    if new_state == BLOCKED:
        if not reason.strip():
            raise ValueError("A blocked ball needs a reason")
        ball.blocked_reason = reason.strip()
    else:
        ball.blocked_reason = ""
    if new_state in (COMPLETE, RESEARCHED):
        ball.completed_at = utcnow()
    ball.state = new_state
    ball.touch()
    return ball


# ── Store ────────────────────────────────────────────────────────────────────


class BallStore:
    """File-backed store of balls for one project."""

    def __init__(self, project_dir: str | Path, dir_name: str = ".juggle"):
        self.project_dir = Path(project_dir)
        self.juggle_dir = self.project_dir / dir_name
        self.balls_path = self.juggle_dir / "balls.jsonl"
        self.archive_path = self.juggle_dir / "archive" / "balls.jsonl"

    def _load(self, path: Path) -> list[Ball]:
        balls = []
        for record in read_jsonl(path):
            try:
                balls.append(Ball.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping undecodable ball in %s: %s", path, e)
        return balls

    def load_all(self) -> list[Ball]:
        return self._load(self.balls_path)

    def load_archived(self) -> list[Ball]:
        return self._load(self.archive_path)

    def append(self, ball: Ball) -> None:
        if any(b.id == ball.id for b in self.load_all()):
            raise BallExistsError(f"Ball already exists: {ball.id}")
        ensure_state_dir(self.juggle_dir)
        append_jsonl(self.balls_path, ball.to_dict())

    def replace_all(self, balls: list[Ball]) -> None:
        """Atomically replace the active balls file."""
        ensure_state_dir(self.juggle_dir)
        write_jsonl_atomic(self.balls_path, (b.to_dict() for b in balls))

    def update(self, ball: Ball) -> None:
        balls = self.load_all()
        for i, existing in enumerate(balls):
            if existing.id == ball.id:
                balls[i] = ball
                break
        else:
            raise BallNotFoundError(f"Ball not found: {ball.id}")
        self.replace_all(balls)

    def delete(self, ball_id: str) -> None:
        balls = self.load_all()
        remaining = [b for b in balls if b.id != ball_id]
        if len(remaining) == len(balls):
            raise BallNotFoundError(f"Ball not found: {ball_id}")
        self.replace_all(remaining)

    def resolve(self, query: str) -> list[Ball]:
        return resolve_balls(self.load_all(), query)

    def get(self, query: str) -> Ball:
        """Resolve a query to exactly one active ball."""
        matches = self.resolve(query)
        if not matches:
            raise BallNotFoundError(f"Ball not found: {query}")
        if len(matches) > 1:
            raise AmbiguousBallError(query, [b.id for b in matches])
        return matches[0]

    def balls_for_session(self, session_id: str) -> list[Ball]:
        balls = self.load_all()
        if session_id == ALL_SESSION:
            return balls
        return [b for b in balls if session_id in b.tags]

    def archive(self, ball: Ball) -> None:
        """Move a terminal ball to the archive."""
        if not ball.is_terminal:
            raise InvalidTransitionError(
                f"Only complete or researched balls can be archived ({ball.id} is {ball.state})"
            )
        balls = self.load_all()
        if not any(b.id == ball.id for b in balls):
            raise BallNotFoundError(f"Ball not found: {ball.id}")
        append_jsonl(self.archive_path, ball.to_dict())
        self.replace_all([b for b in balls if b.id != ball.id])

    def unarchive(self, query: str) -> Ball:
        """Restore an archived ball to the active file as pending."""
        archived = self.load_archived()
        matches = resolve_balls(archived, query)
        if not matches:
            raise BallNotFoundError(f"Archived ball not found: {query}")
        if len(matches) > 1:
            raise AmbiguousBallError(query, [b.id for b in matches])

        ball = matches[0]
        ball.state = PENDING
        ball.blocked_reason = ""
        ball.completed_at = None
        ball.completion_note = ""
        ball.touch()

        self.append(ball)
        write_jsonl_atomic(
            self.archive_path, (b.to_dict() for b in archived if b.id != ball.id)
        )
        return ball

    def archive_terminal(self, session_id: str | None = None) -> list[Ball]:
        """Archive every terminal ball, optionally only within a session."""
        balls = self.load_all()
        moved = [
            b for b in balls
            if b.is_terminal
            and (session_id in (None, ALL_SESSION) or session_id in b.tags)
        ]
        if not moved:
            return []
        moved_ids = {b.id for b in moved}
        for ball in moved:
            append_jsonl(self.archive_path, ball.to_dict())
        self.replace_all([b for b in balls if b.id not in moved_ids])
        return moved


# ── Operations ───────────────────────────────────────────────────────────────


def create_ball(
    store: BallStore,
    title: str,
    context: str = "",
    acceptance_criteria: list[str] | None = None,
    priority: str = "medium",
    tags: list[str] | None = None,
    depends_on: list[str] | None = None,
    model_size: str = "",
) -> Ball:
    """Create a new pending ball and append it to the store."""
    if not title.strip():
        raise ValueError("Ball title cannot be empty")
    if priority not in PRIORITIES:
        raise ValueError(f"Invalid priority: {priority}")
    if model_size not in MODEL_SIZES:
        raise ValueError(f"Invalid model size: {model_size}")

    ball = Ball(
        id=new_ball_id(store.project_dir),
        title=title.strip(),
        context=context,
        acceptance_criteria=list(acceptance_criteria or []),
        priority=priority,
        tags=list(tags or []),
        depends_on=list(depends_on or []),
        model_size=model_size,
    )
    if ball.depends_on:
        detect_cycles(store.load_all() + [ball])
    store.append(ball)
    return ball


def _set_state(store: BallStore, query: str, new_state: str, reason: str = "") -> Ball:
    ball = store.get(query)
    transition(ball, new_state, reason)
    store.update(ball)
    logger.info("Ball %s -> %s", ball.id, new_state)
    return ball


def start_ball(store: BallStore, query: str) -> Ball:
    return _set_state(store, query, IN_PROGRESS)


def complete_ball(store: BallStore, query: str, note: str = "") -> Ball:
    """Complete a ball. A pending ball is started first."""
    ball = store.get(query)
    if ball.state == PENDING:
        transition(ball, IN_PROGRESS)
    transition(ball, COMPLETE)
    ball.completion_note = note
    store.update(ball)
    logger.info("Ball %s -> %s", ball.id, COMPLETE)
    return ball


def block_ball(store: BallStore, query: str, reason: str) -> Ball:
    return _set_state(store, query, BLOCKED, reason)


def research_ball(store: BallStore, query: str, output: str) -> Ball:
    """Record research output and mark the ball researched."""
    ball = store.get(query)
    if ball.state == PENDING:
        transition(ball, IN_PROGRESS)
    transition(ball, RESEARCHED)
    ball.output = output
    store.update(ball)
    return ball


def hold_ball(store: BallStore, query: str) -> Ball:
    return _set_state(store, query, ON_HOLD)


def release_hold(store: BallStore, query: str) -> Ball:
    return _set_state(store, query, PENDING)


def retry_ball(store: BallStore, query: str) -> Ball:
    """Move a blocked ball back to in progress."""
    return _set_state(store, query, IN_PROGRESS)


def set_tests_state(store: BallStore, query: str, tests_state: str) -> Ball:
    if tests_state not in TESTS_STATES:
        raise ValueError(f"Invalid tests state: {tests_state}")
    ball = store.get(query)
    ball.tests_state = tests_state
    ball.touch()
    store.update(ball)
    return ball


def set_dependencies(store: BallStore, query: str, depends_on: list[str]) -> Ball:
    """Replace a ball's dependencies after checking the graph stays acyclic."""
    balls = store.load_all()
    ball = store.get(query)
    resolved = []
    for dep in depends_on:
        target = store.get(dep)
        if target.id == ball.id:
            raise DependencyCycleError([ball.id, ball.id])
        if target.id not in resolved:
            resolved.append(target.id)

    candidate = [b for b in balls if b.id != ball.id]
    ball.depends_on = resolved
    detect_cycles(candidate + [ball])

    ball.touch()
    store.update(ball)
    return ball


def add_dependency(store: BallStore, query: str, dep_query: str) -> Ball:
    ball = store.get(query)
    dep = store.get(dep_query)
    deps = list(ball.depends_on)
    if dep.id not in deps and dep.short_id not in deps:
        deps.append(dep.id)
    return set_dependencies(store, ball.id, deps)


def remove_dependency(store: BallStore, query: str, dep_query: str) -> Ball:
    ball = store.get(query)
    matches = resolve_balls(store.load_all(), dep_query)
    drop = {dep_query}
    for match in matches:
        drop.update({match.id, match.short_id})
    if not any(d in drop for d in ball.depends_on):
        raise BallNotFoundError(f"{ball.id} does not depend on {dep_query}")
    ball.depends_on = [d for d in ball.depends_on if d not in drop]
    ball.touch()
    store.update(ball)
    return ball


def query_archive(
    store: BallStore,
    text: str | None = None,
    tags: list[str] | None = None,
    priority: str | None = None,
    limit: int | None = None,
    sort: str = "completed",
) -> list[Ball]:
    """Search archived balls by text, tags and priority.

    Text matches title, context, acceptance criteria and completion note,
    case-insensitively. Results are newest first by completion time, or by
    priority when ``sort`` is 'priority'.
    """
    results = []
    needle = text.lower() if text else None
    for ball in store.load_archived():
        if priority and ball.priority != priority:
            continue
        if tags and not all(t in ball.tags for t in tags):
            continue
        if needle:
            haystack = " ".join(
                [ball.title, ball.context, ball.completion_note, *ball.acceptance_criteria]
            ).lower()
            if needle not in haystack:
                continue
        results.append(ball)

    if sort == "priority":
        results.sort(key=lambda b: (-b.priority_weight, b.created_at))
    else:
        results.sort(key=lambda b: b.completed_at or b.last_activity, reverse=True)

    if limit is not None:
        results = results[:limit]
    return results


def block_in_progress(store: BallStore, session_id: str, reason: str) -> list[Ball]:
    """Mark every in-progress ball of a session blocked with one rewrite."""
    balls = store.load_all()
    blocked = []
    for ball in balls:
        if ball.state != IN_PROGRESS:
            continue
        if session_id != ALL_SESSION and session_id not in ball.tags:
            continue
        transition(ball, BLOCKED, reason)
        blocked.append(ball)
    if blocked:
        store.replace_all(balls)
    return blocked
