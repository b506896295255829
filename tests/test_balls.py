"""Tests for ball storage and operations."""

import json
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from juggle.core import balls as balls_mod
from juggle.core.balls import BallStore
from juggle.errors import (
    AmbiguousBallError,
    BallExistsError,
    BallNotFoundError,
    DependencyCycleError,
    InvalidTransitionError,
)
from juggle.store.models import Ball


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as tmp:
        project = Path(tmp) / "proj"
        project.mkdir()
        yield BallStore(project)


def _ball(ball_id, **kwargs):
    return Ball(id=ball_id, title=kwargs.pop("title", ball_id), **kwargs)


class TestBallStore:
    def test_empty_store(self, store):
        assert store.load_all() == []

    def test_append_and_load(self, store):
        ball = balls_mod.create_ball(store, "Write parser", priority="high", tags=["s1"])
        assert ball.id.startswith("proj-")
        assert len(ball.short_id) == 8

        loaded = store.load_all()
        assert [b.id for b in loaded] == [ball.id]
        assert loaded[0].title == "Write parser"
        assert loaded[0].priority == "high"
        assert loaded[0].state == "pending"

    def test_append_duplicate_rejected(self, store):
        store.append(_ball("proj-aaaa1111"))
        with pytest.raises(BallExistsError):
            store.append(_ball("proj-aaaa1111"))

    def test_update_delete_sequence(self, store):
        a = _ball("proj-aaaa1111")
        b = _ball("proj-bbbb2222")
        c = _ball("proj-cccc3333")
        for ball in (a, b, c):
            store.append(ball)

        b.title = "renamed"
        store.update(b)
        store.delete("proj-aaaa1111")

        loaded = {x.id: x for x in store.load_all()}
        assert set(loaded) == {"proj-bbbb2222", "proj-cccc3333"}
        assert loaded["proj-bbbb2222"].title == "renamed"

    def test_update_missing(self, store):
        with pytest.raises(BallNotFoundError, match="not found"):
            store.update(_ball("proj-nope0000"))

    def test_delete_missing(self, store):
        with pytest.raises(BallNotFoundError):
            store.delete("proj-nope0000")

    def test_malformed_lines_skipped(self, store):
        store.append(_ball("proj-aaaa1111"))
        with open(store.balls_path, "a") as f:
            f.write("{not json\n")
            f.write("\n")
            f.write(json.dumps({"title": "no id"}) + "\n")
        store.append(_ball("proj-bbbb2222"))

        assert [b.id for b in store.load_all()] == ["proj-aaaa1111", "proj-bbbb2222"]

    def test_invalid_utf8_line_skipped(self, store):
        store.append(_ball("proj-aaaa1111"))
        with open(store.balls_path, "ab") as f:
            f.write(b"{\"id\": \"proj-\xff\xfe\"}\n")
        store.append(_ball("proj-bbbb2222"))

        assert [b.id for b in store.load_all()] == ["proj-aaaa1111", "proj-bbbb2222"]

    def test_non_string_timestamp_skipped(self, store):
        store.append(_ball("proj-aaaa1111"))
        with open(store.balls_path, "a") as f:
            f.write(json.dumps({"id": "proj-cccc3333", "title": "bad", "created_at": 123}) + "\n")

        assert [b.id for b in store.load_all()] == ["proj-aaaa1111"]

    def test_crash_before_rename_keeps_previous_file(self, store):
        a = _ball("proj-aaaa1111")
        store.append(a)
        before = store.balls_path.read_text()

        a.title = "changed"
        with patch("juggle.store.jsonl.os.replace", side_effect=OSError("disk gone")):
            with pytest.raises(OSError):
                store.update(a)

        assert store.balls_path.read_text() == before
        assert store.load_all()[0].title == "proj-aaaa1111"
        leftovers = [p for p in store.juggle_dir.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_balls_for_session(self, store):
        store.append(_ball("proj-aaaa1111", tags=["alpha"]))
        store.append(_ball("proj-bbbb2222", tags=["beta"]))
        assert [b.id for b in store.balls_for_session("alpha")] == ["proj-aaaa1111"]
        assert len(store.balls_for_session("_all")) == 2


class TestLegacyDecode:
    def test_v1_status(self):
        ball = Ball.from_dict({"id": "p-1", "intent": "old", "status": "blocked", "blocker": "waiting"})
        assert ball.title == "old"
        assert ball.state == "blocked"
        assert ball.blocked_reason == "waiting"

    def test_v1_needs_review_is_in_progress(self):
        assert Ball.from_dict({"id": "p-1", "status": "needs-review"}).state == "in_progress"

    def test_v1_description_becomes_criterion(self):
        ball = Ball.from_dict({"id": "p-1", "status": "done", "description": "it works"})
        assert ball.state == "complete"
        assert ball.acceptance_criteria == ["it works"]

    def test_v2_active_state(self):
        ball = Ball.from_dict({"id": "p-1", "active_state": "dropped"})
        assert ball.state == "blocked"
        assert ball.blocked_reason == "dropped"
        assert Ball.from_dict({"id": "p-2", "active_state": "juggling"}).state == "in_progress"
        assert Ball.from_dict({"id": "p-3", "active_state": "ready"}).state == "pending"

    def test_v3_wins_over_older_fields(self):
        ball = Ball.from_dict({"id": "p-1", "state": "complete", "status": "planned"})
        assert ball.state == "complete"

    def test_no_state_is_pending(self):
        assert Ball.from_dict({"id": "p-1", "title": "x"}).state == "pending"

    def test_blocked_reason_cleared_when_not_blocked(self):
        ball = Ball.from_dict({"id": "p-1", "state": "pending", "blocked_reason": "stale"})
        assert ball.blocked_reason == ""

    def test_go_style_timestamps(self):
        ball = Ball.from_dict({
            "id": "p-1",
            "state": "pending",
            "created_at": "2025-01-02T03:04:05.123456789Z",
        })
        assert ball.created_at.year == 2025
        assert ball.created_at.microsecond == 123456

    def test_written_in_current_shape(self, store):
        store.juggle_dir.mkdir()
        store.balls_path.write_text(
            json.dumps({"id": "proj-aaaa1111", "intent": "legacy", "status": "active"}) + "\n"
        )
        ball = store.get("aaaa")
        ball.title = "updated"
        store.update(ball)

        record = json.loads(store.balls_path.read_text().strip())
        assert record["state"] == "in_progress"
        assert "status" not in record


class TestResolve:
    def test_exact_short_id_wins_over_prefix(self):
        balls = [_ball("p-abc"), _ball("p-abcdef")]
        assert [b.id for b in balls_mod.resolve_balls(balls, "abc")] == ["p-abc"]

    def test_prefix_case_insensitive(self):
        balls = [_ball("p-ABCD1234"), _ball("p-ffff0000")]
        assert [b.id for b in balls_mod.resolve_balls(balls, "abc")] == ["p-ABCD1234"]

    def test_full_id(self):
        balls = [_ball("p-abcd1234")]
        assert balls_mod.resolve_balls(balls, "p-abcd1234")[0].id == "p-abcd1234"

    def test_empty_query(self):
        assert balls_mod.resolve_balls([_ball("p-abcd1234")], "") == []

    def test_ambiguous_get(self, store):
        store.append(_ball("proj-abcd1111"))
        store.append(_ball("proj-abcd2222"))
        with pytest.raises(AmbiguousBallError):
            store.get("abcd")
        assert store.get("abcd1").id == "proj-abcd1111"


class TestMinimalUniqueIds:
    def test_shared_prefix(self):
        balls = [_ball("p-1111222244"), _ball("p-1122334455")]
        ids = balls_mod.compute_minimal_unique_ids(balls)
        assert ids == {"p-1111222244": "111", "p-1122334455": "112"}

    def test_single_ball_uses_one_char(self):
        assert balls_mod.compute_minimal_unique_ids([_ball("p-abcd1234")]) == {"p-abcd1234": "a"}

    def test_ids_are_distinct_and_resolve(self):
        balls = [_ball(f"p-{s}") for s in ("abcd1234", "abce5678", "b0000000", "abc", "abcd9999")]
        ids = balls_mod.compute_minimal_unique_ids(balls)
        assert len(set(ids.values())) == len(balls)
        for ball_id, short in ids.items():
            assert [b.id for b in balls_mod.resolve_balls(balls, short)] == [ball_id]

    def test_hex_leading_project_name_resolves_to_one_ball(self):
        balls = [_ball("backend-b3c4d5e6"), _ball("backend-4f000000")]
        ids = balls_mod.compute_minimal_unique_ids(balls)
        assert ids["backend-b3c4d5e6"] == "b"
        for ball_id, short in ids.items():
            assert [b.id for b in balls_mod.resolve_balls(balls, short)] == [ball_id]


class TestDependencies:
    def test_acyclic_graph_passes(self):
        balls = [
            _ball("p-a", depends_on=["p-b"]),
            _ball("p-b", depends_on=["p-c"]),
            _ball("p-c"),
        ]
        balls_mod.detect_cycles(balls)

    def test_two_node_cycle(self):
        balls = [_ball("p-a", depends_on=["p-b"]), _ball("p-b", depends_on=["p-a"])]
        with pytest.raises(DependencyCycleError) as exc:
            balls_mod.detect_cycles(balls)
        assert exc.value.path == ["p-a", "p-b", "p-a"]
        assert "p-a → p-b → p-a" in str(exc.value)

    def test_short_id_dependencies(self):
        balls = [_ball("p-a", depends_on=["b"]), _ball("p-b", depends_on=["a"])]
        assert balls_mod.find_dependency_cycle(balls) is not None

    def test_missing_dependency_ignored(self):
        assert balls_mod.find_dependency_cycle([_ball("p-a", depends_on=["p-gone"])]) is None

    def test_add_dependency_rejects_cycle(self, store):
        a = balls_mod.create_ball(store, "A")
        b = balls_mod.create_ball(store, "B")
        balls_mod.add_dependency(store, a.id, b.id)
        with pytest.raises(DependencyCycleError):
            balls_mod.add_dependency(store, b.id, a.id)
        assert store.get(b.id).depends_on == []

    def test_self_dependency_rejected(self, store):
        a = balls_mod.create_ball(store, "A")
        with pytest.raises(DependencyCycleError):
            balls_mod.add_dependency(store, a.id, a.id)

    def test_remove_dependency(self, store):
        a = balls_mod.create_ball(store, "A")
        b = balls_mod.create_ball(store, "B")
        balls_mod.add_dependency(store, a.id, b.id)
        ball = balls_mod.remove_dependency(store, a.id, b.short_id)
        assert ball.depends_on == []


class TestTransitions:
    def test_lifecycle(self, store):
        ball = balls_mod.create_ball(store, "Work")
        balls_mod.start_ball(store, ball.id)
        blocked = balls_mod.block_ball(store, ball.id, "need creds")
        assert blocked.state == "blocked"
        assert blocked.blocked_reason == "need creds"

        retried = balls_mod.retry_ball(store, ball.id)
        assert retried.state == "in_progress"
        assert retried.blocked_reason == ""

        done = balls_mod.complete_ball(store, ball.id, "shipped")
        assert done.state == "complete"
        assert done.completed_at is not None
        assert done.completion_note == "shipped"
        assert done.update_count == 4

    def test_complete_starts_pending(self, store):
        ball = balls_mod.create_ball(store, "Quick")
        assert balls_mod.complete_ball(store, ball.id).state == "complete"

    def test_block_requires_reason(self, store):
        ball = balls_mod.create_ball(store, "Work")
        balls_mod.start_ball(store, ball.id)
        with pytest.raises(ValueError, match="reason"):
            balls_mod.block_ball(store, ball.id, "  ")

    def test_terminal_cannot_restart(self, store):
        ball = balls_mod.create_ball(store, "Work")
        balls_mod.complete_ball(store, ball.id)
        with pytest.raises(InvalidTransitionError):
            balls_mod.start_ball(store, ball.id)

    def test_hold_and_release(self, store):
        ball = balls_mod.create_ball(store, "Later")
        assert balls_mod.hold_ball(store, ball.id).state == "on_hold"
        assert balls_mod.release_hold(store, ball.id).state == "pending"

    def test_block_in_progress(self, store):
        a = balls_mod.create_ball(store, "A", tags=["s"])
        b = balls_mod.create_ball(store, "B", tags=["s"])
        c = balls_mod.create_ball(store, "C", tags=["other"])
        balls_mod.start_ball(store, a.id)
        balls_mod.start_ball(store, c.id)

        blocked = balls_mod.block_in_progress(store, "s", "timed out")
        assert [x.id for x in blocked] == [a.id]
        assert store.get(a.id).blocked_reason == "timed out"
        assert store.get(b.id).state == "pending"
        assert store.get(c.id).state == "in_progress"


class TestArchive:
    def test_archive_requires_terminal(self, store):
        ball = balls_mod.create_ball(store, "Open")
        with pytest.raises(InvalidTransitionError):
            store.archive(ball)

    def test_archive_and_unarchive(self, store):
        ball = balls_mod.create_ball(store, "Done thing")
        ball = balls_mod.complete_ball(store, ball.id, "ok")
        store.archive(ball)

        assert store.load_all() == []
        assert [b.id for b in store.load_archived()] == [ball.id]

        restored = store.unarchive(ball.short_id[:4])
        assert restored.state == "pending"
        assert restored.completed_at is None
        assert restored.completion_note == ""
        assert [b.id for b in store.load_all()] == [ball.id]
        assert store.load_archived() == []

    def test_archive_terminal_by_session(self, store):
        a = balls_mod.create_ball(store, "A", tags=["s"])
        b = balls_mod.create_ball(store, "B", tags=["t"])
        balls_mod.complete_ball(store, a.id)
        balls_mod.complete_ball(store, b.id)

        moved = store.archive_terminal("s")
        assert [x.id for x in moved] == [a.id]
        assert [x.id for x in store.load_all()] == [b.id]

    def test_query_archive(self, store):
        a = balls_mod.create_ball(store, "Fix login bug", priority="high", tags=["auth"])
        b = balls_mod.create_ball(store, "Write docs", context="login page docs")
        c = balls_mod.create_ball(store, "Refactor", tags=["auth"])
        for ball in (a, b, c):
            balls_mod.complete_ball(store, ball.id)
        store.archive_terminal()

        assert {x.id for x in balls_mod.query_archive(store, "LOGIN")} == {a.id, b.id}
        assert {x.id for x in balls_mod.query_archive(store, tags=["auth"])} == {a.id, c.id}
        assert [x.id for x in balls_mod.query_archive(store, priority="high")] == [a.id]
        assert len(balls_mod.query_archive(store, limit=2)) == 2
        assert balls_mod.query_archive(store, sort="priority")[0].id == a.id


class TestAgentOrdering:
    def test_sort_balls_for_agent(self):
        dep = _ball("p-dep", state="pending", priority="low")
        waiting = _ball("p-wait", state="pending", priority="urgent", depends_on=["p-dep"])
        ready = _ball("p-ready", state="pending", priority="medium")
        active = _ball("p-active", state="in_progress", priority="low")
        stuck = _ball("p-stuck", state="blocked", blocked_reason="x", priority="urgent")
        done = _ball("p-done", state="complete")

        ordered = balls_mod.sort_balls_for_agent([dep, waiting, ready, active, stuck, done])
        assert [b.id for b in ordered] == ["p-active", "p-ready", "p-dep", "p-wait", "p-stuck"]
