"""Tests for the append-only project state log."""

import sqlite3
import tempfile
import threading
from pathlib import Path

import pytest

from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core import state_log
from delivery_orchestrator.core.errors import (
    NoCheckpointFoundError,
    NoStateFoundError,
    ProjectNotFoundError,
    StateConflictError,
    StateEntryNotFoundError,
    ValidationError,
)
from delivery_orchestrator.db.engine import init_db


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "test.db"


@pytest.fixture
def db(db_path):
    """Create a temporary SQLite database with one empty project."""
    conn = init_db(db_path)
    projects_mod.create_project(conn, "Demo", project_id="p1")
    yield conn
    conn.close()


class TestAppend:
    def test_round_trip(self, db):
        state = {"activeRole": "TRIAGE", "tasks": [], "nested": {"a": [1, 2]}}
        entry = state_log.append_state(db, "p1", state)
        assert entry.seq == 1
        assert state_log.current_state(db, "p1") == state
        assert state_log.get_entry(db, entry.id).state == state

    def test_seq_increments(self, db):
        entries = [state_log.append_state(db, "p1", {"n": i}) for i in range(3)]
        assert [e.seq for e in entries] == [1, 2, 3]
        assert state_log.current_entry(db, "p1").id == entries[-1].id

    def test_timestamps_strictly_increase(self, db):
        entries = [state_log.append_state(db, "p1", {"n": i}) for i in range(25)]
        stamps = [e.timestamp for e in entries]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))

    def test_returned_state_is_a_copy(self, db):
        state = {"tasks": []}
        state_log.append_state(db, "p1", state)
        state["tasks"].append("mutated")
        assert state_log.current_state(db, "p1") == {"tasks": []}

    def test_expected_seq_mismatch_conflicts(self, db):
        state_log.append_state(db, "p1", {"n": 1})
        state_log.append_state(db, "p1", {"n": 2})
        with pytest.raises(StateConflictError):
            state_log.append_state(db, "p1", {"n": 3}, expected_seq=1)
        assert state_log.count_entries(db, "p1") == 2
        assert state_log.current_state(db, "p1") == {"n": 2}

    def test_expected_seq_match_appends(self, db):
        head = state_log.append_state(db, "p1", {"n": 1})
        entry = state_log.append_state(db, "p1", {"n": 2}, expected_seq=head.seq)
        assert entry.seq == 2

    def test_unknown_project_is_not_found(self, db):
        with pytest.raises(ProjectNotFoundError):
            state_log.append_state(db, "nope", {"n": 1})
        assert state_log.count_entries(db, "nope") == 0

    def test_update_state_merges(self, db):
        state_log.append_state(db, "p1", {"a": 1, "b": 2})
        entry = state_log.update_state(db, "p1", {"b": 3, "c": 4})
        assert entry.state == {"a": 1, "b": 3, "c": 4}


class TestImmutability:
    def test_update_rejected(self, db):
        entry = state_log.append_state(db, "p1", {"n": 1})
        with pytest.raises(sqlite3.DatabaseError):
            db.execute("UPDATE project_states SET state = '{}' WHERE id = ?", (entry.id,))
        db.rollback()
        assert state_log.current_state(db, "p1") == {"n": 1}

    def test_delete_rejected(self, db):
        entry = state_log.append_state(db, "p1", {"n": 1})
        with pytest.raises(sqlite3.DatabaseError):
            db.execute("DELETE FROM project_states WHERE id = ?", (entry.id,))
        db.rollback()
        assert state_log.count_entries(db, "p1") == 1


class TestReads:
    def test_no_state(self, db):
        with pytest.raises(NoStateFoundError):
            state_log.current_state(db, "p1")

    def test_no_checkpoint(self, db):
        state_log.append_state(db, "p1", {"n": 1})
        with pytest.raises(NoCheckpointFoundError):
            state_log.latest_checkpoint(db, "p1")

    def test_latest_checkpoint_skips_plain_entries(self, db):
        state_log.append_state(db, "p1", {"n": 1}, checkpoint=True)
        cp = state_log.append_state(db, "p1", {"n": 2}, checkpoint=True)
        state_log.append_state(db, "p1", {"n": 3})
        assert state_log.latest_checkpoint(db, "p1").id == cp.id
        assert state_log.current_state(db, "p1") == {"n": 3}

    def test_history_newest_first(self, db):
        for i in range(5):
            state_log.append_state(db, "p1", {"n": i})
        entries = state_log.history(db, "p1")
        assert [e.state["n"] for e in entries] == [4, 3, 2, 1, 0]

    def test_history_limits_are_prefixes(self, db):
        for i in range(12):
            state_log.append_state(db, "p1", {"n": i})
        full = [e.id for e in state_log.history(db, "p1", limit=12)]
        for limit in (1, 3, 10):
            assert [e.id for e in state_log.history(db, "p1", limit=limit)] == full[:limit]
        assert len(state_log.history(db, "p1")) == 10

    def test_history_offset(self, db):
        for i in range(5):
            state_log.append_state(db, "p1", {"n": i})
        page = state_log.history(db, "p1", limit=2, offset=2)
        assert [e.state["n"] for e in page] == [2, 1]

    @pytest.mark.parametrize("limit, offset", [(-1, 0), (2, -1)])
    def test_history_rejects_negative_paging(self, db, limit, offset):
        state_log.append_state(db, "p1", {"n": 1})
        with pytest.raises(ValidationError):
            state_log.history(db, "p1", limit=limit, offset=offset)

    def test_checkpoints_reject_negative_limit(self, db):
        with pytest.raises(ValidationError):
            state_log.checkpoints(db, "p1", limit=-1)

    def test_checkpoints_listed(self, db):
        state_log.append_state(db, "p1", {"n": 1}, checkpoint=True)
        state_log.append_state(db, "p1", {"n": 2})
        state_log.append_state(db, "p1", {"n": 3}, checkpoint=True)
        assert [e.state["n"] for e in state_log.checkpoints(db, "p1")] == [3, 1]
        assert len(state_log.checkpoints(db, "p1", limit=1)) == 1

    def test_unknown_entry(self, db):
        with pytest.raises(StateEntryNotFoundError):
            state_log.get_entry(db, "missing")

    def test_projects_are_isolated(self, db):
        projects_mod.create_project(db, "Other", project_id="p2")
        state_log.append_state(db, "p1", {"owner": "p1"})
        state_log.append_state(db, "p2", {"owner": "p2"})
        assert state_log.current_state(db, "p1") == {"owner": "p1"}
        assert state_log.current_entry(db, "p2").seq == 1


class TestConcurrentUpdates:
    def test_no_lost_updates(self, db, db_path):
        state_log.append_state(db, "p1", {})
        errors = []

        def worker(n: int):
            conn = init_db(db_path)
            try:
                for i in range(5):
                    state_log.update_state(conn, "p1", {f"worker{n}": i + 1})
            except Exception as e:  # surfaced through the errors list
                errors.append(e)
            finally:
                conn.close()

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        state = state_log.current_state(db, "p1")
        assert state == {f"worker{n}": 5 for n in range(4)}
        assert state_log.current_entry(db, "p1").seq == 21
