"""Append-only, per-project log of state snapshots.

The latest entry is the project's current state; checkpoint-flagged entries
are durable resume points. Entries are never updated or deleted. A cached
head row per project (``state_heads``) points at the latest entry and the
latest checkpoint so both reads are single-row lookups, and doubles as an
optimistic concurrency check: an append only succeeds if the head has not
moved since it was read.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core.errors import (
    NoCheckpointFoundError,
    NoStateFoundError,
    StateConflictError,
    StateEntryNotFoundError,
    ValidationError,
)
from delivery_orchestrator.core.locks import project_lock
from delivery_orchestrator.db.engine import transaction
from delivery_orchestrator.db.models import StateEntry

logger = logging.getLogger(__name__)


def append_state(
    db: sqlite3.Connection,
    project_id: str,
    state: dict[str, Any],
    checkpoint: bool = False,
    expected_seq: int | None = None,
) -> StateEntry:
    """Append a snapshot to the project's log and return the new entry.

    Pass ``expected_seq`` (the seq of the entry the new state was derived from)
    to fail with StateConflictError instead of appending over a newer head.
    """
    with project_lock(project_id), transaction(db):
        head = _get_head(db, project_id)
        if head is None:
            projects_mod.get_project(db, project_id)
        head_seq = head["seq"] if head else 0
        if expected_seq is not None and expected_seq != head_seq:
            raise StateConflictError(project_id, expected_seq)
        seq = head["seq"] + 1 if head else 1
        timestamp = _next_timestamp(head["timestamp"] if head else None)
        entry_id = uuid.uuid4().hex

        try:
            db.execute(
                """INSERT INTO project_states (id, project_id, seq, timestamp, checkpoint, state)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (entry_id, project_id, seq, timestamp.isoformat(), int(checkpoint), json.dumps(state)),
            )
        except sqlite3.IntegrityError as e:
            logger.warning("Concurrent append on project %s at seq %d", project_id, seq)
            raise StateConflictError(project_id, seq - 1) from e

        if head is None:
            db.execute(
                """INSERT INTO state_heads (project_id, head_id, checkpoint_id, seq, timestamp)
                   VALUES (?, ?, ?, ?, ?)""",
                (project_id, entry_id, entry_id if checkpoint else None, seq, timestamp.isoformat()),
            )
        else:
            cur = db.execute(
                """UPDATE state_heads
                   SET head_id = ?, checkpoint_id = COALESCE(?, checkpoint_id), seq = ?, timestamp = ?
                   WHERE project_id = ? AND seq = ?""",
                (
                    entry_id,
                    entry_id if checkpoint else None,
                    seq,
                    timestamp.isoformat(),
                    project_id,
                    head["seq"],
                ),
            )
            if cur.rowcount != 1:
                logger.warning("State head for project %s moved past seq %d", project_id, head["seq"])
                raise StateConflictError(project_id, head["seq"])

    return StateEntry(
        id=entry_id,
        project_id=project_id,
        seq=seq,
        timestamp=timestamp,
        checkpoint=checkpoint,
        state=json.loads(json.dumps(state)),
    )


def update_state(
    db: sqlite3.Connection,
    project_id: str,
    changes: dict[str, Any],
    checkpoint: bool = False,
) -> StateEntry:
    """Shallow-merge ``changes`` into the current state and append the result."""
    with project_lock(project_id), transaction(db):
        head = current_entry(db, project_id)
        return append_state(
            db, project_id, {**head.state, **changes}, checkpoint=checkpoint, expected_seq=head.seq
        )


def current_state(db: sqlite3.Connection, project_id: str) -> dict[str, Any]:
    """Return the state of the project's latest entry."""
    return current_entry(db, project_id).state


def current_entry(db: sqlite3.Connection, project_id: str) -> StateEntry:
    head = _get_head(db, project_id)
    if not head:
        raise NoStateFoundError(project_id)
    return get_entry(db, head["head_id"])


def latest_checkpoint(db: sqlite3.Connection, project_id: str) -> StateEntry:
    """Return the latest checkpoint-flagged entry for a project."""
    head = _get_head(db, project_id)
    if not head or not head["checkpoint_id"]:
        raise NoCheckpointFoundError(project_id)
    return get_entry(db, head["checkpoint_id"])


def history(
    db: sqlite3.Connection,
    project_id: str,
    limit: int = 10,
    offset: int = 0,
) -> list[StateEntry]:
    """Latest ``limit`` entries, newest first."""
    if limit < 0 or offset < 0:
        raise ValidationError("limit and offset must not be negative")
    rows = db.execute(
        "SELECT * FROM project_states WHERE project_id = ? ORDER BY seq DESC LIMIT ? OFFSET ?",
        (project_id, limit, offset),
    ).fetchall()
    return [_row_to_entry(r) for r in rows]


def checkpoints(
    db: sqlite3.Connection,
    project_id: str,
    limit: int | None = None,
) -> list[StateEntry]:
    """Checkpoint entries, newest first."""
    if limit is not None and limit < 0:
        raise ValidationError("limit must not be negative")
    query = "SELECT * FROM project_states WHERE project_id = ? AND checkpoint = 1 ORDER BY seq DESC"
    params: list = [project_id]
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_entry(r) for r in rows]


def count_entries(db: sqlite3.Connection, project_id: str) -> int:
    row = db.execute(
        "SELECT COUNT(*) AS n FROM project_states WHERE project_id = ?", (project_id,)
    ).fetchone()
    return row["n"]


def get_entry(db: sqlite3.Connection, entry_id: str) -> StateEntry:
    """Get a single state entry by ID."""
    row = db.execute("SELECT * FROM project_states WHERE id = ?", (entry_id,)).fetchone()
    if not row:
        raise StateEntryNotFoundError(entry_id)
    return _row_to_entry(row)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _get_head(db: sqlite3.Connection, project_id: str) -> sqlite3.Row | None:
    return db.execute(
        "SELECT * FROM state_heads WHERE project_id = ?", (project_id,)
    ).fetchone()


def _next_timestamp(previous: str | None) -> datetime:
    now = datetime.now(timezone.utc)
    if previous is None:
        return now
    last = datetime.fromisoformat(previous)
    if now <= last:
        # Clock did not advance (or went backwards); keep the log strictly ordered.
        return last + timedelta(microseconds=1)
    return now


def _row_to_entry(row: sqlite3.Row) -> StateEntry:
    return StateEntry(
        id=row["id"],
        project_id=row["project_id"],
        seq=row["seq"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        checkpoint=bool(row["checkpoint"]),
        state=json.loads(row["state"]),
    )
