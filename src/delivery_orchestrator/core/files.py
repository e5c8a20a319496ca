"""Registry of files touched by tasks, with their modification history."""

import json
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from delivery_orchestrator.core import state_log
from delivery_orchestrator.db.engine import transaction
from delivery_orchestrator.db.models import FileRecord


def get_file(db: sqlite3.Connection, project_id: str, file_path: str) -> FileRecord | None:
    row = db.execute(
        "SELECT * FROM file_registry WHERE project_id = ? AND file_path = ?",
        (project_id, file_path),
    ).fetchone()
    if not row:
        return None
    return _row_to_file(row)


def ensure_file(
    db: sqlite3.Connection,
    project_id: str,
    file_path: str,
    task_pk: str | None = None,
) -> FileRecord:
    """Return the registry entry for a file, creating an empty one if needed."""
    record = get_file(db, project_id, file_path)
    if record:
        return record
    with transaction(db):
        db.execute(
            """INSERT INTO file_registry (id, project_id, file_path, last_modified_by)
               VALUES (?, ?, ?, ?)""",
            (uuid.uuid4().hex, project_id, file_path, task_pk),
        )
    return get_file(db, project_id, file_path)


def record_change(
    db: sqlite3.Connection,
    project_id: str,
    file_path: str,
    task_pk: str,
    task_id: str,
    changes: Any,
    file_state: Any = None,
) -> FileRecord:
    """Append a modification to a file's history and optionally replace its state."""
    with transaction(db):
        record = ensure_file(db, project_id, file_path, task_pk)
        history = record.modification_history + [{
            "taskId": task_id,
            "timestamp": state_log.utc_now_iso(),
            "changes": changes,
        }]
        current = file_state if file_state is not None else record.current_state
        db.execute(
            """UPDATE file_registry
               SET modification_history = ?, current_state = ?, last_modified_by = ?,
                   updated_at = datetime('now')
               WHERE id = ?""",
            (json.dumps(history), json.dumps(current), task_pk, record.id),
        )
    return get_file(db, project_id, file_path)


def set_file_state(
    db: sqlite3.Connection,
    project_id: str,
    file_path: str,
    file_state: Any,
) -> FileRecord | None:
    """Overwrite the stored state of an already registered file."""
    record = get_file(db, project_id, file_path)
    if not record:
        return None
    with transaction(db):
        db.execute(
            "UPDATE file_registry SET current_state = ?, updated_at = datetime('now') WHERE id = ?",
            (json.dumps(file_state), record.id),
        )
    return get_file(db, project_id, file_path)


def list_files(db: sqlite3.Connection, project_id: str) -> list[FileRecord]:
    rows = db.execute(
        "SELECT * FROM file_registry WHERE project_id = ? ORDER BY file_path", (project_id,)
    ).fetchall()
    return [_row_to_file(r) for r in rows]


def _row_to_file(row: sqlite3.Row) -> FileRecord:
    return FileRecord(
        id=row["id"],
        project_id=row["project_id"],
        file_path=row["file_path"],
        current_state=json.loads(row["current_state"]) if row["current_state"] else {},
        modification_history=json.loads(row["modification_history"] or "[]"),
        last_modified_by=row["last_modified_by"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
