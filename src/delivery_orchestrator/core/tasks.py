"""Task storage operations."""

import json
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from delivery_orchestrator.core import work_packages as wp_mod
from delivery_orchestrator.core.dependencies import find_dependency_cycle
from delivery_orchestrator.core.errors import (
    DependencyCycleError,
    InvalidTransitionError,
    TaskNotFoundError,
    ValidationError,
)
from delivery_orchestrator.db.engine import transaction
from delivery_orchestrator.db.models import Task, WorkStatus

logger = logging.getLogger(__name__)

TASK_TRANSITIONS: dict[WorkStatus, frozenset[WorkStatus]] = {
    WorkStatus.PLANNED: frozenset({WorkStatus.IN_PROGRESS}),
    WorkStatus.IN_PROGRESS: frozenset({
        WorkStatus.READY_FOR_QA,
        WorkStatus.FAILED,
        WorkStatus.PLANNED,
    }),
    WorkStatus.READY_FOR_QA: frozenset({WorkStatus.QA_IN_PROGRESS, WorkStatus.IN_PROGRESS}),
    WorkStatus.QA_IN_PROGRESS: frozenset({WorkStatus.COMPLETED, WorkStatus.FAILED}),
    WorkStatus.FAILED: frozenset({WorkStatus.IN_PROGRESS, WorkStatus.PLANNED}),
    WorkStatus.COMPLETED: frozenset(),
}

_JSON_FIELDS = {"changes", "qa_results"}


def format_task_id(wp_id: str, number: int) -> str:
    return f"{wp_id}-{number:02d}"


def create_task(
    db: sqlite3.Connection,
    work_package_id: str,
    name: str,
    file_path: str | None = None,
    description: str = "",
    priority: int = 1,
    dependencies: list[str] | None = None,
    success_criteria: str | None = None,
) -> Task:
    """Create a task with the work package's next ``<wpId>-NN`` key."""
    if not name:
        raise ValidationError("Task name is required")
    deps = _dedupe(dependencies or [])
    with transaction(db):
        wp = wp_mod.get_work_package(db, work_package_id)
        task_id = format_task_id(wp.wp_id, wp_mod.next_task_number(db, work_package_id))
        _check_no_cycle(db, wp.project_id, task_id, deps)
        pk = uuid.uuid4().hex
        db.execute(
            """INSERT INTO tasks (id, task_id, work_package_id, project_id, name, description,
                                  file_path, success_criteria, status, dependencies, priority)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                pk,
                task_id,
                work_package_id,
                wp.project_id,
                name,
                description,
                file_path,
                success_criteria,
                WorkStatus.PLANNED.value,
                json.dumps(deps),
                priority,
            ),
        )
    return get_task(db, pk)


def get_task(db: sqlite3.Connection, task_pk: str) -> Task:
    """Get a task by its generated ID."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_pk,)).fetchone()
    if not row:
        raise TaskNotFoundError(task_pk)
    return _row_to_task(row)


def get_by_task_id(db: sqlite3.Connection, project_id: str, task_id: str) -> Task:
    """Get a task by its human-readable key within a project."""
    row = db.execute(
        "SELECT * FROM tasks WHERE project_id = ? AND task_id = ?", (project_id, task_id)
    ).fetchone()
    if not row:
        raise TaskNotFoundError(task_id)
    return _row_to_task(row)


def resolve_task(db: sqlite3.Connection, ref: str, project_id: str | None = None) -> Task:
    """Find a task by generated ID, or by its key when ``project_id`` is given."""
    if project_id:
        try:
            return get_by_task_id(db, project_id, ref)
        except TaskNotFoundError:
            pass
    return get_task(db, ref)


def list_tasks(
    db: sqlite3.Connection,
    work_package_id: str | None = None,
    project_id: str | None = None,
    status: WorkStatus | list[WorkStatus] | None = None,
) -> list[Task]:
    """List tasks by priority, then creation order."""
    query = "SELECT * FROM tasks WHERE 1 = 1"
    params: list = []

    if work_package_id is not None:
        query += " AND work_package_id = ?"
        params.append(work_package_id)

    if project_id is not None:
        query += " AND project_id = ?"
        params.append(project_id)

    if status:
        statuses = [status] if isinstance(status, (str, WorkStatus)) else list(status)
        query += f" AND status IN ({', '.join('?' for _ in statuses)})"
        params.extend(WorkStatus(s).value for s in statuses)

    query += " ORDER BY priority ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def lookup_table(db: sqlite3.Connection, project_id: str) -> dict[str, Task]:
    """Map every task key in a project to its task."""
    return {t.task_id: t for t in list_tasks(db, project_id=project_id)}


def update_task(
    db: sqlite3.Connection,
    task_pk: str,
    **kwargs,
) -> Task:
    """Update editable task fields. Use set_status for status changes."""
    allowed = {"name", "description", "file_path", "priority", "success_criteria", "changes", "qa_results"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if not updates:
        return get_task(db, task_pk)
    for key in _JSON_FIELDS & updates.keys():
        updates[key] = json.dumps(updates[key])

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [task_pk]
    with transaction(db):
        cur = db.execute(
            f"UPDATE tasks SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
            values,
        )
        if cur.rowcount == 0:
            raise TaskNotFoundError(task_pk)
    return get_task(db, task_pk)


def set_status(
    db: sqlite3.Connection,
    task_pk: str,
    status: WorkStatus,
    qa_results: dict[str, Any] | None = None,
) -> Task:
    """Move a task to ``status`` if TASK_TRANSITIONS allows it.

    Dependency checks are not done here; starting a task goes through
    ``development.start_task``.
    """
    status = WorkStatus(status)
    with transaction(db):
        task = get_task(db, task_pk)
        if status not in TASK_TRANSITIONS[task.status]:
            raise InvalidTransitionError(
                f"Task {task.task_id} cannot move from {task.status.value} to {status.value}"
            )
        if qa_results is not None:
            db.execute(
                """UPDATE tasks SET status = ?, qa_results = ?, updated_at = datetime('now')
                   WHERE id = ?""",
                (status.value, json.dumps(qa_results), task_pk),
            )
        else:
            db.execute(
                "UPDATE tasks SET status = ?, updated_at = datetime('now') WHERE id = ?",
                (status.value, task_pk),
            )
    logger.info("Task %s: %s -> %s", task.task_id, task.status.value, status.value)
    return get_task(db, task_pk)


def set_dependencies(
    db: sqlite3.Connection,
    task_pk: str,
    dependencies: list[str],
) -> Task:
    """Replace a task's dependency list, rejecting cycles."""
    deps = _dedupe(dependencies)
    with transaction(db):
        task = get_task(db, task_pk)
        _check_no_cycle(db, task.project_id, task.task_id, deps)
        db.execute(
            "UPDATE tasks SET dependencies = ?, updated_at = datetime('now') WHERE id = ?",
            (json.dumps(deps), task_pk),
        )
    return get_task(db, task_pk)


def _check_no_cycle(
    db: sqlite3.Connection,
    project_id: str,
    task_id: str,
    dependencies: list[str],
) -> None:
    if task_id in dependencies:
        raise DependencyCycleError([task_id, task_id])
    graph = {key: t.dependencies for key, t in lookup_table(db, project_id).items()}
    graph[task_id] = dependencies
    cycle = find_dependency_cycle(graph, task_id)
    if cycle:
        raise DependencyCycleError(cycle)


def _dedupe(keys: list[str]) -> list[str]:
    return list(dict.fromkeys(k.strip() for k in keys if k and k.strip()))


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        task_id=row["task_id"],
        work_package_id=row["work_package_id"],
        project_id=row["project_id"],
        name=row["name"],
        description=row["description"] or "",
        file_path=row["file_path"],
        changes=json.loads(row["changes"]) if row["changes"] else None,
        success_criteria=row["success_criteria"],
        qa_results=json.loads(row["qa_results"]) if row["qa_results"] else None,
        status=WorkStatus(row["status"]),
        dependencies=json.loads(row["dependencies"] or "[]"),
        priority=row["priority"] if row["priority"] is not None else 1,
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
