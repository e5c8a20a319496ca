"""Work package storage operations."""

import json
import sqlite3
import uuid
from datetime import datetime

from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core.dependencies import find_dependency_cycle
from delivery_orchestrator.core.errors import (
    DependencyCycleError,
    InvalidTransitionError,
    ValidationError,
    WorkPackageNotFoundError,
)
from delivery_orchestrator.db.engine import transaction
from delivery_orchestrator.db.models import WorkPackage, WorkStatus

# Explicit status changes made by the phase services. COMPLETED and
# IN_PROGRESS are also derived from task counts by progress recomputation.
EXPLICIT_TRANSITIONS: dict[WorkStatus, frozenset[WorkStatus]] = {
    WorkStatus.PLANNED: frozenset({WorkStatus.IN_PROGRESS, WorkStatus.FAILED}),
    WorkStatus.IN_PROGRESS: frozenset({WorkStatus.READY_FOR_QA, WorkStatus.FAILED}),
    WorkStatus.READY_FOR_QA: frozenset({WorkStatus.QA_IN_PROGRESS, WorkStatus.IN_PROGRESS}),
    WorkStatus.QA_IN_PROGRESS: frozenset({WorkStatus.FAILED, WorkStatus.IN_PROGRESS}),
    WorkStatus.FAILED: frozenset({WorkStatus.IN_PROGRESS, WorkStatus.PLANNED}),
    WorkStatus.COMPLETED: frozenset(),
}


def format_wp_id(number: int) -> str:
    return f"WP{number:03d}"


def create_work_package(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    description: str = "",
    priority: int = 1,
    dependencies: list[str] | None = None,
) -> WorkPackage:
    """Create a work package with the project's next WPnnn key."""
    if not name:
        raise ValidationError("Work package name is required")
    with transaction(db):
        wp_id = format_wp_id(projects_mod.next_wp_number(db, project_id))
        _check_no_cycle(db, project_id, wp_id, list(dependencies or []))
        pk = uuid.uuid4().hex
        db.execute(
            """INSERT INTO work_packages (id, wp_id, project_id, name, description, priority,
                                          status, dependencies)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                pk,
                wp_id,
                project_id,
                name,
                description,
                priority,
                WorkStatus.PLANNED.value,
                json.dumps(list(dependencies or [])),
            ),
        )
    return get_work_package(db, pk)


def get_work_package(db: sqlite3.Connection, work_package_id: str) -> WorkPackage:
    row = db.execute(
        "SELECT * FROM work_packages WHERE id = ?", (work_package_id,)
    ).fetchone()
    if not row:
        raise WorkPackageNotFoundError(work_package_id)
    return _row_to_work_package(row)


def get_by_wp_id(db: sqlite3.Connection, project_id: str, wp_id: str) -> WorkPackage:
    row = db.execute(
        "SELECT * FROM work_packages WHERE project_id = ? AND wp_id = ?",
        (project_id, wp_id),
    ).fetchone()
    if not row:
        raise WorkPackageNotFoundError(wp_id)
    return _row_to_work_package(row)


def resolve_work_package(
    db: sqlite3.Connection,
    ref: str,
    project_id: str | None = None,
) -> WorkPackage:
    """Find a work package by generated ID, or by its WPnnn key when ``project_id`` is given."""
    if project_id:
        try:
            return get_by_wp_id(db, project_id, ref)
        except WorkPackageNotFoundError:
            pass
    return get_work_package(db, ref)


def list_work_packages(
    db: sqlite3.Connection,
    project_id: str,
    status: WorkStatus | None = None,
    exclude_status: WorkStatus | None = None,
) -> list[WorkPackage]:
    """List a project's work packages by priority, then creation order."""
    query = "SELECT * FROM work_packages WHERE project_id = ?"
    params: list = [project_id]

    if status:
        query += " AND status = ?"
        params.append(WorkStatus(status).value)

    if exclude_status:
        query += " AND status != ?"
        params.append(WorkStatus(exclude_status).value)

    query += " ORDER BY priority ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_work_package(r) for r in rows]


def update_work_package(
    db: sqlite3.Connection,
    work_package_id: str,
    **kwargs,
) -> WorkPackage:
    """Update editable fields. Status and progress are not editable here."""
    allowed = {"name", "description", "priority", "dependencies"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if not updates:
        return get_work_package(db, work_package_id)
    if "dependencies" in updates:
        wp = get_work_package(db, work_package_id)
        _check_no_cycle(db, wp.project_id, wp.wp_id, list(updates["dependencies"]))
        updates["dependencies"] = json.dumps(list(updates["dependencies"]))

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [work_package_id]
    with transaction(db):
        cur = db.execute(
            f"UPDATE work_packages SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
            values,
        )
        if cur.rowcount == 0:
            raise WorkPackageNotFoundError(work_package_id)
    return get_work_package(db, work_package_id)


def transition_status(
    db: sqlite3.Connection,
    work_package_id: str,
    status: WorkStatus,
) -> WorkPackage:
    """Apply an explicit status change, validated against EXPLICIT_TRANSITIONS."""
    status = WorkStatus(status)
    with transaction(db):
        wp = get_work_package(db, work_package_id)
        if status == wp.status:
            return wp
        if status not in EXPLICIT_TRANSITIONS[wp.status]:
            raise InvalidTransitionError(
                f"Work package {wp.wp_id} cannot move from {wp.status.value} to {status.value}"
            )
        write_derived(db, work_package_id, wp.progress, status)
    return get_work_package(db, work_package_id)


def advance_status(
    db: sqlite3.Connection,
    work_package_id: str,
    status: WorkStatus,
) -> WorkPackage:
    """Move to ``status`` when the current status allows it, else leave it as is."""
    with transaction(db):
        wp = get_work_package(db, work_package_id)
        if status in EXPLICIT_TRANSITIONS[wp.status]:
            return transition_status(db, work_package_id, status)
    return wp


def write_derived(
    db: sqlite3.Connection,
    work_package_id: str,
    progress: float,
    status: WorkStatus,
) -> None:
    """Persist progress and status. Callers own the derivation rules."""
    with transaction(db):
        cur = db.execute(
            """UPDATE work_packages SET progress = ?, status = ?, updated_at = datetime('now')
               WHERE id = ?""",
            (progress, WorkStatus(status).value, work_package_id),
        )
        if cur.rowcount == 0:
            raise WorkPackageNotFoundError(work_package_id)


def next_task_number(db: sqlite3.Connection, work_package_id: str) -> int:
    """Reserve the next task sequence number within a work package."""
    with transaction(db):
        cur = db.execute(
            "UPDATE work_packages SET task_counter = task_counter + 1 WHERE id = ?",
            (work_package_id,),
        )
        if cur.rowcount == 0:
            raise WorkPackageNotFoundError(work_package_id)
        row = db.execute(
            "SELECT task_counter FROM work_packages WHERE id = ?", (work_package_id,)
        ).fetchone()
    return row["task_counter"]


def _check_no_cycle(
    db: sqlite3.Connection,
    project_id: str,
    wp_id: str,
    dependencies: list[str],
) -> None:
    graph = {wp.wp_id: wp.dependencies for wp in list_work_packages(db, project_id)}
    graph[wp_id] = dependencies
    cycle = find_dependency_cycle(graph, wp_id)
    if cycle:
        raise DependencyCycleError(cycle)


def _row_to_work_package(row: sqlite3.Row) -> WorkPackage:
    return WorkPackage(
        id=row["id"],
        wp_id=row["wp_id"],
        project_id=row["project_id"],
        name=row["name"],
        description=row["description"] or "",
        priority=row["priority"] if row["priority"] is not None else 1,
        status=WorkStatus(row["status"]),
        progress=row["progress"] or 0.0,
        dependencies=json.loads(row["dependencies"] or "[]"),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
