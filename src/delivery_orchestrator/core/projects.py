"""Project management operations."""

import json
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from delivery_orchestrator.core.errors import ProjectNotFoundError, ValidationError
from delivery_orchestrator.db.engine import transaction
from delivery_orchestrator.db.models import Project, ProjectStatus, Role


def create_project(
    db: sqlite3.Connection,
    name: str,
    description: str = "",
    objectives: str = "",
    project_id: str | None = None,
) -> Project:
    """Create a new project in PLANNING status with the TRIAGE role active."""
    if not name:
        raise ValidationError("Project name is required")
    project_id = project_id or uuid.uuid4().hex
    with transaction(db):
        db.execute(
            """INSERT INTO projects (id, name, description, objectives, status, current_role)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                project_id,
                name,
                description,
                objectives,
                ProjectStatus.PLANNING.value,
                Role.TRIAGE.value,
            ),
        )
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        raise ProjectNotFoundError(project_id)
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection, status: ProjectStatus | None = None) -> list[Project]:
    """List all projects, newest first."""
    query = "SELECT * FROM projects"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(ProjectStatus(status).value)
    query += " ORDER BY created_at DESC, rowid DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(
    db: sqlite3.Connection,
    project_id: str,
    **kwargs,
) -> Project:
    """Update descriptive project fields."""
    allowed = {"name", "description", "objectives"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if not updates:
        return get_project(db, project_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [project_id]
    with transaction(db):
        cur = db.execute(
            f"UPDATE projects SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
            values,
        )
        if cur.rowcount == 0:
            raise ProjectNotFoundError(project_id)
    return get_project(db, project_id)


def set_project_status(
    db: sqlite3.Connection,
    project_id: str,
    status: ProjectStatus,
) -> Project:
    status = ProjectStatus(status)
    with transaction(db):
        cur = db.execute(
            "UPDATE projects SET status = ?, updated_at = datetime('now') WHERE id = ?",
            (status.value, project_id),
        )
        if cur.rowcount == 0:
            raise ProjectNotFoundError(project_id)
    return get_project(db, project_id)


def set_current_role(db: sqlite3.Connection, project_id: str, role: Role) -> Project:
    """Write the project's role column. Used by role transitions and checkpoint restores."""
    with transaction(db):
        cur = db.execute(
            "UPDATE projects SET current_role = ?, updated_at = datetime('now') WHERE id = ?",
            (Role(role).value, project_id),
        )
        if cur.rowcount == 0:
            raise ProjectNotFoundError(project_id)
    return get_project(db, project_id)


def merge_knowledge(
    db: sqlite3.Connection,
    project_id: str,
    updates: dict[str, Any],
) -> Project:
    """Merge keys into the project's knowledge base. Existing keys not named are kept."""
    with transaction(db):
        project = get_project(db, project_id)
        knowledge = {**project.knowledge_base, **updates}
        db.execute(
            "UPDATE projects SET knowledge_base = ?, updated_at = datetime('now') WHERE id = ?",
            (json.dumps(knowledge), project_id),
        )
    return get_project(db, project_id)


def next_wp_number(db: sqlite3.Connection, project_id: str) -> int:
    """Reserve the next work package sequence number for a project."""
    with transaction(db):
        cur = db.execute(
            "UPDATE projects SET wp_counter = wp_counter + 1 WHERE id = ?", (project_id,)
        )
        if cur.rowcount == 0:
            raise ProjectNotFoundError(project_id)
        row = db.execute("SELECT wp_counter FROM projects WHERE id = ?", (project_id,)).fetchone()
    return row["wp_counter"]


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        objectives=row["objectives"] or "",
        status=ProjectStatus(row["status"]),
        current_role=Role(row["current_role"]),
        knowledge_base=json.loads(row["knowledge_base"] or "{}"),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
