"""Checkpoint capture and resumption after an interruption."""

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core import roles
from delivery_orchestrator.core import scheduler
from delivery_orchestrator.core import state_log
from delivery_orchestrator.core import tasks as tasks_mod
from delivery_orchestrator.core.errors import StateEntryNotFoundError, ValidationError
from delivery_orchestrator.core.locks import project_lock
from delivery_orchestrator.db.engine import transaction
from delivery_orchestrator.db.models import AWAITING_QA_OR_DONE, Role, StateEntry, WorkStatus

logger = logging.getLogger(__name__)


@dataclass
class ResumeInfo:
    role: Role
    state: dict[str, Any]
    next_actions: list[str] = field(default_factory=list)
    checkpoint_id: str | None = None


def save_checkpoint(
    db: sqlite3.Connection,
    project_id: str,
    payload: dict[str, Any] | None = None,
) -> StateEntry:
    """Record the current state plus ``payload`` as a checkpoint entry."""
    with project_lock(project_id), transaction(db):
        projects_mod.get_project(db, project_id)
        head = state_log.current_entry(db, project_id)
        state = {
            **head.state,
            "checkpoint": {
                "timestamp": state_log.utc_now_iso(),
                "data": payload or {},
            },
        }
        entry = state_log.append_state(
            db, project_id, state, checkpoint=True, expected_seq=head.seq
        )
    logger.info("Project %s: checkpoint %s saved", project_id, entry.id)
    return entry


def restore_checkpoint(db: sqlite3.Connection, project_id: str, entry_id: str) -> StateEntry:
    """Make an earlier checkpoint the project's current state again.

    The log is append-only, so the checkpoint's state is appended as a new
    checkpoint entry tagged with ``restoredFrom``. The project's role follows
    the restored ``activeRole``. Entity tables are left untouched.
    """
    with project_lock(project_id), transaction(db):
        projects_mod.get_project(db, project_id)
        source = state_log.get_entry(db, entry_id)
        if source.project_id != project_id:
            raise StateEntryNotFoundError(entry_id)
        if not source.checkpoint:
            raise ValidationError(f"State entry {entry_id} is not a checkpoint")

        role = source.state.get("activeRole")
        if role:
            projects_mod.set_current_role(db, project_id, roles.parse_role(role))

        head = state_log.current_entry(db, project_id)
        state = {
            **source.state,
            "restoredFrom": {
                "id": source.id,
                "seq": source.seq,
                "timestamp": source.timestamp.isoformat(),
            },
        }
        entry = state_log.append_state(
            db, project_id, state, checkpoint=True, expected_seq=head.seq
        )
    logger.info("Project %s: restored checkpoint %s as %s", project_id, source.id, entry.id)
    return entry


def resume_from_checkpoint(db: sqlite3.Connection, project_id: str) -> ResumeInfo:
    """Rebuild what to do next from the latest checkpoint and the project's role.

    Read-only, so calling it repeatedly without other writes gives the same result.
    """
    project = projects_mod.get_project(db, project_id)
    checkpoint = state_log.latest_checkpoint(db, project_id)
    return ResumeInfo(
        role=project.current_role,
        state=checkpoint.state,
        next_actions=next_actions(db, project_id, project.current_role),
        checkpoint_id=checkpoint.id,
    )


def next_actions(db: sqlite3.Connection, project_id: str, role: Role) -> list[str]:
    match role:
        case Role.TRIAGE:
            return ["Complete triage assessment"]
        case Role.PLANNING:
            return ["Continue planning work packages and tasks"]
        case Role.DEVELOPMENT:
            task = scheduler.next_eligible_task(db, project_id)
            if task:
                return [f"Continue development of task {task.task_id}: {task.name}"]
            blocked = scheduler.blocked_tasks(db, project_id)
            if blocked:
                ids = ", ".join(b.task.task_id for b in blocked)
                return [f"Blocked tasks waiting on dependencies: {ids}"]
            all_tasks = tasks_mod.list_tasks(db, project_id=project_id)
            if all(t.status in AWAITING_QA_OR_DONE for t in all_tasks):
                return ["All tasks complete, ready for final QA review"]
            active = ", ".join(t.task_id for t in all_tasks if t.status == WorkStatus.IN_PROGRESS)
            return [f"Finish tasks in progress: {active}"]
        case Role.QA:
            ready = tasks_mod.list_tasks(db, project_id=project_id, status=WorkStatus.READY_FOR_QA)
            if ready:
                return [f"Review {len(ready)} tasks ready for QA"]
            return ["No tasks pending QA, check if all work packages are complete"]
        case Role.ORCHESTRATOR:
            return ["Determine next step in project workflow"]
        case _:
            return ["Determine next step in project workflow"]
