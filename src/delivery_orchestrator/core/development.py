"""Development phase: starting, completing, and resuming tasks."""

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from delivery_orchestrator.core import files as files_mod
from delivery_orchestrator.core import progress
from delivery_orchestrator.core import roles
from delivery_orchestrator.core import scheduler
from delivery_orchestrator.core import state_log
from delivery_orchestrator.core import tasks as tasks_mod
from delivery_orchestrator.core import work_packages as wp_mod
from delivery_orchestrator.core.checkpoints import save_checkpoint
from delivery_orchestrator.core.dependencies import unsatisfied
from delivery_orchestrator.core.errors import InvalidTransitionError, UnsatisfiedDependencyError
from delivery_orchestrator.core.locks import project_lock
from delivery_orchestrator.db.engine import transaction
from delivery_orchestrator.db.models import (
    STARTABLE,
    Role,
    StateEntry,
    Task,
    WorkPackage,
    WorkStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class TaskUpdate:
    task: Task
    state: dict[str, Any]


@dataclass
class TaskContext:
    """Everything needed to pick a task back up after an interruption."""

    task: Task
    work_package: WorkPackage
    file_state: Any = None
    file_history: list[dict[str, Any]] = field(default_factory=list)
    implementation_context: dict[str, Any] = field(default_factory=dict)


def start_task(db: sqlite3.Connection, task_pk: str) -> TaskUpdate:
    """Move a PLANNED or FAILED task to IN_PROGRESS once its dependencies are done."""
    task = tasks_mod.get_task(db, task_pk)
    with project_lock(task.project_id), transaction(db):
        task = tasks_mod.get_task(db, task_pk)
        if task.status not in STARTABLE:
            raise InvalidTransitionError(f"Task is already in {task.status.value} state")

        statuses = {key: t.status for key, t in tasks_mod.lookup_table(db, task.project_id).items()}
        incomplete = unsatisfied(task.dependencies, statuses, WorkStatus.COMPLETED)
        if incomplete:
            raise UnsatisfiedDependencyError(task.task_id, incomplete)

        task = tasks_mod.set_status(db, task_pk, WorkStatus.IN_PROGRESS)
        wp_mod.advance_status(db, task.work_package_id, WorkStatus.IN_PROGRESS)

        if task.file_path:
            files_mod.ensure_file(db, task.project_id, task.file_path, task.id)

        entry = state_log.update_state(
            db,
            task.project_id,
            {
                "activeTask": {
                    "id": task.id,
                    "taskId": task.task_id,
                    "name": task.name,
                    "filePath": task.file_path,
                },
            },
        )
    return TaskUpdate(task=task, state=entry.state)


def complete_task(
    db: sqlite3.Connection,
    task_pk: str,
    implementation: dict[str, Any] | None = None,
) -> TaskUpdate:
    """Record the implementation and mark the task READY_FOR_QA.

    The first task to become ready for QA hands the project to the QA role.
    """
    implementation = implementation or {}
    task = tasks_mod.get_task(db, task_pk)
    project_id = task.project_id
    with project_lock(project_id), transaction(db):
        task = tasks_mod.get_task(db, task_pk)
        if task.status != WorkStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Task must be IN_PROGRESS to complete. Current status: {task.status.value}"
            )

        if implementation.get("changes") is not None:
            tasks_mod.update_task(db, task_pk, changes=implementation["changes"])
        task = tasks_mod.set_status(db, task_pk, WorkStatus.READY_FOR_QA)
        progress.mark_ready_for_qa(db, task.work_package_id)

        if task.file_path and files_mod.get_file(db, project_id, task.file_path):
            files_mod.record_change(
                db,
                project_id,
                task.file_path,
                task.id,
                task.task_id,
                implementation.get("changes"),
                implementation.get("fileState"),
            )

        pending = tasks_mod.list_tasks(db, project_id=project_id, status=WorkStatus.READY_FOR_QA)
        entry = state_log.update_state(
            db,
            project_id,
            {
                "activeTask": None,
                "pendingQA": [_task_ref(t) for t in pending],
            },
        )

        if len(pending) == 1:
            state = roles.transition_role(
                db,
                project_id,
                Role.QA,
                {
                    "message": "Task ready for QA review",
                    "pendingQA": [t.task_id for t in pending],
                },
            )
            return TaskUpdate(task=task, state=state)
    return TaskUpdate(task=task, state=entry.state)


def update_task_status(
    db: sqlite3.Connection,
    task_pk: str,
    status: WorkStatus,
    qa_results: dict[str, Any] | None = None,
) -> TaskUpdate:
    """Generic status change for callers outside the phase-specific paths.

    Starting a task is routed through start_task so dependencies are checked.
    """
    status = WorkStatus(status)
    if status == WorkStatus.IN_PROGRESS:
        task = tasks_mod.get_task(db, task_pk)
        if task.status in STARTABLE:
            return start_task(db, task_pk)

    task = tasks_mod.get_task(db, task_pk)
    with project_lock(task.project_id), transaction(db):
        task = tasks_mod.set_status(db, task_pk, status, qa_results=qa_results)
        progress.recompute_work_package(db, task.work_package_id)
        progress.mark_ready_for_qa(db, task.work_package_id)
        entry = state_log.update_state(
            db,
            task.project_id,
            {
                "lastTaskUpdate": {
                    "taskId": task.task_id,
                    "status": status.value,
                    "timestamp": state_log.utc_now_iso(),
                },
            },
        )
    return TaskUpdate(task=task, state=entry.state)


def get_next_task(db: sqlite3.Connection, project_id: str) -> scheduler.NextTaskReport:
    return scheduler.next_task(db, project_id)


def save_implementation_checkpoint(
    db: sqlite3.Connection,
    task_pk: str,
    checkpoint_data: dict[str, Any],
) -> StateEntry:
    """Checkpoint in-flight work on an IN_PROGRESS task."""
    task = tasks_mod.get_task(db, task_pk)
    with project_lock(task.project_id), transaction(db):
        task = tasks_mod.get_task(db, task_pk)
        if task.status != WorkStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Task must be IN_PROGRESS to save checkpoint. Current status: {task.status.value}"
            )
        if checkpoint_data.get("fileState") is not None and task.file_path:
            files_mod.set_file_state(db, task.project_id, task.file_path, checkpoint_data["fileState"])
        return save_checkpoint(
            db,
            task.project_id,
            {"taskId": task.task_id, "implementationState": checkpoint_data},
        )


def resume_task(db: sqlite3.Connection, task_pk: str) -> TaskContext:
    """Collect file state and the task's own checkpoint context, if the latest checkpoint is its."""
    task = tasks_mod.get_task(db, task_pk)
    wp = wp_mod.get_work_package(db, task.work_package_id)
    record = files_mod.get_file(db, task.project_id, task.file_path) if task.file_path else None

    implementation_context: dict[str, Any] = {}
    checkpoint = state_log.checkpoints(db, task.project_id, limit=1)
    if checkpoint:
        data = (checkpoint[0].state.get("checkpoint") or {}).get("data") or {}
        if data.get("taskId") == task.task_id:
            implementation_context = data.get("implementationState") or {}

    return TaskContext(
        task=task,
        work_package=wp,
        file_state=record.current_state if record else {},
        file_history=record.modification_history if record else [],
        implementation_context=implementation_context,
    )


def _task_ref(task: Task) -> dict[str, str]:
    return {"id": task.id, "taskId": task.task_id, "name": task.name}
