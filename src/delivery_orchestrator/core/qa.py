"""QA phase: reviewing tasks, routing failures to fix tasks, closing work packages."""

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from delivery_orchestrator.core import files as files_mod
from delivery_orchestrator.core import planning
from delivery_orchestrator.core import progress
from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core import roles
from delivery_orchestrator.core import scheduler
from delivery_orchestrator.core import state_log
from delivery_orchestrator.core import tasks as tasks_mod
from delivery_orchestrator.core import work_packages as wp_mod
from delivery_orchestrator.core.development import TaskContext
from delivery_orchestrator.core.errors import InvalidTransitionError
from delivery_orchestrator.core.locks import project_lock
from delivery_orchestrator.db.engine import transaction
from delivery_orchestrator.db.models import ProjectStatus, Role, Task, WorkPackage, WorkStatus

logger = logging.getLogger(__name__)


@dataclass
class ReviewOutcome:
    task: Task
    state: dict[str, Any]
    fix_task: Task | None = None


@dataclass
class WorkPackageReview:
    """Result of closing out a work package: INCOMPLETE, COMPLETED or PROJECT_COMPLETED."""

    status: str
    message: str
    work_package: WorkPackage
    incomplete_tasks: list[str] = field(default_factory=list)


def start_review(db: sqlite3.Connection, task_pk: str) -> TaskContext:
    """Move a READY_FOR_QA task into QA and return its review context."""
    task = tasks_mod.get_task(db, task_pk)
    with project_lock(task.project_id), transaction(db):
        task = tasks_mod.get_task(db, task_pk)
        if task.status != WorkStatus.READY_FOR_QA:
            raise InvalidTransitionError(
                f"Task must be READY_FOR_QA to review. Current status: {task.status.value}"
            )
        task = tasks_mod.set_status(db, task_pk, WorkStatus.QA_IN_PROGRESS)
        wp_mod.advance_status(db, task.work_package_id, WorkStatus.QA_IN_PROGRESS)
        state_log.update_state(
            db,
            task.project_id,
            {
                "activeQA": {
                    "id": task.id,
                    "taskId": task.task_id,
                    "name": task.name,
                    "filePath": task.file_path,
                },
            },
        )

    record = files_mod.get_file(db, task.project_id, task.file_path) if task.file_path else None
    return TaskContext(
        task=task,
        work_package=wp_mod.get_work_package(db, task.work_package_id),
        file_state=record.current_state if record else {},
        file_history=record.modification_history if record else [],
    )


def complete_review(
    db: sqlite3.Connection,
    task_pk: str,
    qa_results: dict[str, Any],
) -> ReviewOutcome:
    """Record the QA verdict for a task under review.

    A pass completes the task. A failure marks it FAILED and, when fixes are
    listed, plans a fix task that depends on it and outranks it by one, which
    reopens the work package. A failure without fixes marks the package FAILED.
    Once no task is waiting for QA, the project moves to ORCHESTRATOR if
    everything is complete, otherwise back to DEVELOPMENT.
    """
    task = tasks_mod.get_task(db, task_pk)
    project_id = task.project_id
    fix_task = None
    with project_lock(project_id), transaction(db):
        task = tasks_mod.get_task(db, task_pk)
        if task.status != WorkStatus.QA_IN_PROGRESS:
            raise InvalidTransitionError(
                f"Task must be QA_IN_PROGRESS to complete review. Current status: {task.status.value}"
            )

        if qa_results.get("passed"):
            task = tasks_mod.set_status(db, task_pk, WorkStatus.COMPLETED, qa_results=qa_results)
            progress.recompute_work_package(db, task.work_package_id)
            progress.mark_ready_for_qa(db, task.work_package_id)
        else:
            task = tasks_mod.set_status(db, task_pk, WorkStatus.FAILED, qa_results=qa_results)
            fixes = qa_results.get("requiredFixes") or []
            if fixes:
                fix_task = _plan_fix(
                    db,
                    task,
                    name=f"Fix issues in {task.name}",
                    description="Fix the following issues:\n" + "\n".join(fixes),
                    success_criteria=qa_results.get("successCriteria") or task.success_criteria,
                )
            else:
                wp_mod.advance_status(db, task.work_package_id, WorkStatus.FAILED)

        pending = tasks_mod.list_tasks(db, project_id=project_id, status=WorkStatus.READY_FOR_QA)
        entry = state_log.update_state(
            db,
            project_id,
            {
                "activeQA": None,
                "pendingQA": [
                    {"id": t.id, "taskId": t.task_id, "name": t.name} for t in pending
                ],
            },
        )
        state = entry.state

        if not pending:
            state = _route_after_qa(db, project_id)

    return ReviewOutcome(task=task, state=state, fix_task=fix_task)


def tasks_ready_for_qa(db: sqlite3.Connection, project_id: str) -> list[Task]:
    """Tasks waiting for review, oldest first."""
    tasks = tasks_mod.list_tasks(db, project_id=project_id, status=WorkStatus.READY_FOR_QA)
    return sorted(tasks, key=lambda t: t.created_at)


def create_fix_task(
    db: sqlite3.Connection,
    task_pk: str,
    name: str | None = None,
    description: str | None = None,
    success_criteria: str | None = None,
) -> Task:
    """Plan a fix task for a task that failed QA."""
    task = tasks_mod.get_task(db, task_pk)
    with project_lock(task.project_id), transaction(db):
        task = tasks_mod.get_task(db, task_pk)
        if task.status != WorkStatus.FAILED:
            raise InvalidTransitionError("Can only create fix tasks for failed tasks")
        return _plan_fix(
            db,
            task,
            name=name or f"Fix issues in {task.name}",
            description=description or "Fix issues identified during QA",
            success_criteria=success_criteria or "All issues from failed QA are resolved",
        )


def review_work_package(db: sqlite3.Connection, work_package_id: str) -> WorkPackageReview:
    """Close a work package whose tasks are all complete."""
    wp = wp_mod.get_work_package(db, work_package_id)
    project_id = wp.project_id
    with project_lock(project_id), transaction(db):
        tasks = tasks_mod.list_tasks(db, work_package_id=work_package_id)
        incomplete = [t.task_id for t in tasks if t.status != WorkStatus.COMPLETED]
        if incomplete:
            return WorkPackageReview(
                status="INCOMPLETE",
                message=(
                    f"Cannot review work package: {len(incomplete)} tasks are not completed yet"
                ),
                work_package=wp,
                incomplete_tasks=incomplete,
            )

        wp = progress.recompute_work_package(db, work_package_id)
        completed_wps = state_log.current_state(db, project_id).get("completedWorkPackages") or []
        if all(c.get("wpId") != wp.wp_id for c in completed_wps):
            state_log.update_state(
                db,
                project_id,
                {
                    "completedWorkPackages": completed_wps + [
                        {"id": wp.id, "wpId": wp.wp_id, "name": wp.name},
                    ],
                },
            )

        all_wps = wp_mod.list_work_packages(db, project_id)
        if all(w.status == WorkStatus.COMPLETED for w in all_wps):
            projects_mod.set_project_status(db, project_id, ProjectStatus.COMPLETED)
            logger.info("Project %s: all work packages complete", project_id)
            return WorkPackageReview(
                status="PROJECT_COMPLETED",
                message="All work packages are complete. Project finished successfully.",
                work_package=wp,
            )

    return WorkPackageReview(
        status="COMPLETED",
        message=f"Work package {wp.wp_id} completed successfully",
        work_package=wp,
    )


def _plan_fix(
    db: sqlite3.Connection,
    task: Task,
    name: str,
    description: str,
    success_criteria: str | None,
) -> Task:
    fix = planning.create_task(
        db,
        task.work_package_id,
        name,
        file_path=task.file_path,
        description=description,
        priority=task.priority - 1,
        dependencies=[task.task_id],
        success_criteria=success_criteria,
    )
    wp_mod.advance_status(db, task.work_package_id, WorkStatus.IN_PROGRESS)
    logger.info("Task %s failed QA; planned fix task %s", task.task_id, fix.task_id)
    return fix


def _route_after_qa(db: sqlite3.Connection, project_id: str) -> dict[str, Any]:
    all_tasks = tasks_mod.list_tasks(db, project_id=project_id)
    if all(t.status == WorkStatus.COMPLETED for t in all_tasks):
        projects_mod.set_project_status(db, project_id, ProjectStatus.COMPLETED)
        return roles.transition_role(
            db,
            project_id,
            Role.ORCHESTRATOR,
            {"message": "Project completed successfully", "finalStatus": "COMPLETED"},
        )

    next_task = scheduler.next_eligible_task(db, project_id)
    return roles.transition_role(
        db,
        project_id,
        Role.DEVELOPMENT,
        {
            "message": "QA complete for current tasks, continuing development",
            "nextTask": next_task.task_id if next_task else None,
        },
    )
