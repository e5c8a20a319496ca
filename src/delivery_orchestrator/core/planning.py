"""Planning phase: work packages, tasks, and the hand-off to development."""

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from delivery_orchestrator.core import progress
from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core import roles
from delivery_orchestrator.core import state_log
from delivery_orchestrator.core import tasks as tasks_mod
from delivery_orchestrator.core import work_packages as wp_mod
from delivery_orchestrator.core.errors import InvalidTransitionError, ValidationError
from delivery_orchestrator.core.locks import project_lock
from delivery_orchestrator.db.engine import transaction
from delivery_orchestrator.db.models import (
    Project,
    ProjectStatus,
    Role,
    Task,
    WorkPackage,
    WorkStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class PlannedWorkPackage:
    work_package: WorkPackage
    tasks: list[Task] = field(default_factory=list)


@dataclass
class DevelopmentPlan:
    project: Project
    work_packages: list[PlannedWorkPackage] = field(default_factory=list)


def create_work_package(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    description: str = "",
    priority: int = 1,
    dependencies: list[str] | None = None,
) -> WorkPackage:
    """Create a work package and list it in the project state."""
    with project_lock(project_id), transaction(db):
        projects_mod.get_project(db, project_id)
        wp = wp_mod.create_work_package(db, project_id, name, description, priority, dependencies)
        state = state_log.current_state(db, project_id)
        state_log.update_state(
            db,
            project_id,
            {
                "workPackages": (state.get("workPackages") or []) + [{
                    "id": wp.id,
                    "wpId": wp.wp_id,
                    "name": wp.name,
                    "status": wp.status.value,
                }],
            },
        )
    logger.info("Project %s: created work package %s", project_id, wp.wp_id)
    return wp


def create_task(
    db: sqlite3.Connection,
    work_package_id: str,
    name: str,
    file_path: str | None,
    description: str = "",
    priority: int = 1,
    dependencies: list[str] | None = None,
    success_criteria: str | None = None,
) -> Task:
    """Create a task and list it in the project state."""
    if not file_path:
        raise ValidationError("Task file path is required")
    project_id = wp_mod.get_work_package(db, work_package_id).project_id
    with project_lock(project_id), transaction(db):
        task = tasks_mod.create_task(
            db,
            work_package_id,
            name,
            file_path=file_path,
            description=description,
            priority=priority,
            dependencies=dependencies,
            success_criteria=success_criteria,
        )
        # A new task lowers the completion ratio of a partly done package.
        progress.recompute_work_package(db, work_package_id)
        state = state_log.current_state(db, project_id)
        state_log.update_state(
            db,
            project_id,
            {
                "tasks": (state.get("tasks") or []) + [{
                    "id": task.id,
                    "taskId": task.task_id,
                    "name": task.name,
                    "status": task.status.value,
                    "filePath": task.file_path,
                    "workPackageId": work_package_id,
                }],
            },
        )
    logger.info("Project %s: created task %s", project_id, task.task_id)
    return task


def update_task_dependencies(
    db: sqlite3.Connection,
    task_pk: str,
    dependencies: list[str],
) -> Task:
    return tasks_mod.set_dependencies(db, task_pk, dependencies)


def update_work_package(db: sqlite3.Connection, work_package_id: str, **updates) -> WorkPackage:
    return wp_mod.update_work_package(db, work_package_id, **updates)


def update_task(db: sqlite3.Connection, task_pk: str, **updates) -> Task:
    """Update task fields; a ``dependencies`` key is routed through the cycle check."""
    dependencies = updates.pop("dependencies", None)
    with transaction(db):
        if dependencies is not None:
            tasks_mod.set_dependencies(db, task_pk, dependencies)
        return tasks_mod.update_task(db, task_pk, **updates)


def complete_planning(db: sqlite3.Connection, project_id: str) -> dict[str, Any]:
    """Check the plan is non-empty, mark the project in progress, and start development."""
    with project_lock(project_id), transaction(db):
        projects_mod.get_project(db, project_id)
        work_packages = wp_mod.list_work_packages(db, project_id)
        if not work_packages:
            raise InvalidTransitionError("Cannot complete planning: no work packages defined")

        task_count = len(tasks_mod.list_tasks(db, project_id=project_id))
        if task_count == 0:
            raise InvalidTransitionError("Cannot complete planning: no tasks defined")

        projects_mod.set_project_status(db, project_id, ProjectStatus.IN_PROGRESS)
        return roles.transition_role(
            db,
            project_id,
            Role.DEVELOPMENT,
            {
                "message": "Planning complete, ready to start development",
                "workPackageCount": len(work_packages),
                "taskCount": task_count,
            },
        )


def get_development_plan(db: sqlite3.Connection, project_id: str) -> DevelopmentPlan:
    """The project with its work packages and tasks, each in scheduling order."""
    project = projects_mod.get_project(db, project_id)
    return DevelopmentPlan(
        project=project,
        work_packages=[
            PlannedWorkPackage(
                work_package=wp,
                tasks=tasks_mod.list_tasks(db, work_package_id=wp.id),
            )
            for wp in wp_mod.list_work_packages(db, project_id)
        ],
    )


def plan_summary(plan: DevelopmentPlan) -> dict[str, int]:
    counts = {status.value: 0 for status in WorkStatus}
    for planned in plan.work_packages:
        for task in planned.tasks:
            counts[task.status.value] += 1
    return counts
