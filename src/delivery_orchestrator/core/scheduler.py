"""Dependency-aware task scheduling.

The scheduler is greedy: work packages are visited by priority (creation order
breaks ties), and within each package the first startable task whose
dependencies are all COMPLETED wins. A dependency key that resolves to no task
is unsatisfied rather than an error, so tasks may reference work that has not
been planned yet. Cycles are never followed; tasks in one simply stay blocked.
"""

import sqlite3
from dataclasses import dataclass, field

from delivery_orchestrator.core import tasks as tasks_mod
from delivery_orchestrator.core import work_packages as wp_mod
from delivery_orchestrator.core.dependencies import unsatisfied
from delivery_orchestrator.db.models import AWAITING_QA_OR_DONE, STARTABLE, Task, WorkStatus


@dataclass
class BlockedTask:
    task: Task
    waiting_on: list[str]


@dataclass
class NextTaskReport:
    """What the development role should do next."""

    task: Task | None
    message: str
    next_step: str | None = None
    blocked: list[BlockedTask] = field(default_factory=list)


def next_eligible_task(db: sqlite3.Connection, project_id: str) -> Task | None:
    """Return the highest-priority task that may start now, or None."""
    lookup = tasks_mod.lookup_table(db, project_id)
    statuses = {key: t.status for key, t in lookup.items()}

    for wp in wp_mod.list_work_packages(db, project_id, exclude_status=WorkStatus.COMPLETED):
        for task in tasks_mod.list_tasks(db, work_package_id=wp.id, status=list(STARTABLE)):
            if not unsatisfied(task.dependencies, statuses, WorkStatus.COMPLETED):
                return task
    return None


def blocked_tasks(db: sqlite3.Connection, project_id: str) -> list[BlockedTask]:
    """Startable tasks held back by at least one unsatisfied dependency."""
    lookup = tasks_mod.lookup_table(db, project_id)
    statuses = {key: t.status for key, t in lookup.items()}

    blocked = []
    for task in tasks_mod.list_tasks(db, project_id=project_id, status=list(STARTABLE)):
        waiting = unsatisfied(task.dependencies, statuses, WorkStatus.COMPLETED)
        if waiting:
            blocked.append(BlockedTask(task=task, waiting_on=waiting))
    return blocked


def next_task(db: sqlite3.Connection, project_id: str) -> NextTaskReport:
    """Pick the next task, or explain why there is none."""
    task = next_eligible_task(db, project_id)
    if task:
        return NextTaskReport(
            task=task,
            message=f"Ready to start task {task.task_id}: {task.name}",
        )

    blocked = blocked_tasks(db, project_id)
    if blocked:
        return NextTaskReport(
            task=None,
            message="No available tasks to work on. Some tasks are blocked by dependencies.",
            blocked=blocked,
        )

    all_tasks = tasks_mod.list_tasks(db, project_id=project_id)
    if all(t.status in AWAITING_QA_OR_DONE for t in all_tasks):
        return NextTaskReport(
            task=None,
            message="All tasks are either completed or in QA",
            next_step="Wait for QA completion",
        )

    active = [t.task_id for t in all_tasks if t.status == WorkStatus.IN_PROGRESS]
    return NextTaskReport(
        task=None,
        message=f"No new tasks to start; in progress: {', '.join(active)}",
        next_step="Complete in-progress tasks",
    )
