"""Work package progress aggregation."""

import logging
import sqlite3

from delivery_orchestrator.core import tasks as tasks_mod
from delivery_orchestrator.core import work_packages as wp_mod
from delivery_orchestrator.core.errors import EmptyWorkPackageError
from delivery_orchestrator.db.engine import transaction
from delivery_orchestrator.db.models import AWAITING_QA_OR_DONE, WorkPackage, WorkStatus

logger = logging.getLogger(__name__)


def recompute_work_package(db: sqlite3.Connection, work_package_id: str) -> WorkPackage:
    """Recompute progress and derived status from the package's tasks.

    COMPLETED when every task is completed, IN_PROGRESS when some are,
    otherwise the stored status is kept. Idempotent.
    """
    with transaction(db):
        wp = wp_mod.get_work_package(db, work_package_id)
        tasks = tasks_mod.list_tasks(db, work_package_id=work_package_id)
        if not tasks:
            raise EmptyWorkPackageError(work_package_id)

        completed = sum(1 for t in tasks if t.status == WorkStatus.COMPLETED)
        progress = 100.0 * completed / len(tasks)

        if completed == len(tasks):
            status = WorkStatus.COMPLETED
        elif completed > 0:
            status = WorkStatus.IN_PROGRESS
        else:
            status = wp.status

        if progress != wp.progress or status != wp.status:
            wp_mod.write_derived(db, work_package_id, progress, status)
            logger.info(
                "Work package %s: %.1f%% (%s)", wp.wp_id, progress, status.value
            )
    return wp_mod.get_work_package(db, work_package_id)


def reconcile_project(db: sqlite3.Connection, project_id: str) -> list[WorkPackage]:
    """Recompute every work package of a project that has tasks."""
    updated = []
    with transaction(db):
        for wp in wp_mod.list_work_packages(db, project_id):
            if not tasks_mod.list_tasks(db, work_package_id=wp.id):
                continue
            updated.append(recompute_work_package(db, wp.id))
    return updated


def mark_ready_for_qa(db: sqlite3.Connection, work_package_id: str) -> WorkPackage:
    """Hand an IN_PROGRESS package to QA once none of its tasks is left to build."""
    with transaction(db):
        wp = wp_mod.get_work_package(db, work_package_id)
        tasks = tasks_mod.list_tasks(db, work_package_id=work_package_id)
        if (
            wp.status == WorkStatus.IN_PROGRESS
            and any(t.status != WorkStatus.COMPLETED for t in tasks)
            and all(t.status in AWAITING_QA_OR_DONE for t in tasks)
        ):
            wp = wp_mod.transition_status(db, work_package_id, WorkStatus.READY_FOR_QA)
            logger.info("Work package %s: ready for QA", wp.wp_id)
            if any(t.status == WorkStatus.QA_IN_PROGRESS for t in tasks):
                wp = wp_mod.transition_status(db, work_package_id, WorkStatus.QA_IN_PROGRESS)
    return wp
