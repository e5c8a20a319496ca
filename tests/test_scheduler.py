"""Tests for dependency-aware task scheduling."""

import tempfile
from pathlib import Path

import pytest

from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core import scheduler
from delivery_orchestrator.core import tasks as tasks_mod
from delivery_orchestrator.core import work_packages as wp_mod
from delivery_orchestrator.core.dependencies import find_dependency_cycle
from delivery_orchestrator.core.errors import DependencyCycleError
from delivery_orchestrator.db.engine import init_db
from delivery_orchestrator.db.models import WorkStatus

COMPLETION_PATH = [
    WorkStatus.IN_PROGRESS,
    WorkStatus.READY_FOR_QA,
    WorkStatus.QA_IN_PROGRESS,
    WorkStatus.COMPLETED,
]


@pytest.fixture
def db():
    """Create a temporary SQLite database with one project."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "Demo", project_id="p1")
        yield conn
        conn.close()


def _finish(db, task):
    for status in COMPLETION_PATH:
        task = tasks_mod.set_status(db, task.id, status)
    return task


class TestNextEligibleTask:
    def test_dependency_chain(self, db):
        w1 = wp_mod.create_work_package(db, "p1", "Core", priority=1)
        t1 = tasks_mod.create_task(db, w1.id, "Schema", priority=1)
        t2 = tasks_mod.create_task(db, w1.id, "API", priority=2, dependencies=[t1.task_id])

        assert scheduler.next_eligible_task(db, "p1").id == t1.id
        _finish(db, t1)
        assert scheduler.next_eligible_task(db, "p1").id == t2.id

    def test_work_package_priority_wins(self, db):
        low = wp_mod.create_work_package(db, "p1", "Later", priority=5)
        high = wp_mod.create_work_package(db, "p1", "First", priority=1)
        tasks_mod.create_task(db, low.id, "Polish", priority=1)
        wanted = tasks_mod.create_task(db, high.id, "Foundation", priority=9)
        assert scheduler.next_eligible_task(db, "p1").id == wanted.id

    def test_creation_order_breaks_ties(self, db):
        w1 = wp_mod.create_work_package(db, "p1", "One")
        first = tasks_mod.create_task(db, w1.id, "A")
        tasks_mod.create_task(db, w1.id, "B")
        assert scheduler.next_eligible_task(db, "p1").id == first.id

    def test_failed_tasks_are_eligible(self, db):
        w1 = wp_mod.create_work_package(db, "p1", "Core")
        t1 = tasks_mod.create_task(db, w1.id, "Schema")
        tasks_mod.set_status(db, t1.id, WorkStatus.IN_PROGRESS)
        tasks_mod.set_status(db, t1.id, WorkStatus.FAILED)
        assert scheduler.next_eligible_task(db, "p1").id == t1.id

    def test_dangling_dependency_blocks(self, db):
        w1 = wp_mod.create_work_package(db, "p1", "Core")
        tasks_mod.create_task(db, w1.id, "Orphan", dependencies=["WP009-01"])
        assert scheduler.next_eligible_task(db, "p1") is None
        blocked = scheduler.blocked_tasks(db, "p1")
        assert [b.waiting_on for b in blocked] == [["WP009-01"]]

    def test_completed_work_packages_skipped(self, db):
        w1 = wp_mod.create_work_package(db, "p1", "Done", priority=1)
        w2 = wp_mod.create_work_package(db, "p1", "Open", priority=2)
        t1 = tasks_mod.create_task(db, w1.id, "Finished")
        _finish(db, t1)
        wp_mod.write_derived(db, w1.id, 100.0, WorkStatus.COMPLETED)
        t2 = tasks_mod.create_task(db, w2.id, "Next")
        assert scheduler.next_eligible_task(db, "p1").id == t2.id

    def test_empty_project(self, db):
        assert scheduler.next_eligible_task(db, "p1") is None


class TestNextTaskReport:
    def test_ready(self, db):
        w1 = wp_mod.create_work_package(db, "p1", "Core")
        t1 = tasks_mod.create_task(db, w1.id, "Schema")
        report = scheduler.next_task(db, "p1")
        assert report.task.id == t1.id
        assert report.message == f"Ready to start task {t1.task_id}: Schema"

    def test_blocked(self, db):
        w1 = wp_mod.create_work_package(db, "p1", "Core")
        t1 = tasks_mod.create_task(db, w1.id, "Schema")
        tasks_mod.create_task(db, w1.id, "API", dependencies=[t1.task_id])
        tasks_mod.set_status(db, t1.id, WorkStatus.IN_PROGRESS)

        report = scheduler.next_task(db, "p1")
        assert report.task is None
        assert "blocked by dependencies" in report.message
        assert report.blocked[0].waiting_on == [t1.task_id]

    def test_all_in_qa_or_done(self, db):
        w1 = wp_mod.create_work_package(db, "p1", "Core")
        t1 = tasks_mod.create_task(db, w1.id, "Schema")
        t2 = tasks_mod.create_task(db, w1.id, "API")
        _finish(db, t1)
        tasks_mod.set_status(db, t2.id, WorkStatus.IN_PROGRESS)
        tasks_mod.set_status(db, t2.id, WorkStatus.READY_FOR_QA)

        report = scheduler.next_task(db, "p1")
        assert report.message == "All tasks are either completed or in QA"
        assert report.next_step == "Wait for QA completion"

    def test_in_progress_only(self, db):
        w1 = wp_mod.create_work_package(db, "p1", "Core")
        t1 = tasks_mod.create_task(db, w1.id, "Schema")
        tasks_mod.set_status(db, t1.id, WorkStatus.IN_PROGRESS)

        report = scheduler.next_task(db, "p1")
        assert report.task is None
        assert t1.task_id in report.message
        assert report.next_step == "Complete in-progress tasks"


class TestDependencyCycles:
    def test_find_cycle(self):
        graph = {"a": ["b"], "b": ["c"], "c": ["a"]}
        assert find_dependency_cycle(graph, "a") == ["a", "b", "c", "a"]

    def test_no_cycle_with_dangling_keys(self):
        graph = {"a": ["b", "missing"], "b": []}
        assert find_dependency_cycle(graph, "a") is None

    def test_self_dependency_rejected(self, db):
        w1 = wp_mod.create_work_package(db, "p1", "Core")
        t1 = tasks_mod.create_task(db, w1.id, "Schema")
        with pytest.raises(DependencyCycleError):
            tasks_mod.set_dependencies(db, t1.id, [t1.task_id])

    def test_cycle_rejected_on_update(self, db):
        w1 = wp_mod.create_work_package(db, "p1", "Core")
        t1 = tasks_mod.create_task(db, w1.id, "Schema")
        t2 = tasks_mod.create_task(db, w1.id, "API", dependencies=[t1.task_id])
        with pytest.raises(DependencyCycleError) as exc:
            tasks_mod.set_dependencies(db, t1.id, [t2.task_id])
        assert exc.value.cycle == [t1.task_id, t2.task_id, t1.task_id]
        assert tasks_mod.get_task(db, t1.id).dependencies == []

    def test_work_package_cycle_rejected(self, db):
        w1 = wp_mod.create_work_package(db, "p1", "One")
        w2 = wp_mod.create_work_package(db, "p1", "Two", dependencies=[w1.wp_id])
        with pytest.raises(DependencyCycleError):
            wp_mod.update_work_package(db, w1.id, dependencies=[w2.wp_id])
