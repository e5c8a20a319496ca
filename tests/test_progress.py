"""Tests for work package progress aggregation."""

import tempfile
from pathlib import Path

import pytest

from delivery_orchestrator.core import progress
from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core import tasks as tasks_mod
from delivery_orchestrator.core import work_packages as wp_mod
from delivery_orchestrator.core.errors import EmptyWorkPackageError, InvalidTransitionError
from delivery_orchestrator.db.engine import init_db
from delivery_orchestrator.db.models import WorkStatus


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "Demo", project_id="p1")
        yield conn
        conn.close()


@pytest.fixture
def wp(db):
    return wp_mod.create_work_package(db, "p1", "Core")


def _finish(db, task):
    for status in (
        WorkStatus.IN_PROGRESS,
        WorkStatus.READY_FOR_QA,
        WorkStatus.QA_IN_PROGRESS,
        WorkStatus.COMPLETED,
    ):
        task = tasks_mod.set_status(db, task.id, status)
    return task


class TestRecompute:
    def test_all_completed(self, db, wp):
        for name in ("Schema", "API"):
            _finish(db, tasks_mod.create_task(db, wp.id, name))
        updated = progress.recompute_work_package(db, wp.id)
        assert updated.progress == 100.0
        assert updated.status == WorkStatus.COMPLETED

    def test_partial(self, db, wp):
        t1 = tasks_mod.create_task(db, wp.id, "Schema")
        tasks_mod.create_task(db, wp.id, "API")
        _finish(db, t1)
        updated = progress.recompute_work_package(db, wp.id)
        assert updated.progress == 50.0
        assert updated.status == WorkStatus.IN_PROGRESS

    def test_none_completed_keeps_status(self, db, wp):
        tasks_mod.create_task(db, wp.id, "Schema")
        updated = progress.recompute_work_package(db, wp.id)
        assert updated.progress == 0.0
        assert updated.status == WorkStatus.PLANNED

    def test_idempotent(self, db, wp):
        t1 = tasks_mod.create_task(db, wp.id, "Schema")
        tasks_mod.create_task(db, wp.id, "API")
        tasks_mod.create_task(db, wp.id, "Docs")
        _finish(db, t1)
        first = progress.recompute_work_package(db, wp.id)
        second = progress.recompute_work_package(db, wp.id)
        assert (first.progress, first.status) == (second.progress, second.status)
        assert first.progress == pytest.approx(100.0 / 3)

    def test_empty_work_package(self, db, wp):
        with pytest.raises(EmptyWorkPackageError):
            progress.recompute_work_package(db, wp.id)

    def test_new_task_reopens_package(self, db, wp):
        _finish(db, tasks_mod.create_task(db, wp.id, "Schema"))
        assert progress.recompute_work_package(db, wp.id).status == WorkStatus.COMPLETED
        tasks_mod.create_task(db, wp.id, "Follow-up")
        updated = progress.recompute_work_package(db, wp.id)
        assert updated.progress == 50.0
        assert updated.status == WorkStatus.IN_PROGRESS


class TestReconcile:
    def test_skips_empty_packages(self, db, wp):
        empty = wp_mod.create_work_package(db, "p1", "Empty")
        _finish(db, tasks_mod.create_task(db, wp.id, "Schema"))
        updated = progress.reconcile_project(db, "p1")
        assert [w.id for w in updated] == [wp.id]
        assert wp_mod.get_work_package(db, empty.id).progress == 0.0


class TestExplicitTransitions:
    def test_allowed(self, db, wp):
        moved = wp_mod.transition_status(db, wp.id, WorkStatus.IN_PROGRESS)
        assert moved.status == WorkStatus.IN_PROGRESS

    def test_rejected(self, db, wp):
        with pytest.raises(InvalidTransitionError):
            wp_mod.transition_status(db, wp.id, WorkStatus.COMPLETED)

    def test_completed_only_through_tasks(self, db, wp):
        wp_mod.transition_status(db, wp.id, WorkStatus.IN_PROGRESS)
        wp_mod.transition_status(db, wp.id, WorkStatus.READY_FOR_QA)
        wp_mod.transition_status(db, wp.id, WorkStatus.QA_IN_PROGRESS)
        with pytest.raises(InvalidTransitionError):
            wp_mod.transition_status(db, wp.id, WorkStatus.COMPLETED)

    def test_advance_leaves_disallowed_moves(self, db, wp):
        assert wp_mod.advance_status(db, wp.id, WorkStatus.QA_IN_PROGRESS).status == WorkStatus.PLANNED
        assert wp_mod.advance_status(db, wp.id, WorkStatus.IN_PROGRESS).status == WorkStatus.IN_PROGRESS


class TestMarkReadyForQa:
    def test_waits_for_open_tasks(self, db, wp):
        t1 = tasks_mod.create_task(db, wp.id, "Schema")
        tasks_mod.create_task(db, wp.id, "API")
        wp_mod.transition_status(db, wp.id, WorkStatus.IN_PROGRESS)
        tasks_mod.set_status(db, t1.id, WorkStatus.IN_PROGRESS)
        tasks_mod.set_status(db, t1.id, WorkStatus.READY_FOR_QA)
        assert progress.mark_ready_for_qa(db, wp.id).status == WorkStatus.IN_PROGRESS

    def test_keeps_running_review(self, db, wp):
        t1 = tasks_mod.create_task(db, wp.id, "Schema")
        t2 = tasks_mod.create_task(db, wp.id, "API")
        wp_mod.transition_status(db, wp.id, WorkStatus.IN_PROGRESS)
        for status in (WorkStatus.IN_PROGRESS, WorkStatus.READY_FOR_QA):
            tasks_mod.set_status(db, t1.id, status)
            tasks_mod.set_status(db, t2.id, status)
        tasks_mod.set_status(db, t2.id, WorkStatus.QA_IN_PROGRESS)
        assert progress.mark_ready_for_qa(db, wp.id).status == WorkStatus.QA_IN_PROGRESS
