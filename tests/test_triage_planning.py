"""Tests for project intake and planning."""

import tempfile
from pathlib import Path

import pytest

from delivery_orchestrator.core import planning
from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core import state_log
from delivery_orchestrator.core import tasks as tasks_mod
from delivery_orchestrator.core import triage
from delivery_orchestrator.core import work_packages as wp_mod
from delivery_orchestrator.core.errors import (
    DependencyCycleError,
    InvalidTransitionError,
    TaskNotFoundError,
    ValidationError,
    WorkPackageNotFoundError,
)
from delivery_orchestrator.db.engine import init_db
from delivery_orchestrator.db.models import ProjectStatus, Role, WorkStatus


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


@pytest.fixture
def project(db):
    return triage.initialize_project(db, "Demo", "Build a thing", "Ship it")


class TestTriage:
    def test_initialize(self, db, project):
        assert project.status == ProjectStatus.PLANNING
        assert project.current_role == Role.TRIAGE
        entry = state_log.latest_checkpoint(db, project.id)
        assert entry.seq == 1
        assert entry.state == {
            "activeRole": "TRIAGE",
            "workPackages": [],
            "tasks": [],
            "pendingActions": ["Complete Triage"],
            "knowledgeBase": {},
        }

    def test_name_required(self, db):
        with pytest.raises(ValidationError):
            triage.initialize_project(db, "")
        assert projects_mod.list_projects(db) == []

    def test_assessment_moves_to_planning(self, db, project):
        assessment = {"complexity": "medium", "components": ["api", "db"]}
        state = triage.record_assessment(db, project.id, assessment)

        assert state["activeRole"] == "PLANNING"
        assert state["triageComplete"] is True
        updated = projects_mod.get_project(db, project.id)
        assert updated.current_role == Role.PLANNING
        assert updated.knowledge_base["triageAssessment"] == assessment

    def test_questions_and_answers(self, db, project):
        state = triage.request_information(db, project.id, ["Which database?"])
        assert state["waitingForUserInput"] is True
        assert state["pendingQuestions"] == ["Which database?"]

        triage.record_user_responses(db, project.id, {"database": "sqlite"})
        state = triage.record_user_responses(db, project.id, {"auth": "none"})
        assert state["waitingForUserInput"] is False
        assert state["pendingQuestions"] == []
        knowledge = projects_mod.get_project(db, project.id).knowledge_base
        assert knowledge["userResponses"] == {"database": "sqlite", "auth": "none"}


class TestWorkPackages:
    def test_sequential_keys(self, db, project):
        w1 = planning.create_work_package(db, project.id, "Core")
        w2 = planning.create_work_package(db, project.id, "UI")
        assert (w1.wp_id, w2.wp_id) == ("WP001", "WP002")
        listed = state_log.current_state(db, project.id)["workPackages"]
        assert [w["wpId"] for w in listed] == ["WP001", "WP002"]

    def test_keys_are_per_project(self, db, project):
        other = triage.initialize_project(db, "Other")
        planning.create_work_package(db, project.id, "Core")
        assert planning.create_work_package(db, other.id, "Core").wp_id == "WP001"

    def test_update_ignores_status(self, db, project):
        wp = planning.create_work_package(db, project.id, "Core")
        updated = planning.update_work_package(
            db, wp.id, name="Core v2", priority=3, status="COMPLETED"
        )
        assert updated.name == "Core v2"
        assert updated.priority == 3
        assert updated.status == WorkStatus.PLANNED

    def test_resolve_by_key(self, db, project):
        wp = planning.create_work_package(db, project.id, "Core")
        assert wp_mod.resolve_work_package(db, "WP001", project.id).id == wp.id
        assert wp_mod.resolve_work_package(db, wp.id).id == wp.id
        with pytest.raises(WorkPackageNotFoundError):
            wp_mod.resolve_work_package(db, "WP009", project.id)


class TestTasks:
    def test_sequential_keys(self, db, project):
        wp = planning.create_work_package(db, project.id, "Core")
        t1 = planning.create_task(db, wp.id, "Schema", "src/schema.py")
        t2 = planning.create_task(db, wp.id, "API", "src/api.py")
        assert (t1.task_id, t2.task_id) == ("WP001-01", "WP001-02")
        assert tasks_mod.resolve_task(db, "WP001-02", project.id).id == t2.id
        assert tasks_mod.resolve_task(db, t1.id, project.id).id == t1.id
        with pytest.raises(TaskNotFoundError):
            tasks_mod.resolve_task(db, "WP009-01", project.id)

    def test_file_path_required(self, db, project):
        wp = planning.create_work_package(db, project.id, "Core")
        with pytest.raises(ValidationError):
            planning.create_task(db, wp.id, "Schema", None)

    def test_duplicate_dependencies_collapsed(self, db, project):
        wp = planning.create_work_package(db, project.id, "Core")
        t1 = planning.create_task(db, wp.id, "Schema", "src/schema.py")
        t2 = planning.create_task(
            db, wp.id, "API", "src/api.py", dependencies=[t1.task_id, t1.task_id]
        )
        assert t2.dependencies == [t1.task_id]

    def test_update_routes_dependencies(self, db, project):
        wp = planning.create_work_package(db, project.id, "Core")
        t1 = planning.create_task(db, wp.id, "Schema", "src/schema.py")
        t2 = planning.create_task(db, wp.id, "API", "src/api.py", dependencies=[t1.task_id])
        with pytest.raises(DependencyCycleError):
            planning.update_task(db, t1.id, name="Renamed", dependencies=[t2.task_id])
        assert tasks_mod.get_task(db, t1.id).name == "Schema"

        updated = planning.update_task(db, t2.id, description="Endpoints", dependencies=[])
        assert updated.description == "Endpoints"
        assert updated.dependencies == []


class TestCompletePlanning:
    def test_requires_work_packages(self, db, project):
        with pytest.raises(InvalidTransitionError):
            planning.complete_planning(db, project.id)

    def test_requires_tasks(self, db, project):
        planning.create_work_package(db, project.id, "Core")
        with pytest.raises(InvalidTransitionError):
            planning.complete_planning(db, project.id)

    def test_moves_to_development(self, db, project):
        wp = planning.create_work_package(db, project.id, "Core")
        planning.create_task(db, wp.id, "Schema", "src/schema.py")
        state = planning.complete_planning(db, project.id)

        assert state["activeRole"] == "DEVELOPMENT"
        assert state["contextData"]["taskCount"] == 1
        updated = projects_mod.get_project(db, project.id)
        assert updated.status == ProjectStatus.IN_PROGRESS
        assert updated.current_role == Role.DEVELOPMENT


class TestDevelopmentPlan:
    def test_plan_order_and_summary(self, db, project):
        later = planning.create_work_package(db, project.id, "Later", priority=2)
        first = planning.create_work_package(db, project.id, "First", priority=1)
        planning.create_task(db, later.id, "Polish", "ui.py")
        planning.create_task(db, first.id, "Schema", "schema.py")
        planning.create_task(db, first.id, "API", "api.py")

        plan = planning.get_development_plan(db, project.id)
        assert [p.work_package.id for p in plan.work_packages] == [first.id, later.id]
        assert [len(p.tasks) for p in plan.work_packages] == [2, 1]
        assert planning.plan_summary(plan)["PLANNED"] == 3
