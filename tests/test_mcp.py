"""Tests for the MCP tool functions."""

import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest

from delivery_orchestrator.config import Config
from delivery_orchestrator.db.engine import init_db
from delivery_orchestrator.mcp import server
from delivery_orchestrator.mcp.server import AppContext


@pytest.fixture
def ctx():
    """A stand-in for the MCP request context carrying a temp database."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        conn = init_db(db_path)
        app = AppContext(db=conn, config=Config(db_path=db_path, history_limit=2))
        yield SimpleNamespace(request_context=SimpleNamespace(lifespan_context=app))
        conn.close()


class TestTools:
    def test_workflow(self, ctx):
        project = server.initialize_project(ctx, "Demo")
        assert project["success"] is True
        project_id = project["data"]["id"]

        wp = server.create_work_package(ctx, project_id, "Core")["data"]
        task = server.create_task(ctx, wp["id"], "Schema", "src/schema.py")["data"]
        assert task["task_id"] == "WP001-01"

        result = server.complete_planning(ctx, project_id)
        assert result["data"]["activeRole"] == "DEVELOPMENT"

        result = server.get_next_task(ctx, project_id)
        assert result["data"]["task"]["id"] == task["id"]

        assert server.start_task(ctx, task["id"])["success"] is True
        result = server.complete_task(ctx, task["id"], changes="tables")
        assert result["data"]["state"]["activeRole"] == "QA"

        server.start_qa_review(ctx, task["id"])
        result = server.complete_qa_review(ctx, task["id"], passed=True)
        assert result["data"]["state"]["activeRole"] == "ORCHESTRATOR"

    def test_errors_become_results(self, ctx):
        result = server.get_project(ctx, "missing")
        assert result == {"success": False, "error": "Project not found: missing"}

    def test_invalid_role(self, ctx):
        project_id = server.initialize_project(ctx, "Demo")["data"]["id"]
        result = server.transition_role(ctx, project_id, "DESIGN")
        assert result["success"] is False
        assert "Unknown role" in result["error"]

    def test_history_uses_config_limit(self, ctx):
        project_id = server.initialize_project(ctx, "Demo")["data"]["id"]
        for n in range(3):
            server.create_checkpoint(ctx, project_id, {"n": n})
        assert len(server.get_state_history(ctx, project_id)["data"]) == 2
        assert len(server.get_state_history(ctx, project_id, limit=4)["data"]) == 4

    def test_checkpoint_reads(self, ctx):
        project_id = server.initialize_project(ctx, "Demo")["data"]["id"]
        saved = server.create_checkpoint(ctx, project_id, {"note": "x"})["data"]
        listed = server.get_checkpoints(ctx, project_id)["data"]
        assert [c["id"] for c in listed][0] == saved["id"]
        assert len(server.get_checkpoints(ctx, project_id, limit=1)["data"]) == 1

        entry = server.get_state_entry(ctx, saved["id"])["data"]
        assert entry["state"]["checkpoint"]["data"] == {"note": "x"}
        assert server.get_state_entry(ctx, "missing")["success"] is False

    def test_restore_checkpoint(self, ctx):
        project_id = server.initialize_project(ctx, "Demo")["data"]["id"]
        initial = server.get_checkpoints(ctx, project_id)["data"][0]
        server.transition_role(ctx, project_id, "PLANNING")

        result = server.restore_project_checkpoint(ctx, project_id, initial["id"])
        assert result["data"]["state"]["activeRole"] == "TRIAGE"
        assert server.get_project(ctx, project_id)["data"]["current_role"] == "TRIAGE"

    def test_work_package_status(self, ctx):
        project_id = server.initialize_project(ctx, "Demo")["data"]["id"]
        wp = server.create_work_package(ctx, project_id, "Core")["data"]
        result = server.update_work_package_status(ctx, wp["id"], "in_progress")
        assert result["data"]["status"] == "IN_PROGRESS"
        result = server.update_work_package_status(ctx, wp["id"], "COMPLETED")
        assert result["success"] is False
        assert "cannot move from IN_PROGRESS to COMPLETED" in result["error"]

    def test_negative_history_limit(self, ctx):
        project_id = server.initialize_project(ctx, "Demo")["data"]["id"]
        result = server.get_state_history(ctx, project_id, limit=-1)
        assert result["success"] is False
