"""MCP server exposing the delivery workflow as tools."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from mcp.server.fastmcp import Context, FastMCP

from delivery_orchestrator import serialize as ser
from delivery_orchestrator.config import Config, get_config
from delivery_orchestrator.core import checkpoints as checkpoints_mod
from delivery_orchestrator.core import development as dev_mod
from delivery_orchestrator.core import planning as planning_mod
from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core import qa as qa_mod
from delivery_orchestrator.core import roles as roles_mod
from delivery_orchestrator.core import state_log
from delivery_orchestrator.core import tasks as tasks_mod
from delivery_orchestrator.core import triage as triage_mod
from delivery_orchestrator.core import work_packages as wp_mod
from delivery_orchestrator.core.errors import OrchestratorError
from delivery_orchestrator.db.engine import init_db
from delivery_orchestrator.db.models import WorkStatus

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    try:
        yield AppContext(db=db, config=config)
    finally:
        db.close()


mcp = FastMCP("delivery-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _result(op: Callable[[], Any]) -> dict:
    try:
        return ser.ok(op())
    except (OrchestratorError, ValueError) as e:
        logger.debug("Tool call failed: %s", e)
        return ser.fail(e)
    except Exception:
        logger.exception("Unhandled error in MCP tool")
        raise


# ── Project Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def initialize_project(
    ctx: Context,
    name: str,
    description: str = "",
    objectives: str = "",
) -> dict:
    """Create a project. It starts in the TRIAGE role with an initial checkpoint."""
    db = _ctx(ctx).db
    return _result(
        lambda: ser.project_dict(triage_mod.initialize_project(db, name, description, objectives))
    )


@mcp.tool()
def list_projects(ctx: Context, status: str | None = None) -> dict:
    """List projects, optionally filtered by status (PLANNING/IN_PROGRESS/COMPLETED/...)."""
    db = _ctx(ctx).db
    return _result(
        lambda: [ser.project_dict(p) for p in projects_mod.list_projects(db, status=status)]
    )


@mcp.tool()
def get_project(ctx: Context, project_id: str) -> dict:
    """Get a project with its knowledge base."""
    db = _ctx(ctx).db
    return _result(lambda: ser.project_dict(projects_mod.get_project(db, project_id)))


@mcp.tool()
def get_project_state(ctx: Context, project_id: str) -> dict:
    """Get the latest recorded workflow state of a project."""
    db = _ctx(ctx).db
    return _result(lambda: state_log.current_state(db, project_id))


@mcp.tool()
def get_state_history(
    ctx: Context,
    project_id: str,
    limit: int | None = None,
    offset: int = 0,
) -> dict:
    """Get recorded states, newest first."""
    app = _ctx(ctx)
    limit = limit if limit is not None else app.config.history_limit
    return _result(
        lambda: [
            ser.state_entry_dict(e) for e in state_log.history(app.db, project_id, limit, offset)
        ]
    )


@mcp.tool()
def get_checkpoints(ctx: Context, project_id: str, limit: int | None = None) -> dict:
    """Get checkpoint entries only, newest first."""
    db = _ctx(ctx).db
    return _result(
        lambda: [ser.state_entry_dict(e) for e in state_log.checkpoints(db, project_id, limit)]
    )


@mcp.tool()
def get_state_entry(ctx: Context, entry_id: str) -> dict:
    """Get a single recorded state by its ID."""
    db = _ctx(ctx).db
    return _result(lambda: ser.state_entry_dict(state_log.get_entry(db, entry_id)))


@mcp.tool()
def transition_role(
    ctx: Context,
    project_id: str,
    next_role: str,
    context_data: dict | None = None,
) -> dict:
    """Hand the project to another role: TRIAGE, PLANNING, DEVELOPMENT, QA or ORCHESTRATOR."""
    db = _ctx(ctx).db
    return _result(
        lambda: roles_mod.transition_role(
            db, project_id, roles_mod.parse_role(next_role), context_data
        )
    )


@mcp.tool()
def create_checkpoint(ctx: Context, project_id: str, data: dict | None = None) -> dict:
    """Save a checkpoint of the current state with optional extra data."""
    db = _ctx(ctx).db
    return _result(
        lambda: ser.state_entry_dict(checkpoints_mod.save_checkpoint(db, project_id, data))
    )


@mcp.tool()
def resume_project(ctx: Context, project_id: str) -> dict:
    """Resume from the latest checkpoint and report the next actions for the current role."""
    db = _ctx(ctx).db
    return _result(
        lambda: ser.resume_dict(checkpoints_mod.resume_from_checkpoint(db, project_id))
    )


@mcp.tool()
def restore_project_checkpoint(ctx: Context, project_id: str, checkpoint_id: str) -> dict:
    """Make an earlier checkpoint the current state again. Task records are not rolled back."""
    db = _ctx(ctx).db
    return _result(
        lambda: ser.state_entry_dict(
            checkpoints_mod.restore_checkpoint(db, project_id, checkpoint_id)
        )
    )


# ── Triage Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def record_triage_assessment(ctx: Context, project_id: str, assessment: dict) -> dict:
    """Store the triage assessment and move the project to PLANNING."""
    db = _ctx(ctx).db
    return _result(lambda: triage_mod.record_assessment(db, project_id, assessment))


@mcp.tool()
def request_information(ctx: Context, project_id: str, questions: list[str]) -> dict:
    """Record clarifying questions for the user."""
    db = _ctx(ctx).db
    return _result(lambda: triage_mod.request_information(db, project_id, questions))


@mcp.tool()
def record_user_responses(ctx: Context, project_id: str, responses: dict) -> dict:
    """Record the user's answers to pending questions."""
    db = _ctx(ctx).db
    return _result(lambda: triage_mod.record_user_responses(db, project_id, responses))


# ── Planning Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def create_work_package(
    ctx: Context,
    project_id: str,
    name: str,
    description: str = "",
    priority: int = 1,
    dependencies: list[str] | None = None,
) -> dict:
    """Create a work package. Lower priority numbers are scheduled first."""
    db = _ctx(ctx).db
    return _result(
        lambda: ser.work_package_dict(
            planning_mod.create_work_package(
                db, project_id, name, description, priority, dependencies
            )
        )
    )


@mcp.tool()
def list_work_packages(ctx: Context, project_id: str) -> dict:
    """List a project's work packages in scheduling order."""
    db = _ctx(ctx).db
    return _result(
        lambda: [ser.work_package_dict(wp) for wp in wp_mod.list_work_packages(db, project_id)]
    )


@mcp.tool()
def update_work_package(
    ctx: Context,
    work_package_id: str,
    name: str | None = None,
    description: str | None = None,
    priority: int | None = None,
    dependencies: list[str] | None = None,
) -> dict:
    """Edit a work package. Progress is derived from its tasks."""
    db = _ctx(ctx).db
    return _result(
        lambda: ser.work_package_dict(
            planning_mod.update_work_package(
                db,
                work_package_id,
                name=name,
                description=description,
                priority=priority,
                dependencies=dependencies,
            )
        )
    )


@mcp.tool()
def update_work_package_status(ctx: Context, work_package_id: str, status: str) -> dict:
    """Move a work package to another status. COMPLETED is only reached through its tasks."""
    db = _ctx(ctx).db
    return _result(
        lambda: ser.work_package_dict(
            wp_mod.transition_status(db, work_package_id, WorkStatus(status.upper()))
        )
    )


@mcp.tool()
def create_task(
    ctx: Context,
    work_package_id: str,
    name: str,
    file_path: str,
    description: str = "",
    priority: int = 1,
    dependencies: list[str] | None = None,
    success_criteria: str | None = None,
) -> dict:
    """Create a task in a work package. Dependencies are task keys such as WP001-01."""
    db = _ctx(ctx).db
    return _result(
        lambda: ser.task_dict(
            planning_mod.create_task(
                db,
                work_package_id,
                name,
                file_path,
                description=description,
                priority=priority,
                dependencies=dependencies,
                success_criteria=success_criteria,
            )
        )
    )


@mcp.tool()
def update_task_dependencies(ctx: Context, task_id: str, dependencies: list[str]) -> dict:
    """Replace a task's dependency list. Cycles are rejected."""
    db = _ctx(ctx).db
    return _result(
        lambda: ser.task_dict(planning_mod.update_task_dependencies(db, task_id, dependencies))
    )


@mcp.tool()
def complete_planning(ctx: Context, project_id: str) -> dict:
    """Finish planning and hand the project to DEVELOPMENT."""
    db = _ctx(ctx).db
    return _result(lambda: planning_mod.complete_planning(db, project_id))


@mcp.tool()
def get_development_plan(ctx: Context, project_id: str) -> dict:
    """Get all work packages with their tasks."""
    db = _ctx(ctx).db
    return _result(lambda: ser.plan_dict(planning_mod.get_development_plan(db, project_id)))


# ── Development Tools ─────────────────────────────────────────────────────────


@mcp.tool()
def get_next_task(ctx: Context, project_id: str) -> dict:
    """Pick the next task whose dependencies are complete, or explain why none is available."""
    db = _ctx(ctx).db
    return _result(lambda: ser.next_task_dict(dev_mod.get_next_task(db, project_id)))


@mcp.tool()
def start_task(ctx: Context, task_id: str) -> dict:
    """Start a PLANNED or FAILED task."""
    db = _ctx(ctx).db
    return _result(lambda: ser.task_update_dict(dev_mod.start_task(db, task_id)))


@mcp.tool()
def complete_task(
    ctx: Context,
    task_id: str,
    changes: Any = None,
    file_state: Any = None,
) -> dict:
    """Record the implementation and mark the task ready for QA."""
    db = _ctx(ctx).db
    implementation = {"changes": changes, "fileState": file_state}
    return _result(lambda: ser.task_update_dict(dev_mod.complete_task(db, task_id, implementation)))


@mcp.tool()
def update_task_status(
    ctx: Context,
    task_id: str,
    status: str,
    qa_results: dict | None = None,
) -> dict:
    """Change a task's status directly. Starting still checks dependencies."""
    db = _ctx(ctx).db
    return _result(
        lambda: ser.task_update_dict(
            dev_mod.update_task_status(db, task_id, WorkStatus(status.upper()), qa_results)
        )
    )


@mcp.tool()
def save_task_checkpoint(ctx: Context, task_id: str, checkpoint_data: dict) -> dict:
    """Checkpoint in-flight work on an IN_PROGRESS task."""
    db = _ctx(ctx).db
    return _result(
        lambda: ser.state_entry_dict(
            dev_mod.save_implementation_checkpoint(db, task_id, checkpoint_data)
        )
    )


@mcp.tool()
def resume_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its file history and any saved implementation context."""
    db = _ctx(ctx).db
    return _result(lambda: ser.task_context_dict(dev_mod.resume_task(db, task_id)))


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get full details of a task."""
    db = _ctx(ctx).db
    return _result(lambda: ser.task_dict(tasks_mod.get_task(db, task_id)))


# ── QA Tools ──────────────────────────────────────────────────────────────────


@mcp.tool()
def get_tasks_for_qa(ctx: Context, project_id: str) -> dict:
    """List tasks waiting for QA, oldest first."""
    db = _ctx(ctx).db
    return _result(lambda: [ser.task_dict(t) for t in qa_mod.tasks_ready_for_qa(db, project_id)])


@mcp.tool()
def start_qa_review(ctx: Context, task_id: str) -> dict:
    """Begin reviewing a READY_FOR_QA task."""
    db = _ctx(ctx).db
    return _result(lambda: ser.task_context_dict(qa_mod.start_review(db, task_id)))


@mcp.tool()
def complete_qa_review(
    ctx: Context,
    task_id: str,
    passed: bool,
    issues: list[str] | None = None,
    required_fixes: list[str] | None = None,
    notes: str | None = None,
) -> dict:
    """Record a QA verdict. Failures with required fixes get a fix task planned."""
    db = _ctx(ctx).db
    qa_results = {
        "passed": passed,
        "issues": issues or [],
        "requiredFixes": required_fixes or [],
        "notes": notes,
    }
    return _result(lambda: ser.review_outcome_dict(qa_mod.complete_review(db, task_id, qa_results)))


@mcp.tool()
def create_fix_task(
    ctx: Context,
    task_id: str,
    name: str | None = None,
    description: str | None = None,
) -> dict:
    """Plan a fix task for a task that failed QA."""
    db = _ctx(ctx).db
    return _result(
        lambda: ser.task_dict(qa_mod.create_fix_task(db, task_id, name=name, description=description))
    )


@mcp.tool()
def review_work_package(ctx: Context, work_package_id: str) -> dict:
    """Close a work package once all of its tasks are complete."""
    db = _ctx(ctx).db
    return _result(
        lambda: ser.work_package_review_dict(qa_mod.review_work_package(db, work_package_id))
    )
