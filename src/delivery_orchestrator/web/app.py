"""HTTP API for the delivery orchestrator."""

import json
import logging

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from delivery_orchestrator import serialize as ser
from delivery_orchestrator.config import get_config
from delivery_orchestrator.core import checkpoints as checkpoints_mod
from delivery_orchestrator.core import development as dev_mod
from delivery_orchestrator.core import planning as planning_mod
from delivery_orchestrator.core import progress as progress_mod
from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core import qa as qa_mod
from delivery_orchestrator.core import roles as roles_mod
from delivery_orchestrator.core import state_log
from delivery_orchestrator.core import tasks as tasks_mod
from delivery_orchestrator.core import triage as triage_mod
from delivery_orchestrator.core import work_packages as wp_mod
from delivery_orchestrator.core.errors import (
    DependencyCycleError,
    EmptyWorkPackageError,
    InvalidTransitionError,
    NoCheckpointFoundError,
    NoStateFoundError,
    NotFoundError,
    OrchestratorError,
    StateConflictError,
    UnsatisfiedDependencyError,
    ValidationError,
)
from delivery_orchestrator.db.engine import init_db
from delivery_orchestrator.db.models import ProjectStatus, WorkStatus

logger = logging.getLogger(__name__)


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _status_for(error: OrchestratorError) -> int:
    match error:
        case NotFoundError():
            return 404
        case ValidationError():
            return 400
        case (
            InvalidTransitionError()
            | UnsatisfiedDependencyError()
            | DependencyCycleError()
            | EmptyWorkPackageError()
            | StateConflictError()
        ):
            return 409
        case NoStateFoundError() | NoCheckpointFoundError():
            return 500
        case _:
            return 500


def _run(op, status_code: int = 200) -> JSONResponse:
    """Run ``op(db)`` on a fresh connection and wrap the outcome as a Result."""
    db = _get_db()
    try:
        return JSONResponse(ser.ok(op(db)), status_code=status_code)
    except OrchestratorError as e:
        if isinstance(e, (NoStateFoundError, NoCheckpointFoundError)):
            logger.error("State log integrity problem: %s", e)
        return JSONResponse(ser.fail(e), status_code=_status_for(e))
    except (TypeError, ValueError) as e:
        return JSONResponse(ser.fail(e), status_code=400)
    except Exception:
        logger.exception("Unhandled error in %s", getattr(op, "__qualname__", op))
        raise
    finally:
        db.close()


async def _body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON body: {e.msg}") from e
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require(body: dict, *fields: str) -> None:
    missing = [f for f in fields if not body.get(f)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def _parse_work_status(value) -> WorkStatus:
    try:
        return WorkStatus(str(value).upper())
    except ValueError:
        raise ValidationError(f"Unknown status: {value}") from None


def _bad_request(error: ValidationError) -> JSONResponse:
    return JSONResponse(ser.fail(error), status_code=400)


# ── Project Handlers ──────────────────────────────────────────────────────────


async def api_create_project(request: Request):
    try:
        body = await _body(request)
        _require(body, "name")
    except ValidationError as e:
        return _bad_request(e)
    return _run(
        lambda db: ser.project_dict(
            triage_mod.initialize_project(
                db, body["name"], body.get("description", ""), body.get("objectives", "")
            )
        ),
        status_code=201,
    )


async def api_list_projects(request: Request):
    return _run(lambda db: [ser.project_dict(p) for p in projects_mod.list_projects(db)])


async def api_get_project(request: Request):
    project_id = request.path_params["project_id"]
    return _run(lambda db: ser.project_dict(projects_mod.get_project(db, project_id)))


async def api_update_project(request: Request):
    project_id = request.path_params["project_id"]
    try:
        body = await _body(request)
    except ValidationError as e:
        return _bad_request(e)
    return _run(lambda db: ser.project_dict(projects_mod.update_project(db, project_id, **body)))


async def api_triage_assessment(request: Request):
    project_id = request.path_params["project_id"]
    try:
        body = await _body(request)
        _require(body, "assessment")
    except ValidationError as e:
        return _bad_request(e)
    return _run(lambda db: triage_mod.record_assessment(db, project_id, body["assessment"]))


async def api_triage_request(request: Request):
    project_id = request.path_params["project_id"]
    try:
        body = await _body(request)
        _require(body, "questions")
    except ValidationError as e:
        return _bad_request(e)
    return _run(lambda db: triage_mod.request_information(db, project_id, body["questions"]))


async def api_triage_response(request: Request):
    project_id = request.path_params["project_id"]
    try:
        body = await _body(request)
        _require(body, "responses")
    except ValidationError as e:
        return _bad_request(e)
    return _run(lambda db: triage_mod.record_user_responses(db, project_id, body["responses"]))


async def api_resume_project(request: Request):
    project_id = request.path_params["project_id"]
    return _run(
        lambda db: ser.resume_dict(checkpoints_mod.resume_from_checkpoint(db, project_id))
    )


async def api_create_checkpoint(request: Request):
    project_id = request.path_params["project_id"]
    try:
        body = await _body(request)
    except ValidationError as e:
        return _bad_request(e)
    return _run(
        lambda db: ser.state_entry_dict(
            checkpoints_mod.save_checkpoint(db, project_id, body.get("data") or {})
        ),
        status_code=201,
    )


async def api_restore_checkpoint(request: Request):
    project_id = request.path_params["project_id"]
    try:
        body = await _body(request)
        _require(body, "checkpoint_id")
    except ValidationError as e:
        return _bad_request(e)
    return _run(
        lambda db: ser.state_entry_dict(
            checkpoints_mod.restore_checkpoint(db, project_id, body["checkpoint_id"])
        )
    )


async def api_transition_role(request: Request):
    project_id = request.path_params["project_id"]
    try:
        body = await _body(request)
        _require(body, "next_role")
        role = roles_mod.parse_role(body["next_role"])
    except ValidationError as e:
        return _bad_request(e)
    return _run(
        lambda db: roles_mod.transition_role(db, project_id, role, body.get("context_data"))
    )


async def api_update_project_status(request: Request):
    project_id = request.path_params["project_id"]
    try:
        body = await _body(request)
        _require(body, "status")
        try:
            status = ProjectStatus(str(body["status"]).upper())
        except ValueError:
            raise ValidationError(f"Unknown status: {body['status']}") from None
    except ValidationError as e:
        return _bad_request(e)
    return _run(
        lambda db: ser.project_dict(projects_mod.set_project_status(db, project_id, status))
    )


async def api_complete_planning(request: Request):
    project_id = request.path_params["project_id"]
    return _run(lambda db: planning_mod.complete_planning(db, project_id))


async def api_development_plan(request: Request):
    project_id = request.path_params["project_id"]
    return _run(lambda db: ser.plan_dict(planning_mod.get_development_plan(db, project_id)))


async def api_next_task(request: Request):
    project_id = request.path_params["project_id"]
    return _run(lambda db: ser.next_task_dict(dev_mod.get_next_task(db, project_id)))


async def api_tasks_for_qa(request: Request):
    project_id = request.path_params["project_id"]
    return _run(
        lambda db: [ser.task_dict(t) for t in qa_mod.tasks_ready_for_qa(db, project_id)]
    )


async def api_reconcile_project(request: Request):
    project_id = request.path_params["project_id"]

    def op(db):
        projects_mod.get_project(db, project_id)
        return [ser.work_package_dict(wp) for wp in progress_mod.reconcile_project(db, project_id)]

    return _run(op)


# ── Work Package Handlers ─────────────────────────────────────────────────────


async def api_create_work_package(request: Request):
    project_id = request.path_params["project_id"]
    try:
        body = await _body(request)
        _require(body, "name")
    except ValidationError as e:
        return _bad_request(e)
    return _run(
        lambda db: ser.work_package_dict(
            planning_mod.create_work_package(
                db,
                project_id,
                body["name"],
                body.get("description", ""),
                int(body.get("priority", 1)),
                body.get("dependencies"),
            )
        ),
        status_code=201,
    )


async def api_list_work_packages(request: Request):
    project_id = request.path_params["project_id"]

    def op(db):
        projects_mod.get_project(db, project_id)
        return [ser.work_package_dict(wp) for wp in wp_mod.list_work_packages(db, project_id)]

    return _run(op)


async def api_get_work_package(request: Request):
    wp_pk = request.path_params["wp_pk"]
    return _run(lambda db: ser.work_package_dict(wp_mod.get_work_package(db, wp_pk)))


async def api_update_work_package(request: Request):
    wp_pk = request.path_params["wp_pk"]
    try:
        body = await _body(request)
    except ValidationError as e:
        return _bad_request(e)
    return _run(
        lambda db: ser.work_package_dict(planning_mod.update_work_package(db, wp_pk, **body))
    )


async def api_update_work_package_status(request: Request):
    wp_pk = request.path_params["wp_pk"]
    try:
        body = await _body(request)
        _require(body, "status")
        status = _parse_work_status(body["status"])
    except ValidationError as e:
        return _bad_request(e)
    return _run(lambda db: ser.work_package_dict(wp_mod.transition_status(db, wp_pk, status)))


async def api_review_work_package(request: Request):
    wp_pk = request.path_params["wp_pk"]
    return _run(lambda db: ser.work_package_review_dict(qa_mod.review_work_package(db, wp_pk)))


async def api_work_package_progress(request: Request):
    wp_pk = request.path_params["wp_pk"]

    def op(db):
        wp = wp_mod.get_work_package(db, wp_pk)
        tasks = tasks_mod.list_tasks(db, work_package_id=wp_pk)
        counts = {status.value: 0 for status in WorkStatus}
        for t in tasks:
            counts[t.status.value] += 1
        return {
            "wp_id": wp.wp_id,
            "status": wp.status.value,
            "progress": wp.progress,
            "total": len(tasks),
            "counts": counts,
        }

    return _run(op)


# ── Task Handlers ─────────────────────────────────────────────────────────────


async def api_create_task(request: Request):
    wp_pk = request.path_params["wp_pk"]
    try:
        body = await _body(request)
        _require(body, "name", "file_path")
    except ValidationError as e:
        return _bad_request(e)
    return _run(
        lambda db: ser.task_dict(
            planning_mod.create_task(
                db,
                wp_pk,
                body["name"],
                body["file_path"],
                description=body.get("description", ""),
                priority=int(body.get("priority", 1)),
                dependencies=body.get("dependencies"),
                success_criteria=body.get("success_criteria"),
            )
        ),
        status_code=201,
    )


async def api_list_tasks(request: Request):
    wp_pk = request.path_params["wp_pk"]
    status_filter = request.query_params.get("status")
    try:
        status = _parse_work_status(status_filter) if status_filter else None
    except ValidationError as e:
        return _bad_request(e)

    def op(db):
        wp_mod.get_work_package(db, wp_pk)
        return [ser.task_dict(t) for t in tasks_mod.list_tasks(db, work_package_id=wp_pk, status=status)]

    return _run(op)


async def api_get_task(request: Request):
    task_pk = request.path_params["task_pk"]
    return _run(lambda db: ser.task_dict(tasks_mod.get_task(db, task_pk)))


async def api_update_task(request: Request):
    task_pk = request.path_params["task_pk"]
    try:
        body = await _body(request)
    except ValidationError as e:
        return _bad_request(e)
    return _run(lambda db: ser.task_dict(planning_mod.update_task(db, task_pk, **body)))


async def api_update_task_status(request: Request):
    task_pk = request.path_params["task_pk"]
    try:
        body = await _body(request)
        _require(body, "status")
        status = _parse_work_status(body["status"])
    except ValidationError as e:
        return _bad_request(e)
    return _run(
        lambda db: ser.task_update_dict(
            dev_mod.update_task_status(db, task_pk, status, body.get("qa_results"))
        )
    )


async def api_start_task(request: Request):
    task_pk = request.path_params["task_pk"]
    return _run(lambda db: ser.task_update_dict(dev_mod.start_task(db, task_pk)))


async def api_complete_task(request: Request):
    task_pk = request.path_params["task_pk"]
    try:
        body = await _body(request)
    except ValidationError as e:
        return _bad_request(e)
    return _run(lambda db: ser.task_update_dict(dev_mod.complete_task(db, task_pk, body)))


async def api_task_checkpoint(request: Request):
    task_pk = request.path_params["task_pk"]
    try:
        body = await _body(request)
    except ValidationError as e:
        return _bad_request(e)
    return _run(
        lambda db: ser.state_entry_dict(dev_mod.save_implementation_checkpoint(db, task_pk, body)),
        status_code=201,
    )


async def api_resume_task(request: Request):
    task_pk = request.path_params["task_pk"]
    return _run(lambda db: ser.task_context_dict(dev_mod.resume_task(db, task_pk)))


async def api_start_qa(request: Request):
    task_pk = request.path_params["task_pk"]
    return _run(lambda db: ser.task_context_dict(qa_mod.start_review(db, task_pk)))


async def api_complete_qa(request: Request):
    task_pk = request.path_params["task_pk"]
    try:
        body = await _body(request)
        if "passed" not in body:
            raise ValidationError("Missing required fields: passed")
    except ValidationError as e:
        return _bad_request(e)
    return _run(lambda db: ser.review_outcome_dict(qa_mod.complete_review(db, task_pk, body)))


async def api_create_fix_task(request: Request):
    task_pk = request.path_params["task_pk"]
    try:
        body = await _body(request)
    except ValidationError as e:
        return _bad_request(e)
    return _run(
        lambda db: ser.task_dict(
            qa_mod.create_fix_task(
                db,
                task_pk,
                name=body.get("name"),
                description=body.get("description"),
                success_criteria=body.get("success_criteria"),
            )
        ),
        status_code=201,
    )


# ── State Handlers ────────────────────────────────────────────────────────────


async def api_current_state(request: Request):
    project_id = request.path_params["project_id"]
    return _run(lambda db: state_log.current_state(db, project_id))


async def api_state_history(request: Request):
    project_id = request.path_params["project_id"]
    try:
        limit = int(request.query_params.get("limit", get_config().history_limit))
        offset = int(request.query_params.get("offset", 0))
    except ValueError:
        return _bad_request(ValidationError("limit and offset must be integers"))
    return _run(
        lambda db: [
            ser.state_entry_dict(e) for e in state_log.history(db, project_id, limit, offset)
        ]
    )


async def api_state_checkpoints(request: Request):
    project_id = request.path_params["project_id"]
    return _run(lambda db: [ser.state_entry_dict(e) for e in state_log.checkpoints(db, project_id)])


async def api_get_state(request: Request):
    entry_id = request.path_params["entry_id"]
    return _run(lambda db: ser.state_entry_dict(state_log.get_entry(db, entry_id)))


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/projects", api_create_project, methods=["POST"]),
        Route("/api/projects", api_list_projects, methods=["GET"]),
        Route("/api/projects/{project_id}", api_get_project, methods=["GET"]),
        Route("/api/projects/{project_id}", api_update_project, methods=["PATCH"]),
        Route("/api/projects/{project_id}/triage", api_triage_assessment, methods=["POST"]),
        Route("/api/projects/{project_id}/triage/request", api_triage_request, methods=["POST"]),
        Route("/api/projects/{project_id}/triage/response", api_triage_response, methods=["POST"]),
        Route("/api/projects/{project_id}/resume", api_resume_project, methods=["POST"]),
        Route("/api/projects/{project_id}/checkpoint", api_create_checkpoint, methods=["POST"]),
        Route("/api/projects/{project_id}/restore", api_restore_checkpoint, methods=["POST"]),
        Route("/api/projects/{project_id}/transition", api_transition_role, methods=["POST"]),
        Route("/api/projects/{project_id}/status", api_update_project_status, methods=["PATCH"]),
        Route("/api/projects/{project_id}/planning/complete", api_complete_planning, methods=["POST"]),
        Route("/api/projects/{project_id}/plan", api_development_plan, methods=["GET"]),
        Route("/api/projects/{project_id}/next-task", api_next_task, methods=["GET"]),
        Route("/api/projects/{project_id}/qa", api_tasks_for_qa, methods=["GET"]),
        Route("/api/projects/{project_id}/reconcile", api_reconcile_project, methods=["POST"]),
        Route("/api/projects/{project_id}/work-packages", api_create_work_package, methods=["POST"]),
        Route("/api/projects/{project_id}/work-packages", api_list_work_packages, methods=["GET"]),
        Route("/api/work-packages/{wp_pk}", api_get_work_package, methods=["GET"]),
        Route("/api/work-packages/{wp_pk}", api_update_work_package, methods=["PATCH"]),
        Route("/api/work-packages/{wp_pk}/status", api_update_work_package_status, methods=["PATCH"]),
        Route("/api/work-packages/{wp_pk}/review", api_review_work_package, methods=["POST"]),
        Route("/api/work-packages/{wp_pk}/progress", api_work_package_progress, methods=["GET"]),
        Route("/api/work-packages/{wp_pk}/tasks", api_create_task, methods=["POST"]),
        Route("/api/work-packages/{wp_pk}/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks/{task_pk}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_pk}", api_update_task, methods=["PATCH"]),
        Route("/api/tasks/{task_pk}/status", api_update_task_status, methods=["PATCH"]),
        Route("/api/tasks/{task_pk}/start", api_start_task, methods=["POST"]),
        Route("/api/tasks/{task_pk}/complete", api_complete_task, methods=["POST"]),
        Route("/api/tasks/{task_pk}/checkpoint", api_task_checkpoint, methods=["POST"]),
        Route("/api/tasks/{task_pk}/resume", api_resume_task, methods=["GET"]),
        Route("/api/tasks/{task_pk}/qa/start", api_start_qa, methods=["POST"]),
        Route("/api/tasks/{task_pk}/qa/complete", api_complete_qa, methods=["POST"]),
        Route("/api/tasks/{task_pk}/fix", api_create_fix_task, methods=["POST"]),
        Route("/api/states/project/{project_id}/current", api_current_state, methods=["GET"]),
        Route("/api/states/project/{project_id}/history", api_state_history, methods=["GET"]),
        Route("/api/states/project/{project_id}/checkpoints", api_state_checkpoints, methods=["GET"]),
        Route("/api/states/{entry_id}", api_get_state, methods=["GET"]),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
