"""Plain-dict views of core records for the HTTP, MCP and CLI surfaces."""

from datetime import datetime
from typing import Any

from delivery_orchestrator.core.checkpoints import ResumeInfo
from delivery_orchestrator.core.development import TaskContext, TaskUpdate
from delivery_orchestrator.core.planning import DevelopmentPlan, plan_summary
from delivery_orchestrator.core.qa import ReviewOutcome, WorkPackageReview
from delivery_orchestrator.core.scheduler import NextTaskReport
from delivery_orchestrator.db.models import (
    FileRecord,
    Project,
    StateEntry,
    Task,
    WorkPackage,
)


def ok(data: Any) -> dict:
    return {"success": True, "data": data}


def fail(error: Exception | str) -> dict:
    return {"success": False, "error": str(error)}


def project_dict(p: Project) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "objectives": p.objectives,
        "status": p.status.value,
        "current_role": p.current_role.value,
        "knowledge_base": p.knowledge_base,
        "created_at": _iso(p.created_at),
        "updated_at": _iso(p.updated_at),
    }


def work_package_dict(wp: WorkPackage) -> dict:
    return {
        "id": wp.id,
        "wp_id": wp.wp_id,
        "project_id": wp.project_id,
        "name": wp.name,
        "description": wp.description,
        "priority": wp.priority,
        "status": wp.status.value,
        "progress": wp.progress,
        "dependencies": wp.dependencies,
        "created_at": _iso(wp.created_at),
        "updated_at": _iso(wp.updated_at),
    }


def task_dict(t: Task) -> dict:
    return {
        "id": t.id,
        "task_id": t.task_id,
        "work_package_id": t.work_package_id,
        "project_id": t.project_id,
        "name": t.name,
        "description": t.description,
        "file_path": t.file_path,
        "changes": t.changes,
        "success_criteria": t.success_criteria,
        "qa_results": t.qa_results,
        "status": t.status.value,
        "dependencies": t.dependencies,
        "priority": t.priority,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
    }


def state_entry_dict(e: StateEntry) -> dict:
    return {
        "id": e.id,
        "project_id": e.project_id,
        "seq": e.seq,
        "timestamp": _iso(e.timestamp),
        "checkpoint": e.checkpoint,
        "state": e.state,
    }


def file_dict(f: FileRecord) -> dict:
    return {
        "id": f.id,
        "file_path": f.file_path,
        "current_state": f.current_state,
        "modification_history": f.modification_history,
        "last_modified_by": f.last_modified_by,
    }


def resume_dict(r: ResumeInfo) -> dict:
    return {
        "role": r.role.value,
        "state": r.state,
        "next_actions": r.next_actions,
        "checkpoint_id": r.checkpoint_id,
    }


def task_update_dict(u: TaskUpdate) -> dict:
    return {"task": task_dict(u.task), "state": u.state}


def task_context_dict(c: TaskContext) -> dict:
    return {
        "task": task_dict(c.task),
        "work_package": work_package_dict(c.work_package),
        "file_state": c.file_state,
        "file_history": c.file_history,
        "implementation_context": c.implementation_context,
    }


def next_task_dict(r: NextTaskReport) -> dict:
    return {
        "task": task_dict(r.task) if r.task else None,
        "message": r.message,
        "next_step": r.next_step,
        "blocked_tasks": [
            {"task_id": b.task.task_id, "waiting_on": b.waiting_on} for b in r.blocked
        ],
    }


def review_outcome_dict(o: ReviewOutcome) -> dict:
    return {
        "task": task_dict(o.task),
        "state": o.state,
        "fix_task": task_dict(o.fix_task) if o.fix_task else None,
    }


def work_package_review_dict(r: WorkPackageReview) -> dict:
    return {
        "status": r.status,
        "message": r.message,
        "work_package": work_package_dict(r.work_package),
        "incomplete_tasks": r.incomplete_tasks,
    }


def plan_dict(plan: DevelopmentPlan) -> dict:
    return {
        "project": project_dict(plan.project),
        "plan": [
            {**work_package_dict(p.work_package), "tasks": [task_dict(t) for t in p.tasks]}
            for p in plan.work_packages
        ],
        "summary": plan_summary(plan),
    }


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None
