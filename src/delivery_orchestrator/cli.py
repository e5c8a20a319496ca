"""CLI entry point for the delivery orchestrator."""

import json
import logging
import sys

import click

from delivery_orchestrator import serialize as ser
from delivery_orchestrator.config import get_config
from delivery_orchestrator.core import checkpoints as checkpoints_mod
from delivery_orchestrator.core import development as dev_mod
from delivery_orchestrator.core import files as files_mod
from delivery_orchestrator.core import planning as planning_mod
from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core import qa as qa_mod
from delivery_orchestrator.core import roles as roles_mod
from delivery_orchestrator.core import state_log
from delivery_orchestrator.core import tasks as tasks_mod
from delivery_orchestrator.core import triage as triage_mod
from delivery_orchestrator.core import work_packages as wp_mod
from delivery_orchestrator.core.errors import OrchestratorError
from delivery_orchestrator.db.engine import get_db
from delivery_orchestrator.db.models import ProjectStatus, WorkStatus

STATUS_ICONS = {
    WorkStatus.PLANNED: "○",
    WorkStatus.IN_PROGRESS: "●",
    WorkStatus.READY_FOR_QA: "◐",
    WorkStatus.QA_IN_PROGRESS: "◑",
    WorkStatus.COMPLETED: "✓",
    WorkStatus.FAILED: "✗",
}


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(error: Exception):
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _parse_json(value: str | None, what: str):
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"{what} must be valid JSON ({e.msg})")


def _split(value: str | None) -> list[str] | None:
    return [v.strip() for v in value.split(",") if v.strip()] if value else None


@click.group()
def main():
    """dorc - Delivery Orchestrator CLI"""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.group("project")
def project_group():
    """Manage projects and their workflow role."""
    pass


@project_group.command("init")
@click.argument("name")
@click.option("--description", "-d", default="", help="Project description")
@click.option("--objectives", "-o", default="", help="Project objectives")
def project_init(name, description, objectives):
    """Create a project in the TRIAGE role."""
    with _get_db() as db:
        try:
            project = triage_mod.initialize_project(db, name, description, objectives)
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Role: {project.current_role.value}")


@project_group.command("list")
@click.option("--status", default=None, type=click.Choice([s.value for s in ProjectStatus]))
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_list(status, json_output):
    """List projects."""
    with _get_db() as db:
        projects = projects_mod.list_projects(db, status=status)
        if json_output:
            _echo_json([ser.project_dict(p) for p in projects])
            return
        if not projects:
            click.echo("No projects found.")
            return
        for p in projects:
            click.echo(f"  {p.id}: {p.name} [{p.status.value}] role={p.current_role.value}")


@project_group.command("show")
@click.argument("project_id")
def project_show(project_id):
    """Show a project with its knowledge base."""
    with _get_db() as db:
        try:
            project = projects_mod.get_project(db, project_id)
        except OrchestratorError as e:
            _fail(e)
        _echo_json(ser.project_dict(project))


@project_group.command("update")
@click.argument("project_id")
@click.option("--name", default=None)
@click.option("--description", "-d", default=None)
@click.option("--objectives", "-o", default=None)
def project_update(project_id, name, description, objectives):
    """Edit a project's name, description or objectives."""
    with _get_db() as db:
        try:
            project = projects_mod.update_project(
                db, project_id, name=name, description=description, objectives=objectives
            )
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"Updated project {project.id} ({project.name})")


@project_group.command("status")
@click.argument("project_id")
@click.argument("status", type=click.Choice([s.value for s in ProjectStatus]))
def project_status(project_id, status):
    """Set a project's lifecycle status."""
    with _get_db() as db:
        try:
            project = projects_mod.set_project_status(db, project_id, ProjectStatus(status))
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"Project {project.id} is now {project.status.value}")


@project_group.command("transition")
@click.argument("project_id")
@click.argument("role")
@click.option("--context", default=None, help="Context data as JSON")
def project_transition(project_id, role, context):
    """Hand the project to another role."""
    context_data = _parse_json(context, "--context")
    with _get_db() as db:
        try:
            state = roles_mod.transition_role(
                db, project_id, roles_mod.parse_role(role), context_data
            )
        except OrchestratorError as e:
            _fail(e)
        transition = state["lastTransition"]
        click.echo(f"Transitioned {transition['from']} -> {transition['to']}")


@project_group.command("checkpoint")
@click.argument("project_id")
@click.option("--data", default=None, help="Checkpoint data as JSON")
def project_checkpoint(project_id, data):
    """Save a checkpoint of the current state."""
    payload = _parse_json(data, "--data")
    with _get_db() as db:
        try:
            entry = checkpoints_mod.save_checkpoint(db, project_id, payload)
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"Checkpoint saved: {entry.id} (seq {entry.seq})")


@project_group.command("resume")
@click.argument("project_id")
def project_resume(project_id):
    """Resume from the latest checkpoint and show next actions."""
    with _get_db() as db:
        try:
            info = checkpoints_mod.resume_from_checkpoint(db, project_id)
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"Role: {info.role.value}")
        click.echo(f"Checkpoint: {info.checkpoint_id}")
        click.echo("Next actions:")
        for action in info.next_actions:
            click.echo(f"  - {action}")


@project_group.command("restore")
@click.argument("project_id")
@click.argument("checkpoint_id")
def project_restore(project_id, checkpoint_id):
    """Make an earlier checkpoint the current state again."""
    with _get_db() as db:
        try:
            entry = checkpoints_mod.restore_checkpoint(db, project_id, checkpoint_id)
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"Restored checkpoint {checkpoint_id} as {entry.id} (seq {entry.seq})")
        click.echo(f"Role: {entry.state.get('activeRole')}")


@project_group.command("assess")
@click.argument("project_id")
@click.argument("assessment")
def project_assess(project_id, assessment):
    """Record the triage assessment (JSON) and move to PLANNING."""
    data = _parse_json(assessment, "ASSESSMENT")
    with _get_db() as db:
        try:
            triage_mod.record_assessment(db, project_id, data)
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"Triage recorded for {project_id}; role is now PLANNING")


@project_group.command("ask")
@click.argument("project_id")
@click.argument("questions", nargs=-1, required=True)
def project_ask(project_id, questions):
    """Record clarifying questions for the user."""
    with _get_db() as db:
        try:
            triage_mod.request_information(db, project_id, list(questions))
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"Recorded {len(questions)} question(s); waiting for user input")


@project_group.command("answer")
@click.argument("project_id")
@click.argument("responses")
def project_answer(project_id, responses):
    """Record user responses (JSON object)."""
    data = _parse_json(responses, "RESPONSES")
    with _get_db() as db:
        try:
            triage_mod.record_user_responses(db, project_id, data)
        except OrchestratorError as e:
            _fail(e)
        click.echo("Responses recorded")


@project_group.command("plan")
@click.argument("project_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_plan(project_id, json_output):
    """Show the development plan."""
    with _get_db() as db:
        try:
            plan = planning_mod.get_development_plan(db, project_id)
        except OrchestratorError as e:
            _fail(e)
        if json_output:
            _echo_json(ser.plan_dict(plan))
            return
        click.echo(f"{plan.project.name} [{plan.project.current_role.value}]")
        for planned in plan.work_packages:
            wp = planned.work_package
            click.echo(f"  {wp.wp_id} P{wp.priority} {wp.name} ({wp.status.value}, {wp.progress:.0f}%)")
            for t in planned.tasks:
                click.echo(f"    {STATUS_ICONS[t.status]} {t.task_id}: {t.name} ({t.status.value})")


@project_group.command("complete-planning")
@click.argument("project_id")
def project_complete_planning(project_id):
    """Finish planning and move to DEVELOPMENT."""
    with _get_db() as db:
        try:
            state = planning_mod.complete_planning(db, project_id)
        except OrchestratorError as e:
            _fail(e)
        context = state.get("contextData") or {}
        click.echo(
            f"Planning complete: {context.get('workPackageCount')} work packages, "
            f"{context.get('taskCount')} tasks"
        )


@project_group.command("files")
@click.argument("project_id")
def project_files(project_id):
    """List files touched by the project's tasks."""
    with _get_db() as db:
        records = files_mod.list_files(db, project_id)
        if not records:
            click.echo("No files recorded.")
            return
        for f in records:
            click.echo(f"  {f.file_path} ({len(f.modification_history)} changes)")


# ── Work Package Commands ─────────────────────────────────────────────────────


@main.group("wp")
def wp_group():
    """Manage work packages."""
    pass


@wp_group.command("add")
@click.argument("project_id")
@click.argument("name")
@click.option("--description", "-d", default="", help="Work package description")
@click.option("--priority", "-p", default=1, type=int, help="Lower runs first")
@click.option("--depends-on", default=None, help="Comma-separated WP keys")
def wp_add(project_id, name, description, priority, depends_on):
    """Create a work package."""
    with _get_db() as db:
        try:
            wp = planning_mod.create_work_package(
                db, project_id, name, description, priority, _split(depends_on)
            )
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"Created work package: {wp.wp_id} ({wp.id})")


@wp_group.command("list")
@click.argument("project_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def wp_list(project_id, json_output):
    """List work packages in scheduling order."""
    with _get_db() as db:
        wps = wp_mod.list_work_packages(db, project_id)
        if json_output:
            _echo_json([ser.work_package_dict(wp) for wp in wps])
            return
        if not wps:
            click.echo("No work packages found.")
            return
        for wp in wps:
            click.echo(
                f"  {STATUS_ICONS[wp.status]} P{wp.priority} {wp.wp_id}: {wp.name} "
                f"({wp.status.value}, {wp.progress:.0f}%)"
            )


@wp_group.command("show")
@click.argument("project_id")
@click.argument("wp_ref")
def wp_show(project_id, wp_ref):
    """Show a work package by key or ID."""
    with _get_db() as db:
        try:
            wp = wp_mod.resolve_work_package(db, wp_ref, project_id)
        except OrchestratorError as e:
            _fail(e)
        _echo_json(ser.work_package_dict(wp))


@wp_group.command("status")
@click.argument("project_id")
@click.argument("wp_ref")
@click.argument("status", type=click.Choice([s.value for s in WorkStatus]))
def wp_status(project_id, wp_ref, status):
    """Move a work package to another status."""
    with _get_db() as db:
        try:
            wp = wp_mod.resolve_work_package(db, wp_ref, project_id)
            wp = wp_mod.transition_status(db, wp.id, WorkStatus(status))
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"{wp.wp_id} is now {wp.status.value}")


@wp_group.command("review")
@click.argument("project_id")
@click.argument("wp_ref")
def wp_review(project_id, wp_ref):
    """Close a work package whose tasks are all complete."""
    with _get_db() as db:
        try:
            wp = wp_mod.resolve_work_package(db, wp_ref, project_id)
            review = qa_mod.review_work_package(db, wp.id)
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"[{review.status}] {review.message}")
        for task_id in review.incomplete_tasks:
            click.echo(f"  incomplete: {task_id}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("project_id")
@click.argument("wp_ref")
@click.argument("name")
@click.option("--file", "file_path", required=True, help="File the task changes")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--priority", "-p", default=1, type=int, help="Lower runs first")
@click.option("--depends-on", default=None, help="Comma-separated task keys")
@click.option("--criteria", default=None, help="Success criteria")
def task_add(project_id, wp_ref, name, file_path, description, priority, depends_on, criteria):
    """Create a task in a work package."""
    with _get_db() as db:
        try:
            wp = wp_mod.resolve_work_package(db, wp_ref, project_id)
            task = planning_mod.create_task(
                db,
                wp.id,
                name,
                file_path,
                description=description,
                priority=priority,
                dependencies=_split(depends_on),
                success_criteria=criteria,
            )
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"Created task: {task.task_id} ({task.id})")
        if task.dependencies:
            click.echo(f"  Depends on: {', '.join(task.dependencies)}")


@task_group.command("list")
@click.argument("project_id")
@click.option("--status", default=None, type=click.Choice([s.value for s in WorkStatus]))
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project_id, status, json_output):
    """List a project's tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project_id=project_id, status=status)
        if json_output:
            _echo_json([ser.task_dict(t) for t in tasks])
            return
        if not tasks:
            click.echo("No tasks found.")
            return
        for t in tasks:
            deps = f" [depends: {', '.join(t.dependencies)}]" if t.dependencies else ""
            click.echo(
                f"  {STATUS_ICONS[t.status]} P{t.priority} {t.task_id}: {t.name} "
                f"({t.status.value}){deps}"
            )


@task_group.command("show")
@click.argument("project_id")
@click.argument("task_ref")
def task_show(project_id, task_ref):
    """Show a task by key or ID."""
    with _get_db() as db:
        try:
            task = tasks_mod.resolve_task(db, task_ref, project_id)
        except OrchestratorError as e:
            _fail(e)
        _echo_json(ser.task_dict(task))


@task_group.command("next")
@click.argument("project_id")
def task_next(project_id):
    """Show the next task that can be started."""
    with _get_db() as db:
        try:
            report = dev_mod.get_next_task(db, project_id)
        except OrchestratorError as e:
            _fail(e)
        click.echo(report.message)
        if report.next_step:
            click.echo(f"  Next step: {report.next_step}")
        for b in report.blocked:
            click.echo(f"  {b.task.task_id} waiting on {', '.join(b.waiting_on)}")


@task_group.command("start")
@click.argument("project_id")
@click.argument("task_ref")
def task_start(project_id, task_ref):
    """Start a task once its dependencies are complete."""
    with _get_db() as db:
        try:
            task = tasks_mod.resolve_task(db, task_ref, project_id)
            update = dev_mod.start_task(db, task.id)
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"Started {update.task.task_id}: {update.task.name}")


@task_group.command("complete")
@click.argument("project_id")
@click.argument("task_ref")
@click.option("--changes", default=None, help="Summary of the changes made")
def task_complete(project_id, task_ref, changes):
    """Mark a task ready for QA."""
    with _get_db() as db:
        try:
            task = tasks_mod.resolve_task(db, task_ref, project_id)
            update = dev_mod.complete_task(db, task.id, {"changes": changes})
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"{update.task.task_id} is ready for QA")
        click.echo(f"  Role: {update.state.get('activeRole')}")


@task_group.command("status")
@click.argument("project_id")
@click.argument("task_ref")
@click.argument("status", type=click.Choice([s.value for s in WorkStatus]))
def task_status(project_id, task_ref, status):
    """Change a task's status directly."""
    with _get_db() as db:
        try:
            task = tasks_mod.resolve_task(db, task_ref, project_id)
            update = dev_mod.update_task_status(db, task.id, WorkStatus(status))
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"{update.task.task_id} is now {update.task.status.value}")


@task_group.command("deps")
@click.argument("project_id")
@click.argument("task_ref")
@click.argument("dependencies", default="")
def task_deps(project_id, task_ref, dependencies):
    """Replace a task's dependencies (comma-separated keys; empty clears)."""
    with _get_db() as db:
        try:
            task = tasks_mod.resolve_task(db, task_ref, project_id)
            task = planning_mod.update_task_dependencies(db, task.id, _split(dependencies) or [])
        except OrchestratorError as e:
            _fail(e)
        deps = ", ".join(task.dependencies) or "none"
        click.echo(f"{task.task_id} depends on: {deps}")


@task_group.command("checkpoint")
@click.argument("project_id")
@click.argument("task_ref")
@click.argument("data")
def task_checkpoint(project_id, task_ref, data):
    """Checkpoint in-flight work (JSON) on an IN_PROGRESS task."""
    payload = _parse_json(data, "DATA")
    with _get_db() as db:
        try:
            task = tasks_mod.resolve_task(db, task_ref, project_id)
            entry = dev_mod.save_implementation_checkpoint(db, task.id, payload)
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"Checkpoint saved: {entry.id} (seq {entry.seq})")


@task_group.command("resume")
@click.argument("project_id")
@click.argument("task_ref")
def task_resume(project_id, task_ref):
    """Show the context needed to pick a task back up."""
    with _get_db() as db:
        try:
            task = tasks_mod.resolve_task(db, task_ref, project_id)
            context = dev_mod.resume_task(db, task.id)
        except OrchestratorError as e:
            _fail(e)
        _echo_json(ser.task_context_dict(context))


# ── QA Commands ───────────────────────────────────────────────────────────────


@main.group("qa")
def qa_group():
    """Review tasks."""
    pass


@qa_group.command("list")
@click.argument("project_id")
def qa_list(project_id):
    """List tasks waiting for QA."""
    with _get_db() as db:
        tasks = qa_mod.tasks_ready_for_qa(db, project_id)
        if not tasks:
            click.echo("No tasks waiting for QA.")
            return
        for t in tasks:
            click.echo(f"  {t.task_id}: {t.name} ({t.file_path})")


@qa_group.command("start")
@click.argument("project_id")
@click.argument("task_ref")
def qa_start(project_id, task_ref):
    """Begin reviewing a task."""
    with _get_db() as db:
        try:
            task = tasks_mod.resolve_task(db, task_ref, project_id)
            context = qa_mod.start_review(db, task.id)
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"Reviewing {context.task.task_id}: {context.task.name}")
        if context.task.success_criteria:
            click.echo(f"  Criteria: {context.task.success_criteria}")


@qa_group.command("complete")
@click.argument("project_id")
@click.argument("task_ref")
@click.option("--pass/--fail", "passed", default=None, help="QA verdict")
@click.option("--issue", "issues", multiple=True, help="Issue found (repeatable)")
@click.option("--fix", "fixes", multiple=True, help="Required fix (repeatable)")
@click.option("--notes", default=None)
def qa_complete(project_id, task_ref, passed, issues, fixes, notes):
    """Record a QA verdict."""
    if passed is None:
        raise click.UsageError("Give a verdict with --pass or --fail")
    qa_results = {
        "passed": passed,
        "issues": list(issues),
        "requiredFixes": list(fixes),
        "notes": notes,
    }
    with _get_db() as db:
        try:
            task = tasks_mod.resolve_task(db, task_ref, project_id)
            outcome = qa_mod.complete_review(db, task.id, qa_results)
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"{outcome.task.task_id} is now {outcome.task.status.value}")
        if outcome.fix_task:
            click.echo(f"  Fix task planned: {outcome.fix_task.task_id}")
        click.echo(f"  Role: {outcome.state.get('activeRole')}")


@qa_group.command("fix")
@click.argument("project_id")
@click.argument("task_ref")
@click.option("--name", default=None)
@click.option("--description", "-d", default=None)
def qa_fix(project_id, task_ref, name, description):
    """Plan a fix task for a failed task."""
    with _get_db() as db:
        try:
            task = tasks_mod.resolve_task(db, task_ref, project_id)
            fix = qa_mod.create_fix_task(db, task.id, name=name, description=description)
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"Created fix task: {fix.task_id} ({fix.id})")


# ── State Commands ────────────────────────────────────────────────────────────


@main.group("state")
def state_group():
    """Inspect the project state log."""
    pass


@state_group.command("current")
@click.argument("project_id")
def state_current(project_id):
    """Show the latest recorded state."""
    with _get_db() as db:
        try:
            state = state_log.current_state(db, project_id)
        except OrchestratorError as e:
            _fail(e)
        _echo_json(state)


@state_group.command("history")
@click.argument("project_id")
@click.option("--limit", "-n", default=None, type=click.IntRange(min=0), help="Number of entries")
@click.option("--offset", default=0, type=click.IntRange(min=0))
def state_history(project_id, limit, offset):
    """List recorded states, newest first."""
    config = get_config()
    limit = limit if limit is not None else config.history_limit
    with _get_db() as db:
        entries = state_log.history(db, project_id, limit, offset)
        total = state_log.count_entries(db, project_id)
        if not entries:
            click.echo("No state entries found.")
            return
        for e in entries:
            marker = " [checkpoint]" if e.checkpoint else ""
            click.echo(
                f"  #{e.seq} {e.timestamp.isoformat()} {e.state.get('activeRole')} {e.id}{marker}"
            )
        click.echo(f"Showing {len(entries)} of {total}")


@state_group.command("checkpoints")
@click.argument("project_id")
def state_checkpoints(project_id):
    """List checkpoints, newest first."""
    with _get_db() as db:
        entries = state_log.checkpoints(db, project_id)
        if not entries:
            click.echo("No checkpoints found.")
            return
        for e in entries:
            click.echo(f"  #{e.seq} {e.timestamp.isoformat()} {e.id}")


@state_group.command("show")
@click.argument("entry_id")
def state_show(entry_id):
    """Show a single state entry."""
    with _get_db() as db:
        try:
            entry = state_log.get_entry(db, entry_id)
        except OrchestratorError as e:
            _fail(e)
        _echo_json(ser.state_entry_dict(entry))


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the HTTP API."""
    from delivery_orchestrator.web.app import run_server

    config = get_config()
    host = host or config.host
    port = port or config.port
    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from delivery_orchestrator.mcp.server import mcp
    from delivery_orchestrator.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
