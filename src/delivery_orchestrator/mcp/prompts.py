"""MCP prompt templates for each workflow role."""

from delivery_orchestrator.mcp.server import mcp


@mcp.prompt()
def triage_project(project_id: str) -> str:
    """Generate a prompt to assess a newly initialized project."""
    return (
        f"You are acting as the TRIAGE role for project '{project_id}'.\n\n"
        f"Use get_project to read the description and objectives, then:\n"
        f"1. Identify the scope and the main components involved\n"
        f"2. List open questions and use request_information if anything is unclear\n"
        f"3. Estimate complexity and note any risks\n\n"
        f"When the assessment is ready, call record_triage_assessment to hand over to planning."
    )


@mcp.prompt()
def plan_project(project_id: str) -> str:
    """Generate a prompt to break a triaged project into work packages and tasks."""
    return (
        f"You are acting as the PLANNING role for project '{project_id}'.\n\n"
        f"Read the triage assessment with get_project_state. Then:\n"
        f"1. Use create_work_package for each coherent chunk of work, lowest priority number first\n"
        f"2. Use create_task for each file-level change, with clear success criteria\n"
        f"3. Declare dependencies between tasks using their keys, such as WP001-01\n\n"
        f"Review the result with get_development_plan, then call complete_planning."
    )


@mcp.prompt()
def develop_next_task(project_id: str) -> str:
    """Generate a prompt to pick up the next development task."""
    return (
        f"You are acting as the DEVELOPMENT role for project '{project_id}'.\n\n"
        f"1. Use get_next_task to find a task whose dependencies are complete\n"
        f"2. Call start_task, then implement the change in the task's file\n"
        f"3. Use save_task_checkpoint at meaningful milestones\n"
        f"4. Call complete_task with a summary of the changes when done\n\n"
        f"If work was interrupted, use resume_project and resume_task first."
    )


@mcp.prompt()
def review_tasks(project_id: str) -> str:
    """Generate a prompt to run QA over tasks that are ready for review."""
    return (
        f"You are acting as the QA role for project '{project_id}'.\n\n"
        f"Use get_tasks_for_qa to list pending reviews. For each task:\n"
        f"1. Call start_qa_review and check the changes against the success criteria\n"
        f"2. Call complete_qa_review with passed, issues and required_fixes\n\n"
        f"When every task in a work package passes, call review_work_package."
    )
