"""Triage phase: project intake, assessment, and clarifying questions."""

import logging
import sqlite3
from typing import Any

from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core import roles
from delivery_orchestrator.core import state_log
from delivery_orchestrator.core.locks import project_lock
from delivery_orchestrator.db.engine import transaction
from delivery_orchestrator.db.models import Project, Role

logger = logging.getLogger(__name__)


def initialize_project(
    db: sqlite3.Connection,
    name: str,
    description: str = "",
    objectives: str = "",
) -> Project:
    """Create a project and its initial checkpointed state in the TRIAGE role."""
    with transaction(db):
        project = projects_mod.create_project(db, name, description, objectives)
        state_log.append_state(
            db,
            project.id,
            {
                "activeRole": Role.TRIAGE.value,
                "workPackages": [],
                "tasks": [],
                "pendingActions": ["Complete Triage"],
                "knowledgeBase": {},
            },
            checkpoint=True,
        )
    logger.info("Project %s (%s) initialized", project.id, project.name)
    return project


def record_assessment(
    db: sqlite3.Connection,
    project_id: str,
    assessment: dict[str, Any],
) -> dict[str, Any]:
    """Store the triage assessment and hand the project over to planning."""
    with project_lock(project_id), transaction(db):
        projects_mod.merge_knowledge(db, project_id, {"triageAssessment": assessment})
        state_log.update_state(
            db,
            project_id,
            {
                "triageComplete": True,
                "triageAssessment": assessment,
                "pendingActions": ["Create development plan"],
            },
            checkpoint=True,
        )
        return roles.transition_role(
            db, project_id, Role.PLANNING, {"triageAssessment": assessment}
        )


def request_information(
    db: sqlite3.Connection,
    project_id: str,
    questions: list[str],
) -> dict[str, Any]:
    """Park the project until the user answers ``questions``."""
    with project_lock(project_id), transaction(db):
        projects_mod.get_project(db, project_id)
        entry = state_log.update_state(
            db,
            project_id,
            {"pendingQuestions": list(questions), "waitingForUserInput": True},
        )
    return entry.state


def record_user_responses(
    db: sqlite3.Connection,
    project_id: str,
    responses: dict[str, Any],
) -> dict[str, Any]:
    """Merge user answers into the knowledge base and clear the pending questions."""
    with project_lock(project_id), transaction(db):
        project = projects_mod.get_project(db, project_id)
        previous = project.knowledge_base.get("userResponses") or {}
        projects_mod.merge_knowledge(
            db, project_id, {"userResponses": {**previous, **responses}}
        )
        entry = state_log.update_state(
            db,
            project_id,
            {
                "pendingQuestions": [],
                "waitingForUserInput": False,
                "latestResponses": responses,
            },
        )
    return entry.state
