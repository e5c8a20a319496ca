"""Role transitions: the only path by which a project's active role changes.

Roles move TRIAGE -> PLANNING -> DEVELOPMENT <-> QA -> ORCHESTRATOR. The engine
only checks that the target is one of the known roles; which moves are legal
at a given moment is decided by the phase services that call it.
"""

import logging
import sqlite3
from typing import Any

from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core import state_log
from delivery_orchestrator.core.errors import InvalidRoleError
from delivery_orchestrator.core.locks import project_lock
from delivery_orchestrator.db.engine import transaction
from delivery_orchestrator.db.models import Role

logger = logging.getLogger(__name__)


def parse_role(value: str | Role) -> Role:
    """Convert caller input to a Role, raising InvalidRoleError for anything else."""
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().upper())
    except ValueError:
        raise InvalidRoleError(str(value)) from None


def transition_role(
    db: sqlite3.Connection,
    project_id: str,
    next_role: str | Role,
    context_data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Switch the project's role and append the new state as a checkpoint.

    The project row and the state log entry are written in one transaction so
    ``Project.current_role`` always mirrors the latest ``activeRole``.
    """
    role = parse_role(next_role)
    with project_lock(project_id), transaction(db):
        projects_mod.get_project(db, project_id)
        projects_mod.set_current_role(db, project_id, role)

        head = state_log.current_entry(db, project_id)
        previous = head.state.get("activeRole")
        new_state = {
            **head.state,
            "activeRole": role.value,
            "lastTransition": {
                "from": previous,
                "to": role.value,
                "timestamp": state_log.utc_now_iso(),
            },
            "contextData": context_data or {},
        }
        state_log.append_state(
            db, project_id, new_state, checkpoint=True, expected_seq=head.seq
        )

    logger.info("Project %s: role %s -> %s", project_id, previous, role.value)
    return new_state
