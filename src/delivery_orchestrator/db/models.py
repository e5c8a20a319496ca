"""Data models for the delivery orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Role(str, Enum):
    TRIAGE = "TRIAGE"
    PLANNING = "PLANNING"
    DEVELOPMENT = "DEVELOPMENT"
    QA = "QA"
    ORCHESTRATOR = "ORCHESTRATOR"


class ProjectStatus(str, Enum):
    PLANNING = "PLANNING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ON_HOLD = "ON_HOLD"


class WorkStatus(str, Enum):
    """Lifecycle shared by work packages and tasks."""

    PLANNED = "PLANNED"
    IN_PROGRESS = "IN_PROGRESS"
    READY_FOR_QA = "READY_FOR_QA"
    QA_IN_PROGRESS = "QA_IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Statuses a task may be started from.
STARTABLE = frozenset({WorkStatus.PLANNED, WorkStatus.FAILED})

# Statuses that mean development is done and only QA remains.
AWAITING_QA_OR_DONE = frozenset({
    WorkStatus.COMPLETED,
    WorkStatus.READY_FOR_QA,
    WorkStatus.QA_IN_PROGRESS,
})


@dataclass
class Project:
    id: str
    name: str
    description: str = ""
    objectives: str = ""
    status: ProjectStatus = ProjectStatus.PLANNING
    current_role: Role = Role.TRIAGE
    knowledge_base: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class WorkPackage:
    id: str
    wp_id: str
    project_id: str
    name: str
    description: str = ""
    priority: int = 1
    status: WorkStatus = WorkStatus.PLANNED
    progress: float = 0.0
    dependencies: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    task_id: str
    work_package_id: str
    project_id: str
    name: str
    description: str = ""
    file_path: str | None = None
    changes: Any = None
    success_criteria: str | None = None
    qa_results: dict[str, Any] | None = None
    status: WorkStatus = WorkStatus.PLANNED
    dependencies: list[str] = field(default_factory=list)
    priority: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class StateEntry:
    id: str
    project_id: str
    seq: int
    timestamp: datetime
    checkpoint: bool
    state: dict[str, Any] = field(default_factory=dict)


@dataclass
class FileRecord:
    id: str
    project_id: str
    file_path: str
    current_state: Any = None
    modification_history: list[dict[str, Any]] = field(default_factory=list)
    last_modified_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
