"""Typed errors raised by the orchestration core."""


class OrchestratorError(Exception):
    """Base class for every error the core surfaces to its callers."""


class NotFoundError(OrchestratorError, LookupError):
    kind = "Record"

    def __init__(self, ident: str):
        self.ident = ident
        super().__init__(f"{self.kind} not found: {ident}")


class ProjectNotFoundError(NotFoundError):
    kind = "Project"


class WorkPackageNotFoundError(NotFoundError):
    kind = "Work package"


class TaskNotFoundError(NotFoundError):
    kind = "Task"


class StateEntryNotFoundError(NotFoundError):
    kind = "State"


class NoStateFoundError(OrchestratorError):
    """A project has no state log entries. Indicates a data-integrity problem."""

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"No state found for project: {project_id}")


class NoCheckpointFoundError(OrchestratorError):
    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"No checkpoint found for project: {project_id}")


class InvalidTransitionError(OrchestratorError):
    """A business rule forbids the requested status change."""


class UnsatisfiedDependencyError(OrchestratorError):
    def __init__(self, task_id: str, incomplete: list[str]):
        self.task_id = task_id
        self.incomplete = incomplete
        super().__init__(
            f"Cannot start task {task_id}: {len(incomplete)} dependencies are not completed "
            f"({', '.join(incomplete)})"
        )


class DependencyCycleError(OrchestratorError):
    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


class EmptyWorkPackageError(OrchestratorError):
    def __init__(self, work_package_id: str):
        self.work_package_id = work_package_id
        super().__init__(f"Work package has no tasks: {work_package_id}")


class ValidationError(OrchestratorError, ValueError):
    """A request is missing required fields or carries an unknown value."""


class InvalidRoleError(ValidationError):
    def __init__(self, role: str):
        self.role = role
        super().__init__(f"Unknown role: {role}")


class StateConflictError(OrchestratorError):
    """Another writer appended to the project's state log first."""

    def __init__(self, project_id: str, expected_seq: int):
        self.project_id = project_id
        self.expected_seq = expected_seq
        super().__init__(
            f"State log for project {project_id} moved past seq {expected_seq}"
        )
