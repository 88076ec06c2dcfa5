from __future__ import annotations

from typing import Sequence


class CoordinationError(Exception):
    """Base class for every error raised by the coordination core."""


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------

class LockError(CoordinationError):
    """Base class for lease lock failures."""


class LockContentionError(LockError):
    """Raised when the retry budget runs out while another holder keeps the lease.

    Contention is expected in normal operation. Callers should retry the whole
    unit of work later instead of treating it as a permanent failure.
    """

    def __init__(self, resource_path: str, *, attempts: int, current_holder: str | None = None) -> None:
        self.resource_path = resource_path
        self.attempts = attempts
        self.current_holder = current_holder
        holder = f" (held by {current_holder})" if current_holder else ""
        super().__init__(f"Could not acquire lock on {resource_path} after {attempts} attempt(s){holder}")


# ---------------------------------------------------------------------------
# State management
# ---------------------------------------------------------------------------

class RuleTableError(CoordinationError, ValueError):
    """Raised when a lifecycle rule table references undeclared states."""


class StateManagerError(CoordinationError):
    def __init__(self, message: str, *, project_id: str | None = None) -> None:
        self.project_id = project_id
        super().__init__(message)


class ProjectNotFoundError(StateManagerError):
    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project not found: {project_id}", project_id=project_id)


class ProjectExistsError(StateManagerError):
    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project already exists: {project_id}", project_id=project_id)


class SectionNotFoundError(StateManagerError):
    def __init__(self, project_id: str, section: str) -> None:
        self.section = section
        super().__init__(f"Section '{section}' not found for project {project_id}", project_id=project_id)


class InvalidTransitionError(StateManagerError):
    """Raised for a (current, target) pair the rule table does not allow.

    ``valid_targets`` always lists what the caller could have asked for instead.
    """

    def __init__(
        self,
        current: str,
        target: str,
        valid_targets: Sequence[str],
        *,
        project_id: str | None = None,
        message: str | None = None,
    ) -> None:
        self.current = current
        self.target = target
        self.valid_targets = list(valid_targets)
        if message is None:
            message = (
                f"Invalid transition {current} -> {target}; "
                f"valid targets: {self.valid_targets}"
            )
        super().__init__(message, project_id=project_id)


class InvalidSkipError(InvalidTransitionError):
    def __init__(self, current: str, target: str, valid_targets: Sequence[str], *, project_id: str | None = None) -> None:
        super().__init__(
            current,
            target,
            valid_targets,
            project_id=project_id,
            message=f"Cannot skip {current} -> {target}; valid skip targets: {list(valid_targets)}",
        )


class RequiredStageSkipError(InvalidTransitionError):
    def __init__(
        self,
        current: str,
        target: str,
        required_stages: Sequence[str],
        *,
        project_id: str | None = None,
    ) -> None:
        self.required_stages = list(required_stages)
        super().__init__(
            current,
            target,
            [],
            project_id=project_id,
            message=f"Cannot skip {current} -> {target}; required stages in between: {self.required_stages}",
        )


class CheckpointNotFoundError(StateManagerError):
    def __init__(self, project_id: str, checkpoint_id: str) -> None:
        self.checkpoint_id = checkpoint_id
        super().__init__(f"Checkpoint '{checkpoint_id}' not found for project {project_id}", project_id=project_id)


class CheckpointValidationError(StateManagerError):
    pass


class AdminOverrideError(StateManagerError):
    pass


class HistoryError(StateManagerError):
    pass


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

class SchedulerError(CoordinationError):
    pass


class GraphValidationError(SchedulerError, ValueError):
    """Raised when a dependency spec is malformed (dangling edge, duplicate id)."""

    def __init__(self, message: str, *, issues: Sequence[str] = ()) -> None:
        self.issues = list(issues)
        super().__init__(message)


class EmptyGraphError(SchedulerError):
    def __init__(self) -> None:
        super().__init__("Dependency graph has no nodes")


class IssueNotFoundError(SchedulerError, KeyError):
    def __init__(self, issue_id: str) -> None:
        self.issue_id = issue_id
        super().__init__(f"Issue not found in dependency graph: {issue_id}")

    def __str__(self) -> str:
        return str(self.args[0])
