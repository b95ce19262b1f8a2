from __future__ import annotations


class CobblerError(RuntimeError):
    """Base class for orchestrator failures reported to the caller."""


class TrailExistsError(CobblerError):
    """Raised when a trail, its branch, or its worktree already exists."""


class TrailNotFoundError(CobblerError):
    """Raised when a trail is absent or no longer switchable."""


class TrailBusyError(CobblerError):
    """Raised when a trail is running or still has tasks in flight."""


class InvalidTransitionError(CobblerError):
    """Raised when a lifecycle or task status change is not permitted."""


class StaleCheckpoint(CobblerError):
    """Raised when the persisted checkpoint no longer matches the worktree HEAD."""

    def __init__(self, message: str, *, expected: str | None = None, actual: str | None = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class InvalidDependencyError(CobblerError):
    """Raised when proposed tasks declare unknown or cyclic dependencies."""


class MeasureError(CobblerError):
    """Raised when a measure step cannot produce a valid task proposal."""


class TaskExecutionFailure(CobblerError):
    """Raised when a single stitched task fails; recorded, never fatal to the cycle."""

    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(f"Task {task_id} failed: {reason}")
        self.task_id = task_id
        self.reason = reason


class GitOperationError(CobblerError):
    """Raised when a git command fails."""

    def __init__(self, message: str, *, command: list[str] | None = None) -> None:
        super().__init__(message)
        self.command = command or []


class StateCorruptionError(CobblerError):
    """Raised when persisted state cannot be read back."""


class ConfigError(CobblerError):
    """Raised when the configuration file cannot be parsed or holds invalid values."""
