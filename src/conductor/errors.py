from __future__ import annotations


class ConductorError(RuntimeError):
    """Base class for orchestration failures."""


class ConfigError(ConductorError):
    """Raised when configuration values are invalid."""


class GraphError(ConductorError):
    """Raised when the dependency graph cannot be built."""


class ExecutionRecordError(ConductorError):
    """Raised when a persisted execution record is missing or malformed."""


class PreconditionFailedError(ConductorError):
    def __init__(self, message: str, *, blocked: bool = True) -> None:
        super().__init__(message)
        self.blocked = blocked


class TaskBlockedError(ConductorError):
    """Raised when a task record is in the absorbing blocked state."""


class PhaseGateError(ConductorError):
    """Raised when a phase is entered before its predecessor completed."""


class ValidationFailedError(ConductorError):
    def __init__(self, message: str, *, category: str) -> None:
        super().__init__(message)
        self.category = category


class AgentRunError(ConductorError):
    """Raised when a delegated agent run reports failure."""


class TaskAttemptsExhausted(ConductorError):
    def __init__(self, task_id: str, attempts: int, last_error: str | None = None) -> None:
        message = f"Maximum attempts ({attempts}) reached for {task_id}"
        if last_error:
            message += f". Last error: {last_error}"
        super().__init__(message)
        self.task_id = task_id
        self.attempts = attempts
        self.last_error = last_error
