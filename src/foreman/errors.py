from __future__ import annotations

from typing import Any


class ForemanError(RuntimeError):
    """Base class for errors raised by foreman."""


class ValidationError(ForemanError):
    """Raised when a task set or decomposition output cannot be used for a run."""

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class ExecutionError(ForemanError):
    """Raised when an agent call fails and the caller has no attempt to record it on."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        output: str = "",
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output
        self.retriable = retriable


class GateFailure(ForemanError):
    """Raised when required quality gates fail outside of an orchestrated attempt."""

    def __init__(self, message: str, *, results: list[Any] | None = None) -> None:
        super().__init__(message)
        self.results = list(results or [])


class BlockedTask(ForemanError):
    """Raised when an agent declares a task impossible."""

    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(f"Task {task_id} is blocked: {reason}")
        self.task_id = task_id
        self.reason = reason


class StorageError(ForemanError):
    """Raised when persisted run state cannot be read or written."""


class VersionControlError(ForemanError):
    """Raised when a git operation needed by a run fails."""
