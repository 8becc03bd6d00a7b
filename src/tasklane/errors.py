"""Exception hierarchy shared by the executor, resolver and pipeline."""

from __future__ import annotations


class TasklaneError(Exception):
    """Base class for all tasklane errors."""


class PhaseError(TasklaneError):
    """A single pipeline phase invocation failed. Retried by the executor."""

    def __init__(self, phase: str, task_id: str, detail: str) -> None:
        self.phase = phase
        self.task_id = task_id
        self.detail = detail
        super().__init__(f"{phase} failed for {task_id}: {detail}")


class FixerError(TasklaneError):
    """The external dependency fixer could not complete."""


class ExecutionError(TasklaneError):
    """Fatal run abort."""


class DeadlockError(ExecutionError):
    """No task can make progress and the resolver gave up."""

    def __init__(self, message: str, report: list[str] | None = None) -> None:
        self.report = report or []
        super().__init__(message)


class VerificationError(ExecutionError):
    """The global sweep after all tasks settled did not pass."""
