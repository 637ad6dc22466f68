"""Error taxonomy surfaced by the task lifecycle orchestrator."""

from __future__ import annotations

from typing import Any

__all__ = [
    "BranchCreationError",
    "ConcurrentModificationError",
    "CycleExhaustedError",
    "InvalidTransitionError",
    "IterationStateError",
    "LifecycleError",
    "StoreIOError",
    "TaskExistsError",
    "TaskNotFoundError",
    "TaskValidationError",
]


class LifecycleError(RuntimeError):
    """Base error raised for every orchestrator failure."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class TaskNotFoundError(LifecycleError):
    """Raised when no record exists for the requested task id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"No task record found for '{task_id}'", task_id=task_id)


class TaskExistsError(LifecycleError):
    """Raised when ``create`` is called for a task id that already has a record."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task '{task_id}' already exists", task_id=task_id)


class InvalidTransitionError(LifecycleError):
    """Raised when an event does not match any edge leaving the current stage.

    Callers must not retry blindly: this signals a driver bug or a stale record.
    """

    def __init__(
        self,
        stage: Any,
        event: Any,
        *,
        reason: str | None = None,
        task_id: str | None = None,
    ) -> None:
        self.stage = getattr(stage, "value", stage)
        self.event = getattr(event, "value", event)
        self.reason = reason
        message = f"Event '{self.event}' is not allowed in stage '{self.stage}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, task_id=task_id)


class ConcurrentModificationError(LifecycleError):
    """Raised when a write presents a version that no longer matches the store."""

    def __init__(self, task_id: str, *, expected: int, actual: int | None) -> None:
        self.expected = expected
        self.actual = actual
        if actual is None:
            detail = "another writer holds the record"
        else:
            detail = f"stored version is {actual}"
        super().__init__(
            f"Task '{task_id}' was modified concurrently (expected version {expected}, {detail})",
            task_id=task_id,
        )


class CycleExhaustedError(LifecycleError):
    """Raised when a fix round is requested after ``max_rounds`` were spent.

    The task stays parked in ``review`` until someone raises the ceiling or
    force-approves it.
    """

    def __init__(self, task_id: str | None, *, round: int, max_rounds: int | None) -> None:
        self.round = round
        self.max_rounds = max_rounds
        label = f"'{task_id}'" if task_id else "task"
        super().__init__(
            f"Review cycle for {label} exhausted after {round} of {max_rounds} fix round(s)",
            task_id=task_id,
        )


class TaskValidationError(LifecycleError):
    """Raised for malformed input such as an empty iteration list."""


class IterationStateError(TaskValidationError):
    """Raised when the iteration list cannot honour the requested operation."""


class StoreIOError(LifecycleError):
    """Raised when the record store cannot read or write a record."""


class BranchCreationError(LifecycleError):
    """Raised when the branch collaborator fails during ``create``."""
