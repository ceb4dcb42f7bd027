"""Scheduler error kinds."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskscheduler.scheduler.models import TaskStatus


class SchedulerError(Exception):
    """Base class for all scheduler errors."""


class TaskNotFoundError(SchedulerError, LookupError):
    """Raised for an unknown task id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class ConflictError(SchedulerError):
    """A compare-and-swap status update lost: the stored status was not the expected one.

    Callers re-read and retry, or abandon the transition.
    """

    def __init__(self, task_id: str, expected: TaskStatus, actual: TaskStatus) -> None:
        super().__init__(
            f"Status conflict on task {task_id}: expected {expected}, found {actual}"
        )
        self.task_id = task_id
        self.expected = expected
        self.actual = actual


class CycleDetectedError(SchedulerError):
    """Adding a dependency edge would close a cycle. Nothing was changed."""

    def __init__(self, task_id: str, prerequisite_id: str) -> None:
        super().__init__(
            f"Dependency {task_id} -> {prerequisite_id} would create a cycle"
        )
        self.task_id = task_id
        self.prerequisite_id = prerequisite_id


class ExecutionFailure(SchedulerError):
    """An executor reported that a task run failed."""


class ExecutionTimeout(ExecutionFailure):
    """A task run exceeded its time limit."""
