"""Recurring task scheduler — models, persistence, dependencies, recurrence and execution."""

from taskscheduler.scheduler.clock import Clock, ManualClock, SystemClock
from taskscheduler.scheduler.engine import Scheduler
from taskscheduler.scheduler.errors import (
    ConflictError,
    CycleDetectedError,
    ExecutionFailure,
    ExecutionTimeout,
    SchedulerError,
    TaskNotFoundError,
)
from taskscheduler.scheduler.executor import ActionExecutor, Executor
from taskscheduler.scheduler.graph import DependencyGraph
from taskscheduler.scheduler.hooks import LoggingNotificationHook, NotificationHook
from taskscheduler.scheduler.models import (
    Category,
    ExecutionRecord,
    Outcome,
    RecurrenceKind,
    RecurrenceRule,
    Task,
    TaskStatus,
)
from taskscheduler.scheduler.recurrence import RecurrenceEngine
from taskscheduler.scheduler.store import TaskStore
from taskscheduler.scheduler.tracker import ExecutionTracker

__all__ = [
    "ActionExecutor",
    "Category",
    "Clock",
    "ConflictError",
    "CycleDetectedError",
    "DependencyGraph",
    "ExecutionFailure",
    "ExecutionRecord",
    "ExecutionTimeout",
    "ExecutionTracker",
    "Executor",
    "LoggingNotificationHook",
    "ManualClock",
    "NotificationHook",
    "Outcome",
    "RecurrenceEngine",
    "RecurrenceKind",
    "RecurrenceRule",
    "Scheduler",
    "SchedulerError",
    "SystemClock",
    "Task",
    "TaskNotFoundError",
    "TaskStatus",
    "TaskStore",
]
