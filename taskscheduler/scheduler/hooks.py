"""NotificationHook — observability callbacks invoked by the Scheduler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from taskscheduler.scheduler.models import Task

logger = logging.getLogger(__name__)


@runtime_checkable
class NotificationHook(Protocol):
    """Protocol for receivers of scheduler events."""

    async def on_terminal_failure(self, task: Task) -> None:
        """A task exhausted its attempts and is now terminally failed."""
        ...

    async def on_recurrence_missed(self, task: Task, missed_count: int) -> None:
        """*missed_count* occurrences of a recurring task were collapsed into one."""
        ...


class LoggingNotificationHook:
    """Default hook: reports events to the log."""

    async def on_terminal_failure(self, task: Task) -> None:
        logger.error(
            "Task '%s' (%s) failed permanently after %d attempt(s)",
            task.title,
            task.id,
            task.retry_count,
        )

    async def on_recurrence_missed(self, task: Task, missed_count: int) -> None:
        logger.warning(
            "Task '%s' (%s) missed %d occurrence(s); next due %s",
            task.title,
            task.id,
            missed_count,
            task.due_at.isoformat(),
        )
