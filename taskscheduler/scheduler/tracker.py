"""ExecutionTracker — attempt counters, execution history and the retry policy."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from taskscheduler.scheduler.models import ExecutionRecord

if TYPE_CHECKING:
    from datetime import datetime

    from taskscheduler.scheduler.models import Outcome, Task
    from taskscheduler.scheduler.store import TaskStore

logger = logging.getLogger(__name__)


class ExecutionTracker:
    """Records attempt outcomes and decides whether and when to retry.

    Args:
        store: Where ExecutionRecords are appended.
        max_attempts: Attempts allowed per occurrence before a task fails for good.
        base_delay: Backoff before the first retry; doubles on each further retry.
        max_delay: Cap on the backoff delay.
    """

    def __init__(
        self,
        store: TaskStore,
        *,
        max_attempts: int = 3,
        base_delay: timedelta = timedelta(seconds=30),
        max_delay: timedelta = timedelta(hours=1),
    ) -> None:
        if max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)
        self._store = store
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._attempts: dict[str, int] = {}

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def record_attempt(
        self,
        task: Task,
        outcome: Outcome,
        detail: str | None = None,
        *,
        started_at: datetime,
        finished_at: datetime,
    ) -> ExecutionRecord:
        """Count one attempt for *task* and append it to the execution history.

        The attempt number comes from the persisted ``task.retry_count``, which
        every scheduler sharing the store sees; the local counter only caches it.
        """
        attempt = task.retry_count + 1
        self._attempts[task.id] = attempt
        record = ExecutionRecord(
            task_id=task.id,
            attempt=attempt,
            started_at=started_at,
            finished_at=finished_at,
            outcome=outcome,
            detail=detail,
            occurrence=task.occurrence,
        )
        await self._store.append_execution_record(record)
        logger.info(
            "Task '%s' (%s) attempt %d/%d: %s%s",
            task.title,
            task.id,
            attempt,
            self._max_attempts,
            outcome,
            f" ({detail})" if detail else "",
        )
        return record

    def attempts(self, task_id: str) -> int:
        return self._attempts.get(task_id, 0)

    def reset(self, task_id: str) -> None:
        """Forget the attempts of a task entering a new occurrence."""
        self._attempts.pop(task_id, None)

    def restore(self, task_id: str, count: int) -> None:
        """Seed a counter from persisted state (e.g. ``Task.retry_count`` after restart)."""
        if count > 0:
            self._attempts[task_id] = count
        else:
            self._attempts.pop(task_id, None)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self._max_attempts

    def backoff_delay(self, attempt: int) -> timedelta:
        """Delay before retrying after the *attempt*-th failure (1-based)."""
        delay = self._base_delay * (2 ** max(0, attempt - 1))
        return min(delay, self._max_delay)
