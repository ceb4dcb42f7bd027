"""Startup recovery — requeue tasks a crashed process left claimed or running."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, NamedTuple

from taskscheduler.scheduler.errors import ConflictError, TaskNotFoundError
from taskscheduler.scheduler.models import ExecutionRecord, Outcome, TaskStatus

if TYPE_CHECKING:
    from taskscheduler.scheduler.clock import Clock
    from taskscheduler.scheduler.models import Task
    from taskscheduler.scheduler.store import TaskStore

logger = logging.getLogger(__name__)


class RecoveryReport(NamedTuple):
    requeued: list[str]
    failed: list[Task]


async def recover_interrupted_tasks(
    store: TaskStore,
    clock: Clock,
    *,
    max_attempts: int,
) -> RecoveryReport:
    """Return ``ready`` and ``running`` tasks to ``pending``.

    Only safe when no other scheduler process shares the store: a live peer's
    claims would be stolen.  An interrupted ``running`` task counts as one
    cancelled attempt (detail ``interrupted``); if that exhausts its attempts
    it becomes ``failed`` and is returned in ``failed`` so the caller can
    notify.
    """
    requeued: list[str] = []
    failed: list[Task] = []
    tasks = await store.list_tasks([TaskStatus.READY, TaskStatus.RUNNING])

    for task in tasks:
        try:
            if task.status == TaskStatus.READY:
                await store.update_status(task.id, TaskStatus.PENDING, TaskStatus.READY)
                requeued.append(task.id)
                logger.info("Requeued claimed task: '%s' (%s)", task.title, task.id)
                continue

            now = clock.now()
            attempt = task.retry_count + 1
            new_status = TaskStatus.FAILED if attempt >= max_attempts else TaskStatus.PENDING
            # Record the attempt only once the requeue has actually happened.
            updated = await store.update_status(
                task.id, new_status, TaskStatus.RUNNING, retry_count=attempt
            )
            await store.append_execution_record(
                ExecutionRecord(
                    task_id=task.id,
                    attempt=attempt,
                    started_at=task.last_run_at or now,
                    finished_at=now,
                    outcome=Outcome.CANCELLED,
                    detail="interrupted",
                    occurrence=task.occurrence,
                )
            )
            if updated.status == TaskStatus.FAILED:
                failed.append(updated)
                logger.warning(
                    "Interrupted task exhausted its attempts: '%s' (%s)", task.title, task.id
                )
            else:
                requeued.append(task.id)
                logger.info(
                    "Requeued interrupted task: '%s' (%s) attempt %d", task.title, task.id, attempt
                )
        except (ConflictError, TaskNotFoundError) as exc:
            logger.info("Skipped recovery of %s: %s", task.id, exc)

    if requeued or failed:
        logger.info(
            "Recovered %d interrupted task(s), %d failed permanently", len(requeued), len(failed)
        )
    return RecoveryReport(requeued, failed)
