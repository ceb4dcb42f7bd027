"""Scheduler — due-task evaluation, at-most-once dispatch, retries and recurrence."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from taskscheduler.config import settings
from taskscheduler.scheduler.clock import SystemClock
from taskscheduler.scheduler.errors import (
    ConflictError,
    CycleDetectedError,
    ExecutionTimeout,
    TaskNotFoundError,
)
from taskscheduler.scheduler.graph import DependencyGraph
from taskscheduler.scheduler.hooks import LoggingNotificationHook
from taskscheduler.scheduler.models import (
    Category,
    Outcome,
    Task,
    TaskStatus,
    make_category_id,
    make_task_id,
)
from taskscheduler.scheduler.recovery import recover_interrupted_tasks
from taskscheduler.scheduler.recurrence import RecurrenceEngine
from taskscheduler.scheduler.tracker import ExecutionTracker

if TYPE_CHECKING:
    from collections.abc import Iterable

    from taskscheduler.scheduler.clock import Clock
    from taskscheduler.scheduler.executor import Executor
    from taskscheduler.scheduler.hooks import NotificationHook
    from taskscheduler.scheduler.models import ExecutionRecord, RecurrenceRule
    from taskscheduler.scheduler.store import TaskStore

logger = logging.getLogger(__name__)

_TICK_JOB_ID = "scheduler-tick"
_CAS_RETRIES = 5


class Scheduler:
    """Decides which due tasks may run and runs each occurrence at most once.

    Several Scheduler instances (in one process or many) may share a store;
    the ``pending → ready`` compare-and-swap in the store is the only claim.

    Args:
        store: TaskStore holding tasks and history.
        executor: Runs the task actions.
        clock: Time source (default: system clock).
        hook: Receives terminal failures and missed recurrences.
        recurrence: RecurrenceEngine (default: one sharing *clock*).
        tracker: ExecutionTracker (default: built from settings).
        max_concurrent: Maximum executions in flight at once.
        execution_timeout: Seconds before a run counts as timed out (None → never).
        tick_interval: Seconds between periodic ticks once started.
        due_batch_limit: Maximum due tasks fetched per tick.
        recover_interrupted: Requeue tasks a crashed process left behind on start.
        timezone: IANA timezone for the tick job and cron rules.
    """

    def __init__(
        self,
        store: TaskStore,
        executor: Executor,
        *,
        clock: Clock | None = None,
        hook: NotificationHook | None = None,
        recurrence: RecurrenceEngine | None = None,
        tracker: ExecutionTracker | None = None,
        max_concurrent: int | None = None,
        execution_timeout: float | None = None,
        tick_interval: float | None = None,
        due_batch_limit: int | None = None,
        recover_interrupted: bool | None = None,
        timezone: str | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._clock = clock or SystemClock()
        self._hook = hook or LoggingNotificationHook()
        self._timezone = timezone or settings.scheduler_timezone
        self._recurrence = recurrence or RecurrenceEngine(self._clock, timezone=self._timezone)
        self._tracker = tracker or ExecutionTracker(
            store,
            max_attempts=settings.max_attempts,
            base_delay=timedelta(seconds=settings.retry_base_delay_seconds),
            max_delay=timedelta(seconds=settings.retry_max_delay_seconds),
        )
        self._max_concurrent = max_concurrent or settings.max_concurrent_executions
        self._timeout = (
            execution_timeout if execution_timeout is not None
            else settings.execution_timeout_seconds
        )
        self._tick_interval = tick_interval or settings.tick_interval_seconds
        self._batch_limit = due_batch_limit or settings.due_batch_limit
        self._recover = (
            recover_interrupted if recover_interrupted is not None
            else settings.recover_interrupted_on_start
        )

        self._graph = DependencyGraph()
        self._slots = asyncio.Semaphore(self._max_concurrent)
        self._inflight: dict[str, asyncio.Task] = {}
        self._runs: dict[str, asyncio.Task] = {}
        self._waiting: set[str] = set()
        self._cancel_requested: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self._tick_lock = asyncio.Lock()
        self._wake_pending = False
        self._job_scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    @property
    def tracker(self) -> ExecutionTracker:
        return self._tracker

    def in_flight(self) -> set[str]:
        """Ids of tasks claimed or running in this instance."""
        return set(self._inflight)

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Recover state from the store and start ticking."""
        await self.load()
        self._job_scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self._tick_interval, timezone=self._timezone),
            id=_TICK_JOB_ID,
            name="scheduler tick",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            replace_existing=True,
        )
        self._job_scheduler.start()
        self._running = True
        logger.info(
            "Scheduler started (tick=%ss, max_concurrent=%d, tz=%s)",
            self._tick_interval,
            self._max_concurrent,
            self._timezone,
        )
        self.wake()

    async def load(self) -> None:
        """Rebuild the dependency graph and attempt counters from the store."""
        failed: list[Task] = []
        if self._recover:
            report = await recover_interrupted_tasks(
                self._store, self._clock, max_attempts=self._tracker.max_attempts
            )
            failed = report.failed

        tasks = await self._store.list_non_terminal_tasks()
        self._graph = DependencyGraph.from_tasks(tasks)
        for task in tasks:
            self._tracker.restore(task.id, task.retry_count)
        logger.info(
            "Loaded %d active task(s), %d dependency edge(s)",
            len(tasks),
            len(self._graph.edges()),
        )
        for task in failed:
            await self._notify_terminal_failure(task)

    async def stop(self, *, wait: bool = True) -> None:
        """Stop ticking.

        With *wait*, in-flight executions finish first; otherwise they are
        cancelled and left for startup recovery.
        """
        if not self._running:
            return
        self._running = False
        self._job_scheduler.shutdown(wait=False)
        for job in list(self._background):
            job.cancel()
        if wait:
            await self.wait_idle()
        else:
            jobs = list(self._inflight.values())
            for job in jobs:
                job.cancel()
            await asyncio.gather(*jobs, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def wait_idle(self) -> None:
        """Wait until no execution is in flight in this instance."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    def wake(self) -> None:
        """Request an immediate tick (no-op until started)."""
        if not self._running:
            return
        if self._tick_lock.locked():
            self._wake_pending = True
            return
        job = asyncio.create_task(self.tick(), name="scheduler-wake")
        self._background.add(job)
        job.add_done_callback(self._background.discard)

    # -- Tick ------------------------------------------------------------------

    async def tick(self) -> list[str]:
        """Claim and dispatch every due, ready task. Returns the claimed ids.

        Ticks never overlap: a tick requested while one runs is folded into a
        follow-up pass of the running tick.
        """
        if self._tick_lock.locked():
            self._wake_pending = True
            return []
        async with self._tick_lock:
            self._wake_pending = False
            claimed = await self._tick_once()
            while self._wake_pending:
                self._wake_pending = False
                claimed += await self._tick_once()
        return claimed

    async def _tick_once(self) -> list[str]:
        """Page through due tasks until a batch is claimed or none are left.

        Tasks that stay ``pending`` (waiting on prerequisites) are stepped over
        with an offset so they cannot hold the whole window.
        """
        now = self._clock.now()
        claimed: list[str] = []
        seen: set[str] = set()
        offset = 0
        while len(claimed) < self._batch_limit:
            due = await self._store.list_due(now, self._batch_limit, offset)
            page_claimed, skipped = await self._claim_page(due, seen)
            claimed += page_claimed
            offset += skipped
            if len(due) < self._batch_limit:
                break

        if claimed:
            logger.debug("Tick at %s claimed %d task(s)", now.isoformat(), len(claimed))
        return claimed

    async def _claim_page(self, due: list[Task], seen: set[str]) -> tuple[list[str], int]:
        """Claim the ready tasks of one page. Returns the claimed ids and how many stay pending."""
        if not due:
            return [], 0
        inconsistent = {task.id for task in due if not self._sync_graph(task)}
        prerequisite_ids = {p for task in due for p in self._graph.prerequisites(task.id)}
        statuses = await self._store.get_statuses(prerequisite_ids)

        claimed: list[str] = []
        skipped = 0
        for task in due:
            if task.id in seen or task.id in self._inflight or task.id in inconsistent:
                skipped += 1
                continue
            seen.add(task.id)
            if not self._graph.is_ready(task.id, statuses.get):
                logger.debug("Task %s is due but waiting on prerequisites", task.id)
                skipped += 1
                continue
            try:
                ready = await self._store.update_status(
                    task.id, TaskStatus.READY, TaskStatus.PENDING
                )
            except ConflictError as exc:
                logger.debug("Task %s claimed elsewhere (now %s)", task.id, exc.actual)
                continue
            except TaskNotFoundError:
                logger.debug("Task %s vanished before it could be claimed", task.id)
                continue
            self._dispatch(ready)
            claimed.append(task.id)
        return claimed, skipped

    def _sync_graph(self, task: Task) -> bool:
        """Align the graph with the stored prerequisites (another instance may change them)."""
        current = self._graph.prerequisites(task.id)
        wanted = set(task.prerequisites)
        if current == wanted:
            return True
        for stale in current - wanted:
            self._graph.remove_edge(task.id, stale)
        try:
            for prerequisite_id in wanted - current:
                self._graph.add_edge(task.id, prerequisite_id)
        except CycleDetectedError:
            logger.exception("Stored prerequisites of task %s form a cycle", task.id)
            return False
        return True

    # -- Execution -------------------------------------------------------------

    def _dispatch(self, task: Task) -> None:
        job = asyncio.create_task(self._execute(task), name=f"task-{task.id}")
        self._inflight[task.id] = job
        self._waiting.add(task.id)

        def _done(finished: asyncio.Task) -> None:
            self._inflight.pop(task.id, None)
            self._waiting.discard(task.id)
            self._cancel_requested.discard(task.id)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error(
                    "Dispatch of task %s crashed",
                    task.id,
                    exc_info=finished.exception(),
                )

        job.add_done_callback(_done)

    async def _execute(self, task: Task) -> None:
        async with self._slots:
            self._waiting.discard(task.id)
            if task.id in self._cancel_requested:
                self._cancel_requested.discard(task.id)
                return
            started = self._clock.now()
            try:
                task = await self._store.update_status(
                    task.id, TaskStatus.RUNNING, TaskStatus.READY, last_run_at=started
                )
            except (ConflictError, TaskNotFoundError) as exc:
                logger.info("Dispatch of task %s abandoned: %s", task.id, exc)
                return
            if task.id in self._cancel_requested:
                await self._finish_cancelled(task)
                return

            logger.info(
                "Running task: '%s' (%s) occurrence=%d", task.title, task.id, task.occurrence
            )
            outcome, detail = await self._run(task)
            finished = self._clock.now()
            record = await self._tracker.record_attempt(
                task, outcome, detail, started_at=started, finished_at=finished
            )
            try:
                if task.id in self._cancel_requested:
                    await self._finish_cancelled(task)
                elif outcome == Outcome.SUCCESS:
                    await self._complete(task, finished)
                else:
                    await self._fail(task, finished, record.attempt)
            except (ConflictError, TaskNotFoundError) as exc:
                logger.warning(
                    "Task %s changed while running; outcome not applied: %s", task.id, exc
                )
            finally:
                self._cancel_requested.discard(task.id)

    async def _run(self, task: Task) -> tuple[Outcome, str | None]:
        """Run the executor once and classify the result."""
        run = asyncio.ensure_future(self._executor.run(task))
        self._runs[task.id] = run
        try:
            result = await asyncio.wait_for(run, timeout=self._timeout)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not run.cancelled() or (current is not None and current.cancelling()):
                raise
            return Outcome.CANCELLED, "cancelled"
        except (ExecutionTimeout, TimeoutError) as exc:
            return Outcome.TIMEOUT, str(exc) or f"timed out after {self._timeout}s"
        except Exception as exc:
            logger.exception("Task execution failed: '%s' (%s)", task.title, task.id)
            return Outcome.FAILURE, f"{type(exc).__name__}: {exc}"
        finally:
            self._runs.pop(task.id, None)

        if result is None or result == Outcome.SUCCESS:
            return Outcome.SUCCESS, None
        try:
            return Outcome(result), "reported by executor"
        except ValueError:
            return Outcome.FAILURE, f"unexpected executor result: {result!r}"

    async def _complete(self, task: Task, finished: datetime) -> None:
        if task.is_recurring:
            nxt = self._recurrence.plan(task.recurrence, task.scheduled_for)
            if nxt.at is not None:
                updated = await self._store.update_status(
                    task.id,
                    TaskStatus.PENDING,
                    TaskStatus.RUNNING,
                    due_at=nxt.at,
                    scheduled_for=nxt.at,
                    retry_count=0,
                    occurrence=task.occurrence + 1,
                    last_completed_at=finished,
                )
                self._tracker.reset(task.id)
                logger.info(
                    "Task '%s' (%s) completed; next occurrence %s",
                    task.title,
                    task.id,
                    nxt.at.isoformat(),
                )
                if nxt.missed:
                    await self._notify_recurrence_missed(updated, nxt.missed)
                self.wake()
                return
            logger.info("Recurrence of task %s has no further occurrences", task.id)

        await self._store.update_status(
            task.id, TaskStatus.COMPLETED, TaskStatus.RUNNING, last_completed_at=finished
        )
        self._graph.detach(task.id)
        self._tracker.reset(task.id)
        logger.info("Task completed: '%s' (%s)", task.title, task.id)
        self.wake()

    async def _fail(self, task: Task, finished: datetime, attempt: int) -> None:
        if self._tracker.should_retry(attempt):
            delay = self._tracker.backoff_delay(attempt)
            await self._store.update_status(
                task.id,
                TaskStatus.PENDING,
                TaskStatus.RUNNING,
                due_at=finished + delay,
                retry_count=attempt,
            )
            logger.warning(
                "Task '%s' (%s) failed attempt %d; retrying in %s",
                task.title,
                task.id,
                attempt,
                delay,
            )
            return

        failed = await self._store.update_status(
            task.id, TaskStatus.FAILED, TaskStatus.RUNNING, retry_count=attempt
        )
        self._graph.detach(task.id)
        dependents = self._graph.dependents(task.id)
        if dependents:
            logger.warning(
                "Task %s failed permanently; blocked dependents: %s",
                task.id,
                ", ".join(sorted(dependents)),
            )
        await self._notify_terminal_failure(failed)

    async def _finish_cancelled(self, task: Task) -> None:
        await self._store.update_status(task.id, TaskStatus.CANCELLED, TaskStatus.RUNNING)
        self._graph.detach(task.id)
        self._tracker.reset(task.id)
        logger.info("Task cancelled: '%s' (%s)", task.title, task.id)

    # -- Notifications ---------------------------------------------------------

    async def _notify_terminal_failure(self, task: Task) -> None:
        try:
            await self._hook.on_terminal_failure(task)
        except Exception:
            logger.exception("NotificationHook.on_terminal_failure failed for %s", task.id)

    async def _notify_recurrence_missed(self, task: Task, missed: int) -> None:
        try:
            await self._hook.on_recurrence_missed(task, missed)
        except Exception:
            logger.exception("NotificationHook.on_recurrence_missed failed for %s", task.id)

    # -- Task management -------------------------------------------------------

    async def create_task(
        self,
        title: str,
        *,
        due_at: datetime | None = None,
        recurrence: RecurrenceRule | None = None,
        prerequisites: Iterable[str] = (),
        category_id: str | None = None,
        action: dict[str, Any] | None = None,
        description: str = "",
        task_id: str | None = None,
    ) -> Task:
        """Create a ``pending`` task.

        Raises TaskNotFoundError for an unknown prerequisite, ValueError for an
        unknown category or invalid recurrence, CycleDetectedError if the
        prerequisites would close a cycle.
        """
        if not title or not title.strip():
            msg = "title is required"
            raise ValueError(msg)
        self._recurrence.validate(recurrence)
        wanted = list(dict.fromkeys(prerequisites))
        known = await self._store.get_statuses(wanted)
        for prerequisite_id in wanted:
            if prerequisite_id not in known:
                raise TaskNotFoundError(prerequisite_id)
        if category_id and await self._store.get_category(category_id) is None:
            msg = f"Unknown category: {category_id}"
            raise ValueError(msg)
        if task_id and await self._store.get_task(task_id) is not None:
            msg = f"Task {task_id} already exists"
            raise ValueError(msg)

        task = Task(
            id=task_id or make_task_id(),
            title=title.strip(),
            due_at=due_at or self._clock.now(),
            recurrence=recurrence,
            prerequisites=wanted,
            category_id=category_id,
            action=dict(action or {}),
            description=description,
        )
        existed = task.id in self._graph
        before = self._graph.prerequisites(task.id)
        self._graph.add_task(task.id, wanted)
        try:
            await self._store.create_task(task)
        except Exception:
            if existed:
                for prerequisite_id in set(wanted) - before:
                    self._graph.remove_edge(task.id, prerequisite_id)
            else:
                self._graph.remove_task(task.id)
            raise
        self.wake()
        return task

    async def get_task(self, task_id: str) -> Task:
        return await self._store.require_task(task_id)

    async def history(self, task_id: str) -> list[ExecutionRecord]:
        await self._store.require_task(task_id)
        return await self._store.list_execution_records(task_id)

    async def add_category(self, name: str) -> Category:
        if not name or not name.strip():
            msg = "category name is required"
            raise ValueError(msg)
        return await self._store.add_category(Category(id=make_category_id(), name=name.strip()))

    async def add_dependency(self, task_id: str, prerequisite_id: str) -> Task:
        """Make *task_id* wait for *prerequisite_id*.

        Raises CycleDetectedError (with nothing changed) if that closes a cycle.
        """
        task = await self._store.require_task(task_id)
        await self._store.require_task(prerequisite_id)
        if task.is_terminal:
            msg = f"Task {task_id} is {task.status}; dependencies can no longer change"
            raise ValueError(msg)
        if prerequisite_id in task.prerequisites:
            return task

        # Terminal tasks are detached from the graph, so walk the stored lists too.
        if await self._depends_on(prerequisite_id, task_id):
            raise CycleDetectedError(task_id, prerequisite_id)
        self._sync_graph(task)
        self._graph.add_edge(task_id, prerequisite_id)
        prerequisites = [*task.prerequisites, prerequisite_id]
        try:
            await self._store.set_prerequisites(task_id, prerequisites)
        except Exception:
            self._graph.remove_edge(task_id, prerequisite_id)
            raise
        task.prerequisites = prerequisites
        logger.info("Task %s now depends on %s", task_id, prerequisite_id)
        return task

    async def _depends_on(self, task_id: str, target_id: str) -> bool:
        """True if *task_id* reaches *target_id* through stored prerequisite lists."""
        stack = [task_id]
        seen: set[str] = set()
        while stack:
            node = stack.pop()
            if node == target_id:
                return True
            if node in seen:
                continue
            seen.add(node)
            task = await self._store.get_task(node)
            if task is not None:
                stack.extend(task.prerequisites)
        return False

    async def remove_dependency(self, task_id: str, prerequisite_id: str) -> Task:
        task = await self._store.require_task(task_id)
        if prerequisite_id not in task.prerequisites:
            return task
        prerequisites = [p for p in task.prerequisites if p != prerequisite_id]
        await self._store.set_prerequisites(task_id, prerequisites)
        self._graph.remove_edge(task_id, prerequisite_id)
        task.prerequisites = prerequisites
        self.wake()
        return task

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task that nothing active depends on.

        Raises ValueError while non-terminal tasks still list it as a
        prerequisite and ConflictError while it is claimed or running.
        """
        task = await self._store.require_task(task_id)
        if task.status in (TaskStatus.READY, TaskStatus.RUNNING):
            raise ConflictError(task_id, TaskStatus.PENDING, task.status)
        blockers = [
            t.id for t in await self._store.list_non_terminal_tasks() if task_id in t.prerequisites
        ]
        if blockers:
            msg = f"Task {task_id} is still required by: {', '.join(blockers)}"
            raise ValueError(msg)
        deleted = await self._store.delete_task(task_id, expected_status=task.status)
        if not deleted:
            current = await self._store.require_task(task_id)
            raise ConflictError(task_id, task.status, current.status)
        self._graph.remove_task(task_id)
        self._tracker.reset(task_id)
        return True

    async def cancel_execution(self, task_id: str) -> bool:
        """Interrupt an in-flight run in this instance.

        The run counts as a failed attempt with detail ``cancelled`` and is
        retried per the backoff policy.  Returns False if nothing was running.
        """
        run = self._runs.get(task_id)
        if run is None or run.done():
            return False
        run.cancel()
        logger.info("Cancellation requested for running task %s", task_id)
        return True

    async def cancel_task(self, task_id: str) -> Task:
        """Move a task to terminal ``cancelled``, interrupting a local run.

        Raises ConflictError if another instance is running it.
        """
        for _ in range(_CAS_RETRIES):
            task = await self._store.require_task(task_id)
            if task.is_terminal:
                return task

            job = self._inflight.get(task_id)
            if job is not None and task_id in self._waiting:
                # Still queued for a slot: nothing has run yet.
                job.cancel()
                await asyncio.wait({job})
            elif job is not None:
                self._cancel_requested.add(task_id)
                await self.cancel_execution(task_id)
                await asyncio.wait({job})
                continue
            elif task.status == TaskStatus.RUNNING:
                raise ConflictError(task_id, TaskStatus.PENDING, task.status)

            try:
                cancelled = await self._store.update_status(
                    task_id, TaskStatus.CANCELLED, task.status
                )
            except ConflictError:
                continue
            self._graph.detach(task_id)
            self._tracker.reset(task_id)
            dependents = self._graph.dependents(task_id)
            if dependents:
                logger.warning(
                    "Cancelled task %s still has dependents: %s",
                    task_id,
                    ", ".join(sorted(dependents)),
                )
            logger.info("Task cancelled: '%s' (%s)", cancelled.title, task_id)
            return cancelled

        current = await self._store.require_task(task_id)
        raise ConflictError(task_id, TaskStatus.PENDING, current.status)

    async def retry_task(self, task_id: str, *, due_at: datetime | None = None) -> Task:
        """Revive a terminally ``failed`` task as ``pending`` with fresh attempts."""
        task = await self._store.require_task(task_id)
        if task.status != TaskStatus.FAILED:
            raise ConflictError(task_id, TaskStatus.FAILED, task.status)
        self._graph.add_task(task_id, task.prerequisites)
        when = due_at or self._clock.now()
        try:
            revived = await self._store.update_status(
                task_id,
                TaskStatus.PENDING,
                TaskStatus.FAILED,
                due_at=when,
                scheduled_for=when if not task.is_recurring else task.scheduled_for,
                retry_count=0,
            )
        except ConflictError:
            self._graph.detach(task_id)
            raise
        self._tracker.reset(task_id)
        logger.info("Task revived: '%s' (%s)", revived.title, task_id)
        self.wake()
        return revived
