"""Tests for TaskStore — aiosqlite CRUD, compare-and-swap and history."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from taskscheduler.scheduler.errors import ConflictError, TaskNotFoundError
from taskscheduler.scheduler.models import (
    Category,
    ExecutionRecord,
    Outcome,
    RecurrenceRule,
    Task,
    TaskStatus,
)
from taskscheduler.scheduler.store import TaskStore

T0 = datetime(2025, 6, 1, 9, 0, tzinfo=UTC)


def _make_task(task_id: str = "task1", title: str = "Test Task", **kwargs) -> Task:
    defaults = {
        "due_at": T0,
        "action": {"type": "log", "message": "hello"},
    }
    defaults.update(kwargs)
    return Task(id=task_id, title=title, **defaults)


# -- create_task / get_task ----------------------------------------------------


async def test_create_and_get_task(store: TaskStore) -> None:
    task = _make_task(recurrence=RecurrenceRule.every(timedelta(hours=1)))
    assert await store.create_task(task) == "task1"

    fetched = await store.get_task("task1")
    assert fetched is not None
    assert fetched.title == "Test Task"
    assert fetched.due_at == T0
    assert fetched.recurrence == RecurrenceRule.every(timedelta(hours=1))
    assert fetched.action == {"type": "log", "message": "hello"}


async def test_get_task_not_found(store: TaskStore) -> None:
    assert await store.get_task("nonexistent") is None


async def test_require_task_not_found(store: TaskStore) -> None:
    with pytest.raises(TaskNotFoundError):
        await store.require_task("nonexistent")


async def test_create_duplicate_raises(store: TaskStore) -> None:
    await store.create_task(_make_task())
    with pytest.raises(ValueError, match="already exists"):
        await store.create_task(_make_task())


# -- update_status -------------------------------------------------------------


async def test_update_status_swaps(store: TaskStore) -> None:
    await store.create_task(_make_task())
    updated = await store.update_status("task1", TaskStatus.READY, TaskStatus.PENDING)
    assert updated.status == TaskStatus.READY
    assert (await store.get_task("task1")).status == TaskStatus.READY


async def test_update_status_conflict_changes_nothing(store: TaskStore) -> None:
    await store.create_task(_make_task())
    with pytest.raises(ConflictError) as exc_info:
        await store.update_status(
            "task1", TaskStatus.COMPLETED, TaskStatus.RUNNING, retry_count=9
        )
    assert exc_info.value.expected == TaskStatus.RUNNING
    assert exc_info.value.actual == TaskStatus.PENDING

    task = await store.get_task("task1")
    assert task.status == TaskStatus.PENDING
    assert task.retry_count == 0


async def test_update_status_unknown_task(store: TaskStore) -> None:
    with pytest.raises(TaskNotFoundError):
        await store.update_status("ghost", TaskStatus.READY, TaskStatus.PENDING)


async def test_update_status_writes_fields(store: TaskStore) -> None:
    await store.create_task(_make_task())
    later = T0 + timedelta(minutes=10)
    updated = await store.update_status(
        "task1", TaskStatus.READY, TaskStatus.PENDING, due_at=later, retry_count=2
    )
    assert updated.due_at == later
    assert updated.retry_count == 2
    assert updated.scheduled_for == T0


async def test_update_status_rejects_unknown_fields(store: TaskStore) -> None:
    await store.create_task(_make_task())
    with pytest.raises(ValueError, match="Cannot update"):
        await store.update_status("task1", TaskStatus.READY, TaskStatus.PENDING, title="x")


async def test_concurrent_claims_have_one_winner(store: TaskStore) -> None:
    await store.create_task(_make_task())
    results = await asyncio.gather(
        *(store.update_status("task1", TaskStatus.READY, TaskStatus.PENDING) for _ in range(5)),
        return_exceptions=True,
    )
    winners = [r for r in results if isinstance(r, Task)]
    losers = [r for r in results if isinstance(r, ConflictError)]
    assert len(winners) == 1
    assert len(losers) == 4


# -- list_due ------------------------------------------------------------------


async def test_list_due_filters_and_orders(store: TaskStore) -> None:
    await store.create_task(_make_task("late", due_at=T0 - timedelta(hours=1)))
    await store.create_task(_make_task("now", due_at=T0))
    await store.create_task(_make_task("future", due_at=T0 + timedelta(seconds=1)))
    await store.create_task(_make_task("claimed", due_at=T0 - timedelta(hours=2)))
    await store.update_status("claimed", TaskStatus.READY, TaskStatus.PENDING)

    due = await store.list_due(T0)
    assert [t.id for t in due] == ["late", "now"]


async def test_list_due_limit(store: TaskStore) -> None:
    for i in range(5):
        await store.create_task(_make_task(f"t{i}", due_at=T0 - timedelta(minutes=5 - i)))
    due = await store.list_due(T0, limit=2)
    assert [t.id for t in due] == ["t0", "t1"]


async def test_list_non_terminal_tasks(store: TaskStore) -> None:
    await store.create_task(_make_task("a"))
    await store.create_task(_make_task("b"))
    await store.update_status("b", TaskStatus.CANCELLED, TaskStatus.PENDING)
    active = await store.list_non_terminal_tasks()
    assert [t.id for t in active] == ["a"]


# -- get_statuses --------------------------------------------------------------


async def test_get_statuses_skips_unknown(store: TaskStore) -> None:
    await store.create_task(_make_task("a"))
    statuses = await store.get_statuses(["a", "ghost"])
    assert statuses == {"a": TaskStatus.PENDING}


async def test_recurring_task_reports_completed_after_first_run(store: TaskStore) -> None:
    await store.create_task(
        _make_task("daily", recurrence=RecurrenceRule.every(timedelta(days=1)))
    )
    assert (await store.get_statuses(["daily"]))["daily"] == TaskStatus.PENDING

    await store.update_status("daily", TaskStatus.READY, TaskStatus.PENDING)
    await store.update_status("daily", TaskStatus.RUNNING, TaskStatus.READY)
    await store.update_status(
        "daily", TaskStatus.PENDING, TaskStatus.RUNNING, last_completed_at=T0
    )
    assert (await store.get_statuses(["daily"]))["daily"] == TaskStatus.COMPLETED


# -- set_prerequisites / delete_task -------------------------------------------


async def test_set_prerequisites(store: TaskStore) -> None:
    await store.create_task(_make_task("a"))
    await store.create_task(_make_task("b"))
    await store.set_prerequisites("b", ["a"])
    assert (await store.get_task("b")).prerequisites == ["a"]


async def test_set_prerequisites_unknown_task(store: TaskStore) -> None:
    with pytest.raises(TaskNotFoundError):
        await store.set_prerequisites("ghost", [])


async def test_delete_task_keeps_history(store: TaskStore) -> None:
    await store.create_task(_make_task())
    await store.append_execution_record(
        ExecutionRecord("task1", 1, T0, T0, Outcome.SUCCESS)
    )
    assert await store.delete_task("task1") is True
    assert await store.get_task("task1") is None
    assert len(await store.list_execution_records("task1")) == 1


async def test_delete_task_with_expected_status(store: TaskStore) -> None:
    await store.create_task(_make_task())
    assert await store.delete_task("task1", expected_status=TaskStatus.FAILED) is False
    assert await store.delete_task("task1", expected_status=TaskStatus.PENDING) is True


async def test_delete_nonexistent(store: TaskStore) -> None:
    assert await store.delete_task("nonexistent") is False


# -- Execution history ---------------------------------------------------------


async def test_execution_records_oldest_first(store: TaskStore) -> None:
    for attempt, outcome in enumerate([Outcome.FAILURE, Outcome.TIMEOUT, Outcome.SUCCESS], 1):
        await store.append_execution_record(
            ExecutionRecord(
                task_id="task1",
                attempt=attempt,
                started_at=T0 + timedelta(minutes=attempt),
                finished_at=T0 + timedelta(minutes=attempt, seconds=5),
                outcome=outcome,
            )
        )
    records = await store.list_execution_records("task1")
    assert [r.attempt for r in records] == [1, 2, 3]
    assert records[-1].outcome == Outcome.SUCCESS


# -- Categories ----------------------------------------------------------------


async def test_add_and_list_categories(store: TaskStore) -> None:
    await store.add_category(Category(id="c2", name="reports"))
    await store.add_category(Category(id="c1", name="backups"))
    assert [c.name for c in await store.list_categories()] == ["backups", "reports"]
    assert await store.get_category("c2") == Category(id="c2", name="reports")
    assert await store.get_category("missing") is None


async def test_duplicate_category_name_raises(store: TaskStore) -> None:
    await store.add_category(Category(id="c1", name="reports"))
    with pytest.raises(ValueError, match="already exists"):
        await store.add_category(Category(id="c2", name="reports"))


# -- Persistence ---------------------------------------------------------------


async def test_tasks_survive_new_store_instance(store: TaskStore, tmp_path) -> None:
    await store.create_task(_make_task(prerequisites=[]))
    reopened = TaskStore(db_path=tmp_path / "test.db")
    assert (await reopened.get_task("task1")).title == "Test Task"


def test_singleton_get_and_reset() -> None:
    TaskStore._reset()
    first = TaskStore.get()
    assert TaskStore.get() is first
    TaskStore._reset()
    assert TaskStore.get() is not first
    TaskStore._reset()


async def test_list_due_offset_pages_in_order(store: TaskStore) -> None:
    for i in range(4):
        await store.create_task(_make_task(f"t{i}", due_at=T0 - timedelta(minutes=4 - i)))
    page = await store.list_due(T0, limit=2, offset=2)
    assert [t.id for t in page] == ["t2", "t3"]
