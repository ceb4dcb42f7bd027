"""TaskStore — aiosqlite persistence for tasks, execution history and categories."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

import aiosqlite

from taskscheduler.db import get_connection
from taskscheduler.scheduler.errors import ConflictError, TaskNotFoundError
from taskscheduler.scheduler.models import (
    TERMINAL_STATUSES,
    Category,
    ExecutionRecord,
    Task,
    TaskStatus,
    to_iso,
    utcnow,
)

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

logger = logging.getLogger(__name__)

_TASK_COLUMNS = (
    "id, title, description, category_id, recurrence, action, due_at, status, "
    "prerequisites, retry_count, occurrence, last_run_at, last_completed_at, "
    "created_at, updated_at, scheduled_for"
)

_RECORD_COLUMNS = "task_id, occurrence, attempt, started_at, finished_at, outcome, detail"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        category_id TEXT,
        recurrence TEXT,
        action TEXT NOT NULL DEFAULT '{}',
        due_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        prerequisites TEXT NOT NULL DEFAULT '[]',
        retry_count INTEGER NOT NULL DEFAULT 0,
        occurrence INTEGER NOT NULL DEFAULT 0,
        last_run_at TEXT,
        last_completed_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        scheduled_for TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_status_due ON tasks(status, due_at)",
    """
    CREATE TABLE IF NOT EXISTS execution_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id TEXT NOT NULL,
        occurrence INTEGER NOT NULL,
        attempt INTEGER NOT NULL,
        started_at TEXT NOT NULL,
        finished_at TEXT NOT NULL,
        outcome TEXT NOT NULL,
        detail TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_records_task ON execution_records(task_id, id)",
    """
    CREATE TABLE IF NOT EXISTS categories (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE
    )
    """,
)

# Fields that may change together with a compare-and-swap status update.
_MUTABLE_FIELDS = frozenset(
    {
        "due_at",
        "scheduled_for",
        "retry_count",
        "occurrence",
        "last_run_at",
        "last_completed_at",
    }
)


def _column_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    return value


class TaskStore:
    """Persists tasks, their execution history and categories in SQLite.

    Singleton accessed via ``TaskStore.get()``.  Pass an explicit *db_path*
    for test isolation (e.g. ``tmp_path / "test.db"``).  Several stores (and
    processes) may point at the same file; ``update_status`` is the only
    mutual-exclusion mechanism between them.
    """

    _instance: TaskStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    @classmethod
    def get(cls) -> TaskStore:
        """Return the shared TaskStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        db = await get_connection(self._db_path)
        if not self._initialised:
            for statement in _SCHEMA:
                await db.execute(statement)
            await db.commit()
            self._initialised = True
            logger.debug("TaskStore schema ready (%s)", self._db_path or "default path")
        return db

    async def _fetch_tasks(self, sql: str, params: tuple = ()) -> list[Task]:
        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            return [Task.from_row(tuple(row)) for row in rows]
        finally:
            await db.close()

    # -- Tasks -----------------------------------------------------------------

    async def create_task(self, task: Task) -> str:
        """Insert a new task and return its id. Raises ValueError on duplicate id."""
        db = await self._connect()
        try:
            await db.execute(
                f"INSERT INTO tasks ({_TASK_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                task.to_row(),
            )
            await db.commit()
        except aiosqlite.IntegrityError as exc:
            msg = f"Task {task.id} already exists"
            raise ValueError(msg) from exc
        except aiosqlite.Error:
            logger.exception("Failed to insert task %s", task.id)
            raise
        finally:
            await db.close()
        logger.info("Created task: '%s' (%s) due=%s", task.title, task.id, to_iso(task.due_at))
        return task.id

    async def get_task(self, task_id: str) -> Task | None:
        """Fetch a task by ID, or None if not found."""
        tasks = await self._fetch_tasks(
            f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?", (task_id,)
        )
        return tasks[0] if tasks else None

    async def require_task(self, task_id: str) -> Task:
        """Fetch a task by ID. Raises TaskNotFoundError if it does not exist."""
        task = await self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def update_status(
        self,
        task_id: str,
        new_status: TaskStatus,
        expected_status: TaskStatus,
        **changes: Any,
    ) -> Task:
        """Compare-and-swap the status of a task.

        The update only applies if the stored status equals *expected_status*;
        otherwise ConflictError is raised and nothing changes.  Keyword
        arguments (``due_at``, ``scheduled_for``, ``retry_count``,
        ``occurrence``, ``last_run_at``, ``last_completed_at``) are written in the same
        statement.  Returns the task as read back after the update.
        """
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            msg = f"Cannot update field(s): {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [TaskStatus(new_status).value, to_iso(utcnow())]
        for name, value in changes.items():
            assignments.append(f"{name} = ?")
            params.append(_column_value(value))

        db = await self._connect()
        try:
            try:
                cursor = await db.execute(
                    f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                    (*params, task_id, TaskStatus(expected_status).value),
                )
                await db.commit()
            except aiosqlite.Error:
                logger.exception("Failed to update status of task %s", task_id)
                raise
            swapped = cursor.rowcount == 1
            cursor = await db.execute(f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?", (task_id,))
            row = await cursor.fetchone()
        finally:
            await db.close()

        if row is None:
            raise TaskNotFoundError(task_id)
        task = Task.from_row(tuple(row))
        if not swapped:
            raise ConflictError(task_id, TaskStatus(expected_status), task.status)
        logger.debug(
            "Task %s: %s -> %s %s", task_id, expected_status, new_status, changes or ""
        )
        return task

    async def set_prerequisites(self, task_id: str, prerequisites: Iterable[str]) -> None:
        """Replace a task's prerequisite list."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "UPDATE tasks SET prerequisites = ?, updated_at = ? WHERE id = ?",
                (json.dumps(list(prerequisites)), to_iso(utcnow()), task_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise TaskNotFoundError(task_id)
        finally:
            await db.close()

    async def delete_task(
        self, task_id: str, expected_status: TaskStatus | None = None
    ) -> bool:
        """Delete a task. Its execution history is kept.

        With *expected_status*, the row is only removed while it still has that
        status.  Returns True if a row was removed.
        """
        sql = "DELETE FROM tasks WHERE id = ?"
        params: tuple = (task_id,)
        if expected_status is not None:
            sql += " AND status = ?"
            params = (task_id, TaskStatus(expected_status).value)
        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            await db.commit()
            deleted = cursor.rowcount > 0
        finally:
            await db.close()
        if deleted:
            logger.info("Deleted task: %s", task_id)
        return deleted

    async def list_due(self, as_of: datetime, limit: int = 100, offset: int = 0) -> list[Task]:
        """Return pending tasks whose due time is at or before *as_of*.

        Ordered by due time, then creation, then id; *offset* skips that many
        rows of the ordering (for paging past tasks that are not ready).
        """
        return await self._fetch_tasks(
            f"SELECT {_TASK_COLUMNS} FROM tasks "
            "WHERE status = ? AND due_at <= ? "
            "ORDER BY due_at, created_at, id LIMIT ? OFFSET ?",
            (TaskStatus.PENDING.value, to_iso(as_of), int(limit), int(offset)),
        )

    async def list_tasks(self, statuses: Iterable[TaskStatus] | None = None) -> list[Task]:
        """Return all tasks, optionally restricted to the given statuses."""
        if statuses is None:
            return await self._fetch_tasks(
                f"SELECT {_TASK_COLUMNS} FROM tasks ORDER BY created_at"
            )
        wanted = [TaskStatus(s).value for s in statuses]
        if not wanted:
            return []
        placeholders = ",".join("?" for _ in wanted)
        return await self._fetch_tasks(
            f"SELECT {_TASK_COLUMNS} FROM tasks WHERE status IN ({placeholders}) "
            "ORDER BY created_at",
            tuple(wanted),
        )

    async def list_non_terminal_tasks(self) -> list[Task]:
        return await self.list_tasks(s for s in TaskStatus if s not in TERMINAL_STATUSES)

    async def get_statuses(self, task_ids: Iterable[str]) -> dict[str, TaskStatus]:
        """Return the effective status of each known task id.

        A recurring task that has completed at least one occurrence counts as
        ``completed`` while it waits for its next one, so dependents are not
        blocked forever by its reset to ``pending``.
        """
        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT id, status, recurrence, last_completed_at FROM tasks "
                f"WHERE id IN ({placeholders})",
                tuple(ids),
            )
            rows = await cursor.fetchall()
        finally:
            await db.close()

        statuses: dict[str, TaskStatus] = {}
        for task_id, raw_status, recurrence, last_completed_at in rows:
            status = TaskStatus(raw_status)
            if recurrence and last_completed_at and not status.is_terminal:
                status = TaskStatus.COMPLETED
            statuses[task_id] = status
        return statuses

    # -- Execution history -----------------------------------------------------

    async def append_execution_record(self, record: ExecutionRecord) -> None:
        db = await self._connect()
        try:
            await db.execute(
                f"INSERT INTO execution_records ({_RECORD_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                record.to_row(),
            )
            await db.commit()
        except aiosqlite.Error:
            logger.exception("Failed to append execution record for task %s", record.task_id)
            raise
        finally:
            await db.close()

    async def list_execution_records(self, task_id: str) -> list[ExecutionRecord]:
        """Return a task's execution history, oldest first."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT {_RECORD_COLUMNS} FROM execution_records WHERE task_id = ? ORDER BY id",
                (task_id,),
            )
            rows = await cursor.fetchall()
            return [ExecutionRecord.from_row(tuple(row)) for row in rows]
        finally:
            await db.close()

    # -- Categories ------------------------------------------------------------

    async def add_category(self, category: Category) -> Category:
        """Insert a category. Raises ValueError if the id or name is taken."""
        db = await self._connect()
        try:
            await db.execute(
                "INSERT INTO categories (id, name) VALUES (?, ?)",
                (category.id, category.name),
            )
            await db.commit()
        except aiosqlite.IntegrityError as exc:
            msg = f"Category '{category.name}' already exists"
            raise ValueError(msg) from exc
        finally:
            await db.close()
        logger.info("Added category: %s (%s)", category.name, category.id)
        return category

    async def get_category(self, category_id: str) -> Category | None:
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT id, name FROM categories WHERE id = ?", (category_id,)
            )
            row = await cursor.fetchone()
            return Category(id=row[0], name=row[1]) if row else None
        finally:
            await db.close()

    async def list_categories(self) -> list[Category]:
        db = await self._connect()
        try:
            cursor = await db.execute("SELECT id, name FROM categories ORDER BY name")
            rows = await cursor.fetchall()
            return [Category(id=row[0], name=row[1]) for row in rows]
        finally:
            await db.close()
