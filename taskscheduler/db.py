"""Async SQLite connections for the task store.

Every connection runs in WAL mode with a busy timeout so that several
scheduler processes can share one database file.  Compare-and-swap updates
rely on SQLite serialising writers, not on any in-process lock.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import aiosqlite

from taskscheduler.config import settings

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_BUSY_TIMEOUT_MS = 5000


def _trace(statement: str) -> None:
    logger.debug("SQL: %s", statement)


async def get_connection(path: Path | None = None) -> aiosqlite.Connection:
    """Open an aiosqlite connection with WAL mode and busy timeout.

    If *path* is given (test isolation), it takes priority over
    ``settings.database_path``.
    """
    db_path = path or settings.database_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    await db.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_MS}")
    await db.execute("PRAGMA journal_mode=WAL")
    if settings.database_trace:
        await db.set_trace_callback(_trace)
    return db
