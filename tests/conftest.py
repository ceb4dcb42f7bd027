"""Shared test fixtures."""

from datetime import UTC, datetime
from pathlib import Path

import pytest

from taskscheduler.scheduler.clock import ManualClock
from taskscheduler.scheduler.store import TaskStore

T0 = datetime(2025, 6, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def clock() -> ManualClock:
    """A simulated clock starting at 2025-06-01 09:00 UTC."""
    return ManualClock(T0)


@pytest.fixture
async def store(tmp_path: Path) -> TaskStore:
    """Create a TaskStore backed by a temp database."""
    return TaskStore(db_path=tmp_path / "test.db")
