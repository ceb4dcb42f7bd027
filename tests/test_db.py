"""Tests for the aiosqlite connection helper."""

from pathlib import Path

import pytest

from taskscheduler.db import get_connection


class TestGetConnection:
    async def test_creates_parent_dirs(self, tmp_path: Path):
        db_path = tmp_path / "nested" / "dir" / "test.db"
        db = await get_connection(db_path)
        assert db_path.parent.exists()
        await db.close()

    async def test_wal_mode(self, tmp_path: Path):
        db = await get_connection(tmp_path / "test.db")
        cursor = await db.execute("PRAGMA journal_mode")
        row = await cursor.fetchone()
        assert row[0].lower() == "wal"
        await db.close()

    async def test_execute_and_fetch(self, tmp_path: Path):
        db = await get_connection(tmp_path / "test.db")
        await db.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT)")
        await db.execute("INSERT INTO t (name) VALUES (?)", ("alice",))
        await db.commit()

        cursor = await db.execute("SELECT name FROM t")
        rows = await cursor.fetchall()
        assert [tuple(r) for r in rows] == [("alice",)]
        await db.close()

    async def test_trace_logs_statements(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
    ):
        monkeypatch.setattr("taskscheduler.config.settings.database_trace", True)
        caplog.set_level("DEBUG", logger="taskscheduler.db")
        db = await get_connection(tmp_path / "test.db")
        await db.execute("CREATE TABLE traced (id INTEGER)")
        await db.close()
        assert any("CREATE TABLE traced" in r.getMessage() for r in caplog.records)
