"""Scheduler data model — tasks, recurrence rules, execution records, categories."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

_CRON_FIELDS = frozenset(
    {"year", "month", "day", "week", "day_of_week", "hour", "minute", "second"}
)


class TaskStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class RecurrenceKind(StrEnum):
    NONE = "none"
    INTERVAL = "interval"
    CRON = "cron"


class Outcome(StrEnum):
    """Result of a single execution attempt."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


# -- Timestamps ---------------------------------------------------------------


def to_iso(value: datetime) -> str:
    """Serialize to a fixed-width UTC ISO 8601 string (sortable as text)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def utcnow() -> datetime:
    return datetime.now(UTC)


# -- Recurrence ---------------------------------------------------------------


@dataclass(frozen=True)
class RecurrenceRule:
    """How a task repeats.

    Attributes:
        kind: ``none``, ``interval`` or ``cron``.
        interval: Fixed period for ``interval`` rules (must be positive).
        cron: Crontab string for ``cron`` rules, e.g. ``"0 9 * * mon-fri"``.
        fields: Individual cron fields (``hour``, ``minute``, ``day_of_week`` ...)
            as an alternative to *cron*.
        timezone: IANA timezone the cron fields are evaluated in (None → UTC).
    """

    kind: RecurrenceKind = RecurrenceKind.NONE
    interval: timedelta | None = None
    cron: str | None = None
    fields: dict[str, Any] | None = None
    timezone: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", RecurrenceKind(self.kind))
        if self.kind == RecurrenceKind.INTERVAL:
            if self.interval is None or self.interval <= timedelta(0):
                msg = "interval recurrence requires a positive interval"
                raise ValueError(msg)
        elif self.kind == RecurrenceKind.CRON:
            if not self.cron and not self.fields:
                msg = "cron recurrence requires a crontab string or cron fields"
                raise ValueError(msg)
            if self.fields:
                unknown = set(self.fields) - _CRON_FIELDS
                if unknown:
                    msg = f"Unknown cron field(s): {', '.join(sorted(unknown))}"
                    raise ValueError(msg)

    # -- Constructors -----------------------------------------------------------

    @classmethod
    def every(cls, interval: timedelta) -> RecurrenceRule:
        return cls(kind=RecurrenceKind.INTERVAL, interval=interval)

    @classmethod
    def crontab(cls, expression: str, timezone: str | None = None) -> RecurrenceRule:
        return cls(kind=RecurrenceKind.CRON, cron=expression, timezone=timezone)

    @classmethod
    def cron_fields(cls, timezone: str | None = None, **fields: Any) -> RecurrenceRule:
        return cls(kind=RecurrenceKind.CRON, fields=fields, timezone=timezone)

    @property
    def recurs(self) -> bool:
        return self.kind != RecurrenceKind.NONE

    # -- Serialization ----------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value}
        if self.interval is not None:
            data["interval_seconds"] = self.interval.total_seconds()
        if self.cron:
            data["cron"] = self.cron
        if self.fields:
            data["fields"] = dict(self.fields)
        if self.timezone:
            data["timezone"] = self.timezone
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecurrenceRule:
        seconds = data.get("interval_seconds")
        return cls(
            kind=RecurrenceKind(data.get("kind", "none")),
            interval=timedelta(seconds=seconds) if seconds is not None else None,
            cron=data.get("cron"),
            fields=data.get("fields"),
            timezone=data.get("timezone"),
        )


# -- Task ---------------------------------------------------------------------


@dataclass
class Task:
    """A unit of scheduled work.

    Attributes:
        id: Unique identifier (UUID hex).
        title: Human-readable name.
        due_at: When the current occurrence becomes due (aware UTC).
        recurrence: Repeat rule, or None for one-shot tasks.
        status: Lifecycle status.
        prerequisites: Ids of tasks that must be completed first.
        category_id: Optional grouping.
        action: What the executor should do, e.g. ``{"type": "log", "message": "..."}``.
        description: Optional longer text.
        retry_count: Failed attempts in the current occurrence.
        occurrence: Sequence number of the current occurrence (starts at 0).
        last_run_at: Start of the most recent attempt.
        last_completed_at: End of the most recent successful attempt.
        scheduled_for: Nominal time of the current occurrence.  Equals *due_at*
            until a retry pushes *due_at* back; recurrence is computed from it.
    """

    id: str
    title: str
    due_at: datetime
    recurrence: RecurrenceRule | None = None
    status: TaskStatus = TaskStatus.PENDING
    prerequisites: list[str] = field(default_factory=list)
    category_id: str | None = None
    action: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    retry_count: int = 0
    occurrence: int = 0
    last_run_at: datetime | None = None
    last_completed_at: datetime | None = None
    scheduled_for: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        self.status = TaskStatus(self.status)
        if self.due_at.tzinfo is None:
            self.due_at = self.due_at.replace(tzinfo=UTC)
        if self.scheduled_for is None:
            self.scheduled_for = self.due_at
        elif self.scheduled_for.tzinfo is None:
            self.scheduled_for = self.scheduled_for.replace(tzinfo=UTC)
        if self.created_at is None:
            self.created_at = utcnow()
        if self.updated_at is None:
            self.updated_at = self.created_at
        if self.recurrence is not None and not self.recurrence.recurs:
            self.recurrence = None
        if self.id in self.prerequisites:
            msg = f"Task {self.id} cannot depend on itself"
            raise ValueError(msg)

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def action_type(self) -> str:
        return str(self.action.get("type", ""))

    # -- Serialization ----------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching ``_TASK_COLUMNS`` in the store."""
        return (
            self.id,
            self.title,
            self.description,
            self.category_id,
            json.dumps(self.recurrence.to_dict()) if self.recurrence else None,
            json.dumps(self.action),
            to_iso(self.due_at),
            self.status.value,
            json.dumps(list(self.prerequisites)),
            self.retry_count,
            self.occurrence,
            to_iso(self.last_run_at) if self.last_run_at else None,
            to_iso(self.last_completed_at) if self.last_completed_at else None,
            to_iso(self.created_at),
            to_iso(self.updated_at),
            to_iso(self.scheduled_for),
        )

    @classmethod
    def from_row(cls, row: tuple) -> Task:
        return cls(
            id=row[0],
            title=row[1],
            description=row[2] or "",
            category_id=row[3],
            recurrence=RecurrenceRule.from_dict(json.loads(row[4])) if row[4] else None,
            action=json.loads(row[5]) if row[5] else {},
            due_at=from_iso(row[6]),
            status=TaskStatus(row[7]),
            prerequisites=json.loads(row[8]) if row[8] else [],
            retry_count=int(row[9]),
            occurrence=int(row[10]),
            last_run_at=from_iso(row[11]),
            last_completed_at=from_iso(row[12]),
            created_at=from_iso(row[13]),
            updated_at=from_iso(row[14]),
            scheduled_for=from_iso(row[15]),
        )


# -- Execution history --------------------------------------------------------


@dataclass(frozen=True)
class ExecutionRecord:
    """One attempt at running a task. Append-only, never modified."""

    task_id: str
    attempt: int
    started_at: datetime
    finished_at: datetime
    outcome: Outcome
    detail: str | None = None
    occurrence: int = 0

    def to_row(self) -> tuple:
        return (
            self.task_id,
            self.occurrence,
            self.attempt,
            to_iso(self.started_at),
            to_iso(self.finished_at),
            self.outcome.value,
            self.detail,
        )

    @classmethod
    def from_row(cls, row: tuple) -> ExecutionRecord:
        return cls(
            task_id=row[0],
            occurrence=int(row[1]),
            attempt=int(row[2]),
            started_at=from_iso(row[3]),
            finished_at=from_iso(row[4]),
            outcome=Outcome(row[5]),
            detail=row[6],
        )


@dataclass(frozen=True)
class Category:
    id: str
    name: str


def make_task_id() -> str:
    """Generate a new task ID."""
    return uuid.uuid4().hex


def make_category_id() -> str:
    return uuid.uuid4().hex
