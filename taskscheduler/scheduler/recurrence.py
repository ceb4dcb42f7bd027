"""RecurrenceEngine — next-occurrence computation with collapsed catch-up.

Missed occurrences are never replayed: when the next boundary has already
passed, every elapsed boundary is folded into a single fire at the nearest
future boundary and reported as ``missed``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, NamedTuple

from apscheduler.triggers.cron import CronTrigger

from taskscheduler.scheduler.clock import SystemClock
from taskscheduler.scheduler.models import RecurrenceKind

if TYPE_CHECKING:
    from taskscheduler.scheduler.clock import Clock
    from taskscheduler.scheduler.models import RecurrenceRule

logger = logging.getLogger(__name__)

_ONE_MICROSECOND = timedelta(microseconds=1)


class NextOccurrence(NamedTuple):
    at: datetime | None
    missed: int = 0


class RecurrenceEngine:
    """Computes when a recurring task fires next.

    Args:
        clock: Source of "now" for the catch-up policy.
        timezone: Default IANA timezone for cron rules without their own.
        max_catch_up: Upper bound on cron boundaries walked one by one before
            jumping straight to the first boundary after now.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        *,
        timezone: str = "UTC",
        max_catch_up: int = 10_000,
    ) -> None:
        self._clock = clock or SystemClock()
        self._timezone = timezone
        self._max_catch_up = max_catch_up

    def next_occurrence(self, rule: RecurrenceRule | None, after: datetime) -> datetime | None:
        """Return the next fire time strictly after *after*, or None if the rule never repeats."""
        return self.plan(rule, after).at

    def plan(self, rule: RecurrenceRule | None, after: datetime) -> NextOccurrence:
        """Like ``next_occurrence`` but also reports how many boundaries were collapsed."""
        if rule is None or rule.kind == RecurrenceKind.NONE:
            return NextOccurrence(None)
        if after.tzinfo is None:
            after = after.replace(tzinfo=UTC)
        now = self._clock.now()

        if rule.kind == RecurrenceKind.INTERVAL:
            return self._plan_interval(rule.interval, after, now)
        return self._plan_cron(self.build_trigger(rule), after, now)

    def validate(self, rule: RecurrenceRule | None) -> None:
        """Raise ValueError if a cron rule cannot be parsed."""
        if rule is not None and rule.kind == RecurrenceKind.CRON:
            self.build_trigger(rule)

    def build_trigger(self, rule: RecurrenceRule) -> CronTrigger:
        """Convert a cron rule into an APScheduler CronTrigger."""
        timezone = rule.timezone or self._timezone
        try:
            if rule.cron:
                return CronTrigger.from_crontab(rule.cron, timezone=timezone)
            return CronTrigger(timezone=timezone, **(rule.fields or {}))
        except (TypeError, ValueError) as exc:
            msg = f"Invalid cron rule {rule.to_dict()}: {exc}"
            raise ValueError(msg) from exc

    # -- Internal --------------------------------------------------------------

    @staticmethod
    def _plan_interval(interval: timedelta, after: datetime, now: datetime) -> NextOccurrence:
        candidate = after + interval
        if candidate > now:
            return NextOccurrence(candidate)
        missed = (now - after) // interval
        return NextOccurrence(after + (missed + 1) * interval, missed)

    def _plan_cron(self, trigger: CronTrigger, after: datetime, now: datetime) -> NextOccurrence:
        candidate = self._cron_after(trigger, after)
        missed = 0
        while candidate is not None and candidate <= now:
            missed += 1
            if missed >= self._max_catch_up:
                logger.warning(
                    "Cron catch-up exceeded %d boundaries; jumping past %s",
                    self._max_catch_up,
                    now.isoformat(),
                )
                candidate = self._cron_after(trigger, now)
                break
            candidate = self._cron_after(trigger, candidate)
        return NextOccurrence(candidate, missed)

    @staticmethod
    def _cron_after(trigger: CronTrigger, after: datetime) -> datetime | None:
        fire = trigger.get_next_fire_time(after, after + _ONE_MICROSECOND)
        if fire is None:
            return None
        return fire.astimezone(UTC)
