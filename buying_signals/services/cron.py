"""Five-field cron expressions and a recurring asyncio timer."""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from ..schemas.signals import DEFAULT_SCHEDULE

logger = logging.getLogger(__name__)

# (name, min, max) in field order: minute hour day-of-month month day-of-week
FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day of month", 1, 31),
    ("month", 1, 12),
    ("day of week", 0, 7),
)
MAX_SEARCH = timedelta(days=366 * 5)


def _parse_field(text: str, name: str, low: int, high: int) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        if not part:
            raise ValueError(f"Empty {name} list item in {text!r}")
        base, _, step_text = part.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValueError(f"Invalid {name} step {step_text!r}")
            step = int(step_text)

        if base == "*":
            start, end = low, high
        elif "-" in base:
            start_text, _, end_text = base.partition("-")
            if not (start_text.isdigit() and end_text.isdigit()):
                raise ValueError(f"Invalid {name} range {base!r}")
            start, end = int(start_text), int(end_text)
        elif base.isdigit():
            start = int(base)
            end = high if step_text else start
        else:
            raise ValueError(f"Invalid {name} value {base!r}")

        if start < low or end > high or start > end:
            raise ValueError(f"{name} {base!r} is outside {low}-{high}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    day_restricted: bool
    weekday_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> "CronExpression":
        parts = expression.split()
        if len(parts) != len(FIELDS):
            raise ValueError(f"Expected {len(FIELDS)} fields, got {len(parts)} in {expression!r}")
        parsed = [_parse_field(part, *bounds) for part, bounds in zip(parts, FIELDS)]
        # 7 and 0 are both Sunday
        weekdays = frozenset(0 if day == 7 else day for day in parsed[4])
        return cls(
            minutes=parsed[0],
            hours=parsed[1],
            days=parsed[2],
            months=parsed[3],
            weekdays=weekdays,
            day_restricted=not parts[2].startswith("*"),
            weekday_restricted=not parts[4].startswith("*"),
        )

    def _day_matches(self, moment: datetime) -> bool:
        day_ok = moment.day in self.days
        # Python weekday() is Monday=0; cron is Sunday=0
        weekday_ok = (moment.weekday() + 1) % 7 in self.weekdays
        if self.day_restricted and self.weekday_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def next_after(self, moment: datetime) -> datetime:
        """Return the first matching minute strictly after ``moment``."""

        candidate = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = moment + MAX_SEARCH
        while candidate <= limit:
            if candidate.month not in self.months:
                year, month = (candidate.year + 1, 1) if candidate.month == 12 else (candidate.year, candidate.month + 1)
                candidate = candidate.replace(year=year, month=month, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(candidate):
                candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if candidate.hour not in self.hours:
                candidate = candidate.replace(minute=0) + timedelta(hours=1)
                continue
            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate
        raise ValueError("Cron expression never fires")


def is_valid(expression: str) -> bool:
    try:
        CronExpression.parse(expression)
    except ValueError:
        return False
    return True


def resolve_schedule(expression: str | None) -> str:
    """Return ``expression`` if it parses, otherwise the default nightly schedule."""

    if expression and is_valid(expression):
        return expression
    logger.error("Invalid cron expression %r, using default %r", expression, DEFAULT_SCHEDULE)
    return DEFAULT_SCHEDULE


def _local_now() -> datetime:
    return datetime.now().astimezone()


class RecurringTimer:
    """Run an async callback each time a cron schedule fires.

    Callback errors are logged and the timer keeps running until stopped.
    """

    def __init__(
        self,
        schedule: str,
        callback: Callable[[], Awaitable[Any]],
        *,
        clock: Callable[[], datetime] = _local_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.schedule = schedule
        self._expression = CronExpression.parse(schedule)
        self._callback = callback
        self._clock = clock
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_fire(self) -> datetime:
        return self._expression.next_after(self._clock())

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"cron:{self.schedule}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def __aenter__(self) -> "RecurringTimer":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _run(self) -> None:
        while True:
            now = self._clock()
            fire_at = self._expression.next_after(now)
            await self._sleep(max(0.0, (fire_at - now).total_seconds()))
            try:
                await self._callback()
            except Exception:  # noqa: BLE001
                logger.exception("Scheduled job for %r failed", self.schedule)
