from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from buying_signals.schemas.signals import DEFAULT_SCHEDULE
from buying_signals.services.cron import CronExpression, RecurringTimer, is_valid, resolve_schedule

# 2026-10-19 is a Monday
MONDAY = datetime(2026, 10, 19, 1, 59, 30, tzinfo=timezone.utc)


def _at(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_default_schedule_fires_at_two() -> None:
    expression = CronExpression.parse(DEFAULT_SCHEDULE)

    assert expression.next_after(MONDAY) == _at(2026, 10, 19, 2, 0)
    assert expression.next_after(_at(2026, 10, 19, 2, 0)) == _at(2026, 10, 20, 2, 0)


def test_weekday_business_hours_skip_weekend() -> None:
    expression = CronExpression.parse("*/15 9-17 * * 1-5")

    assert expression.next_after(_at(2026, 10, 24, 10, 0)) == _at(2026, 10, 26, 9, 0)
    assert expression.next_after(_at(2026, 10, 26, 9, 7)) == _at(2026, 10, 26, 9, 15)


def test_day_of_month_and_weekday_are_ored() -> None:
    expression = CronExpression.parse("0 0 13 * 5")

    assert expression.next_after(MONDAY) == _at(2026, 10, 23, 0, 0)


def test_seven_means_sunday() -> None:
    assert CronExpression.parse("0 12 * * 7").next_after(MONDAY) == _at(2026, 10, 25, 12, 0)


def test_month_step_rolls_into_next_year() -> None:
    assert CronExpression.parse("0 0 1 */3 *").next_after(MONDAY) == _at(2027, 1, 1, 0, 0)


def test_lists_and_ranges() -> None:
    expression = CronExpression.parse("5,35 1-2 * * *")

    assert sorted(expression.minutes) == [5, 35]
    assert sorted(expression.hours) == [1, 2]


@pytest.mark.parametrize("expression", ["61 * * * *", "* * *", "*/0 * * * *", "a b c d e", "0 0 0 * *", "5-1 * * * *"])
def test_invalid_expressions(expression: str) -> None:
    assert is_valid(expression) is False


def test_invalid_schedule_falls_back_to_default() -> None:
    assert resolve_schedule("every night") == DEFAULT_SCHEDULE
    assert resolve_schedule(None) == DEFAULT_SCHEDULE
    assert resolve_schedule("30 3 * * *") == "30 3 * * *"


@pytest.mark.asyncio
async def test_timer_sleeps_until_next_fire_and_runs_callback() -> None:
    delays: list[float] = []
    fired = asyncio.Event()

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)
        await asyncio.sleep(0)

    async def job() -> None:
        fired.set()

    async with RecurringTimer(DEFAULT_SCHEDULE, job, clock=lambda: MONDAY, sleep=fake_sleep) as timer:
        await asyncio.wait_for(fired.wait(), timeout=1)
        assert timer.running

    assert delays[0] == 30.0
    assert timer.running is False


@pytest.mark.asyncio
async def test_timer_survives_callback_errors() -> None:
    calls = 0
    second_run = asyncio.Event()

    async def fake_sleep(seconds: float) -> None:
        await asyncio.sleep(0)

    async def flaky() -> None:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("first run fails")
        second_run.set()

    timer = RecurringTimer("* * * * *", flaky, clock=lambda: MONDAY, sleep=fake_sleep)
    timer.start()
    try:
        await asyncio.wait_for(second_run.wait(), timeout=1)
    finally:
        await timer.stop()

    assert calls >= 2


@pytest.mark.asyncio
async def test_stop_without_start_is_noop() -> None:
    async def job() -> None:
        return None

    timer = RecurringTimer(DEFAULT_SCHEDULE, job)

    await timer.stop()

    assert timer.running is False


def test_timer_rejects_invalid_schedule() -> None:
    async def job() -> None:
        return None

    with pytest.raises(ValueError):
        RecurringTimer("not a cron", job)
