"""Unit tests for time-trigger matching."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from local_workflow_engine.engine.triggers.schedule import match_schedule
from local_workflow_engine.engine.workflow.models import ScheduleType, TimeScheduleTrigger

# 2026-03-02 is a Monday.
MONDAY = datetime(2026, 3, 2, tzinfo=UTC)


def _at(hour: int, minute: int, *, day: datetime = MONDAY) -> datetime:
    return day.replace(hour=hour, minute=minute, second=12)


def _daily(time_of_day: str = "09:30", **fields: object) -> TimeScheduleTrigger:
    return TimeScheduleTrigger(schedule_type=ScheduleType.DAILY, time_of_day=time_of_day, **fields)


@pytest.mark.parametrize(("hour", "minute"), [(9, 29), (9, 30), (9, 31)])
def test_daily_matches_within_tolerance(hour: int, minute: int) -> None:
    matched = match_schedule(_daily(), now=_at(hour, minute), last_fired=None)
    assert matched is not None
    assert matched.scheduled_for == MONDAY.replace(hour=9, minute=30)


@pytest.mark.parametrize(("hour", "minute"), [(9, 27), (9, 33), (21, 30)])
def test_daily_does_not_match_outside_window(hour: int, minute: int) -> None:
    assert match_schedule(_daily(), now=_at(hour, minute), last_fired=None) is None


def test_daily_fires_once_per_day() -> None:
    trigger = _daily()
    first = match_schedule(trigger, now=_at(9, 30), last_fired=None)
    assert first is not None

    assert match_schedule(trigger, now=_at(9, 31), last_fired=first.scheduled_for) is None
    assert match_schedule(trigger, now=_at(9, 32), last_fired=first.scheduled_for) is None

    tomorrow = MONDAY + timedelta(days=1)
    assert match_schedule(
        trigger, now=_at(9, 30, day=tomorrow), last_fired=first.scheduled_for
    ) is not None


def test_window_wraps_around_midnight() -> None:
    trigger = _daily("00:00")
    matched = match_schedule(trigger, now=_at(23, 59), last_fired=None)
    assert matched is not None
    assert matched.scheduled_for == MONDAY + timedelta(days=1)


def test_weekly_only_on_listed_days() -> None:
    trigger = TimeScheduleTrigger(
        schedule_type=ScheduleType.WEEKLY, time_of_day="08:00", days_of_week=[2, 4]
    )
    assert match_schedule(trigger, now=_at(8, 0), last_fired=None) is None
    tuesday = MONDAY + timedelta(days=1)
    assert match_schedule(trigger, now=_at(8, 0, day=tuesday), last_fired=None) is not None


def test_once_respects_date_and_fires_only_once() -> None:
    trigger = TimeScheduleTrigger(
        schedule_type=ScheduleType.ONCE, time_of_day="10:00", date="2026-03-03"
    )
    assert match_schedule(trigger, now=_at(10, 0), last_fired=None) is None

    tuesday = MONDAY + timedelta(days=1)
    matched = match_schedule(trigger, now=_at(10, 0, day=tuesday), last_fired=None)
    assert matched is not None
    assert match_schedule(
        trigger, now=_at(10, 0, day=tuesday), last_fired=matched.scheduled_for
    ) is None


def test_interval_fires_immediately_then_every_interval() -> None:
    trigger = TimeScheduleTrigger(schedule_type=ScheduleType.INTERVAL, interval_minutes=15)
    now = _at(14, 3)

    assert match_schedule(trigger, now=now, last_fired=None) is not None
    assert match_schedule(trigger, now=now + timedelta(minutes=14), last_fired=now) is None
    assert match_schedule(trigger, now=now + timedelta(minutes=15), last_fired=now) is not None


def test_timezone_is_applied() -> None:
    trigger = _daily("09:30", timezone="Europe/Berlin")
    # 08:30 UTC is 09:30 in Berlin (CET, UTC+1) in early March.
    assert match_schedule(trigger, now=_at(8, 30), last_fired=None) is not None
    assert match_schedule(trigger, now=_at(9, 30), last_fired=None) is None
