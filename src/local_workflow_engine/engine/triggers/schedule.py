"""Wall-clock schedule matching for time triggers.

Evaluation happens every few seconds, never exactly on the minute, so a
scheduled time matches anywhere within a tolerance window around it. The
last-fired marker turns "matches" into "fires once per day".
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from local_workflow_engine.engine.workflow.models import ScheduleType, TimeScheduleTrigger
from local_workflow_engine.engine.workflow.validation import parse_time_of_day


@dataclass(frozen=True, slots=True)
class ScheduleMatch:
    scheduled_for: datetime

    @property
    def scheduled_time(self) -> str:
        return self.scheduled_for.isoformat()


def _nearest_occurrence(trigger: TimeScheduleTrigger, local_now: datetime) -> datetime:
    at = parse_time_of_day(trigger.time_of_day)
    today = local_now.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
    candidates = [today - timedelta(days=1), today, today + timedelta(days=1)]
    return min(candidates, key=lambda c: abs(c - local_now))


def match_schedule(
    trigger: TimeScheduleTrigger,
    *,
    now: datetime,
    last_fired: datetime | None,
    tolerance_minutes: int = 1,
) -> ScheduleMatch | None:
    """Return the occurrence ``now`` satisfies, or None if the trigger should not fire.

    ``now`` and ``last_fired`` must be timezone-aware; comparisons happen in the
    trigger's own timezone at minute granularity.
    """

    tz = ZoneInfo(trigger.timezone)
    local_now = now.astimezone(tz).replace(second=0, microsecond=0)

    if trigger.schedule_type == ScheduleType.INTERVAL:
        interval = timedelta(minutes=trigger.interval_minutes or 0)
        if interval <= timedelta(0):
            return None
        if last_fired is None or now - last_fired >= interval:
            return ScheduleMatch(scheduled_for=local_now)
        return None

    occurrence = _nearest_occurrence(trigger, local_now)
    if abs(local_now - occurrence) > timedelta(minutes=tolerance_minutes):
        return None

    occurrence_day = occurrence.date()
    match trigger.schedule_type:
        case ScheduleType.ONCE:
            if last_fired is not None:
                return None
            if trigger.date is not None and occurrence_day != date.fromisoformat(trigger.date):
                return None
        case ScheduleType.DAILY:
            if last_fired is not None and last_fired.astimezone(tz).date() == occurrence_day:
                return None
        case ScheduleType.WEEKLY:
            if occurrence_day.isoweekday() not in trigger.days_of_week:
                return None
            if last_fired is not None and last_fired.astimezone(tz).date() == occurrence_day:
                return None

    return ScheduleMatch(scheduled_for=occurrence)
