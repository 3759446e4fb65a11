"""Next-execution computation for scheduled steps."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Optional

from apscheduler.triggers.cron import CronTrigger
from dateutil.relativedelta import relativedelta

from .models import Schedule, ScheduleType
from .utils.timing import ensure_utc

REFERENCE_HOUR = 9

_UNITS = {
    ScheduleType.DAILY: ("days", timedelta(days=1)),
    ScheduleType.WEEKLY: ("weeks", timedelta(weeks=1)),
    # longest month, so the estimate below never overshoots
    ScheduleType.MONTHLY: ("months", timedelta(days=31)),
}


def _anchor(schedule: Schedule, tz: tzinfo, hour: int) -> datetime:
    local_start = schedule.start_date.astimezone(tz)
    return datetime.combine(local_start.date(), time(hour=hour), tzinfo=tz)


def _occurrence(schedule: Schedule, anchor: datetime, k: int) -> datetime:
    unit, _ = _UNITS[schedule.type]
    # always offset from the anchor so repeated calls never accumulate drift
    return ensure_utc(anchor + relativedelta(**{unit: k * schedule.interval}))


def _calendar_next(schedule: Schedule, floor: datetime, strict: bool, tz: tzinfo, hour: int) -> datetime:
    anchor = _anchor(schedule, tz, hour)
    _, approx = _UNITS[schedule.type]
    elapsed = floor - ensure_utc(anchor)
    k = max(0, int(elapsed / (approx * schedule.interval)) - 1)
    while True:
        candidate = _occurrence(schedule, anchor, k)
        if candidate > floor or (not strict and candidate == floor):
            return candidate
        k += 1


def _cron_next(schedule: Schedule, floor: datetime, strict: bool, tz: tzinfo) -> Optional[datetime]:
    trigger = CronTrigger.from_crontab(schedule.cron_expression, timezone=tz)
    if strict:
        # cron has one-second resolution; skip the fire time we already ran
        floor = floor + timedelta(seconds=1)
    fire = trigger.get_next_fire_time(None, floor.astimezone(tz))
    return ensure_utc(fire) if fire is not None else None


def next_execution(
    schedule: Optional[Schedule],
    reference: datetime,
    *,
    tz: tzinfo = timezone.utc,
    hour: int = REFERENCE_HOUR,
) -> Optional[datetime]:
    """Return the next instant *schedule* should fire, or ``None`` when exhausted.

    Once a step has run (``last_executed`` is set) the answer depends only on
    the schedule itself, so recomputing it is idempotent. Before the first run
    the earliest occurrence not before *reference* is returned.
    """
    if schedule is None:
        return None
    reference = ensure_utc(reference)

    if schedule.type == ScheduleType.ONCE:
        if schedule.last_executed is not None or schedule.start_date < reference:
            return None
        candidate = schedule.start_date
    else:
        if schedule.last_executed is not None:
            floor, strict = schedule.last_executed, True
        else:
            floor = max(reference, schedule.start_date) if schedule.start_date else reference
            strict = False
        if schedule.type == ScheduleType.CUSTOM:
            candidate = _cron_next(schedule, floor, strict, tz)
        else:
            candidate = _calendar_next(schedule, floor, strict, tz, hour)

    if candidate is None:
        return None
    if schedule.end_date is not None and candidate > schedule.end_date:
        return None
    return candidate
