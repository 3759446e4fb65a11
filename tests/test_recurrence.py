from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest
from pydantic import ValidationError

from careline.models import Schedule
from careline.recurrence import next_execution

UTC = timezone.utc


def at(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


def test_once_in_future_and_past():
    schedule = Schedule(type="once", start_date=at(2024, 3, 10, 14))
    assert next_execution(schedule, at(2024, 3, 4)) == at(2024, 3, 10, 14)
    assert next_execution(schedule, at(2024, 3, 11)) is None
    executed = schedule.model_copy(update={"last_executed": at(2024, 3, 10, 14)})
    assert next_execution(executed, at(2024, 3, 4)) is None


def test_daily_first_occurrence_uses_reference_hour():
    schedule = Schedule(type="daily", start_date=at(2024, 3, 4))
    assert next_execution(schedule, at(2024, 3, 4, 8)) == at(2024, 3, 4, 9)
    assert next_execution(schedule, at(2024, 3, 4, 10)) == at(2024, 3, 5, 9)


def test_daily_interval_is_idempotent_after_execution():
    schedule = Schedule(type="daily", start_date=at(2024, 3, 4), interval=2, last_executed=at(2024, 3, 6, 9))
    first = next_execution(schedule, at(2024, 3, 6, 9, 5))
    second = next_execution(schedule, at(2024, 3, 7, 23))
    assert first == second == at(2024, 3, 8, 9)


def test_weekly():
    schedule = Schedule(type="weekly", start_date=at(2024, 3, 4), last_executed=at(2024, 3, 4, 9))
    assert next_execution(schedule, at(2024, 3, 4, 9)) == at(2024, 3, 11, 9)


def test_monthly_is_anchored_to_start_date():
    schedule = Schedule(type="monthly", start_date=at(2024, 1, 31))
    feb = next_execution(schedule.model_copy(update={"last_executed": at(2024, 1, 31, 9)}), at(2024, 2, 1))
    assert feb == at(2024, 2, 29, 9)
    mar = next_execution(schedule.model_copy(update={"last_executed": feb}), at(2024, 3, 1))
    assert mar == at(2024, 3, 31, 9)


def test_monthly_far_from_anchor():
    schedule = Schedule(type="monthly", start_date=at(2022, 1, 15), last_executed=at(2024, 1, 15, 9))
    assert next_execution(schedule, at(2024, 1, 20)) == at(2024, 2, 15, 9)


def test_end_date_exhausts_schedule():
    schedule = Schedule(
        type="daily",
        start_date=at(2024, 3, 4),
        end_date=at(2024, 3, 5, 12),
        last_executed=at(2024, 3, 5, 9),
    )
    assert next_execution(schedule, at(2024, 3, 5, 10)) is None


def test_reference_hour_follows_timezone():
    schedule = Schedule(type="daily", start_date=at(2024, 3, 4))
    paris = ZoneInfo("Europe/Paris")
    assert next_execution(schedule, at(2024, 3, 4, 0), tz=paris) == at(2024, 3, 4, 8)


def test_custom_cron():
    schedule = Schedule(type="custom", cron_expression="30 7 * * mon")
    assert next_execution(schedule, at(2024, 3, 5)) == at(2024, 3, 11, 7, 30)
    executed = schedule.model_copy(update={"last_executed": at(2024, 3, 11, 7, 30)})
    assert next_execution(executed, at(2024, 3, 11, 7, 30)) == at(2024, 3, 18, 7, 30)


def test_invalid_schedules_rejected():
    with pytest.raises(ValidationError):
        Schedule(type="custom", cron_expression="not a cron")
    with pytest.raises(ValidationError):
        Schedule(type="daily")
    with pytest.raises(ValidationError):
        Schedule(type="daily", start_date=at(2024, 3, 4), interval=0)


def test_no_schedule():
    assert next_execution(None, at(2024, 3, 4)) is None
