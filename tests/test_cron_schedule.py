# tests/test_cron_schedule.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from member_alert.domain import CronScheduleDefinition
from member_alert.results import ErrorKind


@pytest.mark.parametrize(
    "expression, tz",
    [
        ("0 */30 * * * *", "UTC"),
        ("*/5 * * * *", "America/New_York"),
        ("0 0 6 * * MON-FRI", "Europe/London"),
    ],
)
def test_valid_definitions_are_created(expression, tz):
    res = CronScheduleDefinition.create(expression, tz)
    assert res.ok
    assert res.value.time_zone_id == tz
    assert res.value.last_run_utc is None


@pytest.mark.parametrize(
    "expression, tz",
    [
        ("", "UTC"),
        ("not a cron", "UTC"),
        ("99 * * * *", "UTC"),
        ("* * * * * * * *", "UTC"),
        ("0 */30 * * * *", "Nowhere/Special"),
        ("0 */30 * * * *", "America"),
        ("0 */30 * * * *", "Etc"),
        ("0 */30 * * * *", ""),
    ],
)
def test_invalid_definitions_fail_validation(expression, tz):
    res = CronScheduleDefinition.create(expression, tz)
    assert not res.ok
    assert res.kind == ErrorKind.validation
    assert res.value is None


def test_never_run_schedule_is_due():
    sched = CronScheduleDefinition.create("0 */30 * * * *", "UTC").value
    assert sched.is_due(datetime(2026, 1, 1, 10, 5, tzinfo=timezone.utc))


def test_due_only_from_next_fire_time():
    last = datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)
    sched = CronScheduleDefinition.create("0 */30 * * * *", "UTC", last).value

    assert sched.next_occurrence(last) == datetime(2026, 1, 1, 10, 30, tzinfo=timezone.utc)
    assert not sched.is_due(last + timedelta(minutes=29, seconds=59))
    assert sched.is_due(last + timedelta(minutes=30))

    sched.record_run(last + timedelta(minutes=30))
    assert not sched.is_due(last + timedelta(minutes=31))


def test_next_occurrence_honors_time_zone():
    # 06:00 in New York is 11:00 UTC in January
    sched = CronScheduleDefinition.create("0 0 6 * * *", "America/New_York").value
    nxt = sched.next_occurrence(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))
    assert nxt == datetime(2026, 1, 16, 11, 0, tzinfo=timezone.utc)
    assert nxt.tzinfo is not None
