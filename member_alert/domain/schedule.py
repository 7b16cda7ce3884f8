# member_alert/domain/schedule.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from ..results import Result


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_cron(expression: str, start: datetime) -> croniter:
    # Six fields means a leading seconds field ("0 */30 * * * *").
    return croniter(expression, start, second_at_beginning=True)


class CronScheduleDefinition:
    """
    The single stored scan schedule: cron expression, the zone it is
    evaluated in, and when it last ran.

    Both five-field and six-field (seconds first) expressions are accepted.
    """

    def __init__(self, expression: str, time_zone_id: str, last_run_utc: Optional[datetime] = None) -> None:
        self._expression = expression
        self._time_zone_id = time_zone_id
        self._zone = ZoneInfo(time_zone_id)
        self._last_run_utc = _as_utc(last_run_utc) if last_run_utc else None

    @classmethod
    def create(
        cls,
        expression: str,
        time_zone_id: str,
        last_run_utc: Optional[datetime] = None,
    ) -> Result["CronScheduleDefinition"]:
        expr = " ".join((expression or "").split())
        if not expr:
            return Result.validation("Cron expression is required.")

        tz_id = (time_zone_id or "").strip()
        if not tz_id:
            return Result.validation("Time zone is required.")
        try:
            zone = ZoneInfo(tz_id)
        except (ZoneInfoNotFoundError, ValueError, OSError):
            return Result.validation(f"Unsupported time zone '{time_zone_id}'.")

        if len(expr.split(" ")) not in (5, 6):
            return Result.validation(f"Invalid cron expression: expected 5 or 6 fields, got '{expr}'.")
        try:
            _parse_cron(expr, datetime.now(zone))
        except (ValueError, KeyError) as e:
            return Result.validation(f"Invalid cron expression: {e}")

        return Result.success(cls(expr, tz_id, last_run_utc))

    @property
    def expression(self) -> str:
        return self._expression

    @property
    def time_zone_id(self) -> str:
        return self._time_zone_id

    @property
    def last_run_utc(self) -> Optional[datetime]:
        return self._last_run_utc

    def next_occurrence(self, from_utc: datetime) -> datetime:
        """First fire time strictly after from_utc, returned in UTC."""
        local = _as_utc(from_utc).astimezone(self._zone)
        nxt = _parse_cron(self._expression, local).get_next(datetime)
        return _as_utc(nxt)

    def next_due_at(self) -> Optional[datetime]:
        if self._last_run_utc is None:
            return None
        return self.next_occurrence(self._last_run_utc)

    def is_due(self, now_utc: datetime) -> bool:
        due_at = self.next_due_at()
        if due_at is None:
            return True
        return _as_utc(now_utc) >= due_at

    def record_run(self, run_at_utc: datetime) -> None:
        self._last_run_utc = _as_utc(run_at_utc)

    def as_dict(self) -> dict:
        return {
            "expression": self._expression,
            "time_zone_id": self._time_zone_id,
            "last_run_utc": self._last_run_utc.isoformat() if self._last_run_utc else None,
        }

    def __repr__(self) -> str:
        return f"CronScheduleDefinition({self._expression!r}, {self._time_zone_id!r}, last_run_utc={self._last_run_utc!r})"
