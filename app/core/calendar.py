# app/core/calendar.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from app.core.errors import ValidationError
from app.core.intervals import Interval

# 0=Mon .. 6=Sun
WEEKDAY_NAMES = {
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3,
    "friday": 4, "saturday": 5, "sunday": 6,
    # Business-settings form stores Portuguese names
    "segunda": 0, "terça": 1, "terca": 1, "quarta": 2, "quinta": 3,
    "sexta": 4, "sábado": 5, "sabado": 5, "domingo": 6,
}


@dataclass(frozen=True)
class DaySchedule:
    weekday: int
    is_open: bool
    open_time: time
    close_time: time

    def __post_init__(self):
        if not 0 <= self.weekday <= 6:
            raise ValidationError("weekday must be between 0 (Monday) and 6 (Sunday)", weekday=self.weekday)
        if self.is_open and self.open_time >= self.close_time:
            raise ValidationError(
                "open_time must be before close_time on an open day",
                weekday=self.weekday,
            )

    def to_json(self) -> dict[str, Any]:
        return {
            "weekday": self.weekday,
            "is_open": self.is_open,
            "start_time": self.open_time.strftime("%H:%M"),
            "end_time": self.close_time.strftime("%H:%M"),
        }


class WorkingHoursCalendar:
    """Weekly opening hours: exactly one DaySchedule per weekday."""

    def __init__(self, days: Iterable[DaySchedule]):
        by_weekday: dict[int, DaySchedule] = {}
        for day in days:
            if day.weekday in by_weekday:
                raise ValidationError("Duplicate schedule for weekday", weekday=day.weekday)
            by_weekday[day.weekday] = day
        for weekday in range(7):
            by_weekday.setdefault(weekday, DaySchedule(weekday, False, time(0, 0), time(0, 0)))
        self._days = by_weekday

    @classmethod
    def default(cls) -> "WorkingHoursCalendar":
        weekdays = [DaySchedule(d, True, time(9, 0), time(18, 0)) for d in range(5)]
        return cls(weekdays + [
            DaySchedule(5, False, time(9, 0), time(13, 0)),
            DaySchedule(6, False, time(0, 0), time(0, 0)),
        ])

    @classmethod
    def from_json(cls, rows: Optional[list[dict[str, Any]]]) -> "WorkingHoursCalendar":
        if not rows:
            return cls.default()
        return cls(_parse_day(row) for row in rows)

    def to_json(self) -> list[dict[str, Any]]:
        return [self._days[d].to_json() for d in range(7)]

    def for_weekday(self, weekday: int) -> DaySchedule:
        return self._days[weekday]

    def __iter__(self):
        return iter(self._days[d] for d in range(7))

    def day_bounds(self, day: date, tz: Optional[ZoneInfo] = None) -> Optional[Interval]:
        """Opening interval of ``day`` (None when closed)."""
        schedule = self._days[day.weekday()]
        if not schedule.is_open:
            return None
        return Interval(
            _at(day, schedule.open_time, tz),
            _at(day, schedule.close_time, tz),
        )


def _parse_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    try:
        hours, minutes = str(value).strip().split(":")[:2]
        return time(int(hours), int(minutes))
    except (ValueError, AttributeError):
        raise ValidationError("Invalid time of day, expected HH:MM", value=value)


def _parse_day(row: dict[str, Any]) -> DaySchedule:
    if "weekday" in row and row["weekday"] is not None:
        weekday = int(row["weekday"])
    else:
        name = str(row.get("day", "")).strip().lower()
        if name not in WEEKDAY_NAMES:
            raise ValidationError("Unknown weekday name", day=row.get("day"))
        weekday = WEEKDAY_NAMES[name]
    is_open = bool(row.get("is_open", False))
    return DaySchedule(
        weekday=weekday,
        is_open=is_open,
        open_time=_parse_time(row.get("start_time", "00:00")),
        close_time=_parse_time(row.get("end_time", "00:00")),
    )


def _at(day: date, t: time, tz: Optional[ZoneInfo]) -> datetime:
    local = datetime.combine(day, t)
    if tz is None:
        return local
    return local.replace(tzinfo=tz).astimezone(timezone.utc)


def slots_for_date(
    calendar: WorkingHoursCalendar,
    day: date,
    duration_minutes: int,
    slot_granularity_minutes: int = 30,
    tz: Optional[ZoneInfo] = None,
) -> list[Interval]:
    """
    Candidate slots for ``day``: start at opening time, step by the granularity,
    keep ``[cursor, cursor + duration)`` while it ends no later than closing time.

    Pure: slots in the past are the caller's business. With ``tz`` the slots
    are computed in local wall time and returned as UTC datetimes.
    """
    if duration_minutes <= 0:
        raise ValidationError("Service duration must be positive", duration_minutes=duration_minutes)
    if slot_granularity_minutes <= 0:
        raise ValidationError("Slot granularity must be positive", granularity=slot_granularity_minutes)

    schedule = calendar.for_weekday(day.weekday())
    if not schedule.is_open:
        return []

    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=slot_granularity_minutes)
    close = datetime.combine(day, schedule.close_time)
    cursor = datetime.combine(day, schedule.open_time)

    slots: list[Interval] = []
    while cursor + duration <= close:
        if tz is None:
            slots.append(Interval(cursor, cursor + duration))
        else:
            start = cursor.replace(tzinfo=tz).astimezone(timezone.utc)
            slots.append(Interval(start, start + duration))
        cursor += step
    return slots
