# app/core/intervals.py
"""
Half-open time intervals and the overlap predicate.

Every overlap decision in the code base goes through ``overlaps``:
``[a.start, a.end)`` and ``[b.start, b.end)`` overlap iff
``a.start < b.end and b.start < a.end``. Touching intervals do not overlap.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Protocol, TypeVar

from app.core.errors import ValidationError


@dataclass(frozen=True, order=True)
class Interval:
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end <= self.start:
            raise ValidationError(
                "Interval end must be after its start",
                start=self.start,
                end=self.end,
            )

    @classmethod
    def from_duration(cls, start: datetime, minutes: int) -> "Interval":
        return cls(start, start + timedelta(minutes=minutes))

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def shift(self, delta: timedelta) -> "Interval":
        return Interval(self.start + delta, self.end + delta)


class HasInterval(Protocol):
    start_time: datetime
    end_time: datetime


T = TypeVar("T", bound=HasInterval)


def overlaps(a: Interval, b: Interval) -> bool:
    return a.start < b.end and b.start < a.end


def is_available(candidate: Interval, booked: Iterable[Interval]) -> bool:
    """True iff no booked interval overlaps ``candidate``."""
    return not any(overlaps(candidate, other) for other in booked)


def find_conflicts(candidate: Interval, booked: Iterable[T]) -> list[T]:
    """Return the booked records (anything with start_time/end_time) that overlap ``candidate``."""
    return [b for b in booked if overlaps(candidate, Interval(b.start_time, b.end_time))]
