# app/services/availability.py
"""
Availability: which slots of a day are still bookable for a service.

Combines the business calendar (pure) with the blocking appointments read
from the store. The same predicate backs the write-time recheck in
``app.services.booking``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.calendar import WorkingHoursCalendar, slots_for_date
from app.core.config import settings
from app.core.errors import NotFoundError, PastDateError, ValidationError, store_errors
from app.core.intervals import Interval, find_conflicts, is_available
from app.core.logging import get_logger
from app.crud.appointment import list_blocking_appointments
from app.crud.business import get_business, get_service, list_active_employees
from app.db.models.appointment import Appointment
from app.db.models.business import Business, Employee, Service
from app.db.types import utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class TimeSlot:
    start_time: datetime
    end_time: datetime
    available: bool


def business_tz(business: Business) -> ZoneInfo:
    name = business.timezone or settings.DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        raise ValidationError("Business has an unknown timezone", timezone=name)


async def require_business(db: AsyncSession, business_id: str) -> Business:
    business = await get_business(db, business_id)
    if business is None:
        raise NotFoundError("Business not found", business_id=business_id)
    return business


async def require_service(db: AsyncSession, service_id: str, business_id: Optional[str] = None) -> Service:
    service = await get_service(db, service_id)
    if service is None or (business_id is not None and service.business_id != business_id):
        raise NotFoundError("Service not found", service_id=service_id)
    if service.duration_minutes <= 0:
        raise ValidationError("Service duration must be positive", service_id=service_id)
    return service


def _employee_scoped(business: Business, employees: Sequence[Employee]) -> bool:
    return bool(business.auto_assign_employees and employees)


def _lanes(
    booked: Sequence[Appointment],
    *,
    scoped: bool,
    employees: Sequence[Employee],
    employee_id: Optional[str],
) -> list[list[Interval]]:
    """
    Booked intervals grouped by what must be free.
    Business-wide: one lane. Employee scope: one lane per candidate employee;
    bookings without an employee sit in no lane.
    """
    if not scoped:
        return [[Interval(a.start_time, a.end_time) for a in booked]]
    ids = [employee_id] if employee_id else [e.id for e in employees]
    return [
        [Interval(a.start_time, a.end_time) for a in booked if a.employee_id == eid]
        for eid in ids
    ]


def _free_in_any_lane(candidate: Interval, lanes: list[list[Interval]]) -> bool:
    return any(is_available(candidate, lane) for lane in lanes)


async def get_available_slots(
    db: AsyncSession,
    business_id: str,
    day: date,
    service_id: str,
    *,
    exclude_appointment_id: Optional[str] = None,
    employee_id: Optional[str] = None,
    now: Optional[datetime] = None,
    only_available: bool = False,
) -> list[TimeSlot]:
    """
    Slots for ``day`` with an ``available`` flag each.

    Slots starting before ``now`` are left out. ``exclude_appointment_id``
    lets a reschedule ignore the appointment being moved.
    """
    now = now or utcnow()
    async with store_errors("get_available_slots"):
        business = await require_business(db, business_id)
        service = await require_service(db, service_id, business_id)
        tz = business_tz(business)

        if day < now.astimezone(tz).date():
            raise PastDateError("Cannot list slots for a past date", date=day.isoformat())

        calendar = WorkingHoursCalendar.from_json(business.working_hours)
        candidates = [
            c for c in slots_for_date(
                calendar, day, service.duration_minutes, settings.SLOT_GRANULARITY_MINUTES, tz
            )
            if c.start >= now
        ]
        if not candidates:
            return []

        window = Interval(candidates[0].start, candidates[-1].end)
        employees = await list_active_employees(db, business_id)
        scoped = _employee_scoped(business, employees)
        booked = await list_blocking_appointments(
            db,
            business_id=business_id,
            window=window,
            exclude_appointment_id=exclude_appointment_id,
        )

    lanes = _lanes(booked, scoped=scoped, employees=employees, employee_id=employee_id)
    slots = [
        TimeSlot(c.start, c.end, _free_in_any_lane(c, lanes))
        for c in candidates
    ]
    logger.debug(
        "availability_computed",
        business_id=business_id,
        date=day.isoformat(),
        candidates=len(slots),
        free=sum(1 for s in slots if s.available),
    )
    if only_available:
        return [s for s in slots if s.available]
    return slots


async def is_slot_free(
    db: AsyncSession,
    business: Business,
    interval: Interval,
    *,
    exclude_appointment_id: Optional[str] = None,
    employee_id: Optional[str] = None,
) -> tuple[bool, list[str]]:
    """
    Recheck one exact interval. Returns (free, ids of conflicting appointments).
    Callers hold ``schedule_lock`` so the answer stays true until they commit.
    """
    employees = await list_active_employees(db, business.id)
    scoped = _employee_scoped(business, employees)
    booked = await list_blocking_appointments(
        db,
        business_id=business.id,
        window=interval,
        exclude_appointment_id=exclude_appointment_id,
        employee_id=employee_id if scoped else None,
    )
    lanes = _lanes(booked, scoped=scoped, employees=employees, employee_id=employee_id)
    if _free_in_any_lane(interval, lanes):
        return True, []
    return False, [a.id for a in find_conflicts(interval, booked)]
