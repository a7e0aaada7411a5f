# app/services/employee_assignment.py
from __future__ import annotations

from collections import Counter
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.intervals import Interval, is_available
from app.core.logging import get_logger
from app.crud.appointment import list_blocking_appointments
from app.crud.business import list_active_employees
from app.db.models.business import Business
from app.services.availability import business_tz

logger = get_logger(__name__)


def _local_day(business: Business, instant: datetime) -> Interval:
    tz = business_tz(business)
    day = instant.astimezone(tz).date()
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return Interval(start.astimezone(timezone.utc), end.astimezone(timezone.utc))


async def assign_employee(
    db: AsyncSession,
    business: Business,
    interval: Interval,
    *,
    exclude_appointment_id: Optional[str] = None,
) -> Optional[str]:
    """
    Pick an employee for ``interval`` when the business opted into auto-assignment.

    Among active employees with no blocking appointment overlapping the
    interval, the one with the fewest blocking appointments on the
    business-local day wins; ties go by name, then id. When everybody is
    busy the first employee is returned anyway (the write-time recheck then
    reports the conflict). Returns None when assignment is off or nobody is
    active.
    """
    if not business.auto_assign_employees:
        return None

    employees = await list_active_employees(db, business.id)
    if not employees:
        logger.warning("auto_assign_no_employees", business_id=business.id)
        return None

    day = _local_day(business, interval.start)
    booked = await list_blocking_appointments(
        db,
        business_id=business.id,
        window=Interval(min(day.start, interval.start), max(day.end, interval.end)),
        exclude_appointment_id=exclude_appointment_id,
    )
    load = Counter(
        a.employee_id for a in booked if a.start_time < day.end and a.end_time > day.start
    )

    free = []
    for employee in employees:
        mine = [Interval(a.start_time, a.end_time) for a in booked if a.employee_id == employee.id]
        if is_available(interval, mine):
            free.append(employee)

    if free:
        # employees arrive ordered by name, id; min() keeps the first on ties
        chosen = min(free, key=lambda e: load[e.id])
        logger.info(
            "employee_auto_assigned",
            business_id=business.id,
            employee_id=chosen.id,
            day_load=load[chosen.id],
        )
        return chosen.id

    logger.warning(
        "employee_auto_assign_all_busy",
        business_id=business.id,
        employee_id=employees[0].id,
        start_time=interval.start.isoformat(),
    )
    return employees[0].id
