# app/crud/appointment.py

from __future__ import annotations
import asyncio
import weakref
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.intervals import Interval
from app.db.models.appointment import Appointment, AppointmentStatusChange, BLOCKING_STATUSES
from app.db.models.business import Business

# In-process guard per business; the row lock below covers other processes
_business_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _lock_for(business_id: str) -> asyncio.Lock:
    lock = _business_locks.get(business_id)
    if lock is None:
        lock = asyncio.Lock()
        _business_locks[business_id] = lock
    return lock


@asynccontextmanager
async def schedule_lock(db: AsyncSession, business_id: str):
    """
    Serialize availability checks and writes for one business.
    Must wrap the recheck *and* the commit; SELECT ... FOR UPDATE holds the
    business row until the surrounding transaction ends.
    """
    lock = _lock_for(business_id)
    async with lock:
        await db.execute(
            sa.select(Business.id).where(Business.id == business_id).with_for_update()
        )
        yield


async def get_appointment(db: AsyncSession, appointment_id: str) -> Optional[Appointment]:
    res = await db.execute(sa.select(Appointment).where(Appointment.id == appointment_id))
    return res.scalar_one_or_none()


async def list_blocking_appointments(
    db: AsyncSession,
    *,
    business_id: str,
    window: Interval,
    exclude_appointment_id: Optional[str] = None,
    employee_id: Optional[str] = None,
) -> Sequence[Appointment]:
    """Appointments in a blocking status whose interval overlaps ``window``."""
    q = sa.select(Appointment).where(
        Appointment.business_id == business_id,
        Appointment.status.in_(BLOCKING_STATUSES),
        Appointment.start_time < window.end,
        Appointment.end_time > window.start,
    )
    if exclude_appointment_id is not None:
        q = q.where(Appointment.id != exclude_appointment_id)
    if employee_id is not None:
        q = q.where(Appointment.employee_id == employee_id)
    q = q.order_by(Appointment.start_time.asc())
    res = await db.execute(q)
    return res.scalars().all()


async def list_appointments(
    db: AsyncSession,
    *,
    business_id: Optional[str] = None,
    start_utc: Optional[datetime] = None,
    end_utc: Optional[datetime] = None,
    statuses: Optional[Sequence[str]] = None,
    limit: int = 100,
) -> Sequence[Appointment]:
    q = sa.select(Appointment)
    if business_id is not None:
        q = q.where(Appointment.business_id == business_id)
    if start_utc is not None:
        q = q.where(Appointment.start_time >= start_utc)
    if end_utc is not None:
        q = q.where(Appointment.start_time < end_utc)
    if statuses:
        q = q.where(Appointment.status.in_(statuses))
    q = q.order_by(Appointment.start_time.asc()).limit(limit)
    res = await db.execute(q)
    return res.scalars().all()


def record_status_change(
    db: AsyncSession,
    appointment: Appointment,
    from_status: Optional[str],
    to_status: str,
    *,
    is_override: bool = False,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
) -> AppointmentStatusChange:
    change = AppointmentStatusChange(
        appointment_id=appointment.id,
        from_status=from_status,
        to_status=to_status,
        is_override=is_override,
        actor=actor,
        reason=reason,
    )
    db.add(change)
    return change


async def list_status_changes(db: AsyncSession, appointment_id: str) -> Sequence[AppointmentStatusChange]:
    res = await db.execute(
        sa.select(AppointmentStatusChange)
        .where(AppointmentStatusChange.appointment_id == appointment_id)
        .order_by(AppointmentStatusChange.id.asc())
    )
    return res.scalars().all()
