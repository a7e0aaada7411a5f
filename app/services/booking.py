# app/services/booking.py
"""
Appointment writer: create, reschedule and change the status of appointments.

Every write that occupies time follows read -> lock -> recheck -> write: the
availability of the exact requested interval is re-evaluated while holding
the business schedule lock, in the same transaction as the insert/update.
A failed recheck is reported as ``ConflictError``; another slot is never
chosen on the caller's behalf.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.calendar import WorkingHoursCalendar
from app.core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PastDateError,
    ValidationError,
    store_errors,
)
from app.core.intervals import Interval
from app.core.logging import get_logger
from app.crud.appointment import get_appointment, record_status_change, schedule_lock
from app.crud.business import get_employee
from app.db.models.appointment import (
    Appointment,
    BLOCKING_STATUSES,
    CANCELLED,
    COMPLETED,
    CONFIRMED,
    PENDING,
    REJECTED,
    STATUSES,
)
from app.db.models.business import Business, Service
from app.db.types import utcnow
from app.schemas.appointment import BookingRequest
from app.services.availability import business_tz, is_slot_free, require_business, require_service
from app.services.employee_assignment import assign_employee

logger = get_logger(__name__)
audit_logger = get_logger("audit")

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({CONFIRMED, REJECTED, CANCELLED}),
    CONFIRMED: frozenset({COMPLETED, CANCELLED}),
    COMPLETED: frozenset(),
    REJECTED: frozenset(),
    CANCELLED: frozenset(),
}

# Postgres SQLSTATE for exclusion_violation (ex_appointments_no_overlap)
EXCLUSION_VIOLATION = "23P01"


def check_transition(current: str, requested: str) -> None:
    if requested not in STATUSES:
        raise ValidationError("Unknown appointment status", status=requested)
    if requested not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current, requested)


def _check_status(status: str) -> None:
    if status not in STATUSES:
        raise ValidationError("Unknown appointment status", status=status)


def _validate_window(
    business: Business,
    interval: Interval,
    *,
    now: datetime,
    check_hours: bool,
    allow_past: bool,
) -> None:
    if interval.start.tzinfo is None:
        raise ValidationError("start_time must be timezone-aware")
    if not allow_past and interval.start < now:
        raise PastDateError("Cannot book a slot that has already started", start_time=interval.start)
    if not check_hours:
        return
    tz = business_tz(business)
    local_day = interval.start.astimezone(tz).date()
    bounds = WorkingHoursCalendar.from_json(business.working_hours).day_bounds(local_day, tz)
    if bounds is None or interval.start < bounds.start or interval.end > bounds.end:
        raise ValidationError(
            "Requested time is outside the business working hours",
            start_time=interval.start,
            end_time=interval.end,
        )


async def _require_employee(db: AsyncSession, business: Business, employee_id: str) -> None:
    employee = await get_employee(db, employee_id)
    if employee is None or employee.business_id != business.id or not employee.is_active:
        raise ValidationError(
            "Employee is not an active member of this business",
            employee_id=employee_id,
            business_id=business.id,
        )


async def _commit(db: AsyncSession, interval: Interval) -> None:
    """Commit, mapping the storage-level overlap guard onto ConflictError."""
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        if getattr(e.orig, "pgcode", None) == EXCLUSION_VIOLATION:
            raise ConflictError(interval.start, interval.end) from e
        raise


async def book_interval(
    db: AsyncSession,
    business: Business,
    service: Service,
    start_time: datetime,
    *,
    status: str = PENDING,
    client_ref: Optional[str] = None,
    client_name: Optional[str] = None,
    client_email: Optional[str] = None,
    client_whatsapp: Optional[str] = None,
    user_id: Optional[str] = None,
    employee_id: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
    check_hours: bool = True,
    allow_past: bool = False,
    actor: Optional[str] = None,
) -> Appointment:
    """
    Insert one appointment. The caller must hold ``schedule_lock`` for the
    business and owns the commit; nothing is committed here.
    """
    _check_status(status)
    if status not in BLOCKING_STATUSES:
        raise ValidationError("New appointments must start in a blocking status", status=status)
    interval = Interval.from_duration(start_time, service.duration_minutes)
    _validate_window(business, interval, now=now or utcnow(), check_hours=check_hours, allow_past=allow_past)

    if employee_id is None:
        employee_id = await assign_employee(db, business, interval)
    else:
        await _require_employee(db, business, employee_id)

    free, conflicting = await is_slot_free(db, business, interval, employee_id=employee_id)
    if not free:
        logger.info(
            "booking_conflict",
            business_id=business.id,
            start_time=interval.start.isoformat(),
            conflicting=conflicting,
        )
        raise ConflictError(interval.start, interval.end, conflicting)

    appt = Appointment(
        business_id=business.id,
        service_id=service.id,
        employee_id=employee_id,
        user_id=user_id,
        client_ref=client_ref or f"CLI-{uuid4().hex[:12].upper()}",
        client_name=client_name,
        client_email=client_email,
        client_whatsapp=client_whatsapp,
        start_time=interval.start,
        end_time=interval.end,
        status=status,
        notes=notes,
    )
    db.add(appt)
    await db.flush()
    record_status_change(db, appt, None, status, actor=actor)
    return appt


async def create_appointment(
    db: AsyncSession,
    request: BookingRequest,
    *,
    status: str = PENDING,
    now: Optional[datetime] = None,
) -> Appointment:
    """Book ``request`` or raise ConflictError for the exact requested interval."""
    async with store_errors("create_appointment"):
        try:
            business = await require_business(db, request.business_id)
            service = await require_service(db, request.service_id, business.id)
            interval = Interval.from_duration(request.start_time, service.duration_minutes)
            async with schedule_lock(db, business.id):
                appt = await book_interval(
                    db,
                    business,
                    service,
                    request.start_time,
                    status=status,
                    client_ref=request.client_ref,
                    client_name=request.client_name,
                    client_email=request.client_email,
                    client_whatsapp=request.client_whatsapp,
                    user_id=request.user_id,
                    employee_id=request.employee_id,
                    notes=request.notes,
                    now=now,
                )
                await _commit(db, interval)
        except Exception:
            await db.rollback()
            raise

    logger.info(
        "appointment_created",
        appointment_id=appt.id,
        business_id=appt.business_id,
        start_time=appt.start_time.isoformat(),
        status=appt.status,
    )
    return appt


async def _require_appointment(db: AsyncSession, appointment_id: str) -> Appointment:
    appt = await get_appointment(db, appointment_id)
    if appt is None:
        raise NotFoundError("Appointment not found", appointment_id=appointment_id)
    return appt


async def reschedule_appointment(
    db: AsyncSession,
    appointment_id: str,
    new_start: datetime,
    *,
    now: Optional[datetime] = None,
    actor: Optional[str] = None,
) -> Appointment:
    """
    Move an appointment to ``new_start``. Releasing the old interval and
    booking the new one is a single row update: both happen or neither.
    A pending appointment is confirmed by the move.
    """
    async with store_errors("reschedule_appointment"):
        try:
            appt = await _require_appointment(db, appointment_id)
            business = await require_business(db, appt.business_id)
            service = await require_service(db, appt.service_id)
            new_interval = Interval.from_duration(new_start, service.duration_minutes)
            _validate_window(business, new_interval, now=now or utcnow(), check_hours=True, allow_past=False)

            async with schedule_lock(db, business.id):
                await db.refresh(appt)
                if appt.status not in (PENDING, CONFIRMED):
                    raise InvalidTransitionError(appt.status, "rescheduled")

                employee_id = appt.employee_id
                free, conflicting = await is_slot_free(
                    db, business, new_interval,
                    exclude_appointment_id=appt.id, employee_id=employee_id,
                )
                if not free and business.auto_assign_employees:
                    other = await assign_employee(db, business, new_interval, exclude_appointment_id=appt.id)
                    if other is not None and other != employee_id:
                        employee_id = other
                        free, conflicting = await is_slot_free(
                            db, business, new_interval,
                            exclude_appointment_id=appt.id, employee_id=employee_id,
                        )
                if not free:
                    raise ConflictError(new_interval.start, new_interval.end, conflicting)

                old_start = appt.start_time
                appt.start_time = new_interval.start
                appt.end_time = new_interval.end
                appt.employee_id = employee_id
                if appt.status == PENDING:
                    record_status_change(db, appt, PENDING, CONFIRMED, actor=actor, reason="rescheduled")
                    appt.status = CONFIRMED
                await _commit(db, new_interval)
        except Exception:
            await db.rollback()
            raise

    logger.info(
        "appointment_rescheduled",
        appointment_id=appt.id,
        old_start=old_start.isoformat(),
        new_start=appt.start_time.isoformat(),
    )
    return appt


async def transition_status(
    db: AsyncSession,
    appointment_id: str,
    new_status: str,
    *,
    actor: Optional[str] = None,
) -> Appointment:
    """Apply one edge of the status machine; anything else is InvalidTransitionError."""
    async with store_errors("transition_status"):
        try:
            appt = await _require_appointment(db, appointment_id)
            current = appt.status
            check_transition(current, new_status)
            appt.status = new_status
            record_status_change(db, appt, current, new_status, actor=actor)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    logger.info("appointment_status_changed", appointment_id=appt.id, from_status=current, to_status=new_status)
    return appt


async def cancel_appointment(
    db: AsyncSession,
    appointment_id: str,
    *,
    actor: Optional[str] = None,
) -> Appointment:
    """Cancellation is a status change; rows are never deleted."""
    return await transition_status(db, appointment_id, CANCELLED, actor=actor)


async def override_status(
    db: AsyncSession,
    appointment_id: str,
    new_status: str,
    *,
    actor: str,
    reason: str,
) -> Appointment:
    """
    Administrative escape hatch: any status to any status, audited separately.
    Bringing an appointment back into a blocking status still has to pass the
    overlap check.
    """
    _check_status(new_status)
    async with store_errors("override_status"):
        try:
            appt = await _require_appointment(db, appointment_id)
            current = appt.status
            interval = Interval(appt.start_time, appt.end_time)
            if current not in BLOCKING_STATUSES and new_status in BLOCKING_STATUSES:
                business = await require_business(db, appt.business_id)
                async with schedule_lock(db, business.id):
                    free, conflicting = await is_slot_free(
                        db, business, interval,
                        exclude_appointment_id=appt.id, employee_id=appt.employee_id,
                    )
                    if not free:
                        raise ConflictError(interval.start, interval.end, conflicting)
                    appt.status = new_status
                    record_status_change(db, appt, current, new_status, is_override=True, actor=actor, reason=reason)
                    await _commit(db, interval)
            else:
                appt.status = new_status
                record_status_change(db, appt, current, new_status, is_override=True, actor=actor, reason=reason)
                await db.commit()
        except Exception:
            await db.rollback()
            raise

    audit_logger.warning(
        "appointment_status_override",
        appointment_id=appt.id,
        from_status=current,
        to_status=new_status,
        actor=actor,
        reason=reason,
    )
    return appt
