# app/api/routes/appointments.py
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.crud.business import get_business, get_service
from app.db.models.appointment import Appointment
from app.db.session import get_session
from app.schemas.appointment import (
    AppointmentOut,
    BookingRequest,
    RescheduleRequest,
    StatusChangeRequest,
)
from app.services import booking
from app.services.availability import business_tz
from app.services.notifications import appointment_status_notification, dispatch

router = APIRouter(prefix="/appointments", tags=["appointments"])


async def _notify_client(db: AsyncSession, appt: Appointment, background: BackgroundTasks) -> None:
    """Confirmed/rejected appointments get an e-mail; other statuses are silent."""
    business = await get_business(db, appt.business_id)
    service = await get_service(db, appt.service_id)
    notice = appointment_status_notification(
        status=appt.status,
        to=appt.client_email,
        client_name=appt.client_name,
        service_name=service.name if service else "",
        business_name=business.name if business else "",
        start_utc=appt.start_time,
        tz=business_tz(business),
        appointment_id=appt.id,
    )
    if notice is not None:
        background.add_task(dispatch, [notice])


@router.post("", response_model=AppointmentOut, status_code=201)
async def create(payload: BookingRequest, db: AsyncSession = Depends(get_session)):
    return await booking.create_appointment(db, payload)


@router.post("/{appointment_id}/reschedule", response_model=AppointmentOut)
async def reschedule(
    appointment_id: str,
    payload: RescheduleRequest,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_session),
):
    appt = await booking.reschedule_appointment(db, appointment_id, payload.start_time)
    await _notify_client(db, appt, background)
    return appt


@router.post("/{appointment_id}/status", response_model=AppointmentOut)
async def change_status(
    appointment_id: str,
    payload: StatusChangeRequest,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_session),
):
    appt = await booking.transition_status(db, appointment_id, payload.status, actor=payload.actor)
    await _notify_client(db, appt, background)
    return appt


@router.post("/{appointment_id}/cancel", response_model=AppointmentOut)
async def cancel(appointment_id: str, db: AsyncSession = Depends(get_session)):
    return await booking.cancel_appointment(db, appointment_id)
