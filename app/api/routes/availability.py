# app/api/routes/availability.py
from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.crud.business import get_business
from app.db.session import get_session
from app.schemas.appointment import TimeSlotOut
from app.services.availability import business_tz, get_available_slots

router = APIRouter(prefix="/businesses", tags=["availability"])


@router.get("/{business_id}/availability", response_model=list[TimeSlotOut])
async def availability(
    business_id: str,
    day: date = Query(..., alias="date"),
    service_id: str = Query(...),
    exclude_appointment_id: Optional[str] = None,
    employee_id: Optional[str] = None,
    only_available: bool = False,
    db: AsyncSession = Depends(get_session),
):
    slots = await get_available_slots(
        db,
        business_id,
        day,
        service_id,
        exclude_appointment_id=exclude_appointment_id,
        employee_id=employee_id,
        only_available=only_available,
    )
    business = await get_business(db, business_id)
    tz = business_tz(business)
    return [
        TimeSlotOut(
            start_time=s.start_time,
            end_time=s.end_time,
            available=s.available,
            local_time=s.start_time.astimezone(tz).strftime("%H:%M"),
        )
        for s in slots
    ]
