# app/api/routes/admin.py
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.auth import require_api_key
from app.db.session import get_session
from app.schemas.appointment import AppointmentOut, StatusOverrideRequest
from app.schemas.subscription import SweepOut
from app.services.booking import override_status
from app.services.notifications import dispatch
from app.services.subscriptions import sweep_expiring_subscriptions
from app.utils.secrets import refresh_secrets

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_api_key)])


@router.post("/appointments/{appointment_id}/status-override", response_model=AppointmentOut)
async def status_override(
    appointment_id: str,
    payload: StatusOverrideRequest,
    db: AsyncSession = Depends(get_session),
):
    return await override_status(db, appointment_id, payload.status, actor=payload.actor, reason=payload.reason)


@router.post("/subscriptions/sweep", response_model=SweepOut)
async def subscriptions_sweep(background: BackgroundTasks, db: AsyncSession = Depends(get_session)):
    """Run by the daily scheduler."""
    report = await sweep_expiring_subscriptions(db)
    if report.notifications:
        background.add_task(dispatch, report.notifications)
    return SweepOut(expired=report.expired, reminded=report.reminded)


@router.post("/secrets/refresh")
async def secrets_refresh():
    refresh_secrets()
    return {"ok": True}
