# app/services/subscriptions.py
"""
Subscription lifecycle outside of payments: checkout (trial or awaiting
payment) and the daily expiry sweep. Paid activation and renewal live in
``app.services.reconciliation``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import NotFoundError, ValidationError, store_errors
from app.core.logging import get_logger
from app.crud import billing as billing_crud
from app.db.models.billing import ACTIVE, EXPIRED, PENDING_PAYMENT, TRIAL, Subscription
from app.db.types import utcnow
from app.services.notifications import Notification, subscription_notification

logger = get_logger(__name__)


@dataclass
class SweepReport:
    expired: list[str] = field(default_factory=list)
    reminded: list[str] = field(default_factory=list)
    notifications: list[Notification] = field(default_factory=list)


async def start_checkout(
    db: AsyncSession,
    user_id: str,
    plan_name: str,
    price: Decimal,
    *,
    is_trial: bool = False,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Open a subscription for ``user_id``. A trial is usable right away for
    TRIAL_DAYS; a paid plan waits in ``pending_payment`` until the payment
    webhook activates it.
    """
    if not plan_name:
        raise ValidationError("plan_name is required")
    if price < 0:
        raise ValidationError("price must not be negative", price=str(price))
    now = now or utcnow()

    async with store_errors("start_checkout"):
        try:
            user = await billing_crud.get_user(db, user_id)
            if user is None:
                raise NotFoundError("User not found", user_id=user_id)

            if is_trial:
                sub = Subscription(
                    user_id=user.id,
                    plan_name=plan_name,
                    price=Decimal("0"),
                    status=TRIAL,
                    is_trial=True,
                    trial_ends_at=now + timedelta(days=settings.TRIAL_DAYS),
                )
            else:
                sub = Subscription(
                    user_id=user.id,
                    plan_name=plan_name,
                    price=price,
                    status=PENDING_PAYMENT,
                    is_trial=False,
                )
            db.add(sub)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    logger.info("subscription_checkout_started", subscription_id=sub.id, user_id=user_id, status=sub.status)
    return sub


async def current_subscription(db: AsyncSession, user_id: str) -> Optional[Subscription]:
    async with store_errors("current_subscription"):
        return await billing_crud.current_subscription(db, user_id)


async def sweep_expiring_subscriptions(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> SweepReport:
    """
    Expire trial/active subscriptions past their end date and queue
    reminders: one EXPIRY_REMINDER_DAYS before the end, one on the day it
    expires. Meant to run once a day.
    """
    now = now or utcnow()
    today = now.date()
    report = SweepReport()

    async with store_errors("sweep_expiring_subscriptions"):
        try:
            subs = await billing_crud.list_subscriptions_by_status(db, (TRIAL, ACTIVE))
            for sub in subs:
                ends_at = sub.ends_at
                if ends_at is None:
                    continue
                days_left = (ends_at.date() - today).days

                if ends_at <= now:
                    sub.status = EXPIRED
                    report.expired.append(sub.id)

                # the expiry notice goes out on the end date, whatever the hour
                kind = None
                if days_left == 0:
                    kind = "subscription_expired"
                elif days_left == settings.EXPIRY_REMINDER_DAYS and ends_at > now:
                    kind = "subscription_expiring"

                if kind is None:
                    continue
                user = await billing_crud.get_user(db, sub.user_id)
                if user is None:
                    continue
                report.reminded.append(sub.id)
                report.notifications.append(subscription_notification(
                    kind=kind,
                    to=user.email,
                    user_name=user.full_name,
                    plan_name=sub.plan_name,
                    ends_at=ends_at,
                    subscription_id=sub.id,
                ))
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    logger.info(
        "subscription_sweep_done",
        expired=len(report.expired),
        reminded=len(report.reminded),
    )
    return report
