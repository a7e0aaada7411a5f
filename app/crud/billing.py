# app/crud/billing.py

from __future__ import annotations
import asyncio
import weakref
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.billing import Payment, Subscription
from app.db.models.user import User

_user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


@asynccontextmanager
async def subscription_lock(db: AsyncSession, user_id: str):
    """Serialize subscription changes for one user until the surrounding transaction ends."""
    lock = _user_locks.get(user_id)
    if lock is None:
        lock = _user_locks[user_id] = asyncio.Lock()
    async with lock:
        await db.execute(sa.select(User.id).where(User.id == user_id).with_for_update())
        yield


async def get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    res = await db.execute(sa.select(User).where(User.id == user_id))
    return res.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    res = await db.execute(sa.select(User).where(sa.func.lower(User.email) == email.strip().lower()))
    return res.scalar_one_or_none()


async def get_payment_by_transaction(db: AsyncSession, transaction_id: str) -> Optional[Payment]:
    res = await db.execute(sa.select(Payment).where(Payment.transaction_id == transaction_id))
    return res.scalar_one_or_none()


async def current_subscription(db: AsyncSession, user_id: str) -> Optional[Subscription]:
    """Latest subscription by creation time."""
    res = await db.execute(
        sa.select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return res.scalar_one_or_none()


async def list_subscriptions_by_status(
    db: AsyncSession,
    statuses: Sequence[str],
) -> Sequence[Subscription]:
    res = await db.execute(
        sa.select(Subscription).where(Subscription.status.in_(statuses)).order_by(Subscription.created_at.asc())
    )
    return res.scalars().all()


async def list_payments(
    db: AsyncSession,
    *,
    business_id: Optional[str] = None,
    since: Optional[datetime] = None,
) -> Sequence[Payment]:
    q = sa.select(Payment)
    if business_id is not None:
        q = q.where(Payment.business_id == business_id)
    if since is not None:
        q = q.where(Payment.payment_date >= since)
    res = await db.execute(q.order_by(Payment.payment_date.asc()))
    return res.scalars().all()
