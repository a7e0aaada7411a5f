"""
Tests for subscription checkout and the daily expiry sweep.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.core.errors import NotFoundError, ValidationError
from app.db.models.billing import Subscription
from app.services.subscriptions import (
    current_subscription,
    start_checkout,
    sweep_expiring_subscriptions,
)

from conftest import NOW


@pytest.mark.integration
class TestCheckout:

    @pytest.mark.asyncio
    async def test_trial_is_usable_immediately(self, db, user):
        sub = await start_checkout(db, user.id, "Plano Pro", Decimal("990"), is_trial=True, now=NOW)

        assert sub.status == "trial"
        assert sub.is_trial is True
        assert sub.price == Decimal("0")
        assert sub.trial_ends_at == NOW + timedelta(days=3)
        assert sub.ends_at == sub.trial_ends_at

    @pytest.mark.asyncio
    async def test_paid_plan_waits_for_payment(self, db, user):
        sub = await start_checkout(db, user.id, "Plano Pro", Decimal("990"), now=NOW)

        assert sub.status == "pending_payment"
        assert sub.price == Decimal("990")
        assert sub.ends_at is None
        assert (await current_subscription(db, user.id)).id == sub.id

    @pytest.mark.asyncio
    async def test_unknown_user(self, db):
        with pytest.raises(NotFoundError):
            await start_checkout(db, "nobody", "Plano Pro", Decimal("990"), now=NOW)

    @pytest.mark.asyncio
    async def test_invalid_plan_or_price(self, db, user):
        with pytest.raises(ValidationError):
            await start_checkout(db, user.id, "", Decimal("990"), now=NOW)
        with pytest.raises(ValidationError):
            await start_checkout(db, user.id, "Plano Pro", Decimal("-1"), now=NOW)


@pytest.mark.integration
class TestExpirySweep:

    async def _add(self, db, user, **fields):
        sub = Subscription(user_id=user.id, plan_name="Plano Básico", **fields)
        db.add(sub)
        await db.commit()
        return sub

    @pytest.mark.asyncio
    async def test_trial_ending_today_expires_with_notice(self, db, user):
        sub = await self._add(db, user, status="trial", is_trial=True, trial_ends_at=NOW - timedelta(hours=1))

        report = await sweep_expiring_subscriptions(db, now=NOW)

        assert report.expired == [sub.id]
        assert report.reminded == [sub.id]
        assert report.notifications[0].kind == "subscription_expired"
        assert report.notifications[0].to == "maria@example.com"
        await db.refresh(sub)
        assert sub.status == "expired"

    @pytest.mark.asyncio
    async def test_notice_on_end_date_before_the_end_hour(self, db, user):
        ends_at = datetime(2030, 1, 10, 15, 0, tzinfo=timezone.utc)
        sub = await self._add(db, user, status="active", renewal_at=ends_at)

        morning = await sweep_expiring_subscriptions(db, now=datetime(2030, 1, 10, 0, 5, tzinfo=timezone.utc))

        assert morning.expired == []
        assert morning.reminded == [sub.id]
        assert morning.notifications[0].kind == "subscription_expired"
        await db.refresh(sub)
        assert sub.status == "active"

        next_day = await sweep_expiring_subscriptions(db, now=datetime(2030, 1, 11, 0, 5, tzinfo=timezone.utc))

        assert next_day.expired == [sub.id]
        assert next_day.notifications == []
        await db.refresh(sub)
        assert sub.status == "expired"

    @pytest.mark.asyncio
    async def test_reminder_before_renewal(self, db, user):
        sub = await self._add(db, user, status="active", renewal_at=NOW + timedelta(days=3))

        report = await sweep_expiring_subscriptions(db, now=NOW)

        assert report.expired == []
        assert report.reminded == [sub.id]
        assert report.notifications[0].kind == "subscription_expiring"
        await db.refresh(sub)
        assert sub.status == "active"

    @pytest.mark.asyncio
    async def test_far_from_renewal_is_left_alone(self, db, user):
        await self._add(db, user, status="active", renewal_at=NOW + timedelta(days=10))

        report = await sweep_expiring_subscriptions(db, now=NOW)

        assert report.expired == []
        assert report.reminded == []
        assert report.notifications == []

    @pytest.mark.asyncio
    async def test_long_lapsed_expires_quietly(self, db, user):
        sub = await self._add(db, user, status="active", renewal_at=NOW - timedelta(days=5))

        report = await sweep_expiring_subscriptions(db, now=NOW)

        assert report.expired == [sub.id]
        assert report.reminded == []

    @pytest.mark.asyncio
    async def test_pending_and_expired_are_skipped(self, db, user):
        await self._add(db, user, status="pending_payment")
        await self._add(db, user, status="expired", renewal_at=NOW - timedelta(days=1))

        report = await sweep_expiring_subscriptions(db, now=NOW)

        assert report.expired == []
        assert report.reminded == []
