"""
Tests for applying payment events exactly once.
"""

import asyncio
from datetime import date, time, timedelta
from decimal import Decimal

import pytest
import sqlalchemy as sa
from dateutil.relativedelta import relativedelta

from app.core.errors import ValidationError
from app.crud.appointment import list_appointments
from app.crud.billing import current_subscription, list_payments
from app.db.models.billing import Payment, ProcessedPayment, Subscription
from app.schemas.payment import (
    AppointmentPaymentEvent,
    IgnoredPaymentEvent,
    SubscriptionPaymentEvent,
)
from app.services.idempotency import get_record, has_applied
from app.services.reconciliation import (
    ALREADY_APPLIED,
    APPLIED,
    CONFLICT,
    IGNORED,
    net_of_platform_fee,
    reconcile,
)

from conftest import NOW, utc


def appointment_event(business, service, txn="pay_appt_1", at=time(10, 0), **extra):
    fields = dict(
        gateway_source="card",
        external_transaction_id=txn,
        amount=Decimal("500.00"),
        currency="MZN",
        occurred_at=NOW,
        business_id=business.id,
        service_id=service.id,
        appointment_date=date(2030, 1, 8),
        appointment_time=at,
        client_name="João",
        client_email="joao@example.com",
    )
    fields.update(extra)
    return AppointmentPaymentEvent(**fields)


def subscription_event(user, txn="pay_sub_1", months=1, **extra):
    fields = dict(
        gateway_source="mpesa",
        external_transaction_id=txn,
        amount=Decimal("990.00"),
        currency="MZN",
        occurred_at=NOW,
        user_id=user.id,
        plan_name="Plano Pro",
        billing_period_months=months,
    )
    fields.update(extra)
    return SubscriptionPaymentEvent(**fields)


@pytest.mark.unit
def test_platform_fee_is_deducted():
    assert net_of_platform_fee(Decimal("500.00")) == Decimal("460.00")
    assert net_of_platform_fee(Decimal("0.99")) == Decimal("0.91")


@pytest.mark.integration
class TestAppointmentPayments:

    @pytest.mark.asyncio
    async def test_payment_books_confirmed_appointment(self, db, business, service, user):
        event = appointment_event(business, service, client_name="Maria", client_email="maria@example.com")

        outcome = await reconcile(db, event, now=NOW)

        assert outcome.status == APPLIED
        appointments = await list_appointments(db, business_id=business.id)
        assert len(appointments) == 1
        appt = appointments[0]
        assert outcome.entity_id == appt.id
        assert appt.status == "confirmed"
        assert appt.start_time == utc(8, 10)
        assert appt.client_ref == "PAY-pay_appt_1"
        assert appt.user_id == user.id

        payments = await list_payments(db, business_id=business.id)
        assert [(p.transaction_id, p.appointment_id, p.status) for p in payments] == [
            ("pay_appt_1", appt.id, "confirmed")
        ]
        await db.refresh(business)
        assert business.balance == Decimal("460.00")

        record = await get_record(db, "pay_appt_1")
        assert record.resulting_entity_id == appt.id
        assert [n.kind for n in outcome.notifications] == ["appointment_confirmed"]
        assert outcome.notifications[0].to == "maria@example.com"

    @pytest.mark.asyncio
    async def test_guest_payment_has_no_account(self, db, business, service, user):
        await reconcile(db, appointment_event(business, service), now=NOW)

        appt = (await list_appointments(db, business_id=business.id))[0]
        assert appt.client_email == "joao@example.com"
        assert appt.user_id is None

    @pytest.mark.asyncio
    async def test_redelivery_is_a_no_op(self, db, business, service):
        event = appointment_event(business, service)

        first = await reconcile(db, event, now=NOW)
        second = await reconcile(db, event, now=NOW)

        assert first.status == APPLIED
        assert second.status == ALREADY_APPLIED
        assert second.notifications == []
        assert len(await list_appointments(db, business_id=business.id)) == 1
        assert len(await list_payments(db, business_id=business.id)) == 1
        await db.refresh(business)
        assert business.balance == Decimal("460.00")

    @pytest.mark.asyncio
    async def test_taken_slot_records_unallocated_payment(self, db, business, service, add_appointment):
        taken = await add_appointment(utc(8, 10))

        outcome = await reconcile(db, appointment_event(business, service, at=time(10, 30)), now=NOW)

        assert outcome.status == CONFLICT
        appointments = await list_appointments(db, business_id=business.id)
        assert [a.id for a in appointments] == [taken.id]

        payments = await list_payments(db, business_id=business.id)
        assert len(payments) == 1
        assert payments[0].status == "unallocated"
        assert payments[0].appointment_id is None
        assert outcome.entity_id == payments[0].id
        assert await has_applied(db, "pay_appt_1")

        assert [n.kind for n in outcome.notifications] == ["payment_unallocated"]
        assert outcome.notifications[0].to == "owner@estrela.co.mz"

        # redelivery of the same conflicting payment stays a no-op
        again = await reconcile(db, appointment_event(business, service, at=time(10, 30)), now=NOW)
        assert again.status == ALREADY_APPLIED

    @pytest.mark.asyncio
    async def test_paid_slot_outside_hours_is_still_booked(self, db, business, service):
        outcome = await reconcile(db, appointment_event(business, service, at=time(18, 30)), now=NOW)

        assert outcome.status == APPLIED

    @pytest.mark.asyncio
    async def test_unknown_service(self, db, business, service):
        event = appointment_event(business, service).model_copy(update={"service_id": "missing"})

        with pytest.raises(ValidationError):
            await reconcile(db, event, now=NOW)
        assert not await has_applied(db, "pay_appt_1")

    @pytest.mark.asyncio
    async def test_service_of_another_business(self, db, business, service):
        event = appointment_event(business, service).model_copy(update={"business_id": "other-business"})

        with pytest.raises(ValidationError):
            await reconcile(db, event, now=NOW)

    @pytest.mark.asyncio
    async def test_notifier_is_awaited(self, db, business, service):
        received = []

        async def notifier(notifications):
            received.extend(notifications)

        outcome = await reconcile(db, appointment_event(business, service), now=NOW, notifier=notifier)

        assert received == outcome.notifications
        assert len(received) == 1


@pytest.mark.integration
class TestSubscriptionPayments:

    @pytest.mark.asyncio
    async def test_first_payment_creates_active_subscription(self, db, user):
        outcome = await reconcile(db, subscription_event(user), now=NOW)

        assert outcome.status == APPLIED
        sub = await current_subscription(db, user.id)
        assert outcome.entity_id == sub.id
        assert sub.status == "active"
        assert sub.plan_name == "Plano Pro"
        assert sub.renewal_at == NOW + relativedelta(months=1)
        assert [n.kind for n in outcome.notifications] == ["subscription_activated"]

    @pytest.mark.asyncio
    async def test_renewal_extends_from_current_end(self, db, user):
        sub = Subscription(
            user_id=user.id,
            plan_name="Plano Básico",
            price=Decimal("490"),
            status="active",
            renewal_at=NOW + timedelta(days=10),
        )
        db.add(sub)
        await db.commit()

        outcome = await reconcile(db, subscription_event(user, months=3), now=NOW)

        assert outcome.entity_id == sub.id
        await db.refresh(sub)
        assert sub.renewal_at == NOW + timedelta(days=10) + relativedelta(months=3)
        assert sub.plan_name == "Plano Pro"

    @pytest.mark.asyncio
    async def test_lapsed_subscription_restarts_from_now(self, db, user):
        sub = Subscription(
            user_id=user.id,
            plan_name="Plano Básico",
            status="expired",
            renewal_at=NOW - timedelta(days=20),
        )
        db.add(sub)
        await db.commit()

        await reconcile(db, subscription_event(user), now=NOW)

        await db.refresh(sub)
        assert sub.status == "active"
        assert sub.renewal_at == NOW + relativedelta(months=1)

    @pytest.mark.asyncio
    async def test_user_found_by_email(self, db, user):
        event = subscription_event(user, user_id=None, customer_email="MARIA@example.com")

        outcome = await reconcile(db, event, now=NOW)

        assert outcome.status == APPLIED

    @pytest.mark.asyncio
    async def test_unknown_user(self, db, user):
        event = subscription_event(user, user_id="nobody")

        with pytest.raises(ValidationError):
            await reconcile(db, event, now=NOW)
        assert await list_payments(db) == []

    @pytest.mark.asyncio
    async def test_payment_row_without_ledger_row(self, db, user):
        db.add(Payment(
            user_id=user.id,
            amount=Decimal("990.00"),
            currency="MZN",
            payment_type="subscription",
            method="mpesa",
            transaction_id="pay_sub_1",
        ))
        await db.commit()

        outcome = await reconcile(db, subscription_event(user), now=NOW)

        assert outcome.status == ALREADY_APPLIED
        assert await has_applied(db, "pay_sub_1")
        assert await current_subscription(db, user.id) is None


@pytest.mark.integration
class TestIgnoredEvents:

    @pytest.mark.asyncio
    async def test_ignored_event_leaves_no_trace(self, db):
        event = IgnoredPaymentEvent(
            gateway_source="card",
            external_transaction_id="pay_failed",
            occurred_at=NOW,
            event_type="payment.failed",
            reason="not a successful payment",
        )

        outcome = await reconcile(db, event, now=NOW)

        assert outcome.status == IGNORED
        assert not await has_applied(db, "pay_failed")
        assert await list_payments(db) == []


@pytest.mark.integration
class TestConcurrentDeliveries:
    """Two deliveries of one transaction on separate sessions apply it once."""

    async def _deliver_twice(self, session_factory, event):
        async def attempt():
            async with session_factory() as session:
                return await reconcile(session, event, now=NOW)

        outcomes = await asyncio.gather(attempt(), attempt())
        return sorted(o.status for o in outcomes)

    async def _ledger_rows(self, db, txn):
        res = await db.execute(
            sa.select(sa.func.count()).select_from(ProcessedPayment)
            .where(ProcessedPayment.external_transaction_id == txn)
        )
        return res.scalar_one()

    @pytest.mark.asyncio
    async def test_appointment_payment(self, db, session_factory, business, service):
        statuses = await self._deliver_twice(session_factory, appointment_event(business, service))

        assert statuses == [ALREADY_APPLIED, APPLIED]
        assert len(await list_appointments(db, business_id=business.id)) == 1
        assert len(await list_payments(db, business_id=business.id)) == 1
        assert await self._ledger_rows(db, "pay_appt_1") == 1
        await db.refresh(business)
        assert business.balance == Decimal("460.00")

    @pytest.mark.asyncio
    async def test_subscription_payment(self, db, session_factory, user):
        statuses = await self._deliver_twice(session_factory, subscription_event(user))

        assert statuses == [ALREADY_APPLIED, APPLIED]
        res = await db.execute(sa.select(Subscription).where(Subscription.user_id == user.id))
        subs = res.scalars().all()
        assert len(subs) == 1
        assert subs[0].renewal_at == NOW + relativedelta(months=1)
        assert len(await list_payments(db)) == 1
        assert await self._ledger_rows(db, "pay_sub_1") == 1
