# app/services/reconciliation.py
"""
Reconciliation engine: apply a normalized ``PaymentEvent`` exactly once.

Order inside one transaction:

    ledger check -> (schedule or subscription lock) -> ledger recheck ->
    payment-row check -> effect -> payment row -> ledger row -> commit

The ledger row goes in last, so a crash anywhere earlier rolls the whole
effect back and the gateway's retry starts from scratch. Two deliveries
racing past the first check are settled by the ledger's primary key: the
loser rolls back and reports ``already_applied``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import AlreadyApplied, ConflictError, ValidationError, store_errors
from app.core.intervals import Interval
from app.core.logging import get_logger
from app.crud.appointment import schedule_lock
from app.crud.billing import (
    current_subscription,
    get_payment_by_transaction,
    get_user,
    get_user_by_email,
    subscription_lock,
)
from app.crud.business import get_service
from app.db.models.appointment import Appointment, CONFIRMED
from app.db.models.billing import ACTIVE, Payment, Subscription
from app.db.models.business import Business, Service
from app.db.types import utcnow
from app.schemas.payment import (
    AppointmentPaymentEvent,
    IgnoredPaymentEvent,
    ReconciliationResponse,
    SubscriptionPaymentEvent,
)
from app.services import idempotency
from app.services.availability import business_tz, require_business
from app.services.booking import EXCLUSION_VIOLATION, book_interval
from app.services.notifications import (
    Notification,
    appointment_status_notification,
    subscription_notification,
    unallocated_payment_notification,
)

logger = get_logger(__name__)

APPLIED = "applied"
ALREADY_APPLIED = "already_applied"
IGNORED = "ignored"
CONFLICT = "conflict"

UNALLOCATED = "unallocated"

Notifier = Callable[[list[Notification]], Awaitable[Any]]


@dataclass
class ReconciliationOutcome:
    status: str
    external_transaction_id: str
    entity_id: Optional[str] = None
    message: Optional[str] = None
    notifications: list[Notification] = field(default_factory=list)

    def to_response(self) -> ReconciliationResponse:
        return ReconciliationResponse(
            status=self.status,
            external_transaction_id=self.external_transaction_id,
            entity_id=self.entity_id,
            message=self.message,
        )


def net_of_platform_fee(amount: Decimal) -> Decimal:
    rate = Decimal(str(settings.PLATFORM_FEE_PERCENT)) / Decimal(100)
    return (amount * (Decimal(1) - rate)).quantize(Decimal("0.01"))


def _local_start(event: AppointmentPaymentEvent, business: Business) -> datetime:
    tz = business_tz(business)
    local = datetime.combine(event.appointment_date, event.appointment_time, tzinfo=tz)
    return local.astimezone(timezone.utc)


async def _resolve_service(db: AsyncSession, event: AppointmentPaymentEvent) -> tuple[Business, Service]:
    service = await get_service(db, event.service_id)
    if service is None:
        raise ValidationError("Paid service does not exist", service_id=event.service_id)
    if event.business_id and event.business_id != service.business_id:
        raise ValidationError(
            "Paid service does not belong to the paid business",
            service_id=service.id,
            business_id=event.business_id,
        )
    business = await require_business(db, service.business_id)
    return business, service


async def _credit_balance(db: AsyncSession, business: Business, amount: Decimal, transaction_id: str) -> None:
    """Credit the business net of the platform fee; failure here never undoes the booking."""
    net = net_of_platform_fee(amount)
    try:
        async with db.begin_nested():
            business.balance = (business.balance or Decimal("0")) + net
            await db.flush()
    except SQLAlchemyError as e:
        logger.error(
            "balance_credit_failed",
            business_id=business.id,
            transaction_id=transaction_id,
            amount=str(net),
            error=str(e),
        )
        return
    logger.info("balance_credited", business_id=business.id, transaction_id=transaction_id, amount=str(net))


async def _existing_effect(db: AsyncSession, event) -> Optional[ReconciliationOutcome]:
    """
    Recheck under the lock. A ledger row means a concurrent delivery won;
    a payment row alone means the effect happened without its ledger row.
    """
    if await idempotency.has_applied(db, event.external_transaction_id):
        logger.info("payment_applied_concurrently", transaction_id=event.external_transaction_id)
        return ReconciliationOutcome(
            ALREADY_APPLIED, event.external_transaction_id, message="Transaction already processed"
        )
    payment = await get_payment_by_transaction(db, event.external_transaction_id)
    if payment is None:
        return None
    entity_id = payment.appointment_id or payment.subscription_id or payment.id
    logger.warning(
        "payment_row_without_ledger",
        transaction_id=event.external_transaction_id,
        payment_id=payment.id,
    )
    await idempotency.mark_applied(
        db,
        event.external_transaction_id,
        entity_id,
        gateway_source=event.gateway_source,
        kind=event.kind,
    )
    await db.commit()
    return ReconciliationOutcome(ALREADY_APPLIED, event.external_transaction_id, entity_id)


async def _apply_appointment_payment(
    db: AsyncSession,
    event: AppointmentPaymentEvent,
    now: datetime,
) -> ReconciliationOutcome:
    business, service = await _resolve_service(db, event)
    start_time = _local_start(event, business)
    txn = event.external_transaction_id

    async with schedule_lock(db, business.id):
        existing = await _existing_effect(db, event)
        if existing is not None:
            return existing
        try:
            appt, outcome = await _book_paid_appointment(db, event, business, service, start_time, now)
        except IntegrityError as e:
            if getattr(e.orig, "pgcode", None) != EXCLUSION_VIOLATION:
                raise
            # Storage guard fired after the recheck; the gateway retry takes the conflict path
            await db.rollback()
            interval = Interval.from_duration(start_time, service.duration_minutes)
            raise ConflictError(interval.start, interval.end) from e
        if outcome is not None:
            return outcome

    logger.info(
        "appointment_payment_applied",
        transaction_id=txn,
        appointment_id=appt.id,
        business_id=business.id,
        start_time=appt.start_time.isoformat(),
    )
    notifications = []
    confirmation = appointment_status_notification(
        status=CONFIRMED,
        to=appt.client_email,
        client_name=appt.client_name,
        service_name=event.service_name or service.name,
        business_name=business.name,
        start_utc=appt.start_time,
        tz=business_tz(business),
        appointment_id=appt.id,
    )
    if confirmation is not None:
        notifications.append(confirmation)
    return ReconciliationOutcome(APPLIED, txn, appt.id, notifications=notifications)


async def _book_paid_appointment(
    db: AsyncSession,
    event: AppointmentPaymentEvent,
    business: Business,
    service: Service,
    start_time: datetime,
    now: datetime,
) -> tuple[Optional[Appointment], Optional[ReconciliationOutcome]]:
    """Runs under the schedule lock. Returns (appointment, None) or (None, conflict outcome)."""
    txn = event.external_transaction_id
    client_email = event.client_email or event.customer_email
    account = await get_user_by_email(db, client_email) if client_email else None
    try:
        appt = await book_interval(
            db,
            business,
            service,
            start_time,
            status=CONFIRMED,
            client_ref=f"PAY-{txn}"[:64],
            client_name=event.client_name or event.customer_name,
            client_email=client_email,
            client_whatsapp=event.client_whatsapp,
            user_id=account.id if account else None,
            employee_id=event.employee_id,
            notes=f"Paid via {event.gateway_source} ({txn})",
            now=now,
            check_hours=False,
            allow_past=True,
            actor=f"payment:{event.gateway_source}",
        )
    except ConflictError as e:
        return None, await _record_unallocated(db, event, business, e)

    db.add(Payment(
        business_id=business.id,
        appointment_id=appt.id,
        amount=event.amount,
        currency=event.currency,
        status="confirmed",
        payment_type="appointment",
        method=event.gateway_source,
        transaction_id=txn,
        payment_date=event.occurred_at,
    ))
    await db.flush()
    await _credit_balance(db, business, event.amount, txn)

    await idempotency.mark_applied(db, txn, appt.id, gateway_source=event.gateway_source, kind=event.kind)
    await db.commit()
    return appt, None


async def _record_unallocated(
    db: AsyncSession,
    event: AppointmentPaymentEvent,
    business: Business,
    conflict: ConflictError,
) -> ReconciliationOutcome:
    """The money arrived but the slot is gone: keep the payment, flag it, tell the business."""
    txn = event.external_transaction_id
    payment = Payment(
        business_id=business.id,
        amount=event.amount,
        currency=event.currency,
        status=UNALLOCATED,
        payment_type="appointment",
        method=event.gateway_source,
        transaction_id=txn,
        notes=f"Slot {conflict.requested_start.isoformat()} already taken",
        payment_date=event.occurred_at,
    )
    db.add(payment)
    await db.flush()
    await idempotency.mark_applied(db, txn, payment.id, gateway_source=event.gateway_source, kind=event.kind)
    await db.commit()

    logger.warning(
        "appointment_payment_unallocated",
        transaction_id=txn,
        business_id=business.id,
        requested_start=conflict.requested_start.isoformat(),
        conflicting=conflict.conflicting_ids,
    )
    notice = unallocated_payment_notification(
        to=business.email,
        business_name=business.name,
        transaction_id=txn,
        start_utc=conflict.requested_start,
        tz=business_tz(business),
    )
    return ReconciliationOutcome(
        CONFLICT,
        txn,
        payment.id,
        message="Requested slot was no longer available; payment recorded as unallocated",
        notifications=[notice],
    )


async def _apply_subscription_payment(
    db: AsyncSession,
    event: SubscriptionPaymentEvent,
    now: datetime,
) -> ReconciliationOutcome:
    user = None
    if event.user_id:
        user = await get_user(db, event.user_id)
    elif event.customer_email:
        user = await get_user_by_email(db, event.customer_email)
    if user is None:
        raise ValidationError(
            "Subscription payment does not identify a known user",
            user_id=event.user_id,
            customer_email=event.customer_email,
        )

    txn = event.external_transaction_id
    plan_name = event.plan_name or settings.DEFAULT_PLAN_NAME
    period = relativedelta(months=event.billing_period_months)

    # renewal_at is read-modify-write; the lock keeps two payments from extending the same base
    async with subscription_lock(db, user.id):
        existing = await _existing_effect(db, event)
        if existing is not None:
            return existing

        sub = await current_subscription(db, user.id)
        if sub is not None:
            base = max(now, sub.renewal_at) if sub.renewal_at else now
            sub.status = ACTIVE
            sub.is_trial = False
            sub.plan_name = plan_name
            sub.price = event.amount
            sub.renewal_at = base + period
            action = "renewed"
        else:
            sub = Subscription(
                user_id=user.id,
                plan_name=plan_name,
                price=event.amount,
                status=ACTIVE,
                is_trial=False,
                renewal_at=now + period,
            )
            db.add(sub)
            action = "created"
        await db.flush()

        db.add(Payment(
            user_id=user.id,
            business_id=event.business_id,
            subscription_id=sub.id,
            amount=event.amount,
            currency=event.currency,
            status="confirmed",
            payment_type="subscription",
            method=event.gateway_source,
            transaction_id=txn,
            notes=f"Subscription {plan_name} ({event.billing_period_months} month(s))",
            payment_date=event.occurred_at,
        ))
        await db.flush()

        await idempotency.mark_applied(db, txn, sub.id, gateway_source=event.gateway_source, kind=event.kind)
        await db.commit()

    logger.info(
        "subscription_payment_applied",
        transaction_id=txn,
        subscription_id=sub.id,
        user_id=user.id,
        action=action,
        renewal_at=sub.renewal_at.isoformat(),
    )
    notice = subscription_notification(
        kind="subscription_activated",
        to=user.email,
        user_name=user.full_name,
        plan_name=plan_name,
        ends_at=sub.renewal_at,
        subscription_id=sub.id,
    )
    return ReconciliationOutcome(APPLIED, txn, sub.id, notifications=[notice])


async def reconcile(
    db: AsyncSession,
    event,
    *,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
) -> ReconciliationOutcome:
    """
    Apply ``event`` at most once. Duplicates, including concurrent ones,
    come back as ``already_applied`` with no side effects.

    Notifications are attached to the outcome; when ``notifier`` is given it
    is awaited with them after the commit.
    """
    txn = event.external_transaction_id
    if isinstance(event, IgnoredPaymentEvent):
        logger.info("payment_event_ignored", transaction_id=txn, event_type=event.event_type, reason=event.reason)
        return ReconciliationOutcome(IGNORED, txn, message=event.reason)

    now = now or utcnow()
    async with store_errors("reconcile"):
        try:
            if await idempotency.has_applied(db, txn):
                logger.info("payment_already_applied", transaction_id=txn, gateway=event.gateway_source)
                return ReconciliationOutcome(ALREADY_APPLIED, txn, message="Transaction already processed")

            if isinstance(event, AppointmentPaymentEvent):
                outcome = await _apply_appointment_payment(db, event, now)
            elif isinstance(event, SubscriptionPaymentEvent):
                outcome = await _apply_subscription_payment(db, event, now)
            else:
                raise ValidationError("Unsupported payment event", kind=getattr(event, "kind", None))
        except AlreadyApplied:
            await db.rollback()
            logger.info("payment_applied_concurrently", transaction_id=txn)
            return ReconciliationOutcome(ALREADY_APPLIED, txn, message="Transaction already processed")
        except IntegrityError:
            await db.rollback()
            # payments.transaction_id is unique: a concurrent delivery got there first
            if await get_payment_by_transaction(db, txn) is not None:
                logger.info("payment_applied_concurrently", transaction_id=txn)
                return ReconciliationOutcome(ALREADY_APPLIED, txn, message="Transaction already processed")
            raise
        except Exception:
            await db.rollback()
            raise

    if notifier is not None and outcome.notifications:
        await notifier(outcome.notifications)
    return outcome
