# app/services/payment_normalizer.py
"""
Gateway payloads -> PaymentEvent.

Two shapes are understood:

* card-payment webhook: ``{type, data: {payment_id, status, total_amount,
  currency, customer, metadata, created_at, updated_at}, timestamp}`` with
  amounts in minor units;
* mobile-money push reply: ``{transaction_id | reference | id | ..., status}``
  returned synchronously, joined with the checkout the service submitted.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from app.core.errors import ValidationError
from app.core.logging import get_logger
from app.schemas.payment import (
    AppointmentPaymentEvent,
    IgnoredPaymentEvent,
    MobileMoneyCheckout,
    PaymentEvent,
    SubscriptionPaymentEvent,
)

logger = get_logger(__name__)

SUCCEEDED_TYPE = "payment.succeeded"
SUCCEEDED_STATUS = "succeeded"

# Keys the push API has been seen to use for its transaction id, in priority order
MOBILE_MONEY_ID_KEYS = ("transaction_id", "reference", "id", "transactionId", "order_id")


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _minor_to_major(value: Any) -> Decimal:
    try:
        return (Decimal(str(value)) / Decimal(100)).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError):
        raise ValidationError("total_amount is not a number", total_amount=value)


def _is_appointment(metadata: dict[str, Any]) -> bool:
    return bool(
        metadata.get("service_id")
        and metadata.get("appointment_date")
        and metadata.get("appointment_time")
    )


def _build(model, **fields) -> PaymentEvent:
    try:
        return model(**fields)
    except PydanticValidationError as e:
        raise ValidationError(
            "Payment event is missing or has malformed fields",
            errors=[f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
        ) from e


def _billing_period(value: Any) -> int:
    try:
        return max(int(value or 1), 1)
    except (TypeError, ValueError):
        raise ValidationError("billing_period must be an integer", billing_period=value)


def normalize_card_webhook(body: dict[str, Any], *, received_at: Optional[datetime] = None) -> PaymentEvent:
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object")
    event_type = str(body.get("type") or "")
    data = body.get("data")
    if not isinstance(data, dict):
        raise ValidationError("Webhook body has no data object", type=event_type)

    payment_id = data.get("payment_id")
    if not payment_id:
        raise ValidationError("Webhook is missing data.payment_id", type=event_type)

    status = str(data.get("status") or "")
    metadata = data.get("metadata") or {}
    customer = data.get("customer") or {}
    occurred_at = (
        _parse_datetime(data.get("updated_at"))
        or _parse_datetime(data.get("created_at"))
        or _parse_datetime(body.get("timestamp"))
        or received_at
        or datetime.now(timezone.utc)
    )
    common = dict(
        gateway_source="card",
        external_transaction_id=str(payment_id),
        amount=_minor_to_major(data.get("total_amount") or 0),
        currency=str(data.get("currency") or "USD").upper(),
        occurred_at=occurred_at,
        customer_email=customer.get("email") or metadata.get("client_email") or None,
        customer_name=customer.get("name") or metadata.get("client_name") or None,
        business_id=metadata.get("business_id") or body.get("business_id"),
        payload=body,
    )

    if event_type != SUCCEEDED_TYPE or status != SUCCEEDED_STATUS:
        logger.info("card_webhook_ignored", type=event_type, status=status, payment_id=payment_id)
        return _build(
            IgnoredPaymentEvent,
            event_type=event_type,
            reason=f"not a successful payment (type={event_type or '?'}, status={status or '?'})",
            **common,
        )

    if _is_appointment(metadata):
        return _build(
            AppointmentPaymentEvent,
            service_id=metadata["service_id"],
            appointment_date=metadata["appointment_date"],
            appointment_time=metadata["appointment_time"],
            service_name=metadata.get("service_name"),
            client_name=metadata.get("client_name") or customer.get("name"),
            client_email=metadata.get("client_email") or customer.get("email"),
            client_whatsapp=metadata.get("client_whatsapp"),
            employee_id=metadata.get("employee_id"),
            **common,
        )

    return _build(
        SubscriptionPaymentEvent,
        user_id=metadata.get("user_id"),
        plan_name=metadata.get("plan_name"),
        billing_period_months=_billing_period(metadata.get("billing_period")),
        **common,
    )


def extract_mobile_money_transaction_id(response: dict[str, Any]) -> Optional[str]:
    for key in MOBILE_MONEY_ID_KEYS:
        value = response.get(key)
        if value:
            return str(value)
    return None


def normalize_mobile_money(
    response: dict[str, Any],
    checkout: MobileMoneyCheckout,
    *,
    received_at: Optional[datetime] = None,
) -> PaymentEvent:
    """A successful push reply plus the checkout it answers."""
    transaction_id = extract_mobile_money_transaction_id(response)
    if not transaction_id:
        raise ValidationError("Mobile-money reply carries no transaction id", method=checkout.method)

    common = dict(
        gateway_source=checkout.method,
        external_transaction_id=transaction_id,
        amount=checkout.amount,
        currency=checkout.currency.upper(),
        occurred_at=received_at or datetime.now(timezone.utc),
        customer_email=checkout.customer_email or checkout.client_email,
        customer_name=checkout.customer_name or checkout.client_name,
        business_id=checkout.business_id,
        payload={"response": response, "reference": checkout.reference},
    )

    status = str(response.get("status") or "").lower()
    if status in ("failed", "cancelled", "canceled", "rejected"):
        return _build(IgnoredPaymentEvent, event_type=f"{checkout.method}.{status}", reason="payment not completed", **common)

    if checkout.service_id and checkout.appointment_date and checkout.appointment_time:
        return _build(
            AppointmentPaymentEvent,
            service_id=checkout.service_id,
            appointment_date=checkout.appointment_date,
            appointment_time=checkout.appointment_time,
            client_name=checkout.client_name,
            client_email=checkout.client_email,
            client_whatsapp=checkout.client_whatsapp,
            **common,
        )

    return _build(
        SubscriptionPaymentEvent,
        user_id=checkout.user_id,
        plan_name=checkout.plan_name,
        billing_period_months=checkout.billing_period_months,
        **common,
    )
