# app/schemas/payment.py
"""
Internal payment events. Gateway payloads are turned into one of these at the
normalization boundary; nothing past it inspects raw gateway JSON.
"""
from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

GatewaySource = Literal["card", "mpesa", "emola"]


class _PaymentEventBase(BaseModel):
    gateway_source: GatewaySource
    external_transaction_id: str = Field(..., min_length=1)
    amount: Decimal = Decimal("0")
    currency: str = "MZN"
    occurred_at: datetime
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    business_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict, repr=False)


class AppointmentPaymentEvent(_PaymentEventBase):
    kind: Literal["appointment_payment"] = "appointment_payment"
    service_id: str
    appointment_date: date
    appointment_time: time
    service_name: Optional[str] = None
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    client_whatsapp: Optional[str] = None
    employee_id: Optional[str] = None


class SubscriptionPaymentEvent(_PaymentEventBase):
    kind: Literal["subscription_payment"] = "subscription_payment"
    user_id: Optional[str] = None
    plan_name: Optional[str] = None
    billing_period_months: int = Field(1, ge=1)


class IgnoredPaymentEvent(_PaymentEventBase):
    kind: Literal["ignored"] = "ignored"
    event_type: str
    reason: str


PaymentEvent = Annotated[
    Union[AppointmentPaymentEvent, SubscriptionPaymentEvent, IgnoredPaymentEvent],
    Field(discriminator="kind"),
]

payment_event_adapter = TypeAdapter(PaymentEvent)


class MobileMoneyCheckout(BaseModel):
    """What the client submits to start a push payment, plus what the payment is for."""
    method: Literal["mpesa", "emola"]
    amount: Decimal = Field(..., ge=1)
    phone: str
    reference: str
    currency: str = "MZN"
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    business_id: Optional[str] = None
    # subscription checkout
    user_id: Optional[str] = None
    plan_name: Optional[str] = None
    billing_period_months: int = Field(1, ge=1)
    # appointment checkout
    service_id: Optional[str] = None
    appointment_date: Optional[date] = None
    appointment_time: Optional[time] = None
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    client_whatsapp: Optional[str] = None


class ReconciliationResponse(BaseModel):
    success: bool = True
    status: str
    external_transaction_id: Optional[str] = None
    entity_id: Optional[str] = None
    message: Optional[str] = None
