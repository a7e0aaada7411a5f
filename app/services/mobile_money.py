# app/services/mobile_money.py
"""
M-Pesa / e-Mola push payments.

The customer's phone receives a PIN prompt; the gateway answers the HTTP
call once the customer confirmed (or the attempt failed). A 2xx answer is a
settled payment and goes straight through the reconciliation engine, keyed
by the transaction id the gateway returned.
"""
from __future__ import annotations

import re
import time
from datetime import datetime
from typing import Any, Optional

import httpx
import phonenumbers
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import PaymentGatewayError, ValidationError
from app.core.logging import get_logger
from app.schemas.payment import MobileMoneyCheckout
from app.services.payment_normalizer import normalize_mobile_money
from app.services.reconciliation import ReconciliationOutcome, reconcile
from app.utils.secrets import get_config_value

logger = get_logger(__name__)

# Vodacom (84, 85) and Movitel/Tmcel (86, 87) mobile ranges
MZ_MOBILE_RE = re.compile(r"^8[4-7]\d{7}$")
REFERENCE_MAX_LENGTH = 20


def normalize_phone(phone: str) -> str:
    """Return the 9-digit national number the gateway expects, or raise ValidationError."""
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("00258"):
        digits = digits[5:]
    elif digits.startswith("258"):
        digits = digits[3:]

    if not MZ_MOBILE_RE.match(digits):
        raise ValidationError(
            "Phone must be a Mozambican mobile number (84, 85, 86, 87) with 9 digits",
            phone=phone,
        )
    try:
        parsed = phonenumbers.parse(digits, "MZ")
    except phonenumbers.NumberParseException:
        raise ValidationError("Phone number could not be parsed", phone=phone)
    if not phonenumbers.is_possible_number(parsed):
        raise ValidationError("Phone number is not a possible Mozambican number", phone=phone)
    return str(parsed.national_number)


def clean_reference(reference: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_]", "", reference or "")[:REFERENCE_MAX_LENGTH]
    return cleaned or f"order_{int(time.time() * 1000)}"


def _credentials(method: str) -> tuple[str, str]:
    key = method.upper()
    token = getattr(settings, f"{key}_ACCESS_TOKEN") or get_config_value(f"{key}_ACCESS_TOKEN")
    wallet = getattr(settings, f"{key}_WALLET_ID") or get_config_value(f"{key}_WALLET_ID")
    if not token or not wallet:
        raise PaymentGatewayError(f"{method} payments are not configured", method=method)
    return token, wallet


def gateway_error_message(status_code: int, data: dict[str, Any]) -> str:
    message = data.get("message") or data.get("error") or data.get("detail")
    upstream = data.get("mpesa_server_response")
    if isinstance(upstream, dict):
        message = (
            upstream.get("message")
            or upstream.get("error")
            or upstream.get("ResponseDescription")
            or upstream.get("responseDescription")
            or message
        )
    return str(message or f"Gateway returned HTTP {status_code}")


async def request_push_payment(
    checkout: MobileMoneyCheckout,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> dict[str, Any]:
    """POST the push request; returns the gateway's JSON on 200/201, raises PaymentGatewayError otherwise."""
    phone = normalize_phone(checkout.phone)
    reference = clean_reference(checkout.reference)
    token, wallet = _credentials(checkout.method)

    url = f"{settings.MOBILE_MONEY_BASE_URL.rstrip('/')}/v1/c2b/{checkout.method}-payment/{wallet}"
    body = {
        "client_id": settings.MOBILE_MONEY_CLIENT_ID or get_config_value("MOBILE_MONEY_CLIENT_ID"),
        "amount": float(checkout.amount),
        "phone": phone,
        "reference": reference,
    }
    headers = {
        "Authorization": f"Bearer {token}",
        "Accept": "application/json",
    }

    logger.info(
        "mobile_money_push_requested",
        method=checkout.method,
        amount=str(checkout.amount),
        reference=reference,
    )
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=settings.MOBILE_MONEY_TIMEOUT_SECONDS) as own_client:
                resp = await own_client.post(url, json=body, headers=headers)
        else:
            resp = await client.post(url, json=body, headers=headers, timeout=settings.MOBILE_MONEY_TIMEOUT_SECONDS)
    except httpx.TimeoutException as e:
        logger.warning("mobile_money_timeout", method=checkout.method, reference=reference)
        raise PaymentGatewayError("Payment gateway timed out; try again", status_code=504) from e
    except httpx.HTTPError as e:
        logger.error("mobile_money_unreachable", method=checkout.method, error=str(e))
        raise PaymentGatewayError("Payment gateway unreachable", status_code=502) from e

    try:
        data = resp.json()
    except ValueError:
        data = {"message": resp.text or "Invalid gateway response"}
    if not isinstance(data, dict):
        data = {"message": str(data)}

    if resp.status_code in (200, 201):
        logger.info("mobile_money_push_succeeded", method=checkout.method, reference=reference)
        return data

    message = gateway_error_message(resp.status_code, data)
    logger.warning(
        "mobile_money_push_failed",
        method=checkout.method,
        reference=reference,
        status_code=resp.status_code,
        message=message,
    )
    raise PaymentGatewayError(message, status_code=resp.status_code, response=data)


async def collect_payment(
    db: AsyncSession,
    checkout: MobileMoneyCheckout,
    *,
    client: Optional[httpx.AsyncClient] = None,
    now: Optional[datetime] = None,
) -> ReconciliationOutcome:
    """Push, then apply the settled payment exactly once."""
    response = await request_push_payment(checkout, client=client)
    event = normalize_mobile_money(response, checkout, received_at=now)
    return await reconcile(db, event, now=now)
