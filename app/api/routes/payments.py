# app/api/routes/payments.py
"""
Payment entry points: the card gateway's webhook and mobile-money pushes.

Both end in the reconciliation engine, so a gateway retrying a delivery
gets the same answer without the effect being applied twice. Store
trouble surfaces as 503 so the gateway keeps retrying.
"""
from __future__ import annotations

import json

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.webhook_security import verify_standard_webhook
from app.core.config import settings
from app.core.errors import ValidationError
from app.core.logging import get_logger
from app.db.session import get_session
from app.schemas.payment import MobileMoneyCheckout, ReconciliationResponse
from app.schemas.subscription import CheckoutRequest, SubscriptionOut
from app.services.mobile_money import collect_payment
from app.services.notifications import dispatch
from app.services.payment_normalizer import normalize_card_webhook
from app.services.reconciliation import reconcile
from app.services.subscriptions import start_checkout
from app.utils.secrets import get_config_value
from app.utils.timeout_protection import OperationTimer, with_timeout

logger = get_logger(__name__)

webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
router = APIRouter(prefix="/payments", tags=["payments"])


@webhooks_router.post("/card-payments", response_model=ReconciliationResponse)
async def card_payment_webhook(
    request: Request,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_session),
):
    secret = settings.CARD_WEBHOOK_SECRET or get_config_value("CARD_WEBHOOK_SECRET")
    if secret:
        raw_body = await verify_standard_webhook(request, secret)
    else:
        logger.warning("webhook_signature_check_disabled", path=request.url.path)
        raw_body = await request.body()

    try:
        body = json.loads(raw_body or b"{}")
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")

    event = normalize_card_webhook(body)
    with OperationTimer("card_webhook", max_seconds=settings.SLOW_REQUEST_THRESHOLD):
        outcome = await with_timeout(
            reconcile(db, event),
            settings.WEBHOOK_TIMEOUT_SECONDS,
            operation="card_webhook",
        )
    if outcome.notifications:
        background.add_task(dispatch, outcome.notifications)
    return outcome.to_response()


@router.post("/mobile-money", response_model=ReconciliationResponse)
async def mobile_money_payment(
    checkout: MobileMoneyCheckout,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_session),
):
    outcome = await collect_payment(db, checkout)
    if outcome.notifications:
        background.add_task(dispatch, outcome.notifications)
    return outcome.to_response()


@router.post("/subscriptions/checkout", response_model=SubscriptionOut, status_code=201)
async def subscription_checkout(payload: CheckoutRequest, db: AsyncSession = Depends(get_session)):
    return await start_checkout(
        db,
        payload.user_id,
        payload.plan_name,
        payload.price,
        is_trial=payload.is_trial,
    )
