# app/services/notifications.py
"""
Outbound e-mail (Resend API). Fire-and-forget: callers hand over
``Notification`` objects after their transaction committed, and a failed
send is logged, never raised.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

import httpx

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Notification:
    kind: str
    to: Optional[str]
    subject: str
    body: str
    context: dict = field(default_factory=dict)


def _when(start_utc: datetime, tz: ZoneInfo) -> tuple[str, str]:
    local = start_utc.astimezone(tz)
    return local.strftime("%d/%m/%Y"), local.strftime("%H:%M")


def appointment_status_notification(
    *,
    status: str,
    to: Optional[str],
    client_name: Optional[str],
    service_name: str,
    business_name: str,
    start_utc: datetime,
    tz: ZoneInfo,
    appointment_id: str,
) -> Optional[Notification]:
    """Message for a client whose appointment was confirmed or rejected; None for other statuses."""
    day, hour = _when(start_utc, tz)
    name = client_name or "cliente"
    if status == "confirmed":
        subject = "Agendamento Confirmado!"
        body = (
            f"Olá, {name}! Seu agendamento para {service_name} com {business_name} "
            f"no dia {day} às {hour} foi CONFIRMADO. Te esperamos!"
        )
    elif status == "rejected":
        subject = "Agendamento Rejeitado"
        body = (
            f"Olá, {name}. Infelizmente, seu horário para {service_name} com {business_name} "
            f"no dia {day} às {hour} foi REJEITADO. Por favor, entre em contato para reagendar."
        )
    else:
        return None
    return Notification(
        kind=f"appointment_{status}",
        to=to,
        subject=subject,
        body=body,
        context={"appointment_id": appointment_id},
    )


def unallocated_payment_notification(
    *,
    to: Optional[str],
    business_name: str,
    transaction_id: str,
    start_utc: datetime,
    tz: ZoneInfo,
) -> Notification:
    day, hour = _when(start_utc, tz)
    return Notification(
        kind="payment_unallocated",
        to=to,
        subject="Pagamento recebido sem horário disponível",
        body=(
            f"{business_name}: o pagamento {transaction_id} foi recebido para {day} às {hour}, "
            "mas o horário já estava ocupado. Contacte o cliente para remarcar."
        ),
        context={"transaction_id": transaction_id},
    )


def subscription_notification(
    *,
    kind: str,
    to: Optional[str],
    user_name: Optional[str],
    plan_name: str,
    ends_at: datetime,
    subscription_id: str,
) -> Notification:
    name = user_name or "Cliente"
    ends = ends_at.strftime("%d/%m/%Y")
    if kind == "subscription_expiring":
        subject = "Lembrete: Sua assinatura expira em breve"
        body = f"Olá {name}, a sua assinatura {plan_name} expira em {ends}. Renove para continuar a usar a plataforma."
    elif kind == "subscription_expired":
        subject = "Sua assinatura expirou - Renove agora"
        body = f"Olá {name}, a sua assinatura {plan_name} expirou em {ends}. Renove o seu plano para reativar o acesso."
    else:
        subject = "Assinatura ativada"
        body = f"Olá {name}, a sua assinatura {plan_name} está ativa até {ends}."
    return Notification(kind=kind, to=to, subject=subject, body=body, context={"subscription_id": subscription_id})


async def send_email(notification: Notification, client: Optional[httpx.AsyncClient] = None) -> bool:
    if not notification.to:
        logger.info("email_skipped_no_recipient", kind=notification.kind)
        return False
    if not settings.RESEND_API_KEY:
        logger.info("email_disabled", kind=notification.kind)
        return False

    payload = {
        "from": settings.EMAIL_FROM,
        "to": notification.to,
        "subject": notification.subject,
        "text": notification.body,
    }
    headers = {"Authorization": f"Bearer {settings.RESEND_API_KEY}"}
    url = f"{settings.RESEND_BASE_URL.rstrip('/')}/emails"

    if client is None:
        async with httpx.AsyncClient(timeout=10.0) as own_client:
            resp = await own_client.post(url, json=payload, headers=headers)
    else:
        resp = await client.post(url, json=payload, headers=headers)
    resp.raise_for_status()
    logger.info("email_sent", kind=notification.kind, **notification.context)
    return True


async def dispatch(notifications: Iterable[Notification]) -> int:
    """Send everything; failures are logged and swallowed. Returns how many went out."""
    sent = 0
    for notification in notifications:
        try:
            if await send_email(notification):
                sent += 1
        except Exception as e:
            logger.warning(
                "notification_failed",
                kind=notification.kind,
                error=str(e),
                error_type=type(e).__name__,
            )
    return sent
