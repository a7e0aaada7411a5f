"""
Tests for e-mail notifications.
"""

import json
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import httpx
import pytest

from app.core.config import settings
from app.services import notifications
from app.services.notifications import (
    Notification,
    appointment_status_notification,
    dispatch,
    send_email,
    subscription_notification,
    unallocated_payment_notification,
)

MAPUTO = ZoneInfo("Africa/Maputo")
START = datetime(2030, 1, 8, 8, 0, tzinfo=timezone.utc)


def confirmed(**extra):
    fields = dict(
        status="confirmed",
        to="joao@example.com",
        client_name="João",
        service_name="Corte de cabelo",
        business_name="Salão Estrela",
        start_utc=START,
        tz=MAPUTO,
        appointment_id="appt-1",
    )
    fields.update(extra)
    return appointment_status_notification(**fields)


@pytest.mark.unit
class TestBuilders:

    def test_confirmation_uses_local_time(self):
        notice = confirmed()

        assert notice.kind == "appointment_confirmed"
        assert "08/01/2030" in notice.body
        assert "10:00" in notice.body
        assert "CONFIRMADO" in notice.body

    def test_rejection(self):
        notice = confirmed(status="rejected")
        assert notice.kind == "appointment_rejected"
        assert "REJEITADO" in notice.body

    @pytest.mark.parametrize("status", ["pending", "cancelled", "completed"])
    def test_other_statuses_are_silent(self, status):
        assert confirmed(status=status) is None

    def test_unallocated_payment(self):
        notice = unallocated_payment_notification(
            to="owner@estrela.co.mz",
            business_name="Salão Estrela",
            transaction_id="pay_1",
            start_utc=START,
            tz=MAPUTO,
        )
        assert "pay_1" in notice.body
        assert notice.context == {"transaction_id": "pay_1"}

    @pytest.mark.parametrize("kind,word", [
        ("subscription_expiring", "expira"),
        ("subscription_expired", "expirou"),
        ("subscription_activated", "ativa"),
    ])
    def test_subscription_messages(self, kind, word):
        notice = subscription_notification(
            kind=kind,
            to="maria@example.com",
            user_name="Maria",
            plan_name="Plano Pro",
            ends_at=START,
            subscription_id="sub-1",
        )
        assert notice.kind == kind
        assert word in notice.body
        assert "08/01/2030" in notice.body


@pytest.mark.asyncio
class TestSending:

    async def test_disabled_without_api_key(self, monkeypatch):
        monkeypatch.setattr(settings, "RESEND_API_KEY", None)
        assert await send_email(confirmed()) is False

    async def test_skipped_without_recipient(self, monkeypatch):
        monkeypatch.setattr(settings, "RESEND_API_KEY", "re_test")
        assert await send_email(confirmed(to=None)) is False

    async def test_posts_to_resend(self, monkeypatch):
        monkeypatch.setattr(settings, "RESEND_API_KEY", "re_test")
        monkeypatch.setattr(settings, "EMAIL_FROM", "agenda@example.com")
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "email_1"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            assert await send_email(confirmed(), client=client) is True

        assert seen["url"] == "https://api.resend.com/emails"
        assert seen["auth"] == "Bearer re_test"
        assert seen["payload"]["to"] == "joao@example.com"
        assert seen["payload"]["from"] == "agenda@example.com"
        assert seen["payload"]["subject"] == "Agendamento Confirmado!"

    async def test_provider_error_raises(self, monkeypatch):
        monkeypatch.setattr(settings, "RESEND_API_KEY", "re_test")

        def handler(request):
            return httpx.Response(500, json={"message": "down"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(httpx.HTTPStatusError):
                await send_email(confirmed(), client=client)

    async def test_dispatch_swallows_failures(self, monkeypatch):
        sent = []

        async def flaky_send(notification, client=None):
            if notification.to == "broken@example.com":
                raise httpx.ConnectError("no route")
            sent.append(notification.to)
            return True

        monkeypatch.setattr(notifications, "send_email", flaky_send)
        batch = [
            Notification(kind="test", to="broken@example.com", subject="s", body="b"),
            Notification(kind="test", to="ok@example.com", subject="s", body="b"),
        ]

        assert await dispatch(batch) == 1
        assert sent == ["ok@example.com"]
