"""
Webhook signature verification (Standard Webhooks).

Signed message: ``{webhook-id}.{webhook-timestamp}.{raw body}``, HMAC-SHA256
with the base64-decoded part of a ``whsec_`` secret, sent as
``webhook-signature: v1,<base64>`` (several space-separated entries allowed
while a secret is being rotated).
"""

import base64
import binascii
import hashlib
import hmac
import time
from typing import Optional

from fastapi import HTTPException, Request

from app.core.logging import get_logger

logger = get_logger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300


def constant_time_compare(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def extract_signing_key(secret: str) -> bytes:
    """
    ``whsec_BASE64KEY`` -> key bytes. Unprefixed secrets are tried as base64
    first and used as raw UTF-8 otherwise.
    """
    try:
        if secret.startswith("whsec_"):
            return base64.b64decode(secret[6:])
        return base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError):
        return secret.encode("utf-8")


def sign_payload(secret: str, webhook_id: str, timestamp: str, body: bytes) -> str:
    signed = b".".join([webhook_id.encode("utf-8"), timestamp.encode("utf-8"), body])
    digest = hmac.new(extract_signing_key(secret), signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_timestamp(timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS, now: Optional[float] = None) -> bool:
    """Reject deliveries older (or further in the future) than ``max_age`` seconds."""
    try:
        webhook_time = int(timestamp or "")
    except ValueError:
        logger.warning("webhook_timestamp_invalid", timestamp=timestamp)
        return False
    age = abs(int(now if now is not None else time.time()) - webhook_time)
    if age > max_age:
        logger.warning("webhook_timestamp_too_old", age_s=age, max_age_s=max_age)
        return False
    return True


def _signatures(header: str) -> list[str]:
    found = []
    for part in header.split():
        version, _, value = part.partition(",")
        if version == "v1" and value:
            found.append(value)
    return found


async def verify_standard_webhook(request: Request, secret: str) -> bytes:
    """
    Check the signature headers of ``request`` against ``secret``.
    Returns the raw body on success; raises HTTPException(401) otherwise.
    """
    raw_body = await request.body()
    signature_header = request.headers.get("webhook-signature", "")
    timestamp = request.headers.get("webhook-timestamp", "")
    webhook_id = request.headers.get("webhook-id", "")

    if not signature_header or not timestamp or not webhook_id:
        logger.warning("webhook_headers_missing", webhook_id=webhook_id or None)
        raise HTTPException(status_code=401, detail="Missing webhook signature headers")

    if not verify_timestamp(timestamp):
        raise HTTPException(status_code=401, detail="Webhook timestamp expired")

    expected = sign_payload(secret, webhook_id, timestamp, raw_body)
    if any(constant_time_compare(expected, received) for received in _signatures(signature_header)):
        logger.debug("webhook_signature_verified", webhook_id=webhook_id)
        return raw_body

    logger.warning("webhook_signature_mismatch", webhook_id=webhook_id, body_bytes=len(raw_body))
    raise HTTPException(status_code=401, detail="Invalid webhook signature")
