# app/api/auth.py
import secrets

from fastapi import Header, HTTPException

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


async def require_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> str:
    """Admin endpoints only; everything else is authenticated upstream."""
    expected = settings.ADMIN_API_KEY or ""
    if not expected or not secrets.compare_digest(x_api_key, expected):
        logger.warning("api_key_rejected", has_key=bool(x_api_key))
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return x_api_key
