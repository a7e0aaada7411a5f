# app/main.py
from __future__ import annotations

# Load .env early so os.getenv works everywhere
from dotenv import load_dotenv
load_dotenv()

import sqlalchemy as sa
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PaymentGatewayError,
    SchedulingError,
    TransientStoreError,
    ValidationError,
)
from app.core.logging import LoggingMiddleware, get_logger, setup_logging
from app.db.session import get_session

# Set up structured logging
setup_logging(debug=settings.is_development, max_log_length=settings.MAX_LOG_LENGTH, level=settings.LOG_LEVEL)
logger = get_logger(__name__)

# Routers
from app.api.routes.admin import router as admin_router
from app.api.routes.appointments import router as appointments_router
from app.api.routes.availability import router as availability_router
from app.api.routes.payments import router as payments_router
from app.api.routes.payments import webhooks_router

app = FastAPI(title="Agenda", description="Multi-tenant appointment booking and payment reconciliation")

app.middleware("http")(LoggingMiddleware(
    log_requests=settings.LOG_REQUESTS,
    log_responses=settings.LOG_RESPONSES,
    slow_threshold=settings.SLOW_REQUEST_THRESHOLD,
))


# -------- Error mapping (single place) --------
STATUS_BY_ERROR: tuple[tuple[type[SchedulingError], int], ...] = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidTransitionError, 409),
    (TransientStoreError, 503),
    (PaymentGatewayError, 502),
)


def status_for(exc: SchedulingError) -> int:
    if isinstance(exc, PaymentGatewayError) and exc.status_code == 504:
        return 504
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    status = status_for(exc)
    log = logger.warning if status < 500 else logger.error
    log("request_failed", path=request.url.path, error=exc.code, message=exc.message, status_code=status)
    headers = {"Retry-After": "5"} if status == 503 else None
    return JSONResponse(exc.to_dict(), status_code=status, headers=headers)


# -------- Health / readiness (public) --------
@app.get("/healthz", include_in_schema=False)
async def healthz():
    return {"ok": True}


@app.get("/readyz", include_in_schema=False)
async def readyz(db: AsyncSession = Depends(get_session)):
    await db.execute(sa.text("SELECT 1"))
    return {"db": "ok"}


# -------- Include routers --------
app.include_router(availability_router)
app.include_router(appointments_router)
app.include_router(webhooks_router)
app.include_router(payments_router)
app.include_router(admin_router)
