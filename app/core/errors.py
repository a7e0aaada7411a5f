"""
Error taxonomy for the scheduling core and payment reconciliation.

Every failure the core reports is one of the classes below; callers branch on
the type, never on message text. ``AlreadyApplied`` is deliberately not a
``SchedulingError``: an idempotency hit is a successful no-op.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError


class SchedulingError(Exception):
    """Base class for typed core errors."""

    code = "scheduling_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = {k: _jsonable(v) for k, v in self.details.items()}
        return payload


class ValidationError(SchedulingError):
    """Malformed request. Rejected immediately, never retried."""

    code = "validation_error"


class PastDateError(ValidationError):
    code = "past_date"


class NotFoundError(SchedulingError):
    code = "not_found"


class ConflictError(SchedulingError):
    """The requested interval is no longer available."""

    code = "conflict"

    def __init__(self, requested_start: datetime, requested_end: datetime,
                 conflicting_ids: Optional[Sequence[str]] = None,
                 message: str = "Requested interval is no longer available"):
        super().__init__(
            message,
            requested_start=requested_start,
            requested_end=requested_end,
            conflicting_ids=list(conflicting_ids or []),
        )
        self.requested_start = requested_start
        self.requested_end = requested_end
        self.conflicting_ids = list(conflicting_ids or [])


class InvalidTransitionError(SchedulingError):
    code = "invalid_transition"

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot move appointment from '{current}' to '{requested}'",
            current_status=current,
            requested_status=requested,
        )
        self.current = current
        self.requested = requested


class TransientStoreError(SchedulingError):
    """Connectivity or timeout problem. Safe to retry a webhook delivery."""

    code = "transient_store_error"


class PaymentGatewayError(SchedulingError):
    """A payment gateway refused or failed the request."""

    code = "payment_gateway_error"

    def __init__(self, message: str, status_code: Optional[int] = None, **details: Any):
        super().__init__(message, status_code=status_code, **details)
        self.status_code = status_code


class AlreadyApplied(Exception):
    """Raised by the idempotency ledger when a transaction id was already recorded."""

    def __init__(self, external_transaction_id: str):
        super().__init__(external_transaction_id)
        self.external_transaction_id = external_transaction_id


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@asynccontextmanager
async def store_errors(operation: str):
    """Translate driver connectivity failures into ``TransientStoreError``."""
    try:
        yield
    except (OperationalError, PoolTimeoutError, asyncio.TimeoutError, ConnectionError) as e:
        raise TransientStoreError(f"{operation} failed: store unavailable", operation=operation) from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise TransientStoreError(f"{operation} failed: connection lost", operation=operation) from e
        raise
