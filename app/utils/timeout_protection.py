# app/utils/timeout_protection.py
"""
Timeout protection for webhook processing. Card-payment gateways give up on
a delivery after a few seconds; answering 503 before that makes them retry
instead of marking the delivery failed.
"""
import asyncio
import time
from typing import Any, Awaitable

from app.core.errors import TransientStoreError
from app.core.logging import get_logger

logger = get_logger(__name__)


async def with_timeout(coro: Awaitable[Any], timeout_seconds: float, operation: str = "operation") -> Any:
    """
    Await ``coro`` for at most ``timeout_seconds``.
    On expiry the coroutine is cancelled (its session rolls back) and
    TransientStoreError is raised.
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        logger.warning("operation_timed_out", operation=operation, timeout_seconds=timeout_seconds)
        raise TransientStoreError(f"{operation} timed out", operation=operation, timeout_seconds=timeout_seconds) from e


class OperationTimer:
    """
    Context manager to log how long an operation took.

    Usage:
        with OperationTimer("card_webhook", max_seconds=5.0):
            ...
    """

    def __init__(self, operation_name: str, max_seconds: float = 3.0):
        self.operation_name = operation_name
        self.max_seconds = max_seconds
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = self.elapsed()
        if duration > self.max_seconds:
            logger.warning("operation_slow", operation=self.operation_name, duration_s=round(duration, 3))
        else:
            logger.debug("operation_done", operation=self.operation_name, duration_s=round(duration, 3))

    def elapsed(self) -> float:
        if not self.start_time:
            return 0.0
        return time.perf_counter() - self.start_time
