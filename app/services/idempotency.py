# app/services/idempotency.py
"""
Idempotency ledger keyed by the gateway's transaction id.

``mark_applied`` relies on the primary-key constraint of
``processed_payments``: two concurrent deliveries can both pass
``has_applied`` but only one insert survives; the loser gets
``AlreadyApplied`` and must roll back its transaction.
"""
from __future__ import annotations

from typing import Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import FlushError

from app.core.errors import AlreadyApplied
from app.db.models.billing import ProcessedPayment


async def has_applied(db: AsyncSession, external_id: str) -> bool:
    res = await db.execute(
        sa.select(ProcessedPayment.external_transaction_id)
        .where(ProcessedPayment.external_transaction_id == external_id)
    )
    return res.scalar_one_or_none() is not None


async def get_record(db: AsyncSession, external_id: str) -> Optional[ProcessedPayment]:
    res = await db.execute(
        sa.select(ProcessedPayment).where(ProcessedPayment.external_transaction_id == external_id)
    )
    return res.scalar_one_or_none()


async def mark_applied(
    db: AsyncSession,
    external_id: str,
    resulting_entity_id: Optional[str],
    *,
    gateway_source: str,
    kind: str,
) -> ProcessedPayment:
    """Insert the ledger row inside the caller's transaction (flushed, not committed)."""
    record = ProcessedPayment(
        external_transaction_id=external_id,
        gateway_source=gateway_source,
        kind=kind,
        resulting_entity_id=resulting_entity_id,
    )
    db.add(record)
    try:
        await db.flush()
    except (IntegrityError, FlushError) as e:
        raise AlreadyApplied(external_id) from e
    return record
