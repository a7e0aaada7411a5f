# app/db/models/billing.py

from __future__ import annotations
from datetime import datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.session import Base
from app.db.types import UTCDateTime, new_id, utcnow

# Subscription statuses
TRIAL = "trial"
ACTIVE = "active"
PENDING_PAYMENT = "pending_payment"
EXPIRED = "expired"

class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        sa.Index("ix_subscriptions_user_created", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    plan_name: Mapped[str] = mapped_column(sa.String(120), nullable=False)
    price: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(sa.String(20), nullable=False, default=PENDING_PAYMENT)
    is_trial: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    renewal_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    user: Mapped["User"] = relationship(back_populates="subscriptions")

    @property
    def ends_at(self) -> datetime | None:
        return self.renewal_at or self.trial_ends_at


class Payment(Base):
    """Payment ledger. transaction_id is the gateway's id and unique."""
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    user_id: Mapped[str | None] = mapped_column(sa.String(36), sa.ForeignKey("users.id", ondelete="SET NULL"))
    business_id: Mapped[str | None] = mapped_column(sa.String(36), sa.ForeignKey("businesses.id", ondelete="SET NULL"))
    appointment_id: Mapped[str | None] = mapped_column(sa.String(36), sa.ForeignKey("appointments.id", ondelete="SET NULL"))
    subscription_id: Mapped[str | None] = mapped_column(sa.String(36), sa.ForeignKey("subscriptions.id", ondelete="SET NULL"))
    amount: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(sa.String(3), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(20), nullable=False, default="confirmed")
    payment_type: Mapped[str] = mapped_column(sa.String(20), nullable=False)
    method: Mapped[str] = mapped_column(sa.String(20), nullable=False)
    transaction_id: Mapped[str] = mapped_column(sa.String(128), nullable=False, unique=True)
    notes: Mapped[str | None] = mapped_column(sa.Text)
    payment_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class ProcessedPayment(Base):
    """Idempotency ledger: one row per externally unique transaction, never updated."""
    __tablename__ = "processed_payments"

    external_transaction_id: Mapped[str] = mapped_column(sa.String(128), primary_key=True)
    gateway_source: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    kind: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    resulting_entity_id: Mapped[str | None] = mapped_column(sa.String(36))
    applied_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
