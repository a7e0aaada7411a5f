# app/db/models/appointment.py

from __future__ import annotations
from datetime import datetime
import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.db.session import Base
from app.db.types import UTCDateTime, new_id, utcnow

PENDING = "pending"
CONFIRMED = "confirmed"
COMPLETED = "completed"
CANCELLED = "cancelled"
REJECTED = "rejected"

STATUSES = (PENDING, CONFIRMED, COMPLETED, CANCELLED, REJECTED)
# Statuses that occupy their interval
BLOCKING_STATUSES = (PENDING, CONFIRMED, COMPLETED)

class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        sa.CheckConstraint("end_time > start_time", name="ck_appointments_interval"),
        sa.Index("ix_appointments_business_start", "business_id", "start_time"),
        sa.Index("ix_appointments_employee_id", "employee_id"),
    )

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    business_id: Mapped[str] = mapped_column(sa.String(36), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    service_id: Mapped[str] = mapped_column(sa.String(36), sa.ForeignKey("services.id"), nullable=False)
    employee_id: Mapped[str | None] = mapped_column(sa.String(36), sa.ForeignKey("employees.id", ondelete="SET NULL"))
    user_id: Mapped[str | None] = mapped_column(sa.String(36), sa.ForeignKey("users.id", ondelete="SET NULL"))

    client_ref: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    client_name: Mapped[str | None] = mapped_column(sa.String(120))
    client_email: Mapped[str | None] = mapped_column(sa.String(255))
    client_whatsapp: Mapped[str | None] = mapped_column(sa.String(32))

    # Stored as timezone-aware UTC
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default=PENDING)
    notes: Mapped[str | None] = mapped_column(sa.Text)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class AppointmentStatusChange(Base):
    """Audit trail of status changes; admin overrides carry is_override=True."""
    __tablename__ = "appointment_status_changes"
    __table_args__ = (
        sa.Index("ix_status_changes_appointment_id", "appointment_id"),
    )

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    appointment_id: Mapped[str] = mapped_column(sa.String(36), sa.ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False)
    from_status: Mapped[str | None] = mapped_column(sa.String(16))
    to_status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    is_override: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    actor: Mapped[str | None] = mapped_column(sa.String(120))
    reason: Mapped[str | None] = mapped_column(sa.Text)
    changed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
