# app/db/models/business.py

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Any

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.session import Base
from app.db.types import UTCDateTime, new_id, utcnow

class Business(Base):
    __tablename__ = "businesses"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    owner_id: Mapped[str | None] = mapped_column(sa.String(36), sa.ForeignKey("users.id", ondelete="SET NULL"))
    name: Mapped[str] = mapped_column(sa.String(160), nullable=False)
    email: Mapped[str | None] = mapped_column(sa.String(255))
    timezone: Mapped[str | None] = mapped_column(sa.String(64))
    # list of {"weekday"|"day", "is_open", "start_time", "end_time"}
    working_hours: Mapped[list[dict[str, Any]] | None] = mapped_column(sa.JSON)
    auto_assign_employees: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    balance: Mapped[Decimal] = mapped_column(sa.Numeric(14, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str | None] = mapped_column(sa.String(3))
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    services: Mapped[list["Service"]] = relationship(back_populates="business")
    employees: Mapped[list["Employee"]] = relationship(back_populates="business")


class Service(Base):
    __tablename__ = "services"
    __table_args__ = (
        sa.CheckConstraint("duration_minutes > 0", name="ck_services_duration_positive"),
        sa.CheckConstraint("price >= 0", name="ck_services_price_non_negative"),
        sa.Index("ix_services_business_id", "business_id"),
    )

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    business_id: Mapped[str] = mapped_column(sa.String(36), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(sa.String(160), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False, default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)

    business: Mapped[Business] = relationship(back_populates="services")


class Employee(Base):
    __tablename__ = "employees"
    __table_args__ = (
        sa.Index("ix_employees_business_id", "business_id"),
    )

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    business_id: Mapped[str] = mapped_column(sa.String(36), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(sa.String(120), nullable=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)

    business: Mapped[Business] = relationship(back_populates="employees")
