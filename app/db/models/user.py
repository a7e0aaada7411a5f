# app/db/models/user.py

from __future__ import annotations
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column, relationship
import sqlalchemy as sa

from app.db.session import Base
from app.db.types import UTCDateTime, new_id, utcnow

class User(Base):
    """Profile mirror of an identity-provider account."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(sa.String(255), nullable=False, unique=True)
    full_name: Mapped[str | None] = mapped_column(sa.String(120))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    subscriptions: Mapped[list["Subscription"]] = relationship(back_populates="user")
