# app/schemas/subscription.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CheckoutRequest(BaseModel):
    user_id: str
    plan_name: str = Field(..., min_length=1)
    price: Decimal = Field(Decimal("0"), ge=0)
    is_trial: bool = False


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    plan_name: str
    price: Decimal
    status: str
    is_trial: bool
    trial_ends_at: Optional[datetime] = None
    renewal_at: Optional[datetime] = None


class SweepOut(BaseModel):
    expired: list[str]
    reminded: list[str]
