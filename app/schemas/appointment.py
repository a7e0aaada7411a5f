# app/schemas/appointment.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BookingRequest(BaseModel):
    business_id: str
    service_id: str
    start_time: datetime
    client_ref: Optional[str] = None
    client_name: Optional[str] = Field(None, max_length=120)
    client_email: Optional[str] = None
    client_whatsapp: Optional[str] = None
    user_id: Optional[str] = None
    employee_id: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("start_time")
    @classmethod
    def _require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("start_time must include a timezone offset")
        return v


class RescheduleRequest(BaseModel):
    start_time: datetime

    @field_validator("start_time")
    @classmethod
    def _require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("start_time must include a timezone offset")
        return v


class StatusChangeRequest(BaseModel):
    status: str
    actor: Optional[str] = None


class StatusOverrideRequest(BaseModel):
    status: str
    actor: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class AppointmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    business_id: str
    service_id: str
    employee_id: Optional[str] = None
    client_ref: str
    client_name: Optional[str] = None
    start_time: datetime
    end_time: datetime
    status: str


class TimeSlotOut(BaseModel):
    start_time: datetime
    end_time: datetime
    available: bool
    local_time: str
