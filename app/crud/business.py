# app/crud/business.py

from __future__ import annotations
from typing import Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.business import Business, Employee, Service


async def get_business(db: AsyncSession, business_id: str) -> Optional[Business]:
    res = await db.execute(sa.select(Business).where(Business.id == business_id))
    return res.scalar_one_or_none()


async def get_service(db: AsyncSession, service_id: str) -> Optional[Service]:
    res = await db.execute(sa.select(Service).where(Service.id == service_id))
    return res.scalar_one_or_none()


async def list_active_employees(db: AsyncSession, business_id: str) -> Sequence[Employee]:
    # Ordered so that assignment is deterministic
    res = await db.execute(
        sa.select(Employee)
        .where(Employee.business_id == business_id, Employee.is_active.is_(True))
        .order_by(Employee.name.asc(), Employee.id.asc())
    )
    return res.scalars().all()


async def get_employee(db: AsyncSession, employee_id: str) -> Optional[Employee]:
    res = await db.execute(sa.select(Employee).where(Employee.id == employee_id))
    return res.scalar_one_or_none()
