"""
Shared fixtures: in-memory SQLite database, seeded tenant, HTTP client.
"""

import os

# Settings are read once at import time; point them at the test database first
os.environ.setdefault("APP_ENV", "testing")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ADMIN_API_KEY"] = "test_admin_key"
os.environ.pop("RESEND_API_KEY", None)
os.environ.pop("CARD_WEBHOOK_SECRET", None)
os.environ.pop("SECRETS_MANAGER_SECRET_ID", None)

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.db.base  # noqa: F401  registers models
from app.db.models.business import Business, Employee, Service
from app.db.models.user import User
from app.db.session import Base, get_session

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Monday 2030-01-07 08:00 in Maputo (UTC+2)
NOW = datetime(2030, 1, 7, 6, 0, tzinfo=timezone.utc)


def utc(day: int, hour: int, minute: int = 0) -> datetime:
    """A January 2030 instant given in Maputo wall time."""
    return datetime(2030, 1, day, hour - 2, minute, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def now():
    return NOW


@pytest_asyncio.fixture
async def business(db):
    biz = Business(
        name="Salão Estrela",
        email="owner@estrela.co.mz",
        timezone="Africa/Maputo",
        working_hours=None,  # default week: Mon-Fri 09:00-18:00
        balance=Decimal("0"),
        currency="MZN",
    )
    db.add(biz)
    await db.commit()
    return biz


@pytest_asyncio.fixture
async def service(db, business):
    svc = Service(business_id=business.id, name="Corte de cabelo", duration_minutes=60, price=Decimal("500"))
    db.add(svc)
    await db.commit()
    return svc


@pytest_asyncio.fixture
async def employees(db, business):
    business.auto_assign_employees = True
    staff = [
        Employee(business_id=business.id, name="Ana"),
        Employee(business_id=business.id, name="Bruno"),
    ]
    db.add_all(staff)
    await db.commit()
    return staff


@pytest_asyncio.fixture
async def user(db):
    u = User(email="maria@example.com", full_name="Maria Silva")
    db.add(u)
    await db.commit()
    return u


@pytest.fixture
def add_appointment(db, business, service):
    """Insert an appointment row directly, bypassing the writer."""
    from app.db.models.appointment import Appointment

    async def _add(start, status="confirmed", employee_id=None, minutes=None):
        appt = Appointment(
            business_id=business.id,
            service_id=service.id,
            employee_id=employee_id,
            client_ref="CLI-FIXTURE",
            client_name="Fixture",
            start_time=start,
            end_time=start + timedelta(minutes=minutes or service.duration_minutes),
            status=status,
        )
        db.add(appt)
        await db.commit()
        return appt

    return _add


@pytest_asyncio.fixture
async def client(session_factory):
    from app.main import app

    async def _session():
        async with session_factory() as session:
            try:
                yield session
            except BaseException:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = _session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "unit: Pure unit tests with no database")
    config.addinivalue_line("markers", "integration: Tests against the in-memory database")
