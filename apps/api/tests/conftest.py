"""
Shared fixtures.

Stateful tests run against an in-memory SQLite database (aiosqlite) created
from the ORM metadata. Twilio and object storage are replaced by the
in-process fakes in ``tests.fakes``.
"""

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core import rate_limit
from app.core.database import Base
from app.modules.telephony import models as telephony_models  # noqa: F401
from app.modules.telephony.tokens import WebhookTokenStore
from app.modules.users.models import User, UserRole
from tests.fakes import FakeClock, FakeProvider, FakeStorage


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine shared by every session in a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token_store(clock):
    return WebhookTokenStore(clock=clock, ttl=timedelta(hours=1))


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture(autouse=True)
def clear_rate_limits():
    """Each test starts with an empty in-memory rate limit window."""
    rate_limit._memory_store.clear()
    yield
    rate_limit._memory_store.clear()


@pytest_asyncio.fixture
async def user(db):
    """A school admin with no 2FA configured."""
    record = User(
        email="office@school.example",
        password_hash="not-a-real-hash",
        first_name="Office",
        last_name="Admin",
        role=UserRole.SCHOOL_ADMIN,
    )
    db.add(record)
    await db.commit()
    await db.refresh(record)
    return record
