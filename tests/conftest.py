"""
Shared test setup.

Settings are read once at import time, so the environment is prepared
here before any relaydesk module is imported.
"""

import os

from cryptography.fernet import Fernet

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CREDENTIAL_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ["ADMIN_BACKEND_URL"] = ""
os.environ["ADMIN_BACKEND_SERVICE_ROLE_KEY"] = ""
os.environ["ADMIN_API_KEY"] = ""

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from relaydesk.db.models import Base


@pytest_asyncio.fixture
async def session_factory():
    """A fresh in-memory registry database per test"""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
