"""
Shared fixtures.

The application reads DATABASE_URL at import time, so it is pointed at a
throwaway SQLite file before anything under `app` is imported. Every
test that asks for `db_session` (or `client`) gets freshly created tables.
"""

from __future__ import annotations

import os
import tempfile

_TEST_DB_DIR = tempfile.mkdtemp(prefix="lk21-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB_DIR}/test.db"

import datetime  # noqa: E402
from collections.abc import AsyncIterator  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

import app.models.api_key  # noqa: E402,F401
import app.models.request_log  # noqa: E402,F401
from app.core.database import Base, async_session_factory, engine  # noqa: E402
from app.models.api_key import ApiKey  # noqa: E402
from app.schemas.api_key import ApiKeyCreate  # noqa: E402
from app.services.api_keys import create_api_key  # noqa: E402
from app.services.request_log import drain_pending_logs  # noqa: E402


@pytest.fixture
async def database() -> AsyncIterator[None]:
    """Create all tables, and tear them down (and the pool) afterwards."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield

    await drain_pending_logs()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def db_session(database: None) -> AsyncIterator[AsyncSession]:
    async with async_session_factory() as session:
        yield session


@pytest.fixture
def make_key(db_session: AsyncSession):
    """Factory: create a key and return (ApiKey, secret)."""

    async def _make(name: str = "test key", **fields) -> tuple[ApiKey, str]:
        return await create_api_key(db_session, ApiKeyCreate(name=name, **fields))

    return _make


@pytest.fixture
async def client(database: None) -> AsyncIterator[httpx.AsyncClient]:
    """HTTP client bound to the real application (no network)."""
    from app.main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
def fixed_now() -> datetime.datetime:
    """A naive-UTC instant well inside a month, for deterministic boundaries."""
    return datetime.datetime(2026, 3, 14, 15, 9, 26)
