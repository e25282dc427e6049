"""
Async database engine, session factory, and ORM base.

  • Production runs on PostgreSQL (asyncpg); local runs and the test suite
    may point DATABASE_URL at SQLite (aiosqlite). On SQLite, foreign keys
    are switched on per connection so request logs cascade with their key.
  • There is no request-scoped session dependency: the auth middleware,
    the audit-log writer and the CLI each open short-lived sessions from
    async_session_factory.
  • The declarative Base is shared across all models so Alembic can
    auto-detect schema changes from a single metadata object.
"""

import logging

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings

logger = logging.getLogger(__name__)


def _configure_sqlite(dbapi_connection, _record) -> None:  # type: ignore[no-untyped-def]
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    # concurrent counter updates wait for the write lock instead of failing
    cursor.execute("PRAGMA busy_timeout=10000")
    cursor.close()


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for `url` with backend-specific setup."""
    engine = create_async_engine(url, echo=echo, pool_pre_ping=True)
    if make_url(url).get_backend_name() == "sqlite":
        event.listen(engine.sync_engine, "connect", _configure_sqlite)
    return engine


# ── Engine ──────────────────────────────────────────────────
# echo: SQL logging, only in debug mode
engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

# ── Session factory ─────────────────────────────────────────
async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,  # rows stay readable after the session closes
)


# ── ORM Base ────────────────────────────────────────────────
class Base(DeclarativeBase):
    """Shared declarative base for all SQLAlchemy models."""


async def ping_database() -> bool:
    """Return True if a trivial query succeeds. Never raises."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        logger.debug("Database ping failed", exc_info=True)
        return False
    return True
