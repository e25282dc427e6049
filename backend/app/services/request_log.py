"""
Fire-and-forget audit logging of authenticated requests.

Each accepted request schedules one detached asyncio task that inserts an
api_request_logs row with its own session. The task is its own error
boundary: any failure is logged and dropped, never propagated to the
request that spawned it, and never retried.

Pending tasks are held in a module-level set so the event loop keeps a
strong reference until they finish; drain_pending_logs() awaits them on
shutdown (and in tests).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.request_log import ApiRequestLog

logger = logging.getLogger(__name__)

_pending: set[asyncio.Task[None]] = set()


@dataclass(frozen=True, slots=True)
class RequestLogEntry:
    """Everything recorded about one authenticated request."""

    key_id: str
    endpoint: str
    method: str
    status_code: int
    response_time_ms: int | None = None
    request_size: int | None = None
    response_size: int | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    referer: str | None = None


async def write_request_log(
    session_factory: async_sessionmaker[AsyncSession],
    entry: RequestLogEntry,
) -> None:
    """Insert one log row. Errors are logged and swallowed."""
    try:
        async with session_factory() as session:
            session.add(ApiRequestLog(**asdict(entry)))
            await session.commit()
    except Exception:
        logger.exception(
            "Failed to log request %s %s for %s",
            entry.method, entry.endpoint, entry.key_id,
        )


def schedule_request_log(
    session_factory: async_sessionmaker[AsyncSession],
    entry: RequestLogEntry,
) -> asyncio.Task[None]:
    """Start writing `entry` in the background and return immediately."""
    task = asyncio.create_task(write_request_log(session_factory, entry))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


def pending_log_count() -> int:
    return len(_pending)


async def drain_pending_logs(timeout: float = 5.0) -> None:
    """Wait (bounded) for in-flight log writes to finish."""
    if not _pending:
        return
    _, not_done = await asyncio.wait(set(_pending), timeout=timeout)
    if not_done:
        logger.warning("%d request log write(s) still pending at shutdown", len(not_done))
