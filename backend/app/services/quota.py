"""
Quota ledger — per-key daily / monthly / total usage counters.

Counters live on the api_keys row itself. Every mutation is a single
server-side UPDATE so concurrent requests for the same key never lose
increments and never overshoot a limit:

  • increment_usage — `usage = usage + 1` evaluated by the database, and
    only for rows still under both limits (the limit check is part of the
    WHERE clause). The statement is also rollover-aware: if a window
    boundary passed between validation and increment, the same UPDATE
    writes 1 and advances the boundary (CASE expression), so reset +
    increment is one atomic operation. RETURNING hands back the new
    counters, which are what the rate-limit headers report.
  • reset_if_due — conditional UPDATE guarded by the reset timestamp we
    observed (`WHERE daily_reset_at = :observed`). Two requests racing
    at a boundary both issue it; only the first matches a row, the
    second is a no-op. Re-running with the same `now` changes nothing.

Time convention: naive UTC everywhere (see app.utils.datetime).
No quota state is cached in-process between requests.
"""

from __future__ import annotations

import datetime
import logging
from typing import NamedTuple

from sqlalchemy import case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.errors import QuotaExceededError
from app.models.api_key import ApiKey
from app.utils.datetime import start_of_next_day, start_of_next_month, utcnow

logger = logging.getLogger(__name__)

REASON_DAILY = "Daily limit exceeded"
REASON_MONTHLY = "Monthly limit exceeded"


class UsageTally(NamedTuple):
    """Window counters right after a successful increment."""

    daily_usage: int
    monthly_usage: int


def is_daily_reset_due(api_key: ApiKey, now: datetime.datetime) -> bool:
    """Rollover is inclusive of the boundary instant."""
    return now >= api_key.daily_reset_at


def is_monthly_reset_due(api_key: ApiKey, now: datetime.datetime) -> bool:
    return now >= api_key.monthly_reset_at


def remaining(limit: int | None, usage: int) -> int | None:
    """Requests left in a window, or None when the window is unlimited."""
    if limit is None:
        return None
    return max(limit - usage, 0)


async def reset_if_due(
    session: AsyncSession,
    api_key: ApiKey,
    now: datetime.datetime | None = None,
) -> bool:
    """
    Roll over the daily and/or monthly window if its boundary has passed.

    The two windows are checked independently. Commits and refreshes
    `api_key` from the database when anything was due, so the caller
    sees the post-reset counters (including a concurrent winner's reset).

    Returns True if this call performed at least one reset.
    """
    now = now or utcnow()
    daily_due = is_daily_reset_due(api_key, now)
    monthly_due = is_monthly_reset_due(api_key, now)

    if not (daily_due or monthly_due):
        return False

    applied = False

    if daily_due:
        stmt = (
            update(ApiKey)
            .where(
                ApiKey.id == api_key.id,
                ApiKey.daily_reset_at == api_key.daily_reset_at,
            )
            .values(
                daily_usage=0,
                daily_reset_at=start_of_next_day(now),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        applied = applied or result.rowcount > 0

    if monthly_due:
        stmt = (
            update(ApiKey)
            .where(
                ApiKey.id == api_key.id,
                ApiKey.monthly_reset_at == api_key.monthly_reset_at,
            )
            .values(
                monthly_usage=0,
                monthly_reset_at=start_of_next_month(now),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        applied = applied or result.rowcount > 0

    await session.commit()
    await session.refresh(api_key)

    if applied:
        logger.info(
            "Usage rollover for %s (daily=%s monthly=%s)",
            api_key.key_id, daily_due, monthly_due,
        )
    return applied


async def _exhausted_window(
    session: AsyncSession,
    key_id: str,
    now: datetime.datetime,
) -> str | None:
    """Which limit keeps `key_id` from being counted, or None if neither does."""
    stmt = select(
        ApiKey.daily_limit, ApiKey.daily_usage, ApiKey.daily_reset_at,
        ApiKey.monthly_limit, ApiKey.monthly_usage, ApiKey.monthly_reset_at,
    ).where(ApiKey.key_id == key_id)
    row = (await session.execute(stmt)).one_or_none()
    if row is None:
        return None

    if (
        row.daily_limit is not None
        and now < row.daily_reset_at
        and row.daily_usage >= row.daily_limit
    ):
        return REASON_DAILY
    if (
        row.monthly_limit is not None
        and now < row.monthly_reset_at
        and row.monthly_usage >= row.monthly_limit
    ):
        return REASON_MONTHLY
    return None


async def increment_usage(
    session: AsyncSession,
    key_id: str,
    ip_address: str | None = None,
    now: datetime.datetime | None = None,
) -> UsageTally | None:
    """
    Atomically count one request against a key, if it is still under its limits.

    Database failures are logged and swallowed: the request has already
    been authorized, so a lost increment must never turn into an error
    response. No retry.

    Returns:
        The post-increment counters, or None when nothing was counted
        because of a failure or because the key no longer exists.

    Raises:
        QuotaExceededError: A concurrent request used up the daily or
            monthly allowance after this one was validated.
    """
    now = now or utcnow()
    daily_due = ApiKey.daily_reset_at <= now
    monthly_due = ApiKey.monthly_reset_at <= now

    stmt = (
        update(ApiKey)
        .where(
            ApiKey.key_id == key_id,
            or_(
                ApiKey.daily_limit.is_(None),
                daily_due,
                ApiKey.daily_usage < ApiKey.daily_limit,
            ),
            or_(
                ApiKey.monthly_limit.is_(None),
                monthly_due,
                ApiKey.monthly_usage < ApiKey.monthly_limit,
            ),
        )
        .values(
            daily_usage=case((daily_due, 1), else_=ApiKey.daily_usage + 1),
            daily_reset_at=case(
                (daily_due, start_of_next_day(now)), else_=ApiKey.daily_reset_at,
            ),
            monthly_usage=case((monthly_due, 1), else_=ApiKey.monthly_usage + 1),
            monthly_reset_at=case(
                (monthly_due, start_of_next_month(now)), else_=ApiKey.monthly_reset_at,
            ),
            total_usage=ApiKey.total_usage + 1,
            last_used_at=now,
            last_used_ip=ip_address,
            updated_at=now,
        )
        .returning(ApiKey.daily_usage, ApiKey.monthly_usage)
        .execution_options(synchronize_session=False)
    )

    exhausted: str | None = None
    try:
        row = (await session.execute(stmt)).one_or_none()
        await session.commit()
        if row is None:
            exhausted = await _exhausted_window(session, key_id, now)
    except Exception:
        await session.rollback()
        logger.exception("Failed to increment usage for %s", key_id)
        return None

    if row is not None:
        return UsageTally(daily_usage=row.daily_usage, monthly_usage=row.monthly_usage)

    if exhausted is not None:
        logger.info("Usage increment refused for %s: %s", key_id, exhausted)
        raise QuotaExceededError(exhausted)

    logger.warning("Usage increment matched no key: %s", key_id)
    return None
