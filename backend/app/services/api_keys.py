"""
API key service — validation pipeline and administrative lifecycle.

Validation order (first failure wins):
  1. Hash the secret, look up by key_hash        → "Invalid API key"
  2. is_active                                    → "API key is deactivated"
  3. expires_at in the past                       → "API key has expired"
  4. IP allow-list (when an IP is known)          → "IP address not allowed"
  5. Domain allow-list (when an Origin is sent)   → "Domain not allowed"
  6. Daily / monthly rollover (quota.reset_if_due)
  7. Daily limit on the refreshed record          → "Daily limit exceeded"
  8. Monthly limit                                → "Monthly limit exceeded"
  9. Valid: remaining = limit - usage (None when unlimited)

Cheap checks come first so rejected keys never pay for the rollover
write. Database errors are NOT caught here: the caller decides how a
failed lookup surfaces (the middleware turns it into a 500).

The admin functions (create / list / get / update / revoke / delete /
request_stats) back the `scripts.api_keys` CLI.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.hashing import generate_key_material, hash_api_key
from app.auth.errors import APIKeyNotFoundError
from app.auth.policy import is_ip_allowed, is_origin_allowed
from app.core.config import settings
from app.models.api_key import ApiKey
from app.models.request_log import ApiRequestLog
from app.schemas.api_key import ApiKeyCreate, ApiKeyUpdate, EndpointStatOut
from app.services.quota import REASON_DAILY, REASON_MONTHLY, remaining, reset_if_due
from app.utils.datetime import (
    start_of_next_day,
    start_of_next_month,
    to_naive_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

REASON_INVALID = "Invalid API key"
REASON_INACTIVE = "API key is deactivated"
REASON_EXPIRED = "API key has expired"
REASON_IP = "IP address not allowed"
REASON_DOMAIN = "Domain not allowed"


@dataclass(frozen=True, slots=True)
class KeyVerdict:
    """Outcome of validating one secret.

    Attributes:
        valid:             Whether the request may proceed.
        api_key:           The (post-rollover) record, when one was found.
        reason:            Human-readable rejection reason; None when valid.
        remaining_daily:   daily_limit - daily_usage, None when unlimited.
        remaining_monthly: monthly_limit - monthly_usage, None when unlimited.
    """

    valid: bool
    api_key: ApiKey | None = None
    reason: str | None = None
    remaining_daily: int | None = None
    remaining_monthly: int | None = None

    @classmethod
    def reject(cls, reason: str, api_key: ApiKey | None = None) -> KeyVerdict:
        return cls(valid=False, api_key=api_key, reason=reason)


# ── Validation ──────────────────────────────────────────────
async def validate_api_key(
    session: AsyncSession,
    secret: str,
    ip_address: str | None = None,
    origin: str | None = None,
    now: datetime.datetime | None = None,
) -> KeyVerdict:
    """Run the full validation pipeline for a raw secret."""
    now = now or utcnow()

    # ── 1. Hash and look up ─────────────────────────────────
    stmt = select(ApiKey).where(ApiKey.key_hash == hash_api_key(secret))
    result = await session.execute(stmt)
    api_key = result.scalar_one_or_none()

    if api_key is None:
        return KeyVerdict.reject(REASON_INVALID)

    # ── 2-3. Status and expiry ──────────────────────────────
    if not api_key.is_active:
        return KeyVerdict.reject(REASON_INACTIVE, api_key)

    if api_key.expires_at is not None and now > api_key.expires_at:
        return KeyVerdict.reject(REASON_EXPIRED, api_key)

    # ── 4-5. Access policy ──────────────────────────────────
    if ip_address and api_key.allowed_ips is not None:
        if not is_ip_allowed(api_key.allowed_ips, ip_address):
            return KeyVerdict.reject(REASON_IP, api_key)

    if origin and api_key.allowed_domains is not None:
        if not is_origin_allowed(api_key.allowed_domains, origin):
            return KeyVerdict.reject(REASON_DOMAIN, api_key)

    # ── 6. Rollover (refreshes api_key when anything was due) ─
    await reset_if_due(session, api_key, now)

    # ── 7-8. Limits ─────────────────────────────────────────
    if api_key.daily_limit is not None and api_key.daily_usage >= api_key.daily_limit:
        return KeyVerdict.reject(REASON_DAILY, api_key)

    if api_key.monthly_limit is not None and api_key.monthly_usage >= api_key.monthly_limit:
        return KeyVerdict.reject(REASON_MONTHLY, api_key)

    # ── 9. Accept ───────────────────────────────────────────
    return KeyVerdict(
        valid=True,
        api_key=api_key,
        remaining_daily=remaining(api_key.daily_limit, api_key.daily_usage),
        remaining_monthly=remaining(api_key.monthly_limit, api_key.monthly_usage),
    )


# ── Administration ──────────────────────────────────────────
async def create_api_key(
    session: AsyncSession,
    data: ApiKeyCreate,
    now: datetime.datetime | None = None,
) -> tuple[ApiKey, str]:
    """
    Issue a new key.

    Returns:
        (api_key, secret) — the secret is returned exactly once and is
        never persisted; only its hash is stored.
    """
    now = now or utcnow()
    material = generate_key_material()

    daily_limit = (
        data.daily_limit if "daily_limit" in data.model_fields_set
        else settings.DEFAULT_DAILY_LIMIT
    )
    monthly_limit = (
        data.monthly_limit if "monthly_limit" in data.model_fields_set
        else settings.DEFAULT_MONTHLY_LIMIT
    )

    api_key = ApiKey(
        key_id=material.key_id,
        key_hash=material.key_hash,
        name=data.name,
        description=data.description,
        daily_limit=daily_limit,
        monthly_limit=monthly_limit,
        daily_usage=0,
        monthly_usage=0,
        total_usage=0,
        allowed_domains=data.allowed_domains,
        allowed_ips=data.allowed_ips,
        is_active=True,
        expires_at=to_naive_utc(data.expires_at) if data.expires_at else None,
        daily_reset_at=start_of_next_day(now),
        monthly_reset_at=start_of_next_month(now),
        created_at=now,
        updated_at=now,
        created_by=data.created_by,
    )

    try:
        session.add(api_key)
        await session.commit()
        await session.refresh(api_key)
    except Exception:
        await session.rollback()
        logger.exception("Failed to create API key %r", data.name)
        raise

    logger.info("Created API key %s (%s)", api_key.key_id, api_key.name)
    return api_key, material.secret


async def list_api_keys(
    session: AsyncSession,
    active_only: bool = False,
) -> list[ApiKey]:
    """All keys ordered by creation time."""
    stmt = select(ApiKey).order_by(ApiKey.created_at, ApiKey.id)
    if active_only:
        stmt = stmt.where(ApiKey.is_active.is_(True))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_api_key(session: AsyncSession, key_id: str) -> ApiKey | None:
    stmt = select(ApiKey).where(ApiKey.key_id == key_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def _require_api_key(session: AsyncSession, key_id: str) -> ApiKey:
    api_key = await get_api_key(session, key_id)
    if api_key is None:
        raise APIKeyNotFoundError(key_id)
    return api_key


async def update_api_key(
    session: AsyncSession,
    key_id: str,
    updates: ApiKeyUpdate,
    now: datetime.datetime | None = None,
) -> ApiKey:
    """
    Apply the explicitly-set fields of `updates`.

    Raises:
        APIKeyNotFoundError: If no key has this key_id.
    """
    api_key = await _require_api_key(session, key_id)

    changes = updates.model_dump(exclude_unset=True)
    if changes.get("expires_at") is not None:
        changes["expires_at"] = to_naive_utc(changes["expires_at"])

    for field, value in changes.items():
        setattr(api_key, field, value)
    api_key.updated_at = now or utcnow()

    await session.commit()
    await session.refresh(api_key)

    logger.info("Updated API key %s: %s", key_id, ", ".join(sorted(changes)) or "-")
    return api_key


async def revoke_api_key(session: AsyncSession, key_id: str) -> ApiKey:
    """Deactivate a key without deleting it (keeps the audit trail)."""
    return await update_api_key(session, key_id, ApiKeyUpdate(is_active=False))


async def delete_api_key(session: AsyncSession, key_id: str) -> bool:
    """
    Permanently delete a key and (via ON DELETE CASCADE) its request logs.

    Returns False if no key had this key_id.
    """
    # Log rows are removed explicitly as well so backends without
    # enforced foreign keys (SQLite default) behave the same.
    await session.execute(delete(ApiRequestLog).where(ApiRequestLog.key_id == key_id))
    result = await session.execute(delete(ApiKey).where(ApiKey.key_id == key_id))
    await session.commit()

    deleted = result.rowcount > 0
    if deleted:
        logger.info("Deleted API key %s", key_id)
    return deleted


async def request_stats(session: AsyncSession, key_id: str) -> list[EndpointStatOut]:
    """
    Per-endpoint request counts for one key, busiest first.

    SQL: SELECT endpoint, COUNT(*), AVG(response_time_ms),
                SUM(CASE WHEN status_code >= 400 THEN 1 ELSE 0 END)
         FROM api_request_logs WHERE key_id = :key_id GROUP BY endpoint
    """
    request_count = func.count().label("request_count")
    stmt = (
        select(
            ApiRequestLog.endpoint,
            request_count,
            func.avg(ApiRequestLog.response_time_ms).label("avg_response_time_ms"),
            func.sum(
                case((ApiRequestLog.status_code >= 400, 1), else_=0)
            ).label("error_count"),
        )
        .where(ApiRequestLog.key_id == key_id)
        .group_by(ApiRequestLog.endpoint)
        .order_by(request_count.desc(), ApiRequestLog.endpoint)
    )
    result = await session.execute(stmt)
    return [EndpointStatOut.model_validate(row, from_attributes=True) for row in result.all()]
