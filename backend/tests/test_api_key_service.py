"""Tests for the validation pipeline and key administration."""

from __future__ import annotations

import datetime

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select, update

from app.auth.errors import APIKeyNotFoundError
from app.auth.hashing import hash_api_key
from app.core.config import settings
from app.models.api_key import ApiKey
from app.models.request_log import ApiRequestLog
from app.schemas.api_key import ApiKeyCreate, ApiKeyUpdate
from app.services.api_keys import (
    REASON_DAILY,
    REASON_DOMAIN,
    REASON_EXPIRED,
    REASON_INACTIVE,
    REASON_INVALID,
    REASON_IP,
    REASON_MONTHLY,
    create_api_key,
    delete_api_key,
    get_api_key,
    list_api_keys,
    request_stats,
    revoke_api_key,
    update_api_key,
    validate_api_key,
)


async def _set(session, api_key: ApiKey, **values) -> None:
    await session.execute(update(ApiKey).where(ApiKey.id == api_key.id).values(**values))
    await session.commit()
    await session.refresh(api_key)


# ── Creation ────────────────────────────────────────────────
class TestCreateApiKey:
    async def test_stores_hash_not_secret(self, db_session, fixed_now):
        api_key, secret = await create_api_key(db_session, ApiKeyCreate(name="a"), now=fixed_now)

        assert api_key.key_hash == hash_api_key(secret)
        assert secret not in repr(api_key)
        assert api_key.is_active is True
        assert (api_key.daily_usage, api_key.monthly_usage, api_key.total_usage) == (0, 0, 0)
        assert api_key.daily_reset_at == datetime.datetime(2026, 3, 15)
        assert api_key.monthly_reset_at == datetime.datetime(2026, 4, 1)
        assert api_key.created_by == "CLI"

    async def test_default_limits_apply_when_omitted(self, db_session):
        api_key, _ = await create_api_key(db_session, ApiKeyCreate(name="a"))
        assert api_key.daily_limit == settings.DEFAULT_DAILY_LIMIT
        assert api_key.monthly_limit == settings.DEFAULT_MONTHLY_LIMIT

    async def test_explicit_none_means_unlimited(self, db_session):
        api_key, _ = await create_api_key(
            db_session, ApiKeyCreate(name="a", daily_limit=None, monthly_limit=None),
        )
        assert api_key.daily_limit is None
        assert api_key.monthly_limit is None

    async def test_aware_expiry_stored_as_naive_utc(self, db_session):
        tz = datetime.timezone(datetime.timedelta(hours=7))
        api_key, _ = await create_api_key(
            db_session,
            ApiKeyCreate(name="a", expires_at=datetime.datetime(2030, 1, 1, 7, 0, tzinfo=tz)),
        )
        assert api_key.expires_at == datetime.datetime(2030, 1, 1, 0, 0)

    def test_limits_must_be_positive(self):
        with pytest.raises(ValidationError):
            ApiKeyCreate(name="a", daily_limit=0)

    def test_patterns_are_stripped(self):
        data = ApiKeyCreate(name="a", allowed_domains=[" example.com ", ""])
        assert data.allowed_domains == ["example.com"]


# ── Validation ──────────────────────────────────────────────
class TestValidateApiKey:
    async def test_valid_key(self, db_session, fixed_now):
        api_key, secret = await create_api_key(
            db_session, ApiKeyCreate(name="a", daily_limit=5, monthly_limit=50), now=fixed_now,
        )
        verdict = await validate_api_key(db_session, secret, now=fixed_now)

        assert verdict.valid
        assert verdict.reason is None
        assert verdict.api_key.key_id == api_key.key_id
        assert verdict.remaining_daily == 5
        assert verdict.remaining_monthly == 50

    async def test_unlimited_remaining_is_none(self, db_session, fixed_now):
        _, secret = await create_api_key(
            db_session, ApiKeyCreate(name="a", daily_limit=None, monthly_limit=None), now=fixed_now,
        )
        verdict = await validate_api_key(db_session, secret, now=fixed_now)

        assert verdict.valid
        assert verdict.remaining_daily is None
        assert verdict.remaining_monthly is None

    async def test_unknown_secret(self, db_session, fixed_now):
        verdict = await validate_api_key(db_session, "sk_nope", now=fixed_now)
        assert not verdict.valid
        assert verdict.reason == REASON_INVALID
        assert verdict.api_key is None

    async def test_inactive(self, db_session, fixed_now, make_key):
        api_key, secret = await make_key()
        await _set(db_session, api_key, is_active=False)

        verdict = await validate_api_key(db_session, secret, now=fixed_now)
        assert verdict.reason == REASON_INACTIVE

    async def test_expired(self, db_session, fixed_now, make_key):
        _, secret = await make_key(expires_at=fixed_now - datetime.timedelta(seconds=1))

        verdict = await validate_api_key(db_session, secret, now=fixed_now)
        assert verdict.reason == REASON_EXPIRED

    async def test_expiry_instant_itself_is_still_valid(self, db_session, fixed_now, make_key):
        _, secret = await make_key(expires_at=fixed_now)

        verdict = await validate_api_key(db_session, secret, now=fixed_now)
        assert verdict.valid

    async def test_ip_not_allowed(self, db_session, fixed_now, make_key):
        _, secret = await make_key(allowed_ips=["10.0.0.1"])

        verdict = await validate_api_key(db_session, secret, ip_address="10.0.0.2", now=fixed_now)
        assert verdict.reason == REASON_IP

    async def test_ip_list_ignored_without_client_ip(self, db_session, fixed_now, make_key):
        _, secret = await make_key(allowed_ips=["10.0.0.1"])

        verdict = await validate_api_key(db_session, secret, now=fixed_now)
        assert verdict.valid

    async def test_domain_not_allowed(self, db_session, fixed_now, make_key):
        _, secret = await make_key(allowed_domains=["*.example.com"])

        verdict = await validate_api_key(
            db_session, secret, origin="https://evil.test", now=fixed_now,
        )
        assert verdict.reason == REASON_DOMAIN

    async def test_domain_allowed(self, db_session, fixed_now, make_key):
        _, secret = await make_key(allowed_domains=["*.example.com"])

        verdict = await validate_api_key(
            db_session, secret, origin="https://api.example.com", now=fixed_now,
        )
        assert verdict.valid

    async def test_malformed_origin_is_denied(self, db_session, fixed_now, make_key):
        _, secret = await make_key(allowed_domains=["example.com"])

        verdict = await validate_api_key(db_session, secret, origin="null", now=fixed_now)
        assert verdict.reason == REASON_DOMAIN

    async def test_daily_limit_exceeded(self, db_session, fixed_now):
        api_key, secret = await create_api_key(
            db_session, ApiKeyCreate(name="a", daily_limit=3), now=fixed_now,
        )
        await _set(db_session, api_key, daily_usage=3)

        verdict = await validate_api_key(db_session, secret, now=fixed_now)
        assert verdict.reason == REASON_DAILY

    async def test_monthly_limit_exceeded(self, db_session, fixed_now):
        api_key, secret = await create_api_key(
            db_session, ApiKeyCreate(name="a", daily_limit=None, monthly_limit=3), now=fixed_now,
        )
        await _set(db_session, api_key, monthly_usage=3)

        verdict = await validate_api_key(db_session, secret, now=fixed_now)
        assert verdict.reason == REASON_MONTHLY

    async def test_cheaper_checks_win_over_limits(self, db_session, fixed_now):
        api_key, secret = await create_api_key(
            db_session, ApiKeyCreate(name="a", daily_limit=1), now=fixed_now,
        )
        await _set(db_session, api_key, daily_usage=1, is_active=False)

        verdict = await validate_api_key(db_session, secret, now=fixed_now)
        assert verdict.reason == REASON_INACTIVE

    async def test_past_reset_is_applied_before_limit_check(self, db_session, fixed_now):
        """A key exhausted yesterday is usable again once the day rolls over."""
        api_key, secret = await create_api_key(
            db_session, ApiKeyCreate(name="a", daily_limit=2), now=fixed_now,
        )
        await _set(db_session, api_key, daily_usage=2)

        tomorrow = fixed_now + datetime.timedelta(days=1)
        verdict = await validate_api_key(db_session, secret, now=tomorrow)

        assert verdict.valid
        assert verdict.remaining_daily == 2
        await db_session.refresh(api_key)
        assert api_key.daily_usage == 0
        assert api_key.daily_reset_at == datetime.datetime(2026, 3, 16)


# ── Administration ──────────────────────────────────────────
class TestAdministration:
    async def test_list_and_get(self, db_session, make_key):
        first, _ = await make_key("one")
        second, _ = await make_key("two")
        await revoke_api_key(db_session, second.key_id)

        assert [k.key_id for k in await list_api_keys(db_session)] == [first.key_id, second.key_id]
        assert [k.key_id for k in await list_api_keys(db_session, active_only=True)] == [first.key_id]
        assert (await get_api_key(db_session, first.key_id)).name == "one"
        assert await get_api_key(db_session, "lk21_missing") is None

    async def test_update_only_touches_set_fields(self, db_session, make_key):
        api_key, _ = await make_key("before", description="keep me", daily_limit=10)

        updated = await update_api_key(db_session, api_key.key_id, ApiKeyUpdate(daily_limit=20))

        assert updated.daily_limit == 20
        assert updated.name == "before"
        assert updated.description == "keep me"

    async def test_update_can_clear_nullable_fields(self, db_session, make_key):
        api_key, _ = await make_key(description="x", allowed_ips=["10.0.0.1"])

        updated = await update_api_key(
            db_session, api_key.key_id, ApiKeyUpdate(description=None, allowed_ips=None),
        )
        assert updated.description is None
        assert updated.allowed_ips is None

    def test_update_rejects_null_name(self):
        with pytest.raises(ValidationError):
            ApiKeyUpdate(name=None)

    async def test_update_unknown_key(self, db_session):
        with pytest.raises(APIKeyNotFoundError) as exc_info:
            await update_api_key(db_session, "lk21_missing", ApiKeyUpdate(name="x"))
        assert exc_info.value.key_id == "lk21_missing"

    async def test_deactivated_key_is_rejected_afterwards(self, db_session, fixed_now, make_key):
        api_key, secret = await make_key()
        assert (await validate_api_key(db_session, secret, now=fixed_now)).valid

        await update_api_key(db_session, api_key.key_id, ApiKeyUpdate(is_active=False))

        verdict = await validate_api_key(db_session, secret, now=fixed_now)
        assert verdict.reason == REASON_INACTIVE

    async def test_delete_removes_key_and_logs(self, db_session, make_key):
        api_key, _ = await make_key()
        db_session.add(ApiRequestLog(key_id=api_key.key_id, endpoint="/x", method="GET", status_code=200))
        await db_session.commit()

        assert await delete_api_key(db_session, api_key.key_id) is True
        assert await get_api_key(db_session, api_key.key_id) is None
        count = await db_session.scalar(select(func.count()).select_from(ApiRequestLog))
        assert count == 0

        assert await delete_api_key(db_session, api_key.key_id) is False

    async def test_request_stats(self, db_session, make_key):
        api_key, _ = await make_key()
        other, _ = await make_key("other")
        rows = [
            ("/movies", 200, 10),
            ("/movies", 200, 30),
            ("/movies", 404, 20),
            ("/series", 500, 40),
        ]
        for endpoint, status_code, ms in rows:
            db_session.add(ApiRequestLog(
                key_id=api_key.key_id, endpoint=endpoint, method="GET",
                status_code=status_code, response_time_ms=ms,
            ))
        db_session.add(ApiRequestLog(key_id=other.key_id, endpoint="/movies", method="GET", status_code=200))
        await db_session.commit()

        stats = await request_stats(db_session, api_key.key_id)

        assert [s.endpoint for s in stats] == ["/movies", "/series"]
        assert stats[0].request_count == 3
        assert stats[0].error_count == 1
        assert stats[0].avg_response_time_ms == pytest.approx(20.0)
        assert stats[1].request_count == 1
        assert stats[1].error_count == 1
