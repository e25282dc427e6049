"""
Pydantic v2 schemas for API key administration and quota reporting.

Separation:
  • ApiKeyCreate — what an administrator supplies when issuing a key.
  • ApiKeyUpdate — every updatable attribute, each optional. Only the
    fields explicitly set are applied (model_fields_set), so
    `description=None` clears the description while omitting it leaves
    it untouched.
  • ApiKeyOut    — the stored record minus key_hash. The secret never
    appears in any schema; it is returned once by create_api_key().
"""

from __future__ import annotations

import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _clean_patterns(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    return [item.strip() for item in value if item and item.strip()]


# ── Admin input ─────────────────────────────────────────────
class ApiKeyCreate(BaseModel):
    """
    Payload for issuing a new key.

    daily_limit / monthly_limit: when omitted the configured defaults
    apply; an explicit None means unlimited.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    daily_limit: int | None = Field(default=None, gt=0)
    monthly_limit: int | None = Field(default=None, gt=0)
    allowed_domains: list[str] | None = Field(
        default=None,
        examples=[["*.example.com", "app.example.org"]],
    )
    allowed_ips: list[str] | None = Field(default=None, examples=[["10.0.0.1"]])
    expires_at: datetime.datetime | None = None
    created_by: str = Field(default="CLI", max_length=255)

    @field_validator("allowed_domains", "allowed_ips")
    @classmethod
    def _strip_patterns(cls, value: list[str] | None) -> list[str] | None:
        return _clean_patterns(value)


class ApiKeyUpdate(BaseModel):
    """Explicit optional-field update. Unset fields are left unchanged."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    daily_limit: int | None = Field(default=None, gt=0)
    monthly_limit: int | None = Field(default=None, gt=0)
    allowed_domains: list[str] | None = None
    allowed_ips: list[str] | None = None
    expires_at: datetime.datetime | None = None
    is_active: bool | None = None

    @field_validator("allowed_domains", "allowed_ips")
    @classmethod
    def _strip_patterns(cls, value: list[str] | None) -> list[str] | None:
        return _clean_patterns(value)

    @field_validator("name", "is_active")
    @classmethod
    def _not_null(cls, value):  # type: ignore[no-untyped-def]
        if value is None:
            raise ValueError("may be omitted but not set to null")
        return value


# ── Output ──────────────────────────────────────────────────
class ApiKeyOut(BaseModel):
    """Stored key as shown to administrators (no hash, no secret)."""

    model_config = ConfigDict(from_attributes=True)

    key_id: str
    name: str
    description: str | None
    daily_limit: int | None
    monthly_limit: int | None
    daily_usage: int
    monthly_usage: int
    total_usage: int
    allowed_domains: list[str] | None
    allowed_ips: list[str] | None
    is_active: bool
    expires_at: datetime.datetime | None
    daily_reset_at: datetime.datetime
    monthly_reset_at: datetime.datetime
    last_used_at: datetime.datetime | None
    last_used_ip: str | None
    created_at: datetime.datetime
    updated_at: datetime.datetime
    created_by: str | None


class QuotaStatusOut(BaseModel):
    """Quota figures for the key that authenticated the current request."""

    key_id: str
    name: str
    daily_limit: int | None
    daily_remaining: int | None
    daily_reset_at: datetime.datetime
    monthly_limit: int | None
    monthly_remaining: int | None
    monthly_reset_at: datetime.datetime
    total_usage: int


class EndpointStatOut(BaseModel):
    """Aggregated request-log figures for one endpoint of one key."""

    model_config = ConfigDict(from_attributes=True)

    endpoint: str
    request_count: int
    avg_response_time_ms: float | None
    error_count: int
