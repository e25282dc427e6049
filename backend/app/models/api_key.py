"""
API key model — the durable record of one issued credential.

Security notes:
  • The secret is NEVER stored. Only its SHA-256 hash is persisted.
  • `key_id` is the public identifier ("lk21_…"): safe to log, return
    to admins, and use as the FK target of request logs.
  • `is_active` allows revocation without deletion (audit trail).

Quota notes:
  • NULL daily_limit / monthly_limit means unlimited.
  • Counters are only ever changed by server-side UPDATE statements
    (see app.services.quota), never by read-modify-write in Python.
  • All timestamps are naive UTC (see app.utils.datetime).
"""

import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.utils.datetime import start_of_next_day, start_of_next_month, utcnow


def _next_daily_reset() -> datetime.datetime:
    return start_of_next_day(utcnow())


def _next_monthly_reset() -> datetime.datetime:
    return start_of_next_month(utcnow())


class ApiKey(Base):
    """Hashed API key with its quota counters and access policy."""

    __tablename__ = "api_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # ── Identity ────────────────────────────────────────────
    key_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # ── Limits and usage ────────────────────────────────────
    daily_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    monthly_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    daily_usage: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )
    monthly_usage: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )
    total_usage: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )

    # ── Access control (NULL = all allowed) ─────────────────
    allowed_domains: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    allowed_ips: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    # ── Status and timing ───────────────────────────────────
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true"),
    )
    expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    last_used_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    last_used_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)

    # ── Rollover boundaries ─────────────────────────────────
    daily_reset_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, nullable=False, default=_next_daily_reset,
    )
    monthly_reset_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, nullable=False, default=_next_monthly_reset,
    )

    # ── Provenance ──────────────────────────────────────────
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow,
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow,
    )
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint("daily_usage >= 0", name="ck_api_keys_daily_usage_non_neg"),
        CheckConstraint("monthly_usage >= 0", name="ck_api_keys_monthly_usage_non_neg"),
        CheckConstraint("total_usage >= 0", name="ck_api_keys_total_usage_non_neg"),
        CheckConstraint(
            "daily_limit IS NULL OR daily_limit > 0",
            name="ck_api_keys_daily_limit_positive",
        ),
        CheckConstraint(
            "monthly_limit IS NULL OR monthly_limit > 0",
            name="ck_api_keys_monthly_limit_positive",
        ),
        Index("ix_api_keys_is_active", "is_active"),
        Index("ix_api_keys_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ApiKey key_id={self.key_id!r} name={self.name!r} "
            f"active={self.is_active} daily={self.daily_usage}/{self.daily_limit}>"
        )
