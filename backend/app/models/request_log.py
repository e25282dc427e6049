"""
SQLAlchemy model for the `api_request_logs` table.

One row per request that passed API key validation. Rows are appended
off the request's critical path and never updated; they exist for
analytics (see the `stats` CLI command) and are deleted with their key.
"""

import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.utils.datetime import utcnow


class ApiRequestLog(Base):
    """Audit trail entry for one authenticated request."""

    __tablename__ = "api_request_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("api_keys.key_id", ondelete="CASCADE"),
        nullable=False,
    )

    # ── Request ─────────────────────────────────────────────
    endpoint: Mapped[str] = mapped_column(String(500), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    request_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_size: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # ── Client ──────────────────────────────────────────────
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    referer: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow,
    )

    __table_args__ = (
        Index("ix_api_request_logs_key_id", "key_id"),
        Index("ix_api_request_logs_created_at", "created_at"),
        Index("ix_api_request_logs_endpoint", "endpoint"),
    )

    def __repr__(self) -> str:
        return (
            f"<ApiRequestLog key={self.key_id} {self.method} {self.endpoint} "
            f"status={self.status_code}>"
        )
