"""create api_keys and api_request_logs tables

Revision ID: 0001
Revises:
Create Date: 2026-10-17

API key authentication and quota accounting:
  - api_keys: hashed credentials, usage counters, reset boundaries,
    domain/IP allow-lists
  - api_request_logs: append-only audit trail, cascades with its key
All timestamps are naive UTC.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── 1. api_keys ─────────────────────────────────────────
    op.create_table(
        "api_keys",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("key_id", sa.String(64), nullable=False),
        sa.Column("key_hash", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("daily_limit", sa.Integer(), nullable=True),
        sa.Column("monthly_limit", sa.Integer(), nullable=True),
        sa.Column("daily_usage", sa.Integer(), server_default="0", nullable=False),
        sa.Column("monthly_usage", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_usage", sa.Integer(), server_default="0", nullable=False),
        sa.Column("allowed_domains", sa.JSON(), nullable=True),
        sa.Column("allowed_ips", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("last_used_at", sa.DateTime(), nullable=True),
        sa.Column("last_used_ip", sa.String(45), nullable=True),
        sa.Column("daily_reset_at", sa.DateTime(), nullable=False),
        sa.Column("monthly_reset_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("created_by", sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key_id"),
        sa.UniqueConstraint("key_hash"),
        sa.CheckConstraint("daily_usage >= 0", name="ck_api_keys_daily_usage_non_neg"),
        sa.CheckConstraint("monthly_usage >= 0", name="ck_api_keys_monthly_usage_non_neg"),
        sa.CheckConstraint("total_usage >= 0", name="ck_api_keys_total_usage_non_neg"),
        sa.CheckConstraint(
            "daily_limit IS NULL OR daily_limit > 0",
            name="ck_api_keys_daily_limit_positive",
        ),
        sa.CheckConstraint(
            "monthly_limit IS NULL OR monthly_limit > 0",
            name="ck_api_keys_monthly_limit_positive",
        ),
    )
    op.create_index("ix_api_keys_is_active", "api_keys", ["is_active"])
    op.create_index("ix_api_keys_expires_at", "api_keys", ["expires_at"])

    # ── 2. api_request_logs ─────────────────────────────────
    op.create_table(
        "api_request_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("key_id", sa.String(64), nullable=False),
        sa.Column("endpoint", sa.String(500), nullable=False),
        sa.Column("method", sa.String(10), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        sa.Column("request_size", sa.Integer(), nullable=True),
        sa.Column("response_size", sa.Integer(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("referer", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["key_id"], ["api_keys.key_id"], ondelete="CASCADE"),
    )
    op.create_index("ix_api_request_logs_key_id", "api_request_logs", ["key_id"])
    op.create_index("ix_api_request_logs_created_at", "api_request_logs", ["created_at"])
    op.create_index("ix_api_request_logs_endpoint", "api_request_logs", ["endpoint"])


def downgrade() -> None:
    op.drop_index("ix_api_request_logs_endpoint", table_name="api_request_logs")
    op.drop_index("ix_api_request_logs_created_at", table_name="api_request_logs")
    op.drop_index("ix_api_request_logs_key_id", table_name="api_request_logs")
    op.drop_table("api_request_logs")

    op.drop_index("ix_api_keys_expires_at", table_name="api_keys")
    op.drop_index("ix_api_keys_is_active", table_name="api_keys")
    op.drop_table("api_keys")
