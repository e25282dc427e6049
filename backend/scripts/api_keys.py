"""
api-keys — CLI for issuing and managing LK21 API keys.

Usage (from backend/):
    python -m scripts.api_keys create --name "Alice" --daily-limit 500
    python -m scripts.api_keys list [--active-only]
    python -m scripts.api_keys show lk21_ab12…
    python -m scripts.api_keys update lk21_ab12… --deactivate
    python -m scripts.api_keys revoke lk21_ab12… [--yes]
    python -m scripts.api_keys delete lk21_ab12… [--yes]
    python -m scripts.api_keys stats lk21_ab12…

Requires DATABASE_URL (see app.core.config).

The secret printed by `create` is shown exactly once — copy it immediately.
"""

from __future__ import annotations

import argparse
import asyncio
import datetime
import logging
import sys

from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.errors import APIKeyNotFoundError
from app.core.database import async_session_factory, engine
from app.models.api_key import ApiKey
from app.schemas.api_key import ApiKeyCreate, ApiKeyOut, ApiKeyUpdate
from app.services.api_keys import (
    create_api_key,
    delete_api_key,
    get_api_key,
    list_api_keys,
    request_stats,
    revoke_api_key,
    update_api_key,
)


# ── Argument helpers ────────────────────────────────────────
def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _date(value: str) -> datetime.datetime:
    """YYYY-MM-DD → midnight UTC of that day."""
    try:
        day = datetime.date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from exc
    return datetime.datetime.combine(day, datetime.time.min)


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be a positive integer")
    return number


def _limit(value: int | None) -> str:
    return "unlimited" if value is None else str(value)


def _when(value: datetime.datetime | None, default: str = "Never") -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC") if value else default


def _confirm(prompt: str) -> bool:
    answer = input(f"{prompt} [y/N]: ")
    return answer.strip().lower() in {"y", "yes"}


def _print_key(api_key: ApiKey) -> None:
    key = ApiKeyOut.model_validate(api_key)
    rows = [
        ("Key ID", key.key_id),
        ("Name", key.name),
        ("Description", key.description or "N/A"),
        ("Status", "Active" if key.is_active else "Inactive"),
        ("Daily", f"{key.daily_usage}/{_limit(key.daily_limit)}"),
        ("Monthly", f"{key.monthly_usage}/{_limit(key.monthly_limit)}"),
        ("Total Usage", str(key.total_usage)),
        ("Allowed Domains", ", ".join(key.allowed_domains) if key.allowed_domains is not None else "All"),
        ("Allowed IPs", ", ".join(key.allowed_ips) if key.allowed_ips is not None else "All"),
        ("Daily Reset", _when(key.daily_reset_at)),
        ("Monthly Reset", _when(key.monthly_reset_at)),
        ("Created At", _when(key.created_at, "N/A")),
        ("Created By", key.created_by or "Unknown"),
        ("Last Used At", _when(key.last_used_at)),
        ("Last Used IP", key.last_used_ip or "N/A"),
        ("Expires At", _when(key.expires_at)),
    ]
    for label, value in rows:
        print(f"  {label:<16} {value}")


# ── Commands ────────────────────────────────────────────────
async def cmd_create(session: AsyncSession, args: argparse.Namespace) -> int:
    """Issue a new API key and print its secret once."""
    fields: dict = {
        "name": args.name,
        "description": args.description,
        "allowed_domains": args.domains,
        "allowed_ips": args.ips,
        "expires_at": args.expires,
        "created_by": args.created_by,
    }
    # Only pass limits that were given so the configured defaults apply otherwise.
    if args.no_daily_limit:
        fields["daily_limit"] = None
    elif args.daily_limit is not None:
        fields["daily_limit"] = args.daily_limit
    if args.no_monthly_limit:
        fields["monthly_limit"] = None
    elif args.monthly_limit is not None:
        fields["monthly_limit"] = args.monthly_limit

    api_key, secret = await create_api_key(session, ApiKeyCreate(**fields))

    print("\n  API key created successfully!\n")
    _print_key(api_key)
    print(f"\n  API Key:         {secret}")
    print("\n  ⚠  Copy this key now — it will NEVER be shown again.\n")
    return 0


async def cmd_list(session: AsyncSession, args: argparse.Namespace) -> int:
    """List all API keys."""
    keys = await list_api_keys(session, active_only=args.active_only)
    if not keys:
        print("No API keys found.")
        return 0

    print(f"\n{'Key ID':<30} {'Name':<20} {'Status':<9} {'Daily':<14} {'Monthly':<16} {'Last Used'}")
    print("-" * 110)
    for k in keys:
        status = "Active" if k.is_active else "Inactive"
        daily = f"{k.daily_usage}/{_limit(k.daily_limit)}"
        monthly = f"{k.monthly_usage}/{_limit(k.monthly_limit)}"
        print(f"{k.key_id:<30} {k.name[:20]:<20} {status:<9} {daily:<14} {monthly:<16} {_when(k.last_used_at)}")
    print(f"\nTotal: {len(keys)} API key(s)\n")
    return 0


async def cmd_show(session: AsyncSession, args: argparse.Namespace) -> int:
    """Show one API key in detail."""
    api_key = await get_api_key(session, args.key_id)
    if api_key is None:
        print(f"API key not found: {args.key_id}", file=sys.stderr)
        return 1
    print()
    _print_key(api_key)
    print()
    return 0


async def cmd_update(session: AsyncSession, args: argparse.Namespace) -> int:
    """Update selected attributes of an API key."""
    fields: dict = {}
    if args.name is not None:
        fields["name"] = args.name
    if args.description is not None:
        fields["description"] = args.description
    if args.no_daily_limit:
        fields["daily_limit"] = None
    elif args.daily_limit is not None:
        fields["daily_limit"] = args.daily_limit
    if args.no_monthly_limit:
        fields["monthly_limit"] = None
    elif args.monthly_limit is not None:
        fields["monthly_limit"] = args.monthly_limit
    if args.expires is not None:
        fields["expires_at"] = args.expires
    # None clears an allow-list: every domain / IP is allowed again.
    if args.all_domains:
        fields["allowed_domains"] = None
    elif args.domains is not None:
        fields["allowed_domains"] = args.domains
    if args.all_ips:
        fields["allowed_ips"] = None
    elif args.ips is not None:
        fields["allowed_ips"] = args.ips
    if args.activate:
        fields["is_active"] = True
    if args.deactivate:
        fields["is_active"] = False

    if not fields:
        print("No updates specified. Use --help to see available options.", file=sys.stderr)
        return 1

    try:
        await update_api_key(session, args.key_id, ApiKeyUpdate(**fields))
    except APIKeyNotFoundError:
        print(f"API key not found: {args.key_id}", file=sys.stderr)
        return 1

    print(f"API key updated successfully: {args.key_id}")
    return 0


async def cmd_revoke(session: AsyncSession, args: argparse.Namespace) -> int:
    """Deactivate an API key."""
    if not args.yes and not _confirm(f"Revoke API key {args.key_id}?"):
        print("Cancelled.")
        return 0

    try:
        await revoke_api_key(session, args.key_id)
    except APIKeyNotFoundError:
        print(f"API key not found: {args.key_id}", file=sys.stderr)
        return 1

    print(f"API key revoked successfully: {args.key_id}")
    return 0


async def cmd_delete(session: AsyncSession, args: argparse.Namespace) -> int:
    """Permanently delete an API key and its request logs."""
    if not args.yes and not _confirm(
        f"Permanently delete API key {args.key_id}? This cannot be undone."
    ):
        print("Cancelled.")
        return 0

    if not await delete_api_key(session, args.key_id):
        print(f"API key not found: {args.key_id}", file=sys.stderr)
        return 1

    print(f"API key deleted successfully: {args.key_id}")
    return 0


async def cmd_stats(session: AsyncSession, args: argparse.Namespace) -> int:
    """Per-endpoint request statistics from the audit log."""
    if await get_api_key(session, args.key_id) is None:
        print(f"API key not found: {args.key_id}", file=sys.stderr)
        return 1

    stats = await request_stats(session, args.key_id)
    if not stats:
        print("No requests logged for this key.")
        return 0

    print(f"\n{'Endpoint':<50} {'Requests':>9} {'Errors':>7} {'Avg ms':>8}")
    print("-" * 77)
    for row in stats:
        avg = f"{row.avg_response_time_ms:.0f}" if row.avg_response_time_ms is not None else "-"
        print(f"{row.endpoint[:50]:<50} {row.request_count:>9} {row.error_count:>7} {avg:>8}")
    print()
    return 0


# ── Parser ──────────────────────────────────────────────────
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="api-keys",
        description="Manage LK21 API keys",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create", help="Create a new API key")
    p.add_argument("-n", "--name", required=True, help="API key name")
    p.add_argument("-d", "--description", help="API key description")
    daily = p.add_mutually_exclusive_group()
    daily.add_argument("--daily-limit", type=_positive_int, help="Daily request limit")
    daily.add_argument("--no-daily-limit", action="store_true", help="No daily limit")
    monthly = p.add_mutually_exclusive_group()
    monthly.add_argument("--monthly-limit", type=_positive_int, help="Monthly request limit")
    monthly.add_argument("--no-monthly-limit", action="store_true", help="No monthly limit")
    p.add_argument("--expires", type=_date, help="Expiration date (YYYY-MM-DD, UTC)")
    p.add_argument("--domains", type=_csv, help="Allowed domains (comma-separated)")
    p.add_argument("--ips", type=_csv, help="Allowed IP addresses (comma-separated)")
    p.add_argument("--created-by", default="CLI", help="Recorded creator")
    p.set_defaults(handler=cmd_create)

    p = sub.add_parser("list", aliases=["ls"], help="List all API keys")
    p.add_argument("-a", "--active-only", action="store_true", help="Only active keys")
    p.set_defaults(handler=cmd_list)

    p = sub.add_parser("show", help="Show details of an API key")
    p.add_argument("key_id")
    p.set_defaults(handler=cmd_show)

    p = sub.add_parser("update", help="Update an API key")
    p.add_argument("key_id")
    p.add_argument("-n", "--name", help="New name")
    p.add_argument("-d", "--description", help="New description")
    daily = p.add_mutually_exclusive_group()
    daily.add_argument("--daily-limit", type=_positive_int, help="New daily limit")
    daily.add_argument("--no-daily-limit", action="store_true", help="Remove the daily limit")
    monthly = p.add_mutually_exclusive_group()
    monthly.add_argument("--monthly-limit", type=_positive_int, help="New monthly limit")
    monthly.add_argument("--no-monthly-limit", action="store_true", help="Remove the monthly limit")
    p.add_argument("--expires", type=_date, help="New expiration date (YYYY-MM-DD, UTC)")
    domains = p.add_mutually_exclusive_group()
    domains.add_argument("--domains", type=_csv, help="New allowed domains (comma-separated)")
    domains.add_argument("--all-domains", action="store_true", help="Allow requests from any domain")
    ips = p.add_mutually_exclusive_group()
    ips.add_argument("--ips", type=_csv, help="New allowed IP addresses (comma-separated)")
    ips.add_argument("--all-ips", action="store_true", help="Allow requests from any IP address")
    toggle = p.add_mutually_exclusive_group()
    toggle.add_argument("--activate", action="store_true", help="Activate the key")
    toggle.add_argument("--deactivate", action="store_true", help="Deactivate the key")
    p.set_defaults(handler=cmd_update)

    p = sub.add_parser("revoke", help="Revoke (deactivate) an API key")
    p.add_argument("key_id")
    p.add_argument("-y", "--yes", action="store_true", help="Skip confirmation")
    p.set_defaults(handler=cmd_revoke)

    p = sub.add_parser("delete", help="Permanently delete an API key")
    p.add_argument("key_id")
    p.add_argument("-y", "--yes", action="store_true", help="Skip confirmation")
    p.set_defaults(handler=cmd_delete)

    p = sub.add_parser("stats", help="Request statistics for an API key")
    p.add_argument("key_id")
    p.set_defaults(handler=cmd_stats)

    return parser


async def run(args: argparse.Namespace) -> int:
    try:
        async with async_session_factory() as session:
            return await args.handler(session, args)
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(message)s")
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nGoodbye!")
        return 0


if __name__ == "__main__":
    sys.exit(main())
