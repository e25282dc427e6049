"""Tests for the api-keys administration CLI."""

from __future__ import annotations

import datetime
import re

import pytest

from app.core.config import settings
from app.models.request_log import ApiRequestLog
from app.services.api_keys import get_api_key, list_api_keys
from scripts.api_keys import build_parser


async def run_cli(session, *argv: str) -> int:
    args = build_parser().parse_args(list(argv))
    return await args.handler(session, args)


class TestParser:
    def test_limits_are_mutually_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["create", "-n", "x", "--daily-limit", "5", "--no-daily-limit"])

    def test_rejects_non_positive_limit(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["create", "-n", "x", "--daily-limit", "0"])

    def test_parses_dates_and_lists(self):
        args = build_parser().parse_args([
            "create", "-n", "x", "--expires", "2027-01-31", "--domains", "a.test, *.b.test",
        ])
        assert args.expires == datetime.datetime(2027, 1, 31)
        assert args.domains == ["a.test", "*.b.test"]

    def test_ls_alias(self):
        args = build_parser().parse_args(["ls", "-a"])
        assert args.active_only is True


class TestCommands:
    async def test_create_prints_secret_once(self, db_session, capsys):
        assert await run_cli(db_session, "create", "-n", "Alice", "--daily-limit", "500") == 0

        out = capsys.readouterr().out
        assert re.search(r"API Key:\s+sk_[0-9a-f]{64}", out)
        (api_key,) = await list_api_keys(db_session)
        assert api_key.name == "Alice"
        assert api_key.daily_limit == 500
        assert api_key.monthly_limit == settings.DEFAULT_MONTHLY_LIMIT
        assert api_key.key_id in out

    async def test_create_unlimited(self, db_session):
        await run_cli(db_session, "create", "-n", "Bob", "--no-daily-limit", "--no-monthly-limit")

        (api_key,) = await list_api_keys(db_session)
        assert api_key.daily_limit is None
        assert api_key.monthly_limit is None

    async def test_list(self, db_session, make_key, capsys):
        api_key, _ = await make_key("Listed")

        assert await run_cli(db_session, "list") == 0
        out = capsys.readouterr().out
        assert api_key.key_id in out
        assert "Total: 1 API key(s)" in out

    async def test_list_empty(self, db_session, capsys):
        assert await run_cli(db_session, "list") == 0
        assert "No API keys found." in capsys.readouterr().out

    async def test_show(self, db_session, make_key, capsys):
        api_key, _ = await make_key("Shown", daily_limit=50, allowed_domains=["example.com"])

        assert await run_cli(db_session, "show", api_key.key_id) == 0
        out = capsys.readouterr().out
        assert api_key.key_id in out
        assert "0/50" in out
        assert "example.com" in out
        assert "Allowed IPs      All" in out

    async def test_show_unknown(self, db_session, capsys):
        assert await run_cli(db_session, "show", "lk21_missing") == 1
        assert "API key not found" in capsys.readouterr().err

    async def test_update(self, db_session, make_key):
        api_key, _ = await make_key()

        assert await run_cli(db_session, "update", api_key.key_id, "--deactivate", "--ips", "10.0.0.1") == 0

        await db_session.refresh(api_key)
        assert api_key.is_active is False
        assert api_key.allowed_ips == ["10.0.0.1"]

    async def test_update_clears_allow_lists(self, db_session, make_key):
        api_key, _ = await make_key(allowed_domains=["example.com"], allowed_ips=["10.0.0.1"])

        assert await run_cli(db_session, "update", api_key.key_id, "--all-domains", "--all-ips") == 0

        await db_session.refresh(api_key)
        assert api_key.allowed_domains is None
        assert api_key.allowed_ips is None

    async def test_update_removes_limit(self, db_session, make_key):
        api_key, _ = await make_key(daily_limit=50)

        assert await run_cli(db_session, "update", api_key.key_id, "--no-daily-limit") == 0

        await db_session.refresh(api_key)
        assert api_key.daily_limit is None

    def test_all_domains_conflicts_with_domains(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["update", "lk21_x", "--domains", "a.test", "--all-domains"])

    async def test_update_without_options(self, db_session, make_key, capsys):
        api_key, _ = await make_key()
        assert await run_cli(db_session, "update", api_key.key_id) == 1
        assert "No updates specified" in capsys.readouterr().err

    async def test_revoke_cancelled(self, db_session, make_key, monkeypatch):
        api_key, _ = await make_key()
        monkeypatch.setattr("builtins.input", lambda prompt: "n")

        assert await run_cli(db_session, "revoke", api_key.key_id) == 0

        await db_session.refresh(api_key)
        assert api_key.is_active is True

    async def test_revoke_confirmed(self, db_session, make_key):
        api_key, _ = await make_key()

        assert await run_cli(db_session, "revoke", api_key.key_id, "--yes") == 0

        await db_session.refresh(api_key)
        assert api_key.is_active is False

    async def test_delete(self, db_session, make_key):
        api_key, _ = await make_key()

        assert await run_cli(db_session, "delete", api_key.key_id, "-y") == 0
        assert await get_api_key(db_session, api_key.key_id) is None
        assert await run_cli(db_session, "delete", api_key.key_id, "-y") == 1

    async def test_stats(self, db_session, make_key, capsys):
        api_key, _ = await make_key()
        db_session.add(ApiRequestLog(
            key_id=api_key.key_id, endpoint="/movies", method="GET",
            status_code=200, response_time_ms=12,
        ))
        await db_session.commit()

        assert await run_cli(db_session, "stats", api_key.key_id) == 0
        out = capsys.readouterr().out
        assert "/movies" in out
        assert "12" in out
