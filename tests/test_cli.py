"""Tests for the main.py command line.

Commands run through run() with services built on the in-memory fixtures, so
no database files are created. Output is checked with capsys.
"""

from __future__ import annotations

import json

import pytest

from core.config import get_settings
from core.models import Collection
from main import build_parser, main, run
from services import build_services
from tests.support import seed_entry


@pytest.fixture
def services(records, identity, generator):
    return build_services(settings=get_settings(), records=records, identity=identity, generator=generator)


def _args(*argv: str):
    return build_parser().parse_args(list(argv))


class TestParser:
    def test_json_flag_follows_subcommand(self) -> None:
        args = _args("users", "--json")
        assert args.command == "users"
        assert args.json is True

    def test_status_choices(self) -> None:
        with pytest.raises(SystemExit):
            _args("waitlist", "--status", "contacted")

    def test_no_command_prints_help(self, capsys) -> None:
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()


class TestCommands:
    @pytest.mark.asyncio
    async def test_waitlist_json(self, services, records, capsys) -> None:
        await seed_entry(records, "one@example.com")
        await seed_entry(records, "two@example.com", status="approved")

        assert await run(_args("waitlist", "--status", "approved", "--json"), services) == 0

        rows = json.loads(capsys.readouterr().out)
        assert [r["email"] for r in rows] == ["two@example.com"]

    @pytest.mark.asyncio
    async def test_approve_prints_secret(self, services, records, capsys) -> None:
        entry_id = await seed_entry(records, "cli@example.com")

        assert await run(_args("approve", entry_id), services) == 0

        out = capsys.readouterr().out
        assert "status=approved" in out
        assert "shown once" in out
        assert (await records.get(Collection.WAITLIST, entry_id))["status"] == "approved"

    @pytest.mark.asyncio
    async def test_domain_error_exits_nonzero(self, services, capsys) -> None:
        assert await run(_args("approve", "missing"), services) == 1
        assert "not found" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_create_account_with_secret(self, services, records, capsys) -> None:
        entry_id = await seed_entry(records, "deferred@example.com", status="approved")

        assert await run(_args("create-account", entry_id, "--secret", "Chosen123", "--json"), services) == 0

        outcome = json.loads(capsys.readouterr().out)
        assert outcome["entry"]["status"] == "registered"
        assert outcome["secret"] is None, "a supplied secret is not echoed"

    @pytest.mark.asyncio
    async def test_reconcile_reports_bootstrap(self, services, capsys) -> None:
        assert await run(_args("reconcile", "--json"), services) == 0
        report = json.loads(capsys.readouterr().out)
        assert report["synthesized"] == [get_settings().bootstrap_admin_uid]
        assert "users" not in report

    @pytest.mark.asyncio
    async def test_users_lists_reconciled_records(self, services, capsys) -> None:
        assert await run(_args("users", "--json"), services) == 0
        rows = json.loads(capsys.readouterr().out)
        admin = next(r for r in rows if r["id"] == get_settings().bootstrap_admin_uid)
        assert all(admin["effective_permissions"].values())

    @pytest.mark.asyncio
    async def test_create_admin_requires_password(self, services, capsys, monkeypatch) -> None:
        monkeypatch.setattr(services.settings, "bootstrap_admin_password", "")
        assert await run(_args("create-admin"), services) == 2
        assert "BOOTSTRAP_ADMIN_PASSWORD" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_create_admin(self, services, records, identity, capsys, monkeypatch) -> None:
        monkeypatch.setattr(services.settings, "bootstrap_admin_password", "AdminSecret1")

        assert await run(_args("create-admin"), services) == 0

        account = await identity.sign_in(services.settings.bootstrap_admin_email, "AdminSecret1")
        doc = await records.get(Collection.USERS, account.uid)
        assert doc["role"] == "admin"
        assert doc["isApproved"] is True
        # Local uids are generated, so they never match the configured bootstrap uid.
        assert "BOOTSTRAP_ADMIN_UID" in capsys.readouterr().out
