"""Tests for core/reconciliation.py -- the users/approved_users repair sweep.

Covers:
- Every approved_users record gets a users record (synthesized once)
- Bootstrap admin: created when absent, repaired when demoted or
  unapproved, upgraded when it only exists in approved_users
- Admins with incomplete stored maps are refilled
- Idempotence: a second run writes nothing
- Ordering: newest created_at first, missing dates last
- Write failures are recorded and the intended state is still returned
- Display-only secret fallback is never written back
"""

from __future__ import annotations

import pytest

from core.models import Collection
from core.reconciliation import ReconciliationSweep
from tests.support import FailingWrites, seed_entry, seed_user


async def _seed_legacy(records, uid: str, email: str, **fields) -> None:
    await records.merge_write(
        Collection.LEGACY_APPROVED,
        uid,
        {"email": email, "userId": uid, "isApproved": True, "approvedAt": "2024-02-01T00:00:00+00:00", **fields},
    )


class TestSynthesis:
    @pytest.mark.asyncio
    async def test_legacy_record_gets_users_record(self, sweep, records) -> None:
        await _seed_legacy(records, "legacy-1", "legacy@example.com", waitlistId="w-1")

        report = await sweep.run()

        assert "legacy-1" in report.synthesized
        user = await records.get(Collection.USERS, "legacy-1")
        assert user["email"] == "legacy@example.com"
        assert user["role"] == "regular"
        assert user["isApproved"] is True
        assert user["permissions"] == {}
        assert user["waitlistId"] == "w-1"
        assert user["created_at"] == "2024-02-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_existing_users_record_is_left_alone(self, sweep, records) -> None:
        await _seed_legacy(records, "u1", "u1@example.com")
        await seed_user(records, "u1", role="regular", isApproved=False, name="Keep Me")

        report = await sweep.run()

        assert "u1" not in report.synthesized
        user = await records.get(Collection.USERS, "u1")
        assert user["isApproved"] is False, "the sweep never re-approves an existing record"
        assert user["name"] == "Keep Me"


class TestBootstrapAdmin:
    @pytest.mark.asyncio
    async def test_created_on_empty_store(self, sweep, records, bootstrap, resolver) -> None:
        report = await sweep.run()

        assert report.synthesized == [bootstrap.uid]
        doc = await records.get(Collection.USERS, bootstrap.uid)
        assert doc["role"] == "admin"
        assert doc["isApproved"] is True
        assert doc["email"] == bootstrap.email
        assert doc["permissions"] == resolver.full()

    @pytest.mark.asyncio
    async def test_demoted_admin_is_restored(self, sweep, records, bootstrap, resolver) -> None:
        await seed_user(records, bootstrap.uid, email=bootstrap.email, role="regular", isApproved=False)

        report = await sweep.run()

        assert bootstrap.uid in report.repaired
        doc = await records.get(Collection.USERS, bootstrap.uid)
        assert doc["role"] == "admin"
        assert doc["isApproved"] is True
        assert doc["permissions"] == resolver.full()
        assert doc["created_at"] == "2024-01-01T00:00:00+00:00", "repair must not reset created_at"

    @pytest.mark.asyncio
    async def test_legacy_only_bootstrap_is_upgraded(self, sweep, records, bootstrap, resolver) -> None:
        await _seed_legacy(records, bootstrap.uid, bootstrap.email)

        report = await sweep.run()

        assert report.writes == 1, "one merge-write per uid"
        doc = await records.get(Collection.USERS, bootstrap.uid)
        assert doc["role"] == "admin"
        assert doc["permissions"] == resolver.full()


class TestAdminPermissionRepair:
    @pytest.mark.asyncio
    async def test_incomplete_admin_map_is_refilled(self, sweep, records, resolver) -> None:
        await seed_user(records, "other-admin", role="admin", permissions={"manage_users": True})

        report = await sweep.run()

        assert "other-admin" in report.repaired
        assert (await records.get(Collection.USERS, "other-admin"))["permissions"] == resolver.full()

    @pytest.mark.asyncio
    async def test_regular_maps_are_untouched(self, sweep, records) -> None:
        await seed_user(records, "regular-1", permissions={"basic_features": True})
        await sweep.run()
        assert (await records.get(Collection.USERS, "regular-1"))["permissions"] == {"basic_features": True}


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_second_run_writes_nothing(self, sweep, records) -> None:
        await _seed_legacy(records, "legacy-1", "legacy@example.com")
        await seed_user(records, "other-admin", role="admin", permissions={})

        first = await sweep.run()
        second = await sweep.run()

        assert first.writes == 3
        assert second.writes == 0
        assert second.synthesized == []
        assert second.repaired == []
        assert [u.id for u in first.users] == [u.id for u in second.users]


class TestOrdering:
    @pytest.mark.asyncio
    async def test_newest_first_missing_last(self, records, resolver, bootstrap) -> None:
        sweep = ReconciliationSweep(records, resolver, bootstrap, clock=lambda: "2025-01-01T00:00:00+00:00")
        await seed_user(records, "old", created_at="2023-01-01T00:00:00+00:00")
        await seed_user(records, "new", created_at="2024-06-01T00:00:00+00:00")
        await seed_user(records, "undated", created_at="")

        report = await sweep.run()

        assert [u.id for u in report.users] == [bootstrap.uid, "new", "old", "undated"]


class TestWriteFailures:
    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_intended_state_returned(self, records, resolver, bootstrap) -> None:
        await _seed_legacy(records, "legacy-1", "legacy@example.com")
        sweep = ReconciliationSweep(FailingWrites(records, Collection.USERS), resolver, bootstrap)

        report = await sweep.run()

        assert report.writes == 0
        assert {f.doc_id for f in report.failures} == {"legacy-1", bootstrap.uid}
        assert all(f.collection == "users" for f in report.failures)
        by_id = {u.id: u for u in report.users}
        assert by_id[bootstrap.uid].role == "admin"
        assert by_id["legacy-1"].is_approved is True
        assert await records.list(Collection.USERS) == []


class TestDisplaySecret:
    @pytest.mark.asyncio
    async def test_falls_back_to_waitlist_then_legacy(self, sweep, records) -> None:
        entry_id = await seed_entry(records, "w@example.com", status="registered", lastUsedPassword="FromEntry1")
        await seed_user(records, "from-entry", email="w@example.com", waitlistId=entry_id)
        await seed_user(records, "from-legacy", email="l@example.com")
        await _seed_legacy(records, "from-legacy", "l@example.com", tempPassword="FromLegacy1")

        report = await sweep.run()

        by_id = {u.id: u for u in report.users}
        assert by_id["from-entry"].temp_secret == "FromEntry1"
        assert by_id["from-legacy"].temp_secret == "FromLegacy1"
        stored = await records.get(Collection.USERS, "from-entry")
        assert "tempPassword" not in stored, "the fallback is display-only"

    @pytest.mark.asyncio
    async def test_own_secret_wins(self, sweep, records) -> None:
        await seed_user(records, "own", tempPassword="OwnSecret1")
        await _seed_legacy(records, "own", "own@example.com", tempPassword="LegacySecret1")
        report = await sweep.run()
        assert {u.id: u for u in report.users}["own"].temp_secret == "OwnSecret1"
