"""Unit tests for records/store.py using an in-memory SQLite database.

Covers:
- merge_write(): insert, shallow merge, "id" never stored as a field
- get() vs get_or_none() on missing documents
- add() generates distinct ids; list() keeps insertion order
- query(): equality over several fields
- subscribe(): initial snapshot, update on write, ordering, one pending
  snapshot per slow consumer, and listener release on normal exit, on error and on cancellation
- sort_documents(): missing sort fields go last
- user_to_doc(): optional fields omitted, maps back through user_from_doc
- ping()
"""

from __future__ import annotations

import asyncio
import time

import pytest

from core.documents import sort_documents, user_from_doc, user_to_doc
from core.errors import DocumentNotFound
from core.models import Collection, UserRecord
from records.store import RecordStore


class TestReadsAndWrites:
    @pytest.mark.asyncio
    async def test_merge_write_inserts_then_merges(self, records: RecordStore) -> None:
        await records.merge_write(Collection.USERS, "u1", {"email": "a@example.com", "role": "regular"})
        merged = await records.merge_write(Collection.USERS, "u1", {"role": "admin", "isApproved": True})
        assert merged == {"id": "u1", "email": "a@example.com", "role": "admin", "isApproved": True}
        assert await records.get(Collection.USERS, "u1") == merged

    @pytest.mark.asyncio
    async def test_merge_is_shallow(self, records: RecordStore) -> None:
        await records.merge_write(Collection.USERS, "u1", {"permissions": {"a": True, "b": True}})
        await records.merge_write(Collection.USERS, "u1", {"permissions": {"c": True}})
        assert (await records.get(Collection.USERS, "u1"))["permissions"] == {"c": True}

    @pytest.mark.asyncio
    async def test_id_field_is_not_persisted(self, records: RecordStore) -> None:
        await records.merge_write(Collection.USERS, "u1", {"id": "spoofed", "email": "a@example.com"})
        assert (await records.get(Collection.USERS, "u1"))["id"] == "u1"

    @pytest.mark.asyncio
    async def test_get_missing(self, records: RecordStore) -> None:
        with pytest.raises(DocumentNotFound) as exc_info:
            await records.get(Collection.WAITLIST, "nope")
        assert str(exc_info.value) == "waitlist/nope not found"
        assert await records.get_or_none(Collection.WAITLIST, "nope") is None

    @pytest.mark.asyncio
    async def test_collections_are_separate(self, records: RecordStore) -> None:
        await records.merge_write(Collection.USERS, "same-id", {"email": "user@example.com"})
        await records.merge_write(Collection.LEGACY_APPROVED, "same-id", {"email": "legacy@example.com"})
        assert (await records.get(Collection.USERS, "same-id"))["email"] == "user@example.com"
        assert (await records.get("approved_users", "same-id"))["email"] == "legacy@example.com"

    @pytest.mark.asyncio
    async def test_add_and_list(self, records: RecordStore) -> None:
        first = await records.add(Collection.WAITLIST, {"email": "1@example.com"})
        second = await records.add(Collection.WAITLIST, {"email": "2@example.com"})
        assert first != second
        assert [d["id"] for d in await records.list(Collection.WAITLIST)] == [first, second]

    @pytest.mark.asyncio
    async def test_query_matches_every_field(self, records: RecordStore) -> None:
        await records.add(Collection.WAITLIST, {"email": "q@example.com", "status": "pending"})
        approved = await records.add(Collection.WAITLIST, {"email": "q@example.com", "status": "approved"})
        await records.add(Collection.WAITLIST, {"email": "other@example.com", "status": "approved"})
        matches = await records.query(Collection.WAITLIST, email="q@example.com", status="approved")
        assert [d["id"] for d in matches] == [approved]

    @pytest.mark.asyncio
    async def test_reads_run_off_the_event_loop(self, records: RecordStore, monkeypatch) -> None:
        original = records._get_sync

        def slow_get(name: str, doc_id: str):
            time.sleep(0.2)
            return original(name, doc_id)

        monkeypatch.setattr(records, "_get_sync", slow_get)
        ticks = 0

        async def ticker() -> None:
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        task = asyncio.create_task(ticker())
        assert await records.get_or_none(Collection.USERS, "u1") is None
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert ticks >= 5, "other tasks must keep running during a slow query"

    def test_ping(self, records: RecordStore) -> None:
        assert records.ping() is True


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_initial_snapshot_then_updates(self, records: RecordStore) -> None:
        await records.add(Collection.WAITLIST, {"email": "a@example.com", "timestamp": "2024-01-01"})
        async with records.subscribe(Collection.WAITLIST, order_by="timestamp") as sub:
            initial = await sub.next_snapshot()
            assert [d["email"] for d in initial] == ["a@example.com"]

            await records.add(Collection.WAITLIST, {"email": "b@example.com", "timestamp": "2024-02-01"})
            updated = await asyncio.wait_for(sub.next_snapshot(), timeout=1)
            assert [d["email"] for d in updated] == ["b@example.com", "a@example.com"], "newest first"

    @pytest.mark.asyncio
    async def test_other_collections_do_not_notify(self, records: RecordStore) -> None:
        async with records.subscribe(Collection.WAITLIST) as sub:
            await sub.next_snapshot()
            await records.merge_write(Collection.USERS, "u1", {"email": "x@example.com"})
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(sub.next_snapshot(), timeout=0.05)

    @pytest.mark.asyncio
    async def test_slow_consumer_holds_only_the_latest_snapshot(self, records: RecordStore) -> None:
        async with records.subscribe(Collection.WAITLIST) as sub:
            await sub.next_snapshot()
            for n in range(3):
                await records.add(Collection.WAITLIST, {"email": f"{n}@example.com"})

            latest = await asyncio.wait_for(sub.next_snapshot(), timeout=1)
            assert len(latest) == 3, "unread snapshots are replaced, not queued"
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(sub.next_snapshot(), timeout=0.05)

    @pytest.mark.asyncio
    async def test_released_on_exit(self, records: RecordStore) -> None:
        async with records.subscribe(Collection.WAITLIST):
            assert records.subscriber_count(Collection.WAITLIST) == 1
        assert records.subscriber_count(Collection.WAITLIST) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self, records: RecordStore) -> None:
        with pytest.raises(RuntimeError):
            async with records.subscribe(Collection.WAITLIST):
                raise RuntimeError("consumer blew up")
        assert records.subscriber_count(Collection.WAITLIST) == 0

    @pytest.mark.asyncio
    async def test_released_on_cancellation(self, records: RecordStore) -> None:
        started = asyncio.Event()

        async def consume() -> None:
            async with records.subscribe(Collection.WAITLIST) as sub:
                await sub.next_snapshot()
                started.set()
                await sub.next_snapshot()  # blocks until cancelled

        task = asyncio.create_task(consume())
        await asyncio.wait_for(started.wait(), timeout=1)
        assert records.subscriber_count(Collection.WAITLIST) == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert records.subscriber_count(Collection.WAITLIST) == 0


class TestSortDocuments:
    def test_missing_field_goes_last(self) -> None:
        docs = [{"id": "a"}, {"id": "b", "t": "2024"}, {"id": "c", "t": ""}, {"id": "d", "t": "2025"}]
        assert [d["id"] for d in sort_documents(docs, "t")] == ["d", "b", "a", "c"]
        assert [d["id"] for d in sort_documents(docs, "t", descending=False)] == ["b", "d", "a", "c"]

    def test_no_order_keeps_input(self) -> None:
        docs = [{"id": "x"}, {"id": "y"}]
        assert sort_documents(docs, None) == docs


class TestUserToDoc:
    def test_optional_fields_omitted_when_unset(self) -> None:
        doc = user_to_doc(UserRecord(id="u1", email="a@example.com", created_at="2024-01-01", updated_at="2024-01-01"))
        assert doc == {
            "email": "a@example.com",
            "userId": "u1",
            "role": "regular",
            "isApproved": False,
            "permissions": {},
            "created_at": "2024-01-01",
            "updated_at": "2024-01-01",
        }

    def test_mapped_back_unchanged(self) -> None:
        user = UserRecord(
            id="u1",
            email="a@example.com",
            role="admin",
            is_approved=True,
            permissions={"basic_features": True},
            name="Ada",
            temp_secret="Secret123",
            waitlist_id="w1",
            created_at="2024-01-01",
            updated_at="2024-02-01",
        )
        doc = user_to_doc(user)
        assert doc["tempPassword"] == "Secret123"
        assert doc["waitlistId"] == "w1"
        assert user_from_doc({"id": "u1", **doc}) == user
