"""Shared helpers for the AccessGate test suite (not fixtures)."""

from __future__ import annotations

from core.errors import StoreWriteFailure
from core.models import Collection
from records.store import RecordStore


async def seed_user(store: RecordStore, uid: str, **fields) -> dict:
    """Write a users document with sensible defaults."""
    doc = {
        "email": f"{uid}@example.com",
        "userId": uid,
        "role": "regular",
        "isApproved": True,
        "permissions": {},
        "created_at": "2024-01-01T00:00:00+00:00",
        "updated_at": "2024-01-01T00:00:00+00:00",
    }
    doc.update(fields)
    return await store.merge_write(Collection.USERS, uid, doc)


async def seed_entry(store: RecordStore, email: str, status: str = "pending", **fields) -> str:
    """Insert a waitlist document and return its id."""
    return await store.add(
        Collection.WAITLIST,
        {"email": email, "status": status, "timestamp": "2024-01-01T00:00:00+00:00", **fields},
    )


class FailingWrites:
    """Wrap a RecordStore so merge_write fails for selected collections.

    Reads and writes to every other collection pass through untouched.
    """

    def __init__(self, store: RecordStore, *collections: Collection) -> None:
        self._store = store
        self._failing = {c.value for c in collections}
        self.attempts: list[tuple[str, str]] = []

    def __getattr__(self, name):
        return getattr(self._store, name)

    async def merge_write(self, collection, doc_id: str, partial: dict) -> dict:
        name = collection.value if isinstance(collection, Collection) else str(collection)
        self.attempts.append((name, doc_id))
        if name in self._failing:
            raise StoreWriteFailure(name, doc_id, "disk I/O error")
        return await self._store.merge_write(collection, doc_id, partial)
