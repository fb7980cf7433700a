"""
records/store.py -- SQLAlchemy-backed document store for provisioning records.

Models a keyed document database: named collections, each holding JSON
documents addressed by a string id. Three collections are used by the core
(see core.models.Collection): waitlist, users and approved_users.

Pattern: Repository. RecordStore is the only code that touches SQL; it knows
nothing about waitlist statuses, roles or permissions. Domain translation
lives in core/documents.py.

Semantics:
  get()          -- raises DocumentNotFound when absent
  merge_write()  -- upsert with a shallow merge of top-level fields
  subscribe()    -- scoped live stream of ordered snapshots; the listener is
                    always unregistered when the context exits

Uses SQLAlchemy Core (not ORM). Swapping SQLite for PostgreSQL is a
connection string change. All queries use bound parameters.

Blocking SQL runs in worker threads via asyncio.to_thread; listener queues are
only touched on the event loop thread. Each subscriber holds at most one
unread snapshot: a newer one replaces it.

Concurrency: there is no cross-document transaction. Two writers merging the
same document interleave field by field; the reconciliation sweep is what
restores invariants afterwards.

Layer rule: imports core/ only. No imports from api/, auth/ or identity/.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from core.config import get_settings
from core.documents import sort_documents
from core.errors import DocumentNotFound, StoreWriteFailure
from core.models import Collection

logger = logging.getLogger("accessgate.records")

CollectionName = Union[Collection, str]

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_documents = Table(
    "documents",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("collection", String(64), nullable=False),
    Column("doc_id", String(255), nullable=False),
    Column("data", Text, nullable=False),  # JSON object
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("collection", "doc_id", name="uq_collection_doc"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind a writer."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _name(collection: CollectionName) -> str:
    return collection.value if isinstance(collection, Collection) else str(collection)


# ---------------------------------------------------------------------------
# Live subscriptions
# ---------------------------------------------------------------------------


@dataclass
class _Listener:
    queue: asyncio.Queue
    order_by: Optional[str]
    descending: bool


class Subscription:
    """Async iterator over collection snapshots (each a list of documents).

    Obtain one with `async with store.subscribe(...) as sub:`. The first
    snapshot is the state at subscription time.
    """

    def __init__(self, collection: str, queue: asyncio.Queue) -> None:
        self.collection = collection
        self._queue = queue

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> list[dict]:
        return await self._queue.get()

    async def next_snapshot(self) -> list[dict]:
        return await self._queue.get()


def _offer(queue: asyncio.Queue, snapshot: list[dict]) -> None:
    """Queue a snapshot, replacing one the consumer has not read yet."""
    if queue.full():
        queue.get_nowait()
    queue.put_nowait(snapshot)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class RecordStore:
    """Document repository for the waitlist, users and legacy approval collections.

    Usage:
        store = RecordStore()
        await store.merge_write(Collection.USERS, uid, {"role": "regular"})
        doc = await store.get(Collection.USERS, uid)
        async with store.subscribe(Collection.WAITLIST, order_by="timestamp") as sub:
            async for snapshot in sub:
                ...
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().records_db_url
        engine_kwargs: dict[str, Any] = {}
        if db_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in db_url or db_url in ("sqlite://", "sqlite:///"):
                # One shared connection, otherwise each pooled connection sees a blank DB.
                engine_kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(db_url, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)
        self._listeners: dict[str, list[_Listener]] = {}
        # One sqlite connection is shared across worker threads for in-memory URLs.
        self._sql_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, collection: CollectionName, doc_id: str) -> dict:
        """Return the document, or raise DocumentNotFound."""
        doc = await asyncio.to_thread(self._get_sync, _name(collection), doc_id)
        if doc is None:
            raise DocumentNotFound(_name(collection), doc_id)
        return doc

    async def get_or_none(self, collection: CollectionName, doc_id: str) -> Optional[dict]:
        return await asyncio.to_thread(self._get_sync, _name(collection), doc_id)

    async def list(self, collection: CollectionName) -> list[dict]:
        """Return every document in the collection, in insertion order."""
        return await asyncio.to_thread(self._list_sync, _name(collection))

    async def query(self, collection: CollectionName, **equals: Any) -> list[dict]:
        """Return documents whose top-level fields equal every given value.

        Filtering happens in Python over the decoded JSON. Collections here are
        admin-scale (thousands of rows), not analytics-scale.
        """
        docs = await asyncio.to_thread(self._list_sync, _name(collection))
        return [d for d in docs if all(d.get(k) == v for k, v in equals.items())]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def merge_write(self, collection: CollectionName, doc_id: str, partial: dict) -> dict:
        """Upsert doc_id, shallow-merging partial over any existing fields.

        Returns the merged document. Raises StoreWriteFailure if the write did
        not reach the database; callers decide whether that aborts anything.
        """
        name = _name(collection)
        merged = await asyncio.to_thread(self._merge_write_sync, name, doc_id, partial)
        await self._publish(name)
        return merged

    async def add(self, collection: CollectionName, data: dict) -> str:
        """Insert a new document under a generated id and return the id."""
        doc_id = uuid.uuid4().hex
        await self.merge_write(collection, doc_id, data)
        return doc_id

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def subscribe(
        self,
        collection: CollectionName,
        order_by: Optional[str] = None,
        descending: bool = True,
    ) -> AsyncIterator[Subscription]:
        """Stream snapshots of a collection until the context exits.

        The listener is registered before the initial snapshot is taken, so no
        write can fall between the two. Teardown runs on normal exit, on error
        and on task cancellation.
        """
        name = _name(collection)
        listener = _Listener(queue=asyncio.Queue(maxsize=1), order_by=order_by, descending=descending)
        self._listeners.setdefault(name, []).append(listener)
        logger.debug("Subscribed to %s (%d listeners)", name, len(self._listeners[name]))
        try:
            docs = await asyncio.to_thread(self._list_sync, name)
            if listener.queue.empty():
                # A write published while the initial listing ran is already newer.
                listener.queue.put_nowait(sort_documents(docs, order_by, descending))
            yield Subscription(name, listener.queue)
        finally:
            self._listeners[name].remove(listener)
            logger.debug("Unsubscribed from %s (%d listeners)", name, len(self._listeners[name]))

    def subscriber_count(self, collection: CollectionName) -> int:
        return len(self._listeners.get(_name(collection), []))

    async def _publish(self, name: str) -> None:
        if not self._listeners.get(name):
            return
        docs = await asyncio.to_thread(self._list_sync, name)
        for listener in list(self._listeners.get(name, [])):
            _offer(listener.queue, sort_documents(docs, listener.order_by, listener.descending))

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.exception("Record store health check failed")
            return False

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # SQL
    # ------------------------------------------------------------------

    def _get_sync(self, name: str, doc_id: str) -> Optional[dict]:
        with self._sql_lock, self.engine.connect() as conn:
            row = conn.execute(
                select(_documents.c.doc_id, _documents.c.data).where(
                    (_documents.c.collection == name) & (_documents.c.doc_id == doc_id)
                )
            ).fetchone()
        return _row_to_document(row) if row is not None else None

    def _list_sync(self, name: str) -> list[dict]:
        with self._sql_lock, self.engine.connect() as conn:
            rows = conn.execute(
                select(_documents.c.doc_id, _documents.c.data)
                .where(_documents.c.collection == name)
                .order_by(_documents.c.id)
            ).fetchall()
        return [_row_to_document(r) for r in rows]

    def _merge_write_sync(self, name: str, doc_id: str, partial: dict) -> dict:
        # Two attempts: a concurrent insert of the same id turns the second
        # attempt into an update.
        for attempt in (1, 2):
            try:
                return self._upsert(name, doc_id, partial)
            except IntegrityError as exc:
                if attempt == 2:
                    raise StoreWriteFailure(name, doc_id, str(exc.orig)) from exc
            except SQLAlchemyError as exc:
                raise StoreWriteFailure(name, doc_id, str(exc)) from exc
        raise StoreWriteFailure(name, doc_id, "unreachable")  # pragma: no cover

    def _upsert(self, name: str, doc_id: str, partial: dict) -> dict:
        now = _now_iso()
        partial = {k: v for k, v in partial.items() if k != "id"}
        where = (_documents.c.collection == name) & (_documents.c.doc_id == doc_id)
        with self._sql_lock, self.engine.connect() as conn:
            row = conn.execute(select(_documents.c.data).where(where)).fetchone()
            if row is None:
                merged = dict(partial)
                conn.execute(
                    _documents.insert().values(
                        collection=name,
                        doc_id=doc_id,
                        data=json.dumps(merged, default=str),
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                merged = {**json.loads(row.data), **partial}
                conn.execute(_documents.update().where(where).values(data=json.dumps(merged, default=str), updated_at=now))
            conn.commit()
        return {"id": doc_id, **merged}


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_document(row) -> dict:
    data = json.loads(row.data)
    data.pop("id", None)
    return {"id": row.doc_id, **data}
