"""
identity/local.py -- Self-hosted identity provider backed by SQLAlchemy Core.

Stands in for a hosted provider in development, tests and single-host
installs. It behaves like one from the outside: accounts keyed by an opaque
uid, secrets checked with bcrypt, reset "emails" recorded in a table for an
outbound mailer (or an operator) to pick up.

Security:
  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
  equalizes sign-in timing so response time does not reveal whether an email
  is registered [C1].

  All queries use bound parameters. bcrypt and SQL run in worker threads via
  asyncio.to_thread so sign-in never stalls the event loop.

Layer rule: imports core/ and identity/base.py only.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import bcrypt
from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from core.config import get_settings
from core.errors import InvalidCredential, ProviderConflict, ProviderFailure
from identity.base import IdentityProviderClient, ProviderAccount

logger = logging.getLogger("accessgate.identity.local")

# Same floor as hosted providers (Firebase rejects shorter with WEAK_PASSWORD).
_MIN_SECRET_LENGTH = 6

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("uid", String(64), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_password_resets = Table(
    "password_resets",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("requested_at", String(32), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext secret."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext secret matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once so the first sign-in is not measurably slower than later ones [C1].
_DUMMY_HASH: str = hash_password("accessgate_timing_dummy")


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class LocalIdentityProvider(IdentityProviderClient):
    """Identity provider whose accounts live in a local SQL database.

    Usage:
        provider = LocalIdentityProvider("sqlite:///:memory:")
        account = await provider.create_account("a@x.com", "Secret123")
        await provider.sign_in("a@x.com", "Secret123")
        provider.close()
    """

    name = "local"

    def __init__(self, db_url: str | None = None) -> None:
        super().__init__()
        db_url = db_url or get_settings().identity_db_url
        engine_kwargs: dict[str, Any] = {}
        if db_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in db_url or db_url in ("sqlite://", "sqlite:///"):
                engine_kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(db_url, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._sql_lock = threading.Lock()

    # ------------------------------------------------------------------
    # IdentityProviderClient
    # ------------------------------------------------------------------

    async def create_account(self, email: str, secret: str) -> ProviderAccount:
        """Register a new account. Raises ProviderConflict if the email is taken."""
        email = _normalize(email)
        if len(secret) < _MIN_SECRET_LENGTH:
            raise ProviderFailure(
                f"Password should be at least {_MIN_SECRET_LENGTH} characters", provider_code="WEAK_PASSWORD"
            )
        uid = await asyncio.to_thread(self._insert_account, email, secret)
        logger.info("Local account created uid=%s", uid)
        return ProviderAccount(uid=uid, email=email)

    async def sign_in(self, email: str, secret: str) -> ProviderAccount:
        """Authenticate and take over the ambient session.

        Always runs bcrypt whether or not the account exists [C1].
        """
        row = await asyncio.to_thread(self._check_credentials, _normalize(email), secret)
        if row is None:
            raise InvalidCredential("Invalid email or password.", provider_code="INVALID_LOGIN_CREDENTIALS")
        self._session_uid = row.uid
        return ProviderAccount(uid=row.uid, email=row.email)

    async def sign_out(self) -> None:
        self._session_uid = None

    async def send_reset_email(self, email: str) -> None:
        """Queue a reset notice. Raises InvalidCredential for unknown emails."""
        email = _normalize(email)
        if not await asyncio.to_thread(self._queue_reset, email):
            raise InvalidCredential("There is no account for this email.", provider_code="EMAIL_NOT_FOUND")
        logger.info("Password reset queued for %s", email)

    async def account_exists(self, email: str) -> bool:
        return await asyncio.to_thread(self._find, _normalize(email)) is not None

    # ------------------------------------------------------------------
    # Local-only helpers
    # ------------------------------------------------------------------

    def reset_requests(self, email: Optional[str] = None) -> list[str]:
        """Return emails with queued reset notices, oldest first."""
        query = select(_password_resets.c.email).order_by(_password_resets.c.id)
        if email is not None:
            query = query.where(_password_resets.c.email == _normalize(email))
        with self._sql_lock, self.engine.connect() as conn:
            return [row.email for row in conn.execute(query).fetchall()]

    def account_count(self) -> int:
        with self._sql_lock, self.engine.connect() as conn:
            return conn.execute(text("SELECT COUNT(*) FROM accounts")).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Blocking work (run in worker threads)
    # ------------------------------------------------------------------

    def _find(self, email: str):
        with self._sql_lock, self.engine.connect() as conn:
            return conn.execute(_accounts.select().where(_accounts.c.email == email)).fetchone()

    def _insert_account(self, email: str, secret: str) -> str:
        if self._find(email) is not None:
            raise ProviderConflict("The email address is already in use.", provider_code="EMAIL_EXISTS")
        uid = uuid.uuid4().hex[:28]
        hashed = hash_password(secret)
        try:
            with self._sql_lock, self.engine.connect() as conn:
                conn.execute(_accounts.insert().values(uid=uid, email=email, hashed_password=hashed, created_at=_now_iso()))
                conn.commit()
        except IntegrityError as exc:
            # Lost a race with a concurrent create for the same email.
            raise ProviderConflict("The email address is already in use.", provider_code="EMAIL_EXISTS") from exc
        return uid

    def _check_credentials(self, email: str, secret: str):
        row = self._find(email)
        if row is None:
            verify_password(secret, _DUMMY_HASH)
            return None
        return row if verify_password(secret, row.hashed_password) else None

    def _queue_reset(self, email: str) -> bool:
        if self._find(email) is None:
            return False
        with self._sql_lock, self.engine.connect() as conn:
            conn.execute(_password_resets.insert().values(email=email, requested_at=_now_iso()))
            conn.commit()
        return True
