"""
core/provisioning.py -- Waitlist lifecycle: pending -> approved -> registered.

ProvisioningStateMachine is the only writer of waitlist status. Each public
operation is one sequential pipeline of remote calls:

    probe / create provider account -> verify secret -> merge-write users
    -> merge-write approved_users -> merge-write waitlist

Failure policy:
  ProviderConflict      -- approve() and create_account() fall back to the
                           reset-email path; self_register() and
                           admin_create_user() surface it.
  other provider errors -- abort before any store write.
  StoreWriteFailure     -- logged, recorded as a WriteFailure on the outcome,
                           and the remaining writes still run. There is no
                           transaction across the three collections; the
                           reconciliation sweep repairs what it can.
  verification failure  -- never aborts. The outcome carries
                           secret_verified=False and a warning.

Status only moves forward (_advance). Operations additionally check their own
precondition: approve() needs pending, create_account() needs approved.

Secrets are never logged.

Layer rule: imports core/ only. The identity collaborators are duck-typed
(see identity/base.py and identity/policies.py for the contracts).
"""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional

from core.documents import user_from_doc, waitlist_entry_from_doc
from core.errors import (
    EntryNotFound,
    IdentityProviderError,
    InvalidTransition,
    ProviderConflict,
    RegistrationClosed,
    StoreWriteFailure,
    UserNotFound,
)
from core.models import (
    PLACEHOLDER_UID_PREFIX,
    ROLE_ADMIN,
    ROLE_REGULAR,
    ROLES,
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_RANK,
    STATUS_REGISTERED,
    Collection,
    ProvisioningOutcome,
    UserRecord,
    WaitlistEntry,
    WriteFailure,
)
from core.permissions import PermissionResolver
from core.secret_generator import SecretGenerator

if TYPE_CHECKING:
    from identity.base import IdentityProviderClient
    from identity.policies import CredentialVerifier, ExistenceProbe
    from records.store import RecordStore

logger = logging.getLogger("accessgate.provisioning")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

UNVERIFIED_WARNING = "The issued secret could not be confirmed against the identity provider; validate it manually."


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_email(email: str) -> str:
    """Return the normalized email, or raise ValueError if it is not address-shaped."""
    normalized = normalize_email(email)
    if not _EMAIL_RE.match(normalized):
        raise ValueError(f"Not a valid email address: {email!r}")
    return normalized


def _entry_email(entry: WaitlistEntry) -> str:
    """Validated email of a stored entry, or InvalidTransition if it has none."""
    try:
        return validate_email(entry.email)
    except ValueError as exc:
        raise InvalidTransition(f"Waitlist entry {entry.id} has no valid email address") from exc


def placeholder_uid(email: str) -> str:
    """Stable stand-in uid for an account that exists at the provider but not here."""
    digest = hashlib.sha256(normalize_email(email).encode("utf-8")).hexdigest()
    return f"{PLACEHOLDER_UID_PREFIX}{digest[:16]}"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _advance(entry: WaitlistEntry, target: str) -> str:
    """Return target if moving there does not regress entry.status."""
    if STATUS_RANK[target] < STATUS_RANK[entry.status]:
        raise InvalidTransition(f"Waitlist entry {entry.id} cannot move from {entry.status} back to {target}")
    return target


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ProvisioningStateMachine:
    """Orchestrates account provisioning across the provider and the record store.

    Usage:
        machine = ProvisioningStateMachine(store, identity, probe, verifier,
                                           SecretGenerator(), resolver)
        outcome = await machine.approve(entry_id)
        if outcome.session_invalidated:
            ...  # acting admin must sign in to the provider again
    """

    def __init__(
        self,
        store: RecordStore,
        identity: IdentityProviderClient,
        probe: ExistenceProbe,
        verifier: CredentialVerifier,
        generator: SecretGenerator,
        resolver: PermissionResolver,
        self_registration_enabled: bool = True,
        clock: Callable[[], str] = _utc_now_iso,
    ) -> None:
        self.store = store
        self.identity = identity
        self.probe = probe
        self.verifier = verifier
        self.generator = generator
        self.resolver = resolver
        self.self_registration_enabled = self_registration_enabled
        self._now = clock

    # ------------------------------------------------------------------
    # Waitlist signup
    # ------------------------------------------------------------------

    async def join_waitlist(self, email: str, name: str = "") -> ProvisioningOutcome:
        """Add email to the waitlist as pending. Existing entries are returned unchanged."""
        email = validate_email(email)
        existing = await self.store.query(Collection.WAITLIST, email=email)
        if existing:
            logger.info("Waitlist signup for existing entry %s", existing[0]["id"])
            return ProvisioningOutcome(entry=waitlist_entry_from_doc(existing[0]), created=False)

        fields: dict[str, Any] = {"email": email, "status": STATUS_PENDING, "timestamp": self._now()}
        if name.strip():
            fields["name"] = name.strip()
        entry_id = await self.store.add(Collection.WAITLIST, fields)
        logger.info("Waitlist entry %s created", entry_id)
        return ProvisioningOutcome(entry=waitlist_entry_from_doc({"id": entry_id, **fields}))

    # ------------------------------------------------------------------
    # pending -> approved
    # ------------------------------------------------------------------

    async def approve(self, entry_id: str) -> ProvisioningOutcome:
        """Approve a pending entry, provisioning a provider account if none exists.

        Raises EntryNotFound, InvalidTransition, or ProviderFailure (before
        any write). Everything else is reported on the outcome.
        """
        doc = await self._load_entry(entry_id)
        entry = waitlist_entry_from_doc(doc)
        if entry.status != STATUS_PENDING:
            raise InvalidTransition(f"Waitlist entry {entry_id} is {entry.status}; only pending entries can be approved")

        email = _entry_email(entry)
        outcome = ProvisioningOutcome()

        exists = await self.probe.exists(email)
        outcome.reset_email_sent = exists and self.probe.sends_reset_email

        secret: Optional[str] = None
        uid: Optional[str] = None
        if not exists:
            candidate = self.generator.generate()
            try:
                account = await self.identity.create_account(email, candidate)
            except ProviderConflict:
                logger.info("Provider account for entry %s already exists; using reset path", entry_id)
                exists = True
            else:
                uid, secret = account.uid, candidate
                await self._verify(outcome, email, secret)

        if exists:
            uid = await self._existing_uid(email)
            if not outcome.reset_email_sent:
                outcome.reset_email_sent = await self._request_reset(outcome, email)

        now = self._now()
        outcome.user = await self._write_approved_user(outcome, uid, email, entry, secret, now)
        await self._write_legacy(outcome, uid, email, entry.id, secret, now)

        entry_fields: dict[str, Any] = {
            "status": _advance(entry, STATUS_APPROVED),
            "approvedAt": now,
            "uid": uid,
        }
        if secret:
            entry_fields["tempPassword"] = secret
        outcome.entry = await self._write_entry(outcome, doc, entry_fields)
        outcome.secret = secret
        logger.info(
            "Waitlist entry %s approved uid=%s (new_account=%s, verified=%s)",
            entry_id,
            uid,
            secret is not None,
            outcome.secret_verified,
        )
        return outcome

    # ------------------------------------------------------------------
    # approved -> registered
    # ------------------------------------------------------------------

    async def create_account(self, entry_id: str, secret: str) -> ProvisioningOutcome:
        """Create the deferred provider account for an approved entry.

        A ProviderConflict leaves the entry approved, requests a reset email
        and returns a warning instead of raising.
        """
        doc = await self._load_entry(entry_id)
        entry = waitlist_entry_from_doc(doc)
        if entry.status != STATUS_APPROVED:
            raise InvalidTransition(
                f"Waitlist entry {entry_id} is {entry.status}; accounts are created for approved entries only"
            )

        email = _entry_email(entry)
        outcome = ProvisioningOutcome(entry=entry, created=False)
        try:
            account = await self.identity.create_account(email, secret)
        except ProviderConflict:
            outcome.reset_email_sent = await self._request_reset(outcome, email)
            outcome.warnings.append(f"{email} already has an account; a password reset email was requested instead.")
            logger.info("Deferred account for entry %s already exists; entry stays approved", entry_id)
            return outcome

        outcome.created = True
        await self._verify(outcome, email, secret)
        now = self._now()
        outcome.user = await self._write_approved_user(outcome, account.uid, email, entry, secret, now)
        await self._write_legacy(outcome, account.uid, email, entry.id, secret, now)
        outcome.entry = await self._write_entry(
            outcome,
            doc,
            {
                "status": _advance(entry, STATUS_REGISTERED),
                "registeredAt": now,
                "uid": account.uid,
                "tempPassword": secret,
                "lastUsedPassword": secret,
            },
        )
        logger.info("Waitlist entry %s registered uid=%s", entry_id, account.uid)
        return outcome

    # ------------------------------------------------------------------
    # Self registration
    # ------------------------------------------------------------------

    async def self_register(self, email: str, secret: str, name: str = "") -> ProvisioningOutcome:
        """Create an account for a visitor, auto-approving previously approved emails.

        Every provider error is surfaced; there is no admin to fall back to.
        """
        if not self.self_registration_enabled:
            raise RegistrationClosed("Self registration is disabled.")
        email = validate_email(email)

        legacy_matches = await self.store.query(Collection.LEGACY_APPROVED, email=email)
        waitlist_matches = await self.store.query(Collection.WAITLIST, email=email, status=STATUS_APPROVED)
        auto_approve = bool(legacy_matches or waitlist_matches)

        account = await self.identity.create_account(email, secret)
        outcome = ProvisioningOutcome()
        now = self._now()

        user_fields: dict[str, Any] = {
            "email": email,
            "userId": account.uid,
            "role": ROLE_REGULAR,
            "isApproved": auto_approve,
            "permissions": {},
            "created_at": now,
            "updated_at": now,
        }
        if name.strip():
            user_fields["name"] = name.strip()
        waitlist_doc = waitlist_matches[0] if waitlist_matches else None
        if waitlist_doc is not None:
            user_fields["waitlistId"] = waitlist_doc["id"]
        written = await self._write(outcome, Collection.USERS, account.uid, user_fields)
        outcome.user = user_from_doc(written or {"id": account.uid, **user_fields})

        if auto_approve:
            legacy_fields: dict[str, Any] = {"email": email, "userId": account.uid, "isApproved": True, "approvedAt": now}
            if waitlist_doc is not None:
                legacy_fields["waitlistId"] = waitlist_doc["id"]
            await self._write(outcome, Collection.LEGACY_APPROVED, account.uid, legacy_fields)

        if waitlist_doc is not None:
            entry = waitlist_entry_from_doc(waitlist_doc)
            outcome.entry = await self._write_entry(
                outcome,
                waitlist_doc,
                {"status": _advance(entry, STATUS_REGISTERED), "registeredAt": now, "uid": account.uid},
            )
        logger.info("Self registration uid=%s approved=%s", account.uid, auto_approve)
        return outcome

    # ------------------------------------------------------------------
    # Admin user management
    # ------------------------------------------------------------------

    async def admin_create_user(
        self,
        email: str,
        role: str = ROLE_REGULAR,
        name: str = "",
        secret: Optional[str] = None,
    ) -> ProvisioningOutcome:
        """Create an approved account directly, bypassing the waitlist."""
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role!r}")
        email = validate_email(email)
        generated = secret is None
        secret = secret or self.generator.generate()

        account = await self.identity.create_account(email, secret)
        outcome = ProvisioningOutcome(secret=secret if generated else None)
        await self._verify(outcome, email, secret)

        now = self._now()
        user_fields: dict[str, Any] = {
            "email": email,
            "userId": account.uid,
            "role": role,
            "isApproved": True,
            "permissions": self.resolver.full() if role == ROLE_ADMIN else {},
            "tempPassword": secret,
            "created_at": now,
            "updated_at": now,
        }
        if name.strip():
            user_fields["name"] = name.strip()
        written = await self._write(outcome, Collection.USERS, account.uid, user_fields)
        outcome.user = user_from_doc(written or {"id": account.uid, **user_fields})
        await self._write(
            outcome,
            Collection.LEGACY_APPROVED,
            account.uid,
            {"email": email, "userId": account.uid, "isApproved": True, "tempPassword": secret, "approvedAt": now},
        )
        logger.info("Admin created user uid=%s role=%s", account.uid, role)
        return outcome

    async def reset_secret(self, user_id: str) -> ProvisioningOutcome:
        """Store a fresh candidate secret for a user and request a provider reset email.

        The provider account keeps its old secret until the user follows the
        email, so the new one is reported as unverified.
        """
        user_doc = await self.store.get_or_none(Collection.USERS, user_id)
        if user_doc is None:
            raise UserNotFound(Collection.USERS.value, user_id)
        user = user_from_doc(user_doc)

        secret = self.generator.generate()
        outcome = ProvisioningOutcome(secret=secret, secret_verified=False, created=False)
        now = self._now()
        written = await self._write(
            outcome, Collection.USERS, user_id, {"tempPassword": secret, "updated_at": now}
        )
        outcome.user = user_from_doc(written or user_doc)
        if await self.store.get_or_none(Collection.LEGACY_APPROVED, user_id) is not None:
            await self._write(outcome, Collection.LEGACY_APPROVED, user_id, {"tempPassword": secret})

        outcome.reset_email_sent = await self._request_reset(outcome, user.email)
        outcome.warnings.append(UNVERIFIED_WARNING)
        logger.info("Secret reset for user %s (reset email sent=%s)", user_id, outcome.reset_email_sent)
        return outcome

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_entry(self, entry_id: str) -> dict:
        doc = await self.store.get_or_none(Collection.WAITLIST, entry_id)
        if doc is None:
            raise EntryNotFound(Collection.WAITLIST.value, entry_id)
        return doc

    async def _existing_uid(self, email: str) -> str:
        """uid for an email the provider already knows: a stored user's id, else a placeholder."""
        for doc in await self.store.query(Collection.USERS, email=email):
            return doc["id"]
        return placeholder_uid(email)

    async def _verify(self, outcome: ProvisioningOutcome, email: str, secret: str) -> None:
        result = await self.verifier.verify(email, secret)
        outcome.secret_verified = result.verified
        outcome.session_invalidated = outcome.session_invalidated or result.session_invalidated
        if not result.verified:
            outcome.warnings.append(UNVERIFIED_WARNING)

    async def _request_reset(self, outcome: ProvisioningOutcome, email: str) -> bool:
        try:
            await self.identity.send_reset_email(email)
        except IdentityProviderError as exc:
            logger.warning("Reset email for %s failed: %s", email, exc.provider_code or exc)
            outcome.warnings.append(f"Password reset email to {email} could not be sent.")
            return False
        return True

    async def _write(
        self, outcome: ProvisioningOutcome, collection: Collection, doc_id: str, fields: dict[str, Any]
    ) -> Optional[dict]:
        """Merge-write one document; a failure is recorded, never raised."""
        try:
            return await self.store.merge_write(collection, doc_id, fields)
        except StoreWriteFailure as exc:
            logger.error("Write to %s/%s failed: %s", collection.value, doc_id, exc.reason)
            outcome.failed_writes.append(
                WriteFailure(collection=collection.value, doc_id=doc_id, fields=tuple(sorted(fields)), error=exc.reason)
            )
            return None

    async def _write_approved_user(
        self,
        outcome: ProvisioningOutcome,
        uid: str,
        email: str,
        entry: WaitlistEntry,
        secret: Optional[str],
        now: str,
    ) -> UserRecord:
        existing = await self.store.get_or_none(Collection.USERS, uid)
        role = ROLE_ADMIN if existing is not None and existing.get("role") == ROLE_ADMIN else ROLE_REGULAR
        fields: dict[str, Any] = {
            "email": email,
            "userId": uid,
            "role": role,
            "isApproved": True,
            "waitlistId": entry.id,
            "updated_at": now,
        }
        if existing is None:
            fields["created_at"] = now
            fields["permissions"] = {}
        if entry.name and not (existing or {}).get("name"):
            fields["name"] = entry.name
        if secret:
            fields["tempPassword"] = secret
        written = await self._write(outcome, Collection.USERS, uid, fields)
        return user_from_doc(written or {**(existing or {}), "id": uid, **fields})

    async def _write_legacy(
        self,
        outcome: ProvisioningOutcome,
        uid: str,
        email: str,
        waitlist_id: str,
        secret: Optional[str],
        now: str,
    ) -> None:
        fields: dict[str, Any] = {
            "email": email,
            "userId": uid,
            "isApproved": True,
            "approvedAt": now,
            "waitlistId": waitlist_id,
        }
        if secret:
            fields["tempPassword"] = secret
        await self._write(outcome, Collection.LEGACY_APPROVED, uid, fields)

    async def _write_entry(self, outcome: ProvisioningOutcome, doc: dict, fields: dict[str, Any]) -> WaitlistEntry:
        """Write entry fields; on failure return the entry as it still is in the store."""
        written = await self._write(outcome, Collection.WAITLIST, doc["id"], fields)
        return waitlist_entry_from_doc(written if written is not None else doc)
