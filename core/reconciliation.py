"""
core/reconciliation.py -- Idempotent repair pass over the record store.

Run before any user list is presented. One pass:

  1. load users and approved_users
  2. synthesize a users record for every approved_users record without one
  3. guarantee the bootstrap admin: create it, or force admin + approved +
     full permissions
  4. refill the stored permission map of every admin that does not grant
     every known key
  5. apply the queued changes, one merge-write per uid; failures are logged
     and recorded, the rest still run
  6. return the reconciled users, newest created_at first

Every rule compares against the stored state before queueing, so a second run
with nothing changed in between writes nothing.

The returned records also carry a display-only temp_secret fallback taken
from the linked waitlist entry or approved_users record. That fallback is
never written back.

Layer rule: imports core/ only.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional

from core.documents import legacy_from_doc, sort_documents, user_from_doc, user_to_doc, waitlist_entry_from_doc
from core.errors import StoreWriteFailure
from core.models import ROLE_ADMIN, ROLE_REGULAR, BootstrapAdmin, Collection, SweepReport, UserRecord, WriteFailure
from core.permissions import PermissionResolver

if TYPE_CHECKING:
    from records.store import RecordStore

logger = logging.getLogger("accessgate.reconciliation")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ReconciliationSweep:
    """Restores the cross-collection invariants the provisioning flows can leave broken.

    Usage:
        sweep = ReconciliationSweep(store, resolver, BootstrapAdmin(uid, email))
        report = await sweep.run()
        for user in report.users:
            ...
    """

    def __init__(
        self,
        store: RecordStore,
        resolver: PermissionResolver,
        bootstrap: BootstrapAdmin,
        clock: Callable[[], str] = _utc_now_iso,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.bootstrap = bootstrap
        self._now = clock

    async def run(self) -> SweepReport:
        report = SweepReport()
        user_docs = {doc["id"]: doc for doc in await self.store.list(Collection.USERS)}
        legacy_docs = {doc["id"]: doc for doc in await self.store.list(Collection.LEGACY_APPROVED)}
        queued: dict[str, dict[str, Any]] = {}

        self._queue_missing_users(user_docs, legacy_docs, queued, report)
        self._queue_bootstrap_admin(user_docs, queued, report)
        self._queue_admin_permission_repairs(user_docs, queued, report)

        for uid, fields in queued.items():
            try:
                user_docs[uid] = await self.store.merge_write(Collection.USERS, uid, fields)
                report.writes += 1
            except StoreWriteFailure as exc:
                logger.error("Reconciliation write to users/%s failed: %s", uid, exc.reason)
                report.failures.append(
                    WriteFailure(collection=Collection.USERS.value, doc_id=uid, fields=tuple(sorted(fields)), error=exc.reason)
                )
                # Keep the intended state in the returned list.
                user_docs[uid] = {**user_docs.get(uid, {}), "id": uid, **fields}

        ordered = sort_documents(list(user_docs.values()), "created_at", descending=True)
        report.users = [await self._with_display_secret(user_from_doc(doc), legacy_docs) for doc in ordered]

        if report.writes or report.failures:
            logger.info(
                "Reconciliation: %d writes, %d synthesized, %d repaired, %d failed",
                report.writes,
                len(report.synthesized),
                len(report.repaired),
                len(report.failures),
            )
        return report

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _queue_missing_users(
        self,
        user_docs: dict[str, dict],
        legacy_docs: dict[str, dict],
        queued: dict[str, dict[str, Any]],
        report: SweepReport,
    ) -> None:
        for uid, doc in legacy_docs.items():
            if uid in user_docs:
                continue
            legacy = legacy_from_doc(doc)
            created = legacy.approved_at or self._now()
            queued[uid] = user_to_doc(
                UserRecord(
                    id=uid,
                    email=legacy.email,
                    role=ROLE_REGULAR,
                    is_approved=legacy.is_approved,
                    waitlist_id=legacy.waitlist_id,
                    created_at=created,
                    updated_at=created,
                )
            )
            report.synthesized.append(uid)
            logger.info("Synthesizing users/%s from approved_users", uid)

    def _queue_bootstrap_admin(
        self,
        user_docs: dict[str, dict],
        queued: dict[str, dict[str, Any]],
        report: SweepReport,
    ) -> None:
        uid = self.bootstrap.uid
        doc = user_docs.get(uid)
        if doc is None:
            if uid in queued:
                # Found only in approved_users: upgrade the synthesized record.
                queued[uid].update(role=ROLE_ADMIN, isApproved=True, permissions=self.resolver.full())
                return
            now = self._now()
            queued[uid] = user_to_doc(
                UserRecord(
                    id=uid,
                    email=self.bootstrap.email,
                    role=ROLE_ADMIN,
                    is_approved=True,
                    permissions=self.resolver.full(),
                    created_at=now,
                    updated_at=now,
                )
            )
            report.synthesized.append(uid)
            logger.warning("Bootstrap admin %s had no users record; created", uid)
            return

        user = user_from_doc(doc)
        if user.role != ROLE_ADMIN or not user.is_approved:
            queued.setdefault(uid, {}).update(
                role=ROLE_ADMIN,
                isApproved=True,
                permissions=self.resolver.full(),
                updated_at=self._now(),
            )
            report.repaired.append(uid)
            logger.warning("Bootstrap admin %s was %s/approved=%s; restored", uid, user.role, user.is_approved)

    def _queue_admin_permission_repairs(
        self,
        user_docs: dict[str, dict],
        queued: dict[str, dict[str, Any]],
        report: SweepReport,
    ) -> None:
        for uid, doc in user_docs.items():
            if uid in queued:
                continue
            user = user_from_doc(doc)
            if self.resolver.needs_admin_repair(user):
                queued[uid] = {"permissions": self.resolver.full(), "updated_at": self._now()}
                report.repaired.append(uid)
                logger.info("Refilling stored permissions for admin %s", uid)

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    async def _with_display_secret(self, user: UserRecord, legacy_docs: dict[str, dict]) -> UserRecord:
        if user.temp_secret:
            return user
        secret: Optional[str] = None
        if user.waitlist_id:
            entry_doc = await self.store.get_or_none(Collection.WAITLIST, user.waitlist_id)
            if entry_doc is not None:
                entry = waitlist_entry_from_doc(entry_doc)
                secret = entry.temp_secret or entry.last_used_secret
        if secret is None and user.id in legacy_docs:
            secret = legacy_from_doc(legacy_docs[user.id]).temp_secret
        if secret:
            user.temp_secret = secret
        return user
