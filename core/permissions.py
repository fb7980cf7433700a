"""
core/permissions.py -- Effective capability sets for user records.

Admin rights are computed, never stored: resolve() grants every known key to
role == "admin" regardless of the stored map. The stored map on admin
records is only kept full for readers that look at raw documents; the
reconciliation sweep repairs it with needs_admin_repair().

resolve() is total. A record with a missing, empty or malformed map still
yields a value for every known key, and only the literal boolean True counts
as granted.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from core.documents import user_from_doc
from core.errors import InvalidPermissionEdit, UserNotFound
from core.models import ROLE_ADMIN, Collection, UserRecord

if TYPE_CHECKING:
    from records.store import RecordStore

logger = logging.getLogger("accessgate.permissions")


def full_permissions(keys: Iterable[str]) -> dict[str, bool]:
    return {key: True for key in keys}


class PermissionResolver:
    """Compute effective permissions against a fixed catalogue of keys."""

    def __init__(self, all_keys: Iterable[str]) -> None:
        self.all_keys: tuple[str, ...] = tuple(dict.fromkeys(all_keys))

    def resolve(self, user: UserRecord, all_keys: Optional[Iterable[str]] = None) -> dict[str, bool]:
        keys = tuple(all_keys) if all_keys is not None else self.all_keys
        if user.role == ROLE_ADMIN:
            return full_permissions(keys)
        stored = user.permissions if isinstance(user.permissions, Mapping) else {}
        return {key: stored.get(key) is True for key in keys}

    def full(self) -> dict[str, bool]:
        return full_permissions(self.all_keys)

    def needs_admin_repair(self, user: UserRecord) -> bool:
        """True for an admin whose stored map does not grant every known key."""
        if user.role != ROLE_ADMIN:
            return False
        stored = user.permissions if isinstance(user.permissions, Mapping) else {}
        return any(stored.get(key) is not True for key in self.all_keys)


# ---------------------------------------------------------------------------
# Lookups by user id
# ---------------------------------------------------------------------------


async def resolve_user_permissions(store: RecordStore, resolver: PermissionResolver, user_id: str) -> dict[str, bool]:
    """Effective permissions for a stored user. Raises UserNotFound."""
    doc = await store.get_or_none(Collection.USERS, user_id)
    if doc is None:
        raise UserNotFound(Collection.USERS.value, user_id)
    return resolver.resolve(user_from_doc(doc))


async def update_user_permissions(
    store: RecordStore,
    resolver: PermissionResolver,
    user_id: str,
    permissions: Mapping[str, bool],
) -> UserRecord:
    """Replace the stored permission map of a regular user.

    Keys outside the catalogue raise ValueError. Admin records raise
    InvalidPermissionEdit: their rights are computed, so an edit would be
    silently ignored.
    """
    unknown = set(permissions) - set(resolver.all_keys)
    if unknown:
        raise ValueError(f"Unknown permission keys: {sorted(unknown)!r}")

    doc = await store.get_or_none(Collection.USERS, user_id)
    if doc is None:
        raise UserNotFound(Collection.USERS.value, user_id)
    user = user_from_doc(doc)
    if user.role == ROLE_ADMIN:
        raise InvalidPermissionEdit("Admin permissions are implicit and cannot be edited.")

    new_map = {key: permissions.get(key) is True for key in resolver.all_keys}
    updated = await store.merge_write(
        Collection.USERS,
        user_id,
        {"permissions": new_map, "updated_at": datetime.now(timezone.utc).isoformat()},
    )
    logger.info("Permissions updated for user %s (%d granted)", user_id, sum(new_map.values()))
    return user_from_doc(updated)
