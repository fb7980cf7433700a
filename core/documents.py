"""
core/documents.py -- Translate between stored documents and domain dataclasses.

Pattern: Data Mapper. The persisted field names below are shared with the
existing document store and must not change:

  waitlist        email, name, status, timestamp, approvedAt, registeredAt,
                  uid, tempPassword, lastUsedPassword
  users           email, name, userId, role, isApproved, permissions,
                  tempPassword, waitlistId, created_at, updated_at
  approved_users  email, userId, isApproved, tempPassword, approvedAt,
                  waitlistId

Readers are lenient: legacy documents may miss any field, or carry a status
the core never writes (e.g. "contacted"), which reads as pending.
"""

from __future__ import annotations

from typing import Any, Optional

from core.models import (
    ROLE_ADMIN,
    ROLE_REGULAR,
    STATUS_PENDING,
    STATUS_RANK,
    LegacyApprovedRecord,
    UserRecord,
    WaitlistEntry,
)


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


# ---------------------------------------------------------------------------
# Document -> domain
# ---------------------------------------------------------------------------


def waitlist_entry_from_doc(doc: dict) -> WaitlistEntry:
    status = doc.get("status") or STATUS_PENDING
    if status not in STATUS_RANK:
        status = STATUS_PENDING
    return WaitlistEntry(
        id=doc["id"],
        email=doc.get("email", ""),
        status=status,
        joined_at=str(doc.get("timestamp") or ""),
        name=doc.get("name") or "",
        uid=_str_or_none(doc.get("uid")),
        temp_secret=_str_or_none(doc.get("tempPassword")),
        last_used_secret=_str_or_none(doc.get("lastUsedPassword")),
        approved_at=_str_or_none(doc.get("approvedAt")),
        registered_at=_str_or_none(doc.get("registeredAt")),
    )


def user_from_doc(doc: dict) -> UserRecord:
    permissions = doc.get("permissions")
    role = doc.get("role")
    return UserRecord(
        id=doc["id"],
        email=doc.get("email", ""),
        role=role if role == ROLE_ADMIN else ROLE_REGULAR,
        is_approved=doc.get("isApproved") is True,
        permissions=dict(permissions) if isinstance(permissions, dict) else {},
        name=doc.get("name") or "",
        temp_secret=_str_or_none(doc.get("tempPassword")),
        waitlist_id=_str_or_none(doc.get("waitlistId")),
        created_at=str(doc.get("created_at") or ""),
        updated_at=str(doc.get("updated_at") or ""),
    )


def legacy_from_doc(doc: dict) -> LegacyApprovedRecord:
    return LegacyApprovedRecord(
        id=doc["id"],
        email=doc.get("email", ""),
        is_approved=doc.get("isApproved") is True,
        temp_secret=_str_or_none(doc.get("tempPassword")),
        approved_at=str(doc.get("approvedAt") or doc.get("created_at") or ""),
        waitlist_id=_str_or_none(doc.get("waitlistId")),
    )


# ---------------------------------------------------------------------------
# Domain -> document fields
# ---------------------------------------------------------------------------


def user_to_doc(user: UserRecord) -> dict:
    """Full document for a UserRecord. Optional fields are omitted when unset."""
    doc: dict[str, Any] = {
        "email": user.email,
        "userId": user.id,
        "role": user.role,
        "isApproved": user.is_approved,
        "permissions": dict(user.permissions),
        "created_at": user.created_at,
        "updated_at": user.updated_at,
    }
    if user.name:
        doc["name"] = user.name
    if user.temp_secret:
        doc["tempPassword"] = user.temp_secret
    if user.waitlist_id:
        doc["waitlistId"] = user.waitlist_id
    return doc


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


def sort_documents(docs: list[dict], order_by: Optional[str], descending: bool = True) -> list[dict]:
    """Order documents by a top-level field. Documents without the field go last."""
    if not order_by:
        return list(docs)
    present = [d for d in docs if d.get(order_by) not in (None, "")]
    missing = [d for d in docs if d.get(order_by) in (None, "")]
    present.sort(key=lambda d: str(d[order_by]), reverse=descending)
    return present + missing
