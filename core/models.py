"""
core/models.py -- Domain dataclasses for the provisioning core.

Pure data containers. State transitions live in core/provisioning.py, repair
rules in core/reconciliation.py, and translation to stored documents in
core/documents.py.

Secrets: temp_secret / last_used_secret hold plaintext credentials. They are
persisted as tempPassword / lastUsedPassword for compatibility with existing
records. This is a known defect carried over deliberately -- see DESIGN.md.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REGISTERED = "registered"

# Order matters: a status may only move to one with a higher rank.
WAITLIST_STATUSES: tuple[str, ...] = (STATUS_PENDING, STATUS_APPROVED, STATUS_REGISTERED)
STATUS_RANK: dict[str, int] = {status: rank for rank, status in enumerate(WAITLIST_STATUSES)}

ROLE_ADMIN = "admin"
ROLE_REGULAR = "regular"
ROLES: tuple[str, ...] = (ROLE_ADMIN, ROLE_REGULAR)

PLACEHOLDER_UID_PREFIX = "existing_"


class Collection(str, Enum):
    """Logical collections and their physical names in the document store."""

    WAITLIST = "waitlist"
    USERS = "users"
    LEGACY_APPROVED = "approved_users"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class WaitlistEntry:
    """A prospective user's signup, before (and while) an account is provisioned."""

    id: str
    email: str
    status: str = STATUS_PENDING  # "pending" | "approved" | "registered"
    joined_at: str = ""  # ISO 8601
    name: str = ""
    uid: Optional[str] = None
    temp_secret: Optional[str] = None
    last_used_secret: Optional[str] = None
    approved_at: Optional[str] = None
    registered_at: Optional[str] = None


@dataclass
class UserRecord:
    """One record per identity-provider account. Canonical role/approval/permissions.

    permissions is the stored map only. Effective rights come from
    PermissionResolver, which ignores this map for admins.
    """

    id: str
    email: str
    role: str = ROLE_REGULAR  # "admin" | "regular"
    is_approved: bool = False
    permissions: dict[str, bool] = field(default_factory=dict)
    name: str = ""
    temp_secret: Optional[str] = None
    waitlist_id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class LegacyApprovedRecord:
    """Superseded approval record, kept in sync for older readers."""

    id: str
    email: str
    is_approved: bool = True
    temp_secret: Optional[str] = None
    approved_at: str = ""
    waitlist_id: Optional[str] = None


@dataclass(frozen=True)
class BootstrapAdmin:
    """The identity that must always resolve to a full administrator."""

    uid: str
    email: str


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WriteFailure:
    """A merge-write that did not land. Enough detail to replay it by hand."""

    collection: str
    doc_id: str
    fields: tuple[str, ...]
    error: str


@dataclass
class ProvisioningOutcome:
    """Result of a provisioning operation.

    secret is set only when this call generated it; it is shown once.
    secret_verified is None when no verification was attempted.
    """

    entry: Optional[WaitlistEntry] = None
    user: Optional[UserRecord] = None
    secret: Optional[str] = None
    secret_verified: Optional[bool] = None
    reset_email_sent: bool = False
    session_invalidated: bool = False
    created: bool = True
    warnings: list[str] = field(default_factory=list)
    failed_writes: list[WriteFailure] = field(default_factory=list)


@dataclass
class SweepReport:
    """Result of one ReconciliationSweep run."""

    users: list[UserRecord] = field(default_factory=list)
    writes: int = 0
    synthesized: list[str] = field(default_factory=list)  # uids created from scratch
    repaired: list[str] = field(default_factory=list)  # uids whose record was corrected
    failures: list[WriteFailure] = field(default_factory=list)
