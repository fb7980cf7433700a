"""
API request and response models for AccessGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two
through the from_* factory classmethods colocated with each response model.

Separation of concerns: core/ models = domain truth; api/ models = API contract.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from core.models import ProvisioningOutcome, SweepReport, UserRecord, WaitlistEntry, WriteFailure

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    regular = "regular"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class WaitlistJoinRequest(BaseModel):
    """Request body for POST /api/v1/waitlist."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    name: str = Field(default="", max_length=255)


class CreateAccountRequest(BaseModel):
    """Request body for POST /api/v1/waitlist/{id}/account."""

    secret: str = Field(min_length=6, max_length=128)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    # max_length keeps inputs well below bcrypt's 72-byte truncation threshold
    # for the local backend.
    password: str = Field(min_length=6, max_length=64)
    name: str = Field(default="", max_length=255)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users. Omit password to generate one."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    role: RoleEnum = RoleEnum.regular
    name: str = Field(default="", max_length=255)
    password: Optional[str] = Field(default=None, min_length=6, max_length=64)


class PermissionsUpdate(BaseModel):
    """Request body for PUT /api/v1/auth/users/{id}/permissions."""

    permissions: dict[str, bool]


# ---------------------------------------------------------------------------
# Domain projections
# ---------------------------------------------------------------------------


class WaitlistEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    status: str
    joined_at: str
    uid: Optional[str] = None
    temp_secret: Optional[str] = None
    last_used_secret: Optional[str] = None
    approved_at: Optional[str] = None
    registered_at: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: WaitlistEntry) -> "WaitlistEntryResponse":
        return cls(
            id=entry.id,
            email=entry.email,
            name=entry.name,
            status=entry.status,
            joined_at=entry.joined_at,
            uid=entry.uid,
            temp_secret=entry.temp_secret,
            last_used_secret=entry.last_used_secret,
            approved_at=entry.approved_at,
            registered_at=entry.registered_at,
        )


class UserResponse(BaseModel):
    """Admin view of a users record.

    permissions is the effective set from PermissionResolver, not the stored map.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    role: str
    is_approved: bool
    permissions: dict[str, bool]
    temp_secret: Optional[str] = None
    waitlist_id: Optional[str] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_user(cls, user: UserRecord, permissions: dict[str, bool]) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            is_approved=user.is_approved,
            permissions=permissions,
            temp_secret=user.temp_secret,
            waitlist_id=user.waitlist_id,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class WriteFailureResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    collection: str
    doc_id: str
    fields: list[str]
    error: str

    @classmethod
    def from_failure(cls, failure: WriteFailure) -> "WriteFailureResponse":
        return cls(
            collection=failure.collection,
            doc_id=failure.doc_id,
            fields=list(failure.fields),
            error=failure.error,
        )


# ---------------------------------------------------------------------------
# Operation responses
# ---------------------------------------------------------------------------


class ProvisioningResponse(BaseModel):
    """Result of a provisioning operation.

    secret is present only on the call that generated it.
    reauthenticate_required is True when secret verification replaced the
    identity provider session; the caller must sign in to the provider again.
    """

    model_config = ConfigDict(frozen=True)

    entry: Optional[WaitlistEntryResponse] = None
    user: Optional[UserResponse] = None
    secret: Optional[str] = None
    secret_verified: Optional[bool] = None
    reset_email_sent: bool = False
    reauthenticate_required: bool = False
    created: bool = True
    warnings: list[str] = Field(default_factory=list)
    failed_writes: list[WriteFailureResponse] = Field(default_factory=list)

    @classmethod
    def from_outcome(cls, outcome: ProvisioningOutcome, permissions: Optional[dict[str, bool]] = None) -> "ProvisioningResponse":
        return cls(
            entry=WaitlistEntryResponse.from_entry(outcome.entry) if outcome.entry else None,
            user=UserResponse.from_user(outcome.user, permissions or {}) if outcome.user else None,
            secret=outcome.secret,
            secret_verified=outcome.secret_verified,
            reset_email_sent=outcome.reset_email_sent,
            reauthenticate_required=outcome.session_invalidated,
            created=outcome.created,
            warnings=list(outcome.warnings),
            failed_writes=[WriteFailureResponse.from_failure(f) for f in outcome.failed_writes],
        )


class SweepResponse(BaseModel):
    """Response for POST /api/v1/admin/reconcile."""

    model_config = ConfigDict(frozen=True)

    users: list[UserResponse]
    writes: int
    synthesized: list[str]
    repaired: list[str]
    failures: list[WriteFailureResponse]

    @classmethod
    def from_report(cls, report: SweepReport, users: list[UserResponse]) -> "SweepResponse":
        return cls(
            users=users,
            writes=report.writes,
            synthesized=list(report.synthesized),
            repaired=list(report.repaired),
            failures=[WriteFailureResponse.from_failure(f) for f in report.failures],
        )


class PermissionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: str
    permissions: dict[str, bool]


class PermissionInfo(BaseModel):
    """One entry of the permission catalogue."""

    model_config = ConfigDict(frozen=True)

    key: str
    label: str


# ---------------------------------------------------------------------------
# Session responses
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str
    expires_in: int
    uid: str
    email: str
    role: str


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    uid: str
    email: str
    name: str
    role: str
    is_approved: bool
    permissions: dict[str, bool]


class WaitlistJoinResponse(BaseModel):
    """Public response for POST /api/v1/waitlist. Carries no secrets."""

    model_config = ConfigDict(frozen=True)

    id: str
    status: str
    created: bool


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
