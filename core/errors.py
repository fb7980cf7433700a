"""
core/errors.py -- Typed failures raised by the provisioning core.

Every exception derives from AccessGateError so the API layer can map the
whole family to the structured error envelope in one place (api/main.py).

Recovery policy lives with the caller, not here:
  ProviderConflict     -- recovered by approve()/create_account() via the
                          reset-email path; surfaced elsewhere.
  ProviderFailure      -- aborts the current operation.
  StoreWriteFailure    -- logged and recorded; sibling writes continue.
  VerificationMismatch -- never raised out of an operation; carried on the
                          outcome as an explicit warning.

Layer rule: no imports from api/, auth/, identity/ or records/.
"""

from __future__ import annotations


class AccessGateError(Exception):
    """Base class for all provisioning-domain errors."""

    code = "accessgate_error"


# ---------------------------------------------------------------------------
# Identity provider
# ---------------------------------------------------------------------------


class IdentityProviderError(AccessGateError):
    """Raised by IdentityProviderClient implementations.

    provider_code carries the raw provider error string (e.g. "EMAIL_EXISTS")
    so logs keep the underlying reason.
    """

    code = "provider_error"

    def __init__(self, message: str, provider_code: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.provider_code = provider_code


class ProviderConflict(IdentityProviderError):
    """The email already belongs to a provider account (AlreadyInUse)."""

    code = "already_in_use"


AlreadyInUse = ProviderConflict


class InvalidCredential(IdentityProviderError):
    """Unknown email or wrong secret."""

    code = "invalid_credential"


class ProviderFailure(IdentityProviderError):
    """Any other provider, network or timeout failure."""

    code = "provider_failure"


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------


class StoreError(AccessGateError):
    code = "store_error"


class DocumentNotFound(StoreError, KeyError):
    code = "not_found"

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message.
        return self.args[0]


class EntryNotFound(DocumentNotFound):
    pass


class UserNotFound(DocumentNotFound):
    pass


class StoreWriteFailure(StoreError):
    """A single merge-write did not reach the store."""

    code = "store_write_failure"

    def __init__(self, collection: str, doc_id: str, reason: str) -> None:
        super().__init__(f"write to {collection}/{doc_id} failed: {reason}")
        self.collection = collection
        self.doc_id = doc_id
        self.reason = reason


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


class VerificationMismatch(AccessGateError):
    """A freshly issued secret did not authenticate against the provider."""

    code = "verification_mismatch"


class InvalidTransition(AccessGateError):
    """The requested operation would move a waitlist entry backward or skip a state."""

    code = "invalid_transition"


class RegistrationClosed(AccessGateError):
    code = "registration_closed"


class InvalidPermissionEdit(AccessGateError):
    code = "invalid_permission_edit"
