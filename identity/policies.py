"""
identity/policies.py -- Swappable policies around the identity provider.

ExistenceProbe: "does this email already have a provider account?"
  ResetEmailProbe  -- sends a password-reset email; success means the account
                      exists. Approximate: any send failure (including an
                      outage) reads as "absent", and the user gets an email
                      as a side effect. Kept as the default for fidelity with
                      existing deployments.
  LookupProbe      -- asks the provider directly (account_exists()).

CredentialVerifier: "does this freshly issued secret actually sign in?"
  SessionSwapVerifier -- signs in as the new account, then signs out. The
                         provider client holds one ambient session, so this
                         evicts whoever was signed in (usually the acting
                         admin). invalidates_session is True and every result
                         reports it so callers can ask for re-authentication.
                         Verifications are serialized behind an asyncio.Lock.

build_identity_client() picks the backend from Settings.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from core.config import Settings
from core.errors import IdentityProviderError, VerificationMismatch
from identity.base import IdentityProviderClient

logger = logging.getLogger("accessgate.identity")


# ---------------------------------------------------------------------------
# Existence probes
# ---------------------------------------------------------------------------


class ExistenceProbe(ABC):
    # True when exists() already sent the user a reset email.
    sends_reset_email = False

    def __init__(self, client: IdentityProviderClient) -> None:
        self.client = client

    @abstractmethod
    async def exists(self, email: str) -> bool: ...


class ResetEmailProbe(ExistenceProbe):
    sends_reset_email = True

    async def exists(self, email: str) -> bool:
        try:
            await self.client.send_reset_email(email)
        except IdentityProviderError as exc:
            logger.info("Reset-email probe for %s failed (%s); treating as new account", email, exc.provider_code)
            return False
        return True


class LookupProbe(ExistenceProbe):
    async def exists(self, email: str) -> bool:
        return await self.client.account_exists(email)


def build_existence_probe(kind: str, client: IdentityProviderClient) -> ExistenceProbe:
    if kind == "lookup":
        return LookupProbe(client)
    if kind == "reset_email":
        return ResetEmailProbe(client)
    raise ValueError(f"Unknown existence probe: {kind!r}")


# ---------------------------------------------------------------------------
# Credential verification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    session_invalidated: bool
    error: Optional[VerificationMismatch] = None


class CredentialVerifier(ABC):
    invalidates_session = False

    @abstractmethod
    async def verify(self, email: str, secret: str) -> VerificationResult: ...


class SessionSwapVerifier(CredentialVerifier):
    """Verify by signing in with the new secret, then signing out."""

    invalidates_session = True

    def __init__(self, client: IdentityProviderClient) -> None:
        self.client = client
        self._lock = asyncio.Lock()

    async def verify(self, email: str, secret: str) -> VerificationResult:
        async with self._lock:
            try:
                await self.client.sign_in(email, secret)
            except IdentityProviderError as exc:
                logger.warning("Issued secret for %s did not sign in (%s)", email, exc.provider_code or exc)
                return VerificationResult(
                    verified=False,
                    session_invalidated=False,
                    error=VerificationMismatch(f"Secret for {email} could not be confirmed: {exc.message}"),
                )
            try:
                await self.client.sign_out()
            except IdentityProviderError:
                logger.warning("Sign-out after verifying %s failed", email, exc_info=True)
        return VerificationResult(verified=True, session_invalidated=True)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_identity_client(settings: Settings) -> IdentityProviderClient:
    """Instantiate the configured identity backend."""
    if settings.identity_backend == "firebase":
        from identity.firebase import FirebaseIdentityProvider

        return FirebaseIdentityProvider(
            api_key=settings.firebase_api_key,
            base_url=settings.firebase_base_url,
            timeout=settings.identity_timeout_seconds,
        )
    from identity.local import LocalIdentityProvider

    return LocalIdentityProvider(settings.identity_db_url)
