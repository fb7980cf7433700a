"""
identity/base.py -- Contract for external identity provider clients.

An IdentityProviderClient owns credentials; AccessGate never stores password
hashes of its own. Implementations:

  identity/local.py     -- SQLAlchemy + bcrypt accounts table (dev, tests,
                           single-host installs)
  identity/firebase.py  -- Google Identity Toolkit REST API

Ambient session: sign_in() replaces whatever session the client currently
holds and sign_out() clears it. The client is shared across the process, so
signing in as someone else evicts the acting admin's provider session. Code
that does this on purpose (credential verification) must say so -- see
identity/policies.py.

Errors: implementations raise the core.errors provider family only:
  ProviderConflict   -- email already registered
  InvalidCredential  -- unknown email or wrong secret
  ProviderFailure    -- everything else (network, timeout, weak secret, ...)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ProviderAccount:
    uid: str
    email: str


class IdentityProviderClient(ABC):
    """Async facade over an identity provider."""

    name = "abstract"

    def __init__(self) -> None:
        self._session_uid: Optional[str] = None

    @property
    def current_uid(self) -> Optional[str]:
        """uid of the account the ambient session belongs to, if any."""
        return self._session_uid

    @abstractmethod
    async def create_account(self, email: str, secret: str) -> ProviderAccount: ...

    @abstractmethod
    async def sign_in(self, email: str, secret: str) -> ProviderAccount: ...

    @abstractmethod
    async def sign_out(self) -> None: ...

    @abstractmethod
    async def send_reset_email(self, email: str) -> None:
        """Ask the provider to mail a password-reset link. Raises if email is unknown."""

    async def account_exists(self, email: str) -> bool:
        """Explicit existence lookup. Optional capability."""
        raise NotImplementedError(f"{self.name} provider has no account lookup")

    def close(self) -> None:
        pass
