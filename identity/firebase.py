"""
identity/firebase.py -- Google Identity Toolkit (Firebase Auth) REST client.

Endpoints used (all POST {base_url}/accounts:<method>?key=<api key>):
  signUp               -- create an email/password account
  signInWithPassword   -- authenticate, returns idToken + localId (uid)
  sendOobCode          -- requestType PASSWORD_RESET sends the reset email
  createAuthUri        -- "registered" tells whether an email has an account

Error mapping: the REST API answers 400 with {"error": {"message": CODE}},
where CODE may carry a suffix ("WEAK_PASSWORD : Password should be ...").
  EMAIL_EXISTS                          -> ProviderConflict
  EMAIL_NOT_FOUND, INVALID_PASSWORD,
  INVALID_LOGIN_CREDENTIALS,
  USER_DISABLED, INVALID_EMAIL          -> InvalidCredential
  anything else, network errors,
  timeouts, non-JSON bodies             -> ProviderFailure

requests is blocking; every call runs in a worker thread via
asyncio.to_thread so the event loop keeps serving other requests.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import requests

from core.errors import IdentityProviderError, InvalidCredential, ProviderConflict, ProviderFailure
from identity.base import IdentityProviderClient, ProviderAccount

logger = logging.getLogger("accessgate.identity.firebase")

_ERROR_MAP: dict[str, type[IdentityProviderError]] = {
    "EMAIL_EXISTS": ProviderConflict,
    "EMAIL_NOT_FOUND": InvalidCredential,
    "INVALID_PASSWORD": InvalidCredential,
    "INVALID_LOGIN_CREDENTIALS": InvalidCredential,
    "USER_DISABLED": InvalidCredential,
    "INVALID_EMAIL": InvalidCredential,
}

# createAuthUri requires a continue URI even though nothing is redirected.
_CONTINUE_URI = "http://localhost"


def _provider_code(response: requests.Response) -> str:
    try:
        message = response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return f"HTTP_{response.status_code}"
    return str(message).split(" : ", 1)[0].strip()


def map_provider_error(code: str, message: str = "") -> IdentityProviderError:
    """Build the core exception for a raw provider error code."""
    exc_cls = _ERROR_MAP.get(code, ProviderFailure)
    return exc_cls(message or code, provider_code=code)


class FirebaseIdentityProvider(IdentityProviderClient):
    """Identity Toolkit client with an ambient session (the last idToken)."""

    name = "firebase"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://identitytoolkit.googleapis.com/v1",
        timeout: int = 10,
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__()
        if not api_key:
            raise ValueError("Firebase identity provider requires an API key")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._id_token: Optional[str] = None

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _post(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}/accounts:{method}"
        try:
            resp = self._session.post(url, params={"key": self._api_key}, json=payload, timeout=self._timeout)
        except requests.Timeout as exc:
            raise ProviderFailure(f"Identity provider timed out after {self._timeout}s", "TIMEOUT") from exc
        except requests.RequestException as exc:
            raise ProviderFailure(f"Identity provider unreachable: {exc}", "NETWORK_ERROR") from exc

        if resp.status_code >= 400:
            code = _provider_code(resp)
            logger.info("Identity provider rejected %s: %s", method, code)
            raise map_provider_error(code)
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderFailure(f"Identity provider returned a non-JSON body for {method}", "BAD_RESPONSE") from exc

    async def _call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self._post, method, payload)

    # ------------------------------------------------------------------
    # IdentityProviderClient
    # ------------------------------------------------------------------

    async def create_account(self, email: str, secret: str) -> ProviderAccount:
        data = await self._call("signUp", {"email": email, "password": secret, "returnSecureToken": False})
        logger.info("Provider account created uid=%s", data.get("localId"))
        return ProviderAccount(uid=data["localId"], email=data.get("email", email))

    async def sign_in(self, email: str, secret: str) -> ProviderAccount:
        data = await self._call(
            "signInWithPassword", {"email": email, "password": secret, "returnSecureToken": True}
        )
        self._id_token = data.get("idToken")
        self._session_uid = data["localId"]
        return ProviderAccount(uid=data["localId"], email=data.get("email", email))

    async def sign_out(self) -> None:
        # The REST API is stateless; dropping the token ends the session.
        self._id_token = None
        self._session_uid = None

    async def send_reset_email(self, email: str) -> None:
        await self._call("sendOobCode", {"requestType": "PASSWORD_RESET", "email": email})
        logger.info("Password reset email requested for %s", email)

    async def account_exists(self, email: str) -> bool:
        data = await self._call("createAuthUri", {"identifier": email, "continueUri": _CONTINUE_URI})
        return bool(data.get("registered", False))

    def close(self) -> None:
        self._session.close()
