"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AccessGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. bootstrap_admin_uid -> BOOTSTRAP_ADMIN_UID).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode (DEBUG=true) fills in SECRET_KEY and the bootstrap
      admin uid with a warning; production mode refuses to start without them.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing
       relies on key entropy -- a short key weakens it.

  [M7] In production mode, a missing SECRET_KEY or BOOTSTRAP_ADMIN_UID is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
identity/ or records/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("accessgate.config")

_DATA_DIR = Path(__file__).resolve().parent.parent

# Permission catalogue shipped with the gated application. Key -> display label.
DEFAULT_PERMISSIONS: dict[str, str] = {
    "basic_features": "Basic Features",
    "track_weight": "Track Weight",
    "view_recommendations": "View Recommendations",
    "view_admin_dashboard": "Admin Dashboard",
    "manage_users": "Manage Users",
    "manage_permissions": "Manage Permissions",
    "access_all_features": "All Features",
}

_DEV_BOOTSTRAP_UID = "bootstrap-admin"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Admin sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 3600

    # ------------------------------------------------------------------
    # Record store
    # ------------------------------------------------------------------

    records_db_url: str = f"sqlite:///{_DATA_DIR / 'accessgate_records.db'}"

    # ------------------------------------------------------------------
    # Identity provider
    # ------------------------------------------------------------------

    identity_backend: Literal["local", "firebase"] = "local"
    identity_db_url: str = f"sqlite:///{_DATA_DIR / 'accessgate_identity.db'}"
    firebase_api_key: str = ""
    firebase_base_url: str = "https://identitytoolkit.googleapis.com/v1"
    identity_timeout_seconds: int = 10
    # "reset_email" reproduces the historical probe (a reset email doubles as
    # an existence check); "lookup" asks the provider directly.
    existence_probe: Literal["reset_email", "lookup"] = "reset_email"

    # ------------------------------------------------------------------
    # Bootstrap administrator
    # ------------------------------------------------------------------

    bootstrap_admin_uid: str = ""
    bootstrap_admin_email: str = "admin@example.com"
    # Only read by `main.py create-admin`; never persisted.
    bootstrap_admin_password: str = ""

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    secret_length: int = 8
    permission_keys: list[str] = list(DEFAULT_PERMISSIONS)
    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    signup_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        """Enforce the startup policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate SECRET_KEY and fall back to a fixed
            bootstrap admin uid, both with a warning.

        Production mode: refuse to start if SECRET_KEY or BOOTSTRAP_ADMIN_UID
            is missing.

        Both modes: reject keys shorter than 32 characters, secrets shorter
            than 8 characters and an empty permission catalogue.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")

        if not self.bootstrap_admin_uid:
            if self.debug:
                self.bootstrap_admin_uid = _DEV_BOOTSTRAP_UID
                logger.warning("WARNING: BOOTSTRAP_ADMIN_UID not set, using %r.", _DEV_BOOTSTRAP_UID)
            else:
                raise ValueError("BOOTSTRAP_ADMIN_UID is required in production mode.")

        if self.secret_length < 8:
            raise ValueError("SECRET_LENGTH must be at least 8.")
        if not self.permission_keys:
            raise ValueError("PERMISSION_KEYS must name at least one permission.")
        if self.identity_backend == "firebase" and not self.firebase_api_key:
            raise ValueError("FIREBASE_API_KEY is required when IDENTITY_BACKEND=firebase.")
        return self

    def permission_labels(self) -> dict[str, str]:
        """Return key -> label for every configured permission key."""
        return {key: DEFAULT_PERMISSIONS.get(key, key.replace("_", " ").title()) for key in self.permission_keys}


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
