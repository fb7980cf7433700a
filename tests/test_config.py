"""Unit tests for core/config.py startup policy.

Settings is instantiated directly (not through the get_settings() cache) with
monkeypatched environment variables, so these tests never disturb the
singleton the rest of the suite uses.
"""

import pytest

from core.config import DEFAULT_PERMISSIONS, Settings

_KEY = "k" * 40


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("DEBUG", "SECRET_KEY", "BOOTSTRAP_ADMIN_UID", "IDENTITY_BACKEND", "FIREBASE_API_KEY", "PERMISSION_KEYS"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSettings:
    def test_dev_mode_fills_in_defaults(self, clean_env) -> None:
        clean_env.setenv("DEBUG", "true")
        settings = Settings(_env_file=None)
        assert len(settings.secret_key) >= 32
        assert settings.bootstrap_admin_uid == "bootstrap-admin"

    def test_production_requires_secret_key(self, clean_env) -> None:
        clean_env.setenv("BOOTSTRAP_ADMIN_UID", "uid-1")
        with pytest.raises(ValueError, match="SECRET_KEY"):
            Settings(_env_file=None)

    def test_production_requires_bootstrap_uid(self, clean_env) -> None:
        clean_env.setenv("SECRET_KEY", _KEY)
        with pytest.raises(ValueError, match="BOOTSTRAP_ADMIN_UID"):
            Settings(_env_file=None)

    def test_short_secret_key_rejected(self, clean_env) -> None:
        clean_env.setenv("DEBUG", "true")
        clean_env.setenv("SECRET_KEY", "short")
        with pytest.raises(ValueError, match="32"):
            Settings(_env_file=None)

    def test_firebase_needs_api_key(self, clean_env) -> None:
        clean_env.setenv("DEBUG", "true")
        clean_env.setenv("IDENTITY_BACKEND", "firebase")
        with pytest.raises(ValueError, match="FIREBASE_API_KEY"):
            Settings(_env_file=None)

    def test_permission_keys_from_env(self, clean_env) -> None:
        clean_env.setenv("DEBUG", "true")
        clean_env.setenv("PERMISSION_KEYS", '["basic_features", "export_data"]')
        settings = Settings(_env_file=None)
        assert settings.permission_keys == ["basic_features", "export_data"]
        assert settings.permission_labels() == {"basic_features": "Basic Features", "export_data": "Export Data"}

    def test_default_catalogue(self, clean_env) -> None:
        clean_env.setenv("DEBUG", "true")
        assert Settings(_env_file=None).permission_keys == list(DEFAULT_PERMISSIONS)
