"""
tests/conftest.py -- Shared test fixtures for AccessGate.

This module provides:
  - core fixtures: in-memory RecordStore, local identity provider, resolver,
    seeded SecretGenerator, ProvisioningStateMachine and ReconciliationSweep
  - _make_test_services(): a full service graph on in-memory databases
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - api_client: TestClient with an admin JWT for API integration tests

Design: RecordStore and LocalIdentityProvider switch to a StaticPool for
in-memory SQLite URLs, so every thread TestClient uses sees the same
database.

The DEBUG env var must be set before any core/auth import so get_settings()
auto-generates SECRET_KEY and the bootstrap admin uid in dev mode rather
than raising ValueError. Rate limits are raised so module-scoped clients do
not trip them.
"""

from __future__ import annotations

import os
import random
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set env before any core/auth import so get_settings() sees it.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("SIGNUP_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.tokens import create_access_token
from core.config import DEFAULT_PERMISSIONS, get_settings
from core.models import BootstrapAdmin
from core.permissions import PermissionResolver
from core.provisioning import ProvisioningStateMachine
from core.reconciliation import ReconciliationSweep
from core.secret_generator import SecretGenerator
from identity.local import LocalIdentityProvider
from identity.policies import ResetEmailProbe, SessionSwapVerifier
from records.store import RecordStore
from services import Services, build_services

MEMORY_URL = "sqlite:///:memory:"
BOOTSTRAP_UID = get_settings().bootstrap_admin_uid
BOOTSTRAP_EMAIL = get_settings().bootstrap_admin_email


# ---------------------------------------------------------------------------
# Core fixtures (function scope -- every test gets fresh databases)
# ---------------------------------------------------------------------------


@pytest.fixture
def records() -> Generator[RecordStore, None, None]:
    store = RecordStore(MEMORY_URL)
    yield store
    store.close()


@pytest.fixture
def identity() -> Generator[LocalIdentityProvider, None, None]:
    provider = LocalIdentityProvider(MEMORY_URL)
    yield provider
    provider.close()


@pytest.fixture
def resolver() -> PermissionResolver:
    return PermissionResolver(DEFAULT_PERMISSIONS)


@pytest.fixture
def generator() -> SecretGenerator:
    return SecretGenerator(rng=random.Random(1234))


@pytest.fixture
def machine(records, identity, resolver, generator) -> ProvisioningStateMachine:
    return ProvisioningStateMachine(
        store=records,
        identity=identity,
        probe=ResetEmailProbe(identity),
        verifier=SessionSwapVerifier(identity),
        generator=generator,
        resolver=resolver,
    )


@pytest.fixture
def bootstrap() -> BootstrapAdmin:
    return BootstrapAdmin(uid=BOOTSTRAP_UID, email=BOOTSTRAP_EMAIL)


@pytest.fixture
def sweep(records, resolver, bootstrap) -> ReconciliationSweep:
    return ReconciliationSweep(records, resolver, bootstrap)


# ---------------------------------------------------------------------------
# API helpers
# ---------------------------------------------------------------------------


def _make_test_services() -> Services:
    """Build the full service graph on fresh in-memory databases."""
    return build_services(
        settings=get_settings(),
        records=RecordStore(MEMORY_URL),
        identity=LocalIdentityProvider(MEMORY_URL),
        generator=SecretGenerator(rng=random.Random(99)),
    )


def _patch_lifespan(services: Services):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test services into app.state so TestClient routes see
    isolated in-memory stores rather than the configured databases, and runs
    the startup sweep like the real lifespan does.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.services = services
        app.state.settings = services.settings
        app.state.records = services.records
        app.state.identity = services.identity
        app.state.resolver = services.resolver
        app.state.provisioning = services.provisioning
        app.state.sweep = services.sweep
        await services.sweep.run()
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, token, admin_uid) for API integration tests.

    The startup sweep creates the bootstrap admin record; the JWT is issued
    for that uid. The fixture also exposes the services on client.services
    so tests can seed the stores directly.
    """
    services = _make_test_services()
    token = create_access_token(uid=BOOTSTRAP_UID, email=BOOTSTRAP_EMAIL, role="admin", expire_seconds=3600)

    app.router.lifespan_context = _patch_lifespan(services)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        client.services = services
        yield client, token, BOOTSTRAP_UID

    services.close()


@pytest.fixture
def auth_headers(api_client) -> dict[str, str]:
    _client, token, _uid = api_client
    return {"Authorization": f"Bearer {token}"}

