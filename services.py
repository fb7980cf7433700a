"""
services.py -- Wires the provisioning core to its collaborators.

Both entry points (api/main.py lifespan and the main.py CLI) build the same
object graph from Settings:

    RecordStore ----------------------------+
    IdentityProviderClient -> ExistenceProbe |-> ProvisioningStateMachine
                           -> CredentialVerifier
    PermissionResolver ---------------------+-> ReconciliationSweep

Tests pass pre-built stores and providers to build_services() to stay off
disk and off the network.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from core.config import Settings, get_settings
from core.models import BootstrapAdmin
from core.permissions import PermissionResolver
from core.provisioning import ProvisioningStateMachine
from core.reconciliation import ReconciliationSweep
from core.secret_generator import SecretGenerator
from identity.base import IdentityProviderClient
from identity.policies import SessionSwapVerifier, build_existence_probe, build_identity_client
from records.store import RecordStore


@dataclass
class Services:
    settings: Settings
    records: RecordStore
    identity: IdentityProviderClient
    resolver: PermissionResolver
    provisioning: ProvisioningStateMachine
    sweep: ReconciliationSweep

    def close(self) -> None:
        self.identity.close()
        self.records.close()


def build_services(
    settings: Optional[Settings] = None,
    records: Optional[RecordStore] = None,
    identity: Optional[IdentityProviderClient] = None,
    generator: Optional[SecretGenerator] = None,
) -> Services:
    settings = settings or get_settings()
    records = records or RecordStore(settings.records_db_url)
    identity = identity or build_identity_client(settings)
    resolver = PermissionResolver(settings.permission_keys)

    provisioning = ProvisioningStateMachine(
        store=records,
        identity=identity,
        probe=build_existence_probe(settings.existence_probe, identity),
        verifier=SessionSwapVerifier(identity),
        generator=generator or SecretGenerator(settings.secret_length),
        resolver=resolver,
        self_registration_enabled=settings.self_registration_enabled,
    )
    sweep = ReconciliationSweep(
        store=records,
        resolver=resolver,
        bootstrap=BootstrapAdmin(uid=settings.bootstrap_admin_uid, email=settings.bootstrap_admin_email),
    )
    return Services(
        settings=settings,
        records=records,
        identity=identity,
        resolver=resolver,
        provisioning=provisioning,
        sweep=sweep,
    )
