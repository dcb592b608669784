"""
Shared pytest fixtures.

Every fixture builds in-memory collaborators: no Redis, no database server
and no real provider endpoints. Key derivation uses a low iteration count so
the suite stays fast.
"""

import pytest

from ledger_connect.config.settings import Settings, load_settings
from ledger_connect.credentials.lifecycle import CredentialLifecycleManager
from ledger_connect.credentials.store import InMemoryCredentialStore
from ledger_connect.services.oauth_gateway import GatewayRegistry
from ledger_connect.tests.fakes import FakeClock, RecordingSleep, TokenEndpoint, VirtualScheduler
from ledger_connect.utils.encryption import CipherBox

TEST_ENV = {
    "ENCRYPTION_KEY": "test-encryption-key-for-unit-tests",
    "ENCRYPTION_KDF_ITERATIONS": "1000",
    "WEBHOOK_SECRET": "test-webhook-secret",
    "ADMIN_API_KEY": "test-admin-key",
    "REDIS_URL": "",
    "XERO_CLIENT_ID": "xero-client-id",
    "XERO_CLIENT_SECRET": "xero-client-secret",
    "XERO_REDIRECT_URI": "https://app.example.com/integrations/xero/callback",
    "QUICKBOOKS_CLIENT_ID": "qb-client-id",
    "QUICKBOOKS_CLIENT_SECRET": "qb-client-secret",
    "QUICKBOOKS_REDIRECT_URI": "https://app.example.com/integrations/quickbooks/callback",
}


@pytest.fixture
def settings() -> Settings:
    return load_settings(TEST_ENV)


@pytest.fixture
def cipher(settings) -> CipherBox:
    return CipherBox(settings.encryption_key, iterations=settings.kdf_iterations)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler(clock) -> VirtualScheduler:
    return VirtualScheduler(clock)


@pytest.fixture
def token_endpoint() -> TokenEndpoint:
    return TokenEndpoint()


@pytest.fixture
def recorded_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def gateways(settings, cipher, token_endpoint, recorded_sleep, clock) -> GatewayRegistry:
    return GatewayRegistry(
        settings,
        cipher,
        transport=token_endpoint.transport(),
        sleep=recorded_sleep,
        clock=clock,
    )


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def manager(credential_store, cipher, gateways, scheduler, clock) -> CredentialLifecycleManager:
    return CredentialLifecycleManager(
        store=credential_store,
        cipher=cipher,
        gateways=gateways,
        scheduler=scheduler,
        clock=clock,
    )
