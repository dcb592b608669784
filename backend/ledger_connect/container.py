"""
Service wiring for the integration trust core.

Builds every service from Settings and hands them out explicitly; nothing
in the package reaches for a module-level singleton. Tests build a
container with in-memory collaborators and a mock HTTP transport.

Usage:
    container = ServiceContainer.from_settings(get_settings())
    await container.startup()
    ...
    await container.shutdown()
"""

import logging
from typing import Optional

import httpx
import redis.asyncio as aioredis

from ledger_connect.config.settings import Settings
from ledger_connect.credentials.lifecycle import CredentialLifecycleManager
from ledger_connect.credentials.scheduler import AsyncioScheduler, Scheduler
from ledger_connect.credentials.store import CredentialStore, InMemoryCredentialStore, SqlCredentialStore
from ledger_connect.db_base import create_db_engine, create_session_factory
from ledger_connect.services.oauth_gateway import GatewayRegistry
from ledger_connect.services.oauth_state import (
    InMemoryOAuthStateBackend,
    OAuthStateStore,
    RedisOAuthStateBackend,
)
from ledger_connect.services.replay_cache import InMemoryReplayCache, RedisReplayCache, ReplayCache
from ledger_connect.services.tenancy_service import (
    InMemoryTenantRepository,
    SqlTenantRepository,
    TenancyService,
    TenantRepository,
)
from ledger_connect.services.webhook_dispatcher import WebhookDispatcher
from ledger_connect.services.webhook_verifier import WebhookTrustVerifier
from ledger_connect.utils.clock import Clock, utcnow
from ledger_connect.utils.encryption import CipherBox

logger = logging.getLogger(__name__)


class ServiceContainer:
    """Holds one instance of each service for the lifetime of the process."""

    def __init__(
        self,
        settings: Settings,
        cipher: CipherBox,
        gateways: GatewayRegistry,
        credentials: CredentialLifecycleManager,
        tenancy: TenancyService,
        verifier: WebhookTrustVerifier,
        dispatcher: WebhookDispatcher,
        oauth_states: OAuthStateStore,
        replay_cache: Optional[ReplayCache] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        self.settings = settings
        self.cipher = cipher
        self.gateways = gateways
        self.credentials = credentials
        self.tenancy = tenancy
        self.verifier = verifier
        self.dispatcher = dispatcher
        self.oauth_states = oauth_states
        self.replay_cache = replay_cache
        self.redis_client = redis_client

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        scheduler: Optional[Scheduler] = None,
        credential_store: Optional[CredentialStore] = None,
        tenant_repository: Optional[TenantRepository] = None,
        replay_cache: Optional[ReplayCache] = None,
        clock: Clock = utcnow,
    ) -> "ServiceContainer":
        """
        Build every service. ENCRYPTION_KEY and WEBHOOK_SECRET are required;
        provider client credentials are resolved on first use.

        Raises:
            ConfigurationError: If a required secret is missing
        """
        cipher = CipherBox(settings.require_encryption_key(), iterations=settings.kdf_iterations)

        redis_client = None
        if settings.redis_url:
            redis_client = aioredis.Redis.from_url(
                settings.redis_url, encoding="utf-8", decode_responses=True
            )

        if replay_cache is None:
            if redis_client is not None:
                replay_cache = RedisReplayCache(redis_client)
            else:
                logger.warning("REDIS_URL not set, using in-memory webhook replay cache")
                replay_cache = InMemoryReplayCache()

        session_factory = None
        if settings.database_url and (credential_store is None or tenant_repository is None):
            session_factory = create_session_factory(create_db_engine(settings.database_url))
        elif not settings.database_url:
            logger.warning("DATABASE_URL not set, credentials and tenants are kept in memory only")

        if credential_store is None:
            credential_store = (
                SqlCredentialStore(session_factory) if session_factory is not None
                else InMemoryCredentialStore()
            )
        if tenant_repository is None:
            tenant_repository = (
                SqlTenantRepository(session_factory) if session_factory is not None
                else InMemoryTenantRepository()
            )

        state_backend = (
            RedisOAuthStateBackend(redis_client) if redis_client is not None
            else InMemoryOAuthStateBackend()
        )

        gateways = GatewayRegistry(settings, cipher, transport=transport, clock=clock)
        credentials = CredentialLifecycleManager(
            store=credential_store,
            cipher=cipher,
            gateways=gateways,
            scheduler=scheduler or AsyncioScheduler(),
            clock=clock,
        )
        tenancy = TenancyService(
            tenant_repository,
            credential_lookup=credentials.has_credentials,
            clock=clock,
        )
        verifier = WebhookTrustVerifier(
            cipher,
            settings.require_webhook_secret(),
            replay_cache=replay_cache,
            clock=clock,
        )

        return cls(
            settings=settings,
            cipher=cipher,
            gateways=gateways,
            credentials=credentials,
            tenancy=tenancy,
            verifier=verifier,
            dispatcher=WebhookDispatcher(clock=clock),
            oauth_states=OAuthStateStore(state_backend),
            replay_cache=replay_cache,
            redis_client=redis_client,
        )

    async def startup(self) -> None:
        """Re-arm refresh timers for credentials stored before this process started."""
        armed = await self.credentials.rehydrate()
        logger.info("Service container started", extra={"timer_count": armed})

    async def shutdown(self) -> None:
        await self.credentials.cleanup()
        if self.redis_client is not None:
            await self.redis_client.aclose()
        logger.info("Service container stopped")
