"""
Credential lifecycle management for accounting provider OAuth tokens.

Implements BOTH refresh strategies:
1. Scheduled refresh: a timer fires 5 minutes before the access token expires
2. On-demand refresh: get_valid_access_token refreshes inside the same window

State per (tenant_id, provider):
    UNCONNECTED -> ACTIVE -> REFRESH_PENDING -> ACTIVE | REVOKED_NEEDS_REAUTH

SECURITY REQUIREMENTS:
- Tokens are encrypted before storage
- No plaintext tokens in logs
- A revoked or undecryptable refresh token flags the credential
  reauth_required; it is never retried silently
- At most one refresh per credential is in flight at a time

Usage:
    manager = CredentialLifecycleManager(store, cipher, gateways, AsyncioScheduler())

    await manager.store_credentials("T1", "xero", tokens)
    result = await manager.get_valid_access_token("T1", "xero")
    if result.success:
        client = gateways.get("xero").api_client(result.access_token)
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from ledger_connect.credentials.redaction import AuditEventType, CredentialAuditLogger
from ledger_connect.credentials.scheduler import Scheduler, TimerHandle
from ledger_connect.credentials.store import CredentialStore, StoredCredential
from ledger_connect.models.oauth_credential import CredentialStatus
from ledger_connect.platform.errors import AuthenticationError, DecryptionFailed, ErrorCode
from ledger_connect.services.oauth_gateway import OAuthTokens, ProviderGateway
from ledger_connect.utils.clock import Clock, utcnow
from ledger_connect.utils.encryption import CipherBox

logger = logging.getLogger(__name__)

# Refresh tokens whose access token expires within this window
REFRESH_WINDOW = timedelta(minutes=5)

CREDENTIALS_NOT_FOUND = "credentials_not_found"


class CredentialState(str, Enum):
    """Lifecycle state of one (tenant, provider) connection."""
    UNCONNECTED = "unconnected"
    ACTIVE = "active"
    REFRESH_PENDING = "refresh_pending"
    REVOKED_NEEDS_REAUTH = "revoked_needs_reauth"


@dataclass
class AuthResult:
    """
    Result of an access-token request.

    SECURITY: access_token is plaintext and hidden from repr.
    """
    success: bool
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def __repr__(self) -> str:
        token = "'[REDACTED]'" if self.access_token else None
        return (
            f"AuthResult(success={self.success}, access_token={token}, "
            f"error={self.error!r}, error_code={self.error_code!r})"
        )


class GatewayLookup(Protocol):
    def get(self, provider: str) -> ProviderGateway:
        ...


class CredentialLifecycleManager:
    """
    Stores, refreshes and revokes OAuth credentials for all tenants.

    Dependencies are injected so tests can supply in-memory stores, mock
    transports, a virtual-time scheduler and a fixed clock.
    """

    def __init__(
        self,
        store: CredentialStore,
        cipher: CipherBox,
        gateways: GatewayLookup,
        scheduler: Scheduler,
        clock: Clock = utcnow,
        refresh_window: timedelta = REFRESH_WINDOW,
    ):
        self._store = store
        self._cipher = cipher
        self._gateways = gateways
        self._scheduler = scheduler
        self._clock = clock
        self._refresh_window = refresh_window
        self._inflight: Dict[str, asyncio.Task] = {}
        self._timers: Dict[str, TimerHandle] = {}

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    async def store_credentials(
        self,
        tenant_id: str,
        provider: str,
        tokens: OAuthTokens,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredCredential:
        """
        Encrypt and upsert tokens, then arm the proactive refresh timer.

        An existing row keeps its id and created_at.
        """
        stored = await self._persist_tokens(tenant_id, provider, tokens, metadata, refreshed=False)

        CredentialAuditLogger(tenant_id).log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            credential_id=stored.id,
            provider=provider,
            metadata={"expires_at": stored.expires_at.isoformat(), "scope": stored.scope},
        )
        logger.info(
            "Credential stored",
            extra={
                "credential_id": stored.id,
                "tenant_id": tenant_id,
                "provider": provider,
            },
        )
        return stored

    async def _persist_tokens(
        self,
        tenant_id: str,
        provider: str,
        tokens: OAuthTokens,
        metadata: Optional[Dict[str, Any]],
        refreshed: bool,
        existing: Optional[StoredCredential] = None,
    ) -> StoredCredential:
        if existing is None:
            existing = await self._store.get(tenant_id, provider)
        now = self._clock()

        credential = StoredCredential(
            tenant_id=tenant_id,
            provider=provider,
            encrypted_access_token=self._cipher.encrypt(tokens.access_token),
            encrypted_refresh_token=self._cipher.encrypt(tokens.refresh_token),
            expires_at=tokens.expires_at,
            token_type=tokens.token_type,
            scope=tokens.scope,
            provider_metadata=dict(
                metadata if metadata is not None
                else (existing.provider_metadata if existing else {})
            ),
            status=CredentialStatus.ACTIVE,
            updated_at=now,
            created_at=existing.created_at if existing else now,
            last_refreshed_at=now if refreshed else (existing.last_refreshed_at if existing else None),
        )
        if existing is not None:
            credential.id = existing.id

        stored = await self._store.put(credential)
        self._schedule_refresh(stored)
        return stored

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    async def get_valid_access_token(self, tenant_id: str, provider: str) -> AuthResult:
        """
        Return a usable access token, refreshing when it expires within 5 minutes.

        Raises:
            AuthenticationError: AUTH_REFRESH_TOKEN_INVALID if the credential
                needs the user to reconnect
        """
        credential = await self._store.get(tenant_id, provider)
        if credential is None:
            return AuthResult(success=False, error=CREDENTIALS_NOT_FOUND)

        if credential.requires_reauth:
            raise self._reauth_error(credential)

        if credential.expires_at - self._clock() < self._refresh_window:
            return await self.refresh_token(credential)

        try:
            access_token = self._cipher.decrypt(credential.encrypted_access_token)
        except DecryptionFailed:
            logger.warning(
                "Stored access token unreadable, refreshing",
                extra={
                    "credential_id": credential.id,
                    "tenant_id": tenant_id,
                    "provider": provider,
                },
            )
            return await self.refresh_token(credential)

        return AuthResult(
            success=True,
            access_token=access_token,
            expires_at=credential.expires_at,
        )

    async def refresh_token(self, credential: StoredCredential) -> AuthResult:
        """
        Refresh a credential, sharing one in-flight refresh per credential id.

        Concurrent callers await the same task; the task is dropped from the
        in-flight map once it finishes, whether it succeeded or failed.
        """
        task = self._inflight.get(credential.id)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._do_refresh(credential))
            self._inflight[credential.id] = task
            task.add_done_callback(
                lambda done, cid=credential.id: self._clear_inflight(cid, done)
            )
        return await asyncio.shield(task)

    def _clear_inflight(self, credential_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(credential_id) is task:
            del self._inflight[credential_id]

    async def _do_refresh(self, credential: StoredCredential) -> AuthResult:
        gateway = self._gateways.get(credential.provider)
        audit = CredentialAuditLogger(credential.tenant_id)

        try:
            result = await gateway.refresh(credential.encrypted_refresh_token, credential.tenant_id)
        except DecryptionFailed:
            await self._mark_reauth_required(credential, reason="refresh_token_undecryptable")
            raise self._reauth_error(credential)

        if result.success and result.tokens is not None:
            current = await self._store.get(credential.tenant_id, credential.provider)
            if current is None or current.id != credential.id:
                logger.info(
                    "Credential removed during refresh, discarding new tokens",
                    extra={
                        "credential_id": credential.id,
                        "tenant_id": credential.tenant_id,
                        "provider": credential.provider,
                    },
                )
                return AuthResult(success=False, error=CREDENTIALS_NOT_FOUND)

            stored = await self._persist_tokens(
                credential.tenant_id,
                credential.provider,
                result.tokens,
                metadata=None,
                refreshed=True,
                existing=current,
            )
            audit.log(
                event_type=AuditEventType.CREDENTIAL_REFRESHED,
                credential_id=stored.id,
                provider=stored.provider,
                metadata={"expires_at": stored.expires_at.isoformat()},
            )
            return AuthResult(
                success=True,
                access_token=result.tokens.access_token,
                expires_at=stored.expires_at,
            )

        if result.revoked:
            await self._mark_reauth_required(credential, reason="refresh_token_revoked")
            raise self._reauth_error(credential)

        audit.log_error(credential.id, credential.provider, result.error or "refresh failed")
        logger.warning(
            "Token refresh failed, will retry on next access",
            extra={
                "credential_id": credential.id,
                "tenant_id": credential.tenant_id,
                "provider": credential.provider,
                "status_code": result.status_code,
            },
        )
        return AuthResult(
            success=False,
            error=result.error,
            error_code=ErrorCode.AUTH_TOKEN_EXPIRED.value,
        )

    async def _mark_reauth_required(self, credential: StoredCredential, reason: str) -> None:
        self._cancel_timer(credential.id)

        current = await self._store.get(credential.tenant_id, credential.provider)
        if current is not None and current.id == credential.id:
            await self._store.put(replace(
                current,
                status=CredentialStatus.REAUTH_REQUIRED,
                updated_at=self._clock(),
            ))

        CredentialAuditLogger(credential.tenant_id).log(
            event_type=AuditEventType.CREDENTIAL_REAUTH_REQUIRED,
            credential_id=credential.id,
            provider=credential.provider,
            metadata={"reason": reason},
        )
        logger.warning(
            "Credential requires re-authorization",
            extra={
                "credential_id": credential.id,
                "tenant_id": credential.tenant_id,
                "provider": credential.provider,
                "reason": reason,
            },
        )

    @staticmethod
    def _reauth_error(credential: StoredCredential) -> AuthenticationError:
        return AuthenticationError(
            f"Refresh token for {credential.provider} is invalid; the integration must be reconnected",
            code=ErrorCode.AUTH_REFRESH_TOKEN_INVALID,
            details={"tenant_id": credential.tenant_id, "provider": credential.provider},
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _schedule_refresh(self, credential: StoredCredential) -> None:
        self._cancel_timer(credential.id)

        refresh_at = credential.expires_at - self._refresh_window
        delay = max(0.0, (refresh_at - self._clock()).total_seconds())
        tenant_id, provider, credential_id = credential.tenant_id, credential.provider, credential.id
        handle: Optional[TimerHandle] = None

        async def fire() -> None:
            await self._run_scheduled_refresh(tenant_id, provider, credential_id, handle)

        handle = self._scheduler.schedule(delay, fire)
        self._timers[credential_id] = handle
        logger.debug(
            "Token refresh scheduled",
            extra={
                "credential_id": credential_id,
                "tenant_id": tenant_id,
                "provider": provider,
                "delay_seconds": delay,
            },
        )

    def _cancel_timer(self, credential_id: str) -> None:
        handle = self._timers.pop(credential_id, None)
        if handle is not None:
            handle.cancel()

    async def _run_scheduled_refresh(
        self,
        tenant_id: str,
        provider: str,
        credential_id: str,
        handle: TimerHandle,
    ) -> None:
        # Re-stored or revoked after the timer fired; a newer timer owns it now
        if handle.cancelled:
            return
        if self._timers.get(credential_id) is handle:
            del self._timers[credential_id]

        credential = await self._store.get(tenant_id, provider)
        if credential is None or credential.id != credential_id or credential.requires_reauth:
            return
        if credential.expires_at - self._clock() > self._refresh_window:
            logger.debug(
                "Scheduled refresh skipped, token is not near expiry",
                extra={"credential_id": credential_id, "tenant_id": tenant_id, "provider": provider},
            )
            return

        try:
            result = await self.refresh_token(credential)
        except AuthenticationError as e:
            logger.warning(
                "Scheduled token refresh failed",
                extra={
                    "credential_id": credential_id,
                    "tenant_id": tenant_id,
                    "provider": provider,
                    "error_code": e.code,
                },
            )
            return
        except Exception as e:
            logger.warning(
                "Scheduled token refresh failed",
                extra={
                    "credential_id": credential_id,
                    "tenant_id": tenant_id,
                    "provider": provider,
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )
            return

        if not result.success:
            logger.warning(
                "Scheduled token refresh failed",
                extra={
                    "credential_id": credential_id,
                    "tenant_id": tenant_id,
                    "provider": provider,
                    "error_code": result.error_code,
                },
            )

    @property
    def pending_refreshes(self) -> int:
        """Number of armed refresh timers."""
        return sum(1 for handle in self._timers.values() if handle.active)

    async def rehydrate(self) -> int:
        """
        Re-arm refresh timers for every active stored credential.

        Called once at process start; timers do not survive restarts.
        """
        armed = 0
        for credential in await self._store.list_all():
            if credential.requires_reauth:
                continue
            self._schedule_refresh(credential)
            armed += 1

        logger.info("Refresh timers rehydrated", extra={"timer_count": armed})
        return armed

    # ------------------------------------------------------------------
    # Revocation and queries
    # ------------------------------------------------------------------

    async def revoke_credentials(self, tenant_id: str, provider: str) -> bool:
        """Delete stored credentials and cancel their timer. False if none existed."""
        credential = await self._store.get(tenant_id, provider)
        if credential is None:
            return False

        self._cancel_timer(credential.id)
        deleted = await self._store.delete(tenant_id, provider)

        CredentialAuditLogger(tenant_id).log(
            event_type=AuditEventType.CREDENTIAL_REVOKED,
            credential_id=credential.id,
            provider=provider,
        )
        logger.info(
            "Credential revoked",
            extra={"credential_id": credential.id, "tenant_id": tenant_id, "provider": provider},
        )
        return deleted

    async def state(self, tenant_id: str, provider: str) -> CredentialState:
        credential = await self._store.get(tenant_id, provider)
        if credential is None:
            return CredentialState.UNCONNECTED
        if credential.requires_reauth:
            return CredentialState.REVOKED_NEEDS_REAUTH
        if credential.id in self._inflight:
            return CredentialState.REFRESH_PENDING
        return CredentialState.ACTIVE

    async def get_credential(self, tenant_id: str, provider: str) -> Optional[StoredCredential]:
        return await self._store.get(tenant_id, provider)

    async def has_credentials(self, tenant_id: str, provider: Optional[str] = None) -> bool:
        if provider is not None:
            return await self._store.get(tenant_id, provider) is not None
        return bool(await self._store.list_for_tenant(tenant_id))

    async def connected_providers(self, tenant_id: str) -> List[str]:
        """Providers with an active (not reauth_required) credential."""
        return sorted(
            credential.provider
            for credential in await self._store.list_for_tenant(tenant_id)
            if not credential.requires_reauth
        )

    async def cleanup(self) -> None:
        """Cancel every armed timer, every running scheduled refresh and every in-flight refresh."""
        for credential_id in list(self._timers):
            self._cancel_timer(credential_id)

        await self._scheduler.shutdown()

        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
