"""
OAuth gateway for accounting providers (QuickBooks, Xero, Zoho Books).

Talks to each provider's token endpoint: authorization URL construction,
authorization-code exchange, refresh-token grant, and authenticated API
clients for downstream sync code.

SECURITY:
- Client secrets are sent only to the provider's token endpoint
- Plaintext tokens are never logged
- Refresh tokens arrive encrypted and are decrypted only for the request

Retry rules:
- exchange_code: retried only when the code cannot have been consumed
  (connection never established, 429, 503)
- refresh: transport errors, timeouts, 408, 429 and 5xx are retried;
  any other 4xx means the refresh token is revoked and is never retried

Usage:
    registry = GatewayRegistry(settings, cipher)
    gateway = registry.get("xero")

    url = gateway.authorization_url(state)
    tokens = await gateway.exchange_code(code, tenant_id)
    result = await gateway.refresh(credential.encrypted_refresh_token, tenant_id)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from ledger_connect.config.settings import ProviderCredentials, Settings
from ledger_connect.platform.errors import (
    AuthenticationError,
    ConfigurationError,
    ErrorCode,
    OAuthExchangeFailed,
)
from ledger_connect.platform.retry import RetryPolicy, policy_for_provider, retry_async
from ledger_connect.utils.clock import Clock, utcnow
from ledger_connect.utils.encryption import CipherBox

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN_SECONDS = 3600
DEFAULT_TOKEN_TYPE = "Bearer"
API_CLIENT_TIMEOUT_SECONDS = 30.0

REFRESH_TOKEN_REVOKED = "refresh_token_revoked"

# Status codes where the provider has not processed the grant
EXCHANGE_RETRYABLE_STATUS = frozenset({429, 503})
# 4xx statuses that are transient rather than a rejected refresh token
REFRESH_TRANSIENT_4XX = frozenset({408, 429})


@dataclass(frozen=True)
class ProviderEndpoints:
    """Static OAuth endpoints for one provider."""
    authorize_url: str
    token_url: str
    api_base_url: str
    scopes: Tuple[str, ...]


PROVIDER_ENDPOINTS: Dict[str, ProviderEndpoints] = {
    "quickbooks": ProviderEndpoints(
        authorize_url="https://appcenter.intuit.com/connect/oauth2",
        token_url="https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer",
        api_base_url="https://quickbooks.api.intuit.com/v3",
        scopes=("com.intuit.quickbooks.accounting", "com.intuit.quickbooks.payment"),
    ),
    "xero": ProviderEndpoints(
        authorize_url="https://login.xero.com/identity/connect/authorize",
        token_url="https://identity.xero.com/connect/token",
        api_base_url="https://api.xero.com/api.xro/2.0",
        scopes=("openid", "profile", "email", "accounting.transactions", "accounting.contacts"),
    ),
    "zoho": ProviderEndpoints(
        authorize_url="https://accounts.zoho.com/oauth/v2/auth",
        token_url="https://accounts.zoho.com/oauth/v2/token",
        api_base_url="https://www.zohoapis.com",
        scopes=("ZohoBooks.fullaccess.all",),
    ),
}


@dataclass
class OAuthTokens:
    """
    Token set returned by a provider.

    SECURITY: transient only. Never persisted in plaintext, never logged.
    """
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = DEFAULT_TOKEN_TYPE
    scope: str = ""

    def __repr__(self) -> str:
        return (
            f"OAuthTokens(access_token='[REDACTED]', refresh_token='[REDACTED]', "
            f"expires_at={self.expires_at.isoformat()}, token_type={self.token_type!r})"
        )


@dataclass
class TokenRefreshResult:
    """
    Outcome of a refresh-token grant.

    SECURITY: Does NOT log token values.
    """
    success: bool
    tokens: Optional[OAuthTokens] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def revoked(self) -> bool:
        return not self.success and self.error == REFRESH_TOKEN_REVOKED


class TokenEndpointError(Exception):
    """
    Failure talking to a provider token endpoint.

    status_code is None for transport failures. connection_established is
    False only when the request can never have reached the provider.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        connection_established: bool = True,
        malformed: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.connection_established = connection_established
        self.malformed = malformed


def _exchange_retryable(exc: Exception) -> bool:
    if not isinstance(exc, TokenEndpointError) or exc.malformed:
        return False
    if not exc.connection_established:
        return True
    return exc.status_code in EXCHANGE_RETRYABLE_STATUS


def _refresh_retryable(exc: Exception) -> bool:
    if not isinstance(exc, TokenEndpointError) or exc.malformed:
        return False
    if exc.status_code is None:
        return True
    return exc.status_code in REFRESH_TRANSIENT_4XX or exc.status_code >= 500


def _is_revocation(exc: TokenEndpointError) -> bool:
    status_code = exc.status_code
    return (
        status_code is not None
        and 400 <= status_code < 500
        and status_code not in REFRESH_TRANSIENT_4XX
    )


async def _raise_on_unauthorized(response: httpx.Response) -> None:
    if response.status_code == 401:
        raise AuthenticationError(
            "Access token expired or invalid",
            code=ErrorCode.AUTH_TOKEN_EXPIRED,
            details={"url": str(response.request.url)},
        )


class ProviderGateway:
    """
    OAuth client for a single accounting provider.

    Client credentials are resolved from settings on first use, so a
    provider without configuration only fails when it is actually called.
    """

    def __init__(
        self,
        provider: str,
        settings: Settings,
        cipher: CipherBox,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Clock = utcnow,
    ):
        provider = provider.lower()
        if provider not in PROVIDER_ENDPOINTS:
            raise ConfigurationError(
                f"Unknown OAuth provider: {provider}",
                code=ErrorCode.PROVIDER_NOT_FOUND,
                details={"provider": provider},
            )
        self.provider = provider
        self.endpoints = PROVIDER_ENDPOINTS[provider]
        self._settings = settings
        self._cipher = cipher
        self._transport = transport
        self._retry_policy = retry_policy or policy_for_provider(provider)
        self._sleep = sleep
        self._clock = clock
        self._credentials: Optional[ProviderCredentials] = None

    @property
    def credentials(self) -> ProviderCredentials:
        """Client registration, resolved lazily. Raises ConfigurationError if missing."""
        if self._credentials is None:
            self._credentials = self._settings.provider_credentials(self.provider)
        return self._credentials

    def authorization_url(self, state: str) -> str:
        """Build the provider consent URL for the connect flow."""
        creds = self.credentials
        params = {
            "client_id": creds.client_id,
            "redirect_uri": creds.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.endpoints.scopes),
            "state": state,
        }
        return f"{self.endpoints.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, tenant_id: str) -> OAuthTokens:
        """
        Exchange an authorization code for tokens.

        Raises:
            ConfigurationError: If the provider is not configured
            OAuthExchangeFailed: On any provider or transport failure
        """
        creds = self.credentials
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": creds.redirect_uri,
            "client_id": creds.client_id,
            "client_secret": creds.client_secret,
        }

        try:
            payload = await retry_async(
                lambda: self._post_token(form),
                policy=self._retry_policy,
                retryable=_exchange_retryable,
                sleep=self._sleep,
                operation=f"{self.provider}.token_exchange",
            )
            tokens = self._parse_token_response(payload)
        except TokenEndpointError as e:
            logger.warning(
                "OAuth token exchange failed",
                extra={
                    "tenant_id": tenant_id,
                    "provider": self.provider,
                    "status_code": e.status_code,
                    "error": str(e),
                },
            )
            raise OAuthExchangeFailed(
                f"Failed to exchange authorization code for {self.provider} tokens",
                tenant_id=tenant_id,
                provider=self.provider,
            ) from e

        logger.info(
            "OAuth token exchange succeeded",
            extra={"tenant_id": tenant_id, "provider": self.provider},
        )
        return tokens

    async def refresh(self, encrypted_refresh_token: str, tenant_id: str) -> TokenRefreshResult:
        """
        Run the refresh-token grant.

        Returns a failed result (never raises) for provider and transport
        failures. DecryptionFailed from the cipher propagates.
        """
        refresh_token = self._cipher.decrypt(encrypted_refresh_token)
        creds = self.credentials
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": creds.client_id,
            "client_secret": creds.client_secret,
        }

        try:
            payload = await retry_async(
                lambda: self._post_token(form),
                policy=self._retry_policy,
                retryable=_refresh_retryable,
                sleep=self._sleep,
                operation=f"{self.provider}.token_refresh",
            )
            tokens = self._parse_token_response(payload, previous_refresh_token=refresh_token)
        except TokenEndpointError as e:
            revoked = _is_revocation(e) and not e.malformed
            logger.warning(
                "OAuth token refresh failed",
                extra={
                    "tenant_id": tenant_id,
                    "provider": self.provider,
                    "status_code": e.status_code,
                    "revoked": revoked,
                    "error": str(e),
                },
            )
            return TokenRefreshResult(
                success=False,
                error=REFRESH_TOKEN_REVOKED if revoked else str(e),
                status_code=e.status_code,
            )

        logger.info(
            "OAuth token refresh succeeded",
            extra={"tenant_id": tenant_id, "provider": self.provider},
        )
        return TokenRefreshResult(success=True, tokens=tokens)

    def api_client(self, access_token: str) -> httpx.AsyncClient:
        """
        Authenticated client for the provider's API.

        A 401 response raises AuthenticationError(AUTH_TOKEN_EXPIRED). The
        caller owns the client and must close it.
        """
        return httpx.AsyncClient(
            base_url=self.endpoints.api_base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=API_CLIENT_TIMEOUT_SECONDS,
            transport=self._transport,
            event_hooks={"response": [_raise_on_unauthorized]},
        )

    async def _post_token(self, form: Dict[str, str]) -> Dict[str, Any]:
        creds = self.credentials
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.oauth_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self.endpoints.token_url,
                    data=form,
                    auth=httpx.BasicAuth(creds.client_id, creds.client_secret),
                    headers={"Accept": "application/json"},
                )
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise TokenEndpointError(
                f"Could not connect to {self.provider} token endpoint: {type(e).__name__}",
                connection_established=False,
            ) from e
        except httpx.TransportError as e:
            raise TokenEndpointError(
                f"Request to {self.provider} token endpoint failed: {type(e).__name__}",
            ) from e

        if response.status_code >= 400:
            raise TokenEndpointError(
                f"{self.provider} token endpoint returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise TokenEndpointError(
                f"{self.provider} token endpoint returned a non-JSON body",
                status_code=response.status_code,
                malformed=True,
            ) from e

        if not isinstance(payload, dict):
            raise TokenEndpointError(
                f"{self.provider} token endpoint returned an unexpected body",
                status_code=response.status_code,
                malformed=True,
            )
        return payload

    def _parse_token_response(
        self,
        payload: Dict[str, Any],
        previous_refresh_token: Optional[str] = None,
    ) -> OAuthTokens:
        access_token = payload.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise TokenEndpointError(
                f"{self.provider} token response is missing access_token",
                malformed=True,
            )

        refresh_token = payload.get("refresh_token") or previous_refresh_token
        if not refresh_token:
            raise TokenEndpointError(
                f"{self.provider} token response is missing refresh_token",
                malformed=True,
            )

        try:
            expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN_SECONDS

        return OAuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=self._clock() + timedelta(seconds=expires_in),
            token_type=payload.get("token_type") or DEFAULT_TOKEN_TYPE,
            scope=payload.get("scope") or "",
        )


class GatewayRegistry:
    """One ProviderGateway per provider, created on first request."""

    def __init__(
        self,
        settings: Settings,
        cipher: CipherBox,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Clock = utcnow,
    ):
        self._settings = settings
        self._cipher = cipher
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._gateways: Dict[str, ProviderGateway] = {}

    def get(self, provider: str) -> ProviderGateway:
        key = provider.lower()
        gateway = self._gateways.get(key)
        if gateway is None:
            gateway = ProviderGateway(
                key,
                self._settings,
                self._cipher,
                transport=self._transport,
                sleep=self._sleep,
                clock=self._clock,
            )
            self._gateways[key] = gateway
        return gateway

    def __contains__(self, provider: str) -> bool:
        return provider.lower() in PROVIDER_ENDPOINTS
