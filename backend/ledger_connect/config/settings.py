"""
Runtime configuration for the integration trust core.

All values come from environment variables. Provider OAuth credentials are
resolved lazily: a missing client id or secret only fails when that provider
is first used, never at startup.

Environment variables:
- ENCRYPTION_KEY:               master secret for credential encryption
- ENCRYPTION_KDF_ITERATIONS:    PBKDF2 iterations (default: "600000")
- WEBHOOK_SECRET:               HMAC secret for inbound webhooks
- REDIS_URL:                    replay cache (default: "redis://redis:6379/0")
- DATABASE_URL:                 credential and tenant tables (in-memory when unset)
- ADMIN_API_KEY:                X-Admin-Key value for the tenant provisioning routes
- LOG_LEVEL:                    root log level (default: "INFO")
- OAUTH_HTTP_TIMEOUT_SECONDS:   token endpoint timeout (default: "10")
- {PROVIDER}_CLIENT_ID / {PROVIDER}_CLIENT_SECRET / {PROVIDER}_REDIRECT_URI
  for PROVIDER in QUICKBOOKS, XERO, ZOHO
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Mapping, Optional

from ledger_connect.platform.errors import ConfigurationError, ErrorCode

DEFAULT_KDF_ITERATIONS = 600000
DEFAULT_OAUTH_TIMEOUT_SECONDS = 10.0
DEFAULT_REDIS_URL = "redis://redis:6379/0"

SUPPORTED_PROVIDERS = ("quickbooks", "xero", "zoho")


@dataclass(frozen=True)
class ProviderCredentials:
    """OAuth client registration for one provider."""
    client_id: str
    client_secret: str
    redirect_uri: str

    def __repr__(self) -> str:
        return f"ProviderCredentials(client_id={self.client_id!r}, client_secret='[REDACTED]')"


@dataclass(frozen=True)
class Settings:
    """Immutable snapshot of the process environment."""
    encryption_key: Optional[str] = field(default=None, repr=False)
    kdf_iterations: int = DEFAULT_KDF_ITERATIONS
    webhook_secret: Optional[str] = field(default=None, repr=False)
    redis_url: Optional[str] = None
    database_url: Optional[str] = None
    admin_api_key: Optional[str] = field(default=None, repr=False)
    log_level: str = "INFO"
    oauth_timeout_seconds: float = DEFAULT_OAUTH_TIMEOUT_SECONDS
    environ: Mapping[str, str] = field(default_factory=dict, repr=False)

    def provider_credentials(self, provider: str) -> ProviderCredentials:
        """
        Resolve OAuth client credentials for a provider.

        Raises:
            ConfigurationError: If the provider is unknown or its client id /
                secret are not configured
        """
        provider = provider.lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(
                f"Unknown OAuth provider: {provider}",
                code=ErrorCode.PROVIDER_NOT_FOUND,
                details={"provider": provider},
            )

        prefix = provider.upper()
        client_id = self.environ.get(f"{prefix}_CLIENT_ID", "")
        client_secret = self.environ.get(f"{prefix}_CLIENT_SECRET", "")
        redirect_uri = self.environ.get(f"{prefix}_REDIRECT_URI", "")

        if not client_id or not client_secret:
            raise ConfigurationError(
                f"OAuth credentials not configured for {provider}. "
                f"Set {prefix}_CLIENT_ID and {prefix}_CLIENT_SECRET.",
                details={"provider": provider},
            )

        return ProviderCredentials(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
        )

    def require_encryption_key(self) -> str:
        if not self.encryption_key:
            raise ConfigurationError(
                "Encryption key not configured. Set ENCRYPTION_KEY environment variable.",
                code=ErrorCode.SYSTEM_CONFIG_MISSING,
            )
        return self.encryption_key

    def require_webhook_secret(self) -> str:
        if not self.webhook_secret:
            raise ConfigurationError(
                "Webhook secret not configured. Set WEBHOOK_SECRET environment variable.",
                code=ErrorCode.SYSTEM_CONFIG_MISSING,
            )
        return self.webhook_secret

    def require_admin_api_key(self) -> str:
        if not self.admin_api_key:
            raise ConfigurationError(
                "Tenant provisioning is disabled. Set ADMIN_API_KEY environment variable.",
                code=ErrorCode.SYSTEM_CONFIG_MISSING,
            )
        return self.admin_api_key


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from a mapping (defaults to os.environ)."""
    env = dict(os.environ if environ is None else environ)
    return Settings(
        encryption_key=env.get("ENCRYPTION_KEY") or None,
        kdf_iterations=int(env.get("ENCRYPTION_KDF_ITERATIONS", str(DEFAULT_KDF_ITERATIONS))),
        webhook_secret=env.get("WEBHOOK_SECRET") or None,
        redis_url=env.get("REDIS_URL", DEFAULT_REDIS_URL) or None,
        database_url=env.get("DATABASE_URL") or None,
        admin_api_key=env.get("ADMIN_API_KEY") or None,
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
        oauth_timeout_seconds=float(
            env.get("OAUTH_HTTP_TIMEOUT_SECONDS", str(DEFAULT_OAUTH_TIMEOUT_SECONDS))
        ),
        environ=env,
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
