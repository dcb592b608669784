"""
Credentials module for accounting provider OAuth tokens.

This module provides:
- Encrypted storage for OAuth tokens (in-memory and SQL stores)
- Automatic token refresh (scheduled + on-demand, one in flight per credential)
- Re-authorization flagging when a refresh token is revoked
- Audit logging with automatic redaction

SECURITY:
- Tokens are encrypted at rest using ENCRYPTION_KEY
- No plaintext tokens outside process memory
- Tokens NEVER appear in logs or API responses

Usage:
    from ledger_connect.credentials import CredentialLifecycleManager

    manager = CredentialLifecycleManager(store, cipher, gateways, scheduler)
    await manager.store_credentials(tenant_id, "xero", tokens)
    result = await manager.get_valid_access_token(tenant_id, "xero")
"""

from ledger_connect.credentials.store import (
    CredentialStore,
    InMemoryCredentialStore,
    SqlCredentialStore,
    StoredCredential,
)
from ledger_connect.credentials.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from ledger_connect.credentials.lifecycle import (
    AuthResult,
    CredentialLifecycleManager,
    CredentialState,
    CREDENTIALS_NOT_FOUND,
    REFRESH_WINDOW,
)
from ledger_connect.credentials.redaction import (
    redact_credential_data,
    CredentialAuditLogger,
    CredentialLoggingFilter,
    AuditEventType,
)

__all__ = [
    # Store
    "CredentialStore",
    "InMemoryCredentialStore",
    "SqlCredentialStore",
    "StoredCredential",
    # Scheduling
    "AsyncioScheduler",
    "Scheduler",
    "TimerHandle",
    # Lifecycle
    "AuthResult",
    "CredentialLifecycleManager",
    "CredentialState",
    "CREDENTIALS_NOT_FOUND",
    "REFRESH_WINDOW",
    # Redaction
    "redact_credential_data",
    "CredentialAuditLogger",
    "CredentialLoggingFilter",
    "AuditEventType",
]
