"""ORM models. Tenant-owned tables mix in TenantScopedMixin."""

from ledger_connect.models.base import TenantScopedMixin, TimestampMixin
from ledger_connect.models.oauth_credential import CredentialStatus, OAuthCredential
from ledger_connect.models.tenant import TenantRecord

__all__ = [
    "CredentialStatus",
    "OAuthCredential",
    "TenantRecord",
    "TenantScopedMixin",
    "TimestampMixin",
]
