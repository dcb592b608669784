"""
OAuth credential table.

One row per (tenant_id, provider). Token columns hold CipherBox output
only; the plaintext exists in process memory while a request or refresh
runs and nowhere else.

Row lifecycle:
- connect: inserted as active
- refresh: tokens overwritten in place, id and created_at kept
- refresh token revoked or unreadable: flipped to reauth_required and kept
  so the UI can prompt for reconnection
- disconnect: deleted
"""

import enum

from sqlalchemy import Column, DateTime, Enum, Index, String, Text, UniqueConstraint

from ledger_connect.db_base import Base
from ledger_connect.models.base import TenantScopedMixin, TimestampMixin, generate_uuid


class CredentialStatus(str, enum.Enum):
    ACTIVE = "active"
    REAUTH_REQUIRED = "reauth_required"


class OAuthCredential(Base, TimestampMixin, TenantScopedMixin):
    """Encrypted provider tokens plus the non-secret facts needed to use them."""

    __tablename__ = "oauth_credentials"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    provider = Column(String(50), nullable=False, comment="quickbooks, xero or zoho")

    # CipherBox ciphertext
    encrypted_access_token = Column(Text, nullable=False)
    encrypted_refresh_token = Column(Text, nullable=False)

    token_type = Column(String(50), nullable=False, default="Bearer")
    scope = Column(Text, nullable=False, default="", comment="Granted scopes, space-separated")
    expires_at = Column(DateTime(timezone=True), nullable=False, comment="Access token expiry (UTC)")
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    provider_metadata = Column(
        Text,
        nullable=True,
        comment="JSON: realm_id (QuickBooks) or tenant_ref (Xero organisation)",
    )
    status = Column(
        Enum(CredentialStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=CredentialStatus.ACTIVE,
        index=True,
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_oauth_credentials_tenant_provider"),
        # Rehydration and expiry sweeps scan by expiry
        Index("ix_oauth_credentials_expiry", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<OAuthCredential {self.provider} tenant={self.tenant_id} status={self.status}>"
