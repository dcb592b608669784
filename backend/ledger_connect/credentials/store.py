"""
Credential persistence for encrypted OAuth tokens.

SECURITY REQUIREMENTS:
- Stores only ciphertext produced by CipherBox
- Tenant-scoped access: every lookup is keyed by (tenant_id, provider)
- Upserts keep the original id and created_at

Two implementations share the CredentialStore protocol:
- InMemoryCredentialStore: process-local, used in tests and single-node dev
- SqlCredentialStore: the oauth_credentials table via SQLAlchemy sessions

Usage:
    store = SqlCredentialStore(session_factory)
    await store.put(credential)
    credential = await store.get(tenant_id, "xero")
"""

import copy
import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from sqlalchemy.orm import Session, sessionmaker

from ledger_connect.models.oauth_credential import CredentialStatus, OAuthCredential
from ledger_connect.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class StoredCredential:
    """
    Persisted credential with encrypted tokens.

    SECURITY: token fields hold ciphertext only and are hidden from repr.
    """
    tenant_id: str
    provider: str
    encrypted_access_token: str
    encrypted_refresh_token: str
    expires_at: datetime
    token_type: str = "Bearer"
    scope: str = ""
    provider_metadata: Dict[str, Any] = field(default_factory=dict)
    status: CredentialStatus = CredentialStatus.ACTIVE
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_refreshed_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.tenant_id, self.provider)

    @property
    def requires_reauth(self) -> bool:
        return self.status == CredentialStatus.REAUTH_REQUIRED

    def __repr__(self) -> str:
        return (
            f"StoredCredential(id={self.id!r}, tenant_id={self.tenant_id!r}, "
            f"provider={self.provider!r}, status={self.status.value!r}, "
            f"expires_at={self.expires_at.isoformat()})"
        )


class CredentialStore(Protocol):
    """Persistence collaborator keyed by (tenant_id, provider)."""

    async def get(self, tenant_id: str, provider: str) -> Optional[StoredCredential]:
        ...

    async def put(self, credential: StoredCredential) -> StoredCredential:
        ...

    async def delete(self, tenant_id: str, provider: str) -> bool:
        ...

    async def list_for_tenant(self, tenant_id: str) -> List[StoredCredential]:
        ...

    async def list_all(self) -> List[StoredCredential]:
        ...


class InMemoryCredentialStore:
    """Dictionary-backed store. Returns deep copies so callers cannot mutate stored rows."""

    def __init__(self) -> None:
        self._rows: Dict[Tuple[str, str], StoredCredential] = {}

    async def get(self, tenant_id: str, provider: str) -> Optional[StoredCredential]:
        row = self._rows.get((tenant_id, provider))
        return copy.deepcopy(row) if row else None

    async def put(self, credential: StoredCredential) -> StoredCredential:
        existing = self._rows.get(credential.key)
        if existing is not None:
            credential = replace(credential, id=existing.id, created_at=existing.created_at)
        self._rows[credential.key] = copy.deepcopy(credential)
        return copy.deepcopy(credential)

    async def delete(self, tenant_id: str, provider: str) -> bool:
        return self._rows.pop((tenant_id, provider), None) is not None

    async def list_for_tenant(self, tenant_id: str) -> List[StoredCredential]:
        return [copy.deepcopy(row) for key, row in self._rows.items() if key[0] == tenant_id]

    async def list_all(self) -> List[StoredCredential]:
        return [copy.deepcopy(row) for row in self._rows.values()]

    def __len__(self) -> int:
        return len(self._rows)


def _to_domain(row: OAuthCredential) -> StoredCredential:
    return StoredCredential(
        id=row.id,
        tenant_id=row.tenant_id,
        provider=row.provider,
        encrypted_access_token=row.encrypted_access_token,
        encrypted_refresh_token=row.encrypted_refresh_token,
        expires_at=as_utc(row.expires_at),
        token_type=row.token_type,
        scope=row.scope or "",
        provider_metadata=json.loads(row.provider_metadata) if row.provider_metadata else {},
        status=CredentialStatus(row.status),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        last_refreshed_at=as_utc(row.last_refreshed_at) if row.last_refreshed_at else None,
    )


class SqlCredentialStore:
    """
    Store backed by the oauth_credentials table.

    Each call runs in its own session and commits before returning.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _find(self, session: Session, tenant_id: str, provider: str) -> Optional[OAuthCredential]:
        return session.query(OAuthCredential).filter(
            OAuthCredential.tenant_id == tenant_id,
            OAuthCredential.provider == provider,
        ).first()

    async def get(self, tenant_id: str, provider: str) -> Optional[StoredCredential]:
        with self._session_factory() as session:
            row = self._find(session, tenant_id, provider)
            return _to_domain(row) if row else None

    async def put(self, credential: StoredCredential) -> StoredCredential:
        with self._session_factory() as session:
            row = self._find(session, credential.tenant_id, credential.provider)
            if row is None:
                row = OAuthCredential(
                    id=credential.id,
                    tenant_id=credential.tenant_id,
                    provider=credential.provider,
                    created_at=credential.created_at,
                )
                session.add(row)

            row.encrypted_access_token = credential.encrypted_access_token
            row.encrypted_refresh_token = credential.encrypted_refresh_token
            row.expires_at = credential.expires_at
            row.token_type = credential.token_type
            row.scope = credential.scope
            row.provider_metadata = (
                json.dumps(credential.provider_metadata) if credential.provider_metadata else None
            )
            row.status = credential.status
            row.updated_at = credential.updated_at
            row.last_refreshed_at = credential.last_refreshed_at

            session.commit()
            stored = _to_domain(row)

        logger.debug(
            "Credential persisted",
            extra={
                "credential_id": stored.id,
                "tenant_id": stored.tenant_id,
                "provider": stored.provider,
                "status": stored.status.value,
            },
        )
        return stored

    async def delete(self, tenant_id: str, provider: str) -> bool:
        with self._session_factory() as session:
            row = self._find(session, tenant_id, provider)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    async def list_for_tenant(self, tenant_id: str) -> List[StoredCredential]:
        with self._session_factory() as session:
            rows = session.query(OAuthCredential).filter(
                OAuthCredential.tenant_id == tenant_id
            ).all()
            return [_to_domain(row) for row in rows]

    async def list_all(self) -> List[StoredCredential]:
        with self._session_factory() as session:
            return [_to_domain(row) for row in session.query(OAuthCredential).all()]
