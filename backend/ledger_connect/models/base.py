"""Shared column mixins for ORM models."""

import uuid

from sqlalchemy import Column, DateTime, String

from ledger_connect.utils.clock import utcnow


def generate_uuid() -> str:
    return str(uuid.uuid4())


class TimestampMixin:
    """created_at / updated_at columns, timezone-aware."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="Row creation time (UTC)"
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        comment="Last modification time (UTC)"
    )


class TenantScopedMixin:
    """tenant_id column. Every query on these tables MUST filter by tenant."""

    tenant_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Owning tenant - all access is tenant-scoped"
    )
