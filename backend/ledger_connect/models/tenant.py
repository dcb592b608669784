"""
Tenant table.

One row per tenant. Limits, settings, metadata and usage counters are
stored as JSON text; status and plan hold the enum values as strings.
"""

from sqlalchemy import Column, String, Text

from ledger_connect.db_base import Base
from ledger_connect.models.base import TimestampMixin, generate_uuid


class TenantRecord(Base, TimestampMixin):
    """Persisted tenant. The tenant id doubles as the X-Tenant-ID header value."""

    __tablename__ = "tenants"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active", index=True)
    plan = Column(String(20), nullable=False, default="starter")

    # JSON
    limits = Column(Text, nullable=False, default="{}")
    settings = Column(Text, nullable=False, default="{}")
    tenant_metadata = Column("metadata", Text, nullable=False, default="{}")
    usage = Column(Text, nullable=False, default="{}")

    def __repr__(self) -> str:
        return f"<TenantRecord {self.id} status={self.status}>"
