"""
Tenant records, status gating and usage quotas.

SECURITY:
- validate_status runs before any tenant-scoped work (credential lookups,
  provider calls); inactive and suspended tenants are refused with 403
- A tenant that still owns credentials cannot be deleted

Quota semantics: a limit is exceeded when usage is strictly greater than
the limit. Types are checked in order api_calls, integrations, users,
storage; the first exceeded type is reported.

Usage:
    service = TenancyService(InMemoryTenantRepository(), credential_lookup=manager.has_credentials)
    tenant = await service.create_tenant("Acme Ltd")
    await service.validate_status(tenant.id)
"""

import copy
import enum
import json
import logging
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from sqlalchemy.orm import sessionmaker

from ledger_connect.models.tenant import TenantRecord
from ledger_connect.platform.errors import ErrorCode, TenantError, ValidationError
from ledger_connect.platform.tenant_context import TenantContext
from ledger_connect.utils.clock import Clock, as_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_BYTES = 10 * 1024 ** 3  # 10 GiB


class TenantStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class TenantPlan(str, enum.Enum):
    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class QuotaType(str, enum.Enum):
    API_CALLS = "api_calls"
    INTEGRATIONS = "integrations"
    USERS = "users"
    STORAGE = "storage"


@dataclass
class TenantLimits:
    api_calls_per_month: int = 10000
    integrations: int = 5
    users: int = 10
    storage: int = DEFAULT_STORAGE_BYTES


@dataclass
class NotificationSettings:
    email: bool = True
    webhook: bool = True
    in_app: bool = True


@dataclass
class SecuritySettings:
    mfa_required: bool = False
    ip_whitelist: List[str] = field(default_factory=list)
    session_timeout_seconds: int = 3600


@dataclass
class TenantSettings:
    default_currency: str = "USD"
    timezone: str = "UTC"
    date_format: str = "YYYY-MM-DD"
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    security: SecuritySettings = field(default_factory=SecuritySettings)


@dataclass
class TenantUsage:
    api_calls_this_month: int = 0
    active_integrations: int = 0
    active_users: int = 0
    storage_used: int = 0


@dataclass
class Tenant:
    name: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: TenantStatus = TenantStatus.ACTIVE
    plan: TenantPlan = TenantPlan.STARTER
    limits: TenantLimits = field(default_factory=TenantLimits)
    settings: TenantSettings = field(default_factory=TenantSettings)
    metadata: Dict[str, Any] = field(default_factory=dict)
    usage: TenantUsage = field(default_factory=TenantUsage)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_context(self, correlation_id: Optional[str] = None) -> TenantContext:
        return TenantContext(
            tenant_id=self.id,
            tenant_name=self.name,
            tenant_status=self.status.value,
            tenant_plan=self.plan.value,
            correlation_id=correlation_id,
        )


@dataclass
class RemainingLimits:
    """Limit minus usage per quota type. Negative means exceeded."""
    api_calls_remaining: int
    integrations_remaining: int
    users_remaining: int
    storage_remaining: int


@dataclass
class QuotaCheck:
    exceeded: bool
    quota_type: Optional[QuotaType] = None


class TenantRepository(Protocol):
    async def get(self, tenant_id: str) -> Optional[Tenant]:
        ...

    async def save(self, tenant: Tenant) -> Tenant:
        ...

    async def delete(self, tenant_id: str) -> bool:
        ...


class InMemoryTenantRepository:
    """Dictionary-backed tenant repository. Returns deep copies."""

    def __init__(self) -> None:
        self._tenants: Dict[str, Tenant] = {}

    async def get(self, tenant_id: str) -> Optional[Tenant]:
        tenant = self._tenants.get(tenant_id)
        return copy.deepcopy(tenant) if tenant else None

    async def save(self, tenant: Tenant) -> Tenant:
        self._tenants[tenant.id] = copy.deepcopy(tenant)
        return copy.deepcopy(tenant)

    async def delete(self, tenant_id: str) -> bool:
        return self._tenants.pop(tenant_id, None) is not None


def _settings_from_dict(data: Dict[str, Any]) -> TenantSettings:
    data = dict(data)
    notifications = NotificationSettings(**data.pop("notifications", {}))
    security = SecuritySettings(**data.pop("security", {}))
    return TenantSettings(notifications=notifications, security=security, **data)


def _tenant_from_row(row: TenantRecord) -> Tenant:
    return Tenant(
        id=row.id,
        name=row.name,
        status=TenantStatus(row.status),
        plan=TenantPlan(row.plan),
        limits=TenantLimits(**json.loads(row.limits or "{}")),
        settings=_settings_from_dict(json.loads(row.settings or "{}")),
        metadata=json.loads(row.tenant_metadata or "{}"),
        usage=TenantUsage(**json.loads(row.usage or "{}")),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


class SqlTenantRepository:
    """
    Tenant repository backed by the tenants table.

    Each call runs in its own session and commits before returning.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def get(self, tenant_id: str) -> Optional[Tenant]:
        with self._session_factory() as session:
            row = session.get(TenantRecord, tenant_id)
            return _tenant_from_row(row) if row else None

    async def save(self, tenant: Tenant) -> Tenant:
        with self._session_factory() as session:
            row = session.get(TenantRecord, tenant.id)
            if row is None:
                row = TenantRecord(id=tenant.id, created_at=tenant.created_at)
                session.add(row)

            row.name = tenant.name
            row.status = tenant.status.value
            row.plan = tenant.plan.value
            row.limits = json.dumps(asdict(tenant.limits))
            row.settings = json.dumps(asdict(tenant.settings))
            row.tenant_metadata = json.dumps(tenant.metadata)
            row.usage = json.dumps(asdict(tenant.usage))
            row.updated_at = tenant.updated_at

            session.commit()
            return _tenant_from_row(row)

    async def delete(self, tenant_id: str) -> bool:
        with self._session_factory() as session:
            row = session.get(TenantRecord, tenant_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True


CredentialLookup = Callable[[str], Awaitable[bool]]

_USAGE_FIELDS = {f.name for f in fields(TenantUsage)}
_SETTINGS_FIELDS = {f.name for f in fields(TenantSettings)}
_UPDATABLE_TENANT_FIELDS = {"name", "plan", "limits", "metadata"}


class TenancyService:
    """Tenant lifecycle, gating and quota checks."""

    def __init__(
        self,
        repository: TenantRepository,
        credential_lookup: Optional[CredentialLookup] = None,
        clock: Clock = utcnow,
    ):
        self._repo = repository
        self._credential_lookup = credential_lookup
        self._clock = clock

    async def create_tenant(
        self,
        name: str,
        *,
        tenant_id: Optional[str] = None,
        plan: TenantPlan = TenantPlan.STARTER,
        limits: Optional[TenantLimits] = None,
        settings: Optional[TenantSettings] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tenant:
        if not name:
            raise ValidationError("Tenant name is required", code=ErrorCode.VALIDATION_REQUIRED_FIELD, field="name")
        if tenant_id and await self._repo.get(tenant_id) is not None:
            raise ValidationError(f"Tenant already exists: {tenant_id}", field="tenant_id")

        now = self._clock()
        tenant = Tenant(
            name=name,
            plan=plan,
            limits=limits or TenantLimits(),
            settings=settings or TenantSettings(),
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        if tenant_id:
            tenant.id = tenant_id

        saved = await self._repo.save(tenant)
        logger.info(
            "Tenant created",
            extra={"tenant_id": saved.id, "tenant_plan": saved.plan.value},
        )
        return saved

    async def get_tenant(self, tenant_id: str) -> Tenant:
        """
        Raises:
            TenantError: TENANT_NOT_FOUND (404)
        """
        tenant = await self._repo.get(tenant_id)
        if tenant is None:
            raise TenantError(
                f"Tenant not found: {tenant_id}",
                code=ErrorCode.TENANT_NOT_FOUND,
                tenant_id=tenant_id,
            )
        return tenant

    async def validate_status(self, tenant_id: str) -> Tenant:
        """
        Return the tenant if it may do work.

        Raises:
            TenantError: TENANT_NOT_FOUND, TENANT_INACTIVE or TENANT_SUSPENDED
        """
        tenant = await self.get_tenant(tenant_id)
        if tenant.status == TenantStatus.INACTIVE:
            logger.warning("Inactive tenant refused", extra={"tenant_id": tenant_id})
            raise TenantError(
                "Tenant is inactive",
                code=ErrorCode.TENANT_INACTIVE,
                tenant_id=tenant_id,
            )
        if tenant.status == TenantStatus.SUSPENDED:
            logger.warning("Suspended tenant refused", extra={"tenant_id": tenant_id})
            raise TenantError(
                "Tenant is suspended",
                code=ErrorCode.TENANT_SUSPENDED,
                tenant_id=tenant_id,
            )
        return tenant

    async def check_limits(self, tenant_id: str) -> RemainingLimits:
        tenant = await self.get_tenant(tenant_id)
        limits, usage = tenant.limits, tenant.usage
        return RemainingLimits(
            api_calls_remaining=limits.api_calls_per_month - usage.api_calls_this_month,
            integrations_remaining=limits.integrations - usage.active_integrations,
            users_remaining=limits.users - usage.active_users,
            storage_remaining=limits.storage - usage.storage_used,
        )

    async def check_quota(self, tenant_id: str) -> QuotaCheck:
        remaining = await self.check_limits(tenant_id)
        ordered = (
            (QuotaType.API_CALLS, remaining.api_calls_remaining),
            (QuotaType.INTEGRATIONS, remaining.integrations_remaining),
            (QuotaType.USERS, remaining.users_remaining),
            (QuotaType.STORAGE, remaining.storage_remaining),
        )
        for quota_type, value in ordered:
            if value < 0:
                return QuotaCheck(exceeded=True, quota_type=quota_type)
        return QuotaCheck(exceeded=False)

    async def enforce_quota(self, tenant_id: str) -> None:
        """
        Raises:
            TenantError: TENANT_QUOTA_EXCEEDED (429) naming the first exceeded quota
        """
        check = await self.check_quota(tenant_id)
        if check.exceeded:
            raise TenantError(
                f"Tenant quota exceeded: {check.quota_type.value}",
                code=ErrorCode.TENANT_QUOTA_EXCEEDED,
                tenant_id=tenant_id,
            )

    async def record_api_call(self, tenant_id: str, count: int = 1) -> TenantUsage:
        tenant = await self.get_tenant(tenant_id)
        tenant.usage.api_calls_this_month += count
        tenant.updated_at = self._clock()
        saved = await self._repo.save(tenant)
        logger.debug("API call recorded", extra={"tenant_id": tenant_id})
        return saved.usage

    async def update_usage(self, tenant_id: str, **counters: int) -> TenantUsage:
        unknown = set(counters) - _USAGE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown usage counters: {sorted(unknown)}")
        tenant = await self.get_tenant(tenant_id)
        tenant.usage = replace(tenant.usage, **counters)
        tenant.updated_at = self._clock()
        saved = await self._repo.save(tenant)
        return saved.usage

    async def update_tenant(self, tenant_id: str, **updates: Any) -> Tenant:
        unknown = set(updates) - _UPDATABLE_TENANT_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {sorted(unknown)}")
        tenant = await self.get_tenant(tenant_id)
        tenant = replace(tenant, **updates, updated_at=self._clock())
        saved = await self._repo.save(tenant)
        logger.info("Tenant updated", extra={"tenant_id": tenant_id, "fields": sorted(updates)})
        return saved

    async def get_settings(self, tenant_id: str) -> TenantSettings:
        return (await self.get_tenant(tenant_id)).settings

    async def update_settings(self, tenant_id: str, **updates: Any) -> TenantSettings:
        unknown = set(updates) - _SETTINGS_FIELDS
        if unknown:
            raise ValidationError(f"Unknown tenant settings: {sorted(unknown)}")
        tenant = await self.get_tenant(tenant_id)
        tenant.settings = replace(tenant.settings, **updates)
        tenant.updated_at = self._clock()
        saved = await self._repo.save(tenant)
        logger.info("Tenant settings updated", extra={"tenant_id": tenant_id})
        return saved.settings

    async def _set_status(self, tenant_id: str, status: TenantStatus) -> Tenant:
        tenant = await self.get_tenant(tenant_id)
        tenant.status = status
        tenant.updated_at = self._clock()
        saved = await self._repo.save(tenant)
        logger.info(
            "Tenant status changed",
            extra={"tenant_id": tenant_id, "tenant_status": status.value},
        )
        return saved

    async def suspend(self, tenant_id: str) -> Tenant:
        return await self._set_status(tenant_id, TenantStatus.SUSPENDED)

    async def activate(self, tenant_id: str) -> Tenant:
        return await self._set_status(tenant_id, TenantStatus.ACTIVE)

    async def deactivate(self, tenant_id: str) -> Tenant:
        return await self._set_status(tenant_id, TenantStatus.INACTIVE)

    async def delete_tenant(self, tenant_id: str) -> bool:
        """
        Delete a tenant that owns no credentials.

        Raises:
            TenantError: TENANT_NOT_FOUND, or TENANT_HAS_CREDENTIALS (409)
        """
        await self.get_tenant(tenant_id)
        if self._credential_lookup is not None and await self._credential_lookup(tenant_id):
            raise TenantError(
                "Tenant still has stored credentials; disconnect integrations first",
                code=ErrorCode.TENANT_HAS_CREDENTIALS,
                tenant_id=tenant_id,
            )
        deleted = await self._repo.delete(tenant_id)
        logger.info("Tenant deleted", extra={"tenant_id": tenant_id})
        return deleted
