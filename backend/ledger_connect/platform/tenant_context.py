"""
Ambient tenant context for requests and background jobs.

The context lives in a ContextVar, so every asyncio task sees the value that
was current when it was created and concurrent requests never observe each
other's tenant. Background timers run in a fresh context and therefore start
with no tenant at all.

SECURITY:
- Every inbound request or job MUST be wrapped in run_with_context /
  tenant_scope before any tenant-scoped work starts
- require_tenant_id() fails closed when no tenant is set

Usage:
    from ledger_connect.platform.tenant_context import (
        TenantContext, run_with_context, current_tenant_id,
    )

    ctx = TenantContext(tenant_id="T1", tenant_name="Acme")
    await run_with_context(ctx, "corr-123", sync_ledger, "xero")
"""

import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Iterator, Optional, TypeVar

from ledger_connect.platform.errors import ErrorCode, TenantError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class TenantContext:
    """Per-request tenant identity. Created fresh for each request or job."""
    tenant_id: str
    tenant_name: Optional[str] = None
    tenant_status: Optional[str] = None
    tenant_plan: Optional[str] = None
    correlation_id: Optional[str] = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))


_CURRENT_CONTEXT: ContextVar[Optional[TenantContext]] = ContextVar(
    "ledger_connect_tenant_context", default=None
)


def current_context() -> Optional[TenantContext]:
    return _CURRENT_CONTEXT.get()


def current_tenant_id() -> Optional[str]:
    ctx = _CURRENT_CONTEXT.get()
    return ctx.tenant_id if ctx else None


def current_correlation_id() -> Optional[str]:
    ctx = _CURRENT_CONTEXT.get()
    return ctx.correlation_id if ctx else None


def require_tenant_id() -> str:
    """
    Return the current tenant id.

    Raises:
        TenantError: If no tenant context is active
    """
    tenant_id = current_tenant_id()
    if not tenant_id:
        raise TenantError(
            "No tenant context is active",
            code=ErrorCode.TENANT_NOT_FOUND,
        )
    return tenant_id


def _with_correlation(ctx: TenantContext, correlation_id: Optional[str]) -> TenantContext:
    return replace(ctx, correlation_id=correlation_id or ctx.correlation_id or str(uuid.uuid4()))


@contextmanager
def tenant_scope(ctx: TenantContext, correlation_id: Optional[str] = None) -> Iterator[TenantContext]:
    """Set the tenant context for the duration of the block, then restore the previous one."""
    scoped = _with_correlation(ctx, correlation_id)
    token = _CURRENT_CONTEXT.set(scoped)
    try:
        yield scoped
    finally:
        _CURRENT_CONTEXT.reset(token)


async def run_with_context(
    ctx: TenantContext,
    correlation_id: Optional[str],
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Await fn inside the given tenant context."""
    with tenant_scope(ctx, correlation_id):
        return await fn(*args, **kwargs)


def run_with_context_sync(
    ctx: TenantContext,
    correlation_id: Optional[str],
    fn: Callable[..., T],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Call fn inside the given tenant context."""
    with tenant_scope(ctx, correlation_id):
        return fn(*args, **kwargs)


class TenantContextLogFilter(logging.Filter):
    """
    Logging filter that stamps tenant_id and correlation_id onto every record.

    Records that already carry these fields (passed via extra=) keep them.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = _CURRENT_CONTEXT.get()
        if not hasattr(record, "tenant_id"):
            record.tenant_id = ctx.tenant_id if ctx else "-"
        if not hasattr(record, "correlation_id"):
            record.correlation_id = (ctx.correlation_id if ctx else None) or "-"
        return True
