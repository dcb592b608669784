"""
Tenant context middleware.

Resolves the tenant from X-Tenant-ID, validates its status, and runs the
rest of the request inside that tenant's context. Public paths (health,
provider webhooks, admin-keyed tenant provisioning) run without a tenant.

SECURITY:
- Inactive or suspended tenants are refused before any handler runs
- Context is reset after every request; nothing leaks between requests
"""

import logging
from typing import Callable, Iterable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from ledger_connect.platform.errors import (
    AppError,
    ErrorCode,
    ValidationError,
    error_response,
    get_correlation_id,
)
from ledger_connect.platform.tenant_context import tenant_scope

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"
CORRELATION_HEADER = "X-Correlation-ID"

# /tenants is admin-keyed provisioning and runs without a tenant
DEFAULT_PUBLIC_PREFIXES = ("/health", "/webhooks/", "/tenants", "/docs", "/openapi.json")


class TenantContextMiddleware(BaseHTTPMiddleware):
    """Wraps tenant-scoped requests in a TenantContext."""

    def __init__(self, app, public_prefixes: Optional[Iterable[str]] = None):
        super().__init__(app)
        self.public_prefixes = tuple(public_prefixes or DEFAULT_PUBLIC_PREFIXES)

    def _is_public(self, path: str) -> bool:
        return any(path == prefix or path.startswith(prefix) for prefix in self.public_prefixes)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id

        if self._is_public(request.url.path):
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id
            return response

        tenant_id = request.headers.get(TENANT_HEADER)
        if not tenant_id:
            return error_response(
                ValidationError(
                    "X-Tenant-ID header is required",
                    code=ErrorCode.VALIDATION_REQUIRED_FIELD,
                    field=TENANT_HEADER,
                ),
                correlation_id,
            )

        tenancy = request.app.state.container.tenancy
        try:
            tenant = await tenancy.validate_status(tenant_id)
        except AppError as e:
            return error_response(e, correlation_id)

        with tenant_scope(tenant.to_context(correlation_id)) as ctx:
            request.state.tenant_context = ctx
            response = await call_next(request)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
