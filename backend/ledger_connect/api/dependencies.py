"""FastAPI dependencies shared by the route modules."""

from fastapi import Request

from ledger_connect.config.settings import SUPPORTED_PROVIDERS
from ledger_connect.container import ServiceContainer
from ledger_connect.platform.errors import AuthenticationError, ErrorCode, NotFoundError, TenantError
from ledger_connect.platform.tenant_context import TenantContext, current_context
from ledger_connect.utils.encryption import constant_time_equals


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


async def get_tenant_context(request: Request) -> TenantContext:
    """
    Tenant context set by TenantContextMiddleware.

    Raises:
        TenantError: If the route is reached without a tenant context
    """
    ctx = current_context() or getattr(request.state, "tenant_context", None)
    if ctx is None:
        raise TenantError("No tenant context is active", code=ErrorCode.TENANT_NOT_FOUND)
    return ctx


def require_provider(provider: str) -> str:
    """Normalize a provider path parameter. Unknown providers are a 404."""
    normalized = provider.lower()
    if normalized not in SUPPORTED_PROVIDERS:
        raise NotFoundError("Provider", provider)
    return normalized


ADMIN_KEY_HEADER = "X-Admin-Key"


def require_admin(request: Request) -> None:
    """
    Gate the tenant provisioning routes on X-Admin-Key.

    Raises:
        ConfigurationError: If ADMIN_API_KEY is not set
        AuthenticationError: If the header is missing or wrong
    """
    expected = request.app.state.container.settings.require_admin_api_key()
    supplied = request.headers.get(ADMIN_KEY_HEADER, "")
    if not supplied or not constant_time_equals(supplied, expected):
        raise AuthenticationError("Admin key missing or invalid")
