"""
Tenant-scoped integration endpoints: connect, status and disconnect.

SECURITY:
- tenant_id always comes from TenantContext (X-Tenant-ID, validated by
  middleware), never from the request body
- The OAuth state is single-use and bound to the tenant and provider
- Token values are never returned
"""

import logging

from fastapi import APIRouter, Depends

from ledger_connect.api.dependencies import get_container, get_tenant_context, require_provider
from ledger_connect.api.schemas import (
    AuthorizeResponse,
    CallbackRequest,
    ConnectionResponse,
    DisconnectResponse,
)
from ledger_connect.container import ServiceContainer
from ledger_connect.credentials.lifecycle import CredentialState
from ledger_connect.platform.errors import ErrorCode, NotFoundError
from ledger_connect.platform.tenant_context import TenantContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])


@router.get("/{provider}/authorize", response_model=AuthorizeResponse)
async def authorize(
    provider: str,
    ctx: TenantContext = Depends(get_tenant_context),
    container: ServiceContainer = Depends(get_container),
):
    """Start the connect flow: consent URL plus a single-use state."""
    provider = require_provider(provider)
    gateway = container.gateways.get(provider)
    state = await container.oauth_states.issue(ctx.tenant_id, provider)

    return AuthorizeResponse(
        provider=provider,
        authorization_url=gateway.authorization_url(state),
        state=state,
    )


@router.post("/{provider}/callback", response_model=ConnectionResponse)
async def callback(
    provider: str,
    body: CallbackRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    container: ServiceContainer = Depends(get_container),
):
    """Finish the connect flow: check state, exchange the code, store tokens."""
    provider = require_provider(provider)
    await container.oauth_states.consume(body.state, ctx.tenant_id, provider)

    tokens = await container.gateways.get(provider).exchange_code(body.code, ctx.tenant_id)

    metadata = {}
    if body.realm_id:
        metadata["realm_id"] = body.realm_id
    if body.tenant_ref:
        metadata["tenant_ref"] = body.tenant_ref

    stored = await container.credentials.store_credentials(
        ctx.tenant_id, provider, tokens, metadata=metadata or None
    )
    logger.info("Integration connected", extra={
        "tenant_id": ctx.tenant_id,
        "provider": provider,
        "credential_id": stored.id,
    })

    return ConnectionResponse(
        provider=provider,
        state=CredentialState.ACTIVE.value,
        connected=True,
        expires_at=stored.expires_at,
        last_refreshed_at=stored.last_refreshed_at,
    )


@router.get("/{provider}/status", response_model=ConnectionResponse)
async def connection_status(
    provider: str,
    ctx: TenantContext = Depends(get_tenant_context),
    container: ServiceContainer = Depends(get_container),
):
    provider = require_provider(provider)
    state = await container.credentials.state(ctx.tenant_id, provider)
    credential = await container.credentials.get_credential(ctx.tenant_id, provider)

    return ConnectionResponse(
        provider=provider,
        state=state.value,
        connected=state in (CredentialState.ACTIVE, CredentialState.REFRESH_PENDING),
        expires_at=credential.expires_at if credential else None,
        last_refreshed_at=credential.last_refreshed_at if credential else None,
    )


@router.delete("/{provider}", response_model=DisconnectResponse)
async def disconnect(
    provider: str,
    ctx: TenantContext = Depends(get_tenant_context),
    container: ServiceContainer = Depends(get_container),
):
    provider = require_provider(provider)
    if not await container.credentials.revoke_credentials(ctx.tenant_id, provider):
        raise NotFoundError("Integration", provider, code=ErrorCode.PROVIDER_NOT_FOUND)

    return DisconnectResponse(provider=provider, disconnected=True)
