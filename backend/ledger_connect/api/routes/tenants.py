"""
Tenant provisioning endpoints.

Outside tenant gating: these routes create the tenants that X-Tenant-ID
later names. Every route requires X-Admin-Key matching ADMIN_API_KEY.
"""

import logging

from fastapi import APIRouter, Depends, status

from ledger_connect.api.dependencies import get_container, require_admin
from ledger_connect.api.schemas import CreateTenantRequest, TenantResponse
from ledger_connect.container import ServiceContainer
from ledger_connect.platform.errors import ErrorCode, ValidationError
from ledger_connect.services.tenancy_service import Tenant, TenantPlan

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenants", tags=["tenants"], dependencies=[Depends(require_admin)])


def _response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        tenant_id=tenant.id,
        name=tenant.name,
        status=tenant.status.value,
        plan=tenant.plan.value,
        created_at=tenant.created_at,
    )


@router.post("", response_model=TenantResponse, status_code=status.HTTP_201_CREATED)
async def create_tenant(
    body: CreateTenantRequest,
    container: ServiceContainer = Depends(get_container),
):
    try:
        plan = TenantPlan(body.plan.lower())
    except ValueError:
        raise ValidationError(
            f"Unknown plan: {body.plan}",
            code=ErrorCode.VALIDATION_INVALID_FORMAT,
            field="plan",
        )

    tenant = await container.tenancy.create_tenant(
        body.name,
        tenant_id=body.tenant_id,
        plan=plan,
        metadata=body.metadata,
    )
    return _response(tenant)


@router.get("/{tenant_id}", response_model=TenantResponse)
async def get_tenant(tenant_id: str, container: ServiceContainer = Depends(get_container)):
    return _response(await container.tenancy.get_tenant(tenant_id))


@router.post("/{tenant_id}/suspend", response_model=TenantResponse)
async def suspend_tenant(tenant_id: str, container: ServiceContainer = Depends(get_container)):
    return _response(await container.tenancy.suspend(tenant_id))


@router.post("/{tenant_id}/activate", response_model=TenantResponse)
async def activate_tenant(tenant_id: str, container: ServiceContainer = Depends(get_container)):
    return _response(await container.tenancy.activate(tenant_id))


@router.delete("/{tenant_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tenant(tenant_id: str, container: ServiceContainer = Depends(get_container)):
    """Refused with 409 while the tenant still has connected integrations."""
    await container.tenancy.delete_tenant(tenant_id)
