"""Request and response bodies for the HTTP surface. Token values never appear here."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class AuthorizeResponse(BaseModel):
    provider: str
    authorization_url: str
    state: str


class CallbackRequest(BaseModel):
    code: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    realm_id: Optional[str] = None
    tenant_ref: Optional[str] = None


class ConnectionResponse(BaseModel):
    provider: str
    state: str
    connected: bool
    expires_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None


class DisconnectResponse(BaseModel):
    provider: str
    disconnected: bool


class WebhookAcceptedResponse(BaseModel):
    status: str
    provider: str
    delivery_id: str
    event_type: str
    replay_check_skipped: bool = False


class HealthResponse(BaseModel):
    status: str
    replay_cache: str


class CreateTenantRequest(BaseModel):
    name: str = Field(..., min_length=1)
    tenant_id: Optional[str] = Field(None, min_length=1, max_length=255)
    plan: str = "starter"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TenantResponse(BaseModel):
    tenant_id: str
    name: str
    status: str
    plan: str
    created_at: datetime
