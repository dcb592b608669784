"""
Inbound provider webhooks.

SECURITY:
- All webhooks MUST pass WebhookTrustVerifier before any handler runs
- No tenant middleware (webhooks come from providers, not users)
- Handler failures still return 200 once the delivery is verified, so the
  provider does not redeliver a payload we already accepted
"""

import logging

from fastapi import APIRouter, Depends, Request

from ledger_connect.api.dependencies import get_container, require_provider
from ledger_connect.api.schemas import WebhookAcceptedResponse
from ledger_connect.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}", response_model=WebhookAcceptedResponse)
async def receive_webhook(
    provider: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """
    Verify and dispatch one provider delivery.

    401 bad signature, 400 malformed or stale payload, 409 replayed delivery.
    """
    provider = require_provider(provider)
    body = await request.body()

    verified = await container.verifier.verify(provider, body, request.headers)
    record = await container.dispatcher.dispatch(verified)

    if record.status.value != "completed":
        logger.warning("Webhook accepted but handler failed", extra={
            "provider": provider,
            "delivery_id": verified.delivery_id,
            "event_type": record.event_type,
        })

    return WebhookAcceptedResponse(
        status=record.status.value,
        provider=provider,
        delivery_id=verified.delivery_id,
        event_type=record.event_type,
        replay_check_skipped=verified.replay_check_skipped,
    )
