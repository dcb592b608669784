"""
Routes verified webhook deliveries to handlers.

Provider event names are mapped to canonical event types, then the handler
registered for that type is awaited. Deliveries without a handler are
recorded as completed. Handler failures are recorded, never re-raised, so
the provider receives a 200 for a delivery that passed verification.
"""

import enum
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from ledger_connect.services.webhook_verifier import VerificationResult
from ledger_connect.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

MAX_TRACKED_DELIVERIES = 1000

# Provider event name -> canonical event type
WEBHOOK_EVENT_MAPPINGS: Dict[str, Dict[str, str]] = {
    "quickbooks": {
        "Invoice.created": "invoice.created",
        "Invoice.updated": "invoice.updated",
        "Invoice.deleted": "invoice.deleted",
        "Payment.created": "payment.created",
        "Payment.deleted": "payment.deleted",
        "Customer.created": "customer.created",
        "Customer.updated": "customer.updated",
        "Item.created": "item.created",
        "Item.updated": "item.updated",
    },
    "xero": {
        "INVOICE.CREATED": "invoice.created",
        "INVOICE.UPDATED": "invoice.updated",
        "INVOICE.DELETED": "invoice.deleted",
        "PAYMENT.CREATED": "payment.created",
        "PAYMENT.DELETED": "payment.deleted",
        "CONTACT.CREATED": "contact.created",
        "CONTACT.UPDATED": "contact.updated",
    },
    "zoho": {
        "invoice.created": "invoice.created",
        "invoice.updated": "invoice.updated",
        "invoice.sent": "invoice.sent",
        "invoice.paid": "invoice.paid",
        "payment.created": "payment.created",
        "contact.created": "contact.created",
        "contact.updated": "contact.updated",
    },
}


class DeliveryStatus(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class DeliveryRecord:
    """Outcome of dispatching one verified delivery."""
    provider: str
    delivery_id: str
    event_type: str
    status: DeliveryStatus
    received_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    handled: bool = False
    attempts: int = 1
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    verification: Optional[VerificationResult] = field(default=None, repr=False)


WebhookHandler = Callable[[VerificationResult], Awaitable[Optional[Dict[str, Any]]]]


def map_event_type(provider: str, event_type: str) -> str:
    mappings = WEBHOOK_EVENT_MAPPINGS.get(provider.lower(), {})
    return mappings.get(event_type, event_type)


class WebhookDispatcher:
    """Registry of async handlers keyed by canonical event type."""

    def __init__(self, clock: Clock = utcnow):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._deliveries: "OrderedDict[str, DeliveryRecord]" = OrderedDict()
        self._clock = clock

    def register(self, event_type: str, handler: WebhookHandler) -> None:
        self._handlers[event_type] = handler
        logger.info("Registered webhook handler", extra={"event_type": event_type})

    def has_handler(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def dispatch(self, verified: VerificationResult) -> DeliveryRecord:
        event_type = map_event_type(verified.provider, verified.event_type)
        record = DeliveryRecord(
            provider=verified.provider,
            delivery_id=verified.delivery_id,
            event_type=event_type,
            status=DeliveryStatus.COMPLETED,
            received_at=self._clock(),
            verification=verified,
        )
        await self._run_handler(record)
        self._remember(record)
        return record

    async def retry_delivery(self, record_id: str) -> Optional[DeliveryRecord]:
        """Re-run the handler for a failed delivery. None if unknown or not failed."""
        record = self._deliveries.get(record_id)
        if record is None or record.status != DeliveryStatus.FAILED:
            return None
        record.attempts += 1
        record.error = None
        await self._run_handler(record)
        return record

    def get_delivery(self, record_id: str) -> Optional[DeliveryRecord]:
        return self._deliveries.get(record_id)

    async def _run_handler(self, record: DeliveryRecord) -> None:
        handler = self._handlers.get(record.event_type)
        if handler is None:
            logger.info(
                "No handler for webhook event",
                extra={"provider": record.provider, "event_type": record.event_type},
            )
            record.status = DeliveryStatus.COMPLETED
            return

        record.handled = True
        try:
            record.result = await handler(record.verification)
            record.status = DeliveryStatus.COMPLETED
        except Exception as e:
            record.status = DeliveryStatus.FAILED
            record.error = str(e)
            logger.error(
                "Webhook handler failed",
                extra={
                    "provider": record.provider,
                    "event_type": record.event_type,
                    "delivery_id": record.delivery_id,
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )
            return

        logger.info(
            "Webhook processed",
            extra={
                "provider": record.provider,
                "event_type": record.event_type,
                "delivery_id": record.delivery_id,
            },
        )

    def _remember(self, record: DeliveryRecord) -> None:
        self._deliveries[record.id] = record
        while len(self._deliveries) > MAX_TRACKED_DELIVERIES:
            self._deliveries.popitem(last=False)
