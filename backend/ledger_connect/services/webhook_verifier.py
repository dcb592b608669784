"""
Inbound webhook verification for accounting providers.

SECURITY:
- All webhooks MUST pass the signature check before the body is parsed
- Signatures are HMAC-SHA256 over the raw body, hex encoded
- Comparison is constant-time with a length check first
- Each delivery id is accepted once within a 10 minute window
- Deliveries whose timestamp is more than 5 minutes off are rejected

Gates run in this order: signature header, signature, payload shape,
replay, timestamp. A replay-cache outage degrades to accept-and-warn.

Usage:
    verifier = WebhookTrustVerifier(cipher, webhook_secret, replay_cache)
    result = await verifier.verify("xero", raw_body, dict(request.headers))
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from ledger_connect.platform.errors import (
    ErrorCode,
    ReplayCacheUnavailable,
    ValidationError,
    WebhookReplayError,
)
from ledger_connect.services.replay_cache import ReplayCache
from ledger_connect.utils.clock import Clock, as_utc, utcnow
from ledger_connect.utils.encryption import CipherBox

logger = logging.getLogger(__name__)

REPLAY_WINDOW_SECONDS = 600
TIMESTAMP_TOLERANCE = timedelta(minutes=5)

GENERIC_SIGNATURE_HEADER = "x-webhook-signature"

# Provider signature headers, lowercase
SIGNATURE_HEADERS: Dict[str, Tuple[str, ...]] = {
    "quickbooks": ("x-quickbooks-signature", "x-qb-signature"),
    "xero": ("x-xero-signature",),
    "zoho": ("x-zoho-signature",),
}


@dataclass
class VerificationResult:
    """A delivery that passed every gate."""
    provider: str
    delivery_id: str
    event_type: str
    payload: Dict[str, Any] = field(repr=False)
    timestamp: Optional[datetime] = None
    replay_check_skipped: bool = False

    @property
    def data(self) -> Dict[str, Any]:
        data = self.payload.get("data")
        return data if isinstance(data, dict) else {}


def replay_key(provider: str, delivery_id: str) -> str:
    return f"webhook:{provider}:{delivery_id}"


def find_signature(provider: str, headers: Mapping[str, str]) -> Optional[str]:
    """Return the signature header value, matching header names case-insensitively."""
    lowered = {name.lower(): value for name, value in headers.items()}
    for name in SIGNATURE_HEADERS.get(provider, ()):
        if lowered.get(name):
            return lowered[name]
    return lowered.get(GENERIC_SIGNATURE_HEADER) or None


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an ISO 8601 string or epoch seconds into an aware UTC datetime.

    Raises:
        ValueError: If the value is not a recognizable timestamp
    """
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return as_utc(datetime.fromisoformat(text))
    raise ValueError(f"unsupported timestamp: {value!r}")


class WebhookTrustVerifier:
    """
    Authenticates inbound webhook deliveries.

    replay_cache may be None (not configured); deliveries are then accepted
    with replay_check_skipped=True and a security warning is logged.
    """

    def __init__(
        self,
        cipher: CipherBox,
        webhook_secret: str,
        replay_cache: Optional[ReplayCache] = None,
        clock: Clock = utcnow,
    ):
        self._cipher = cipher
        self._secret = webhook_secret
        self._cache = replay_cache
        self._clock = clock

    def generate_signature(self, body: bytes) -> str:
        """Signature a sender must attach for this verifier to accept body."""
        return self._cipher.sign(body, secret=self._secret)

    async def verify(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> VerificationResult:
        """
        Run every gate against one delivery.

        Raises:
            ValidationError: Bad signature (401), malformed payload or stale timestamp (400)
            WebhookReplayError: Delivery id already seen (409)
        """
        provider = provider.lower()

        signature = find_signature(provider, headers)
        if not signature:
            logger.warning(
                "Webhook rejected: missing signature",
                extra={"provider": provider},
            )
            raise ValidationError(
                "Missing webhook signature",
                code=ErrorCode.WEBHOOK_SIGNATURE_INVALID,
                field="signature",
            )

        if not self._cipher.verify_signature(raw_body, signature, secret=self._secret):
            logger.warning(
                "Webhook rejected: invalid signature",
                extra={"provider": provider, "body_size": len(raw_body)},
            )
            raise ValidationError(
                "Invalid webhook signature",
                code=ErrorCode.WEBHOOK_SIGNATURE_INVALID,
                field="signature",
            )

        payload = self._parse_payload(provider, raw_body)
        delivery_id = payload.get("deliveryId")
        if not delivery_id or not isinstance(delivery_id, str):
            raise ValidationError(
                "Webhook payload is missing deliveryId",
                code=ErrorCode.VALIDATION_REQUIRED_FIELD,
                field="deliveryId",
            )

        replay_check_skipped = await self._check_replay(provider, delivery_id)

        timestamp = None
        if payload.get("timestamp") is not None:
            timestamp = self._check_timestamp(provider, delivery_id, payload["timestamp"])

        logger.info(
            "Webhook verified",
            extra={
                "provider": provider,
                "delivery_id": delivery_id,
                "replay_check_skipped": replay_check_skipped,
            },
        )
        return VerificationResult(
            provider=provider,
            delivery_id=delivery_id,
            event_type=str(payload.get("eventType") or "unknown"),
            payload=payload,
            timestamp=timestamp,
            replay_check_skipped=replay_check_skipped,
        )

    @staticmethod
    def _parse_payload(provider: str, raw_body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Webhook rejected: invalid JSON", extra={"provider": provider})
            raise ValidationError(
                "Webhook payload is not valid JSON",
                code=ErrorCode.VALIDATION_INVALID_FORMAT,
            )
        if not isinstance(payload, dict):
            raise ValidationError(
                "Webhook payload must be a JSON object",
                code=ErrorCode.VALIDATION_INVALID_FORMAT,
            )
        return payload

    async def _check_replay(self, provider: str, delivery_id: str) -> bool:
        """Returns True when the replay check could not run."""
        if self._cache is None:
            logger.warning(
                "SECURITY: webhook replay protection disabled, no replay cache configured",
                extra={"provider": provider, "delivery_id": delivery_id},
            )
            return True

        try:
            existed = await self._cache.get_or_insert(
                replay_key(provider, delivery_id), REPLAY_WINDOW_SECONDS
            )
        except ReplayCacheUnavailable:
            logger.warning(
                "SECURITY: webhook replay check skipped, replay cache unavailable",
                extra={"provider": provider, "delivery_id": delivery_id},
            )
            return True

        if existed:
            logger.warning(
                "SECURITY: webhook replay rejected",
                extra={"provider": provider, "delivery_id": delivery_id},
            )
            raise WebhookReplayError(provider, delivery_id)
        return False

    def _check_timestamp(self, provider: str, delivery_id: str, value: Any) -> datetime:
        try:
            timestamp = parse_timestamp(value)
        except (ValueError, TypeError, OverflowError, OSError):
            raise ValidationError(
                "Invalid webhook timestamp format",
                code=ErrorCode.WEBHOOK_TIMESTAMP_INVALID,
                field="timestamp",
            )

        if abs(self._clock() - timestamp) > TIMESTAMP_TOLERANCE:
            logger.warning(
                "Webhook rejected: timestamp outside tolerance",
                extra={"provider": provider, "delivery_id": delivery_id},
            )
            raise ValidationError(
                "Webhook timestamp too old or too far in the future",
                code=ErrorCode.WEBHOOK_TIMESTAMP_INVALID,
                field="timestamp",
            )
        return timestamp
