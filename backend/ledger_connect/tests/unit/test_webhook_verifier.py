"""
Tests for inbound webhook verification.

Covers:
- Signature header lookup (provider header, generic fallback, case-insensitive)
- Gate order: header, signature, payload, replay, timestamp
- Replay rejection within the 10 minute window, acceptance after it
- Replay cache outage and missing cache degrade to accept-and-warn
- Timestamp tolerance
- Redis-backed replay cache
"""

import json
import logging
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ledger_connect.platform.errors import (
    ReplayCacheUnavailable,
    ValidationError,
    WebhookReplayError,
)
from ledger_connect.services.replay_cache import InMemoryReplayCache, RedisReplayCache
from ledger_connect.services.webhook_verifier import (
    REPLAY_WINDOW_SECONDS,
    WebhookTrustVerifier,
    find_signature,
    parse_timestamp,
    replay_key,
)

SECRET = "test-webhook-secret"


class ManualTime:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def cache_time() -> ManualTime:
    return ManualTime()


@pytest.fixture
def replay_cache(cache_time) -> InMemoryReplayCache:
    return InMemoryReplayCache(time_source=cache_time)


@pytest.fixture
def verifier(cipher, replay_cache, clock) -> WebhookTrustVerifier:
    return WebhookTrustVerifier(cipher, SECRET, replay_cache=replay_cache, clock=clock)


def make_body(clock, delivery_id="evt-1", event_type="INVOICE.CREATED", **extra) -> bytes:
    payload = {
        "deliveryId": delivery_id,
        "eventType": event_type,
        "timestamp": clock().isoformat().replace("+00:00", "Z"),
        "data": {"invoiceId": "INV-1"},
    }
    payload.update(extra)
    return json.dumps(payload).encode()


def signed(verifier, body: bytes, header="X-Xero-Signature"):
    return {header: verifier.generate_signature(body)}


# ============================================================================
# HELPERS
# ============================================================================

class TestHelpers:
    def test_replay_key(self):
        assert replay_key("xero", "evt-1") == "webhook:xero:evt-1"

    def test_find_signature_provider_header(self):
        assert find_signature("quickbooks", {"X-QB-Signature": "abc"}) == "abc"
        assert find_signature("quickbooks", {"x-quickbooks-signature": "def"}) == "def"

    def test_find_signature_generic_fallback(self):
        assert find_signature("zoho", {"X-Webhook-Signature": "abc"}) == "abc"

    def test_find_signature_missing(self):
        assert find_signature("xero", {"Content-Type": "application/json"}) is None

    def test_parse_timestamp_iso_z(self):
        parsed = parse_timestamp("2026-01-15T12:00:00Z")
        assert parsed.utcoffset() == timedelta(0)
        assert parsed.hour == 12

    def test_parse_timestamp_epoch(self, clock):
        assert parse_timestamp(clock().timestamp()) == clock()

    @pytest.mark.parametrize("value", [True, "", "yesterday", None, {"a": 1}])
    def test_parse_timestamp_rejects(self, value):
        with pytest.raises(ValueError):
            parse_timestamp(value)


# ============================================================================
# SIGNATURES AND PAYLOAD
# ============================================================================

class TestSignatureGate:
    """Signature checks run before anything is parsed."""

    @pytest.mark.asyncio
    async def test_valid_delivery(self, verifier, clock):
        body = make_body(clock)

        result = await verifier.verify("xero", body, signed(verifier, body))

        assert result.provider == "xero"
        assert result.delivery_id == "evt-1"
        assert result.event_type == "INVOICE.CREATED"
        assert result.data == {"invoiceId": "INV-1"}
        assert result.replay_check_skipped is False
        assert result.timestamp == clock()

    @pytest.mark.asyncio
    async def test_signature_matches_cipher_sign(self, verifier, cipher, clock):
        body = make_body(clock)
        assert verifier.generate_signature(body) == cipher.sign(body, secret=SECRET)

    @pytest.mark.asyncio
    async def test_missing_signature(self, verifier, clock):
        with pytest.raises(ValidationError) as exc_info:
            await verifier.verify("xero", make_body(clock), {})
        assert exc_info.value.code == "WEBHOOK_SIGNATURE_INVALID"
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_generic_header_accepted(self, verifier, clock):
        body = make_body(clock)
        result = await verifier.verify("xero", body, signed(verifier, body, "X-Webhook-Signature"))
        assert result.delivery_id == "evt-1"

    @pytest.mark.asyncio
    async def test_header_name_case_insensitive(self, verifier, clock):
        body = make_body(clock)
        result = await verifier.verify("xero", body, signed(verifier, body, "x-xero-signature"))
        assert result.delivery_id == "evt-1"

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, cipher, clock):
        sender = WebhookTrustVerifier(cipher, "another-secret", clock=clock)
        receiver = WebhookTrustVerifier(cipher, SECRET, replay_cache=InMemoryReplayCache(), clock=clock)
        body = make_body(clock)

        with pytest.raises(ValidationError) as exc_info:
            await receiver.verify("xero", body, signed(sender, body))
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_modified_body_rejected(self, verifier, clock):
        body = make_body(clock)
        headers = signed(verifier, body)
        with pytest.raises(ValidationError) as exc_info:
            await verifier.verify("xero", body + b" ", headers)
        assert exc_info.value.code == "WEBHOOK_SIGNATURE_INVALID"

    @pytest.mark.asyncio
    async def test_signature_checked_before_parsing(self, verifier):
        with pytest.raises(ValidationError) as exc_info:
            await verifier.verify("xero", b"not json", {"X-Xero-Signature": "0" * 64})
        assert exc_info.value.code == "WEBHOOK_SIGNATURE_INVALID"

    @pytest.mark.asyncio
    async def test_invalid_json(self, verifier):
        body = b"not json"
        with pytest.raises(ValidationError) as exc_info:
            await verifier.verify("xero", body, signed(verifier, body))
        assert exc_info.value.code == "VALIDATION_INVALID_FORMAT"
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_non_object_payload(self, verifier):
        body = b"[1, 2, 3]"
        with pytest.raises(ValidationError) as exc_info:
            await verifier.verify("xero", body, signed(verifier, body))
        assert exc_info.value.code == "VALIDATION_INVALID_FORMAT"

    @pytest.mark.asyncio
    async def test_missing_delivery_id(self, verifier):
        body = json.dumps({"eventType": "INVOICE.CREATED"}).encode()
        with pytest.raises(ValidationError) as exc_info:
            await verifier.verify("xero", body, signed(verifier, body))
        assert exc_info.value.code == "VALIDATION_REQUIRED_FIELD"

    @pytest.mark.asyncio
    async def test_missing_event_type_defaults(self, verifier):
        body = json.dumps({"deliveryId": "evt-9"}).encode()
        result = await verifier.verify("xero", body, signed(verifier, body))
        assert result.event_type == "unknown"
        assert result.timestamp is None


# ============================================================================
# REPLAY PROTECTION
# ============================================================================

class TestReplayProtection:
    """Each delivery id is accepted once per provider within the window."""

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, verifier, clock):
        body = make_body(clock)
        await verifier.verify("xero", body, signed(verifier, body))

        with pytest.raises(WebhookReplayError) as exc_info:
            await verifier.verify("xero", body, signed(verifier, body))

        assert exc_info.value.status_code == 409
        assert exc_info.value.code == "WEBHOOK_REPLAY_ATTACK"

    @pytest.mark.asyncio
    async def test_same_id_other_provider_accepted(self, verifier, clock):
        body = make_body(clock)
        await verifier.verify("xero", body, signed(verifier, body))
        result = await verifier.verify("zoho", body, signed(verifier, body, "X-Zoho-Signature"))
        assert result.provider == "zoho"

    @pytest.mark.asyncio
    async def test_accepted_again_after_window(self, verifier, clock, cache_time):
        body = make_body(clock)
        await verifier.verify("xero", body, signed(verifier, body))

        cache_time.value += REPLAY_WINDOW_SECONDS + 1
        result = await verifier.verify("xero", body, signed(verifier, body))

        assert result.delivery_id == "evt-1"

    @pytest.mark.asyncio
    async def test_replay_checked_before_timestamp(self, verifier, clock):
        stale = make_body(clock, timestamp=(clock() - timedelta(minutes=30)).isoformat())
        with pytest.raises(ValidationError):
            await verifier.verify("xero", stale, signed(verifier, stale))

        with pytest.raises(WebhookReplayError):
            await verifier.verify("xero", stale, signed(verifier, stale))

    @pytest.mark.asyncio
    async def test_cache_outage_accepts_and_warns(self, cipher, clock, caplog):
        cache = MagicMock()
        cache.get_or_insert = AsyncMock(side_effect=ReplayCacheUnavailable())
        verifier = WebhookTrustVerifier(cipher, SECRET, replay_cache=cache, clock=clock)
        body = make_body(clock)

        with caplog.at_level(logging.WARNING):
            result = await verifier.verify("xero", body, signed(verifier, body))

        assert result.replay_check_skipped is True
        assert "replay check skipped" in caplog.text

    @pytest.mark.asyncio
    async def test_no_cache_configured(self, cipher, clock, caplog):
        verifier = WebhookTrustVerifier(cipher, SECRET, replay_cache=None, clock=clock)
        body = make_body(clock)

        with caplog.at_level(logging.WARNING):
            first = await verifier.verify("xero", body, signed(verifier, body))
            second = await verifier.verify("xero", body, signed(verifier, body))

        assert first.replay_check_skipped is True
        assert second.replay_check_skipped is True
        assert "replay protection disabled" in caplog.text


# ============================================================================
# TIMESTAMPS
# ============================================================================

class TestTimestampGate:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("offset_minutes", [-4, 4])
    async def test_within_tolerance(self, verifier, clock, offset_minutes):
        ts = (clock() + timedelta(minutes=offset_minutes)).isoformat()
        body = make_body(clock, timestamp=ts)
        result = await verifier.verify("xero", body, signed(verifier, body))
        assert result.timestamp == clock() + timedelta(minutes=offset_minutes)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("offset_minutes", [-6, 6])
    async def test_outside_tolerance(self, verifier, clock, offset_minutes):
        ts = (clock() + timedelta(minutes=offset_minutes)).isoformat()
        body = make_body(clock, timestamp=ts)
        with pytest.raises(ValidationError) as exc_info:
            await verifier.verify("xero", body, signed(verifier, body))
        assert exc_info.value.code == "WEBHOOK_TIMESTAMP_INVALID"

    @pytest.mark.asyncio
    async def test_epoch_seconds(self, verifier, clock):
        body = make_body(clock, timestamp=int(clock().timestamp()))
        result = await verifier.verify("xero", body, signed(verifier, body))
        assert result.timestamp == clock()

    @pytest.mark.asyncio
    async def test_unparseable_timestamp(self, verifier, clock):
        body = make_body(clock, timestamp="last tuesday")
        with pytest.raises(ValidationError) as exc_info:
            await verifier.verify("xero", body, signed(verifier, body))
        assert exc_info.value.code == "WEBHOOK_TIMESTAMP_INVALID"
        assert exc_info.value.status_code == 400


# ============================================================================
# REPLAY CACHES
# ============================================================================

class TestReplayCaches:
    @pytest.mark.asyncio
    async def test_in_memory_get_or_insert(self, replay_cache, cache_time):
        assert await replay_cache.get_or_insert("k", 10) is False
        assert await replay_cache.get_or_insert("k", 10) is True
        cache_time.value += 10
        assert await replay_cache.get_or_insert("k", 10) is False

    @pytest.mark.asyncio
    async def test_in_memory_sweeps_expired(self, replay_cache, cache_time):
        await replay_cache.get_or_insert("a", 5)
        await replay_cache.get_or_insert("b", 50)
        cache_time.value += 6
        assert len(replay_cache) == 1

    @pytest.mark.asyncio
    async def test_redis_new_key(self):
        client = MagicMock()
        client.set = AsyncMock(return_value=True)
        cache = RedisReplayCache(client)

        assert await cache.get_or_insert("webhook:xero:evt-1", 600) is False
        args, kwargs = client.set.call_args
        assert args[0] == "webhook:xero:evt-1"
        assert kwargs == {"nx": True, "ex": 600}

    @pytest.mark.asyncio
    async def test_redis_existing_key(self):
        client = MagicMock()
        client.set = AsyncMock(return_value=None)
        assert await RedisReplayCache(client).get_or_insert("k", 600) is True

    @pytest.mark.asyncio
    async def test_redis_failure_raises_unavailable(self):
        client = MagicMock()
        client.set = AsyncMock(side_effect=RedisConnectionError("down"))
        with pytest.raises(ReplayCacheUnavailable):
            await RedisReplayCache(client).get_or_insert("k", 600)

    @pytest.mark.asyncio
    async def test_redis_ping(self):
        client = MagicMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("down"))
        assert await RedisReplayCache(client).ping() is False

        client.ping = AsyncMock(return_value=True)
        assert await RedisReplayCache(client).ping() is True
