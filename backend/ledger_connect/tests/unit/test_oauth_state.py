"""Tests for single-use OAuth connect-flow state values."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ledger_connect.platform.errors import AuthenticationError, ReplayCacheUnavailable
from ledger_connect.services.oauth_state import (
    STATE_TTL_SECONDS,
    InMemoryOAuthStateBackend,
    OAuthStateStore,
    RedisOAuthStateBackend,
)


class ManualTime:
    def __init__(self):
        self.value = 0.0

    def __call__(self):
        return self.value


@pytest.fixture
def state_time() -> ManualTime:
    return ManualTime()


@pytest.fixture
def states(state_time) -> OAuthStateStore:
    return OAuthStateStore(InMemoryOAuthStateBackend(time_source=state_time))


class TestOAuthStateStore:
    @pytest.mark.asyncio
    async def test_issue_and_consume(self, states):
        state = await states.issue("T1", "xero")

        pending = await states.consume(state, "T1", "xero")

        assert len(state) == 64
        assert pending.tenant_id == "T1"
        assert pending.provider == "xero"

    @pytest.mark.asyncio
    async def test_single_use(self, states):
        state = await states.issue("T1", "xero")
        await states.consume(state, "T1", "xero")

        with pytest.raises(AuthenticationError) as exc_info:
            await states.consume(state, "T1", "xero")
        assert exc_info.value.code == "AUTH_STATE_INVALID"

    @pytest.mark.asyncio
    async def test_bound_to_tenant(self, states):
        state = await states.issue("T1", "xero")
        with pytest.raises(AuthenticationError):
            await states.consume(state, "T2", "xero")

    @pytest.mark.asyncio
    async def test_bound_to_provider(self, states):
        state = await states.issue("T1", "xero")
        with pytest.raises(AuthenticationError):
            await states.consume(state, "T1", "quickbooks")

    @pytest.mark.asyncio
    async def test_expired(self, states, state_time):
        state = await states.issue("T1", "xero")
        state_time.value += STATE_TTL_SECONDS
        with pytest.raises(AuthenticationError):
            await states.consume(state, "T1", "xero")

    @pytest.mark.asyncio
    async def test_abandoned_states_swept(self, state_time):
        backend = InMemoryOAuthStateBackend(time_source=state_time)
        states = OAuthStateStore(backend)
        for _ in range(100):
            await states.issue("T1", "xero")
        state_time.value += STATE_TTL_SECONDS

        latest = await states.issue("T1", "xero")

        assert len(backend) == 1
        assert (await states.consume(latest, "T1", "xero")).tenant_id == "T1"

    @pytest.mark.asyncio
    async def test_unknown_or_empty(self, states):
        with pytest.raises(AuthenticationError):
            await states.consume("never-issued", "T1", "xero")
        with pytest.raises(AuthenticationError):
            await states.consume("", "T1", "xero")


class TestRedisOAuthStateBackend:
    @pytest.mark.asyncio
    async def test_put_and_pop_keys(self):
        client = MagicMock()
        client.set = AsyncMock(return_value=True)
        client.getdel = AsyncMock(return_value="T1:xero")
        backend = RedisOAuthStateBackend(client)

        await backend.put("abc", "T1:xero", 600)
        assert await backend.pop("abc") == "T1:xero"

        client.set.assert_awaited_once_with("oauth_state:abc", "T1:xero", ex=600)
        client.getdel.assert_awaited_once_with("oauth_state:abc")

    @pytest.mark.asyncio
    async def test_outage_raises_unavailable(self):
        client = MagicMock()
        client.set = AsyncMock(side_effect=RedisConnectionError("down"))
        with pytest.raises(ReplayCacheUnavailable):
            await RedisOAuthStateBackend(client).put("abc", "T1:xero", 600)
