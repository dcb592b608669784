"""
Single-use state values for the OAuth connect flow.

The authorize endpoint issues a random state bound to (tenant_id, provider);
the callback consumes it exactly once within 10 minutes. Unknown, expired,
reused or mismatched states are rejected with AUTH_STATE_INVALID.

Key schema:
- oauth_state:{state} -> "{tenant_id}:{provider}" (TTL 600s)
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ledger_connect.platform.errors import AuthenticationError, ErrorCode, ReplayCacheUnavailable
from ledger_connect.utils.encryption import CipherBox

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 600


@dataclass(frozen=True)
class PendingConnection:
    tenant_id: str
    provider: str


class OAuthStateBackend(Protocol):
    async def put(self, state: str, value: str, ttl_seconds: int) -> None:
        ...

    async def pop(self, state: str) -> Optional[str]:
        ...


class InMemoryOAuthStateBackend:
    """Process-local states. Abandoned connect flows are swept on every put."""

    def __init__(self, time_source: Callable[[], float] = time.monotonic):
        self._time = time_source
        self._entries: Dict[str, Tuple[str, float]] = {}

    def _sweep(self, now: float) -> None:
        expired = [state for state, (_, expires_at) in self._entries.items() if expires_at <= now]
        for state in expired:
            del self._entries[state]

    async def put(self, state: str, value: str, ttl_seconds: int) -> None:
        now = self._time()
        self._sweep(now)
        self._entries[state] = (value, now + ttl_seconds)

    async def pop(self, state: str) -> Optional[str]:
        entry = self._entries.pop(state, None)
        if entry is None:
            return None
        value, expires_at = entry
        return value if expires_at > self._time() else None

    def __len__(self) -> int:
        return len(self._entries)


class RedisOAuthStateBackend:
    def __init__(self, redis_client: aioredis.Redis):
        self._redis = redis_client

    async def put(self, state: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._redis.set(f"oauth_state:{state}", value, ex=ttl_seconds)
        except (RedisError, OSError) as e:
            raise ReplayCacheUnavailable("OAuth state store unavailable") from e

    async def pop(self, state: str) -> Optional[str]:
        try:
            return await self._redis.getdel(f"oauth_state:{state}")
        except (RedisError, OSError) as e:
            raise ReplayCacheUnavailable("OAuth state store unavailable") from e


class OAuthStateStore:
    """Issues and consumes connect-flow state values."""

    def __init__(self, backend: OAuthStateBackend):
        self._backend = backend

    async def issue(self, tenant_id: str, provider: str) -> str:
        state = CipherBox.random_token(32)
        await self._backend.put(state, f"{tenant_id}:{provider}", STATE_TTL_SECONDS)
        return state

    async def consume(self, state: str, tenant_id: str, provider: str) -> PendingConnection:
        """
        Raises:
            AuthenticationError: AUTH_STATE_INVALID if the state is unknown,
                expired, already used, or bound to another tenant/provider
        """
        value = await self._backend.pop(state) if state else None
        expected = f"{tenant_id}:{provider}"
        if value != expected:
            logger.warning(
                "SECURITY: OAuth state rejected",
                extra={"tenant_id": tenant_id, "provider": provider, "state_known": value is not None},
            )
            raise AuthenticationError(
                "OAuth state is invalid or expired",
                code=ErrorCode.AUTH_STATE_INVALID,
                details={"provider": provider},
            )
        return PendingConnection(tenant_id=tenant_id, provider=provider)
