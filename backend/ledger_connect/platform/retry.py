"""
Retry with exponential backoff for outbound provider calls.

Every OAuth provider shares one policy: 3 attempts, 0.5s initial delay,
doubling per attempt, capped at 8s, with +/-10% jitter. Callers decide what
is retryable; the helper never retries an error the predicate rejects.

Usage:
    from ledger_connect.platform.retry import retry_async, policy_for_provider

    response = await retry_async(
        lambda: client.post(url, data=form),
        policy=policy_for_provider("xero"),
        retryable=is_transient,
    )
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for one class of external call."""
    max_attempts: int = 3
    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0
    jitter: float = 0.1

    def delay_for(self, attempt: int, rand: Callable[[float, float], float] = random.uniform) -> float:
        """
        Delay before the retry that follows `attempt` (1-based).

        Always within [base * (1 - jitter), base * (1 + jitter)] where base is
        the capped exponential delay.
        """
        base = min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter <= 0:
            return base
        return max(0.0, base * (1 + rand(-self.jitter, self.jitter)))


DEFAULT_RETRY_POLICY = RetryPolicy()

PROVIDER_RETRY_POLICIES = {
    "quickbooks": DEFAULT_RETRY_POLICY,
    "xero": DEFAULT_RETRY_POLICY,
    "zoho": DEFAULT_RETRY_POLICY,
}


def policy_for_provider(provider: str) -> RetryPolicy:
    return PROVIDER_RETRY_POLICIES.get(provider.lower(), DEFAULT_RETRY_POLICY)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: Optional[RetryPolicy] = None,
    retryable: Callable[[Exception], bool],
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    operation: str = "external_call",
) -> Any:
    """
    Run func, retrying failures the predicate accepts.

    The last exception is re-raised once attempts are exhausted or as soon as
    a non-retryable error occurs.
    """
    policy = policy or DEFAULT_RETRY_POLICY
    attempt = 1
    while True:
        try:
            return await func()
        except Exception as exc:
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "Retrying external call",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "delay_seconds": round(delay, 3),
                    "error_type": type(exc).__name__,
                },
            )
            await sleep(delay)
            attempt += 1
