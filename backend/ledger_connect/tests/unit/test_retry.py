"""
Tests for retry with exponential backoff.

Covers:
- Delay growth, cap and jitter bounds
- Retryable vs non-retryable errors
- Exhaustion re-raises the last error
"""

import logging

import pytest

from ledger_connect.platform.retry import (
    DEFAULT_RETRY_POLICY,
    RetryPolicy,
    policy_for_provider,
    retry_async,
)
from ledger_connect.tests.fakes import RecordingSleep


class TransientError(Exception):
    pass


class FatalError(Exception):
    pass


def is_transient(exc: Exception) -> bool:
    return isinstance(exc, TransientError)


class Flaky:
    """Fails with the given errors, then returns 'ok'."""

    def __init__(self, *errors: Exception):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


# ============================================================================
# POLICY
# ============================================================================

class TestRetryPolicy:
    """Tests for delay computation."""

    def test_defaults(self):
        assert DEFAULT_RETRY_POLICY.max_attempts == 3
        assert DEFAULT_RETRY_POLICY.initial_delay == 0.5
        assert DEFAULT_RETRY_POLICY.multiplier == 2.0
        assert DEFAULT_RETRY_POLICY.max_delay == 8.0

    def test_exponential_growth_without_jitter(self):
        policy = RetryPolicy(jitter=0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 4.0]

    def test_delay_capped(self):
        policy = RetryPolicy(jitter=0)
        assert policy.delay_for(10) == 8.0

    @pytest.mark.parametrize("attempt", [1, 2, 3, 5, 8])
    def test_jitter_within_ten_percent(self, attempt):
        policy = RetryPolicy()
        base = RetryPolicy(jitter=0).delay_for(attempt)
        low = policy.delay_for(attempt, rand=lambda a, b: a)
        high = policy.delay_for(attempt, rand=lambda a, b: b)
        assert low == pytest.approx(base * 0.9)
        assert high == pytest.approx(base * 1.1)

    def test_every_provider_uses_default_policy(self):
        for provider in ("quickbooks", "xero", "zoho", "XERO", "unknown"):
            assert policy_for_provider(provider) == DEFAULT_RETRY_POLICY


# ============================================================================
# RETRY LOOP
# ============================================================================

class TestRetryAsync:
    """Tests for retry_async."""

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        func = Flaky()
        sleep = RecordingSleep()
        assert await retry_async(func, retryable=is_transient, sleep=sleep) == "ok"
        assert func.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        func = Flaky(TransientError(), TransientError())
        sleep = RecordingSleep()
        assert await retry_async(func, retryable=is_transient, sleep=sleep) == "ok"
        assert func.calls == 3
        assert len(sleep.delays) == 2
        assert 0.45 <= sleep.delays[0] <= 0.55
        assert 0.9 <= sleep.delays[1] <= 1.1

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self):
        last = TransientError("third")
        func = Flaky(TransientError("first"), TransientError("second"), last)
        with pytest.raises(TransientError) as exc_info:
            await retry_async(func, retryable=is_transient, sleep=RecordingSleep())
        assert exc_info.value is last
        assert func.calls == 3

    @pytest.mark.asyncio
    async def test_non_retryable_not_retried(self):
        func = Flaky(FatalError())
        sleep = RecordingSleep()
        with pytest.raises(FatalError):
            await retry_async(func, retryable=is_transient, sleep=sleep)
        assert func.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_custom_policy_attempts(self):
        func = Flaky(*[TransientError() for _ in range(5)])
        with pytest.raises(TransientError):
            await retry_async(
                func,
                policy=RetryPolicy(max_attempts=5),
                retryable=is_transient,
                sleep=RecordingSleep(),
            )
        assert func.calls == 5

    @pytest.mark.asyncio
    async def test_retry_logged(self, caplog):
        func = Flaky(TransientError())
        with caplog.at_level(logging.WARNING, logger="ledger_connect.platform.retry"):
            await retry_async(func, retryable=is_transient, sleep=RecordingSleep(), operation="xero.token_refresh")
        record = next(r for r in caplog.records if r.getMessage() == "Retrying external call")
        assert record.operation == "xero.token_refresh"
        assert record.attempt == 1
