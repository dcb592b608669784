"""
Tests for the asyncio-backed refresh scheduler.

Uses short real delays; the lifecycle tests drive timers through the
virtual-time scheduler instead.
"""

import asyncio

import pytest

from ledger_connect.credentials.scheduler import AsyncioScheduler, TimerHandle
from ledger_connect.platform.tenant_context import TenantContext, current_tenant_id, tenant_scope


class TestTimerHandle:
    def test_active_until_cancelled(self):
        handle = TimerHandle(10)
        assert handle.active is True
        handle.cancel()
        assert handle.active is False
        assert handle.cancelled is True


class TestAsyncioScheduler:
    """Tests for AsyncioScheduler."""

    @pytest.mark.asyncio
    async def test_callback_fires(self):
        scheduler = AsyncioScheduler()
        fired = asyncio.Event()

        async def callback():
            fired.set()

        handle = scheduler.schedule(0.01, callback)
        await asyncio.wait_for(fired.wait(), timeout=1)

        assert handle.fired is True
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_negative_delay_clamped(self):
        scheduler = AsyncioScheduler()
        handle = scheduler.schedule(-5, self._noop)
        assert handle.delay_seconds == 0
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_cancelled_timer_does_not_fire(self):
        scheduler = AsyncioScheduler()
        calls = []

        async def callback():
            calls.append(1)

        handle = scheduler.schedule(0.01, callback)
        handle.cancel()
        await asyncio.sleep(0.05)

        assert calls == []
        assert handle.fired is False

    @pytest.mark.asyncio
    async def test_cancelled_handles_released(self):
        scheduler = AsyncioScheduler()

        for _ in range(50):
            scheduler.schedule(3600, self._noop).cancel()

        assert scheduler.pending == 0
        assert len(scheduler._handles) == 0

    @pytest.mark.asyncio
    async def test_cancel_after_fire_is_visible_to_running_job(self):
        scheduler = AsyncioScheduler()
        release = asyncio.Event()
        seen = []
        handle = None

        async def job():
            await release.wait()
            seen.append(handle.cancelled)

        handle = scheduler.schedule(0, job)
        while not handle.fired:
            await asyncio.sleep(0)
        handle.cancel()
        release.set()
        await asyncio.sleep(0.01)

        assert seen == [True]
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_callback_runs_without_caller_context(self):
        scheduler = AsyncioScheduler()
        seen = []
        done = asyncio.Event()

        async def callback():
            seen.append(current_tenant_id())
            done.set()

        with tenant_scope(TenantContext(tenant_id="T1")):
            scheduler.schedule(0, callback)

        with tenant_scope(TenantContext(tenant_id="T2")):
            await asyncio.wait_for(done.wait(), timeout=1)

        assert seen == [None]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_armed_and_running(self):
        scheduler = AsyncioScheduler()
        started = asyncio.Event()
        finished = []

        async def slow():
            started.set()
            await asyncio.sleep(10)
            finished.append(1)

        running = scheduler.schedule(0, slow)
        armed = scheduler.schedule(60, slow)
        await asyncio.wait_for(started.wait(), timeout=1)

        await scheduler.shutdown()

        assert running.fired is True
        assert armed.cancelled is True
        assert finished == []
        assert scheduler.pending == 0

    @staticmethod
    async def _noop():
        return None
