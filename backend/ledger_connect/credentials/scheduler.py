"""
Timer scheduling for proactive token refresh.

The lifecycle manager never touches the event loop directly; it asks a
Scheduler for a cancellable handle. Production uses AsyncioScheduler, tests
use a virtual-time scheduler.

Fired callbacks run in a fresh contextvars.Context, so no request-scoped
tenant context leaks into background refresh jobs.
"""

import asyncio
import contextvars
import logging
from typing import Awaitable, Callable, Optional, Protocol, Set

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class TimerHandle:
    """
    Cancellable reference to one armed timer.

    cancel() sets a flag that is checked when the timer fires, so a timer
    that races its own cancellation still does nothing. The flag is also set
    on a handle that already fired; the refresh job it started checks it.
    """

    def __init__(self, delay_seconds: float):
        self.delay_seconds = delay_seconds
        self.cancelled = False
        self.fired = False
        self._loop_handle: Optional[asyncio.TimerHandle] = None
        self._on_cancel: Optional[Callable[["TimerHandle"], None]] = None

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)

    def cancel(self) -> None:
        self.cancelled = True
        if self._loop_handle is not None:
            self._loop_handle.cancel()
        if self._on_cancel is not None:
            self._on_cancel(self)


class Scheduler(Protocol):
    def schedule(self, delay_seconds: float, callback: TimerCallback) -> TimerHandle:
        ...

    async def shutdown(self) -> None:
        ...


class AsyncioScheduler:
    """Scheduler backed by loop.call_later. Must be used from a running loop."""

    def __init__(self) -> None:
        self._handles: Set[TimerHandle] = set()
        self._tasks: Set[asyncio.Task] = set()

    def schedule(self, delay_seconds: float, callback: TimerCallback) -> TimerHandle:
        loop = asyncio.get_running_loop()
        handle = TimerHandle(max(0.0, delay_seconds))
        handle._loop_handle = loop.call_later(
            handle.delay_seconds,
            self._fire,
            handle,
            callback,
            context=contextvars.Context(),
        )
        handle._on_cancel = self._handles.discard
        self._handles.add(handle)
        return handle

    def _fire(self, handle: TimerHandle, callback: TimerCallback) -> None:
        self._handles.discard(handle)
        if handle.cancelled:
            return
        handle.fired = True
        task = asyncio.get_running_loop().create_task(callback())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def pending(self) -> int:
        """Armed timers. Fired and cancelled handles are dropped immediately."""
        return len(self._handles)

    async def shutdown(self) -> None:
        """Cancel every armed timer and every refresh still running."""
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
