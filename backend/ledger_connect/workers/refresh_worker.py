"""
Token refresh worker - long-running process that owns proactive refresh timers.

At start it re-arms a timer for every stored credential (timers do not
survive restarts), then waits until SIGINT/SIGTERM and cancels everything
that is still armed or running.

CONSTRAINTS:
- Operates cross-tenant; each scheduled refresh runs without tenant context
- Requires DATABASE_URL so it sees the credentials the API stored

Run as a background worker:
    python -m ledger_connect.workers.refresh_worker
"""

import asyncio
import logging
import signal
import sys

from ledger_connect.config.settings import get_settings
from ledger_connect.container import ServiceContainer
from ledger_connect.platform.errors import AppError
from ledger_connect.platform.logging_config import configure_logging

logger = logging.getLogger(__name__)


async def run_worker(container: ServiceContainer, stop: asyncio.Event) -> int:
    """Arm timers, wait for stop, then clean up. Returns the number of timers armed at start."""
    armed = await container.credentials.rehydrate()
    logger.info("Refresh worker started", extra={"timer_count": armed})
    try:
        await stop.wait()
    finally:
        await container.shutdown()
        logger.info("Refresh worker stopped")
    return armed


async def _main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    if not settings.database_url:
        logger.warning("DATABASE_URL not set, refresh worker has no shared credential store")

    container = ServiceContainer.from_settings(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await run_worker(container, stop)


def main() -> None:
    try:
        asyncio.run(_main())
    except AppError as e:
        logger.error("Refresh worker failed to start", extra={"error_code": e.code})
        sys.exit(1)


if __name__ == "__main__":
    main()
