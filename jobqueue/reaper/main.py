"""
Maintenance process: delayed-job promotion and lease recovery.

The reaper runs the scheduler's promotion tick so delayed jobs become
claimable on time even when no worker is polling, and periodically sweeps
processing jobs whose lease expired, feeding them through the retry policy.
This handles worker crashes and ensures at-least-once execution.
"""

import asyncio
import logging
import signal
import time

from jobqueue.bootstrap import open_runtime
from jobqueue.config import Settings, get_settings
from jobqueue.core.lifecycle import LifecycleManager
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.tracing import setup_tracing

logger = logging.getLogger(__name__)


class Reaper:
    """
    Periodic maintenance for the job queue.

    Runs:
    1. The promotion tick every ``scheduler_tick_interval_seconds``
    2. The expired-lease sweep every ``reaper_interval_seconds``
    3. A queue depth refresh alongside each sweep
    """

    def __init__(
        self,
        lifecycle: LifecycleManager,
        interval_seconds: float | None = None,
        tick_interval_seconds: float | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            lifecycle: The lifecycle manager.
            interval_seconds: Seconds between lease sweeps.
            tick_interval_seconds: Seconds between promotion ticks.
            settings: Application settings.
        """
        settings = settings or get_settings()
        self.lifecycle = lifecycle
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self.tick_interval = tick_interval_seconds or settings.scheduler_tick_interval_seconds
        self._running = False
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(
            "Reaper starting",
            extra={"interval": self.interval, "tick_interval": self.tick_interval},
        )
        self._running = True
        self._stop_event.clear()
        last_sweep = 0.0

        while self._running:
            try:
                await self.lifecycle.promote_due_delayed()

                if time.monotonic() - last_sweep >= self.interval:
                    last_sweep = time.monotonic()
                    await self._sweep()

            except Exception as e:
                logger.exception("Error in reaper loop", extra={"error": str(e)})

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_interval)
            except TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False
        self._stop_event.set()

    async def _sweep(self) -> list[str]:
        recovered = await self.lifecycle.recover_expired_leases()
        if recovered:
            logger.info("Recovered expired leases", extra={"count": len(recovered)})
        await self.lifecycle.stats()
        return recovered

    async def run_once(self) -> tuple[list[str], list[str]]:
        """
        Run one promotion tick and one sweep (for testing or cron-style execution).

        Returns:
            Tuple of (promoted job IDs, recovered job IDs).
        """
        promoted = await self.lifecycle.promote_due_delayed()
        recovered = await self._sweep()
        return promoted, recovered


async def run_async() -> None:
    """Run the reaper asynchronously."""
    settings = get_settings()
    setup_logging(settings, process="reaper")
    if settings.tracing_enabled:
        setup_tracing(settings)

    runtime = await open_runtime(settings)
    reaper = Reaper(runtime.lifecycle, settings=settings)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(reaper.stop()))

    try:
        await reaper.start()
    finally:
        await runtime.aclose()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
