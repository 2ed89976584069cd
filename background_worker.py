"""Background scheduler for the Reminder Notification Service.

Two independent periodic loops drive the ReminderEngine:
- time loop: checks for due time-triggered reminders every TIME_CHECK_INTERVAL seconds
- location loop: checks location-triggered reminders against owners' last reported
  locations every LOCATION_CHECK_INTERVAL seconds

Each loop can be started, stopped and run once on demand. Stopping a loop only
prevents new ticks; call polls and retries that are already scheduled still fire.

Normally the scheduler runs inside the API process (see api_server.py). Running
this module directly starts both loops headless, relying on status polling
instead of the webhook for call outcomes.
"""

import asyncio
import signal
import sys
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from config import settings
from logger_config import setup_logger
from reminder_engine import ReminderEngine, build_reminder_engine

logger = setup_logger(__name__, 'worker.log')

# Global flag for graceful shutdown (headless mode only)
shutdown_requested = False


class PeriodicLoop:
    """Runs an async tick function every `interval` seconds until stopped."""

    def __init__(self, name: str, interval: float, tick: Callable[[], Awaitable]):
        self.name = name
        self.interval = interval
        self.tick = tick
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return (
            self._task is not None
            and not self._task.done()
            and not self._stop_event.is_set()
        )

    def start(self) -> None:
        """Start the loop. No-op if already running."""
        if self.is_running:
            logger.debug(f"{self.name} loop already running")
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop_event))
        logger.info(f"{self.name} loop started (every {self.interval}s)")

    def stop(self) -> None:
        """Stop scheduling new ticks. A tick in progress runs to completion."""
        if not self.is_running:
            return
        self._stop_event.set()
        logger.info(f"{self.name} loop stopped")

    async def run_once(self):
        """Run a single tick now without touching the loop's schedule."""
        return await self.tick()

    async def wait_stopped(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self, stop_event: asyncio.Event) -> None:
        iteration = 0
        while not stop_event.is_set():
            iteration += 1
            try:
                await self.tick()
            except Exception as e:
                # Continue running even if an error occurs
                logger.error(f"Error in {self.name} loop iteration {iteration}: {e}", exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass


class ReminderScheduler:
    """Owns the time and location loops for one ReminderEngine."""

    def __init__(
        self,
        engine: ReminderEngine,
        time_interval: float = None,
        location_interval: float = None
    ):
        self.engine = engine
        self.time_loop = PeriodicLoop(
            "Time-based reminder",
            settings.TIME_CHECK_INTERVAL if time_interval is None else time_interval,
            engine.check_time_reminders
        )
        self.location_loop = PeriodicLoop(
            "Location-based reminder",
            settings.LOCATION_CHECK_INTERVAL if location_interval is None else location_interval,
            engine.check_location_reminders
        )

    def start(self) -> None:
        """Start both loops. Idempotent."""
        self.time_loop.start()
        self.location_loop.start()

    def stop(self) -> None:
        """Stop both loops. Idempotent."""
        self.time_loop.stop()
        self.location_loop.stop()

    def status(self) -> dict:
        return {
            "time_loop_running": self.time_loop.is_running,
            "location_loop_running": self.location_loop.is_running,
            "in_flight_count": self.engine.in_flight_count,
            "timestamp": datetime.now(timezone.utc),
        }

    async def trigger_time_check(self):
        """Manually run one time-trigger pass."""
        logger.info("Manually triggering time-based reminder check...")
        result = await self.time_loop.run_once()
        logger.info(f"Time-based reminder check completed. Processed: {len(result or [])} reminders")
        return result

    async def trigger_location_check(self):
        """Manually run one location-trigger pass."""
        logger.info("Manually triggering location-based reminder check...")
        result = await self.location_loop.run_once()
        logger.info(f"Location-based reminder check completed. Processed: {len(result or [])} reminders")
        return result

    async def aclose(self) -> None:
        """Stop the loops, wait for them to exit and shut the engine down."""
        self.stop()
        await self.time_loop.wait_stopped()
        await self.location_loop.wait_stopped()
        await self.engine.aclose()


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


async def worker_loop():
    """Run both reminder loops until a shutdown signal arrives."""
    logger.info(f"Worker enabled: {settings.WORKER_ENABLED}")
    logger.info(f"Time check interval: {settings.TIME_CHECK_INTERVAL} seconds")
    logger.info(f"Location check interval: {settings.LOCATION_CHECK_INTERVAL} seconds")

    if not settings.WORKER_ENABLED:
        logger.warning("Worker is disabled in configuration. Exiting.")
        return

    scheduler = ReminderScheduler(build_reminder_engine())
    scheduler.start()
    try:
        while not shutdown_requested:
            await asyncio.sleep(1)
    finally:
        await scheduler.aclose()

    logger.info("Background worker shutting down gracefully")


def main():
    """Main entry point for the headless background worker."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("=" * 60)
    logger.info("Reminder Notification Service - Background Worker")
    logger.info("=" * 60)

    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error(f"Fatal error in background worker: {e}", exc_info=True)
        sys.exit(1)

    logger.info("Background worker stopped")
    sys.exit(0)


if __name__ == "__main__":
    main()
