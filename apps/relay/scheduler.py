"""
Relay Scheduler - Cron and On-Demand Execution

Runs the fetch-then-drain cycle on a cron schedule using APScheduler, or once
and exit when RUN_ONCE is set.

Features:
- Cron-based scheduling (configurable via SYNC_SCHEDULE_CRON)
- RUN_ONCE mode for immediate execution
- Cooperative shutdown: SIGINT/SIGTERM set the event that fetcher and
  delivery engine check between pages and between records

Usage:
    # Scheduled mode (default)
    python -m apps.relay

    # Run once and exit
    RUN_ONCE=true python -m apps.relay
"""

import asyncio
import signal
import sys
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from apps.relay.orchestrator import IdentityReport, open_relay
from utils.config import Settings, get_settings
from utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


class RelayScheduler:
    """
    Scheduler for periodic or on-demand relay cycles.

    Handles:
    - APScheduler setup and management
    - RUN_ONCE immediate execution
    - Signal handling for graceful shutdown
    """

    def __init__(self, settings: Settings) -> None:
        """
        Initialize scheduler.

        Args:
            settings: Application settings, read once at startup
        """
        self.settings = settings
        self.run_once = settings.RUN_ONCE
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.shutdown_event = asyncio.Event()
        # Set while no cycle is running.
        self._idle_event = asyncio.Event()
        self._idle_event.set()

        logger.info(
            "RelayScheduler initialized",
            extra={
                "run_once": self.run_once,
                "cron_schedule": settings.SYNC_SCHEDULE_CRON,
                "events_enabled": settings.events_enabled,
                "identities": [identity.name for identity in settings.IDENTITIES],
            },
        )

    async def execute_cycle(self) -> list[IdentityReport]:
        """Run one relay cycle over all identities."""
        if self.shutdown_event.is_set():
            logger.info("Shutdown requested, skipping relay cycle")
            return []

        logger.info("Starting relay cycle")
        self._idle_event.clear()

        try:
            async with open_relay(self.settings, self.shutdown_event) as orchestrator:
                reports = await orchestrator.run_cycle()

            logger.info(
                "Relay cycle completed",
                extra={"failed": [report.identity for report in reports if not report.ok]},
            )
            return reports

        except Exception as e:
            logger.error("Relay cycle failed", extra={"error": str(e)}, exc_info=True)
            raise

        finally:
            self._idle_event.set()

    def request_shutdown(self) -> None:
        """Ask the running cycle to stop at its next page or record boundary."""
        logger.info("Graceful shutdown requested")
        self.shutdown_event.set()

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum: int, frame: object) -> None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown")
            loop.call_soon_threadsafe(self.request_shutdown)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def wait_until_stopped(self) -> None:
        """Wait for a shutdown request, stop scheduling, then let the running cycle finish."""
        await self.shutdown_event.wait()

        running = self.scheduler is not None and self.scheduler.running
        if running:
            self.scheduler.pause()

        if not self._idle_event.is_set():
            logger.info("Waiting for running relay cycle to stop")
        await self._idle_event.wait()

        # Shutting down the executor cancels any job still running.
        if running:
            logger.info("Shutting down scheduler")
            self.scheduler.shutdown(wait=False)
        logger.info("Scheduler shutdown complete")

    async def start(self) -> None:
        """
        Start scheduler or execute once.

        In scheduled mode, runs continuously until shutdown signal.
        In RUN_ONCE mode, executes immediately and exits.
        """
        self.setup_signal_handlers()

        if self.run_once:
            logger.info("Running in RUN_ONCE mode")
            await self.execute_cycle()
            return

        logger.info("Running in scheduled mode")

        self.scheduler = AsyncIOScheduler()
        trigger = CronTrigger.from_crontab(self.settings.SYNC_SCHEDULE_CRON)
        self.scheduler.add_job(
            self.execute_cycle,
            trigger=trigger,
            id="relay_cycle",
            name="Periodic Timeline Relay",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        job = self.scheduler.get_job("relay_cycle")
        next_run = getattr(job, "next_run_time", None)

        logger.info(
            "Scheduled relay job",
            extra={
                "schedule": self.settings.SYNC_SCHEDULE_CRON,
                "next_run": str(next_run) if next_run is not None else None,
            },
        )

        await self.wait_until_stopped()


async def main() -> None:
    """Main entry point for the relay."""
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    scheduler = RelayScheduler(settings)

    try:
        await scheduler.start()
    except Exception as e:
        logger.error("Scheduler failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
