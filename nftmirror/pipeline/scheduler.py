"""
NFT Mirror — Periodic Sync Scheduler

Runs the listings reconciliation and the owners snapshot on fixed cadences.
Runs are strictly sequential, so no two syncs for a ticker ever overlap.

Cadences:
- Listings: every 15 minutes
- Owners & collection stats: every 6 hours
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nftmirror.config import SyncKind, settings
from nftmirror.pipeline.runner import RunOptions, RunStatus, SyncRunner, install_signal_handlers

logger = structlog.get_logger(__name__)


class Scheduler:
    """
    Async scheduler for the periodic sync jobs.

    Maintains an independent clock per job. The first runs happen after
    SCHEDULER_INITIAL_DELAY_SECONDS so the process can settle after startup.
    """

    def __init__(self, runner: SyncRunner, ticker: str | None = None):
        self.runner = runner
        self.ticker = ticker or settings.DEFAULT_TICKER
        self._shutdown_event = asyncio.Event()

        first_run = datetime.now(timezone.utc) + timedelta(
            seconds=settings.SCHEDULER_INITIAL_DELAY_SECONDS
        )
        self._next_run: dict[SyncKind, datetime] = {
            SyncKind.LISTINGS: first_run,
            SyncKind.OWNERS: first_run,
        }
        self._cadence: dict[SyncKind, timedelta] = {
            SyncKind.LISTINGS: timedelta(minutes=settings.LISTINGS_SYNC_INTERVAL_MINUTES),
            SyncKind.OWNERS: timedelta(hours=settings.OWNERS_SYNC_INTERVAL_HOURS),
        }

    async def shutdown(self) -> None:
        """Signal graceful shutdown to the scheduler loop and any run in flight."""
        logger.info("scheduler_shutdown_requested")
        self._shutdown_event.set()
        self.runner.request_stop()

    def due_jobs(self, now: datetime | None = None) -> list[SyncKind]:
        """Jobs whose next run time has passed, in a stable order."""
        current = now or datetime.now(timezone.utc)
        return [kind for kind, due in self._next_run.items() if due <= current]

    async def _run_job(self, kind: SyncKind) -> RunStatus:
        logger.info("scheduler_job_start", kind=kind.value, ticker=self.ticker)
        summary = await self.runner.run(kind, RunOptions(ticker=self.ticker))
        self._next_run[kind] = datetime.now(timezone.utc) + self._cadence[kind]

        if summary.status is RunStatus.COMPLETED_WITH_ERRORS:
            logger.warning("scheduler_job_item_errors", kind=kind.value, errors=summary.item_errors)
        logger.info(
            "scheduler_job_complete",
            kind=kind.value,
            status=summary.status.value,
            next_run=self._next_run[kind].isoformat(),
        )
        return summary.status

    async def run(self) -> None:
        """
        Main scheduler loop. Runs indefinitely until shutdown is signaled.

        Jobs run independently; if one fails, the other continues.
        """
        if settings.DISABLE_SCHEDULED_SYNCS:
            logger.info("scheduler_disabled", flag="DISABLE_SCHEDULED_SYNCS")
            return

        logger.info(
            "scheduler_started",
            ticker=self.ticker,
            listings_cadence_minutes=settings.LISTINGS_SYNC_INTERVAL_MINUTES,
            owners_cadence_hours=settings.OWNERS_SYNC_INTERVAL_HOURS,
        )

        poll_check_interval = settings.SCHEDULER_POLL_CHECK_SECONDS

        try:
            while not self._shutdown_event.is_set():
                try:
                    for kind in self.due_jobs():
                        if self._shutdown_event.is_set():
                            break
                        await self._run_job(kind)

                    # Sleep before next check
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=poll_check_interval,
                    )
                except asyncio.TimeoutError:
                    # Expected: timeout means no shutdown signal, continue loop
                    continue
                except Exception as e:
                    logger.error(
                        "scheduler_unknown_error",
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    # Continue running despite errors
                    await asyncio.sleep(poll_check_interval)

        except asyncio.CancelledError:
            logger.info("scheduler_cancelled")
            raise
        finally:
            logger.info("scheduler_stopped")


async def run_scheduler(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """
    Initialize and run the scheduler with graceful shutdown handling.

    Registers SIGTERM/SIGINT handlers to trigger shutdown.
    """
    scheduler = Scheduler(SyncRunner(session_factory))

    def handle_stop() -> None:
        asyncio.create_task(scheduler.shutdown())

    install_signal_handlers(handle_stop)

    try:
        await scheduler.run()
    except Exception as e:
        logger.error("scheduler_fatal_error", error=str(e), error_type=type(e).__name__)
        raise
