"""Scheduler for the task maintenance job (expiry and retention sweeps)."""

import logging
from collections.abc import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from replytrack.core.config import constants
from replytrack.core.scheduler_tracker import run_tracked_job


logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = AsyncIOScheduler()


def start_scheduler(maintenance: Callable[[], Awaitable[None]]) -> None:
    """Register the maintenance job and start the scheduler.

    The job runs every MAINTENANCE_INTERVAL_SECONDS; a tick still running
    when the next one is due makes APScheduler skip that run.

    This should be called during FastAPI app startup.
    """
    logger.info("Starting scheduler")

    async def _run_maintenance() -> None:
        await run_tracked_job(maintenance, constants.MAINTENANCE_JOB_NAME)

    scheduler.add_job(
        _run_maintenance,
        trigger=IntervalTrigger(seconds=constants.MAINTENANCE_INTERVAL_SECONDS),
        id=constants.MAINTENANCE_JOB_NAME,
        name="Expire and clean up response tasks",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info(f"Scheduled maintenance job: every {constants.MAINTENANCE_INTERVAL_SECONDS}s")

    if not scheduler.running:
        scheduler.start()
    logger.info("Scheduler started successfully")


def stop_scheduler() -> None:
    """Stop the scheduler.

    This should be called during FastAPI app shutdown.
    """
    if not scheduler.running:
        return
    logger.info("Stopping scheduler")
    scheduler.remove_all_jobs()
    scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")
