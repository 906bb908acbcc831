"""
APScheduler setup for the periodic polling cycle.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

POLLING_JOB_ID = "polling_cycle"

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global scheduler

    if scheduler is None:
        scheduler = AsyncIOScheduler(timezone="UTC")

    return scheduler


async def start_scheduler() -> None:
    """Start the scheduler."""
    sched = get_scheduler()
    if not sched.running:
        sched.start()
        logger.info("Scheduler started")


async def stop_scheduler() -> None:
    """Stop the scheduler gracefully."""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    scheduler = None


def schedule_polling(coordinator, interval_seconds: int) -> None:
    """
    Register the recurring polling cycle.

    A trigger that fires while a cycle is still running is coalesced into
    the running one; cycles never overlap.

    Args:
        coordinator: PipelineCoordinator whose run_cycle is invoked
        interval_seconds: Seconds between cycle starts
    """
    sched = get_scheduler()
    sched.add_job(
        run_polling_cycle,
        trigger=IntervalTrigger(seconds=max(1, interval_seconds)),
        id=POLLING_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(timezone.utc),
        kwargs={"coordinator": coordinator},
    )
    logger.info(f"Scheduled polling cycle every {interval_seconds}s")


async def run_polling_cycle(coordinator) -> None:
    """
    Run one cycle from the scheduler.

    This function is called by the scheduler on every interval tick.
    """
    try:
        report = await coordinator.run_cycle()
        if report.aborted:
            logger.warning(f"Polling cycle aborted: {report.error}")
    except Exception as e:
        logger.exception(f"Error running polling cycle: {e}")
