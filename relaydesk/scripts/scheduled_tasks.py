"""
Scheduled Tasks for the orchestration engine

Periodic background maintenance:
1. Status sweep - release finished ids from the processing set, evict
   old statuses and forget stale processed ids
2. Dedup sweep - drop send records older than the dedup window

Both stores also sweep on access; the scheduler keeps memory bounded
when traffic is idle. Uses APScheduler for in-process scheduling.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from relaydesk.agent.dedup import get_dedup_service
from relaydesk.agent.message_status import get_status_tracker

logger = logging.getLogger("relaydesk.scheduler")

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


async def run_status_sweep() -> int:
    """Enforce status tracker deadlines."""
    removed = get_status_tracker().sweep()
    if removed:
        logger.info(f"[SCHEDULER] Status sweep removed {removed} entries")
    return removed


async def run_dedup_sweep() -> int:
    """Drop expired dedup records."""
    removed = get_dedup_service().sweep()
    if removed:
        logger.info(f"[SCHEDULER] Dedup sweep removed {removed} entries")
    return removed


def setup_scheduler(sweep_interval_seconds: int = 60) -> AsyncIOScheduler:
    """
    Set up the APScheduler with the sweep jobs.

    Args:
        sweep_interval_seconds: How often to run both sweeps

    Returns:
        Configured scheduler instance
    """
    global scheduler

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_status_sweep,
        trigger=IntervalTrigger(seconds=sweep_interval_seconds),
        id="status_sweep",
        name="Message Status Sweep",
        replace_existing=True,
    )

    scheduler.add_job(
        run_dedup_sweep,
        trigger=IntervalTrigger(seconds=sweep_interval_seconds),
        id="dedup_sweep",
        name="Dedup Window Sweep",
        replace_existing=True,
    )

    logger.info(f"Scheduler configured: status and dedup sweeps every {sweep_interval_seconds}s")
    return scheduler


def start_scheduler(sweep_interval_seconds: int = 60):
    """Start the scheduler if not already running."""
    global scheduler

    if scheduler is None:
        scheduler = setup_scheduler(sweep_interval_seconds)

    if not scheduler.running:
        scheduler.start()
        logger.info("Maintenance scheduler started")


def stop_scheduler():
    """Stop the scheduler if running."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("Maintenance scheduler stopped")
