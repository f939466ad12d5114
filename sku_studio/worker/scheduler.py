"""APScheduler job definitions."""

import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from sku_studio.config import settings
from sku_studio.db.repository import OrderRepository
from sku_studio.db.session import AsyncSessionLocal
from sku_studio.worker.stuck_sweeper import sweep_stuck_orders

logger = logging.getLogger(__name__)


async def stuck_order_check() -> None:
    """Scheduled entry point for the stuck-order sweep."""
    try:
        await sweep_stuck_orders(OrderRepository(AsyncSessionLocal), reason_prefix="Stuck job sweeper")
    except Exception as e:
        # Retried on the next interval
        logger.error(f"Stuck order sweep failed: {e}", exc_info=True)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Set up the APScheduler with the periodic maintenance jobs.

    Returns:
        Configured scheduler (not started)
    """
    scheduler = AsyncIOScheduler()

    first_run = datetime.now() + timedelta(seconds=settings.stuck_job_initial_delay_seconds)
    scheduler.add_job(
        stuck_order_check,
        IntervalTrigger(seconds=settings.stuck_job_check_interval_seconds),
        id="stuck_order_sweep",
        name="Stuck order sweeper",
        next_run_time=first_run,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: stuck order sweep every %d seconds (threshold %d seconds), first run in %d seconds",
        settings.stuck_job_check_interval_seconds,
        settings.stuck_job_threshold_seconds,
        settings.stuck_job_initial_delay_seconds,
    )
    return scheduler
