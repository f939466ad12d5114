"""Periodic recovery of orders wedged in ``processing``."""

import logging
from typing import Optional

from sku_studio import metrics
from sku_studio.config import settings
from sku_studio.db.repository import OrderRepository
from sku_studio.worker.job_runner import fail_order_and_refund

logger = logging.getLogger(__name__)


async def sweep_stuck_orders(
    repository: OrderRepository,
    threshold_seconds: Optional[int] = None,
    reason_prefix: str = "Stuck job",
) -> list[int]:
    """
    Force-fail and refund orders whose current attempt has been processing too long.

    Uses the same compare-and-set transition and refund guard as the job
    runner, so an order the runner is failing at the same moment is
    refunded once.

    Args:
        repository: Order persistence
        threshold_seconds: Staleness threshold (settings when None)
        reason_prefix: Prefix of the error text written to the order and items

    Returns:
        Ids of the orders this sweep failed
    """
    threshold = settings.stuck_job_threshold_seconds if threshold_seconds is None else threshold_seconds
    stuck = await repository.find_stuck_orders(threshold)
    if not stuck:
        logger.debug("Stuck job sweep: nothing to recover")
        return []

    logger.warning(f"Stuck job sweep found {len(stuck)} order(s) processing for over {threshold}s: {stuck}")
    recovered: list[int] = []
    for order_id in stuck:
        reason = f"{reason_prefix}: processing exceeded {threshold}s"
        try:
            failed = await fail_order_and_refund(repository, order_id, reason, source="sweeper")
        except Exception as e:
            logger.error(f"Failed to recover stuck order {order_id}: {e}", exc_info=True)
            continue
        if failed:
            metrics.record_stuck_order_recovered()
            recovered.append(order_id)

    logger.info(f"Stuck job sweep recovered {len(recovered)}/{len(stuck)} order(s)")
    return recovered
