"""Bounded retries for status writes."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from sku_studio import metrics
from sku_studio.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_db_op(
    operation: Callable[[], Awaitable[T]],
    name: str,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
) -> Optional[T]:
    """
    Run a persistence call with linear backoff (base, 2x base, ...).

    A write that still fails after the last attempt is logged as CRITICAL
    and swallowed: the running job keeps the images it already produced.

    Args:
        operation: Zero-argument coroutine factory
        name: Operation label for logs and metrics
        attempts: Maximum attempts (settings when None)
        base_delay: Delay unit in seconds (settings when None)

    Returns:
        The operation's result, or None if every attempt failed
    """
    attempts = attempts or settings.db_retry_attempts
    base_delay = settings.db_retry_base_delay_seconds if base_delay is None else base_delay

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except (SQLAlchemyError, OSError) as e:
            if attempt < attempts:
                delay = base_delay * attempt
                logger.warning(f"{name} failed (attempt {attempt}/{attempts}), retrying in {delay:.1f}s: {e}")
                await asyncio.sleep(delay)
                continue
            logger.critical(f"{name} failed after {attempts} attempts, continuing without it: {e}")
            metrics.record_persistence_failure(name)
    return None
