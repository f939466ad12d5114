"""Order-level job orchestration.

Drives one order through ``processing -> {completed | partial | failed}``:
identifiers run sequentially through the identifier pipeline inside one
browser session, per-item outcomes and progress are written as they happen,
and the whole job runs under a hard wall-clock timeout. A failed order is
refunded exactly once, whichever path (job error, timeout, stuck-job sweep)
gets there.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Awaitable, Callable, Optional

from sku_studio import metrics
from sku_studio.config import settings
from sku_studio.db.models import ItemStatus, OrderItem, OrderStatus
from sku_studio.db.repository import OrderRepository
from sku_studio.errors import StorageError
from sku_studio.imaging.quality import ImagingCapabilities
from sku_studio.ingest.browser import BrowserSession
from sku_studio.ingest.product_lookup import ProductLookup
from sku_studio.ingest.proxy_manager import ProxyPool
from sku_studio.ingest.scrape_coordinator import ScrapeCoordinator
from sku_studio.logging_config import get_logger
from sku_studio.refine.stage import RefinementStage
from sku_studio.storage.object_store import ObjectStorage, get_storage
from sku_studio.worker.packaging import package_order
from sku_studio.worker.pipeline import IdentifierPipeline, IdentifierResult
from sku_studio.worker.retry import retry_db_op
from sku_studio.worker.status import compute_order_status

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Awaitable[None]]


@dataclass
class JobResult:
    """What a finished (or aborted) job produced."""

    order_id: int
    status: str
    results: list[IdentifierResult] = field(default_factory=list)
    total_images: int = 0
    processed_count: int = 0
    failed_count: int = 0
    artifact_url: Optional[str] = None
    timed_out: bool = False


@dataclass
class _JobState:
    order_id: int
    identifiers: list[str]
    carried: list[OrderItem] = field(default_factory=list)  # Completed in an earlier attempt
    results: list[IdentifierResult] = field(default_factory=list)
    failed_count: int = 0
    status: str = OrderStatus.PROCESSING
    artifact_url: Optional[str] = None

    @property
    def carried_items(self) -> int:
        return len(self.carried)

    @property
    def carried_images(self) -> int:
        return sum(item.images_found for item in self.carried)

    @property
    def run_images(self) -> int:
        return sum(r.images_found for r in self.results)

    @property
    def total_images(self) -> int:
        return self.carried_images + self.run_images

    @property
    def total_items(self) -> int:
        return self.carried_items + len(self.identifiers)

    @property
    def processed_items(self) -> int:
        return self.carried_items + len(self.results)

    def to_result(self, timed_out: bool = False) -> JobResult:
        return JobResult(
            order_id=self.order_id,
            status=self.status,
            results=self.results,
            total_images=self.total_images,
            processed_count=len(self.results),
            failed_count=self.failed_count,
            artifact_url=self.artifact_url,
            timed_out=timed_out,
        )


async def fail_order_and_refund(
    repository: OrderRepository, order_id: int, reason: str, source: str
) -> bool:
    """
    Force an order to ``failed``, fail its open items and refund it.

    Safe to call from several places for the same order: the status write is
    compare-and-set and the refund is guarded by the ledger's uniqueness.

    Returns:
        True if this call moved the order to failed
    """
    transitioned = await retry_db_op(
        partial(repository.transition_order, order_id, OrderStatus.FAILED, error_message=reason),
        "transition_order",
    )
    failed_items = await retry_db_op(partial(repository.fail_open_items, order_id, reason), "fail_open_items")
    if transitioned:
        logger.warning(f"Order {order_id} failed ({source}): {reason}; {failed_items or 0} open item(s) failed")

    refunded = await retry_db_op(partial(repository.refund_order, order_id, reason), "refund_order")
    if refunded:
        metrics.record_refund(source)
    return bool(transitioned)


class ScrapeJobRunner:
    """Runs scrape jobs for orders.

    The browser session is created per job and always closed, the proxy
    pool is shared by every job of this runner.
    """

    def __init__(
        self,
        repository: OrderRepository,
        storage: Optional[ObjectStorage] = None,
        browser_factory: Optional[Callable[[], BrowserSession]] = None,
        pipeline_factory: Optional[Callable[[object], IdentifierPipeline]] = None,
        timeout_seconds: Optional[float] = None,
        proxy_pool: Optional[ProxyPool] = None,
    ):
        self.repository = repository
        self.storage = storage or get_storage()
        self.proxy_pool = proxy_pool or ProxyPool()
        self.browser_factory = browser_factory or (lambda: BrowserSession(proxy_pool=self.proxy_pool))
        self.pipeline_factory = pipeline_factory or self._default_pipeline
        self.timeout_seconds = timeout_seconds or settings.job_hard_timeout_seconds

    def _default_pipeline(self, browser) -> IdentifierPipeline:
        return IdentifierPipeline(
            coordinator=ScrapeCoordinator(browser, lookup=ProductLookup()),
            refinement=RefinementStage(),
            storage=self.storage,
            capabilities=ImagingCapabilities.from_settings(),
        )

    async def _load_baseline(self, state: _JobState) -> None:
        """Collect items completed by earlier attempts of a retried order."""
        order = await self.repository.get_order(state.order_id)
        rerun = set(state.identifiers)
        state.carried = [
            item for item in order.items
            if item.status == ItemStatus.COMPLETED and item.identifier not in rerun
        ]

    async def run_scrape_job(
        self,
        order_id: int,
        identifiers: list[str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> JobResult:
        """
        Process an order's identifiers and settle its terminal status.

        Args:
            order_id: Order already in ``processing``
            identifiers: Identifiers to run, in submission order
            on_progress: Awaited with (processed, total) after each identifier

        Returns:
            JobResult
        """
        started = time.monotonic()
        state = _JobState(order_id=order_id, identifiers=list(dict.fromkeys(identifiers)))
        job_log = get_logger(__name__, order_id=order_id)
        job_log.info(f"Starting scrape job for order {order_id}: {len(state.identifiers)} identifier(s)")

        try:
            await self._load_baseline(state)
            await asyncio.wait_for(self._execute(state, on_progress), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            reason = f"Job timed out after {self.timeout_seconds:.0f}s"
            logger.error(f"Order {order_id}: {reason}")
            state.status = OrderStatus.FAILED
            await fail_order_and_refund(self.repository, order_id, reason, source="timeout")
            metrics.record_job_finished(state.status, time.monotonic() - started)
            return state.to_result(timed_out=True)
        except Exception as e:
            logger.error(f"Scrape job for order {order_id} crashed: {e}", exc_info=True)
            state.status = OrderStatus.FAILED
            await fail_order_and_refund(self.repository, order_id, f"Job error: {e}", source="orchestrator")

        metrics.record_job_finished(state.status, time.monotonic() - started)
        job_log.info(
            f"Order {order_id} finished {state.status}: {state.total_images} image(s), "
            f"{state.failed_count}/{len(state.identifiers)} identifier(s) failed in {time.monotonic() - started:.1f}s"
        )
        return state.to_result()

    async def _execute(self, state: _JobState, on_progress: Optional[ProgressCallback]) -> None:
        order_id = state.order_id
        total = len(state.identifiers)
        job_log = get_logger(__name__, order_id=order_id)

        async with self.browser_factory() as browser:
            pipeline = self.pipeline_factory(browser)

            for position, identifier in enumerate(state.identifiers, start=1):
                job_log.bind(identifier=identifier).info(
                    f"Order {order_id}: identifier {position}/{total} {identifier}"
                )
                await retry_db_op(
                    partial(self.repository.mark_item_processing, order_id, identifier),
                    "mark_item_processing",
                )

                result = await pipeline.process(identifier)

                recorded = await retry_db_op(
                    partial(
                        self.repository.finish_item,
                        order_id,
                        identifier,
                        result.status,
                        result.images_found,
                        error_message=result.error_message,
                        processing_steps=result.processing_steps,
                        estimated_cost=result.estimated_cost,
                    ),
                    "finish_item",
                )
                if recorded is False:
                    order = await retry_db_op(partial(self.repository.get_order, order_id), "get_order")
                    if order is not None and order.status in OrderStatus.TERMINAL:
                        logger.warning(f"Order {order_id} is already {order.status}; stopping job")
                        state.status = order.status
                        return
                    logger.warning(
                        f"Order {order_id}: item {identifier} is no longer open; discarding its result"
                    )
                    continue

                if result.images:
                    await retry_db_op(
                        partial(self.repository.save_images, order_id, identifier, result.images),
                        "save_images",
                    )

                state.results.append(result)
                if result.status == ItemStatus.FAILED:
                    state.failed_count += 1

                await retry_db_op(
                    partial(self.repository.set_progress, order_id, state.processed_items, state.total_images),
                    "set_progress",
                )
                if on_progress is not None:
                    await on_progress(position, total)

            try:
                state.artifact_url = await package_order(
                    order_id, state.results, self.storage, carried_items=state.carried
                )
            except StorageError as e:
                logger.error(f"Order {order_id}: packaging failed, continuing without archive: {e}")

        await self._settle(state)

    async def _settle(self, state: _JobState) -> None:
        status = compute_order_status(state.total_items, state.failed_count, state.total_images)
        fields = {
            "processed_items": state.processed_items,
            "total_images": state.total_images,
        }
        if state.artifact_url:
            fields["artifact_url"] = state.artifact_url
        if status == OrderStatus.FAILED:
            fields["error_message"] = "No images found"

        transitioned = await retry_db_op(
            partial(self.repository.transition_order, state.order_id, status, **fields),
            "complete_order",
        )
        state.status = status
        if transitioned is False:
            logger.warning(f"Order {state.order_id} was already terminal; discarding late result")
            state.status = OrderStatus.FAILED
            return

        if status == OrderStatus.FAILED:
            refunded = await retry_db_op(
                partial(self.repository.refund_order, state.order_id, "No images found"),
                "refund_order",
            )
            if refunded:
                metrics.record_refund("orchestrator")
