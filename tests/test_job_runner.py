"""Tests for order-level job orchestration."""

import asyncio
import io
import zipfile
from decimal import Decimal
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

import httpx
import pytest

from conftest import FakeBrowser, make_noise_image
from sku_studio.db.models import ItemStatus, OrderStatus
from sku_studio.imaging.quality import ImagingCapabilities
from sku_studio.ingest.proxy_manager import ProxyPool
from sku_studio.ingest.scrape_coordinator import ScrapeCoordinator
from sku_studio.ingest.site_scraper import Outcome, StoreScrapeResult
from sku_studio.ingest.store_catalog import get_active_stores
from sku_studio.refine.canvas import OutputMode
from sku_studio.refine.stage import RefinementStage
from sku_studio.refine.upscaler import ReplicateUpscaler
from sku_studio.worker.job_runner import ScrapeJobRunner, fail_order_and_refund
from sku_studio.worker.pipeline import IdentifierPipeline

PRICE = Decimal("10.00")
STORES = get_active_stores()[:2]
SQUARE_URL = "https://cdn.example.com/products/square.png"
TALL_URL = "https://cdn.example.com/products/tall.png"
SIDE_URL = "https://cdn.example.com/products/side.png"

IMAGES = {
    SQUARE_URL: make_noise_image(600, 600, seed=1),
    TALL_URL: make_noise_image(600, 800, seed=2),
    SIDE_URL: make_noise_image(800, 500, seed=3),
}


def image_transport():
    def handler(request: httpx.Request) -> httpx.Response:
        data = IMAGES.get(str(request.url))
        if data is None:
            return httpx.Response(404)
        return httpx.Response(200, content=data, headers={"content-type": "image/png"})

    return httpx.MockTransport(handler)


class Harness:
    """Runner wired to canned store results, fake browsers and local storage."""

    def __init__(self, repository, storage, found_urls, timeout_seconds=30):
        self.found_urls = found_urls  # identifier -> urls reported by the first store
        self.browsers = []
        self.searched = []
        self.runner = ScrapeJobRunner(
            repository,
            storage=storage,
            browser_factory=self._browser,
            pipeline_factory=self._pipeline,
            timeout_seconds=timeout_seconds,
            proxy_pool=ProxyPool(api_key="unused"),
        )
        self.storage = storage

    def _browser(self):
        browser = FakeBrowser()
        self.browsers.append(browser)
        return browser

    async def _scrape(self, browser, store, identifier):
        if store == STORES[0]:
            self.searched.append(identifier)
        urls = self.found_urls.get(identifier, []) if store == STORES[0] else []
        outcome = Outcome.FOUND if urls else Outcome.NO_RESULTS
        return StoreScrapeResult(store_name=store.name, image_urls=list(urls), outcome=outcome)

    def _pipeline(self, browser):
        return IdentifierPipeline(
            coordinator=ScrapeCoordinator(
                browser,
                stores=STORES,
                store_scraper=self._scrape,
                output_mode=OutputMode.COMPRESSED,
                transport=image_transport(),
            ),
            refinement=RefinementStage(mode=OutputMode.COMPRESSED, upscaler=ReplicateUpscaler(api_token="")),
            storage=self.storage,
            capabilities=ImagingCapabilities(pixel_analysis=True),
        )


async def _order(repository, identifiers, balance="100.00"):
    user = await repository.create_user("studio@example.com", Decimal(balance))
    order = await repository.create_order(user.id, list(identifiers), len(identifiers), PRICE)
    return user, order


@pytest.mark.asyncio
async def test_completed_order(repository, storage):
    user, order = await _order(repository, ["3348901250153"])
    harness = Harness(repository, storage, {"3348901250153": [SQUARE_URL, TALL_URL]})
    progress = []

    async def on_progress(processed, total):
        progress.append((processed, total))

    result = await harness.runner.run_scrape_job(order.id, ["3348901250153"], on_progress=on_progress)

    assert result.status == OrderStatus.COMPLETED
    assert result.total_images == 2
    assert result.artifact_url is not None
    assert progress == [(1, 1)]
    assert harness.browsers[0].closed

    stored = await repository.get_order(order.id)
    assert stored.status == OrderStatus.COMPLETED
    assert stored.total_images == 2
    assert stored.processed_items == 1
    assert stored.artifact_url == result.artifact_url
    item = stored.items[0]
    assert item.status == ItemStatus.COMPLETED
    assert item.images_found == 2
    assert len(item.images) == 2
    assert await repository.count_refunds(order.id) == 0
    assert await repository.get_balance(user.id) == Decimal("90.00")


@pytest.mark.asyncio
async def test_order_without_images_fails_and_refunds(repository, storage):
    user, order = await _order(repository, ["111111111111", "222222222222"])
    harness = Harness(repository, storage, {})

    result = await harness.runner.run_scrape_job(order.id, ["111111111111", "222222222222"])

    assert result.status == OrderStatus.FAILED
    assert result.failed_count == 2
    assert result.artifact_url is None

    stored = await repository.get_order(order.id)
    assert stored.status == OrderStatus.FAILED
    assert stored.error_message == "No images found"
    assert all(item.status == ItemStatus.FAILED for item in stored.items)
    assert await repository.count_refunds(order.id) == 1
    assert await repository.get_balance(user.id) == Decimal("100.00")


@pytest.mark.asyncio
async def test_partial_order_is_not_refunded(repository, storage):
    user, order = await _order(repository, ["111111111111", "222222222222"])
    harness = Harness(repository, storage, {"111111111111": [SQUARE_URL]})

    result = await harness.runner.run_scrape_job(order.id, ["111111111111", "222222222222"])

    assert result.status == OrderStatus.PARTIAL
    assert result.total_images == 1
    items = {item.identifier: item for item in await repository.get_items(order.id)}
    assert items["111111111111"].status == ItemStatus.COMPLETED
    assert items["222222222222"].status == ItemStatus.FAILED
    assert items["222222222222"].error_message.startswith("No images found")
    assert await repository.count_refunds(order.id) == 0
    assert await repository.get_balance(user.id) == Decimal("80.00")


@pytest.mark.asyncio
async def test_retry_counts_items_from_earlier_attempt(repository, storage):
    _, order = await _order(repository, ["111111111111", "222222222222"])
    harness = Harness(repository, storage, {"111111111111": [SQUARE_URL, TALL_URL]})
    await harness.runner.run_scrape_job(order.id, ["111111111111", "222222222222"])

    plan = await repository.reset_for_retry(order.id, PRICE)
    harness.found_urls["222222222222"] = [SIDE_URL]
    result = await harness.runner.run_scrape_job(order.id, plan.identifiers)

    assert plan.identifiers == ["222222222222"]
    assert result.status == OrderStatus.COMPLETED
    assert result.total_images == 3
    stored = await repository.get_order(order.id)
    assert stored.processed_items == 2
    assert stored.total_images == 3


class SlowPipeline:
    async def process(self, identifier):
        await asyncio.sleep(10)


class CrashingPipeline:
    async def process(self, identifier):
        raise RuntimeError("disk full")


@pytest.mark.asyncio
async def test_hard_timeout_fails_open_items_and_refunds_once(repository, storage):
    user, order = await _order(repository, ["111111111111", "222222222222"])
    browser = FakeBrowser()
    runner = ScrapeJobRunner(
        repository,
        storage=storage,
        browser_factory=lambda: browser,
        pipeline_factory=lambda b: SlowPipeline(),
        timeout_seconds=0.2,
        proxy_pool=ProxyPool(api_key="unused"),
    )

    result = await runner.run_scrape_job(order.id, ["111111111111", "222222222222"])

    assert result.timed_out
    assert result.status == OrderStatus.FAILED
    assert browser.closed

    stored = await repository.get_order(order.id)
    assert stored.status == OrderStatus.FAILED
    assert stored.error_message.startswith("Job timed out")
    assert all(item.status == ItemStatus.FAILED for item in stored.items)
    assert await repository.count_refunds(order.id) == 1
    assert await repository.get_balance(user.id) == Decimal("100.00")


@pytest.mark.asyncio
async def test_unexpected_error_fails_and_refunds(repository, storage):
    user, order = await _order(repository, ["111111111111"])
    runner = ScrapeJobRunner(
        repository,
        storage=storage,
        browser_factory=FakeBrowser,
        pipeline_factory=lambda b: CrashingPipeline(),
        proxy_pool=ProxyPool(api_key="unused"),
    )

    result = await runner.run_scrape_job(order.id, ["111111111111"])

    assert result.status == OrderStatus.FAILED
    stored = await repository.get_order(order.id)
    assert stored.error_message == "Job error: disk full"
    assert await repository.count_refunds(order.id) == 1
    assert await repository.get_balance(user.id) == Decimal("100.00")


@pytest.mark.asyncio
async def test_repeated_identifier_runs_once_and_settles(repository, storage):
    user, order = await _order(repository, ["3348901250153", "3348901250153"])
    harness = Harness(repository, storage, {"3348901250153": [SQUARE_URL]})

    result = await harness.runner.run_scrape_job(order.id, ["3348901250153", "3348901250153"])

    assert result.status == OrderStatus.COMPLETED
    assert harness.searched == ["3348901250153"]
    stored = await repository.get_order(order.id)
    assert stored.status == OrderStatus.COMPLETED
    assert [item.identifier for item in stored.items] == ["3348901250153"]
    assert await repository.get_balance(user.id) == Decimal("90.00")


class SweptMidJobPipeline:
    """Delegates to a real pipeline after the order was failed out from under it."""

    def __init__(self, repository, order_id, inner):
        self.repository = repository
        self.order_id = order_id
        self.inner = inner

    async def process(self, identifier):
        await fail_order_and_refund(self.repository, self.order_id, "Stuck job", source="sweeper")
        return await self.inner.process(identifier)


@pytest.mark.asyncio
async def test_job_stops_when_order_was_failed_elsewhere(repository, storage):
    user, order = await _order(repository, ["111111111111", "222222222222"])
    harness = Harness(repository, storage, {"111111111111": [SQUARE_URL], "222222222222": [TALL_URL]})
    harness.runner.pipeline_factory = lambda browser: SweptMidJobPipeline(
        repository, order.id, harness._pipeline(browser)
    )

    result = await harness.runner.run_scrape_job(order.id, ["111111111111", "222222222222"])

    assert result.status == OrderStatus.FAILED
    assert result.results == []
    stored = await repository.get_order(order.id)
    assert stored.status == OrderStatus.FAILED
    assert stored.error_message == "Stuck job"
    assert await repository.count_refunds(order.id) == 1
    assert await repository.get_balance(user.id) == Decimal("100.00")


@pytest.mark.asyncio
async def test_malformed_image_url_does_not_fail_the_order(repository, storage):
    user, order = await _order(repository, ["111111111111", "222222222222"])
    harness = Harness(
        repository,
        storage,
        {"111111111111": [SQUARE_URL], "222222222222": ["https://[broken/products/x.jpg", TALL_URL]},
    )

    result = await harness.runner.run_scrape_job(order.id, ["111111111111", "222222222222"])

    assert result.status == OrderStatus.COMPLETED
    assert result.total_images == 2
    items = {item.identifier: item for item in await repository.get_items(order.id)}
    assert items["222222222222"].status == ItemStatus.COMPLETED
    assert await repository.count_refunds(order.id) == 0
    assert await repository.get_balance(user.id) == Decimal("80.00")


@pytest.mark.asyncio
async def test_retry_archive_keeps_items_from_earlier_attempt(repository, storage):
    _, order = await _order(repository, ["111111111111", "222222222222"])
    harness = Harness(repository, storage, {"111111111111": [SQUARE_URL, TALL_URL]})
    await harness.runner.run_scrape_job(order.id, ["111111111111", "222222222222"])

    plan = await repository.reset_for_retry(order.id, PRICE)
    harness.found_urls["222222222222"] = [SIDE_URL]
    result = await harness.runner.run_scrape_job(order.id, plan.identifiers)

    archive_path = Path(url2pathname(urlparse(result.artifact_url).path))
    with zipfile.ZipFile(io.BytesIO(archive_path.read_bytes())) as archive:
        names = archive.namelist()

    assert len(names) == 3
    assert sorted({name.split("/")[0] for name in names}) == ["111111111111", "222222222222"]
    assert sum(name.startswith("111111111111/") for name in names) == 2
    assert (await repository.get_order(order.id)).artifact_url == result.artifact_url
