"""Tests for store fan-out, URL de-duplication and downloading."""

import asyncio
from collections import Counter

import httpx
import pytest

from conftest import FakeBrowser, make_noise_image
from sku_studio.errors import ImageDownloadError
from sku_studio.ingest.product_lookup import ProductLookupResult, SuggestedStore
from sku_studio.ingest.scrape_coordinator import DownloadFloor, ScrapeCoordinator, download_image
from sku_studio.ingest.site_scraper import Outcome, StoreScrapeResult
from sku_studio.ingest.store_catalog import get_active_stores
from sku_studio.refine.canvas import OutputMode

IDENTIFIER = "3348901250153"


def image_transport(images: dict[str, bytes], requests: Counter):
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        requests[url] += 1
        if url not in images:
            return httpx.Response(404)
        return httpx.Response(200, content=images[url], headers={"content-type": "image/png"})

    return httpx.MockTransport(handler)


def canned_scraper(by_store: dict, calls: list):
    async def scrape(browser, store, identifier):
        calls.append(store.name)
        outcome = by_store.get(store.name)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            return StoreScrapeResult(store_name=store.name, outcome=Outcome.NO_RESULTS)
        return StoreScrapeResult(store_name=store.name, image_urls=list(outcome), outcome=Outcome.FOUND)

    return scrape


@pytest.mark.asyncio
async def test_repeated_urls_download_once():
    stores = get_active_stores()[:3]
    url_a = "https://cdn.example.com/products/a.png"
    url_b = "https://cdn.example.com/products/b.png"
    images = {url_a: make_noise_image(300, 300, seed=1), url_b: make_noise_image(300, 400, seed=2)}
    requests = Counter()
    calls = []
    coordinator = ScrapeCoordinator(
        FakeBrowser(),
        stores=stores,
        store_scraper=canned_scraper(
            {
                stores[0].name: [url_a, url_b, url_a],
                stores[1].name: ["//cdn.example.com/products/a.png"],
                stores[2].name: [url_b],
            },
            calls,
        ),
        output_mode=OutputMode.COMPRESSED,
        transport=image_transport(images, requests),
    )

    outcome = await coordinator.scrape_identifier(IDENTIFIER)

    assert outcome.unique_urls == 2
    assert [c.source_url for c in outcome.candidates] == [url_a, url_b]
    assert all(count == 1 for count in requests.values())
    assert outcome.candidates[0].store_name == stores[0].name
    assert (outcome.candidates[1].width, outcome.candidates[1].height) == (300, 400)


@pytest.mark.asyncio
async def test_store_failures_are_collected_not_raised():
    stores = get_active_stores()[:3]
    url = "https://cdn.example.com/products/a.png"
    calls = []
    coordinator = ScrapeCoordinator(
        FakeBrowser(),
        stores=stores,
        store_scraper=canned_scraper(
            {stores[0].name: RuntimeError("browser crashed"), stores[2].name: [url]},
            calls,
        ),
        output_mode=OutputMode.COMPRESSED,
        transport=image_transport({url: make_noise_image(300, 300)}, Counter()),
    )

    outcome = await coordinator.scrape_identifier(IDENTIFIER)

    assert outcome.errors == [f"{stores[0].name}: browser crashed"]
    assert len(outcome.candidates) == 1
    assert sorted(calls) == sorted(s.name for s in stores)


@pytest.mark.asyncio
async def test_batches_run_sequentially():
    stores = get_active_stores()[:5]
    running = 0
    peak = 0
    order = []

    async def slow_scraper(browser, store, identifier):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        order.append(store.name)
        await asyncio.sleep(0.01)
        running -= 1
        return StoreScrapeResult(store_name=store.name)

    coordinator = ScrapeCoordinator(
        FakeBrowser(), stores=stores, store_scraper=slow_scraper, batch_size=2, transport=image_transport({}, Counter())
    )
    await coordinator.scrape_identifier(IDENTIFIER)

    assert peak == 2
    assert order == [s.name for s in stores]


def test_plan_stores_puts_lookup_matches_first():
    stores = get_active_stores()
    coordinator = ScrapeCoordinator(FakeBrowser(), stores=stores)
    product = ProductLookupResult(product_name="Bleu de Chanel", brand="Chanel")
    product.suggested_stores = [SuggestedStore(name="x", url="https://x", matched_store=stores[2].name)]

    planned = coordinator.plan_stores(product)

    assert planned[0] == stores[2]
    assert len(planned) == len(stores)
    assert coordinator.plan_stores(None) == stores


@pytest.mark.asyncio
async def test_download_floor_rejects_small_and_non_images():
    floor = DownloadFloor(min_dimension=200, min_bytes=1000)
    small = make_noise_image(120, 120)
    pages = {
        "https://cdn.example.com/small.png": httpx.Response(200, content=small, headers={"content-type": "image/png"}),
        "https://cdn.example.com/page": httpx.Response(200, content=b"<html>" * 500, headers={"content-type": "text/html"}),
        "https://cdn.example.com/tiny.png": httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"}),
        "https://cdn.example.com/gone.png": httpx.Response(404),
    }
    transport = httpx.MockTransport(lambda request: pages[str(request.url)])

    async with httpx.AsyncClient(transport=transport) as client:
        for url in pages:
            with pytest.raises(ImageDownloadError):
                await download_image(client, url, "StoreA", floor)


@pytest.mark.asyncio
async def test_malformed_image_url_is_dropped():
    stores = get_active_stores()[:1]
    good = "https://cdn.example.com/products/a.png"
    requests = Counter()
    coordinator = ScrapeCoordinator(
        FakeBrowser(),
        stores=stores,
        store_scraper=canned_scraper({stores[0].name: ["https://[broken/products/x.jpg", good]}, []),
        output_mode=OutputMode.COMPRESSED,
        transport=image_transport({good: make_noise_image(300, 300)}, requests),
    )

    outcome = await coordinator.scrape_identifier(IDENTIFIER)

    assert outcome.unique_urls == 2
    assert [c.source_url for c in outcome.candidates] == [good]
    assert list(requests) == [good]


@pytest.mark.asyncio
async def test_download_image_wraps_malformed_urls():
    floor = DownloadFloor(min_dimension=1, min_bytes=1)
    async with httpx.AsyncClient(transport=image_transport({}, Counter())) as client:
        with pytest.raises(ImageDownloadError):
            await download_image(client, "https://[broken/products/x.jpg", "StoreA", floor)
