"""Scrape one store for one identifier."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urljoin

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from selectolax.parser import HTMLParser

from sku_studio import metrics
from sku_studio.config import settings
from sku_studio.errors import StoreScrapeError
from sku_studio.ingest.extraction import extract_product_images, split_selector_list
from sku_studio.ingest.relevance import check_page_relevance
from sku_studio.ingest.store_catalog import StoreConfig, StoreSelectors, build_search_url

logger = logging.getLogger(__name__)

PRODUCT_URL_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"/products?/",
        r"/p/",
        r"/item/",
        r"/dp/",
        r"\.html$",
        r"/[a-z-]+-perfume",
        r"/[a-z-]+-cologne",
        r"/[a-z-]+-eau-de",
    )
]

GENERIC_PRODUCT_LINK_SELECTOR = "a[href*='/product'], a[href*='/p/'], a[href$='.html']"


class Outcome:
    FOUND = "found"
    EMPTY = "empty"
    NO_RESULTS = "no_results"
    IRRELEVANT = "irrelevant"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass
class StoreScrapeResult:
    """Image URLs found on one store, or the reason none were."""

    store_name: str
    image_urls: list[str] = field(default_factory=list)
    page_url: Optional[str] = None
    outcome: str = Outcome.EMPTY
    error: Optional[StoreScrapeError] = None


def is_product_page_url(url: str) -> bool:
    return any(pattern.search(url) for pattern in PRODUCT_URL_PATTERNS)


def first_product_link(html: str, selector: str, base_url: str) -> Optional[str]:
    """Absolute href of the first element matching ``selector`` (a selector list)."""
    parser = HTMLParser(html)
    for part in split_selector_list(selector):
        try:
            nodes = parser.css(part)
        except Exception as e:
            logger.debug(f"Link selector {part!r} not usable: {e}")
            continue
        for node in nodes:
            href = (node.attributes.get("href") or "").strip()
            if href and not href.startswith(("#", "javascript:")):
                return urljoin(base_url, href)
    return None


async def _visible(page, selector: Optional[str]) -> bool:
    if not selector:
        return False
    try:
        return await page.is_visible(selector)
    except PlaywrightError:
        return False


async def _settle(page, url: str) -> None:
    await page.goto(url, wait_until="networkidle", timeout=settings.navigation_timeout_seconds * 1000)
    await asyncio.sleep(settings.page_settle_seconds)


async def scrape_store(browser, store: StoreConfig, identifier: str) -> StoreScrapeResult:
    """
    Search ``store`` for ``identifier`` and collect product image URLs.

    Never raises: timeouts, misses and irrelevant pages come back as empty
    results, anything else as a result carrying a labelled StoreScrapeError.

    Args:
        browser: BrowserSession providing isolated pages
        store: Store recipe
        identifier: SKU/UPC/EAN to search for

    Returns:
        StoreScrapeResult
    """
    result = StoreScrapeResult(store_name=store.name)
    search_url = build_search_url(store, identifier)

    try:
        async with browser.new_page() as page:
            logger.debug(f"[{store.name}] Navigating to {search_url}")
            await _settle(page, search_url)

            current_url = page.url
            redirected = current_url != search_url and is_product_page_url(current_url)
            on_product_page = redirected or await _visible(page, store.selectors.product_found)

            if redirected:
                logger.debug(f"[{store.name}] Redirected to product page {current_url}")

            if not on_product_page:
                html = await page.content()
                link = (
                    first_product_link(html, store.selectors.product_link, store.base_url)
                    or first_product_link(html, GENERIC_PRODUCT_LINK_SELECTOR, store.base_url)
                )
                if link:
                    logger.debug(f"[{store.name}] Following product link {link}")
                    await _settle(page, link)
                elif await _visible(page, store.selectors.no_results):
                    logger.info(f"[{store.name}] No results for {identifier}")
                    result.outcome = Outcome.NO_RESULTS
                    return result

            if settings.relevance_check_enabled and not await check_page_relevance(page):
                logger.info(f"[{store.name}] Page for {identifier} is not a fragrance product, skipping")
                result.outcome = Outcome.IRRELEVANT
                return result

            result.page_url = page.url
            result.image_urls = await extract_product_images(page, store, settings.max_images_per_store)
            result.outcome = Outcome.FOUND if result.image_urls else Outcome.EMPTY

    except PlaywrightTimeoutError:
        logger.info(f"[{store.name}] Navigation timed out for {identifier}")
        result.outcome = Outcome.TIMEOUT
    except Exception as e:
        logger.warning(f"[{store.name}] Error scraping {identifier}: {e}")
        result.outcome = Outcome.ERROR
        result.error = StoreScrapeError(store.name, str(e) or type(e).__name__)
    finally:
        metrics.record_store_scrape(store.name, result.outcome)

    return result


def direct_url_store(name: str, url: str) -> StoreConfig:
    """Ad-hoc recipe for a product page URL suggested by the product lookup."""
    return StoreConfig(
        name=name,
        base_url=url,
        search_url_template=url,
        selectors=StoreSelectors(
            product_link="a",
            product_image="img[src*='product'], .product-image img, .gallery img, [data-zoom-image]",
            no_results=".no-results, .not-found",
        ),
        min_width=400,
        min_height=400,
    )


async def scrape_direct_url(browser, name: str, url: str) -> StoreScrapeResult:
    """Collect images straight from a known product page."""
    store = direct_url_store(name, url)
    result = StoreScrapeResult(store_name=name, page_url=url)
    try:
        async with browser.new_page() as page:
            logger.debug(f"[{name}] Navigating to direct URL {url}")
            await _settle(page, url)
            result.image_urls = await extract_product_images(page, store, settings.max_images_per_store)
            result.outcome = Outcome.FOUND if result.image_urls else Outcome.EMPTY
    except PlaywrightTimeoutError:
        result.outcome = Outcome.TIMEOUT
    except Exception as e:
        logger.warning(f"[{name}] Direct URL scrape failed: {e}")
        result.outcome = Outcome.ERROR
        result.error = StoreScrapeError(name, str(e) or type(e).__name__)
    return result
