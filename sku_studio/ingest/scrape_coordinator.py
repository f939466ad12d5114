"""Fan one identifier out over the store catalog and download what was found."""

import asyncio
import io
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

import httpx
from PIL import Image, UnidentifiedImageError

from sku_studio import metrics
from sku_studio.config import settings
from sku_studio.errors import ImageDownloadError, StoreScrapeError
from sku_studio.imaging.probe import probe_image
from sku_studio.imaging.quality import CandidateImage
from sku_studio.ingest.product_lookup import ProductLookup, ProductLookupResult
from sku_studio.ingest.site_scraper import Outcome, StoreScrapeResult, scrape_direct_url, scrape_store
from sku_studio.ingest.store_catalog import StoreConfig, get_active_stores, get_store_by_name, get_store_by_url
from sku_studio.ingest.stealth_browser import USER_AGENTS
from sku_studio.ingest.url_filters import normalize_url
from sku_studio.refine.canvas import OutputMode

logger = logging.getLogger(__name__)

StoreScraper = Callable[[object, StoreConfig, str], Awaitable[StoreScrapeResult]]
DirectScraper = Callable[[object, str, str], Awaitable[StoreScrapeResult]]


@dataclass(frozen=True)
class DownloadFloor:
    """Smallest acceptable download for an output mode."""

    min_dimension: int
    min_bytes: int

    @classmethod
    def for_mode(cls, mode: str) -> "DownloadFloor":
        if mode == OutputMode.COMPRESSED:
            return cls(settings.compressed_min_dimension, settings.compressed_min_bytes)
        return cls(settings.studio_min_dimension, settings.studio_min_bytes)


@dataclass
class ScrapeOutcome:
    """Everything one identifier's scrape produced."""

    identifier: str
    candidates: list[CandidateImage] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    store_results: list[StoreScrapeResult] = field(default_factory=list)
    product: Optional[ProductLookupResult] = None
    unique_urls: int = 0


def _download_headers(url: str) -> dict[str, str]:
    parsed = urlparse(url)
    return {
        "User-Agent": USER_AGENTS[0],
        "Accept": "image/webp,image/apng,image/*,*/*;q=0.8",
        "Referer": f"{parsed.scheme}://{parsed.netloc}/",
    }


def _dimensions(data: bytes) -> Optional[tuple[int, int]]:
    header = probe_image(data)
    if header:
        return header.width, header.height
    try:
        with Image.open(io.BytesIO(data)) as image:
            return image.size
    except (UnidentifiedImageError, OSError, ValueError):
        return None


async def download_image(
    client: httpx.AsyncClient, url: str, store_name: str, floor: DownloadFloor
) -> CandidateImage:
    """
    Fetch one candidate and enforce the download floor.

    Raises:
        ImageDownloadError: malformed URL, HTTP failure, non-image content,
            too small, or unreadable dimensions
    """
    try:
        response = await client.get(url, headers=_download_headers(url), follow_redirects=True)
    except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
        raise ImageDownloadError(url, f"{type(e).__name__}: {e}") from e

    if response.status_code != 200:
        raise ImageDownloadError(url, f"HTTP {response.status_code}")

    content_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
    if "image" not in content_type:
        raise ImageDownloadError(url, f"non-image content {content_type}")

    data = response.content
    if len(data) < floor.min_bytes:
        raise ImageDownloadError(url, f"too small ({len(data)} bytes)")

    dims = _dimensions(data)
    if dims is None:
        raise ImageDownloadError(url, "unknown dimensions")
    width, height = dims
    if width < floor.min_dimension or height < floor.min_dimension:
        raise ImageDownloadError(url, f"too small ({width}x{height})")

    return CandidateImage(
        source_url=url,
        store_name=store_name,
        data=data,
        content_type=content_type,
        width=width,
        height=height,
    )


class ScrapeCoordinator:
    """Runs every store for an identifier in fixed-size concurrent batches.

    Batch N+1 starts only after every scrape of batch N has settled. URLs
    from all stores are de-duplicated after normalization and each unique
    URL is downloaded at most once.
    """

    def __init__(
        self,
        browser,
        stores: Optional[list[StoreConfig]] = None,
        lookup: Optional[ProductLookup] = None,
        store_scraper: StoreScraper = scrape_store,
        direct_scraper: DirectScraper = scrape_direct_url,
        output_mode: Optional[str] = None,
        batch_size: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.browser = browser
        self.stores = stores if stores is not None else get_active_stores()
        self.lookup = lookup
        self.store_scraper = store_scraper
        self.direct_scraper = direct_scraper
        self.floor = DownloadFloor.for_mode(output_mode or settings.output_mode)
        self.batch_size = max(1, batch_size or settings.store_batch_size)
        self._transport = transport

    def plan_stores(self, product: Optional[ProductLookupResult]) -> list[StoreConfig]:
        """Catalog stores matched by the lookup first, then the rest of the active stores."""
        if product is None or not product.matched_stores:
            return list(self.stores)

        active = {store.name for store in self.stores}
        ordered: list[StoreConfig] = []
        for name in product.matched_stores:
            store = get_store_by_name(name)
            if store and store.name in active and store not in ordered:
                ordered.append(store)
        ordered.extend(store for store in self.stores if store not in ordered)
        return ordered

    async def _run_batches(self, identifier: str, stores: list[StoreConfig]) -> list[StoreScrapeResult]:
        results: list[StoreScrapeResult] = []
        total_batches = (len(stores) + self.batch_size - 1) // self.batch_size
        for start in range(0, len(stores), self.batch_size):
            batch = stores[start:start + self.batch_size]
            logger.info(
                f"[{identifier}] Batch {start // self.batch_size + 1}/{total_batches}: "
                f"{', '.join(s.name for s in batch)}"
            )
            settled = await asyncio.gather(
                *(self.store_scraper(self.browser, store, identifier) for store in batch),
                return_exceptions=True,
            )
            for store, outcome in zip(batch, settled):
                if isinstance(outcome, Exception):
                    logger.warning(f"[{store.name}] Scraper raised: {outcome}")
                    outcome = StoreScrapeResult(
                        store_name=store.name,
                        outcome=Outcome.ERROR,
                        error=StoreScrapeError(store.name, str(outcome) or type(outcome).__name__),
                    )
                elif isinstance(outcome, BaseException):
                    raise outcome
                results.append(outcome)
        return results

    async def _run_direct_urls(self, identifier: str, product: ProductLookupResult) -> list[StoreScrapeResult]:
        suggestions = product.suggested_stores[:settings.direct_url_limit]
        if not suggestions:
            return []
        logger.info(f"[{identifier}] Scraping {len(suggestions)} suggested product pages directly")
        tasks = []
        for suggestion in suggestions:
            catalog_store = get_store_by_url(suggestion.url)
            name = catalog_store.name if catalog_store else suggestion.name
            tasks.append(self.direct_scraper(self.browser, name, suggestion.url))
        settled = await asyncio.gather(*tasks, return_exceptions=True)
        results = []
        for outcome in settled:
            if isinstance(outcome, Exception):
                logger.warning(f"[{identifier}] Direct URL scrape raised: {outcome}")
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            results.append(outcome)
        return results

    async def download_all(self, pairs: list[tuple[str, str]]) -> list[CandidateImage]:
        """Download (url, store) pairs concurrently, keeping discovery order."""
        semaphore = asyncio.Semaphore(settings.download_concurrency)

        async def fetch(client: httpx.AsyncClient, url: str, store_name: str) -> Optional[CandidateImage]:
            async with semaphore:
                try:
                    candidate = await download_image(client, url, store_name, self.floor)
                except ImageDownloadError as e:
                    logger.debug(str(e))
                    metrics.record_download("rejected")
                    return None
                metrics.record_download("ok")
                return candidate

        async with httpx.AsyncClient(
            timeout=settings.download_timeout_seconds, transport=self._transport
        ) as client:
            downloaded = await asyncio.gather(*(fetch(client, url, store) for url, store in pairs))
        return [candidate for candidate in downloaded if candidate is not None]

    async def scrape_identifier(self, identifier: str) -> ScrapeOutcome:
        """
        Scrape every planned store for ``identifier`` and download the results.

        Store failures never raise; they are collected as labelled strings.

        Args:
            identifier: SKU/UPC/EAN

        Returns:
            ScrapeOutcome with downloaded candidates in discovery order
        """
        outcome = ScrapeOutcome(identifier=identifier)
        store_results: list[StoreScrapeResult] = []

        if self.lookup is not None and self.lookup.enabled:
            outcome.product = await self.lookup.lookup(identifier)
            if outcome.product.found:
                store_results.extend(await self._run_direct_urls(identifier, outcome.product))

        stores = self.plan_stores(outcome.product)
        store_results.extend(await self._run_batches(identifier, stores))
        outcome.store_results = store_results

        seen: set[str] = set()
        pairs: list[tuple[str, str]] = []
        for result in store_results:
            if result.error is not None:
                outcome.errors.append(str(result.error))
            for url in result.image_urls:
                key = normalize_url(url)
                if key in seen:
                    continue
                seen.add(key)
                pairs.append((key, result.store_name))
        outcome.unique_urls = len(pairs)

        logger.info(
            f"[{identifier}] {len(pairs)} unique image URLs from "
            f"{sum(1 for r in store_results if r.image_urls)}/{len(store_results)} stores"
        )
        outcome.candidates = await self.download_all(pairs)
        logger.info(f"[{identifier}] {len(outcome.candidates)}/{len(pairs)} downloads passed the size floor")
        return outcome
