"""Product image URL extraction from a loaded product page.

Three strategies run in order and their results are merged:

1. the store's own image selector (srcset aware)
2. generic gallery selectors shared by common e-commerce templates
3. a scan of every rendered ``<img>`` above a size threshold

Strategies 1 and 2 parse the page HTML with selectolax; strategy 3 needs
layout information and runs inside the page.
"""

import logging
from typing import Optional
from urllib.parse import urljoin

from selectolax.parser import HTMLParser, Node

from sku_studio.ingest.store_catalog import StoreConfig
from sku_studio.ingest.url_filters import clean_candidate_urls, is_fetchable, widest_srcset_entry

logger = logging.getLogger(__name__)

GENERIC_IMAGE_SELECTORS = [
    ".product-image img", ".product-gallery img", ".product-media img", ".pdp-image img",
    ".main-image img", "#main-image", "#product-image", ".gallery-image img", ".zoom-image img",
    ".woocommerce-product-gallery__image img", ".fotorama__stage__frame img",
    ".slick-slide img", ".swiper-slide img", ".carousel-item img",
    "[data-zoom-image]", "[data-large_image]", "[data-full-image]", "[data-original]",
    "picture source[srcset]", "picture img",
    'img[width="500"]', 'img[width="600"]', 'img[width="700"]', 'img[width="800"]',
]

STORE_ATTRIBUTE_ORDER = ("data-zoom-image", "data-large_image", "data-src", "src")
GENERIC_ATTRIBUTE_ORDER = (
    "data-zoom-image", "data-large_image", "data-full-image", "data-original", "data-src", "src",
)

SCAN_MIN_NATURAL_PX = 200
SCAN_MIN_RENDERED_PX = 150

# Runs in the page: URLs of images that are large both intrinsically and on screen
LARGE_IMAGE_SCRIPT = """
([minNatural, minRendered]) => Array.from(document.querySelectorAll('img'))
  .filter((img) => {
    const width = img.naturalWidth || parseInt(img.getAttribute('width') || '0', 10);
    const height = img.naturalHeight || parseInt(img.getAttribute('height') || '0', 10);
    if (width < minNatural && height < minNatural) return false;
    const rect = img.getBoundingClientRect();
    if (rect.width < minRendered && rect.height < minRendered) return false;
    return true;
  })
  .map((img) => img.getAttribute('data-zoom-image')
    || img.getAttribute('data-large_image')
    || img.getAttribute('data-src')
    || img.src
    || '')
  .filter((url) => url && (url.startsWith('http') || url.startsWith('//')))
"""


def split_selector_list(selector: str) -> list[str]:
    return [part.strip() for part in selector.split(",") if part.strip()]


def _attribute_url(node: Node, attribute_order: tuple[str, ...], prefer_srcset: bool) -> str:
    attrs = node.attributes
    if prefer_srcset and attrs.get("srcset"):
        url = widest_srcset_entry(attrs["srcset"] or "")
        if url:
            return url
    for name in attribute_order:
        value = attrs.get(name)
        if value:
            return value.strip()
    return ""


def _absolute(url: str, page_url: Optional[str]) -> str:
    if not url or url.startswith(("http", "//", "data:")) or not page_url:
        return url
    return urljoin(page_url, url)


def _collect(
    parser: HTMLParser,
    selectors: list[str],
    attribute_order: tuple[str, ...],
    page_url: Optional[str],
    always_srcset: bool = False,
) -> list[str]:
    urls: list[str] = []
    for selector in selectors:
        try:
            nodes = parser.css(selector)
        except Exception as e:
            # Unsupported pseudo-classes raise from the selector engine
            logger.debug(f"Selector {selector!r} not usable: {e}")
            continue
        for node in nodes:
            prefer_srcset = always_srcset or node.tag == "source"
            url = _absolute(_attribute_url(node, attribute_order, prefer_srcset), page_url)
            if is_fetchable(url):
                urls.append(url)
    return urls


def extract_from_html(
    html: str,
    store: StoreConfig,
    page_url: Optional[str] = None,
    include_generic: bool = True,
) -> list[str]:
    """Raw image URLs from the store selector and, optionally, generic selectors."""
    parser = HTMLParser(html)
    urls = _collect(
        parser,
        split_selector_list(store.selectors.product_image),
        STORE_ATTRIBUTE_ORDER,
        page_url,
        always_srcset=True,
    )
    logger.debug(f"[{store.name}] store selector found {len(urls)} images")
    if include_generic:
        urls.extend(_collect(parser, GENERIC_IMAGE_SELECTORS, GENERIC_ATTRIBUTE_ORDER, page_url))
    return urls


async def scan_large_images(page, store: StoreConfig) -> list[str]:
    """Strategy 3; returns nothing if the page cannot be evaluated."""
    try:
        urls = await page.evaluate(LARGE_IMAGE_SCRIPT, [SCAN_MIN_NATURAL_PX, SCAN_MIN_RENDERED_PX])
    except Exception as e:
        logger.debug(f"[{store.name}] large image scan failed: {e}")
        return []
    return [url for url in urls or [] if store.accepts_scanned_url(url)]


async def extract_product_images(page, store: StoreConfig, limit: int) -> list[str]:
    """Merge all three strategies into at most ``limit`` cleaned, unique URLs."""
    html = await page.content()
    raw_urls = extract_from_html(html, store, page_url=page.url)
    raw_urls.extend(await scan_large_images(page, store))

    urls = clean_candidate_urls(raw_urls, limit=limit)
    logger.info(f"[{store.name}] {len(urls)} product images after filtering ({len(raw_urls)} raw)")
    return urls
