"""Web-search-backed product identification.

Asks an OpenAI-compatible search model which product an identifier belongs to
and where it is sold. Used to seed scraping; every failure degrades to an empty
result.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlparse

from openai import AsyncOpenAI, OpenAIError

from sku_studio.config import settings
from sku_studio.ingest.store_catalog import STORE_CATALOG

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful assistant that identifies fragrance products by their SKU/EAN/UPC "
    "codes and finds where they can be purchased online. Always provide accurate product "
    "information and real store URLs."
)

LOOKUP_PROMPT = """I have a fragrance/perfume product with SKU/EAN/UPC: {identifier}

Please identify:
1. The exact product name and brand
2. The top 5 online stores where this product can be purchased

Format your response EXACTLY like this:
PRODUCT_NAME: [full product name]
BRAND: [brand name]
DESCRIPTION: [one sentence description]
STORES:
1. [Store Name] - [URL]
2. [Store Name] - [URL]
3. [Store Name] - [URL]
4. [Store Name] - [URL]
5. [Store Name] - [URL]

If you cannot identify the product, respond with:
PRODUCT_NOT_FOUND: true"""

_STORE_LINE = re.compile(r"\d+\.\s*([^-\n]+?)\s*-\s*(https?://[^\s\n]+)", re.IGNORECASE)


@dataclass
class SuggestedStore:
    name: str
    url: str
    matched_store: Optional[str] = None  # Catalog store name


@dataclass
class ProductLookupResult:
    product_name: str = ""
    brand: str = ""
    description: str = ""
    suggested_stores: list[SuggestedStore] = field(default_factory=list)
    raw_response: str = ""

    @property
    def found(self) -> bool:
        return bool(self.product_name)

    @property
    def matched_stores(self) -> list[str]:
        names: list[str] = []
        for store in self.suggested_stores:
            if store.matched_store and store.matched_store not in names:
                names.append(store.matched_store)
        return names


def _bare_host(url: str) -> str:
    host = urlparse(url).netloc.lower()
    return host[4:] if host.startswith("www.") else host


def match_catalog_store(name: str, url: str) -> Optional[str]:
    """Catalog store matching a suggested store by name or domain."""
    wanted = name.strip().lower()
    host = _bare_host(url)
    for store in STORE_CATALOG:
        catalog_name = store.name.lower()
        if wanted and (catalog_name in wanted or wanted in catalog_name):
            return store.name
        if host and (host == store.domain or store.domain in host or host in store.domain):
            return store.name
    return None


def parse_lookup_response(content: str) -> ProductLookupResult:
    """Parse the line-oriented answer format requested by LOOKUP_PROMPT."""
    result = ProductLookupResult(raw_response=content)
    if "PRODUCT_NOT_FOUND: true" in content or "cannot identify" in content.lower():
        return result

    for attr, label in (("product_name", "PRODUCT_NAME"), ("brand", "BRAND"), ("description", "DESCRIPTION")):
        match = re.search(rf"{label}:\s*(.+)", content, re.IGNORECASE)
        if match:
            setattr(result, attr, match.group(1).strip())

    for match in _STORE_LINE.finditer(content):
        name = match.group(1).strip()
        url = match.group(2).strip().rstrip(").,")
        result.suggested_stores.append(
            SuggestedStore(name=name, url=url, matched_store=match_catalog_store(name, url))
        )

    return result


class ProductLookup:
    """Client for the product identification model."""

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self._client = client

    @property
    def enabled(self) -> bool:
        return self._client is not None or (
            settings.product_lookup_enabled and bool(settings.product_lookup_api_key)
        )

    def _get_client(self) -> AsyncOpenAI:
        """Get or create the API client."""
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=settings.product_lookup_api_key,
                base_url=settings.product_lookup_base_url,
                timeout=settings.product_lookup_timeout_seconds,
                max_retries=1,
            )
        return self._client

    async def lookup(self, identifier: str) -> ProductLookupResult:
        """
        Identify a product and where it is sold.

        Args:
            identifier: SKU/UPC/EAN

        Returns:
            ProductLookupResult, empty when disabled or on any API error
        """
        if not self.enabled:
            logger.debug("Product lookup disabled, skipping")
            return ProductLookupResult(raw_response="disabled")

        try:
            response = await self._get_client().chat.completions.create(
                model=settings.product_lookup_model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": LOOKUP_PROMPT.format(identifier=identifier)},
                ],
                max_tokens=1000,
                temperature=0.1,
            )
        except OpenAIError as e:
            logger.warning(f"Product lookup failed for {identifier}: {e}")
            return ProductLookupResult(raw_response=f"error: {e}")

        content = (response.choices[0].message.content or "") if response.choices else ""
        result = parse_lookup_response(content)
        if result.found:
            logger.info(
                f"Lookup {identifier}: {result.product_name} by {result.brand}; "
                f"matched {len(result.matched_stores)}/{len(result.suggested_stores)} suggested stores"
            )
        else:
            logger.info(f"Lookup could not identify {identifier}")
        return result
