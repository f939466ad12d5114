"""Rotating pool of residential egress proxies from the proxy provider API."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from sku_studio.config import settings

logger = logging.getLogger(__name__)

ACTIVE_PROVIDER_STATUSES = (1, 2)
MAX_PAGES = 20


@dataclass
class ProxyEndpoint:
    """Proxy endpoint as published by the provider."""

    id: int
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None
    country_code: str = ""
    active: bool = True

    @property
    def url(self) -> str:
        """Get proxy URL for httpx."""
        if self.username and self.password:
            return f"http://{self.username}:{self.password}@{self.host}:{self.port}"
        return f"http://{self.host}:{self.port}"

    @property
    def playwright_config(self) -> dict:
        """Get proxy config for Playwright."""
        config = {"server": f"http://{self.host}:{self.port}"}
        if self.username:
            config["username"] = self.username
        if self.password:
            config["password"] = self.password
        return config

    @classmethod
    def from_provider(cls, raw: dict) -> Optional["ProxyEndpoint"]:
        address = str(raw.get("proxy") or "")
        host, _, port = address.rpartition(":")
        if not host or not port.isdigit():
            return None
        return cls(
            id=int(raw.get("id") or 0),
            host=host,
            port=int(port),
            username=raw.get("login") or None,
            password=raw.get("password") or None,
            country_code=str(raw.get("countryCode") or "").upper(),
            active=raw.get("status") in ACTIVE_PROVIDER_STATUSES,
        )


class ProxyPool:
    """Cached, rotating proxy pool.

    The list is refreshed from the provider at most once per TTL. Rotation
    keeps two independent cursors, one over preferred-country endpoints and
    one over the rest, so drawing from one pool never skips the other.
    """

    def __init__(
        self,
        provider_url: str = "",
        api_key: str = "",
        preferred_countries: Optional[list[str]] = None,
        cache_ttl_seconds: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.provider_url = provider_url or settings.proxy_provider_url
        self.api_key = api_key or settings.proxy_provider_api_key
        if preferred_countries is None:
            preferred_countries = settings.proxy_preferred_countries.split(",")
        self.preferred_countries = {c.strip().upper() for c in preferred_countries if c.strip()}
        self.cache_ttl_seconds = (
            cache_ttl_seconds if cache_ttl_seconds is not None else settings.proxy_cache_ttl_seconds
        )
        self._transport = transport

        self._proxies: list[ProxyEndpoint] = []
        self._fetched_at: float = 0.0
        self._preferred_index = 0
        self._other_index = 0
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _is_fresh(self) -> bool:
        return bool(self._proxies) and (time.monotonic() - self._fetched_at) < self.cache_ttl_seconds

    async def _fetch_all_pages(self) -> list[ProxyEndpoint]:
        endpoints: list[ProxyEndpoint] = []
        async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
            page, page_count = 1, 1
            while page <= page_count and page <= MAX_PAGES:
                response = await client.get(
                    self.provider_url, params={"apiKey": self.api_key, "page": page}
                )
                response.raise_for_status()
                payload = response.json()
                if not payload.get("success"):
                    raise ValueError(f"Proxy provider returned unsuccessful response on page {page}")

                message = payload.get("message") or {}
                for raw in message.get("proxies") or []:
                    endpoint = ProxyEndpoint.from_provider(raw)
                    if endpoint and endpoint.active:
                        endpoints.append(endpoint)

                page_count = int((message.get("pagination") or {}).get("pageCount") or 1)
                page += 1
        return endpoints

    async def refresh(self, force: bool = False) -> list[ProxyEndpoint]:
        """Reload the pool when stale; keeps the previous list if the provider fails."""
        async with self._lock:
            if not force and self._is_fresh():
                return self._proxies
            if not self.enabled:
                return self._proxies

            try:
                proxies = await self._fetch_all_pages()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Failed to refresh proxy list, keeping {len(self._proxies)} cached: {e}")
                return self._proxies

            self._proxies = proxies
            self._fetched_at = time.monotonic()
            self._preferred_index = 0
            self._other_index = 0
            logger.info(
                f"Loaded {len(proxies)} active proxies "
                f"({len(self._preferred())} in preferred countries)"
            )
            return self._proxies

    def _preferred(self) -> list[ProxyEndpoint]:
        return [p for p in self._proxies if p.country_code in self.preferred_countries]

    def _others(self) -> list[ProxyEndpoint]:
        return [p for p in self._proxies if p.country_code not in self.preferred_countries]

    async def get_next_proxy(self, prefer_preferred: bool = True) -> Optional[ProxyEndpoint]:
        """
        Next proxy in rotation.

        Args:
            prefer_preferred: Draw from the preferred-country pool when it is non-empty

        Returns:
            ProxyEndpoint, or None when the pool is empty
        """
        await self.refresh()
        async with self._lock:
            preferred, others = self._preferred(), self._others()

            if prefer_preferred and preferred:
                proxy = preferred[self._preferred_index % len(preferred)]
                self._preferred_index += 1
                return proxy
            if others:
                proxy = others[self._other_index % len(others)]
                self._other_index += 1
                return proxy
            if preferred:
                proxy = preferred[self._preferred_index % len(preferred)]
                self._preferred_index += 1
                return proxy

            logger.warning("No proxies available")
            return None

    async def get_stats(self) -> dict:
        await self.refresh()
        return {
            "total": len(self._proxies),
            "preferred": len(self._preferred()),
            "other": len(self._others()),
        }
