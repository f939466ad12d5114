"""Browser process owned by one scrape job."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from playwright.async_api import Browser, Page, Playwright, async_playwright

from sku_studio.config import settings
from sku_studio.ingest.proxy_manager import ProxyEndpoint, ProxyPool
from sku_studio.ingest.stealth_browser import LAUNCH_ARGS, apply_stealth, get_stealth_context_options

logger = logging.getLogger(__name__)


class BrowserSession:
    """One Chromium process shared by every page of a job.

    Use as an async context manager; the process is closed on exit whether
    the job finished, failed or was cancelled. Each call to ``new_page``
    gets its own browser context so a failing tab cannot disturb siblings.
    """

    def __init__(
        self,
        headless: Optional[bool] = None,
        proxy_pool: Optional[ProxyPool] = None,
        use_proxy: Optional[bool] = None,
    ):
        self.headless = settings.headless if headless is None else headless
        self.use_proxy = settings.use_proxy if use_proxy is None else use_proxy
        self.proxy_pool = proxy_pool
        self.proxy: Optional[ProxyEndpoint] = None
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def __aenter__(self) -> "BrowserSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        if self.use_proxy and self.proxy_pool is not None and self.proxy_pool.enabled:
            self.proxy = await self.proxy_pool.get_next_proxy()

        self._playwright = await async_playwright().start()
        launch_kwargs = {"headless": self.headless, "args": LAUNCH_ARGS}
        if self.proxy:
            launch_kwargs["proxy"] = self.proxy.playwright_config

        try:
            self._browser = await self._playwright.chromium.launch(**launch_kwargs)
        except Exception:
            await self._playwright.stop()
            self._playwright = None
            raise

        if self.proxy:
            logger.info(f"Launched browser via proxy {self.proxy.host}:{self.proxy.port} ({self.proxy.country_code})")
        else:
            logger.info("Launched browser without proxy")

    async def close(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as e:
                logger.warning(f"Error closing browser: {e}")
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
            logger.info("Browser closed")

    @asynccontextmanager
    async def new_page(self) -> AsyncIterator[Page]:
        """Yield a fresh stealth page in its own context, closed afterwards."""
        if self._browser is None:
            raise RuntimeError("BrowserSession is not started")

        context = await self._browser.new_context(**get_stealth_context_options())
        try:
            await apply_stealth(context)
            page = await context.new_page()
            page.set_default_navigation_timeout(settings.navigation_timeout_seconds * 1000)
            yield page
        finally:
            await context.close()
