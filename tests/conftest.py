"""Shared fixtures: a throwaway SQLite database, fake browser pages and synthetic images."""

import io
from contextlib import asynccontextmanager
from decimal import Decimal

import numpy as np
import pytest
import pytest_asyncio
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from sku_studio.config import settings
from sku_studio.db.models import Base
from sku_studio.db.repository import OrderRepository
from sku_studio.storage.object_store import LocalObjectStorage


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    """No real sleeps or network lookups in tests."""
    monkeypatch.setattr(settings, "page_settle_seconds", 0)
    monkeypatch.setattr(settings, "db_retry_base_delay_seconds", 0)
    monkeypatch.setattr(settings, "product_lookup_enabled", False)
    monkeypatch.setattr(settings, "replicate_api_token", "")
    monkeypatch.setattr(settings, "price_per_identifier", Decimal("10.00"))


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def repository(session_factory):
    return OrderRepository(session_factory)


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(tmp_path / "storage")


def make_noise_image(width: int, height: int, fmt: str = "PNG", seed: int = 0) -> bytes:
    """Random RGB pixels: large files, detailed, no watermark structure."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    out = io.BytesIO()
    Image.fromarray(pixels, "RGB").save(out, format=fmt)
    return out.getvalue()


def make_solid_image(width: int, height: int, color=(200, 40, 40), fmt: str = "PNG") -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (width, height), color).save(out, format=fmt)
    return out.getvalue()


class FakePage:
    """The slice of a Playwright page the scrapers use."""

    def __init__(self, html="", redirects=None, visible=(), page_text=None, scanned=(), goto_error=None):
        self.html = html
        self.redirects = redirects or {}
        self.visible = set(visible)
        self.page_text = page_text if page_text is not None else {"title": "Eau de Parfum Spray"}
        self.scanned = list(scanned)
        self.goto_error = goto_error
        self.url = "about:blank"
        self.visited: list[str] = []

    async def goto(self, url, wait_until=None, timeout=None):
        if self.goto_error is not None:
            raise self.goto_error
        self.visited.append(url)
        self.url = self.redirects.get(url, url)

    async def is_visible(self, selector):
        return selector in self.visible

    async def content(self):
        return self.html

    async def evaluate(self, script, arg=None):
        if arg is not None:
            return self.scanned
        return self.page_text


class FakeBrowser:
    """Stands in for BrowserSession; every new_page() yields the same FakePage."""

    def __init__(self, page=None):
        self.page = page or FakePage()
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True

    @asynccontextmanager
    async def new_page(self):
        yield self.page
