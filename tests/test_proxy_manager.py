"""Tests for the rotating proxy pool."""

import httpx
import pytest

from sku_studio.ingest.proxy_manager import ProxyEndpoint, ProxyPool

PAGES = {
    "1": {
        "success": True,
        "message": {
            "proxies": [
                {"id": 1, "proxy": "10.0.0.1:8080", "login": "u", "password": "p", "countryCode": "us", "status": 1},
                {"id": 2, "proxy": "10.0.0.2:8080", "countryCode": "de", "status": 2},
                {"id": 3, "proxy": "10.0.0.3:8080", "countryCode": "us", "status": 0},
            ],
            "pagination": {"pageCount": 2},
        },
    },
    "2": {
        "success": True,
        "message": {
            "proxies": [
                {"id": 4, "proxy": "10.0.0.4:8080", "countryCode": "CA", "status": 1},
                {"id": 5, "proxy": "not-an-address", "countryCode": "US", "status": 1},
            ],
            "pagination": {"pageCount": 2},
        },
    },
}


class ProviderStub:
    def __init__(self):
        self.failing = False
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failing:
            return httpx.Response(500)
        return httpx.Response(200, json=PAGES[request.url.params["page"]])


def make_pool(stub, ttl=3600):
    return ProxyPool(
        provider_url="https://proxy-provider.test/api/proxies",
        api_key="key",
        preferred_countries=["US", "CA"],
        cache_ttl_seconds=ttl,
        transport=httpx.MockTransport(stub),
    )


def test_endpoint_from_provider():
    endpoint = ProxyEndpoint.from_provider(PAGES["1"]["message"]["proxies"][0])
    assert endpoint.url == "http://u:p@10.0.0.1:8080"
    assert endpoint.playwright_config == {"server": "http://10.0.0.1:8080", "username": "u", "password": "p"}
    assert endpoint.country_code == "US"
    assert ProxyEndpoint.from_provider({"proxy": "nohost"}) is None


@pytest.mark.asyncio
async def test_refresh_reads_every_page_and_drops_inactive():
    stub = ProviderStub()
    pool = make_pool(stub)

    proxies = await pool.refresh()

    assert [p.id for p in proxies] == [1, 2, 4]
    assert [r.url.params["page"] for r in stub.requests] == ["1", "2"]
    assert await pool.get_stats() == {"total": 3, "preferred": 2, "other": 1}
    # Cached within the TTL
    assert len(stub.requests) == 2


@pytest.mark.asyncio
async def test_rotation_keeps_independent_cursors():
    pool = make_pool(ProviderStub())

    drawn = [
        await pool.get_next_proxy(),
        await pool.get_next_proxy(prefer_preferred=False),
        await pool.get_next_proxy(),
        await pool.get_next_proxy(prefer_preferred=False),
        await pool.get_next_proxy(),
    ]

    assert [p.id for p in drawn] == [1, 2, 4, 2, 1]


@pytest.mark.asyncio
async def test_failed_refresh_keeps_cached_list():
    stub = ProviderStub()
    pool = make_pool(stub, ttl=0)
    await pool.refresh()

    stub.failing = True
    proxies = await pool.refresh(force=True)

    assert [p.id for p in proxies] == [1, 2, 4]
    assert (await pool.get_next_proxy()).id == 1
