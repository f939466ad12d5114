"""Tests for the super-resolution client."""

import json

import httpx
import pytest

from conftest import make_noise_image
from sku_studio.errors import UpscaleError
from sku_studio.refine.upscaler import ReplicateUpscaler, choose_upscale_factor, parse_retry_after

API_URL = "https://replicate.test/v1/predictions"
SOURCE_URL = "https://cdn.example.com/products/bottle.jpg"
OUTPUT_URL = "https://delivery.replicate.test/out/upscaled.png"


def make_upscaler(handler, **overrides):
    options = dict(
        api_token="token",
        model_version="esrgan-v1",
        api_url=API_URL,
        max_attempts=3,
        attempt_timeout=5,
        rate_limit_wait=0,
        poll_interval=0,
        transport=httpx.MockTransport(handler),
    )
    options.update(overrides)
    return ReplicateUpscaler(**options)


@pytest.mark.parametrize(
    "width, height, factor",
    [(2400, 2000, 0), (1500, 1500, 0), (1200, 1000, 2), (999, 3000, 4), (300, 300, 4)],
)
def test_choose_upscale_factor(width, height, factor):
    assert choose_upscale_factor(width, height) == factor


def test_parse_retry_after():
    request = httpx.Request("POST", API_URL)
    assert parse_retry_after(httpx.Response(429, headers={"Retry-After": "7"}, request=request)) == 7.0
    throttled = httpx.Response(
        429, json={"detail": "Request was throttled. Expected available in 12 seconds."}, request=request
    )
    assert parse_retry_after(throttled) == 12.0
    assert parse_retry_after(httpx.Response(429, text="slow down", request=request)) is None


@pytest.mark.asyncio
async def test_rate_limit_then_success():
    upscaled = make_noise_image(1200, 1200, seed=4)
    posts = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            posts.append(json.loads(request.content))
            if len(posts) == 1:
                return httpx.Response(429, headers={"Retry-After": "0"})
            return httpx.Response(
                201,
                json={"id": "p1", "status": "starting", "urls": {"get": f"{API_URL}/p1"}},
            )
        if str(request.url) == f"{API_URL}/p1":
            assert request.headers["Authorization"] == "Token token"
            return httpx.Response(200, json={"id": "p1", "status": "succeeded", "output": OUTPUT_URL})
        if str(request.url) == OUTPUT_URL:
            return httpx.Response(200, content=upscaled)
        return httpx.Response(404)

    data = await make_upscaler(handler).upscale(SOURCE_URL, 4)

    assert data == upscaled
    assert len(posts) == 2
    assert posts[1]["input"] == {"image": SOURCE_URL, "scale": 4, "face_enhance": False}
    assert posts[1]["version"] == "esrgan-v1"


@pytest.mark.asyncio
async def test_rejected_request_is_not_retried():
    posts = []

    def handler(request: httpx.Request) -> httpx.Response:
        posts.append(request)
        return httpx.Response(422, json={"detail": "invalid image"})

    with pytest.raises(UpscaleError, match="rejected"):
        await make_upscaler(handler).upscale(SOURCE_URL, 2)
    assert len(posts) == 1


@pytest.mark.asyncio
async def test_failed_prediction_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"id": "p2", "status": "failed", "error": "CUDA out of memory"})

    with pytest.raises(UpscaleError, match="CUDA out of memory"):
        await make_upscaler(handler).upscale(SOURCE_URL, 2)


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "0"})

    with pytest.raises(UpscaleError, match="after 2 attempts"):
        await make_upscaler(handler, max_attempts=2).upscale(SOURCE_URL, 4)


@pytest.mark.asyncio
async def test_disabled_without_token():
    upscaler = make_upscaler(lambda request: httpx.Response(500), api_token="")
    assert not upscaler.enabled
    with pytest.raises(UpscaleError, match="disabled"):
        await upscaler.upscale(SOURCE_URL, 4)


@pytest.mark.asyncio
async def test_non_json_prediction_raises_upscale_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, text="<html>bad gateway</html>")

    with pytest.raises(UpscaleError, match="Malformed prediction response"):
        await make_upscaler(handler).upscale(SOURCE_URL, 4)


@pytest.mark.asyncio
async def test_unexpected_poll_payload_raises_upscale_error():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"id": "p3", "status": "processing", "urls": ["not", "a", "dict"]})
        return httpx.Response(200, json=["queued"])

    with pytest.raises(UpscaleError, match="Unexpected prediction payload"):
        await make_upscaler(handler).upscale(SOURCE_URL, 4)
