"""Neural super-resolution through the Replicate predictions API (Real-ESRGAN)."""

import asyncio
import logging
import re
from typing import Optional

import httpx

from sku_studio import metrics
from sku_studio.config import settings
from sku_studio.errors import UpscaleError, UpscaleRateLimitedError

logger = logging.getLogger(__name__)

RETRY_STEP_SECONDS = 5.0
TERMINAL_FAILURES = ("failed", "canceled")

_THROTTLE_HINT = re.compile(r"available in (\d+(?:\.\d+)?) second", re.IGNORECASE)


def choose_upscale_factor(width: int, height: int) -> int:
    """
    Super-resolution factor for an image, 0 meaning leave it as is.

    Short side >= 2000px: 0. Short side >= 1000px: 0 when already over 2MP,
    else 2. Anything smaller: 4.
    """
    short_side = min(width, height)
    if short_side >= 2000:
        return 0
    if short_side >= 1000:
        return 0 if width * height > 2_000_000 else 2
    return 4


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    """Seconds to wait from a 429: Retry-After header, else the throttle detail text."""
    header = response.headers.get("Retry-After")
    if header:
        try:
            return float(header)
        except ValueError:
            pass
    try:
        detail = str(response.json().get("detail") or "")
    except (ValueError, AttributeError):
        detail = response.text
    match = _THROTTLE_HINT.search(detail)
    return float(match.group(1)) if match else None


def _prediction_payload(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError as e:
        raise UpscaleError(f"Malformed prediction response: {response.text[:200]!r}") from e
    if not isinstance(payload, dict):
        raise UpscaleError(f"Unexpected prediction payload: {type(payload).__name__}")
    return payload


class ReplicateUpscaler:
    """Bounded-retry client for a Real-ESRGAN model on Replicate.

    Each attempt (submit, poll, download) runs under its own hard ceiling.
    Rate limits and transient failures are retried; a rejected request or a
    failed prediction is not.
    """

    def __init__(
        self,
        api_token: Optional[str] = None,
        model_version: Optional[str] = None,
        api_url: Optional[str] = None,
        max_attempts: Optional[int] = None,
        attempt_timeout: Optional[float] = None,
        rate_limit_wait: Optional[float] = None,
        poll_interval: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_token = settings.replicate_api_token if api_token is None else api_token
        self.model_version = model_version or settings.replicate_model_version
        self.api_url = (api_url or settings.replicate_api_url).rstrip("/")
        self.max_attempts = max_attempts or settings.upscale_max_attempts
        self.attempt_timeout = attempt_timeout or settings.upscale_attempt_timeout_seconds
        self.rate_limit_wait = (
            settings.upscale_rate_limit_wait_seconds if rate_limit_wait is None else rate_limit_wait
        )
        self.poll_interval = (
            settings.upscale_poll_interval_seconds if poll_interval is None else poll_interval
        )
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_token)

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Token {self.api_token}", "Content-Type": "application/json"}

    async def upscale(self, image_url: str, scale: int) -> bytes:
        """
        Upscale the image at ``image_url`` by ``scale``.

        Args:
            image_url: Publicly reachable image URL (or data URI)
            scale: 2 or 4

        Returns:
            Upscaled image bytes

        Raises:
            UpscaleError: disabled, rejected, failed, or out of attempts
        """
        if not self.enabled:
            raise UpscaleError("Upscaling disabled: no API token configured")

        last_error: Optional[Exception] = None
        async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
            for attempt in range(self.max_attempts):
                if attempt > 0:
                    if isinstance(last_error, UpscaleRateLimitedError) and last_error.retry_after is not None:
                        wait = last_error.retry_after
                    else:
                        wait = self.rate_limit_wait + RETRY_STEP_SECONDS * attempt
                    logger.info(f"Upscale retry {attempt}/{self.max_attempts - 1} in {wait:.1f}s")
                    await asyncio.sleep(wait)

                try:
                    data = await asyncio.wait_for(
                        self._attempt(client, image_url, scale), timeout=self.attempt_timeout
                    )
                except UpscaleRateLimitedError as e:
                    metrics.record_upscale("rate_limited")
                    logger.warning(f"Upscale rate limited (attempt {attempt + 1}/{self.max_attempts})")
                    last_error = e
                    continue
                except asyncio.TimeoutError:
                    metrics.record_upscale("timeout")
                    logger.warning(
                        f"Upscale attempt {attempt + 1} exceeded {self.attempt_timeout:.0f}s"
                    )
                    last_error = UpscaleError(f"Timed out after {self.attempt_timeout:.0f}s")
                    continue
                except httpx.HTTPError as e:
                    metrics.record_upscale("transport_error")
                    logger.warning(f"Upscale attempt {attempt + 1} failed: {e}")
                    last_error = e
                    continue
                except UpscaleError:
                    metrics.record_upscale("failed")
                    raise

                metrics.record_upscale("success")
                return data

        raise UpscaleError(f"Upscale failed after {self.max_attempts} attempts: {last_error}")

    async def _attempt(self, client: httpx.AsyncClient, image_url: str, scale: int) -> bytes:
        response = await client.post(
            self.api_url,
            headers=self._auth_headers(),
            json={
                "version": self.model_version,
                "input": {"image": image_url, "scale": scale, "face_enhance": False},
            },
        )
        if response.status_code == 429:
            raise UpscaleRateLimitedError("Rate limited (429)", retry_after=parse_retry_after(response))
        if response.status_code >= 400:
            raise UpscaleError(f"Prediction rejected: HTTP {response.status_code} {response.text[:200]}")

        prediction = _prediction_payload(response)
        output = await self._wait_for_output(client, prediction)

        try:
            download = await client.get(output, follow_redirects=True)
        except httpx.InvalidURL as e:
            raise UpscaleError(f"Prediction output is not a URL: {output[:200]!r}") from e
        download.raise_for_status()
        return download.content

    async def _wait_for_output(self, client: httpx.AsyncClient, prediction: dict) -> str:
        urls = prediction.get("urls")
        poll_url = urls.get("get") if isinstance(urls, dict) else None
        poll_url = poll_url or f"{self.api_url}/{prediction.get('id')}"
        status = prediction
        while True:
            state = status.get("status")
            if state == "succeeded":
                output = status.get("output")
                if isinstance(output, list):
                    output = output[0] if output else None
                if not output or not isinstance(output, str):
                    raise UpscaleError("Prediction succeeded without output")
                return output
            if state in TERMINAL_FAILURES:
                raise UpscaleError(f"Prediction {state}: {status.get('error') or 'unknown error'}")

            await asyncio.sleep(self.poll_interval)
            response = await client.get(poll_url, headers=self._auth_headers())
            if response.status_code == 429:
                raise UpscaleRateLimitedError("Rate limited while polling", retry_after=parse_retry_after(response))
            response.raise_for_status()
            status = _prediction_payload(response)
