from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass

import httpx

from erasure.core.errors import FetchError, FetchTimeout

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CapturedArtifacts:
    html: bytes | None
    screenshot: bytes | None


class CaptureClient:
    """Client for the external capture service that renders a page and screenshots it.

    The service answers ``POST {base_url}/capture`` with
    ``{"html": str, "screenshot_b64": str}``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 8.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def capture(self, url: str) -> CapturedArtifacts:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/capture", json={"url": url})
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as exc:
            raise FetchTimeout(f"capture timed out for {url}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise FetchError(f"capture failed for {url}: {exc}") from exc

        if not isinstance(payload, dict):
            raise FetchError("capture service returned a non-object payload")

        html = payload.get("html")
        screenshot: bytes | None = None
        screenshot_b64 = payload.get("screenshot_b64")
        if isinstance(screenshot_b64, str) and screenshot_b64:
            try:
                screenshot = base64.b64decode(screenshot_b64, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise FetchError("capture service returned an invalid screenshot encoding") from exc
        return CapturedArtifacts(
            html=html.encode("utf-8") if isinstance(html, str) and html else None,
            screenshot=screenshot,
        )
