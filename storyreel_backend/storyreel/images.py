import asyncio
import base64
import binascii
import logging
from pathlib import Path
from typing import Callable, Optional

import httpx

from .errors import EmptyResponse, MalformedOutput, TransientProviderError
from .media import to_png, write_bytes
from .retry import IMAGE_POLICY, RetryingTransport, raise_for_provider_status, send_json
from . import settings

logger = logging.getLogger(__name__)

PROVIDER = "seedream"


class SeedreamImageClient:
    """Text-to-image over the Ark images endpoint.

    The response carries either a URL to fetch or base64 bytes, depending on
    ``response_format``. Whatever comes back is saved as PNG.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        model: Optional[str] = None,
        size: Optional[str] = None,
        response_format: Optional[str] = None,
        seed: Optional[int] = None,
        watermark: Optional[bool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 120,
        sleep: Callable[[float], object] = asyncio.sleep,
    ):
        self._api_key = api_key or settings.IMAGE_API_KEY
        if not self._api_key:
            raise RuntimeError("IMAGE_API_KEY is not set; please configure your .env")
        self.endpoint = endpoint or settings.IMAGE_ENDPOINT
        self.model = model or settings.IMAGE_MODEL
        self.size = size or settings.IMAGE_SIZE
        self.response_format = response_format or settings.IMAGE_RESPONSE_FORMAT
        self.seed = settings.IMAGE_SEED if seed is None else seed
        self.watermark = settings.IMAGE_WATERMARK if watermark is None else watermark
        self._client = httpx.AsyncClient(
            timeout=timeout, transport=RetryingTransport(IMAGE_POLICY, transport, sleep=sleep)
        )

    def _headers(self):
        return {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}

    def build_payload(self, prompt: str) -> dict:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "sequential_image_generation": "disabled",
            "response_format": self.response_format,
            "size": self.size,
            "stream": False,
            "watermark": self.watermark,
        }
        if self.seed is not None:
            payload["seed"] = self.seed
        return payload

    async def generate(self, prompt: str, output_path: Path) -> Path:
        logger.info(f"Requesting image from {PROVIDER}: {prompt[:50]}...")
        body = await send_json(self._client, PROVIDER, self.endpoint, self.build_payload(prompt), self._headers())

        data = body.get("data")
        if not data:
            raise EmptyResponse(PROVIDER, "response contained no images")
        if not isinstance(data, list) or not isinstance(data[0], dict):
            raise MalformedOutput(PROVIDER, f"expected a list of image objects, got {type(data).__name__}")
        first = data[0]

        field = "url" if self.response_format == "url" else "b64_json"
        value = first.get(field)
        if value is None or value == "":
            raise EmptyResponse(PROVIDER, f"response {field} is empty")
        if not isinstance(value, str):
            raise MalformedOutput(PROVIDER, f"response {field} is a {type(value).__name__}, not a string")

        if field == "url":
            image_bytes = await self._download(value)
        else:
            try:
                image_bytes = base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as e:
                raise MalformedOutput(PROVIDER, f"b64_json is not valid base64: {e}") from e

        try:
            png = await asyncio.to_thread(to_png, image_bytes)
        except ValueError as e:
            raise MalformedOutput(PROVIDER, str(e)) from e
        await asyncio.to_thread(write_bytes, output_path, png)
        logger.info(f"Saved image to {output_path}")
        return Path(output_path)

    async def _download(self, url: str) -> bytes:
        logger.debug(f"Downloading image: {url}")
        try:
            resp = await self._client.get(url)
        except httpx.TransportError as e:
            raise TransientProviderError(PROVIDER, f"image download failed: {e}") from e
        raise_for_provider_status(PROVIDER, resp)
        if not resp.content:
            raise EmptyResponse(PROVIDER, "downloaded image is empty")
        return resp.content

    async def aclose(self) -> None:
        await self._client.aclose()
