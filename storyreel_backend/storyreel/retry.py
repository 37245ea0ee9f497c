"""HTTP retry policies applied at the transport layer.

All provider clients talk through an ``httpx.AsyncClient`` whose transport is a
``RetryingTransport``. Request bodies are read once and every attempt is sent
as a brand-new ``httpx.Request``; a request object is never resent after the
inner transport has consumed it.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, Optional

import httpx

from .errors import MalformedOutput, ProviderRejected, RateLimited, TransientProviderError

logger = logging.getLogger(__name__)

_SERVER_ERRORS = frozenset(range(500, 600))


def exponential_backoff(attempt: int) -> float:
    return float(2 ** attempt)


def linear_backoff(attempt: int) -> float:
    return float(attempt)


@dataclass(frozen=True)
class RetryPolicy:
    name: str
    retries: int
    backoff: Callable[[int], float]
    retry_statuses: FrozenSet[int] = field(default_factory=frozenset)

    def should_retry_status(self, status_code: int) -> bool:
        return status_code in self.retry_statuses


# Image and voice calls: 408/5xx and rate limiting, 2s/4s/8s.
IMAGE_POLICY = RetryPolicy("image", 3, exponential_backoff, frozenset({408, 429}) | _SERVER_ERRORS)
SPEECH_POLICY = RetryPolicy("speech", 3, exponential_backoff, frozenset({408, 429}) | _SERVER_ERRORS)
# Everything else: 408/5xx only, 1s/2s.
GENERAL_POLICY = RetryPolicy("general", 2, linear_backoff, frozenset({408}) | _SERVER_ERRORS)


def _fresh_request(original: httpx.Request, body: bytes) -> httpx.Request:
    return httpx.Request(
        original.method,
        original.url,
        headers=original.headers.copy(),
        content=body,
        extensions=dict(original.extensions),
    )


class RetryingTransport(httpx.AsyncBaseTransport):
    def __init__(self, policy: RetryPolicy, transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep: Callable[[float], object] = asyncio.sleep):
        self.policy = policy
        self._transport = transport or httpx.AsyncHTTPTransport()
        self._sleep = sleep

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        body = await request.aread()
        attempt = 0
        while True:
            try:
                response = await self._transport.handle_async_request(_fresh_request(request, body))
            except httpx.TransportError as e:
                if attempt >= self.policy.retries:
                    raise
                reason = f"{type(e).__name__}: {e}"
            else:
                if not self.policy.should_retry_status(response.status_code) or attempt >= self.policy.retries:
                    return response
                await response.aclose()
                reason = f"HTTP {response.status_code}"

            attempt += 1
            delay = self.policy.backoff(attempt)
            logger.warning(
                f"[{self.policy.name}] retry {attempt}/{self.policy.retries} for "
                f"{request.method} {request.url.host} in {delay:.1f}s, reason: {reason}"
            )
            await self._sleep(delay)

    async def aclose(self) -> None:
        await self._transport.aclose()


def retrying_client(policy: RetryPolicy, timeout: float = 60,
                    transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, transport=RetryingTransport(policy, transport))


def raise_for_provider_status(provider: str, response: httpx.Response) -> None:
    """Map a final HTTP status onto the pipeline's error kinds."""
    status = response.status_code
    if status < 400:
        return
    detail = response.text[:500]
    if status == 429:
        raise RateLimited(provider, f"rate limited: {detail}", status_code=status)
    if status == 408 or status >= 500:
        raise TransientProviderError(provider, f"HTTP {status}: {detail}", status_code=status)
    raise ProviderRejected(provider, f"HTTP {status}: {detail}", status_code=status)


def parse_json(provider: str, response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError as e:
        raise MalformedOutput(provider, f"response is not JSON: {e}") from e
    if not isinstance(body, dict):
        raise MalformedOutput(provider, f"expected a JSON object, got {type(body).__name__}")
    return body


async def send_json(client: httpx.AsyncClient, provider: str, url: str, payload: dict, headers: dict) -> dict:
    """POST ``payload`` and return the decoded JSON object.

    Transport failures that survived the retry budget surface as
    ``TransientProviderError``.
    """
    try:
        response = await client.post(url, json=payload, headers=headers)
    except httpx.TransportError as e:
        raise TransientProviderError(provider, f"{type(e).__name__}: {e}") from e
    raise_for_provider_status(provider, response)
    return parse_json(provider, response)
