import logging
from typing import Optional

import httpx
import openai
from openai import AsyncOpenAI

from .errors import EmptyResponse, ProviderRejected, RateLimited, TransientProviderError
from .retry import GENERAL_POLICY, RetryingTransport
from . import settings

logger = logging.getLogger(__name__)

PROVIDER = "llm"


class LlmClient:
    """Chat-completions client used for the story breakdown.

    The SDK's built-in retries are turned off; retrying happens in the
    ``RetryingTransport`` underneath it with the general policy.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 120,
    ):
        api_key = api_key or settings.LLM_API_KEY
        if not api_key:
            raise RuntimeError("LLM_API_KEY is not set; please configure your .env")
        self.model = model or settings.LLM_MODEL
        self.temperature = settings.LLM_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or settings.LLM_MAX_TOKENS
        self._http = httpx.AsyncClient(timeout=timeout, transport=RetryingTransport(GENERAL_POLICY, transport))
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url or settings.LLM_BASE_URL,
            max_retries=0,
            http_client=self._http,
        )

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        # The provider has no system role; both prompts travel in one user message.
        combined = f"{system_prompt}\n\n{user_prompt}"
        logger.info(f"Calling {self.model} for story breakdown ({len(user_prompt)} chars of story)")
        try:
            resp = await self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": combined}],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.RateLimitError as e:
            raise RateLimited(PROVIDER, str(e), status_code=e.status_code) from e
        except openai.APIStatusError as e:
            if e.status_code == 408 or e.status_code >= 500:
                raise TransientProviderError(PROVIDER, str(e), status_code=e.status_code) from e
            raise ProviderRejected(PROVIDER, str(e), status_code=e.status_code) from e
        except openai.APIConnectionError as e:
            raise TransientProviderError(PROVIDER, str(e)) from e

        if not resp.choices:
            raise EmptyResponse(PROVIDER, "response has no choices")
        content = resp.choices[0].message.content
        if not content or not content.strip():
            raise EmptyResponse(PROVIDER, "response text is empty")
        logger.info(f"Received breakdown response ({len(content)} chars)")
        return content

    async def aclose(self) -> None:
        await self._client.close()
