"""
OpenRouter reasoning client.

OpenRouter exposes an OpenAI-compatible chat completions API, so this client
drives it through AsyncOpenAI with a custom base URL.
"""

from __future__ import annotations

import time
from typing import Any

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError as OpenAIAuthenticationError,
    RateLimitError as OpenAIRateLimitError,
)

from cap.llm.base import (
    AuthenticationError,
    LLMError,
    LLMRequest,
    LLMResponse,
    RateLimitError,
    ServiceTimeoutError,
)
from cap.logging import get_logger

logger = get_logger(__name__)

DEFAULT_HEADERS = {
    "X-Title": "case-analysis-pipeline",
}


class OpenRouterClient:
    """OpenAI-compatible client pointed at OpenRouter.

    SDK-level retries are disabled: a failed call surfaces immediately and
    retry is left to the caller.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 120.0,
        referer: str | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: OpenRouter API key.
            base_url: OpenAI-compatible endpoint.
            timeout: Per-request timeout in seconds.
            referer: Optional HTTP-Referer attribution header.
        """
        headers = dict(DEFAULT_HEADERS)
        if referer:
            headers["HTTP-Referer"] = referer

        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
            default_headers=headers,
        )
        self._provider = "openrouter"

    @property
    def provider(self) -> str:
        """Name of this provider."""
        return self._provider

    async def complete(self, request: LLMRequest) -> LLMResponse:
        """Send a completion request.

        Args:
            request: The LLM request.

        Returns:
            LLM response.

        Raises:
            LLMError: If the request fails.
        """
        start_time = time.monotonic()

        params: dict[str, Any] = {
            "model": request.model,
            "messages": request.messages,
            "temperature": request.temperature,
        }
        if request.max_tokens:
            params["max_tokens"] = request.max_tokens
        if request.response_format:
            params["response_format"] = request.response_format

        try:
            response = await self._client.chat.completions.create(**params)

        except OpenAIRateLimitError as e:
            retry_after = None
            if hasattr(e, "response") and e.response is not None:
                retry_after_header = e.response.headers.get("retry-after")
                if retry_after_header:
                    try:
                        retry_after = float(retry_after_header)
                    except ValueError:
                        retry_after = None

            logger.warning(
                "Reasoning service rate limit hit",
                model=request.model,
                retry_after=retry_after,
            )
            raise RateLimitError(str(e), retry_after=retry_after) from e

        except OpenAIAuthenticationError as e:
            raise AuthenticationError(
                f"Reasoning service authentication failed: {e}", status_code=e.status_code
            ) from e

        except APITimeoutError as e:
            raise ServiceTimeoutError(f"Reasoning service timed out: {e}") from e

        except APIStatusError as e:
            raise LLMError(
                f"Reasoning service error {e.status_code}: {e.message}",
                status_code=e.status_code,
            ) from e

        except APIConnectionError as e:
            raise LLMError(f"Reasoning service unreachable: {e}") from e

        latency_ms = int((time.monotonic() - start_time) * 1000)

        if not response.choices:
            raise LLMError("Reasoning service returned no choices")

        choice = response.choices[0]
        return LLMResponse(
            content=choice.message.content or "",
            model=response.model or request.model,
            provider=self._provider,
            input_tokens=response.usage.prompt_tokens if response.usage else 0,
            output_tokens=response.usage.completion_tokens if response.usage else 0,
            finish_reason=choice.finish_reason or "stop",
            latency_ms=latency_ms,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.close()
