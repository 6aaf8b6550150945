"""
Reasoning service clients.

The pipeline talks to the reasoning service only through ReasoningClient;
create_reasoning_client() builds the configured implementation.
"""

from __future__ import annotations

from cap.config import Settings
from cap.exceptions import ConfigurationError
from cap.llm.base import (
    AuthenticationError,
    LLMError,
    LLMRequest,
    LLMResponse,
    RateLimitError,
    ReasoningClient,
    ServiceTimeoutError,
)
from cap.llm.dry_run import DryRunClient
from cap.llm.openrouter_client import OpenRouterClient


def create_reasoning_client(settings: Settings) -> ReasoningClient:
    """Build the reasoning client described by settings.

    Raises:
        ConfigurationError: If no API key is available outside dry-run mode.
    """
    if settings.DRY_RUN:
        return DryRunClient()
    if not settings.api_key:
        raise ConfigurationError(
            "Reasoning service API key is not configured",
            context={"setting": "OPENROUTER_API_KEY"},
        )
    return OpenRouterClient(
        api_key=settings.api_key,
        base_url=settings.REASONING_BASE_URL,
        timeout=settings.STAGE_TIMEOUT_SECONDS,
    )


__all__ = [
    "AuthenticationError",
    "DryRunClient",
    "LLMError",
    "LLMRequest",
    "LLMResponse",
    "OpenRouterClient",
    "RateLimitError",
    "ReasoningClient",
    "ServiceTimeoutError",
    "create_reasoning_client",
]
