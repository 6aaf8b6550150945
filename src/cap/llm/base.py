"""
Base classes and interfaces for reasoning service clients.

This module defines:
- LLMRequest: Standardized request format
- LLMResponse: Standardized response format
- ReasoningClient: Protocol for all reasoning service providers
- The LLMError family raised by clients
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class LLMRequest:
    """Standardized LLM request format.

    All providers convert from this format to their native format.
    """

    messages: list[dict[str, Any]]  # [{"role": "system"|"user"|"assistant", "content": "..."}]
    model: str
    temperature: float = 0.3
    max_tokens: int | None = None
    response_format: dict[str, Any] | None = None  # For structured output (JSON mode)
    metadata: dict[str, str] = field(default_factory=dict)  # Not sent to the provider


@dataclass
class LLMResponse:
    """Standardized LLM response format."""

    content: str
    model: str
    provider: str
    input_tokens: int = 0
    output_tokens: int = 0
    finish_reason: str = "stop"
    latency_ms: int = 0

    @property
    def total_tokens(self) -> int:
        """Total tokens used."""
        return self.input_tokens + self.output_tokens


@runtime_checkable
class ReasoningClient(Protocol):
    """Protocol for reasoning service clients.

    A single request/response call; no streaming at this layer.
    """

    @property
    def provider(self) -> str:
        """Name of this provider (e.g., 'openrouter', 'dry_run')."""
        ...

    async def complete(self, request: LLMRequest) -> LLMResponse:
        """Send a completion request.

        Args:
            request: The LLM request.

        Returns:
            LLM response.

        Raises:
            LLMError: If the request fails.
        """
        ...

    async def close(self) -> None:
        """Close any open connections."""
        ...


class LLMError(Exception):
    """Base exception for reasoning service errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(LLMError):
    """Rate limit exceeded (HTTP 429)."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class AuthenticationError(LLMError):
    """Authentication failed."""

    pass


class ServiceTimeoutError(LLMError):
    """The service did not answer in time."""

    pass
