"""
Stage executor.

Runs one stage: builds its request from the shared context and the declared
prior outputs, performs a single bounded call to the reasoning service, and
validates the structured response against the stage's output record.

No retries happen here. A failed call fails the stage attempt.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Mapping

import orjson
from pydantic import ValidationError as PydanticValidationError

from cap.config import Settings
from cap.coordinator.context import PipelineContext
from cap.coordinator.stages import DEFAULT_REGISTRY, Stage, StageRegistry
from cap.exceptions import ParseError, UpstreamServiceError
from cap.llm.base import LLMError, LLMRequest, RateLimitError, ReasoningClient, ServiceTimeoutError
from cap.logging import get_logger

logger = get_logger(__name__)

JSON_RESPONSE_FORMAT = {"type": "json_object"}

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?```$", re.DOTALL | re.IGNORECASE)


def parse_json_object(content: str, stage_id: str) -> dict[str, Any]:
    """Decode a reasoning response into a JSON object.

    Accepts a bare object or one wrapped in a Markdown code fence.

    Raises:
        ParseError: If the content is empty, not JSON, or not an object.
    """
    text = (content or "").strip()
    if not text:
        raise ParseError("Empty response from reasoning service", context={"stage": stage_id})

    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1).strip()

    try:
        payload = orjson.loads(text)
    except orjson.JSONDecodeError as e:
        raise ParseError(
            f"Response is not valid JSON: {e}",
            context={"stage": stage_id, "preview": text[:200]},
        ) from e

    if not isinstance(payload, dict):
        raise ParseError(
            "Response JSON is not an object",
            context={"stage": stage_id, "type": type(payload).__name__},
        )
    return payload


class StageExecutor:
    """Executes single stages against an injected reasoning client."""

    def __init__(
        self,
        client: ReasoningClient,
        registry: StageRegistry = DEFAULT_REGISTRY,
        model: str = "openai/gpt-4o",
        temperature: float = 0.3,
        timeout: float = 120.0,
        max_tokens: int | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            client: Reasoning service client.
            registry: Stage registry used for lookup and dispatch.
            model: Model identifier sent with every request.
            temperature: Sampling temperature.
            timeout: Upper bound in seconds for one stage call.
            max_tokens: Optional completion token cap.
        """
        self.client = client
        self.registry = registry
        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(
        cls,
        client: ReasoningClient,
        settings: Settings,
        registry: StageRegistry = DEFAULT_REGISTRY,
    ) -> StageExecutor:
        """Build an executor from application settings."""
        return cls(
            client=client,
            registry=registry,
            model=settings.model,
            temperature=settings.REASONING_TEMPERATURE,
            timeout=settings.STAGE_TIMEOUT_SECONDS,
            max_tokens=settings.REASONING_MAX_TOKENS,
        )

    async def execute(
        self,
        stage_id: str,
        context: PipelineContext,
        prior_outputs: Mapping[str, Mapping[str, Any]],
    ) -> dict[str, Any]:
        """Run one stage.

        Args:
            stage_id: Registered stage ID.
            context: Shared immutable pipeline context.
            prior_outputs: Outputs of earlier stages keyed by stage ID.

        Returns:
            The validated stage output with camelCase keys.

        Raises:
            UpstreamServiceError: If the reasoning call fails or times out.
            ParseError: If the response is not a valid output for the stage.
        """
        stage = self.registry.get(stage_id)
        visible = {dep: prior_outputs[dep] for dep in stage.requires if dep in prior_outputs}
        stage_request = stage.build_request(context, visible)

        request = LLMRequest(
            messages=stage_request.to_messages(),
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            response_format=JSON_RESPONSE_FORMAT,
            metadata={"stage": stage.id},
        )

        response = await self._call(stage, request)
        payload = parse_json_object(response.content, stage.id)

        try:
            record = stage.output_model.model_validate(payload)
        except PydanticValidationError as e:
            missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
            raise ParseError(
                f"Response for {stage.id} is missing required fields",
                context={"stage": stage.id, "fields": missing},
            ) from e

        logger.debug(
            "Stage response validated",
            stage=stage.id,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            latency_ms=response.latency_ms,
        )
        return record.dump()

    async def _call(self, stage: Stage, request: LLMRequest):
        try:
            return await asyncio.wait_for(self.client.complete(request), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamServiceError(
                f"Reasoning service timed out after {self.timeout:g}s",
                context={"stage": stage.id},
                timed_out=True,
            ) from e
        except RateLimitError as e:
            raise UpstreamServiceError(
                f"Reasoning service rate limited: {e}",
                context={"stage": stage.id, "retry_after": e.retry_after},
                status_code=e.status_code,
                rate_limited=True,
            ) from e
        except ServiceTimeoutError as e:
            raise UpstreamServiceError(
                str(e), context={"stage": stage.id}, status_code=e.status_code, timed_out=True
            ) from e
        except LLMError as e:
            raise UpstreamServiceError(
                str(e), context={"stage": stage.id}, status_code=e.status_code
            ) from e
