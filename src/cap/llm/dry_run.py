"""
Dry run reasoning client.

Returns canned JSON per stage so the whole pipeline can run offline.
"""

from __future__ import annotations

from dataclasses import dataclass

import orjson

from cap.llm.base import LLMRequest, LLMResponse


@dataclass
class DryRunResponse:
    """Configuration for one canned dry run response."""

    content: str
    input_tokens: int = 100
    output_tokens: int = 50


def _dump(payload: dict) -> str:
    return orjson.dumps(payload).decode("utf-8")


# Default dry run responses by stage
DRY_RUN_RESPONSES: dict[str, DryRunResponse] = {
    "conversation_map": DryRunResponse(
        content=_dump({
            "summary": "Dry run synopsis of the conversation.",
            "overallTone": "neutral",
            "keyTopics": ["scheduling"],
            "keyAsks": [],
            "decisionsOrCommitments": [],
        }),
        input_tokens=1200,
        output_tokens=200,
    ),
    "claims_verification": DryRunResponse(
        content=_dump({"claimsLedger": []}),
    ),
    "issue_linking": DryRunResponse(
        content=_dump({"issueActions": []}),
    ),
    "issue_detection": DryRunResponse(
        content=_dump({"issueActions": []}),
    ),
    "agreement_checks": DryRunResponse(
        content=_dump({"agreementViolations": [], "detectedAgreements": []}),
    ),
    "person_analysis": DryRunResponse(
        content=_dump({"personAnalyses": []}),
    ),
    "message_annotation": DryRunResponse(
        content=_dump({"messageAnnotations": []}),
    ),
    "synthesis": DryRunResponse(
        content=_dump({
            "conversationState": {
                "status": "open",
                "pendingResponderName": None,
                "reasoning": "Dry run",
            },
            "alternativeInterpretations": [],
            "missingContext": [],
            "topicCategorySlugs": ["other"],
        }),
    ),
    "default": DryRunResponse(content=_dump({})),
}


class DryRunClient:
    """Reasoning client that never leaves the process.

    The stage is read from ``request.metadata["stage"]``.
    """

    def __init__(self, responses: dict[str, DryRunResponse] | None = None) -> None:
        self._responses = responses or DRY_RUN_RESPONSES
        self.calls: list[LLMRequest] = []

    @property
    def provider(self) -> str:
        """Name of this provider."""
        return "dry_run"

    async def complete(self, request: LLMRequest) -> LLMResponse:
        """Return the canned response for the request's stage."""
        self.calls.append(request)
        stage = request.metadata.get("stage", "default")
        canned = self._responses.get(stage) or self._responses["default"]
        return LLMResponse(
            content=canned.content,
            model=request.model,
            provider=self.provider,
            input_tokens=canned.input_tokens,
            output_tokens=canned.output_tokens,
        )

    async def close(self) -> None:
        """Nothing to close."""
        return None
