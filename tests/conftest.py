"""
Pytest configuration and fixtures for case analysis tests.
"""

from __future__ import annotations

import asyncio
import copy
import os
from pathlib import Path
from typing import Any, Callable, Generator
from unittest.mock import patch

import orjson
import pytest

from cap.config import Settings, clear_settings_cache
from cap.coordinator.context import PipelineContext, build_context
from cap.coordinator.executor import StageExecutor
from cap.coordinator.ledger import InMemoryRunLedger
from cap.coordinator.orchestrator import Orchestrator, RunRequest
from cap.llm.base import LLMError, LLMRequest, LLMResponse


# Valid output for every stage, richer than the dry run canned set
STAGE_OUTPUTS: dict[str, dict[str, Any]] = {
    "conversation_map": {
        "summary": "Parents disagree about weekend pickup times.",
        "overallTone": "tense",
        "keyTopics": ["pickup", "schedule"],
        "keyAsks": ["Confirm Saturday pickup"],
        "decisionsOrCommitments": [],
    },
    "claims_verification": {
        "claimsLedger": [
            {
                "claimText": "You were late three times last month",
                "speakerPersonId": "p-1",
                "category": "factual",
                "verificationStatus": "unverified",
            }
        ],
    },
    "issue_linking": {
        "issueActions": [
            {
                "action": "update",
                "issueId": "issue-1",
                "title": "Late pickups",
                "linkedMessageIds": ["m-1"],
                "personContributions": [
                    {
                        "personId": "p-2",
                        "contributionType": "primary_contributor",
                        "contributionDescription": "Arrived late",
                    }
                ],
            }
        ],
    },
    "issue_detection": {
        "issueActions": [
            {
                "action": "create",
                "title": "Schedule changes without notice",
                "priority": "medium",
                "linkedMessageIds": ["m-2"],
            }
        ],
    },
    "agreement_checks": {
        "agreementViolations": [
            {
                "agreementItemId": "ag-1",
                "violationType": "schedule",
                "description": "Pickup after 6pm",
                "messageIds": ["m-1"],
                "severity": "medium",
            }
        ],
        "detectedAgreements": [],
    },
    "person_analysis": {
        "personAnalyses": [
            {"personId": "p-1", "concerns": []},
            {"personId": "p-2", "concerns": []},
        ],
    },
    "message_annotation": {
        "messageAnnotations": [
            {
                "messageId": "m-1",
                "flags": [
                    {
                        "type": "accusation",
                        "description": "Blames without evidence",
                        "attributedToPersonId": "p-1",
                        "severity": "low",
                    }
                ],
            }
        ],
    },
    "synthesis": {
        "conversationState": {
            "status": "awaiting_response",
            "pendingResponderName": "Sam Lee",
            "reasoning": "The pickup question is unanswered",
        },
        "alternativeInterpretations": [],
        "missingContext": [],
        "topicCategorySlugs": ["scheduling"],
    },
}


class ScriptedClient:
    """Reasoning client answering from a per-stage script.

    Records every request. ``fail_at`` raises ``error`` for that stage;
    ``contents`` replaces the raw response text for chosen stages.
    """

    def __init__(
        self,
        outputs: dict[str, dict[str, Any]] | None = None,
        fail_at: str | None = None,
        error: Exception | None = None,
        contents: dict[str, str] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.outputs = copy.deepcopy(outputs if outputs is not None else STAGE_OUTPUTS)
        self.fail_at = fail_at
        self.error = error
        self.contents = contents or {}
        self.delay = delay
        self.calls: list[LLMRequest] = []
        self.closed = False

    @property
    def provider(self) -> str:
        return "scripted"

    @property
    def stages(self) -> list[str]:
        return [request.metadata["stage"] for request in self.calls]

    async def complete(self, request: LLMRequest) -> LLMResponse:
        self.calls.append(request)
        stage = request.metadata["stage"]
        if self.delay:
            await asyncio.sleep(self.delay)
        if stage == self.fail_at:
            raise self.error or LLMError("Reasoning service error 500: boom", status_code=500)
        if stage in self.contents:
            content = self.contents[stage]
        else:
            content = orjson.dumps(self.outputs[stage]).decode("utf-8")
        return LLMResponse(content=content, model=request.model, provider=self.provider)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def mock_env_vars(temp_dir: Path) -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing.

    Sets up a fake API key and a ledger path inside temp_dir.
    """
    env_vars = {
        "OPENROUTER_API_KEY": "sk-or-test-fake-key-1234567890",
        "REASONING_MODEL": "openai/gpt-4o-mini",
        "STAGE_TIMEOUT_SECONDS": "30",
        "LEDGER_PATH": str(temp_dir / "ledger" / "runs.db"),
        "MAX_RESUME_ATTEMPTS": "3",
        "DRY_RUN": "false",
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str]) -> Generator[Settings, None, None]:
    """Provide a Settings instance with mock configuration."""
    clear_settings_cache()
    from cap.config import get_settings

    settings = get_settings()
    settings.ensure_directories()
    yield settings
    clear_settings_cache()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def sample_participants() -> list[dict[str, Any]]:
    """Two co-parents and a mediator, in camelCase wire form."""
    return [
        {"id": "p-1", "fullName": "Alex Rivera", "role": "Parent"},
        {"id": "p-2", "fullName": "Sam Lee", "role": "Parent", "roleContext": "Weekend carer"},
        {"id": "p-3", "fullName": "Jo Park", "role": "Mediator"},
    ]


@pytest.fixture
def sample_messages() -> list[dict[str, Any]]:
    """A short transcript."""
    return [
        {
            "id": "m-1",
            "senderId": "p-1",
            "receiverId": "p-2",
            "rawText": "You were late again on Saturday.",
            "sentAt": "2024-05-04T18:30:00Z",
        },
        {
            "id": "m-2",
            "senderId": "p-2",
            "receiverId": "p-1",
            "rawText": "I told you the schedule changed.",
            "sentAt": "2024-05-04T18:45:00Z",
        },
    ]


@pytest.fixture
def sample_payload(
    sample_messages: list[dict[str, Any]], sample_participants: list[dict[str, Any]]
) -> dict[str, Any]:
    """A complete camelCase run request body."""
    return {
        "subjectId": "conv-1",
        "messages": sample_messages,
        "participants": sample_participants,
        "agreementItems": [
            {"id": "ag-1", "topic": "pickup", "summary": "Pickup by 6pm on Saturdays"}
        ],
        "existingIssues": [
            {"id": "issue-1", "title": "Late pickups", "status": "open", "priority": "high"}
        ],
        "mePersonId": "p-1",
    }


@pytest.fixture
def sample_request(sample_payload: dict[str, Any]) -> RunRequest:
    """The sample payload as a RunRequest."""
    return RunRequest.from_payload(sample_payload)


@pytest.fixture
def pipeline_context(sample_payload: dict[str, Any]) -> PipelineContext:
    """A built context for the sample payload."""
    return build_context(
        subject_id=sample_payload["subjectId"],
        messages=sample_payload["messages"],
        participants=sample_payload["participants"],
        agreement_items=sample_payload["agreementItems"],
        existing_issues=sample_payload["existingIssues"],
        me_person_id=sample_payload["mePersonId"],
    )


@pytest.fixture
def stage_outputs() -> dict[str, dict[str, Any]]:
    """A fresh copy of valid outputs for every stage."""
    return copy.deepcopy(STAGE_OUTPUTS)


@pytest.fixture
def scripted_client() -> Callable[..., ScriptedClient]:
    """Factory for scripted reasoning clients."""
    return ScriptedClient


@pytest.fixture
def memory_ledger() -> InMemoryRunLedger:
    """An empty in-memory run ledger."""
    return InMemoryRunLedger()


@pytest.fixture
def make_orchestrator(
    memory_ledger: InMemoryRunLedger,
) -> Callable[..., Orchestrator]:
    """Factory wiring a client into an orchestrator over the in-memory ledger."""

    def factory(client: Any, ledger: Any = None, timeout: float = 5.0) -> Orchestrator:
        executor = StageExecutor(client, timeout=timeout)
        return Orchestrator(executor, ledger if ledger is not None else memory_ledger)

    return factory
