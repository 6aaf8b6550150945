"""
Tests for the context builder.
"""

from __future__ import annotations

import dataclasses
from typing import Any

import pytest

from cap.coordinator.context import (
    NO_AGREEMENTS,
    NO_ISSUES,
    UNKNOWN_PERSON,
    PipelineContext,
    build_context,
)
from cap.exceptions import ValidationError


class TestBuildContextValidation:
    """Tests for input validation."""

    def test_empty_messages_rejected(self, sample_participants: list[dict[str, Any]]) -> None:
        """Test that a run with no messages is refused."""
        with pytest.raises(ValidationError) as exc_info:
            build_context("conv-1", [], sample_participants)

        assert exc_info.value.context["field"] == "messages"

    def test_blank_subject_rejected(self, sample_messages: list[dict[str, Any]]) -> None:
        """Test that a blank subject ID is refused."""
        with pytest.raises(ValidationError):
            build_context("   ", sample_messages, [])

    def test_message_without_id_rejected(self) -> None:
        """Test that a message record without an id is refused."""
        with pytest.raises(ValidationError, match="missing its id"):
            build_context("conv-1", [{"rawText": "hello"}], [])

    def test_non_mapping_record_rejected(self) -> None:
        """Test that a record that is not an object is refused."""
        with pytest.raises(ValidationError, match="must be an object"):
            build_context("conv-1", ["hello"], [])

    def test_no_participants_allowed(self, sample_messages: list[dict[str, Any]]) -> None:
        """Test that participants are optional."""
        context = build_context("conv-1", sample_messages, [])

        assert context.participants == ()
        assert UNKNOWN_PERSON in context.message_context


class TestContextRendering:
    """Tests for the pre-rendered prompt blocks."""

    def test_message_lines(self, pipeline_context: PipelineContext) -> None:
        """Test that messages render with resolved sender and receiver names."""
        assert (
            "[m-1] 2024-05-04T18:30:00Z - Alex Rivera -> Sam Lee:\n"
            "You were late again on Saturday."
        ) in pipeline_context.message_context
        assert pipeline_context.message_context.index("[m-1]") < (
            pipeline_context.message_context.index("[m-2]")
        )

    def test_participant_lines(self, pipeline_context: PipelineContext) -> None:
        """Test that the operator is marked and role context is appended."""
        lines = pipeline_context.participant_context.split("\n")

        assert lines[0] == "- Alex Rivera (Role: Parent - THIS IS THE USER)"
        assert lines[1] == "- Sam Lee (Role: Parent) - Context: Weekend carer"
        assert "- Jo Park -> p-3" in pipeline_context.id_reference

    def test_agreements_and_issues(self, pipeline_context: PipelineContext) -> None:
        """Test that agreements and issues render one entry each."""
        assert pipeline_context.agreement_context == "- [ag-1] pickup: Pickup by 6pm on Saturdays"
        assert pipeline_context.issue_context.startswith("- [issue-1] Late pickups (open, high priority)")
        assert "No description provided" in pipeline_context.issue_context

    def test_empty_agreements_and_issues(self, sample_messages: list[dict[str, Any]]) -> None:
        """Test the placeholders used when nothing is on file."""
        context = build_context("conv-1", sample_messages, [])

        assert context.agreement_context == NO_AGREEMENTS
        assert context.issue_context == NO_ISSUES

    def test_agreement_full_text_truncated(self, sample_messages: list[dict[str, Any]]) -> None:
        """Test that an agreement without a summary shows truncated full text."""
        context = build_context(
            "conv-1",
            sample_messages,
            [],
            agreement_items=[{"id": "ag-2", "topic": "holidays", "fullText": "x" * 500}],
        )

        assert context.agreement_context == f"- [ag-2] holidays: {'x' * 200}"

    def test_snake_case_records_accepted(self) -> None:
        """Test that snake_case record keys are read as well."""
        context = build_context(
            "conv-1",
            [{"id": "m-1", "sender_id": "p-1", "raw_text": "hi", "sent_at": "t0"}],
            [{"id": "p-1", "full_name": "Alex Rivera"}],
        )

        assert "[m-1] t0 - Alex Rivera -> Unknown:\nhi" == context.message_context

    def test_blank_guidance_dropped(self, sample_messages: list[dict[str, Any]]) -> None:
        """Test that whitespace-only guidance is treated as absent."""
        context = build_context("conv-1", sample_messages, [], user_guidance="   ")

        assert context.user_guidance is None


class TestContextImmutability:
    """Tests that the context cannot change during a run."""

    def test_frozen(self, pipeline_context: PipelineContext) -> None:
        """Test that fields cannot be reassigned."""
        with pytest.raises(dataclasses.FrozenInstanceError):
            pipeline_context.subject_id = "other"  # type: ignore[misc]

    def test_collections_are_tuples(self, pipeline_context: PipelineContext) -> None:
        """Test that record collections are immutable sequences."""
        assert isinstance(pipeline_context.messages, tuple)
        assert isinstance(pipeline_context.participants, tuple)
        assert isinstance(pipeline_context.existing_issues, tuple)

    def test_person_name(self, pipeline_context: PipelineContext) -> None:
        """Test participant name lookup."""
        assert pipeline_context.person_name("p-2") == "Sam Lee"
        assert pipeline_context.person_name("nobody") == UNKNOWN_PERSON
        assert pipeline_context.person_name(None) == UNKNOWN_PERSON
