"""
Tests for the stage registry and request builders.
"""

from __future__ import annotations

from typing import Any

import pytest

from cap.coordinator.context import PipelineContext
from cap.coordinator.outputs import ConversationMapOutput
from cap.coordinator.stages import (
    DEFAULT_REGISTRY,
    StageRegistry,
    StageRequest,
    StageSpec,
    build_conversation_map,
    build_issue_detection,
    build_synthesis,
)
from cap.exceptions import ValidationError

EXPECTED_ORDER = [
    "conversation_map",
    "claims_verification",
    "issue_linking",
    "issue_detection",
    "agreement_checks",
    "person_analysis",
    "message_annotation",
    "synthesis",
]


def _spec(stage_id: str, requires: tuple[str, ...] = ()) -> StageSpec:
    return StageSpec(stage_id, stage_id.title(), build_conversation_map, ConversationMapOutput, requires)


class TestDefaultRegistry:
    """Tests for the built-in stage order."""

    def test_order(self) -> None:
        """Test the eight stages run in their fixed order."""
        assert DEFAULT_REGISTRY.ids() == EXPECTED_ORDER
        assert DEFAULT_REGISTRY.total_stages() == 8
        assert len(DEFAULT_REGISTRY) == 8

    def test_ordinals_match_position(self) -> None:
        """Test ordinals are assigned from position."""
        for position, stage in enumerate(DEFAULT_REGISTRY):
            assert stage.ordinal == position
            assert DEFAULT_REGISTRY.index_of(stage.id) == position

    def test_display_names(self) -> None:
        """Test human-readable names."""
        assert DEFAULT_REGISTRY.get("conversation_map").display_name == "Mapping Conversation"
        assert DEFAULT_REGISTRY.get("issue_detection").display_name == "Detecting New Issues"
        assert DEFAULT_REGISTRY.get("synthesis").display_name == "Synthesizing Results"

    def test_dependencies(self) -> None:
        """Test declared dependencies of the dependent stages."""
        assert DEFAULT_REGISTRY.get("conversation_map").requires == ()
        assert DEFAULT_REGISTRY.get("issue_detection").requires == (
            "conversation_map",
            "issue_linking",
        )
        assert DEFAULT_REGISTRY.get("person_analysis").requires == (
            "conversation_map",
            "claims_verification",
        )
        assert DEFAULT_REGISTRY.get("message_annotation").requires == ("claims_verification",)
        assert DEFAULT_REGISTRY.get("synthesis").requires == tuple(EXPECTED_ORDER[:-1])

    def test_dependencies_are_strictly_earlier(self) -> None:
        """Test no stage reads a later or same stage."""
        for stage in DEFAULT_REGISTRY:
            for dep in stage.requires:
                assert DEFAULT_REGISTRY.index_of(dep) < stage.ordinal

    def test_unknown_stage(self) -> None:
        """Test that an unknown stage ID is a validation error."""
        with pytest.raises(ValidationError) as exc_info:
            DEFAULT_REGISTRY.index_of("nope")

        assert exc_info.value.context["field"] == "resume_from_stage"
        assert "nope" not in DEFAULT_REGISTRY

    def test_stages_before(self) -> None:
        """Test the prefix of stage IDs before an index."""
        assert DEFAULT_REGISTRY.stages_before(0) == []
        assert DEFAULT_REGISTRY.stages_before(3) == EXPECTED_ORDER[:3]


class TestRegistryConstruction:
    """Tests for registry validation."""

    def test_duplicate_ids_rejected(self) -> None:
        """Test that two stages cannot share an ID."""
        with pytest.raises(ValueError, match="Duplicate"):
            StageRegistry([_spec("a"), _spec("a")])

    def test_forward_dependency_rejected(self) -> None:
        """Test that a stage cannot depend on a later stage."""
        with pytest.raises(ValueError, match="not an earlier stage"):
            StageRegistry([_spec("a", requires=("b",)), _spec("b")])

    def test_self_dependency_rejected(self) -> None:
        """Test that a stage cannot depend on itself."""
        with pytest.raises(ValueError):
            StageRegistry([_spec("a", requires=("a",))])

    def test_empty_registry_rejected(self) -> None:
        """Test that a registry needs at least one stage."""
        with pytest.raises(ValueError):
            StageRegistry([])

    def test_custom_registry(self) -> None:
        """Test that a reordered registry assigns new ordinals."""
        registry = StageRegistry([_spec("b"), _spec("a", requires=("b",))])

        assert registry.ids() == ["b", "a"]
        assert registry[1].ordinal == 1


class TestRequestBuilders:
    """Tests for stage request construction."""

    def test_every_stage_builds(
        self, pipeline_context: PipelineContext, stage_outputs: dict[str, dict[str, Any]]
    ) -> None:
        """Test that each builder produces a request naming its stage."""
        for stage in DEFAULT_REGISTRY:
            prior = {dep: stage_outputs[dep] for dep in stage.requires}
            request = stage.build_request(pipeline_context, prior)

            assert isinstance(request, StageRequest)
            assert request.stage_id == stage.id
            assert "### Messages:" in request.user_prompt
            assert "Return JSON:" in request.user_prompt
            assert [m["role"] for m in request.to_messages()] == ["system", "user"]

    def test_builders_are_pure(
        self, pipeline_context: PipelineContext, stage_outputs: dict[str, dict[str, Any]]
    ) -> None:
        """Test that the same inputs give the same request."""
        prior = {dep: stage_outputs[dep] for dep in DEFAULT_REGISTRY.get("synthesis").requires}

        assert build_synthesis(pipeline_context, prior) == build_synthesis(pipeline_context, prior)

    def test_issue_detection_lists_linked_issues(
        self, pipeline_context: PipelineContext, stage_outputs: dict[str, dict[str, Any]]
    ) -> None:
        """Test that already-linked issue IDs are passed on."""
        request = build_issue_detection(
            pipeline_context,
            {
                "conversation_map": stage_outputs["conversation_map"],
                "issue_linking": stage_outputs["issue_linking"],
            },
        )

        assert "(do not duplicate these):\nissue-1" in request.user_prompt
        assert "Parents disagree about weekend pickup times." in request.user_prompt

    def test_issue_detection_without_links(self, pipeline_context: PipelineContext) -> None:
        """Test the placeholders when nothing was linked or summarized."""
        request = build_issue_detection(pipeline_context, {"issue_linking": {"issueActions": []}})

        assert "(do not duplicate these):\nNone" in request.user_prompt
        assert "Not available" in request.user_prompt

    def test_synthesis_counts(
        self, pipeline_context: PipelineContext, stage_outputs: dict[str, dict[str, Any]]
    ) -> None:
        """Test the analysis-so-far block."""
        stage_outputs["person_analysis"]["personAnalyses"][0]["concerns"] = [
            {"type": "hostility", "description": "Name-calling", "severity": "high"},
            {"type": "tone", "description": "Curt", "severity": "low"},
        ]
        request = build_synthesis(pipeline_context, stage_outputs)

        assert "- Issues Found: 2\n" in request.user_prompt
        assert "- Violations: 1\n" in request.user_prompt
        assert "Name-calling" in request.user_prompt
        assert "Curt" not in request.user_prompt

    def test_synthesis_guidance(
        self, sample_messages: list[dict[str, Any]], stage_outputs: dict[str, dict[str, Any]]
    ) -> None:
        """Test that operator guidance appears only when given."""
        from cap.coordinator.context import build_context

        guided = build_context("conv-1", sample_messages, [], user_guidance="Focus on pickups")
        plain = build_context("conv-1", sample_messages, [])

        assert "### User-Flagged Areas:\nFocus on pickups" in build_synthesis(
            guided, stage_outputs
        ).user_prompt
        assert "User-Flagged Areas" not in build_synthesis(plain, stage_outputs).user_prompt
