"""
Result assembler.

Merges per-stage outputs into one UnifiedResult. Assembly never fails: a
missing or invalid stage output contributes safe defaults, and malformed
nested items are dropped with a warning.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from pydantic import ValidationError as PydanticValidationError

from cap.coordinator.outputs import (
    AgreementChecksOutput,
    ClaimsVerificationOutput,
    ConversationAnalysis,
    ConversationMapOutput,
    IssueAction,
    IssueDetectionOutput,
    IssueLinkingOutput,
    MessageAnnotationOutput,
    PersonAnalysisOutput,
    Record,
    SynthesisOutput,
    UnifiedResult,
)
from cap.logging import get_logger

logger = get_logger(__name__)

_OUTPUT_MODELS: dict[str, type[Record]] = {
    "conversation_map": ConversationMapOutput,
    "claims_verification": ClaimsVerificationOutput,
    "issue_linking": IssueLinkingOutput,
    "issue_detection": IssueDetectionOutput,
    "agreement_checks": AgreementChecksOutput,
    "person_analysis": PersonAnalysisOutput,
    "message_annotation": MessageAnnotationOutput,
    "synthesis": SynthesisOutput,
}


@dataclass
class AssemblyReport:
    """Assembled result plus everything that was dropped on the way."""

    result: UnifiedResult
    warnings: list[str] = field(default_factory=list)


def _load(
    stage_outputs: Mapping[str, Any], stage_id: str, warnings: list[str]
) -> Any | None:
    raw = stage_outputs.get(stage_id)
    if raw is None:
        return None
    try:
        return _OUTPUT_MODELS[stage_id].model_validate(raw)
    except PydanticValidationError as e:
        message = f"{stage_id} output is invalid, using defaults"
        logger.warning(message, stage=stage_id, errors=e.error_count())
        warnings.append(message)
        return None


def _sanitize_issue_actions(
    actions: list[IssueAction], warnings: list[str]
) -> list[IssueAction]:
    kept = []
    for index, action in enumerate(actions):
        if not action.title:
            warnings.append(f"issueActions[{index}] missing title, skipped")
            continue
        if action.person_contributions is not None:
            action.person_contributions = [
                pc
                for pc in action.person_contributions
                if pc.person_id and pc.contribution_type and pc.contribution_description
            ]
            if not action.involved_person_ids:
                # Older consumers read the flat participant list
                action.involved_person_ids = list(
                    dict.fromkeys(pc.person_id for pc in action.person_contributions)
                )
        kept.append(action)
    return kept


def assemble_with_report(stage_outputs: Mapping[str, Any]) -> AssemblyReport:
    """Assemble a result and collect sanitizing warnings.

    Args:
        stage_outputs: Raw stage outputs keyed by stage ID. Any subset may
            be present.

    Returns:
        AssemblyReport with the result and the list of warnings.
    """
    warnings: list[str] = []
    result = UnifiedResult()

    conversation_map = _load(stage_outputs, "conversation_map", warnings)
    if conversation_map is not None:
        result.conversation_analysis = ConversationAnalysis(
            summary=conversation_map.summary or "Analysis incomplete",
            overall_tone=conversation_map.overall_tone or "neutral",
            key_topics=conversation_map.key_topics,
        )

    claims = _load(stage_outputs, "claims_verification", warnings)
    if claims is not None:
        result.claims_ledger = claims.claims_ledger

    actions: list[IssueAction] = []
    for stage_id in ("issue_linking", "issue_detection"):
        output = _load(stage_outputs, stage_id, warnings)
        if output is not None:
            actions.extend(output.issue_actions)
    result.issue_actions = _sanitize_issue_actions(actions, warnings)

    agreements = _load(stage_outputs, "agreement_checks", warnings)
    if agreements is not None:
        result.agreement_violations = agreements.agreement_violations
        detected = []
        for index, item in enumerate(agreements.detected_agreements):
            if not item.topic or not item.summary:
                warnings.append(f"detectedAgreements[{index}] missing required fields, skipped")
                continue
            detected.append(item)
        result.detected_agreements = detected

    people = _load(stage_outputs, "person_analysis", warnings)
    if people is not None:
        analyses = []
        for index, analysis in enumerate(people.person_analyses):
            if not analysis.person_id:
                warnings.append(f"personAnalyses[{index}] missing personId, skipped")
                continue
            analyses.append(analysis)
        result.person_analyses = analyses

    annotations = _load(stage_outputs, "message_annotation", warnings)
    if annotations is not None:
        kept = []
        for index, annotation in enumerate(annotations.message_annotations):
            if not annotation.message_id:
                warnings.append(f"messageAnnotations[{index}] missing messageId, skipped")
                continue
            annotation.flags = [
                flag
                for flag in annotation.flags
                if flag.type and flag.attributed_to_person_id and flag.description
            ]
            kept.append(annotation)
        result.message_annotations = kept

    synthesis = _load(stage_outputs, "synthesis", warnings)
    if synthesis is not None:
        result.conversation_state = synthesis.conversation_state
        result.alternative_interpretations = synthesis.alternative_interpretations
        result.missing_context = synthesis.missing_context
        result.topic_category_slugs = synthesis.topic_category_slugs

    if warnings:
        logger.info("Result assembled with warnings", count=len(warnings))
    return AssemblyReport(result=result, warnings=warnings)


def assemble_result(stage_outputs: Mapping[str, Any]) -> UnifiedResult:
    """Merge stage outputs into a UnifiedResult. Never raises."""
    return assemble_with_report(stage_outputs).result


def summarize_result(result: UnifiedResult) -> dict[str, Any]:
    """Headline counts for display."""
    created = sum(1 for a in result.issue_actions if a.action == "create")
    return {
        "tone": result.conversation_analysis.overall_tone,
        "issues_created": created,
        "issues_updated": len(result.issue_actions) - created,
        "violations": len(result.agreement_violations),
        "detected_agreements": len(result.detected_agreements),
        "people_analyzed": len(result.person_analyses),
        "messages_flagged": sum(1 for a in result.message_annotations if a.flags),
        "status": result.conversation_state.status,
    }
