"""
Stage output records.

Each stage's structured response is validated against one of these models.
Top-level fields a stage cannot do without are required; every nested item
is permissive so one malformed entry never fails a whole stage. Defaulting
and sanitizing of nested items happens once, in the result assembler.

Wire names are camelCase; Python attributes are snake_case.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class Record(BaseModel):
    """Base for all stage records: camelCase aliases, extra keys kept."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # null means "not provided": fall back to the field default
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    def dump(self) -> dict[str, Any]:
        """Serialize with wire (camelCase) names."""
        return self.model_dump(mode="json", by_alias=True)


# ============== Nested items ==============

class PersonContribution(Record):
    person_id: str | None = None
    contribution_type: str | None = None
    contribution_description: str | None = None
    contribution_valence: str | None = None


class IssueAction(Record):
    action: str = "create"
    issue_id: str | None = None
    title: str | None = None
    description: str | None = None
    priority: str | None = None
    status: str | None = None
    linked_message_ids: list[str] = Field(default_factory=list)
    involved_person_ids: list[str] | None = None
    person_contributions: list[PersonContribution] | None = None
    reasoning: str | None = None


class Claim(Record):
    claim_text: str | None = None
    speaker_person_id: str | None = None
    category: str | None = None
    evidence: str | None = None
    verification_status: str | None = None
    notes: str | None = None


class AgreementViolation(Record):
    agreement_item_id: str | None = None
    violation_type: str | None = None
    description: str | None = None
    message_ids: list[str] = Field(default_factory=list)
    severity: str | None = None


class DetectedAgreement(Record):
    topic: str | None = None
    summary: str | None = None
    full_text: str | None = None
    message_ids: list[str] = Field(default_factory=list)
    is_temporary: bool | None = None
    condition_text: str | None = None
    potential_override_topics: list[str] = Field(default_factory=list)
    confidence: str | None = None
    reasoning: str | None = None


class PersonConcern(Record):
    type: str | None = None
    description: str | None = None
    evidence: list[str] = Field(default_factory=list)
    severity: str | None = None


class PersonAnalysis(Record):
    person_id: str | None = None
    behavioral_assessment: dict[str, Any] | None = None
    notable_patterns: dict[str, Any] | None = None
    interaction_recommendations: list[str] = Field(default_factory=list)
    concerns: list[PersonConcern] = Field(default_factory=list)


class MessageFlag(Record):
    type: str | None = None
    description: str | None = None
    attributed_to_person_id: str | None = None
    severity: str | None = None
    evidence: str | None = None
    impact: str | None = None


class MessageAnnotation(Record):
    message_id: str | None = None
    flags: list[MessageFlag] = Field(default_factory=list)


class ConversationState(Record):
    status: str = "open"
    pending_responder_name: str | None = None
    reasoning: str = ""
    pending_action_summary: str | None = None


class AlternativeInterpretation(Record):
    finding_description: str | None = None
    alternative_explanation: str | None = None


class MissingContext(Record):
    description: str | None = None
    how_it_could_change_conclusions: str | None = None


# ============== Stage outputs ==============

class ConversationMapOutput(Record):
    summary: str
    overall_tone: str = "neutral"
    key_topics: list[str] = Field(default_factory=list)
    key_asks: list[str] = Field(default_factory=list)
    decisions_or_commitments: list[str] = Field(default_factory=list)


class ClaimsVerificationOutput(Record):
    claims_ledger: list[Claim]


class IssueLinkingOutput(Record):
    issue_actions: list[IssueAction]


class IssueDetectionOutput(Record):
    issue_actions: list[IssueAction]


class AgreementChecksOutput(Record):
    agreement_violations: list[AgreementViolation]
    detected_agreements: list[DetectedAgreement] = Field(default_factory=list)


class PersonAnalysisOutput(Record):
    person_analyses: list[PersonAnalysis]


class MessageAnnotationOutput(Record):
    message_annotations: list[MessageAnnotation]


class SynthesisOutput(Record):
    conversation_state: ConversationState
    alternative_interpretations: list[AlternativeInterpretation] = Field(default_factory=list)
    missing_context: list[MissingContext] = Field(default_factory=list)
    topic_category_slugs: list[str] = Field(default_factory=list)


# ============== Unified result ==============

class ConversationAnalysis(Record):
    summary: str = "Analysis incomplete"
    overall_tone: str = "neutral"
    key_topics: list[str] = Field(default_factory=list)


class UnifiedResult(Record):
    """Merged output of every stage."""

    conversation_analysis: ConversationAnalysis = Field(default_factory=ConversationAnalysis)
    claims_ledger: list[Claim] = Field(default_factory=list)
    conversation_state: ConversationState = Field(default_factory=ConversationState)
    alternative_interpretations: list[AlternativeInterpretation] = Field(default_factory=list)
    missing_context: list[MissingContext] = Field(default_factory=list)
    topic_category_slugs: list[str] = Field(default_factory=list)
    issue_actions: list[IssueAction] = Field(default_factory=list)
    agreement_violations: list[AgreementViolation] = Field(default_factory=list)
    detected_agreements: list[DetectedAgreement] = Field(default_factory=list)
    person_analyses: list[PersonAnalysis] = Field(default_factory=list)
    message_annotations: list[MessageAnnotation] = Field(default_factory=list)
