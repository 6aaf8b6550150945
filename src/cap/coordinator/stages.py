"""
Stage registry.

An ordered, fixed list of named stages. Stage i may read the outputs of
stages 0..i-1 only, and each stage declares exactly which of those it reads.
Request construction is dispatched through the registry entry, so adding,
removing or reordering stages is a registry-only change.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping, Sequence

from cap.coordinator import prompts
from cap.coordinator.context import PipelineContext
from cap.coordinator.outputs import (
    AgreementChecksOutput,
    ClaimsVerificationOutput,
    ConversationMapOutput,
    IssueDetectionOutput,
    IssueLinkingOutput,
    MessageAnnotationOutput,
    PersonAnalysisOutput,
    Record,
    SynthesisOutput,
)
from cap.exceptions import ValidationError

StageOutputs = Mapping[str, Mapping[str, Any]]


@dataclass(frozen=True)
class StageRequest:
    """Prompt payload for one stage call."""

    stage_id: str
    system_prompt: str
    user_prompt: str

    def to_messages(self) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": self.user_prompt},
        ]


RequestBuilder = Callable[[PipelineContext, StageOutputs], StageRequest]


@dataclass(frozen=True)
class Stage:
    """Static stage descriptor."""

    id: str
    display_name: str
    ordinal: int
    build_request: RequestBuilder
    output_model: type[Record]
    requires: tuple[str, ...] = ()


@dataclass(frozen=True)
class StageSpec:
    """Stage definition before an ordinal is assigned."""

    id: str
    display_name: str
    build_request: RequestBuilder
    output_model: type[Record]
    requires: tuple[str, ...] = ()


class StageRegistry:
    """Constant ordered sequence of stages.

    Ordinals are assigned from position. Construction rejects duplicate IDs
    and any dependency on a stage that is not strictly earlier.
    """

    def __init__(self, specs: Sequence[StageSpec]) -> None:
        stages: list[Stage] = []
        seen: set[str] = set()
        for ordinal, spec in enumerate(specs):
            if spec.id in seen:
                raise ValueError(f"Duplicate stage id: {spec.id}")
            for dep in spec.requires:
                if dep not in seen:
                    raise ValueError(
                        f"Stage {spec.id} requires {dep}, which is not an earlier stage"
                    )
            seen.add(spec.id)
            stages.append(
                Stage(
                    id=spec.id,
                    display_name=spec.display_name,
                    ordinal=ordinal,
                    build_request=spec.build_request,
                    output_model=spec.output_model,
                    requires=tuple(spec.requires),
                )
            )
        if not stages:
            raise ValueError("A registry needs at least one stage")

        self._stages: tuple[Stage, ...] = tuple(stages)
        self._index = {stage.id: stage.ordinal for stage in self._stages}

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    def __contains__(self, stage_id: object) -> bool:
        return stage_id in self._index

    def __getitem__(self, index: int) -> Stage:
        return self._stages[index]

    def total_stages(self) -> int:
        return len(self._stages)

    def ids(self) -> list[str]:
        return [stage.id for stage in self._stages]

    def index_of(self, stage_id: str) -> int:
        """Position of a stage.

        Raises:
            ValidationError: If the stage ID is not registered.
        """
        try:
            return self._index[stage_id]
        except KeyError:
            raise ValidationError(
                f"Unknown stage: {stage_id}",
                context={"field": "resume_from_stage", "value": stage_id},
            ) from None

    def get(self, stage_id: str) -> Stage:
        return self._stages[self.index_of(stage_id)]

    def stages_before(self, index: int) -> list[str]:
        """IDs of every stage strictly before ``index``."""
        return [stage.id for stage in self._stages[:index]]


# ============== Request builders ==============

def _base_context(context: PipelineContext) -> str:
    return (
        "### Person ID Reference (for personId fields only):\n"
        f"{context.id_reference}\n\n"
        "### Participants:\n"
        f"{context.participant_context}\n\n"
        "### Messages:\n"
        f"{context.message_context}\n"
    )


def _system(task: str) -> str:
    return f"{prompts.BASE_SYSTEM}\n\nYour task: {task}"


def _user(context: PipelineContext, *sections: str, schema: str) -> str:
    body = [_base_context(context), *sections, f"Return JSON:\n{schema}"]
    return "\n".join(part for part in body if part)


def _summary(prior: StageOutputs) -> str:
    return str(prior.get("conversation_map", {}).get("summary") or "Not available")


def _claims_json(prior: StageOutputs) -> str:
    claims = prior.get("claims_verification", {}).get("claimsLedger") or []
    return json.dumps(claims, indent=2, ensure_ascii=False)


def build_conversation_map(context: PipelineContext, prior: StageOutputs) -> StageRequest:
    return StageRequest(
        stage_id="conversation_map",
        system_prompt=_system(prompts.CONVERSATION_MAP_TASK),
        user_prompt=_user(
            context,
            "Analyze this conversation and produce a summary.\n",
            schema=prompts.CONVERSATION_MAP_SCHEMA,
        ),
    )


def build_claims_verification(context: PipelineContext, prior: StageOutputs) -> StageRequest:
    return StageRequest(
        stage_id="claims_verification",
        system_prompt=_system(prompts.CLAIMS_TASK),
        user_prompt=_user(context, schema=prompts.CLAIMS_SCHEMA),
    )


def build_issue_linking(context: PipelineContext, prior: StageOutputs) -> StageRequest:
    return StageRequest(
        stage_id="issue_linking",
        system_prompt=_system(prompts.ISSUE_LINKING_TASK),
        user_prompt=_user(
            context,
            f"### Existing Issues to Evaluate:\n{context.issue_context}\n",
            schema=prompts.ISSUE_LINKING_SCHEMA,
        ),
    )


def build_issue_detection(context: PipelineContext, prior: StageOutputs) -> StageRequest:
    linked = [
        str(action.get("issueId"))
        for action in prior.get("issue_linking", {}).get("issueActions") or []
        if isinstance(action, Mapping) and action.get("issueId")
    ]
    return StageRequest(
        stage_id="issue_detection",
        system_prompt=_system(prompts.ISSUE_DETECTION_TASK),
        user_prompt=_user(
            context,
            "### Already-Linked Existing Issue IDs (do not duplicate these):\n"
            f"{', '.join(linked) or 'None'}\n",
            f"### Conversation Summary:\n{_summary(prior)}\n",
            schema=prompts.ISSUE_DETECTION_SCHEMA,
        ),
    )


def build_agreement_checks(context: PipelineContext, prior: StageOutputs) -> StageRequest:
    return StageRequest(
        stage_id="agreement_checks",
        system_prompt=_system(prompts.AGREEMENT_TASK),
        user_prompt=_user(
            context,
            f"### Active Agreements:\n{context.agreement_context}\n",
            schema=prompts.AGREEMENT_SCHEMA,
        ),
    )


def build_person_analysis(context: PipelineContext, prior: StageOutputs) -> StageRequest:
    return StageRequest(
        stage_id="person_analysis",
        system_prompt=_system(prompts.PERSON_TASK),
        user_prompt=_user(
            context,
            f"### Conversation Summary:\n{_summary(prior)}\n",
            f"### Claims Ledger:\n{_claims_json(prior)}\n",
            schema=prompts.PERSON_SCHEMA,
        ),
    )


def build_message_annotation(context: PipelineContext, prior: StageOutputs) -> StageRequest:
    return StageRequest(
        stage_id="message_annotation",
        system_prompt=_system(prompts.ANNOTATION_TASK),
        user_prompt=_user(
            context,
            f"### Claims Ledger:\n{_claims_json(prior)}\n",
            schema=prompts.ANNOTATION_SCHEMA,
        ),
    )


def build_synthesis(context: PipelineContext, prior: StageOutputs) -> StageRequest:
    issue_count = sum(
        len(prior.get(stage, {}).get("issueActions") or [])
        for stage in ("issue_linking", "issue_detection")
    )
    violations = len(prior.get("agreement_checks", {}).get("agreementViolations") or [])
    high_concerns = [
        concern
        for analysis in prior.get("person_analysis", {}).get("personAnalyses") or []
        for concern in (analysis.get("concerns") or [])
        if isinstance(concern, Mapping) and concern.get("severity") == "high"
    ]
    analysis_so_far = (
        "### Analysis So Far:\n"
        f"- Summary: {_summary(prior)}\n"
        f"- Issues Found: {issue_count}\n"
        f"- Violations: {violations}\n"
        f"- Key Concerns: {json.dumps(high_concerns, ensure_ascii=False)}\n"
    )
    guidance = (
        f"### User-Flagged Areas:\n{context.user_guidance}\n" if context.user_guidance else ""
    )
    return StageRequest(
        stage_id="synthesis",
        system_prompt=_system(prompts.SYNTHESIS_TASK),
        user_prompt=_user(context, analysis_so_far, guidance, schema=prompts.SYNTHESIS_SCHEMA),
    )


DEFAULT_STAGES: tuple[StageSpec, ...] = (
    StageSpec("conversation_map", "Mapping Conversation",
              build_conversation_map, ConversationMapOutput),
    StageSpec("claims_verification", "Verifying Claims",
              build_claims_verification, ClaimsVerificationOutput),
    StageSpec("issue_linking", "Linking Issues",
              build_issue_linking, IssueLinkingOutput),
    StageSpec("issue_detection", "Detecting New Issues",
              build_issue_detection, IssueDetectionOutput,
              requires=("conversation_map", "issue_linking")),
    StageSpec("agreement_checks", "Checking Agreements",
              build_agreement_checks, AgreementChecksOutput),
    StageSpec("person_analysis", "Analyzing Participants",
              build_person_analysis, PersonAnalysisOutput,
              requires=("conversation_map", "claims_verification")),
    StageSpec("message_annotation", "Annotating Messages",
              build_message_annotation, MessageAnnotationOutput,
              requires=("claims_verification",)),
    StageSpec("synthesis", "Synthesizing Results",
              build_synthesis, SynthesisOutput,
              requires=(
                  "conversation_map",
                  "claims_verification",
                  "issue_linking",
                  "issue_detection",
                  "agreement_checks",
                  "person_analysis",
                  "message_annotation",
              )),
)

DEFAULT_REGISTRY = StageRegistry(DEFAULT_STAGES)
