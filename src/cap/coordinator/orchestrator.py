"""
Pipeline orchestrator.

Drives a run through the stage registry:

    Idle -> Running(stage i) -> Running(i + 1) | Failed | Completed

Every validation happens in prepare(), before an event stream exists. After
that, execute() reports every outcome as an event and never raises. Stages
run strictly in order, each stage's output is persisted before the next one
starts, and the first failure ends the run. A failed run resumes at the
failed stage with the persisted outputs of the stages before it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping

from pydantic import ValidationError as PydanticValidationError

from cap.coordinator.assembler import assemble_result
from cap.coordinator.context import PipelineContext, build_context
from cap.coordinator.events import (
    CompleteEvent,
    ErrorEvent,
    PipelineEvent,
    StageCompleteEvent,
    StageErrorEvent,
    StageStartEvent,
)
from cap.coordinator.executor import StageExecutor
from cap.coordinator.ledger import RunLedger
from cap.coordinator.stages import StageRegistry
from cap.exceptions import (
    CAPError,
    ParseError,
    PersistenceError,
    RunInProgressError,
    UpstreamServiceError,
    ValidationError,
)
from cap.logging import get_logger, log_context
from cap.types import AnalysisRun, RunStatus

logger = get_logger(__name__)


@dataclass
class RunRequest:
    """Caller input for one analysis run."""

    subject_id: str
    messages: list[dict[str, Any]]
    participants: list[dict[str, Any]] = field(default_factory=list)
    agreement_items: list[dict[str, Any]] = field(default_factory=list)
    existing_issues: list[dict[str, Any]] = field(default_factory=list)
    me_person_id: str | None = None
    user_guidance: str | None = None
    resume_from_stage: str | None = None
    prior_outputs: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> RunRequest:
        """Build a request from a camelCase (or snake_case) JSON payload.

        Raises:
            ValidationError: If the payload is not an object or a collection
                field has the wrong shape.
        """
        if not isinstance(payload, Mapping):
            raise ValidationError("Request body must be an object")

        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if payload.get(key) is not None:
                    return payload[key]
            return default

        def as_list(name: str, *keys: str) -> list[dict[str, Any]]:
            value = pick(*keys, default=[])
            if not isinstance(value, list):
                raise ValidationError(f"{name} must be a list", context={"field": name})
            return value

        prior = pick("priorOutputs", "prior_outputs", default={})
        if not isinstance(prior, Mapping):
            raise ValidationError("priorOutputs must be an object", context={"field": "priorOutputs"})

        return cls(
            subject_id=str(pick("subjectId", "subject_id", "conversationId", "conversation_id", default="")),
            messages=as_list("messages", "messages"),
            participants=as_list("participants", "participants"),
            agreement_items=as_list("agreementItems", "agreementItems", "agreement_items"),
            existing_issues=as_list("existingIssues", "existingIssues", "existing_issues"),
            me_person_id=pick("mePersonId", "me_person_id"),
            user_guidance=pick("userGuidance", "user_guidance"),
            resume_from_stage=pick("resumeFromStage", "resume_from_stage"),
            prior_outputs=dict(prior),
        )


@dataclass
class PreparedRun:
    """A validated run ready to execute."""

    run: AnalysisRun
    context: PipelineContext
    start_index: int
    prior_outputs: dict[str, dict[str, Any]]
    is_resume: bool
    supplied_outputs: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def run_id(self) -> str:
        return self.run.id


class Orchestrator:
    """Sequences stages, persists progress and emits events."""

    def __init__(
        self,
        executor: StageExecutor,
        ledger: RunLedger,
        registry: StageRegistry | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            executor: Runs individual stages.
            ledger: Run persistence.
            registry: Stage order. Defaults to the executor's registry.
        """
        self.executor = executor
        self.ledger = ledger
        self.registry = registry if registry is not None else executor.registry

    async def prepare(self, request: RunRequest) -> PreparedRun:
        """Validate a request and resolve where the run starts.

        Raises:
            ValidationError: If inputs are empty or malformed, the resume
                stage is unknown, or a resume lacks prior outputs.
            RunInProgressError: If the subject's run is already executing.
            PersistenceError: If the ledger cannot be read.
        """
        context = build_context(
            subject_id=request.subject_id,
            messages=request.messages,
            participants=request.participants,
            agreement_items=request.agreement_items,
            existing_issues=request.existing_issues,
            me_person_id=request.me_person_id,
            user_guidance=request.user_guidance,
        )

        requested_index = None
        if request.resume_from_stage:
            requested_index = self.registry.index_of(request.resume_from_stage)

        run, is_resume = await self.ledger.get_or_create_run(context.subject_id)

        # Stale running runs come back from the ledger already failed
        if run.status == RunStatus.RUNNING:
            raise RunInProgressError(
                "An analysis for this subject is already running",
                context={"subject_id": context.subject_id, "run_id": run.id},
            )

        if not is_resume:
            start_index = 0
        elif requested_index is not None:
            start_index = requested_index
        elif run.failure_stage and run.failure_stage in self.registry:
            start_index = self.registry.index_of(run.failure_stage)
        else:
            start_index = self._first_missing(run.stage_outputs)

        prior_outputs: dict[str, dict[str, Any]] = {}
        supplied: dict[str, dict[str, Any]] = {}
        missing = []
        for stage_id in self.registry.stages_before(start_index):
            output = run.stage_outputs.get(stage_id)
            if output is None and request.prior_outputs.get(stage_id) is not None:
                output = supplied[stage_id] = self._validate_supplied(
                    stage_id, request.prior_outputs[stage_id]
                )
            if output is None:
                missing.append(stage_id)
            else:
                prior_outputs[stage_id] = output

        if missing:
            raise ValidationError(
                "Cannot resume without the outputs of earlier stages",
                context={
                    "run_id": run.id,
                    "resume_from_stage": self.registry[start_index].id,
                    "missing": missing,
                },
            )

        logger.info(
            "Run prepared",
            run_id=run.id,
            subject_id=context.subject_id,
            is_resume=is_resume,
            start_stage=self.registry[start_index].id,
        )
        return PreparedRun(
            run=run,
            context=context,
            start_index=start_index,
            prior_outputs=prior_outputs,
            is_resume=is_resume,
            supplied_outputs=supplied,
        )

    def _validate_supplied(self, stage_id: str, output: Any) -> dict[str, Any]:
        """Check a caller-supplied stage output against the stage's record."""
        stage = self.registry.get(stage_id)
        try:
            return stage.output_model.model_validate(output).dump()
        except PydanticValidationError as e:
            raise ValidationError(
                f"Supplied output for {stage_id} is invalid",
                context={
                    "stage": stage_id,
                    "fields": [".".join(str(p) for p in err["loc"]) for err in e.errors()],
                },
            ) from e

    def _first_missing(self, stage_outputs: Mapping[str, Any]) -> int:
        for stage in self.registry:
            if stage.id not in stage_outputs:
                return stage.ordinal
        # Every output exists but the run never completed: redo the last stage
        return len(self.registry) - 1

    async def execute(self, prepared: PreparedRun) -> AsyncIterator[PipelineEvent]:
        """Run the stages of a prepared run, yielding progress events.

        Never raises. The sequence always ends with exactly one terminal
        event: ``complete``, ``stage_error`` or ``error``.
        """
        run_id = prepared.run_id
        outputs = dict(prepared.prior_outputs)
        completed = list(outputs)
        total = self.registry.total_stages()
        current: str | None = None

        with log_context(run_id=run_id, subject_id=prepared.context.subject_id):
            try:
                for stage in list(self.registry)[prepared.start_index:]:
                    current = None
                    with log_context(stage=stage.id):
                        await self.ledger.set_current_stage(
                            run_id,
                            stage.id,
                            begin_attempt=stage.ordinal == prepared.start_index,
                        )
                        if stage.ordinal == prepared.start_index:
                            await self._record_supplied(run_id, prepared.supplied_outputs)
                        current = stage.id
                        yield StageStartEvent(
                            stage=stage.id,
                            stage_name=stage.display_name,
                            stage_number=stage.ordinal + 1,
                            total_stages=total,
                        )

                        started = time.monotonic()
                        try:
                            output = await self.executor.execute(
                                stage.id, prepared.context, outputs
                            )
                        except (UpstreamServiceError, ParseError) as e:
                            logger.error("Stage failed", error=str(e))
                            await self._fail_quietly(run_id, str(e), stage.id)
                            yield StageErrorEvent(
                                stage=stage.id,
                                message=e.message,
                                completed_stages=list(completed),
                            )
                            return

                        await self.ledger.record_stage_output(run_id, stage.id, output)
                        outputs[stage.id] = output
                        completed.append(stage.id)
                        duration_ms = int((time.monotonic() - started) * 1000)
                        logger.info("Stage complete", duration_ms=duration_ms)
                        yield StageCompleteEvent(stage=stage.id, duration_ms=duration_ms)

                current = None
                result = assemble_result(outputs)
                await self.ledger.complete(run_id)
                logger.info("Run complete", stages=len(completed))
                yield CompleteEvent(result=result.dump())

            except RunInProgressError as e:
                # Another execution claimed this run first; leave it untouched
                logger.warning("Run claimed by another execution", error=str(e))
                yield ErrorEvent(message=e.message)

            except PersistenceError as e:
                logger.error("Ledger write failed", stage=current, error=str(e))
                await self._fail_quietly(run_id, str(e), current)
                if current is not None:
                    yield StageErrorEvent(
                        stage=current, message=e.message, completed_stages=list(completed)
                    )
                else:
                    yield ErrorEvent(message=e.message)

            except Exception as e:
                logger.exception("Unexpected pipeline failure", stage=current)
                await self._fail_quietly(run_id, f"Unexpected error: {e}", current)
                yield ErrorEvent(message=str(e) or e.__class__.__name__)

    async def _record_supplied(
        self, run_id: str, supplied: Mapping[str, dict[str, Any]]
    ) -> None:
        """Write caller-supplied earlier outputs into the claimed run."""
        for stage_id, output in supplied.items():
            await self.ledger.record_stage_output(run_id, stage_id, output)
        if supplied:
            logger.info("Supplied outputs recorded", stages=list(supplied))

    async def _fail_quietly(self, run_id: str, reason: str, stage_id: str | None) -> None:
        """Mark a run failed; a ledger error here is logged, not raised."""
        try:
            await self.ledger.fail(run_id, reason, stage_id)
        except CAPError as e:
            logger.error("Could not mark run as failed", run_id=run_id, error=str(e))

    async def run(self, request: RunRequest) -> AsyncIterator[PipelineEvent]:
        """Prepare and execute in one call.

        Validation errors raise before the first event.
        """
        prepared = await self.prepare(request)
        return self.execute(prepared)
