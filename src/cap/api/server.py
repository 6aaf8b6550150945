"""
Case Analysis API
Real-time streaming of the analysis pipeline over server-sent events.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cap import __version__
from cap.config import Settings, get_settings
from cap.coordinator.events import PipelineEvent, event_stream
from cap.coordinator.executor import StageExecutor
from cap.coordinator.ledger import SQLiteRunLedger
from cap.coordinator.orchestrator import Orchestrator, PreparedRun, RunRequest
from cap.exceptions import PersistenceError, RunInProgressError, ValidationError
from cap.llm import create_reasoning_client
from cap.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ============== Types ==============

class RunPayload(BaseModel):
    """Body of POST /analysis/runs (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    subject_id: str = Field(
        validation_alias=AliasChoices("subjectId", "conversationId", "subject_id"),
        min_length=1,
    )
    messages: list[dict[str, Any]] = Field(default_factory=list)
    participants: list[dict[str, Any]] = Field(default_factory=list)
    agreement_items: list[dict[str, Any]] = Field(default_factory=list)
    existing_issues: list[dict[str, Any]] = Field(default_factory=list)
    me_person_id: str | None = None
    user_guidance: str | None = None
    resume_from_stage: str | None = None
    prior_outputs: dict[str, dict[str, Any]] = Field(default_factory=dict)

    def to_request(self) -> RunRequest:
        return RunRequest(
            subject_id=self.subject_id,
            messages=self.messages,
            participants=self.participants,
            agreement_items=self.agreement_items,
            existing_issues=self.existing_issues,
            me_person_id=self.me_person_id,
            user_guidance=self.user_guidance,
            resume_from_stage=self.resume_from_stage,
            prior_outputs=self.prior_outputs,
        )


# ============== Run driving ==============

async def _drive(
    orchestrator: Orchestrator,
    prepared: PreparedRun,
    queue: asyncio.Queue[PipelineEvent | None],
) -> None:
    """Run to the end regardless of whether anyone is still listening."""
    try:
        async for event in orchestrator.execute(prepared):
            queue.put_nowait(event)
    finally:
        queue.put_nowait(None)


async def _drain(queue: asyncio.Queue[PipelineEvent | None]) -> AsyncIterator[PipelineEvent]:
    while True:
        event = await queue.get()
        if event is None:
            return
        yield event


def _orchestrator(request: Request) -> Orchestrator:
    orchestrator = request.app.state.orchestrator
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Pipeline not ready")
    return orchestrator


# ============== App ==============

def create_app(
    orchestrator: Orchestrator | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Build the API application.

    Args:
        orchestrator: Pre-built orchestrator. When omitted, one is built from
            settings at startup with a SQLite ledger.
        settings: Application settings. Loaded from the environment when
            neither argument is given.

    Returns:
        Configured FastAPI app.
    """
    if orchestrator is None and settings is None:
        settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned_client = None
        if app.state.orchestrator is None:
            assert settings is not None
            owned_client = create_reasoning_client(settings)
            app.state.orchestrator = Orchestrator(
                StageExecutor.from_settings(owned_client, settings),
                SQLiteRunLedger.from_settings(settings),
            )

        ledger = app.state.orchestrator.ledger
        await ledger.init()
        logger.info("API started", version=__version__)
        try:
            yield
        finally:
            for task in list(app.state.active_runs.values()):
                task.cancel()
            await ledger.close()
            if owned_client is not None:
                await owned_client.close()

    app = FastAPI(title="Case Analysis API", version=__version__, lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.active_runs = {}

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if settings else DEFAULT_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    # ============== API Routes ==============

    @app.get("/")
    async def root(request: Request) -> dict[str, Any]:
        return {
            "name": "Case Analysis API",
            "version": __version__,
            "status": "operational",
            "active_runs": len(request.app.state.active_runs),
        }

    @app.post("/analysis/runs")
    async def start_run(payload: RunPayload, request: Request) -> StreamingResponse:
        """Start or resume a run and stream its progress via SSE."""
        orchestrator = _orchestrator(request)
        try:
            prepared = await orchestrator.prepare(payload.to_request())
        except RunInProgressError as e:
            raise HTTPException(status_code=409, detail=e.message) from e
        except ValidationError as e:
            raise HTTPException(
                status_code=400, detail={"message": e.message, "context": e.context}
            ) from e
        except PersistenceError as e:
            logger.error("Ledger unavailable", error=str(e))
            raise HTTPException(status_code=503, detail="Run ledger unavailable") from e

        queue: asyncio.Queue[PipelineEvent | None] = asyncio.Queue()
        active_runs: dict[str, asyncio.Task] = request.app.state.active_runs
        task = asyncio.create_task(_drive(orchestrator, prepared, queue))
        active_runs[prepared.run_id] = task
        task.add_done_callback(lambda _: active_runs.pop(prepared.run_id, None))

        return StreamingResponse(
            event_stream(_drain(queue)),
            media_type="text/event-stream",
            headers={**STREAM_HEADERS, "X-Run-Id": prepared.run_id},
        )

    @app.get("/analysis/runs/{run_id}")
    async def get_run(run_id: str, request: Request) -> dict[str, Any]:
        """Get the ledger record of a run."""
        run = await _orchestrator(request).ledger.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        payload = run.to_dict()
        payload["active"] = run_id in request.app.state.active_runs
        return payload

    @app.get("/subjects/{subject_id}/runs")
    async def get_subject_runs(
        subject_id: str,
        request: Request,
        limit: int = Query(20, ge=1, le=100),
    ) -> dict[str, Any]:
        """List a subject's runs, newest first."""
        runs = await _orchestrator(request).ledger.list_runs(subject_id)
        return {"subject_id": subject_id, "runs": [r.to_dict() for r in runs[:limit]]}

    return app


# ============== Main ==============

def main(host: str = "127.0.0.1", port: int = 8000) -> None:
    import uvicorn

    uvicorn.run("cap.api.server:create_app", factory=True, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
