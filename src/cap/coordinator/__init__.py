"""
Coordinator package.

This package implements the analysis pipeline:
- Context building and the stage registry
- Single-stage execution against the reasoning service
- Run ledger for progress and resume
- Orchestration and event streaming
- Result assembly
"""

from cap.coordinator.assembler import (
    AssemblyReport,
    assemble_result,
    assemble_with_report,
    summarize_result,
)
from cap.coordinator.context import PipelineContext, build_context
from cap.coordinator.events import (
    CompleteEvent,
    ErrorEvent,
    PipelineEvent,
    StageCompleteEvent,
    StageErrorEvent,
    StageStartEvent,
    encode_event,
    event_stream,
    is_terminal,
    parse_event,
)
from cap.coordinator.executor import StageExecutor
from cap.coordinator.ledger import InMemoryRunLedger, RunLedger, SQLiteRunLedger
from cap.coordinator.orchestrator import Orchestrator, PreparedRun, RunRequest
from cap.coordinator.stages import DEFAULT_REGISTRY, Stage, StageRegistry, StageRequest

__all__ = [
    "AssemblyReport",
    "CompleteEvent",
    "DEFAULT_REGISTRY",
    "ErrorEvent",
    "InMemoryRunLedger",
    "Orchestrator",
    "PipelineContext",
    "PipelineEvent",
    "PreparedRun",
    "RunLedger",
    "RunRequest",
    "SQLiteRunLedger",
    "Stage",
    "StageCompleteEvent",
    "StageErrorEvent",
    "StageExecutor",
    "StageRegistry",
    "StageRequest",
    "StageStartEvent",
    "assemble_result",
    "assemble_with_report",
    "build_context",
    "encode_event",
    "event_stream",
    "is_terminal",
    "parse_event",
    "summarize_result",
]
