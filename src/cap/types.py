"""
Core types for the case analysis pipeline.

This module defines:
- RunStatus enum for the run lifecycle
- AnalysisRun, the mutable ledger record of one analysis attempt
- Helper functions for ID generation and timestamps
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from uuid6 import uuid7


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7.

    Args:
        prefix: Optional prefix for the ID (e.g., "run").

    Returns:
        A unique ID string, optionally prefixed.
    """
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    """Lifecycle states of an analysis run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether the run has stopped (completed or failed)."""
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


@dataclass
class AnalysisRun:
    """One attempt to analyze a subject.

    ``stage_outputs`` keeps insertion order equal to execution order. Entries
    are appended or overwritten for the most recently attempted stage and
    never removed.
    """

    id: str
    subject_id: str
    status: RunStatus = RunStatus.PENDING
    current_stage: str | None = None
    stage_outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    failure_stage: str | None = None
    failure_reason: str | None = None
    attempts: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None

    @classmethod
    def create(cls, subject_id: str) -> AnalysisRun:
        """Factory method for a fresh pending run."""
        now = utc_now()
        return cls(
            id=generate_id("run"),
            subject_id=subject_id,
            created_at=now,
            updated_at=now,
        )

    @property
    def completed_stages(self) -> list[str]:
        """Stage IDs with a persisted output, in execution order."""
        return list(self.stage_outputs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-friendly dict."""
        return {
            "id": self.id,
            "subjectId": self.subject_id,
            "status": self.status.value,
            "currentStage": self.current_stage,
            "completedStages": self.completed_stages,
            "stageOutputs": self.stage_outputs,
            "failureStage": self.failure_stage,
            "failureReason": self.failure_reason,
            "attempts": self.attempts,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
