"""
Pipeline events and their wire framing.

Each event is sent as one server-sent-events frame:

    data: {"type": "stage_start", ...}\\n\\n

Frames are independently parseable, and exactly one ``complete`` or ``error``
(or a ``stage_error``) ends a run's sequence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, ClassVar, Mapping, Union

import orjson

from cap.exceptions import ParseError


@dataclass(frozen=True)
class StageStartEvent:
    type: ClassVar[str] = "stage_start"

    stage: str
    stage_name: str
    stage_number: int
    total_stages: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "stage": self.stage,
            "stageName": self.stage_name,
            "stageNumber": self.stage_number,
            "totalStages": self.total_stages,
        }


@dataclass(frozen=True)
class StageCompleteEvent:
    type: ClassVar[str] = "stage_complete"

    stage: str
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "stage": self.stage, "durationMs": self.duration_ms}


@dataclass(frozen=True)
class StageErrorEvent:
    type: ClassVar[str] = "stage_error"

    stage: str
    message: str
    completed_stages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "stage": self.stage,
            "message": self.message,
            "completedStages": list(self.completed_stages),
        }


@dataclass(frozen=True)
class CompleteEvent:
    type: ClassVar[str] = "complete"

    result: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "result": self.result}


@dataclass(frozen=True)
class ErrorEvent:
    type: ClassVar[str] = "error"

    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message}


PipelineEvent = Union[StageStartEvent, StageCompleteEvent, StageErrorEvent, CompleteEvent, ErrorEvent]

TERMINAL_TYPES = frozenset({StageErrorEvent.type, CompleteEvent.type, ErrorEvent.type})


def is_terminal(event: PipelineEvent) -> bool:
    """Whether no further events follow this one."""
    return event.type in TERMINAL_TYPES


def encode_event(event: PipelineEvent) -> bytes:
    """Frame one event for the wire."""
    return b"data: " + orjson.dumps(event.to_dict()) + b"\n\n"


def _field(data: Mapping[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    if key not in data:
        raise ParseError(f"Event is missing '{key}'", context={"type": data.get("type")})
    value = data[key]
    if not isinstance(value, kind) or (isinstance(value, bool) and kind is not bool):
        raise ParseError(
            f"Event field '{key}' has the wrong type",
            context={"type": data.get("type"), "field": key},
        )
    return value


def _optional_field(
    data: Mapping[str, Any], key: str, kind: type | tuple[type, ...], default: Any
) -> Any:
    if data.get(key) is None:
        return default
    return _field(data, key, kind)


def parse_event(data: Any) -> PipelineEvent:
    """Build a typed event from a decoded frame payload.

    Raises:
        ParseError: If the payload is not an object, its type is unknown, or
            a required field is missing.
    """
    if not isinstance(data, Mapping):
        raise ParseError("Event payload is not an object")

    event_type = data.get("type")
    if event_type == StageStartEvent.type:
        stage = _field(data, "stage", str)
        return StageStartEvent(
            stage=stage,
            stage_name=_optional_field(data, "stageName", str, None) or stage,
            stage_number=_field(data, "stageNumber", int),
            total_stages=_field(data, "totalStages", int),
        )
    if event_type == StageCompleteEvent.type:
        return StageCompleteEvent(
            stage=_field(data, "stage", str),
            duration_ms=int(_optional_field(data, "durationMs", (int, float), 0)),
        )
    if event_type == StageErrorEvent.type:
        completed = _optional_field(data, "completedStages", list, [])
        if not all(isinstance(stage_id, str) for stage_id in completed):
            raise ParseError(
                "Event field 'completedStages' has the wrong type",
                context={"type": event_type, "field": "completedStages"},
            )
        return StageErrorEvent(
            stage=_field(data, "stage", str),
            message=str(data.get("message") or "Stage failed"),
            completed_stages=list(completed),
        )
    if event_type == CompleteEvent.type:
        return CompleteEvent(result=_field(data, "result", dict))
    if event_type == ErrorEvent.type:
        return ErrorEvent(message=str(data.get("message") or "Unknown error"))

    raise ParseError(f"Unknown event type: {event_type!r}", context={"type": event_type})


async def event_stream(events: AsyncIterable[PipelineEvent]) -> AsyncIterator[bytes]:
    """Encode events one frame per yield so each is flushed on its own."""
    async for event in events:
        yield encode_event(event)
