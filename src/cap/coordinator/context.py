"""
Context builder.

Assembles one immutable PipelineContext from raw case records. This is the
single validation gate before any stage runs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from cap.exceptions import ValidationError

NO_AGREEMENTS = "No formal agreements on file."
NO_ISSUES = "No existing issues tracked."
UNKNOWN_PERSON = "Unknown"


def _pick(record: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present key, accepting camelCase and snake_case."""
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return default


def _require_mapping(record: Any, kind: str) -> Mapping[str, Any]:
    if not isinstance(record, Mapping):
        raise ValidationError(
            f"{kind} record must be an object",
            context={"field": kind, "type": type(record).__name__},
        )
    if not _pick(record, "id"):
        raise ValidationError(f"{kind} record is missing its id", context={"field": kind})
    return record


@dataclass(frozen=True)
class Participant:
    """A person taking part in the conversation."""

    id: str
    full_name: str
    role: str = "Other"
    role_context: str | None = None
    relationships: tuple[dict[str, Any], ...] = ()

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Participant:
        record = _require_mapping(record, "participant")
        return cls(
            id=str(record["id"]),
            full_name=_pick(record, "fullName", "full_name", "name", default=UNKNOWN_PERSON),
            role=_pick(record, "role", default="Other"),
            role_context=_pick(record, "roleContext", "role_context"),
            relationships=tuple(_pick(record, "relationships", default=()) or ()),
        )


@dataclass(frozen=True)
class Message:
    """One message of the transcript."""

    id: str
    sender_id: str | None
    raw_text: str
    sent_at: str = ""
    receiver_id: str | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Message:
        record = _require_mapping(record, "message")
        return cls(
            id=str(record["id"]),
            sender_id=_pick(record, "senderId", "sender_id"),
            receiver_id=_pick(record, "receiverId", "receiver_id"),
            raw_text=_pick(record, "rawText", "raw_text", "body", default=""),
            sent_at=str(_pick(record, "sentAt", "sent_at", default="")),
        )


@dataclass(frozen=True)
class AgreementItem:
    """An active agreement or rule the conversation is checked against."""

    id: str
    topic: str
    summary: str | None = None
    full_text: str | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> AgreementItem:
        record = _require_mapping(record, "agreement item")
        return cls(
            id=str(record["id"]),
            topic=_pick(record, "topic", default="general"),
            summary=_pick(record, "summary"),
            full_text=_pick(record, "fullText", "full_text"),
        )


@dataclass(frozen=True)
class TrackedIssue:
    """An issue already tracked for the case."""

    id: str
    title: str
    description: str | None = None
    status: str = "open"
    priority: str = "medium"

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> TrackedIssue:
        record = _require_mapping(record, "issue")
        return cls(
            id=str(record["id"]),
            title=_pick(record, "title", default="Untitled issue"),
            description=_pick(record, "description"),
            status=_pick(record, "status", default="open"),
            priority=_pick(record, "priority", default="medium"),
        )


@dataclass(frozen=True)
class PipelineContext:
    """Immutable snapshot of pipeline inputs.

    Built once per run; every stage receives the same reference.
    """

    subject_id: str
    messages: tuple[Message, ...]
    participants: tuple[Participant, ...]
    agreement_items: tuple[AgreementItem, ...] = ()
    existing_issues: tuple[TrackedIssue, ...] = ()
    me_person_id: str | None = None
    user_guidance: str | None = None

    # Pre-rendered blocks shared by the stage request builders
    id_reference: str = ""
    participant_context: str = ""
    message_context: str = ""
    agreement_context: str = NO_AGREEMENTS
    issue_context: str = NO_ISSUES

    _names: dict[str, str] = field(default_factory=dict, repr=False, compare=False)

    def person_name(self, person_id: str | None) -> str:
        """Display name for a participant ID."""
        if not person_id:
            return UNKNOWN_PERSON
        return self._names.get(person_id, UNKNOWN_PERSON)


def _render_participants(
    participants: tuple[Participant, ...], me_person_id: str | None
) -> tuple[str, str]:
    id_reference = "\n".join(f"- {p.full_name} -> {p.id}" for p in participants)

    lines = []
    for p in participants:
        marker = " - THIS IS THE USER" if p.id == me_person_id else ""
        line = f"- {p.full_name} (Role: {p.role}{marker})"
        if p.role_context:
            line += f" - Context: {p.role_context}"
        lines.append(line)
    return id_reference, "\n".join(lines)


def _render_messages(messages: tuple[Message, ...], names: dict[str, str]) -> str:
    blocks = []
    for m in messages:
        sender = names.get(m.sender_id or "", UNKNOWN_PERSON)
        receiver = names.get(m.receiver_id or "", UNKNOWN_PERSON)
        blocks.append(f"[{m.id}] {m.sent_at} - {sender} -> {receiver}:\n{m.raw_text}")
    return "\n\n".join(blocks)


def _render_agreements(items: tuple[AgreementItem, ...]) -> str:
    if not items:
        return NO_AGREEMENTS
    lines = []
    for a in items:
        text = a.summary or (a.full_text or "")[:200]
        lines.append(f"- [{a.id}] {a.topic}: {text}")
    return "\n".join(lines)


def _render_issues(issues: tuple[TrackedIssue, ...]) -> str:
    if not issues:
        return NO_ISSUES
    return "\n\n".join(
        f"- [{i.id}] {i.title} ({i.status}, {i.priority} priority)\n"
        f"  Description: {i.description or 'No description provided'}"
        for i in issues
    )


def build_context(
    subject_id: str,
    messages: Iterable[Mapping[str, Any]],
    participants: Iterable[Mapping[str, Any]],
    agreement_items: Iterable[Mapping[str, Any]] = (),
    existing_issues: Iterable[Mapping[str, Any]] = (),
    me_person_id: str | None = None,
    user_guidance: str | None = None,
) -> PipelineContext:
    """Build the immutable context for one run.

    Args:
        subject_id: The entity being analyzed (conversation ID).
        messages: Raw message records.
        participants: Raw participant records.
        agreement_items: Raw active agreement records.
        existing_issues: Raw tracked issue records.
        me_person_id: Participant ID of the operator, if any.
        user_guidance: Optional free-text operator guidance.

    Returns:
        PipelineContext shared by every stage.

    Raises:
        ValidationError: If the subject or the message list is empty, or a
            record is malformed.
    """
    if not subject_id or not str(subject_id).strip():
        raise ValidationError("Subject ID is required", context={"field": "subject_id"})

    message_records = tuple(Message.from_record(m) for m in (messages or ()))
    if not message_records:
        raise ValidationError(
            "No messages provided for analysis",
            context={"field": "messages", "subject_id": subject_id},
        )

    participant_records = tuple(Participant.from_record(p) for p in (participants or ()))
    agreements = tuple(AgreementItem.from_record(a) for a in (agreement_items or ()))
    issues = tuple(TrackedIssue.from_record(i) for i in (existing_issues or ()))

    names = {p.id: p.full_name for p in participant_records}
    id_reference, participant_context = _render_participants(participant_records, me_person_id)
    guidance = user_guidance.strip() if user_guidance and user_guidance.strip() else None

    return PipelineContext(
        subject_id=str(subject_id),
        messages=message_records,
        participants=participant_records,
        agreement_items=agreements,
        existing_issues=issues,
        me_person_id=me_person_id,
        user_guidance=guidance,
        id_reference=id_reference,
        participant_context=participant_context,
        message_context=_render_messages(message_records, names),
        agreement_context=_render_agreements(agreements),
        issue_context=_render_issues(issues),
        _names=names,
    )
