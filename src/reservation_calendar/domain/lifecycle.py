"""Reservation lifecycle rules."""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from enum import Enum

from reservation_calendar.domain.errors import InvalidTransition, ValidationError
from reservation_calendar.domain.records import RecordStatus, StatusHistoryEntry


class LifecycleAction(str, Enum):
    """Writes a reservation can receive."""

    SAVE = "save"
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    DELETE = "delete"
    RESTORE = "restore"
    RESUBMIT = "resubmit"


_EDITABLE_STATUSES = {RecordStatus.DRAFT, RecordStatus.PENDING, RecordStatus.APPROVED}

ALLOWED_FROM: dict[LifecycleAction, frozenset[RecordStatus]] = {
    LifecycleAction.SAVE: frozenset(_EDITABLE_STATUSES),
    LifecycleAction.SUBMIT: frozenset({RecordStatus.DRAFT}),
    LifecycleAction.APPROVE: frozenset({RecordStatus.PENDING}),
    LifecycleAction.REJECT: frozenset({RecordStatus.PENDING}),
    LifecycleAction.DELETE: frozenset(set(RecordStatus) - {RecordStatus.DELETED}),
    LifecycleAction.RESTORE: frozenset({RecordStatus.DELETED}),
    LifecycleAction.RESUBMIT: frozenset({RecordStatus.REJECTED}),
}

_TARGETS = {
    LifecycleAction.SUBMIT: RecordStatus.PENDING,
    LifecycleAction.APPROVE: RecordStatus.APPROVED,
    LifecycleAction.REJECT: RecordStatus.REJECTED,
    LifecycleAction.DELETE: RecordStatus.DELETED,
    LifecycleAction.RESUBMIT: RecordStatus.PENDING,
}


def ensure_transition(status: RecordStatus, action: LifecycleAction) -> None:
    """Raise ``InvalidTransition`` when ``action`` is illegal from ``status``."""
    if status not in ALLOWED_FROM[action]:
        raise InvalidTransition(status.value, action.value)


def target_status(
    status: RecordStatus,
    action: LifecycleAction,
    history: Iterable[StatusHistoryEntry] = (),
) -> RecordStatus:
    """Return the status a record lands in after ``action``."""
    ensure_transition(status, action)
    if action is LifecycleAction.SAVE:
        return status
    if action is LifecycleAction.RESTORE:
        return previous_status(history)
    return _TARGETS[action]


def previous_status(history: Iterable[StatusHistoryEntry]) -> RecordStatus:
    """Last status before deletion, falling back to draft."""
    for entry in reversed(list(history)):
        if entry.status is not RecordStatus.DELETED:
            return entry.status
    return RecordStatus.DRAFT


def validate_draft(fields: dict[str, object]) -> None:
    """A draft needs at least a title before it can be saved."""
    title = fields.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("A title is required to save a draft", field="title")


def validate_submission(fields: dict[str, object]) -> None:
    """Full required-field validation before a draft goes to review."""
    validate_draft(fields)
    start = fields.get("start")
    end = fields.get("end")
    if start is None:
        raise ValidationError("A start time is required", field="start")
    if end is None:
        raise ValidationError("An end time is required", field="end")
    if end <= start:
        raise ValidationError("The end time must be after the start time", field="end")
    if not fields.get("room_ids"):
        raise ValidationError("Select at least one room", field="room_ids")
    if not fields.get("requester"):
        raise ValidationError("A requester is required", field="requester")


def validate_rejection_reason(reason: str | None) -> str:
    """Return the stripped reason; rejecting without one is not allowed."""
    if reason is None or not reason.strip():
        raise ValidationError("A rejection reason is required", field="reason")
    return reason.strip()


class EditScope(str, Enum):
    """Which part of a recurring series an edit targets."""

    THIS_OCCURRENCE = "thisOccurrence"
    ALL_OCCURRENCES = "allOccurrences"


@dataclass(frozen=True)
class EditTarget:
    """Scope of a write against a recurring series."""

    scope: EditScope
    series_master_id: str
    occurrence_date: date | None = None

    def __post_init__(self) -> None:
        if self.scope is EditScope.THIS_OCCURRENCE and self.occurrence_date is None:
            raise ValidationError(
                "Editing one occurrence needs its date", field="occurrence_date"
            )
