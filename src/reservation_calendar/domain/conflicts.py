"""Version conflict reports and field-level diffs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum

from reservation_calendar.domain.records import (
    RecordStatus,
    ReservationRecord,
    content_of,
)


class ConflictKind(str, Enum):
    """Why a version-guarded write was refused."""

    CONCURRENT_EDIT = "concurrentEdit"
    STATUS_CHANGED = "statusChanged"
    ALREADY_ACTIONED = "alreadyActioned"


FIELD_LABELS: dict[str, str] = {
    "title": "Event Title",
    "description": "Description",
    "start": "Start",
    "end": "End",
    "room_ids": "Location",
    "categories": "Categories",
    "attendee_count": "Attendees",
    "setup_minutes": "Setup Time",
    "teardown_minutes": "Teardown Time",
    "requester": "Requester",
    "recurrence": "Recurrence",
    "status": "Status",
}


@dataclass(frozen=True)
class FieldDiff:
    """One field whose server value differs from the editor's copy."""

    field: str
    label: str
    attempted: str
    current: str


@dataclass(frozen=True)
class ConflictReport:
    """Structured detail for a rejected write."""

    kind: ConflictKind
    current: ReservationRecord
    attempted: dict[str, object]
    expected_status: RecordStatus | None = None

    def diff(self) -> list[FieldDiff]:
        """Fields where the attempted state and the server state disagree."""
        return compute_conflict_diff(self.attempted, _snapshot(self.current))


def classify_conflict(
    current_status: RecordStatus, expected_status: RecordStatus | None
) -> ConflictKind:
    """Map the server's current status against the editor's expectation."""
    if expected_status is None or current_status == expected_status:
        return ConflictKind.CONCURRENT_EDIT
    if current_status in {RecordStatus.APPROVED, RecordStatus.REJECTED}:
        return ConflictKind.ALREADY_ACTIONED
    return ConflictKind.STATUS_CHANGED


def build_conflict_report(
    current: ReservationRecord,
    attempted: dict[str, object],
    expected_status: RecordStatus | None,
) -> ConflictReport:
    """Classify a failed compare-and-swap against the current server record."""
    return ConflictReport(
        kind=classify_conflict(current.status, expected_status),
        current=current,
        attempted=dict(attempted),
        expected_status=expected_status,
    )


def _snapshot(record: ReservationRecord) -> dict[str, object]:
    snapshot = content_of(record)
    snapshot["status"] = record.status
    return snapshot


def _format_value(value: object) -> str:
    if value is None or value == "":
        return "(empty)"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, list | tuple | set | frozenset):
        if not value:
            return "(empty)"
        return ", ".join(str(item) for item in value)
    return str(value)


def _normalize(value: object) -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, list | tuple | set | frozenset):
        return ",".join(sorted(str(item) for item in value))
    if isinstance(value, datetime | date):
        return value.isoformat()
    return str(value).strip()


def compute_conflict_diff(
    attempted: dict[str, object], current: dict[str, object]
) -> list[FieldDiff]:
    """Compare the editor's stale data with a server snapshot, field by field."""
    changes: list[FieldDiff] = []
    for name, label in FIELD_LABELS.items():
        if name not in attempted:
            continue
        stale_value = attempted.get(name)
        current_value = current.get(name)
        if _normalize(stale_value) != _normalize(current_value):
            changes.append(
                FieldDiff(
                    field=name,
                    label=label,
                    attempted=_format_value(stale_value),
                    current=_format_value(current_value),
                )
            )
    return changes
