"""Pydantic request models and response views for the HTTP API."""

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict

from reservation_calendar.domain.availability import SchedulingConflictEntry
from reservation_calendar.domain.conflicts import ConflictReport
from reservation_calendar.domain.lifecycle import EditScope
from reservation_calendar.domain.records import RecordKind, ReservationRecord
from reservation_calendar.domain.recurrence import (
    format_recurrence_summary,
    recurrence_from_dict,
)
from reservation_calendar.services.audit import audit_view
from reservation_calendar.services.edit_sessions import EditSession


class ReservationFields(BaseModel):
    """Editable reservation fields; only the ones sent are applied."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    description: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    room_ids: list[str] | None = None
    categories: list[str] | None = None
    attendee_count: int | None = None
    setup_minutes: int | None = None
    teardown_minutes: int | None = None
    requester: str | None = None
    recurrence: dict[str, object] | None = None

    def to_patch(self) -> dict[str, object]:
        patch = self.model_dump(exclude_unset=True)
        if patch.get("recurrence") is not None:
            patch["recurrence"] = recurrence_from_dict(patch["recurrence"])
        return patch


class OpenSessionRequest(BaseModel):
    """Open an existing reservation for editing or review."""

    actor: str
    record_id: str
    scope: EditScope | None = None
    occurrence_date: date | None = None


class NewSessionRequest(BaseModel):
    """Start a brand-new draft."""

    actor: str
    kind: RecordKind = RecordKind.ROOM_RESERVATION
    content: ReservationFields = ReservationFields()


class ScopeRequest(BaseModel):
    scope: EditScope
    occurrence_date: date | None = None


class ActionRequest(BaseModel):
    force: bool = False
    reason: str | None = None


class RestoreRequest(BaseModel):
    actor: str
    version: int


class ResubmitRequest(BaseModel):
    """Send a rejected reservation back to review."""

    actor: str
    version: int


def record_view(record: ReservationRecord | None) -> dict[str, object] | None:
    if record is None:
        return None
    view = audit_view(record)
    view["id"] = record.id
    view["kind"] = record.kind.value
    view["series_master_id"] = record.series_master_id
    view["occurrence_date"] = (
        record.occurrence_date.isoformat() if record.occurrence_date else None
    )
    view["is_ad_hoc"] = record.is_ad_hoc
    view["rejection_reason"] = record.rejection_reason
    if record.recurrence is not None:
        view["recurrence_summary"] = format_recurrence_summary(record.recurrence)
    return view


def occurrence_view(record: ReservationRecord) -> dict[str, object]:
    return {
        "id": record.id,
        "occurrence_date": record.occurrence_date.isoformat()
        if record.occurrence_date
        else None,
        "start": record.start.isoformat() if record.start else None,
        "end": record.end.isoformat() if record.end else None,
        "title": record.title,
        "is_ad_hoc": record.is_ad_hoc,
    }


def scheduling_conflict_view(entry: SchedulingConflictEntry) -> dict[str, object]:
    return {
        "record_id": entry.record_id,
        "title": entry.title,
        "room_ids": list(entry.room_ids),
        "start": entry.start.isoformat(),
        "end": entry.end.isoformat(),
    }


def conflict_report_view(report: ConflictReport) -> dict[str, object]:
    return {
        "kind": report.kind.value,
        "expected_status": report.expected_status.value
        if report.expected_status
        else None,
        "current": record_view(report.current),
        "diff": [
            {
                "field": change.field,
                "label": change.label,
                "attempted": change.attempted,
                "current": change.current,
            }
            for change in report.diff()
        ],
    }


def session_view(session: EditSession) -> dict[str, object]:
    """Serialize the user-visible state of an edit session."""
    hold = session.hold
    return {
        "session_id": session.session_id,
        "actor": session.actor,
        "state": session.state.value,
        "armed": session.armed.value if session.armed else None,
        "dirty": session.dirty,
        "baseline_version": session.baseline_version,
        "record": record_view(session.working),
        "edit_scope": session.target.scope.value if session.target else None,
        "hold": {
            "holder": hold.holder,
            "expires_at": hold.expires_at.isoformat(),
            "lease": session.lease.value if session.lease else None,
        }
        if hold
        else None,
        "occurrences": [occurrence_view(item) for item in session.occurrences],
        "scheduling_conflicts": [
            scheduling_conflict_view(entry)
            for entry in session.prefetched_conflicts
        ],
        "conflict": conflict_report_view(session.conflict)
        if session.conflict
        else None,
    }
