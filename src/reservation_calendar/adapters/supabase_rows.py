"""Row mapping and call helpers shared by the Supabase adapters."""

import asyncio
from collections.abc import Callable
from datetime import date, datetime
from enum import Enum
from typing import TypeVar

import httpx
from postgrest.exceptions import APIError

from reservation_calendar.domain.errors import TransportError
from reservation_calendar.domain.records import (
    OccurrenceException,
    RecordKind,
    RecordStatus,
    ReservationRecord,
    StatusHistoryEntry,
)
from reservation_calendar.domain.recurrence import (
    Recurrence,
    recurrence_from_dict,
    recurrence_to_dict,
)

T = TypeVar("T")

RESERVATION_COLUMNS = (
    "id, kind, status, version, title, description, start_at, end_at, room_ids, "
    "categories, attendee_count, setup_minutes, teardown_minutes, requester, "
    "recurrence_json, series_master_id, occurrence_date, external_event_id, "
    "rejection_reason, status_history_json"
)

_COLUMN_FOR_FIELD = {
    "start": "start_at",
    "end": "end_at",
    "recurrence": "recurrence_json",
}


async def run_query(operation: Callable[[], T]) -> T:
    """Run a blocking Supabase call off the event loop."""
    try:
        return await asyncio.to_thread(operation)
    except (APIError, httpx.HTTPError, OSError) as exc:
        raise TransportError(f"Supabase request failed: {exc}") from exc


def to_row_value(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Recurrence):
        return recurrence_to_dict(value)
    if isinstance(value, tuple | list | set | frozenset):
        return [to_row_value(item) for item in value]
    return value


def content_row(content: dict[str, object]) -> dict[str, object]:
    """Translate editable record fields into reservation columns."""
    return {
        _COLUMN_FOR_FIELD.get(name, name): to_row_value(value)
        for name, value in content.items()
    }


def history_row(entry: StatusHistoryEntry) -> dict[str, object]:
    return {
        "status": entry.status.value,
        "changed_at": entry.changed_at.isoformat(),
        "changed_by": entry.changed_by,
        "reason": entry.reason,
    }


def kind_of(row: dict[str, object]) -> RecordKind:
    """Decide the record kind once, when a row is loaded."""
    if row.get("kind"):
        return RecordKind(row["kind"])
    if row.get("external_event_id") and not row.get("room_ids"):
        return RecordKind.LEGACY_CALENDAR_EVENT
    if row.get("requester"):
        return RecordKind.ROOM_RESERVATION
    return RecordKind.UNIFIED_EVENT


def record_from_row(row: dict[str, object]) -> ReservationRecord:
    recurrence_json = row.get("recurrence_json")
    return ReservationRecord(
        id=str(row["id"]),
        kind=kind_of(row),
        status=RecordStatus(row["status"]),
        version=int(row["version"]),
        title=row.get("title") or "",
        description=row.get("description") or "",
        start=_parse_datetime(row.get("start_at")),
        end=_parse_datetime(row.get("end_at")),
        room_ids=tuple(str(room) for room in row.get("room_ids") or ()),
        categories=tuple(str(category) for category in row.get("categories") or ()),
        attendee_count=int(row.get("attendee_count") or 0),
        setup_minutes=int(row.get("setup_minutes") or 0),
        teardown_minutes=int(row.get("teardown_minutes") or 0),
        requester=row.get("requester"),
        recurrence=recurrence_from_dict(recurrence_json) if recurrence_json else None,
        series_master_id=row.get("series_master_id"),
        occurrence_date=_parse_date(row.get("occurrence_date")),
        external_event_id=row.get("external_event_id"),
        rejection_reason=row.get("rejection_reason"),
        status_history=tuple(
            StatusHistoryEntry(
                status=RecordStatus(entry["status"]),
                changed_at=datetime.fromisoformat(entry["changed_at"]),
                changed_by=entry.get("changed_by"),
                reason=entry.get("reason"),
            )
            for entry in row.get("status_history_json") or ()
        ),
    )


def exception_from_row(row: dict[str, object]) -> OccurrenceException:
    overrides = dict(row.get("overrides_json") or {})
    for name in ("start", "end"):
        if isinstance(overrides.get(name), str):
            overrides[name] = datetime.fromisoformat(overrides[name])
    return OccurrenceException(
        series_master_id=str(row["series_master_id"]),
        occurrence_date=date.fromisoformat(str(row["occurrence_date"])),
        cancelled=bool(row.get("cancelled")),
        overrides=overrides,
    )


def _parse_datetime(value: object) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(str(value))


def _parse_date(value: object) -> date | None:
    if not value:
        return None
    return date.fromisoformat(str(value)[:10])
