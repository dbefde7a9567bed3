"""Domain models for reservation records."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING

from reservation_calendar.domain.errors import ValidationError

if TYPE_CHECKING:
    from reservation_calendar.domain.recurrence import Recurrence


class RecordStatus(str, Enum):
    """Lifecycle status of a reservation."""

    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELETED = "deleted"


class RecordKind(str, Enum):
    """Which family of calendar entity a record came from."""

    LEGACY_CALENDAR_EVENT = "legacyCalendarEvent"
    UNIFIED_EVENT = "unifiedEvent"
    ROOM_RESERVATION = "roomReservation"


EDITABLE_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "start",
    "end",
    "room_ids",
    "categories",
    "attendee_count",
    "setup_minutes",
    "teardown_minutes",
    "requester",
    "recurrence",
)

_TUPLE_FIELDS = {"room_ids", "categories"}


@dataclass(frozen=True)
class StatusHistoryEntry:
    """One status change recorded on a reservation."""

    status: RecordStatus
    changed_at: datetime
    changed_by: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class ReservationRecord:
    """A shared reservation or event as last read from persistence."""

    id: str | None
    kind: RecordKind
    status: RecordStatus
    version: int | None
    title: str = ""
    description: str = ""
    start: datetime | None = None
    end: datetime | None = None
    room_ids: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    attendee_count: int = 0
    setup_minutes: int = 0
    teardown_minutes: int = 0
    requester: str | None = None
    recurrence: Recurrence | None = None
    series_master_id: str | None = None
    occurrence_date: date | None = None
    external_event_id: str | None = None
    rejection_reason: str | None = None
    status_history: tuple[StatusHistoryEntry, ...] = field(default=())
    is_ad_hoc: bool = False

    @property
    def is_new(self) -> bool:
        """True for a draft that has never been persisted."""
        return self.id is None

    @property
    def is_series_master(self) -> bool:
        return self.recurrence is not None and self.series_master_id is None

    @property
    def is_occurrence(self) -> bool:
        return self.series_master_id is not None


@dataclass(frozen=True)
class OccurrenceException:
    """A stored override for one occurrence of a series."""

    series_master_id: str
    occurrence_date: date
    cancelled: bool = False
    overrides: dict[str, object] = field(default_factory=dict)


def content_of(record: ReservationRecord) -> dict[str, object]:
    """Return the editable content of a record as a plain mapping."""
    return {name: getattr(record, name) for name in EDITABLE_FIELDS}


def normalize_patch(patch: dict[str, object]) -> dict[str, object]:
    """Validate field names and coerce list values to tuples."""
    unknown = sorted(set(patch) - set(EDITABLE_FIELDS))
    if unknown:
        raise ValidationError(
            f"Unknown or read-only field(s): {', '.join(unknown)}", field=unknown[0]
        )
    normalized: dict[str, object] = {}
    for name, value in patch.items():
        if name in _TUPLE_FIELDS and isinstance(value, list | set | tuple):
            value = tuple(str(item) for item in value)
        normalized[name] = value
    return normalized


def apply_patch(
    record: ReservationRecord, patch: dict[str, object]
) -> ReservationRecord:
    """Return a copy of ``record`` with editable fields replaced."""
    return replace(record, **normalize_patch(patch))
