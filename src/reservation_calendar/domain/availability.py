"""Room availability math."""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from reservation_calendar.domain.records import ReservationRecord


@dataclass(frozen=True)
class BookingWindow:
    """Rooms and times a booking needs, before setup and teardown padding."""

    room_ids: tuple[str, ...]
    start: datetime
    end: datetime
    setup_minutes: int = 0
    teardown_minutes: int = 0

    @classmethod
    def of(cls, record: ReservationRecord) -> "BookingWindow":
        if record.start is None or record.end is None:
            raise ValueError("Record has no start/end to check availability")
        return cls(
            room_ids=record.room_ids,
            start=record.start,
            end=record.end,
            setup_minutes=record.setup_minutes,
            teardown_minutes=record.teardown_minutes,
        )

    def bounds(self, buffer_minutes: int = 0) -> tuple[datetime, datetime]:
        """Occupied interval including setup, teardown and buffer."""
        before = timedelta(minutes=self.setup_minutes + buffer_minutes)
        after = timedelta(minutes=self.teardown_minutes + buffer_minutes)
        return self.start - before, self.end + after


@dataclass(frozen=True)
class SchedulingConflictEntry:
    """An approved booking that collides with a requested window."""

    record_id: str
    title: str
    room_ids: tuple[str, ...]
    start: datetime
    end: datetime


def windows_overlap(
    first: tuple[datetime, datetime], second: tuple[datetime, datetime]
) -> bool:
    """Half-open interval overlap."""
    return first[0] < second[1] and first[1] > second[0]


def find_collisions(
    window: BookingWindow,
    bookings: Iterable[ReservationRecord],
    buffer_minutes: int = 0,
    exclude_record_id: str | None = None,
) -> list[SchedulingConflictEntry]:
    """Return bookings sharing a room with ``window`` whose times overlap it."""
    requested = window.bounds(buffer_minutes)
    rooms = set(window.room_ids)
    collisions: list[SchedulingConflictEntry] = []
    for booking in bookings:
        if booking.id is None or booking.id == exclude_record_id:
            continue
        if booking.start is None or booking.end is None:
            continue
        if not rooms.intersection(booking.room_ids):
            continue
        if windows_overlap(requested, BookingWindow.of(booking).bounds()):
            collisions.append(
                SchedulingConflictEntry(
                    record_id=booking.id,
                    title=booking.title,
                    room_ids=booking.room_ids,
                    start=booking.start,
                    end=booking.end,
                )
            )
    return sorted(collisions, key=lambda entry: (entry.start, entry.record_id))
