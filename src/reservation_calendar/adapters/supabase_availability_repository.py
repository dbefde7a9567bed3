"""Supabase availability queries over approved reservations."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from supabase import Client

from reservation_calendar.adapters.supabase_rows import (
    RESERVATION_COLUMNS,
    record_from_row,
    run_query,
)
from reservation_calendar.domain.availability import (
    BookingWindow,
    SchedulingConflictEntry,
    find_collisions,
)
from reservation_calendar.domain.records import RecordStatus, ReservationRecord
from reservation_calendar.domain.recurrence import expand_series
from reservation_calendar.services.approvals import AvailabilityService

# Widest setup plus teardown padding an approved booking can add around itself.
_MAX_PADDING = timedelta(hours=12)


@dataclass
class SupabaseAvailabilityRepository(AvailabilityService):
    """Finds approved bookings that collide with a requested window."""

    client: Client

    async def find_conflicts(
        self,
        window: BookingWindow,
        buffer_minutes: int,
        exclude_record_id: str | None = None,
    ) -> list[SchedulingConflictEntry]:
        lower, upper = window.bounds(buffer_minutes)
        candidates = await self._candidates(
            window, lower - _MAX_PADDING, upper + _MAX_PADDING
        )
        bookings = [
            booking
            for booking in candidates
            if exclude_record_id is None
            or exclude_record_id not in {booking.id, booking.series_master_id}
        ]
        return find_collisions(
            window,
            bookings,
            buffer_minutes=buffer_minutes,
            exclude_record_id=exclude_record_id,
        )

    async def _candidates(
        self, window: BookingWindow, lower: datetime, upper: datetime
    ) -> list[ReservationRecord]:
        rooms = list(window.room_ids)
        singles = await run_query(
            lambda: self.client.table("reservations")
            .select(RESERVATION_COLUMNS)
            .eq("status", RecordStatus.APPROVED.value)
            .ov("room_ids", rooms)
            .is_("recurrence_json", "null")
            .lt("start_at", upper.isoformat())
            .gt("end_at", lower.isoformat())
            .execute()
        )
        series = await run_query(
            lambda: self.client.table("reservations")
            .select(RESERVATION_COLUMNS)
            .eq("status", RecordStatus.APPROVED.value)
            .ov("room_ids", rooms)
            .not_.is_("recurrence_json", "null")
            .lt("start_at", upper.isoformat())
            .execute()
        )
        bookings = [record_from_row(row) for row in singles.data or []]
        for row in series.data or []:
            master = record_from_row(row)
            bookings.extend(expand_series(master, lower.date(), upper.date()))
        return bookings
