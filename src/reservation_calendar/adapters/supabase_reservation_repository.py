"""Supabase repository for reservations and occurrence exceptions."""

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime

from supabase import Client

from reservation_calendar.adapters.supabase_availability_repository import (
    SupabaseAvailabilityRepository,
)
from reservation_calendar.adapters.supabase_rows import (
    RESERVATION_COLUMNS,
    content_row,
    exception_from_row,
    history_row,
    record_from_row,
    run_query,
    to_row_value,
)
from reservation_calendar.domain.availability import BookingWindow
from reservation_calendar.domain.conflicts import ConflictReport, build_conflict_report
from reservation_calendar.domain.errors import (
    RecordNotFound,
    SchedulingConflict,
    TransportError,
)
from reservation_calendar.domain.lifecycle import EditScope, EditTarget, LifecycleAction
from reservation_calendar.domain.records import (
    OccurrenceException,
    RecordKind,
    RecordStatus,
    ReservationRecord,
    StatusHistoryEntry,
)
from reservation_calendar.services.mutations import (
    ReservationRepository,
    WriteRequest,
    attempted_state,
)

logger = logging.getLogger(__name__)


@dataclass
class SupabaseReservationRepository(ReservationRepository):
    """Supabase implementation with compare-and-swap on ``version``.

    A write first checks the stored version, then issues an update filtered on
    both ``id`` and ``version`` so a concurrent writer that slipped in between
    still makes the update match no rows. Single-occurrence writes store the
    exception row before the master update and put it back if that update
    fails or loses the race.
    """

    client: Client
    availability: SupabaseAvailabilityRepository | None = None
    buffer_minutes: int = 0

    async def get_record(self, record_id: str) -> ReservationRecord | None:
        response = await run_query(
            lambda: self.client.table("reservations")
            .select(RESERVATION_COLUMNS)
            .eq("id", record_id)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        return record_from_row(response.data[0])

    async def create_record(
        self,
        kind: RecordKind,
        content: dict[str, object],
        history_entry: StatusHistoryEntry,
    ) -> ReservationRecord:
        payload = {
            **content_row(content),
            "kind": kind.value,
            "status": history_entry.status.value,
            "version": 1,
            "status_history_json": [history_row(history_entry)],
        }
        response = await run_query(
            lambda: self.client.table("reservations").insert(payload).execute()
        )
        if not response.data:
            raise RuntimeError("Failed to create reservation")
        return record_from_row(response.data[0])

    async def write(
        self,
        record_id: str,
        expected_version: int,
        request: WriteRequest,
        *,
        expected_status: RecordStatus | None = None,
    ) -> ReservationRecord | ConflictReport:
        current = await self.get_record(record_id)
        if current is None:
            raise RecordNotFound(record_id)
        if current.version != expected_version or (
            expected_status is not None and current.status is not expected_status
        ):
            return build_conflict_report(
                current, attempted_state(request, expected_status), expected_status
            )

        occurrence_only = (
            request.target is not None
            and request.target.scope is EditScope.THIS_OCCURRENCE
        )
        if request.action is LifecycleAction.APPROVE and not request.force:
            await self._recheck_availability(current)

        payload: dict[str, object] = {
            "version": expected_version + 1,
            "updated_at": datetime.now(tz=UTC).isoformat(),
        }
        if not occurrence_only:
            payload.update(content_row(request.content))
        cancels_occurrence = (
            occurrence_only and request.action is LifecycleAction.DELETE
        )
        if request.status is not None and not cancels_occurrence:
            payload["status"] = request.status.value
        if request.history_entry is not None and not cancels_occurrence:
            payload["status_history_json"] = [
                *(history_row(entry) for entry in current.status_history),
                history_row(request.history_entry),
            ]
        if request.rejection_reason is not None:
            payload["rejection_reason"] = request.rejection_reason
        if request.external_event_id is not None:
            payload["external_event_id"] = request.external_event_id

        query = (
            self.client.table("reservations")
            .update(payload)
            .eq("id", record_id)
            .eq("version", expected_version)
        )
        if expected_status is not None:
            query = query.eq("status", expected_status.value)

        previous: list[OccurrenceException] | None = None
        if occurrence_only and (request.content or cancels_occurrence):
            previous = await self._write_exception(
                request.target, request.content, cancelled=cancels_occurrence
            )
        try:
            response = await run_query(query.execute)
        except TransportError:
            if previous is not None:
                await self._restore_exception(request.target, previous)
            raise
        if not response.data:
            if previous is not None:
                await self._restore_exception(request.target, previous)
            latest = await self.get_record(record_id)
            if latest is None:
                raise RecordNotFound(record_id)
            logger.info("Compare-and-swap lost a race on %s", record_id)
            return build_conflict_report(
                latest, attempted_state(request, expected_status), expected_status
            )
        return record_from_row(response.data[0])

    async def list_exceptions(
        self, series_master_id: str, window_start: date, window_end: date
    ) -> list[OccurrenceException]:
        response = await run_query(
            lambda: self.client.table("reservation_exceptions")
            .select("series_master_id, occurrence_date, cancelled, overrides_json")
            .eq("series_master_id", series_master_id)
            .gte("occurrence_date", window_start.isoformat())
            .lte("occurrence_date", window_end.isoformat())
            .order("occurrence_date")
            .execute()
        )
        return [exception_from_row(row) for row in response.data or []]

    async def _write_exception(
        self, target: EditTarget, content: dict[str, object], cancelled: bool
    ) -> list[OccurrenceException]:
        """Merge ``content`` into the occurrence's exception; return the old row."""
        existing = await self.list_exceptions(
            target.series_master_id, target.occurrence_date, target.occurrence_date
        )
        overrides = dict(existing[0].overrides) if existing else {}
        overrides.update(content)
        await self._upsert_exception(
            OccurrenceException(
                series_master_id=target.series_master_id,
                occurrence_date=target.occurrence_date,
                cancelled=cancelled or bool(existing and existing[0].cancelled),
                overrides=overrides,
            )
        )
        return existing

    async def _restore_exception(
        self, target: EditTarget, previous: list[OccurrenceException]
    ) -> None:
        """Put the exception row back the way it was before a failed write."""
        try:
            if previous:
                await self._upsert_exception(previous[0])
                return
            await run_query(
                lambda: self.client.table("reservation_exceptions")
                .delete()
                .eq("series_master_id", target.series_master_id)
                .eq("occurrence_date", target.occurrence_date.isoformat())
                .execute()
            )
        except TransportError:
            logger.exception(
                "Failed to roll back exception for %s on %s",
                target.series_master_id,
                target.occurrence_date,
            )

    async def _upsert_exception(self, exception: OccurrenceException) -> None:
        payload = {
            "series_master_id": exception.series_master_id,
            "occurrence_date": exception.occurrence_date.isoformat(),
            "cancelled": exception.cancelled,
            "overrides_json": {
                name: to_row_value(value)
                for name, value in exception.overrides.items()
            },
        }
        await run_query(
            lambda: self.client.table("reservation_exceptions")
            .upsert(payload, on_conflict="series_master_id,occurrence_date")
            .execute()
        )

    async def _recheck_availability(self, current: ReservationRecord) -> None:
        if self.availability is None:
            return
        if current.start is None or current.end is None or not current.room_ids:
            return
        conflicts = await self.availability.find_conflicts(
            BookingWindow.of(current),
            self.buffer_minutes,
            exclude_record_id=current.id,
        )
        if conflicts:
            raise SchedulingConflict(conflicts)
