"""Shared test fixtures."""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, timedelta

import pytest

from reservation_calendar.config import Settings
from reservation_calendar.containers import AppContainer
from reservation_calendar.domain.availability import (
    BookingWindow,
    SchedulingConflictEntry,
    find_collisions,
)
from reservation_calendar.domain.conflicts import ConflictReport, build_conflict_report
from reservation_calendar.domain.errors import (
    RecordNotFound,
    SchedulingConflict,
    TransportError,
)
from reservation_calendar.domain.holds import HoldRefusal, ReviewHold
from reservation_calendar.domain.lifecycle import EditScope, LifecycleAction
from reservation_calendar.domain.records import (
    OccurrenceException,
    RecordKind,
    RecordStatus,
    ReservationRecord,
    StatusHistoryEntry,
)
from reservation_calendar.services.approvals import (
    ApprovalPolicy,
    ApprovalService,
    AvailabilityService,
    CalendarPublisher,
)
from reservation_calendar.services.audit import AuditRepository, AuditService
from reservation_calendar.services.edit_sessions import (
    EditSessionRegistry,
    SessionOptions,
)
from reservation_calendar.services.holds import LockService, ReviewHoldService
from reservation_calendar.services.mutations import (
    GuardedWriter,
    ReservationRepository,
    WriteRequest,
    attempted_state,
)

START = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


def make_record(
    record_id: str | None = "res-1",
    status: RecordStatus = RecordStatus.PENDING,
    version: int | None = 1,
    **fields: object,
) -> ReservationRecord:
    content: dict[str, object] = {
        "title": "Board meeting",
        "start": START,
        "end": START + timedelta(hours=1),
        "room_ids": ("room-a",),
        "requester": "alice@example.com",
    }
    content.update(fields)
    return ReservationRecord(
        id=record_id,
        kind=RecordKind.ROOM_RESERVATION,
        status=status,
        version=version,
        **content,
    )


@dataclass
class FakeClock:
    now: datetime = datetime(2024, 1, 1, 8, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@dataclass
class InMemoryReservationRepository(ReservationRepository):
    records: dict[str, ReservationRecord] = field(default_factory=dict)
    exceptions: dict[tuple[str, date], OccurrenceException] = field(
        default_factory=dict
    )
    scheduling_conflicts: list[SchedulingConflictEntry] = field(default_factory=list)
    writes: list[tuple[str, LifecycleAction]] = field(default_factory=list)
    fail_with: Exception | None = None
    gate: asyncio.Event | None = None
    next_id: int = 1

    def add(self, record: ReservationRecord) -> ReservationRecord:
        self.records[str(record.id)] = record
        return record

    async def get_record(self, record_id: str) -> ReservationRecord | None:
        return self.records.get(record_id)

    async def create_record(
        self,
        kind: RecordKind,
        content: dict[str, object],
        history_entry: StatusHistoryEntry,
    ) -> ReservationRecord:
        record_id = f"new-{self.next_id}"
        self.next_id += 1
        record = ReservationRecord(
            id=record_id,
            kind=kind,
            status=history_entry.status,
            version=1,
            status_history=(history_entry,),
            **content,
        )
        return self.add(record)

    async def write(
        self,
        record_id: str,
        expected_version: int,
        request: WriteRequest,
        *,
        expected_status: RecordStatus | None = None,
    ) -> ReservationRecord | ConflictReport:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        current = self.records.get(record_id)
        if current is None:
            raise RecordNotFound(record_id)
        if current.version != expected_version or (
            expected_status is not None and current.status is not expected_status
        ):
            return build_conflict_report(
                current, attempted_state(request, expected_status), expected_status
            )
        if (
            request.action is LifecycleAction.APPROVE
            and not request.force
            and self.scheduling_conflicts
        ):
            raise SchedulingConflict(list(self.scheduling_conflicts))

        target = request.target
        occurrence_only = (
            target is not None and target.scope is EditScope.THIS_OCCURRENCE
        )
        cancels = occurrence_only and request.action is LifecycleAction.DELETE
        changes: dict[str, object] = {"version": current.version + 1}
        if not occurrence_only:
            changes.update(request.content)
        if request.status is not None and not cancels:
            changes["status"] = request.status
        if request.history_entry is not None and not cancels:
            changes["status_history"] = (*current.status_history, request.history_entry)
        if request.rejection_reason is not None:
            changes["rejection_reason"] = request.rejection_reason
        if request.external_event_id is not None:
            changes["external_event_id"] = request.external_event_id
        updated = replace(current, **changes)
        self.records[record_id] = updated

        if occurrence_only and (request.content or cancels):
            key = (target.series_master_id, target.occurrence_date)
            existing = self.exceptions.get(key)
            self.exceptions[key] = OccurrenceException(
                series_master_id=target.series_master_id,
                occurrence_date=target.occurrence_date,
                cancelled=cancels or bool(existing and existing.cancelled),
                overrides={
                    **(existing.overrides if existing else {}),
                    **request.content,
                },
            )
        self.writes.append((record_id, request.action))
        return updated

    async def list_exceptions(
        self, series_master_id: str, window_start: date, window_end: date
    ) -> list[OccurrenceException]:
        return [
            exception
            for (master_id, day), exception in sorted(self.exceptions.items())
            if master_id == series_master_id and window_start <= day <= window_end
        ]


@dataclass
class FakeLockService(LockService):
    clock: FakeClock
    lease_minutes: int = 30
    holds: dict[str, ReviewHold] = field(default_factory=dict)
    released: list[tuple[str, str]] = field(default_factory=list)

    async def acquire(self, record_id: str, holder: str) -> ReviewHold | HoldRefusal:
        existing = self.holds.get(record_id)
        if existing is not None and not existing.is_expired(self.clock()):
            if existing.holder != holder:
                return HoldRefusal(record_id, existing.holder, existing.expires_at)
            return existing
        hold = ReviewHold(
            record_id=record_id,
            holder=holder,
            expires_at=self.clock() + timedelta(minutes=self.lease_minutes),
        )
        self.holds[record_id] = hold
        return hold

    async def release(self, record_id: str, holder: str) -> None:
        self.released.append((record_id, holder))
        existing = self.holds.get(record_id)
        if existing is not None and existing.holder == holder:
            del self.holds[record_id]


@dataclass
class UnreachableLockService(LockService):
    release_attempts: int = 0

    async def acquire(self, record_id: str, holder: str) -> ReviewHold | HoldRefusal:
        raise TransportError("lock service unreachable")

    async def release(self, record_id: str, holder: str) -> None:
        self.release_attempts += 1
        raise TransportError("lock service unreachable")


@dataclass
class FakeCalendarPublisher(CalendarPublisher):
    published: dict[str, ReservationRecord] = field(default_factory=dict)
    unpublished: list[str] = field(default_factory=list)
    fail_publish: bool = False

    async def publish(self, record: ReservationRecord) -> str:
        if self.fail_publish:
            raise TransportError("calendar unavailable")
        event_id = f"evt-{len(self.published) + 1}"
        self.published[event_id] = record
        return event_id

    async def unpublish(self, external_event_id: str) -> None:
        self.unpublished.append(external_event_id)


@dataclass
class FakeAvailabilityService(AvailabilityService):
    bookings: list[ReservationRecord] = field(default_factory=list)
    fail: bool = False
    calls: int = 0

    async def find_conflicts(
        self,
        window: BookingWindow,
        buffer_minutes: int,
        exclude_record_id: str | None = None,
    ) -> list[SchedulingConflictEntry]:
        self.calls += 1
        if self.fail:
            raise TransportError("availability unavailable")
        return find_collisions(
            window,
            self.bookings,
            buffer_minutes=buffer_minutes,
            exclude_record_id=exclude_record_id,
        )


@dataclass
class InMemoryAuditRepository(AuditRepository):
    events: list[dict[str, object]] = field(default_factory=list)

    async def create_event(  # noqa: PLR0913
        self,
        actor: str,
        entity_type: str,
        entity_id: str,
        event_type: str,
        before: dict[str, object] | None,
        after: dict[str, object] | None,
    ) -> None:
        self.events.append(
            {
                "actor": actor,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "event_type": event_type,
                "before": before,
                "after": after,
            }
        )


@dataclass
class Harness:
    """Every collaborator of the core wired with in-memory fakes."""

    clock: FakeClock
    repository: InMemoryReservationRepository
    locks: FakeLockService
    publisher: FakeCalendarPublisher
    availability: FakeAvailabilityService
    audit_repository: InMemoryAuditRepository
    approvals: ApprovalService
    holds: ReviewHoldService
    registry: EditSessionRegistry


def build_harness(
    lock_service: LockService | None = None,
    allow_force_approve: bool = False,
) -> Harness:
    clock = FakeClock()
    repository = InMemoryReservationRepository()
    locks = FakeLockService(clock)
    publisher = FakeCalendarPublisher()
    availability = FakeAvailabilityService()
    audit_repository = InMemoryAuditRepository()
    approvals = ApprovalService(
        writer=GuardedWriter(repository),
        availability=availability,
        publisher=publisher,
        audit=AuditService(audit_repository),
        policy=ApprovalPolicy(allow_force_approve=allow_force_approve),
        clock=clock,
    )
    holds = ReviewHoldService(lock_service if lock_service is not None else locks)
    registry = EditSessionRegistry(
        approvals=approvals,
        holds=holds,
        options=SessionOptions(
            confirmation_timeout=timedelta(seconds=30), preview_days=31
        ),
        clock=clock,
    )
    return Harness(
        clock=clock,
        repository=repository,
        locks=locks,
        publisher=publisher,
        availability=availability,
        audit_repository=audit_repository,
        approvals=approvals,
        holds=holds,
        registry=registry,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_service_key="service-key",
        admin_token="admin-token",
        calendar_api_base_url="https://calendar.example.com/v1.0",
        calendar_api_token="calendar-token",
        calendar_id="rooms",
    )


@pytest.fixture
def harness() -> Harness:
    return build_harness()


@pytest.fixture
def container(settings: Settings, harness: Harness) -> AppContainer:
    async def close_resources() -> None:
        await harness.registry.close_all()

    return AppContainer(
        settings=settings,
        writer=harness.approvals.writer,
        approval_service=harness.approvals,
        hold_service=harness.holds,
        sessions=harness.registry,
        close_resources=close_resources,
    )
