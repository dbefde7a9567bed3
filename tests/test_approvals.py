"""Tests for the approval workflow."""

import asyncio
from datetime import date, timedelta

import pytest

from reservation_calendar.domain.availability import SchedulingConflictEntry
from reservation_calendar.domain.errors import (
    InvalidTransition,
    SchedulingConflict,
    TransportError,
    ValidationError,
    VersionConflict,
)
from reservation_calendar.domain.lifecycle import (
    EditScope,
    EditTarget,
    LifecycleAction,
)
from reservation_calendar.domain.records import (
    RecordStatus,
    ReservationRecord,
    StatusHistoryEntry,
)
from reservation_calendar.domain.recurrence import (
    Frequency,
    OccurrenceCount,
    Recurrence,
    RecurrencePattern,
    RecurrenceRange,
    Weekday,
)
from tests.conftest import START, Harness, build_harness, make_record


def _approved_booking(record_id: str = "res-2", **fields: object) -> ReservationRecord:
    content: dict[str, object] = {
        "title": "Staff lunch",
        "start": START + timedelta(minutes=30),
        "end": START + timedelta(minutes=90),
    }
    content.update(fields)
    return make_record(record_id, status=RecordStatus.APPROVED, **content)


def _weekly_master() -> ReservationRecord:
    recurrence = Recurrence(
        pattern=RecurrencePattern(Frequency.WEEKLY, 1, frozenset({Weekday.MONDAY})),
        range=RecurrenceRange(date(2024, 1, 1), OccurrenceCount(4)),
    )
    return make_record("series-1", recurrence=recurrence)


def test_approve_with_edits_saves_then_transitions(harness: Harness) -> None:
    record = harness.repository.add(make_record())

    approved = asyncio.run(
        harness.approvals.approve(record, 1, {"title": "Budget review"}, "reviewer")
    )

    assert harness.repository.writes == [
        ("res-1", LifecycleAction.SAVE),
        ("res-1", LifecycleAction.APPROVE),
    ]
    assert approved.status is RecordStatus.APPROVED
    assert approved.version == 3
    assert approved.title == "Budget review"
    assert approved.external_event_id == "evt-1"
    assert harness.publisher.published["evt-1"].title == "Budget review"
    assert approved.status_history[-1].status is RecordStatus.APPROVED
    assert approved.status_history[-1].changed_by == "reviewer"
    assert [event["event_type"] for event in harness.audit_repository.events] == [
        "save",
        "approve",
    ]


def test_approve_without_edits_is_one_write(harness: Harness) -> None:
    record = harness.repository.add(make_record())

    approved = asyncio.run(harness.approvals.approve(record, 1, {}, "reviewer"))

    assert harness.repository.writes == [("res-1", LifecycleAction.APPROVE)]
    assert approved.version == 2
    assert len(harness.publisher.published) == 1


def test_approve_refuses_overlapping_booking(harness: Harness) -> None:
    record = harness.repository.add(make_record())
    harness.availability.bookings.append(_approved_booking())

    with pytest.raises(SchedulingConflict) as excinfo:
        asyncio.run(harness.approvals.approve(record, 1, {}, "reviewer"))

    assert [entry.record_id for entry in excinfo.value.conflicts] == ["res-2"]
    assert harness.repository.writes == []
    assert harness.publisher.published == {}


def test_setup_and_teardown_padding_counts_as_overlap(harness: Harness) -> None:
    record = harness.repository.add(make_record(teardown_minutes=30))
    harness.availability.bookings.append(
        _approved_booking(
            start=START + timedelta(minutes=80), end=START + timedelta(minutes=120)
        )
    )

    with pytest.raises(SchedulingConflict):
        asyncio.run(harness.approvals.approve(record, 1, {}, "reviewer"))


def test_other_rooms_do_not_conflict(harness: Harness) -> None:
    record = harness.repository.add(make_record())
    harness.availability.bookings.append(_approved_booking(room_ids=("room-b",)))

    approved = asyncio.run(harness.approvals.approve(record, 1, {}, "reviewer"))

    assert approved.status is RecordStatus.APPROVED


def test_force_approve_is_off_by_default(harness: Harness) -> None:
    record = harness.repository.add(make_record())

    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(harness.approvals.approve(record, 1, {}, "reviewer", force=True))

    assert excinfo.value.field == "force"
    assert harness.repository.writes == []


def test_force_approve_skips_conflict_checks() -> None:
    harness = build_harness(allow_force_approve=True)
    record = harness.repository.add(make_record())
    harness.availability.bookings.append(_approved_booking())
    harness.repository.scheduling_conflicts.extend(
        asyncio.run(harness.approvals.check_availability(record))
    )

    approved = asyncio.run(
        harness.approvals.approve(record, 1, {}, "reviewer", force=True)
    )

    assert approved.status is RecordStatus.APPROVED


def test_authoritative_conflict_unpublishes_event(harness: Harness) -> None:
    record = harness.repository.add(make_record())
    booking = _approved_booking()
    harness.repository.scheduling_conflicts.append(
        SchedulingConflictEntry(
            record_id=booking.id,
            title=booking.title,
            room_ids=booking.room_ids,
            start=booking.start,
            end=booking.end,
        )
    )

    with pytest.raises(SchedulingConflict):
        asyncio.run(harness.approvals.approve(record, 1, {}, "reviewer"))

    assert harness.publisher.unpublished == ["evt-1"]
    assert harness.repository.records["res-1"].status is RecordStatus.PENDING


def test_stale_approval_unpublishes_event(harness: Harness) -> None:
    record = harness.repository.add(make_record())
    harness.repository.add(make_record(version=2, title="Changed elsewhere"))

    with pytest.raises(VersionConflict):
        asyncio.run(harness.approvals.approve(record, 1, {}, "reviewer"))

    assert harness.publisher.unpublished == ["evt-1"]
    assert harness.repository.records["res-1"].title == "Changed elsewhere"


def test_approve_requires_pending(harness: Harness) -> None:
    record = harness.repository.add(make_record(status=RecordStatus.DRAFT))

    with pytest.raises(InvalidTransition):
        asyncio.run(harness.approvals.approve(record, 1, {}, "reviewer"))


def test_reject_requires_reason(harness: Harness) -> None:
    record = harness.repository.add(make_record())

    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(harness.approvals.reject(record, 1, "   ", "reviewer"))

    assert excinfo.value.field == "reason"
    assert harness.repository.writes == []


def test_reject_records_reason(harness: Harness) -> None:
    record = harness.repository.add(make_record())

    rejected = asyncio.run(
        harness.approvals.reject(record, 1, " Room under repair ", "reviewer")
    )

    assert rejected.status is RecordStatus.REJECTED
    assert rejected.rejection_reason == "Room under repair"
    assert rejected.status_history[-1].reason == "Room under repair"
    assert harness.publisher.published == {}


def test_delete_unpublishes_approved_event(harness: Harness) -> None:
    record = harness.repository.add(
        make_record(status=RecordStatus.APPROVED, external_event_id="evt-9")
    )

    deleted = asyncio.run(harness.approvals.delete(record, 1, "admin"))

    assert deleted.status is RecordStatus.DELETED
    assert harness.publisher.unpublished == ["evt-9"]


def test_delete_one_occurrence_keeps_the_series(harness: Harness) -> None:
    master = harness.repository.add(_weekly_master())
    target = EditTarget(
        EditScope.THIS_OCCURRENCE, "series-1", occurrence_date=date(2024, 1, 8)
    )

    updated = asyncio.run(harness.approvals.delete(master, 1, "admin", target=target))

    assert updated.status is RecordStatus.PENDING
    exception = harness.repository.exceptions[("series-1", date(2024, 1, 8))]
    assert exception.cancelled


def test_restore_returns_to_previous_status(harness: Harness) -> None:
    history = (
        StatusHistoryEntry(RecordStatus.PENDING, START),
        StatusHistoryEntry(RecordStatus.DELETED, START + timedelta(days=1)),
    )
    record = harness.repository.add(
        make_record(status=RecordStatus.DELETED, status_history=history)
    )

    restored = asyncio.run(harness.approvals.restore(record, 1, "admin"))

    assert restored.status is RecordStatus.PENDING
    assert restored.status_history[-1].reason == "Restored by admin"


def test_create_draft_needs_only_a_title(harness: Harness) -> None:
    created = asyncio.run(
        harness.approvals.create_draft({"title": "Offsite"}, "alice")
    )

    assert created.id == "new-1"
    assert created.status is RecordStatus.DRAFT
    assert created.version == 1
    assert harness.audit_repository.events[0]["event_type"] == "create"

    with pytest.raises(ValidationError):
        asyncio.run(harness.approvals.create_draft({"title": " "}, "alice"))


def test_submit_moves_draft_to_review(harness: Harness) -> None:
    record = harness.repository.add(make_record(status=RecordStatus.DRAFT))

    submitted = asyncio.run(
        harness.approvals.submit(record, 1, {"attendee_count": 12}, "alice")
    )

    assert submitted.status is RecordStatus.PENDING
    assert submitted.attendee_count == 12
    assert harness.repository.writes == [("res-1", LifecycleAction.SUBMIT)]


def test_submit_validates_required_fields(harness: Harness) -> None:
    record = harness.repository.add(
        make_record(status=RecordStatus.DRAFT, room_ids=())
    )

    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(harness.approvals.submit(record, 1, {}, "alice"))

    assert excinfo.value.field == "room_ids"


def test_series_availability_covers_every_occurrence(harness: Harness) -> None:
    master = harness.repository.add(_weekly_master())
    harness.availability.bookings.append(
        _approved_booking(
            start=START + timedelta(days=14, minutes=30),
            end=START + timedelta(days=14, minutes=90),
        )
    )

    conflicts = asyncio.run(harness.approvals.check_availability(master))
    single = asyncio.run(
        harness.approvals.check_availability(
            master,
            EditTarget(
                EditScope.THIS_OCCURRENCE,
                "series-1",
                occurrence_date=date(2024, 1, 8),
            ),
        )
    )

    assert [entry.record_id for entry in conflicts] == ["res-2"]
    assert single == []


def test_failed_publish_reports_the_saved_record(harness: Harness) -> None:
    record = harness.repository.add(make_record())
    harness.publisher.fail_publish = True

    with pytest.raises(TransportError) as excinfo:
        asyncio.run(
            harness.approvals.approve(record, 1, {"title": "Budget review"}, "alice")
        )

    committed = excinfo.value.committed
    assert committed is not None
    assert committed.version == 2
    assert committed.title == "Budget review"
    assert harness.repository.records["res-1"].status is RecordStatus.PENDING


def test_failed_publish_without_edits_reports_nothing(harness: Harness) -> None:
    record = harness.repository.add(make_record())
    harness.publisher.fail_publish = True

    with pytest.raises(TransportError) as excinfo:
        asyncio.run(harness.approvals.approve(record, 1, {}, "alice"))

    assert excinfo.value.committed is None


def _rejected_record() -> ReservationRecord:
    history = (
        StatusHistoryEntry(RecordStatus.PENDING, START, "alice"),
        StatusHistoryEntry(
            RecordStatus.REJECTED, START + timedelta(hours=1), "reviewer", "Busy"
        ),
    )
    return make_record(
        status=RecordStatus.REJECTED,
        rejection_reason="Busy",
        status_history=history,
    )


def test_resubmit_returns_rejected_record_to_review(harness: Harness) -> None:
    record = harness.repository.add(_rejected_record())

    resubmitted = asyncio.run(harness.approvals.resubmit(record, 1, "alice"))

    assert resubmitted.status is RecordStatus.PENDING
    assert resubmitted.version == 2
    last_entry = resubmitted.status_history[-1]
    assert last_entry.status is RecordStatus.PENDING
    assert last_entry.reason == "Resubmitted after rejection"
    assert last_entry.changed_by == "alice"
    assert len(resubmitted.status_history) == 3
    assert harness.audit_repository.events[-1]["event_type"] == "resubmit"


def test_resubmit_only_from_rejected(harness: Harness) -> None:
    record = harness.repository.add(make_record())

    with pytest.raises(InvalidTransition):
        asyncio.run(harness.approvals.resubmit(record, 1, "alice"))


def test_resubmit_with_stale_version(harness: Harness) -> None:
    record = harness.repository.add(_rejected_record())

    with pytest.raises(VersionConflict):
        asyncio.run(harness.approvals.resubmit(record, 0, "alice"))

    assert harness.repository.records["res-1"].status is RecordStatus.REJECTED
