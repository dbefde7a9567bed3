"""Tests for review holds."""

import asyncio
from datetime import timedelta

import pytest

from reservation_calendar.domain.errors import LockUnavailable
from reservation_calendar.domain.holds import LeaseStatus, ReviewHold, lease_status
from reservation_calendar.domain.records import RecordStatus
from reservation_calendar.services.holds import ReviewHoldService
from tests.conftest import (
    FakeClock,
    FakeLockService,
    UnreachableLockService,
    make_record,
)


def test_pending_record_gets_a_hold() -> None:
    clock = FakeClock()
    service = ReviewHoldService(FakeLockService(clock))

    hold = asyncio.run(service.acquire_for(make_record(), "alice"))

    assert hold is not None
    assert hold.holder == "alice"
    assert hold.minutes_remaining(clock()) == 30


def test_second_reviewer_is_refused_with_holder_name() -> None:
    clock = FakeClock()
    service = ReviewHoldService(FakeLockService(clock))
    record = make_record()
    asyncio.run(service.acquire_for(record, "alice"))

    with pytest.raises(LockUnavailable) as excinfo:
        asyncio.run(service.acquire_for(record, "bob"))

    assert excinfo.value.holder == "alice"
    assert excinfo.value.minutes_remaining(clock()) == 30
    assert "alice" in str(excinfo.value)


def test_same_holder_reacquires() -> None:
    clock = FakeClock()
    service = ReviewHoldService(FakeLockService(clock))
    record = make_record()
    first = asyncio.run(service.acquire_for(record, "alice"))

    second = asyncio.run(service.acquire_for(record, "alice"))

    assert second == first


def test_expired_hold_can_be_taken_over() -> None:
    clock = FakeClock()
    service = ReviewHoldService(FakeLockService(clock))
    record = make_record()
    asyncio.run(service.acquire_for(record, "alice"))
    clock.advance(minutes=31)

    hold = asyncio.run(service.acquire_for(record, "bob"))

    assert hold is not None
    assert hold.holder == "bob"


def test_only_pending_records_are_held() -> None:
    locks = FakeLockService(FakeClock())
    service = ReviewHoldService(locks)

    hold = asyncio.run(
        service.acquire_for(make_record(status=RecordStatus.APPROVED), "alice")
    )

    assert hold is None
    assert locks.holds == {}


def test_unreachable_lock_service_fails_open() -> None:
    service = ReviewHoldService(UnreachableLockService())

    assert asyncio.run(service.acquire_for(make_record(), "alice")) is None


def test_release_failure_is_swallowed() -> None:
    locks = UnreachableLockService()
    service = ReviewHoldService(locks)
    clock = FakeClock()
    hold = ReviewHold("res-1", "alice", clock() + timedelta(minutes=30))

    asyncio.run(service.release(hold))

    assert locks.release_attempts == 1


def test_disabled_holds() -> None:
    service = ReviewHoldService()

    assert asyncio.run(service.acquire_for(make_record(), "alice")) is None
    asyncio.run(service.release(None))


def test_lease_status_thresholds() -> None:
    assert lease_status(30) is LeaseStatus.ACTIVE
    assert lease_status(11) is LeaseStatus.ACTIVE
    assert lease_status(10) is LeaseStatus.WARNING
    assert lease_status(5) is LeaseStatus.WARNING
    assert lease_status(4) is LeaseStatus.CRITICAL
    assert lease_status(1) is LeaseStatus.CRITICAL
    assert lease_status(0) is LeaseStatus.EXPIRED
    assert lease_status(-3) is LeaseStatus.EXPIRED


def test_minutes_remaining_rounds_up() -> None:
    clock = FakeClock()
    hold = ReviewHold("res-1", "alice", clock() + timedelta(minutes=4, seconds=1))

    assert hold.minutes_remaining(clock()) == 5
    assert not hold.is_expired(clock())
    assert hold.is_expired(clock() + timedelta(minutes=5))
