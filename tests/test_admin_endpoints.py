"""Tests for admin endpoints."""

from datetime import timedelta

from fastapi.testclient import TestClient

from reservation_calendar.api.app import create_app
from reservation_calendar.domain.records import RecordStatus, StatusHistoryEntry
from tests.conftest import START, make_record

ADMIN_HEADERS = {"X-Admin-Token": "admin-token"}


def test_admin_requires_token(container) -> None:
    client = TestClient(create_app(container))

    assert client.get("/admin/health").status_code == 401
    assert (
        client.get("/admin/health", headers={"X-Admin-Token": "wrong"}).status_code
        == 401
    )
    assert client.get("/admin/health", headers=ADMIN_HEADERS).status_code == 200


def test_admin_sessions_endpoint(container, harness) -> None:
    harness.repository.add(make_record())
    client = TestClient(create_app(container))
    client.post("/sessions", json={"actor": "alice", "record_id": "res-1"})

    response = client.get("/admin/sessions", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert len(data["sessions"]) == 1
    assert data["sessions"][0]["actor"] == "alice"
    assert data["sessions"][0]["hold"]["holder"] == "alice"


def test_admin_restore_endpoint(container, harness) -> None:
    history = (
        StatusHistoryEntry(RecordStatus.APPROVED, START),
        StatusHistoryEntry(RecordStatus.DELETED, START + timedelta(days=1)),
    )
    harness.repository.add(
        make_record(status=RecordStatus.DELETED, version=4, status_history=history)
    )
    client = TestClient(create_app(container))

    response = client.post(
        "/admin/reservations/res-1/restore",
        json={"actor": "admin", "version": 4},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["record"]["status"] == "approved"
    assert response.json()["record"]["version"] == 5
    assert harness.audit_repository.events[-1]["event_type"] == "restore"


def test_admin_restore_with_stale_version(container, harness) -> None:
    harness.repository.add(make_record(status=RecordStatus.DELETED, version=4))
    client = TestClient(create_app(container))

    response = client.post(
        "/admin/reservations/res-1/restore",
        json={"actor": "admin", "version": 3},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 409
    assert response.json()["kind"] == "concurrentEdit"
