"""Audit logging service."""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Protocol

from reservation_calendar.domain.records import ReservationRecord, content_of
from reservation_calendar.domain.recurrence import Recurrence, recurrence_to_dict

logger = logging.getLogger(__name__)


class AuditRepository(Protocol):
    """Persistence interface for audit events."""

    async def create_event(  # noqa: PLR0913
        self,
        actor: str,
        entity_type: str,
        entity_id: str,
        event_type: str,
        before: dict[str, object] | None,
        after: dict[str, object] | None,
    ) -> None:
        """Create an audit event row."""


@dataclass
class AuditService:
    """Service for recording reservation audit events."""

    repository: AuditRepository

    async def record_change(
        self,
        actor: str,
        event_type: str,
        before: ReservationRecord | None,
        after: ReservationRecord,
    ) -> None:
        """Persist an audit event; failures are logged, the write already stands."""
        try:
            await self.repository.create_event(
                actor=actor,
                entity_type=after.kind.value,
                entity_id=str(after.id),
                event_type=event_type,
                before=audit_view(before) if before is not None else None,
                after=audit_view(after),
            )
        except Exception:
            logger.exception(
                "Failed to record %s audit event for %s", event_type, after.id
            )


def audit_view(record: ReservationRecord) -> dict[str, object]:
    """JSON-friendly snapshot of a record for the audit trail."""
    view: dict[str, object] = {
        name: _jsonable(value) for name, value in content_of(record).items()
    }
    view["status"] = record.status.value
    view["version"] = record.version
    view["external_event_id"] = record.external_event_id
    return view


def _jsonable(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Recurrence):
        return recurrence_to_dict(value)
    if isinstance(value, tuple):
        return list(value)
    if value is None or isinstance(value, str | int | float | bool):
        return value
    return str(value)
