"""Shared calendar publication client."""

from dataclasses import dataclass

import httpx

from reservation_calendar.domain.errors import TransportError
from reservation_calendar.domain.records import ReservationRecord
from reservation_calendar.domain.recurrence import to_graph_recurrence
from reservation_calendar.services.approvals import CalendarPublisher


@dataclass
class HttpxCalendarClient(CalendarPublisher):
    """Publishes approved reservations to a Graph-style calendar API."""

    base_url: str
    api_token: str
    calendar_id: str
    time_zone: str
    http_client: httpx.AsyncClient

    @classmethod
    def create(
        cls, base_url: str, api_token: str, calendar_id: str, time_zone: str
    ) -> "HttpxCalendarClient":
        """Create a calendar client with a managed httpx session."""
        return cls(
            base_url=base_url.rstrip("/"),
            api_token=api_token,
            calendar_id=calendar_id,
            time_zone=time_zone,
            http_client=httpx.AsyncClient(),
        )

    async def publish(self, record: ReservationRecord) -> str:
        """Create the calendar event and return its id."""
        url = f"{self.base_url}/calendars/{self.calendar_id}/events"
        try:
            response = await self.http_client.post(
                url,
                headers=self._headers(),
                json=event_payload(record, self.time_zone),
                timeout=15,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransportError(f"Calendar publish failed: {exc}") from exc
        event_id = response.json().get("id")
        if not event_id:
            raise TransportError("Calendar publish returned no event id")
        return str(event_id)

    async def unpublish(self, external_event_id: str) -> None:
        """Delete a calendar event; an already missing event is fine."""
        url = f"{self.base_url}/calendars/{self.calendar_id}/events/{external_event_id}"
        try:
            response = await self.http_client.delete(
                url, headers=self._headers(), timeout=15
            )
            if response.status_code != httpx.codes.NOT_FOUND:
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransportError(f"Calendar delete failed: {exc}") from exc

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        await self.http_client.aclose()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_token}"}


def event_payload(record: ReservationRecord, time_zone: str) -> dict[str, object]:
    """Build the calendar event body for a reservation."""
    payload: dict[str, object] = {
        "subject": record.title,
        "body": {"contentType": "text", "content": record.description},
        "start": {"dateTime": record.start.isoformat(), "timeZone": time_zone},
        "end": {"dateTime": record.end.isoformat(), "timeZone": time_zone},
        "location": {"displayName": ", ".join(record.room_ids)},
        "categories": list(record.categories),
    }
    if record.recurrence is not None:
        payload["recurrence"] = to_graph_recurrence(record.recurrence, time_zone)
    return payload
