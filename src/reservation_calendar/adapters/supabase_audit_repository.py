"""Supabase repository for audit events."""

from dataclasses import dataclass

from supabase import Client

from reservation_calendar.adapters.supabase_rows import run_query
from reservation_calendar.services.audit import AuditRepository


@dataclass
class SupabaseAuditRepository(AuditRepository):
    """Supabase-backed audit repository."""

    client: Client

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
        payload = {
            "actor": actor,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "event_type": event_type,
            "before_json": before,
            "after_json": after,
        }
        await run_query(
            lambda: self.client.table("audit_events").insert(payload).execute()
        )
