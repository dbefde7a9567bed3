"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta

from supabase import create_client

from reservation_calendar.adapters.calendar_client import HttpxCalendarClient
from reservation_calendar.adapters.supabase_audit_repository import (
    SupabaseAuditRepository,
)
from reservation_calendar.adapters.supabase_availability_repository import (
    SupabaseAvailabilityRepository,
)
from reservation_calendar.adapters.supabase_reservation_repository import (
    SupabaseReservationRepository,
)
from reservation_calendar.adapters.supabase_review_hold_repository import (
    SupabaseReviewHoldRepository,
)
from reservation_calendar.config import Settings
from reservation_calendar.services.approvals import ApprovalPolicy, ApprovalService
from reservation_calendar.services.audit import AuditService
from reservation_calendar.services.edit_sessions import (
    EditSessionRegistry,
    SessionOptions,
)
from reservation_calendar.services.holds import ReviewHoldService
from reservation_calendar.services.mutations import GuardedWriter


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    writer: GuardedWriter
    approval_service: ApprovalService
    hold_service: ReviewHoldService
    sessions: EditSessionRegistry
    close_resources: Callable[[], Awaitable[None]]


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    supabase_client = create_client(
        resolved_settings.supabase_url, resolved_settings.supabase_service_key
    )
    availability_repository = SupabaseAvailabilityRepository(supabase_client)
    reservation_repository = SupabaseReservationRepository(
        supabase_client,
        availability=availability_repository,
        buffer_minutes=resolved_settings.availability_buffer_minutes,
    )
    hold_repository = (
        SupabaseReviewHoldRepository(
            supabase_client, lease_minutes=resolved_settings.review_hold_lease_minutes
        )
        if resolved_settings.review_holds_enabled
        else None
    )
    calendar_client = HttpxCalendarClient.create(
        base_url=resolved_settings.calendar_api_base_url,
        api_token=resolved_settings.calendar_api_token,
        calendar_id=resolved_settings.calendar_id,
        time_zone=resolved_settings.calendar_time_zone,
    )
    writer = GuardedWriter(reservation_repository)
    approval_service = ApprovalService(
        writer=writer,
        availability=availability_repository,
        publisher=calendar_client,
        audit=AuditService(SupabaseAuditRepository(supabase_client)),
        policy=ApprovalPolicy(
            allow_force_approve=resolved_settings.allow_force_approve,
            buffer_minutes=resolved_settings.availability_buffer_minutes,
            conflict_horizon_days=resolved_settings.occurrence_preview_days,
        ),
    )
    hold_service = ReviewHoldService(hold_repository)
    sessions = EditSessionRegistry(
        approvals=approval_service,
        holds=hold_service,
        options=SessionOptions(
            confirmation_timeout=timedelta(
                seconds=resolved_settings.confirmation_timeout_seconds
            ),
            preview_days=resolved_settings.occurrence_preview_days,
        ),
    )

    async def close_resources() -> None:
        await sessions.close_all()
        await calendar_client.close()

    return AppContainer(
        settings=resolved_settings,
        writer=writer,
        approval_service=approval_service,
        hold_service=hold_service,
        sessions=sessions,
        close_resources=close_resources,
    )
