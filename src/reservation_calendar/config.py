"""Application configuration."""

import os

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    supabase_url: str
    supabase_service_key: str
    admin_token: str
    calendar_api_base_url: str = "https://graph.microsoft.com/v1.0"
    calendar_api_token: str
    calendar_id: str
    calendar_time_zone: str = "Eastern Standard Time"
    review_hold_lease_minutes: int = 30
    review_holds_enabled: bool = True
    confirmation_timeout_seconds: int = 30
    lease_check_interval_seconds: int = 60
    availability_buffer_minutes: int = 0
    occurrence_preview_days: int = 90
    allow_force_approve: bool = False
    environment: str = _ENVIRONMENT

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )
