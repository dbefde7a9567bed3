"""ASGI entrypoint for the reservation calendar API."""

from reservation_calendar.api.app import create_app
from reservation_calendar.containers import build_container

app = create_app(build_container())
