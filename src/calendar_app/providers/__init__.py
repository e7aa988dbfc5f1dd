"""Remote calendar providers."""

from calendar_app.providers.base import (
    ANONYMOUS_ORGANIZER_EMAIL,
    CalendarEntry,
    EventDateTime,
    Organizer,
    RemoteCalendarClient,
    RemoteClient,
    RemoteClientError,
    RemoteClientUnavailable,
    RemoteEvent,
    RemoteRequestError,
    RemoteUnavailableError,
    remote_available,
    remote_events_equivalent,
    require_remote,
)

__all__ = [
    "ANONYMOUS_ORGANIZER_EMAIL",
    "CalendarEntry",
    "EventDateTime",
    "Organizer",
    "RemoteCalendarClient",
    "RemoteClient",
    "RemoteClientError",
    "RemoteClientUnavailable",
    "RemoteEvent",
    "RemoteRequestError",
    "RemoteUnavailableError",
    "remote_available",
    "remote_events_equivalent",
    "require_remote",
]
