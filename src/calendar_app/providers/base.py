"""Remote calendar provider contract and wire types.

The engine talks to a remote provider only through ``RemoteCalendarClient``.
The client is an optional capability: when credentials are missing the
engine is handed a ``RemoteClientUnavailable`` marker instead, and each
operation that needs the provider calls ``require_remote`` once.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field

# Organizer address Google reports for events whose owner it will not reveal.
ANONYMOUS_ORGANIZER_EMAIL = "unknownorganizer@calendar.google.com"


class RemoteClientError(RuntimeError):
    """Base error raised by remote calendar clients."""


class RemoteCredentialError(RemoteClientError):
    """Raised when provider credentials are missing or invalid."""


class RemoteTokenRefreshError(RemoteClientError):
    """Raised when refresh-token exchange fails."""


class RemoteRequestError(RemoteClientError):
    """Raised when a provider API request returns a non-success status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Calendar API request failed ({status_code}): {message}")


class RemoteUnavailableError(RuntimeError):
    """Raised when an operation needs the remote provider but none is configured."""


# ---------------------------------------------------------------------------
# Wire types (Google Calendar v3 field names as aliases)
# ---------------------------------------------------------------------------


def coerce_zone(name: str | None) -> ZoneInfo | None:
    """ZoneInfo for an IANA *name*, or ``None`` when empty or unknown."""
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


class EventDateTime(BaseModel):
    """Either an instant (``dateTime``) or an all-day date (``date``)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    all_day: date | None = Field(default=None, alias="date")
    date_time: datetime | None = Field(default=None, alias="dateTime")
    time_zone: str | None = Field(default=None, alias="timeZone")

    def resolve(self, fallback: tzinfo = UTC) -> datetime | None:
        """The boundary as a UTC instant.

        All-day dates resolve to local midnight in ``timeZone`` (else
        *fallback*); naive instants are read in the same zone.
        """
        zone = coerce_zone(self.time_zone) or fallback
        if self.date_time is not None:
            value = self.date_time
            if value.tzinfo is None:
                value = value.replace(tzinfo=zone)
            return value.astimezone(UTC)
        if self.all_day is not None:
            return datetime.combine(self.all_day, time.min, tzinfo=zone).astimezone(UTC)
        return None


class Organizer(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str | None = None
    display_name: str | None = Field(default=None, alias="displayName")


class RemoteEvent(BaseModel):
    """An event as the provider returns it."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: EventDateTime | None = None
    end: EventDateTime | None = None
    html_link: str | None = Field(default=None, alias="htmlLink")
    organizer: Organizer | None = None
    status: str | None = None

    @property
    def has_anonymous_organizer(self) -> bool:
        return self.organizer is not None and self.organizer.email == ANONYMOUS_ORGANIZER_EMAIL

    def to_payload(self) -> dict[str, Any]:
        """Serialize the writable fields for an insert/update request body."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            include={"id", "summary", "description", "location", "start", "end"},
        )


class CalendarEntry(BaseModel):
    """One row of the provider's calendar listing."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    time_zone: str | None = Field(default=None, alias="timeZone")
    deleted: bool = False
    hidden: bool = False


def _boundaries_equivalent(
    a: EventDateTime | None, b: EventDateTime | None, fallback: tzinfo
) -> bool:
    if a is None or b is None:
        return a is b
    return a.resolve(fallback) == b.resolve(fallback)


def remote_events_equivalent(a: RemoteEvent, b: RemoteEvent, fallback: tzinfo = UTC) -> bool:
    """Structural comparison that ignores provider-computed fields.

    Boundaries are compared as resolved instants, so ``2020-05-16T19:00Z``
    and ``2020-05-16T15:00-04:00`` with ``timeZone`` set are the same start.
    Organizer, ``htmlLink`` and status are never compared.
    """
    return (
        a.id == b.id
        and _boundaries_equivalent(a.start, b.start, fallback)
        and _boundaries_equivalent(a.end, b.end, fallback)
        and a.summary == b.summary
        and a.description == b.description
        and a.location == b.location
    )


# ---------------------------------------------------------------------------
# Client contract
# ---------------------------------------------------------------------------


class RemoteCalendarClient(abc.ABC):
    """Provider abstraction used by the sync engine and query service."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def list_calendars(self) -> list[CalendarEntry]:
        """Return the full calendar listing, soft-deleted entries included."""
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        *,
        min_time: datetime | None = None,
        max_time: datetime | None = None,
    ) -> list[RemoteEvent]:
        """Return every event of *calendar_id* overlapping the optional window."""
        ...

    @abc.abstractmethod
    async def insert_event(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        ...

    @abc.abstractmethod
    async def update_event(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        ...

    @abc.abstractmethod
    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        ...

    async def shutdown(self) -> None:
        """Release any resources held by the client."""
        return None


@dataclass(frozen=True)
class RemoteClientUnavailable:
    """Marker standing in for a remote client that could not be configured."""

    reason: str = "remote calendar client is not configured"


RemoteClient = RemoteCalendarClient | RemoteClientUnavailable


def require_remote(remote: RemoteClient) -> RemoteCalendarClient:
    """Return the usable client or raise ``RemoteUnavailableError``."""
    if isinstance(remote, RemoteClientUnavailable):
        raise RemoteUnavailableError(remote.reason)
    return remote


def remote_available(remote: RemoteClient) -> bool:
    return not isinstance(remote, RemoteClientUnavailable)
