"""Calendar, event and shortened-link value types.

Events carry both persisted (``calendar_cache`` row) and remote-provider
representations; the conversions live here so that the store, the sync
engine and the feed parsers all agree on a single shape.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from datetime import UTC, date, datetime, time, tzinfo
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from calendar_app.providers.base import CalendarEntry, EventDateTime, RemoteEvent, coerce_zone

logger = logging.getLogger(__name__)

Latitude = Annotated[float, Field(ge=-90.0, le=90.0)]
Longitude = Annotated[float, Field(ge=-180.0, le=180.0)]


class ConversionError(ValueError):
    """Raised when a remote or scraped item cannot become a valid Event."""


def new_event_id() -> str:
    """Fresh provider-compatible event id: 32 lowercase hex characters."""
    return uuid.uuid4().hex


def to_utc(value: datetime) -> datetime:
    """Normalize *value* to UTC; naive values are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Location(BaseModel):
    """A named place with an optional (latitude, longitude) pair."""

    model_config = ConfigDict(frozen=True)

    name: str
    lat_lon: tuple[Latitude, Longitude] | None = None


class Calendar(BaseModel):
    """A provider calendar plus the locally owned sync/edit/display flags."""

    calendar_id: str
    name: str = ""
    gcal_name: str | None = None
    description: str | None = None
    location: str | None = None
    timezone: str | None = None
    sync: bool = False
    edit: bool = False
    display: bool = False
    last_modified: datetime | None = None

    @classmethod
    def from_remote_entry(cls, entry: CalendarEntry) -> Calendar | None:
        """Convert a listing entry; soft-deleted entries yield ``None``."""
        if entry.deleted:
            return None
        timezone = entry.time_zone if coerce_zone(entry.time_zone) is not None else None
        return cls(
            calendar_id=entry.id,
            name=entry.summary or "",
            gcal_name=entry.summary,
            description=entry.description,
            location=entry.location,
            timezone=timezone,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Calendar:
        return cls(
            calendar_id=row["gcal_id"],
            name=row["calendar_name"],
            gcal_name=row["gcal_name"],
            description=row["gcal_description"],
            location=row["gcal_location"],
            timezone=row["gcal_timezone"],
            sync=row["sync"],
            edit=row["edit"],
            display=row["display"],
            last_modified=row["last_modified"],
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "calendar_name": self.name,
            "gcal_id": self.calendar_id,
            "gcal_name": self.gcal_name,
            "gcal_description": self.description,
            "gcal_location": self.location,
            "gcal_timezone": self.timezone,
            "sync": self.sync,
            "edit": self.edit,
            "display": self.display,
        }


class Event(BaseModel):
    """A single calendar event, identified by (calendar_id, event_id)."""

    calendar_id: str
    event_id: str = Field(default_factory=new_event_id)
    start_time: datetime
    end_time: datetime
    url: str | None = None
    name: str
    description: str | None = None
    location: Location | None = None
    last_modified: datetime | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return to_utc(value)

    @classmethod
    def new(
        cls, calendar_id: str, name: str, start_time: datetime, end_time: datetime
    ) -> Event:
        return cls(calendar_id=calendar_id, name=name, start_time=start_time, end_time=end_time)

    @property
    def location_name(self) -> str | None:
        return self.location.name if self.location is not None else None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Event:
        location = None
        if row["event_location_name"] is not None:
            location = _location_from_columns(
                row["event_location_name"],
                row["event_location_lat"],
                row["event_location_lon"],
            )
        return cls(
            calendar_id=row["gcal_id"],
            event_id=row["event_id"],
            start_time=row["event_start_time"],
            end_time=row["event_end_time"],
            url=row["event_url"],
            name=row["event_name"],
            description=row["event_description"],
            location=location,
            last_modified=row["last_modified"],
        )

    def to_row(self) -> dict[str, Any]:
        lat, lon = (None, None)
        if self.location is not None and self.location.lat_lon is not None:
            lat, lon = self.location.lat_lon
        return {
            "gcal_id": self.calendar_id,
            "event_id": self.event_id,
            "event_start_time": self.start_time,
            "event_end_time": self.end_time,
            "event_url": self.url,
            "event_name": self.name,
            "event_description": self.description,
            "event_location_name": self.location_name,
            "event_location_lat": lat,
            "event_location_lon": lon,
        }

    @classmethod
    def from_remote(
        cls,
        item: RemoteEvent,
        calendar_id: str,
        fallback_timezone: tzinfo | str = UTC,
    ) -> Event:
        """Build an Event from a provider event.

        All-day boundaries resolve to local midnight in the boundary's own
        ``timeZone``, else in *fallback_timezone*.

        Raises:
            ConversionError: id, start, end or summary is missing.
        """
        if not item.id:
            raise ConversionError("No event id")
        if item.summary is None:
            raise ConversionError(f"No name for event {item.id}")
        if isinstance(fallback_timezone, str):
            fallback: tzinfo = coerce_zone(fallback_timezone) or UTC
        else:
            fallback = fallback_timezone
        start_time = item.start.resolve(fallback) if item.start is not None else None
        if start_time is None:
            raise ConversionError(f"No start time for event {item.id}")
        end_time = item.end.resolve(fallback) if item.end is not None else None
        if end_time is None:
            raise ConversionError(f"No end time for event {item.id}")
        return cls(
            calendar_id=calendar_id,
            event_id=item.id,
            start_time=start_time,
            end_time=end_time,
            url=item.html_link,
            name=item.summary,
            description=item.description,
            location=Location(name=item.location) if item.location is not None else None,
        )

    def to_remote(self) -> RemoteEvent:
        return RemoteEvent(
            id=self.event_id,
            start=EventDateTime(date_time=self.start_time),
            end=EventDateTime(date_time=self.end_time),
            summary=self.name,
            description=self.description,
            location=self.location_name,
        )


def _location_from_columns(name: str, lat: float | None, lon: float | None) -> Location:
    if lat is None or lon is None:
        return Location(name=name)
    try:
        return Location(name=name, lat_lon=(lat, lon))
    except ValidationError:
        logger.warning("Dropping out-of-range coordinates (%s, %s) for location %r", lat, lon, name)
        return Location(name=name)


class ShortenedLink(BaseModel):
    shortened_url: str
    original_url: str
    last_modified: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ShortenedLink:
        return cls(
            shortened_url=row["shortened_url"],
            original_url=row["original_url"],
            last_modified=row["last_modified"],
        )


class EventForm(BaseModel):
    """User-submitted event, with wall-clock dates/times in the viewer's zone."""

    model_config = ConfigDict(str_strip_whitespace=True)

    calendar_id: str = Field(min_length=1)
    event_id: str = Field(default_factory=new_event_id)
    start_date: date
    start_time: time
    end_date: date
    end_time: time
    name: str = Field(min_length=1)
    url: str | None = None
    description: str | None = None
    location_name: str | None = None

    def to_event(self, zone: tzinfo) -> Event:
        start = datetime.combine(self.start_date, self.start_time, tzinfo=zone)
        end = datetime.combine(self.end_date, self.end_time, tzinfo=zone)
        return Event(
            calendar_id=self.calendar_id,
            event_id=self.event_id,
            start_time=start,
            end_time=end,
            url=self.url or None,
            name=self.name,
            description=self.description or None,
            location=Location(name=self.location_name) if self.location_name else None,
        )
