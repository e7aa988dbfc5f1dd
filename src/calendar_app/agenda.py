"""Agenda and query views over the event cache, plus event CRUD passthroughs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import UTC, date, datetime, time, timedelta, tzinfo

from pydantic import BaseModel

from calendar_app.config import CalendarAppConfig
from calendar_app.models import Calendar, Event, EventForm
from calendar_app.providers.base import RemoteClient, require_remote
from calendar_app.storage.links import LinkShortener
from calendar_app.storage.store import EventStore

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK = timedelta(weeks=1)
DEFAULT_LOOKAHEAD = timedelta(weeks=2)


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


class PaginationMeta(BaseModel):
    """Pagination metadata for "modified since" listings."""

    total: int
    offset: int
    limit: int | None = None

    @property
    def has_more(self) -> bool:
        """True when more items exist beyond the current page."""
        if self.limit is None:
            return False
        return self.offset + self.limit < self.total


class Page[T](BaseModel):
    """``{"data": [T, ...], "meta": PaginationMeta}``"""

    data: list[T]
    meta: PaginationMeta


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


def local_midnight(day: date, zone: tzinfo) -> datetime:
    """Midnight at the start of *day* in *zone*, as a UTC instant."""
    return datetime.combine(day, time.min, tzinfo=zone).astimezone(UTC)


class CalendarService:
    """Read views and single-event operations used by the CLI and other drivers."""

    def __init__(
        self,
        *,
        store: EventStore,
        remote: RemoteClient,
        config: CalendarAppConfig,
        links: LinkShortener | None = None,
    ) -> None:
        self._store = store
        self._remote = remote
        self._config = config
        self._links = links if links is not None else LinkShortener(store, config.domain)

    @property
    def time_zone(self) -> tzinfo:
        return self._config.time_zone

    @property
    def links(self) -> LinkShortener:
        return self._links

    # -- views -------------------------------------------------------------

    async def agenda(
        self,
        days_before: int | None = None,
        days_after: int | None = None,
        *,
        now: datetime | None = None,
    ) -> list[Event]:
        """Events overlapping ``[now - days_before, now + days_after]`` on displayed calendars.

        Results are unsorted.
        """
        if days_before is None:
            days_before = self._config.sync.agenda_days_before
        if days_after is None:
            days_after = self._config.sync.agenda_days_after
        now = now or datetime.now(UTC)
        min_time = now - timedelta(days=days_before)
        max_time = now + timedelta(days=days_after)

        calendars, events = await asyncio.gather(
            self._store.list_calendars(),
            self._store.events_in_window(min_time=min_time, max_time=max_time),
        )
        displayed = {calendar.calendar_id for calendar in calendars if calendar.display}
        return [event for event in events if event.calendar_id in displayed]

    async def list_events(
        self,
        calendar_id: str,
        min_date: date | None = None,
        max_date: date | None = None,
        *,
        now: datetime | None = None,
    ) -> list[Event]:
        """One calendar's events between two viewer-local dates, sorted by start.

        ``max_date`` covers the whole day: the bound is midnight of the
        following day in the viewer's zone.
        """
        now = now or datetime.now(UTC)
        zone = self.time_zone
        if min_date is not None:
            min_time = local_midnight(min_date, zone)
        else:
            min_time = now - DEFAULT_LOOKBACK
        if max_date is not None:
            max_time = local_midnight(max_date + timedelta(days=1), zone)
        else:
            max_time = now + DEFAULT_LOOKAHEAD

        events = await self._store.events_in_window(
            calendar_id, min_time=min_time, max_time=max_time
        )
        return sorted(events, key=lambda event: event.start_time)

    async def list_calendars(self) -> list[Calendar]:
        return await self._store.list_calendars()

    async def recent_calendars(
        self, since: datetime | None = None, offset: int = 0, limit: int | None = None
    ) -> Page[Calendar]:
        calendars, total = await asyncio.gather(
            self._store.recent_calendars(since, offset, limit),
            self._store.count_calendars(since),
        )
        return Page[Calendar](
            data=calendars, meta=PaginationMeta(total=total, offset=offset, limit=limit)
        )

    async def recent_events(
        self, since: datetime | None = None, offset: int = 0, limit: int | None = None
    ) -> Page[Event]:
        events, total = await asyncio.gather(
            self._store.recent_events(since, offset, limit),
            self._store.count_events(since),
        )
        return Page[Event](
            data=events, meta=PaginationMeta(total=total, offset=offset, limit=limit)
        )

    # -- single events -------------------------------------------------------

    async def get_event(self, calendar_id: str, event_id: str) -> Event | None:
        return await self._store.get_event(calendar_id, event_id)

    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Delete an event locally, and remotely when its calendar is editable.

        Returns ``False`` without touching the remote when the event is not
        cached locally.

        Raises:
            RemoteUnavailableError: the calendar is editable but no remote
                client is configured. Nothing is deleted in that case.
        """
        if await self._store.get_event(calendar_id, event_id) is None:
            return False
        calendar = await self._store.get_calendar(calendar_id)
        if calendar is not None and calendar.edit:
            remote = require_remote(self._remote)
            await remote.delete_event(calendar_id, event_id)
            logger.info("Deleted remote event %s from %s", event_id, calendar_id)
        return await self._store.delete_event(calendar_id, event_id)

    async def create_event(self, form: EventForm) -> Event:
        """Store an event from a user form; push it remotely when the calendar is editable."""
        event = form.to_event(self.time_zone)
        calendar = await self._store.get_calendar(event.calendar_id)
        if calendar is not None and calendar.edit:
            remote = require_remote(self._remote)
            await remote.insert_event(event.calendar_id, event.to_remote())
        await self._store.upsert_event(event)
        logger.info("Created event %s in %s", event.event_id, event.calendar_id)
        return event

    async def update_calendar(
        self,
        calendar_id: str,
        *,
        name: str | None = None,
        sync: bool | None = None,
        edit: bool | None = None,
        display: bool | None = None,
    ) -> Calendar | None:
        return await self._store.update_calendar(
            calendar_id, name=name, sync=sync, edit=edit, display=display
        )

    # -- rendering -----------------------------------------------------------

    async def event_summary(self, event: Event) -> str:
        """One-line summary: local start, name, calendar id, event id and link.

        The link is the shortened URL when the event has a URL, else the
        event id.
        """
        if event.url:
            try:
                link = await self._links.short_url(event.url)
            except Exception:
                logger.warning("Could not shorten %s", event.url, exc_info=True)
                link = event.url
        else:
            link = event.event_id
        start = event.start_time.astimezone(self.time_zone)
        stamp = start.isoformat(sep=" ")
        return f"{stamp} {event.name} {event.calendar_id} {event.event_id} {link}"

    def events_due_for_notification(
        self,
        events: Iterable[Event],
        *,
        now: datetime | None = None,
        lead: timedelta | None = None,
    ) -> list[Event]:
        """Events starting within *lead* of *now* or in progress, by start time."""
        now = now or datetime.now(UTC)
        if lead is None:
            lead = timedelta(minutes=self._config.sync.notification_lead_minutes)
        due = [
            event for event in events if event.start_time - lead <= now <= event.end_time
        ]
        return sorted(due, key=lambda event: event.start_time)
