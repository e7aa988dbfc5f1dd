"""Shared fixtures for the calendar-app test suite.

Engine and service tests run against ``FakeEventStore`` and
``FakeRemoteCalendar``, in-memory doubles with the same async surface as
``EventStore`` and ``RemoteCalendarClient``. Store integration tests use a
shared Postgres testcontainer with a fresh database per test.
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from calendar_app.config import CalendarAppConfig, FeedsConfig
from calendar_app.models import Calendar, Event, ShortenedLink
from calendar_app.providers.base import CalendarEntry, RemoteCalendarClient, RemoteEvent
from calendar_app.storage.store import (
    MIN_SHORT_TOKEN_LENGTH,
    StoreConflictError,
    short_token_digest,
)

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

    from calendar_app.db import Database

docker_available = shutil.which("docker") is not None

FIXTURES_DIR = Path(__file__).parent / "fixtures"


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class FakeEventStore:
    """Dict-backed stand-in for ``EventStore``."""

    def __init__(self) -> None:
        self.calendars: dict[str, Calendar] = {}
        self.events: dict[tuple[str, str], Event] = {}
        self.links: list[ShortenedLink] = []
        self.writes: list[tuple[str, str, str]] = []
        self._clock = 0

    def _now(self) -> datetime:
        self._clock += 1
        return datetime(2020, 1, 1, tzinfo=UTC).replace(microsecond=self._clock)

    async def upsert_calendar(self, calendar: Calendar) -> Calendar | None:
        existing = self.calendars.get(calendar.calendar_id)
        if existing is not None:
            self.calendars[calendar.calendar_id] = existing.model_copy(
                update={
                    "gcal_name": calendar.gcal_name,
                    "description": calendar.description,
                    "location": calendar.location,
                    "timezone": calendar.timezone,
                    "last_modified": self._now(),
                }
            )
            return existing
        self.calendars[calendar.calendar_id] = calendar.model_copy(
            update={"sync": False, "edit": False, "display": False, "last_modified": self._now()}
        )
        return None

    async def update_calendar(self, calendar_id, *, name=None, sync=None, edit=None, display=None):
        existing = self.calendars.get(calendar_id)
        if existing is None:
            return None
        changes = {
            key: value
            for key, value in {"name": name, "sync": sync, "edit": edit, "display": display}.items()
            if value is not None
        }
        updated = existing.model_copy(update={**changes, "last_modified": self._now()})
        self.calendars[calendar_id] = updated
        return updated

    async def get_calendar(self, calendar_id: str) -> Calendar | None:
        return self.calendars.get(calendar_id)

    async def list_calendars(self) -> list[Calendar]:
        return list(self.calendars.values())

    async def recent_calendars(self, since=None, offset=0, limit=None) -> list[Calendar]:
        rows = sorted(
            (c for c in self.calendars.values() if since is None or c.last_modified > since),
            key=lambda c: c.name,
        )
        end = None if limit is None else offset + limit
        return rows[offset:end]

    async def count_calendars(self, since=None) -> int:
        return sum(1 for c in self.calendars.values() if since is None or c.last_modified > since)

    async def insert_event(self, event: Event) -> None:
        key = (event.calendar_id, event.event_id)
        if key in self.events:
            raise StoreConflictError("calendar_cache", key)
        self.events[key] = event.model_copy(update={"last_modified": self._now()})
        self.writes.append(("insert", *key))

    async def upsert_event(self, event: Event) -> bool:
        key = (event.calendar_id, event.event_id)
        inserted = key not in self.events
        self.events[key] = event.model_copy(update={"last_modified": self._now()})
        self.writes.append(("insert" if inserted else "update", *key))
        return inserted

    async def get_event(self, calendar_id: str, event_id: str) -> Event | None:
        return self.events.get((calendar_id, event_id))

    async def events_for_calendar(self, calendar_id: str) -> list[Event]:
        return [e for e in self.events.values() if e.calendar_id == calendar_id]

    async def events_in_window(self, calendar_id=None, min_time=None, max_time=None) -> list[Event]:
        matches = [
            e
            for e in self.events.values()
            if (calendar_id is None or e.calendar_id == calendar_id)
            and (min_time is None or e.end_time >= min_time)
            and (max_time is None or e.start_time <= max_time)
        ]
        if calendar_id is not None:
            matches.sort(key=lambda e: e.start_time)
        return matches

    async def recent_events(self, since=None, offset=0, limit=None) -> list[Event]:
        rows = sorted(
            (e for e in self.events.values() if since is None or e.last_modified > since),
            key=lambda e: e.start_time,
        )
        end = None if limit is None else offset + limit
        return rows[offset:end]

    async def count_events(self, since=None) -> int:
        return sum(1 for e in self.events.values() if since is None or e.last_modified > since)

    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        return self.events.pop((calendar_id, event_id), None) is not None

    async def get_link_by_original(self, original_url: str) -> ShortenedLink | None:
        matches = [link for link in self.links if link.original_url == original_url]
        return matches[-1] if matches else None

    async def get_link_by_token(self, shortened_url: str) -> ShortenedLink | None:
        return next((link for link in self.links if link.shortened_url == shortened_url), None)

    async def list_links(self) -> list[ShortenedLink]:
        return list(self.links)

    async def get_or_create_link(self, original_url: str) -> ShortenedLink:
        existing = await self.get_link_by_original(original_url)
        if existing is not None:
            return existing
        digest = short_token_digest(original_url)
        used = {link.shortened_url for link in self.links}
        length = MIN_SHORT_TOKEN_LENGTH
        while digest[:length] in used:
            length += 1
        link = ShortenedLink(
            shortened_url=digest[:length], original_url=original_url, last_modified=self._now()
        )
        self.links.append(link)
        return link


# ---------------------------------------------------------------------------
# In-memory remote calendar
# ---------------------------------------------------------------------------


class FakeRemoteCalendar(RemoteCalendarClient):
    """Remote client double that records every mutation."""

    def __init__(self) -> None:
        self.entries: list[CalendarEntry] = []
        self.events: dict[str, dict[str, RemoteEvent]] = {}
        self.inserted: list[tuple[str, RemoteEvent]] = []
        self.updated: list[tuple[str, RemoteEvent]] = []
        self.deleted: list[tuple[str, str]] = []
        self.list_events_calls: list[tuple[str, datetime | None]] = []
        self.fail_calendar_list: Exception | None = None
        self.fail_events_for: dict[str, Exception] = {}
        self.fail_insert_ids: set[str] = set()

    @property
    def name(self) -> str:
        return "fake"

    def add_calendar(self, calendar_id: str, summary: str, **fields) -> None:
        self.entries.append(CalendarEntry(id=calendar_id, summary=summary, **fields))
        self.events.setdefault(calendar_id, {})

    def add_event(self, calendar_id: str, event: RemoteEvent) -> None:
        self.events.setdefault(calendar_id, {})[event.id] = event

    async def list_calendars(self) -> list[CalendarEntry]:
        if self.fail_calendar_list is not None:
            raise self.fail_calendar_list
        return list(self.entries)

    async def list_events(self, calendar_id, *, min_time=None, max_time=None) -> list[RemoteEvent]:
        self.list_events_calls.append((calendar_id, min_time))
        if calendar_id in self.fail_events_for:
            raise self.fail_events_for[calendar_id]
        items = []
        for item in self.events.get(calendar_id, {}).values():
            end = item.end.resolve() if item.end is not None else None
            if min_time is not None and end is not None and end < min_time:
                continue
            items.append(item)
        return items

    async def insert_event(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        if event.id in self.fail_insert_ids:
            raise RuntimeError(f"insert rejected for {event.id}")
        self.inserted.append((calendar_id, event))
        self.add_event(calendar_id, event)
        return event

    async def update_event(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        self.updated.append((calendar_id, event))
        self.add_event(calendar_id, event)
        return event

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        self.deleted.append((calendar_id, event_id))
        self.events.get(calendar_id, {}).pop(event_id, None)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_store() -> FakeEventStore:
    return FakeEventStore()


@pytest.fixture
def fake_remote() -> FakeRemoteCalendar:
    return FakeRemoteCalendar()


@pytest.fixture
def app_config() -> CalendarAppConfig:
    """Config with feeds disabled and a New York viewer zone."""
    return CalendarAppConfig(
        domain="cal.example.com",
        default_time_zone="America/New_York",
        feeds=FeedsConfig(enabled=False),
    )


@pytest.fixture
def fixture_text() -> Callable[[str], str]:
    """Read a file from ``tests/fixtures``."""

    def _read(name: str) -> str:
        return (FIXTURES_DIR / name).read_text()

    return _read


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_database(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Database]]:
    """Create a fresh, fully migrated database for a single test.

    Tests should use this as::

        async with provisioned_database() as db:
            ...
    """
    from calendar_app.db import Database
    from calendar_app.migrations import run_migrations

    @asynccontextmanager
    async def _provision() -> AsyncIterator[Database]:
        db = Database(
            db_name=f"test_{uuid.uuid4().hex[:12]}",
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=1,
            max_pool_size=3,
        )
        await db.provision()
        await run_migrations(db.url)
        await db.connect()
        try:
            yield db
        finally:
            await db.close()

    return _provision
