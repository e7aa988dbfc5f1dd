"""PostgreSQL persistence for calendars, cached events and shortened links.

Every lookup-then-write runs on one acquired connection inside one
transaction, so two concurrent writers for the same key either serialize or
one of them fails with ``StoreConflictError``.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import asyncpg

from calendar_app.models import Calendar, Event, ShortenedLink

logger = logging.getLogger(__name__)

MIN_SHORT_TOKEN_LENGTH = 4

_EVENT_COLUMNS = (
    "gcal_id, event_id, event_start_time, event_end_time, event_url, event_name, "
    "event_description, event_location_name, event_location_lat, event_location_lon, "
    "last_modified"
)
_CALENDAR_COLUMNS = (
    "calendar_name, gcal_id, gcal_name, gcal_description, gcal_location, gcal_timezone, "
    "sync, edit, display, last_modified"
)


class StoreError(RuntimeError):
    """Base error raised by the event store."""


class StoreConflictError(StoreError):
    """Raised when a write collides with an existing row for the same key."""

    def __init__(self, table: str, key: tuple[str, ...]) -> None:
        self.table = table
        self.key = key
        super().__init__(f"Duplicate key {key!r} in {table}")


def short_token_digest(original_url: str) -> str:
    """Hex digest from which shortened-link tokens are cut."""
    return hashlib.sha256(original_url.encode()).hexdigest()


class EventStore:
    """Calendar/event/link persistence over an asyncpg pool.

    *pool* may be an ``asyncpg.Pool`` or a ``calendar_app.db.Database``; only
    ``acquire``, ``fetch``, ``fetchrow`` and ``fetchval`` are used.
    """

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    async def upsert_calendar(self, calendar: Calendar) -> Calendar | None:
        """Insert or refresh a calendar's provider-given fields.

        The local display name and the sync/edit/display flags of an existing
        row are left alone. Returns the row as it was before the write, or
        ``None`` for a newly discovered calendar.
        """
        async with self._transaction() as conn:
            existing = await conn.fetchrow(
                f"SELECT {_CALENDAR_COLUMNS} FROM calendar_list WHERE gcal_id = $1 FOR UPDATE",
                calendar.calendar_id,
            )
            if existing is not None:
                await conn.execute(
                    """
                    UPDATE calendar_list
                    SET gcal_name = $2,
                        gcal_description = $3,
                        gcal_location = $4,
                        gcal_timezone = $5,
                        last_modified = now()
                    WHERE gcal_id = $1
                    """,
                    calendar.calendar_id,
                    calendar.gcal_name,
                    calendar.description,
                    calendar.location,
                    calendar.timezone,
                )
                return Calendar.from_row(existing)

            try:
                await conn.execute(
                    """
                    INSERT INTO calendar_list (
                        calendar_name, gcal_id, gcal_name, gcal_description, gcal_location,
                        gcal_timezone, sync, edit, display, last_modified
                    ) VALUES ($1, $2, $3, $4, $5, $6, false, false, false, now())
                    """,
                    calendar.name,
                    calendar.calendar_id,
                    calendar.gcal_name,
                    calendar.description,
                    calendar.location,
                    calendar.timezone,
                )
            except asyncpg.UniqueViolationError as exc:
                raise StoreConflictError("calendar_list", (calendar.calendar_id,)) from exc
            return None

    async def update_calendar(
        self,
        calendar_id: str,
        *,
        name: str | None = None,
        sync: bool | None = None,
        edit: bool | None = None,
        display: bool | None = None,
    ) -> Calendar | None:
        """Apply explicit user edits; ``None`` arguments keep the stored value."""
        row = await self._pool.fetchrow(
            f"""
            UPDATE calendar_list
            SET calendar_name = COALESCE($2, calendar_name),
                sync = COALESCE($3, sync),
                edit = COALESCE($4, edit),
                display = COALESCE($5, display),
                last_modified = now()
            WHERE gcal_id = $1
            RETURNING {_CALENDAR_COLUMNS}
            """,
            calendar_id,
            name,
            sync,
            edit,
            display,
        )
        return Calendar.from_row(row) if row is not None else None

    async def get_calendar(self, calendar_id: str) -> Calendar | None:
        row = await self._pool.fetchrow(
            f"SELECT {_CALENDAR_COLUMNS} FROM calendar_list WHERE gcal_id = $1",
            calendar_id,
        )
        return Calendar.from_row(row) if row is not None else None

    async def list_calendars(self) -> list[Calendar]:
        rows = await self._pool.fetch(f"SELECT {_CALENDAR_COLUMNS} FROM calendar_list")
        return [Calendar.from_row(row) for row in rows]

    async def recent_calendars(
        self,
        since: datetime | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Calendar]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_CALENDAR_COLUMNS} FROM calendar_list
            WHERE $1::timestamptz IS NULL OR last_modified > $1
            ORDER BY calendar_name
            OFFSET $2 LIMIT $3
            """,
            since,
            offset,
            limit,
        )
        return [Calendar.from_row(row) for row in rows]

    async def count_calendars(self, since: datetime | None = None) -> int:
        return await self._pool.fetchval(
            """
            SELECT count(*) FROM calendar_list
            WHERE $1::timestamptz IS NULL OR last_modified > $1
            """,
            since,
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def insert_event(self, event: Event) -> None:
        """Insert a new event row; an existing key raises ``StoreConflictError``."""
        async with self._pool.acquire() as conn:
            await self._insert_event(conn, event)

    async def upsert_event(self, event: Event) -> bool:
        """Update every mutable field of an existing event, or insert it.

        Returns ``True`` when the event was inserted.
        """
        async with self._transaction() as conn:
            exists = await conn.fetchval(
                "SELECT 1 FROM calendar_cache WHERE gcal_id = $1 AND event_id = $2 FOR UPDATE",
                event.calendar_id,
                event.event_id,
            )
            if exists is None:
                await self._insert_event(conn, event)
                return True
            row = event.to_row()
            await conn.execute(
                """
                UPDATE calendar_cache
                SET event_start_time = $3,
                    event_end_time = $4,
                    event_url = $5,
                    event_name = $6,
                    event_description = $7,
                    event_location_name = $8,
                    event_location_lat = $9,
                    event_location_lon = $10,
                    last_modified = now()
                WHERE gcal_id = $1 AND event_id = $2
                """,
                row["gcal_id"],
                row["event_id"],
                row["event_start_time"],
                row["event_end_time"],
                row["event_url"],
                row["event_name"],
                row["event_description"],
                row["event_location_name"],
                row["event_location_lat"],
                row["event_location_lon"],
            )
            return False

    async def _insert_event(self, conn: asyncpg.Connection, event: Event) -> None:
        row = event.to_row()
        try:
            await conn.execute(
                """
                INSERT INTO calendar_cache (
                    gcal_id, event_id, event_start_time, event_end_time, event_url,
                    event_name, event_description, event_location_name,
                    event_location_lat, event_location_lon, last_modified
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, now())
                """,
                row["gcal_id"],
                row["event_id"],
                row["event_start_time"],
                row["event_end_time"],
                row["event_url"],
                row["event_name"],
                row["event_description"],
                row["event_location_name"],
                row["event_location_lat"],
                row["event_location_lon"],
            )
        except asyncpg.UniqueViolationError as exc:
            raise StoreConflictError("calendar_cache", (event.calendar_id, event.event_id)) from exc

    async def get_event(self, calendar_id: str, event_id: str) -> Event | None:
        row = await self._pool.fetchrow(
            f"SELECT {_EVENT_COLUMNS} FROM calendar_cache WHERE gcal_id = $1 AND event_id = $2",
            calendar_id,
            event_id,
        )
        return Event.from_row(row) if row is not None else None

    async def events_for_calendar(self, calendar_id: str) -> list[Event]:
        rows = await self._pool.fetch(
            f"SELECT {_EVENT_COLUMNS} FROM calendar_cache WHERE gcal_id = $1",
            calendar_id,
        )
        return [Event.from_row(row) for row in rows]

    async def events_in_window(
        self,
        calendar_id: str | None = None,
        min_time: datetime | None = None,
        max_time: datetime | None = None,
    ) -> list[Event]:
        """Events whose interval overlaps ``[min_time, max_time]`` (inclusive).

        Missing bounds are open. Results are ordered by start time only when
        a single calendar is requested.
        """
        conditions: list[str] = []
        args: list[Any] = []
        if calendar_id is not None:
            args.append(calendar_id)
            conditions.append(f"gcal_id = ${len(args)}")
        if min_time is not None:
            args.append(min_time)
            conditions.append(f"event_end_time >= ${len(args)}")
        if max_time is not None:
            args.append(max_time)
            conditions.append(f"event_start_time <= ${len(args)}")

        query = f"SELECT {_EVENT_COLUMNS} FROM calendar_cache"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        if calendar_id is not None:
            query += " ORDER BY event_start_time"

        rows = await self._pool.fetch(query, *args)
        return [Event.from_row(row) for row in rows]

    async def recent_events(
        self,
        since: datetime | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Event]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_EVENT_COLUMNS} FROM calendar_cache
            WHERE $1::timestamptz IS NULL OR last_modified > $1
            ORDER BY event_start_time
            OFFSET $2 LIMIT $3
            """,
            since,
            offset,
            limit,
        )
        return [Event.from_row(row) for row in rows]

    async def count_events(self, since: datetime | None = None) -> int:
        return await self._pool.fetchval(
            """
            SELECT count(*) FROM calendar_cache
            WHERE $1::timestamptz IS NULL OR last_modified > $1
            """,
            since,
        )

    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Delete by key. Returns whether a row was removed."""
        deleted = await self._pool.fetchval(
            "DELETE FROM calendar_cache WHERE gcal_id = $1 AND event_id = $2 RETURNING 1",
            calendar_id,
            event_id,
        )
        return deleted is not None

    # ------------------------------------------------------------------
    # Shortened links
    # ------------------------------------------------------------------

    async def get_link_by_original(self, original_url: str) -> ShortenedLink | None:
        row = await self._pool.fetchrow(
            """
            SELECT shortened_url, original_url, last_modified FROM shortened_links
            WHERE original_url = $1
            ORDER BY last_modified DESC, id DESC
            LIMIT 1
            """,
            original_url,
        )
        return ShortenedLink.from_row(row) if row is not None else None

    async def get_link_by_token(self, shortened_url: str) -> ShortenedLink | None:
        row = await self._pool.fetchrow(
            """
            SELECT shortened_url, original_url, last_modified FROM shortened_links
            WHERE shortened_url = $1
            """,
            shortened_url,
        )
        return ShortenedLink.from_row(row) if row is not None else None

    async def list_links(self) -> list[ShortenedLink]:
        rows = await self._pool.fetch(
            "SELECT shortened_url, original_url, last_modified FROM shortened_links ORDER BY id"
        )
        return [ShortenedLink.from_row(row) for row in rows]

    async def get_or_create_link(self, original_url: str) -> ShortenedLink:
        """Return the existing link for *original_url*, or mint one.

        New tokens are the shortest unused prefix (at least four characters)
        of the URL's SHA-256 hex digest.
        """
        async with self._transaction() as conn:
            row = await conn.fetchrow(
                """
                SELECT shortened_url, original_url, last_modified FROM shortened_links
                WHERE original_url = $1
                ORDER BY last_modified DESC, id DESC
                LIMIT 1
                """,
                original_url,
            )
            if row is not None:
                return ShortenedLink.from_row(row)

            digest = short_token_digest(original_url)
            length = MIN_SHORT_TOKEN_LENGTH
            token = digest[:length]
            while await conn.fetchval(
                "SELECT 1 FROM shortened_links WHERE shortened_url = $1", token
            ):
                length += 1
                if length > len(digest):
                    raise StoreConflictError("shortened_links", (original_url,))
                token = digest[:length]

            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO shortened_links (shortened_url, original_url, last_modified)
                    VALUES ($1, $2, now())
                    RETURNING shortened_url, original_url, last_modified
                    """,
                    token,
                    original_url,
                )
            except asyncpg.UniqueViolationError as exc:
                raise StoreConflictError("shortened_links", (token,)) from exc
            logger.debug("Shortened %s to %s", original_url, token)
            return ShortenedLink.from_row(row)
