"""Two-way reconciliation between the remote provider, the event cache and feeds.

One ``sync()`` run:

1. refreshes the calendar list from the provider;
2. for each calendar with ``sync`` set, fetches its remote events (all
   history in full mode, upcoming events in incremental mode);
3. pushes local events back to the provider when the calendar has ``edit``
   set (insert-only in full mode);
4. imports the remote events into the cache (insert-if-absent in full mode,
   upsert in incremental mode);
5. merges the scraped feeds into their synthetic calendars.

Item-level failures are logged and counted. Step-level failures are
collected and raised together as ``SyncRunError`` once every independent step
has had its chance to run.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime, tzinfo
from typing import Literal

import httpx
from opentelemetry import trace
from pydantic import BaseModel, ConfigDict

from calendar_app.config import CalendarAppConfig
from calendar_app.core.logging import sync_run_context
from calendar_app.feeds import FeedSource, default_feed_sources, fetch_feed_text
from calendar_app.models import Calendar, Event
from calendar_app.providers.base import (
    RemoteClient,
    RemoteClientUnavailable,
    RemoteEvent,
    coerce_zone,
    remote_events_equivalent,
    require_remote,
)
from calendar_app.storage.store import EventStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("calendar_app")

SyncMode = Literal["incremental", "full"]


class SyncRunError(RuntimeError):
    """One or more steps of a sync run failed.

    ``summary`` holds the report lines of the steps that did complete; their
    store writes are already committed.
    """

    def __init__(
        self, summary: list[str], errors: list[str], *, remote_unavailable: bool = False
    ) -> None:
        self.summary = summary
        self.errors = errors
        self.remote_unavailable = remote_unavailable
        super().__init__(f"Sync run had {len(errors)} failed step(s): " + "; ".join(errors))


class CalendarListResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    calendars: list[Calendar]
    discovered: int
    failed: int

    def summary_line(self) -> str:
        return (
            f"calendars: {len(self.calendars)} refreshed, {self.discovered} new, "
            f"{self.failed} failed"
        )


class CalendarSyncResult(BaseModel):
    """Outcome of reconciling one calendar."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: str
    calendar_name: str
    mode: SyncMode
    fetched: int
    exported: int = 0
    updated_remote: int = 0
    export_failed: int = 0
    imported: int = 0
    inserted: int = 0
    skipped: int = 0
    import_failed: int = 0

    def summary_line(self) -> str:
        name = self.calendar_name or self.calendar_id
        return (
            f"{name}: exported {self.exported} ({self.updated_remote} remote updates), "
            f"imported {self.imported} ({self.inserted} new) of {self.fetched} fetched, "
            f"{self.skipped} skipped, {self.export_failed + self.import_failed} failed"
        )


class FeedIngestResult(BaseModel):
    """Outcome of merging one scraped feed."""

    model_config = ConfigDict(extra="forbid")

    feed: str
    calendar_id: str
    parsed: int
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0

    @property
    def changed(self) -> int:
        return self.inserted + self.updated

    def summary_line(self) -> str:
        return (
            f"{self.feed}: {self.changed} changed ({self.inserted} new, {self.updated} updated) "
            f"of {self.parsed} parsed, {self.failed} failed"
        )


class CalendarSync:
    """Runs sync cycles. Holds no state between runs."""

    def __init__(
        self,
        *,
        store: EventStore,
        remote: RemoteClient,
        config: CalendarAppConfig,
        feeds: Sequence[FeedSource] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._remote = remote
        self._config = config
        self._feeds = list(feeds) if feeds is not None else default_feed_sources(config)
        self._http_client = http_client

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    async def sync(self, full: bool = False, *, now: datetime | None = None) -> list[str]:
        """Run one reconciliation and return its human-readable summary lines.

        Raises:
            SyncRunError: a step failed; completed steps are reported on the error.
        """
        mode: SyncMode = "full" if full else "incremental"
        run_id = uuid.uuid4().hex[:12]
        now = now or datetime.now(UTC)
        summary: list[str] = []
        errors: list[str] = []

        with (
            tracer.start_as_current_span("calendar_app.sync.run") as span,
            sync_run_context(run_id),
        ):
            span.set_attribute("calendar_app.sync.mode", mode)
            logger.info("Starting %s sync run", mode)

            remote_unavailable = False
            if isinstance(self._remote, RemoteClientUnavailable):
                remote_unavailable = True
                logger.warning("Skipping calendar reconciliation: %s", self._remote.reason)
                errors.append(f"remote calendar unavailable: {self._remote.reason}")
            else:
                await self._sync_remote_calendars(mode, now, summary, errors)

            for outcome in await self.ingest_feeds():
                if isinstance(outcome, FeedIngestResult):
                    summary.append(outcome.summary_line())
                else:
                    errors.append(outcome)

            span.set_attribute("calendar_app.sync.failed_steps", len(errors))
            if errors:
                logger.error("Sync run finished with %d failed step(s)", len(errors))
                raise SyncRunError(summary, errors, remote_unavailable=remote_unavailable)
            logger.info("Sync run finished: %s", "; ".join(summary))
            return summary

    async def _sync_remote_calendars(
        self, mode: SyncMode, now: datetime, summary: list[str], errors: list[str]
    ) -> None:
        try:
            listing = await self.sync_calendar_list()
            local_calendars = await self._store.list_calendars()
        except Exception as exc:
            logger.warning("Calendar list refresh failed", exc_info=True)
            errors.append(f"calendar list refresh failed: {exc}")
            return
        summary.append(listing.summary_line())

        refreshed = {calendar.calendar_id for calendar in listing.calendars}
        for calendar in local_calendars:
            if not calendar.sync or calendar.calendar_id not in refreshed:
                continue
            try:
                result = await self.reconcile_calendar(calendar, mode=mode, now=now)
            except Exception as exc:
                logger.warning("Sync of calendar %s failed", calendar.calendar_id, exc_info=True)
                errors.append(f"calendar {calendar.name or calendar.calendar_id} failed: {exc}")
                continue
            summary.append(result.summary_line())

    # ------------------------------------------------------------------
    # Calendar list
    # ------------------------------------------------------------------

    async def sync_calendar_list(self) -> CalendarListResult:
        """Upsert every live calendar from the provider's listing."""
        remote = require_remote(self._remote)
        entries = await remote.list_calendars()
        calendars = [
            calendar
            for calendar in (Calendar.from_remote_entry(entry) for entry in entries)
            if calendar is not None
        ]
        outcomes = await asyncio.gather(
            *(self._store.upsert_calendar(calendar) for calendar in calendars),
            return_exceptions=True,
        )

        refreshed: list[Calendar] = []
        discovered = failed = 0
        for calendar, outcome in zip(calendars, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                failed += 1
                logger.warning(
                    "Failed to store calendar %s: %s", calendar.calendar_id, outcome
                )
                continue
            refreshed.append(calendar)
            if outcome is None:
                discovered += 1
                logger.info("Discovered calendar %s (%s)", calendar.calendar_id, calendar.name)
        return CalendarListResult(calendars=refreshed, discovered=discovered, failed=failed)

    # ------------------------------------------------------------------
    # Per-calendar reconciliation
    # ------------------------------------------------------------------

    def _calendar_zone(self, calendar: Calendar) -> tzinfo:
        return coerce_zone(calendar.timezone) or self._config.time_zone

    async def reconcile_calendar(
        self, calendar: Calendar, *, mode: SyncMode, now: datetime | None = None
    ) -> CalendarSyncResult:
        """Fetch, export (when editable) and import one calendar's events."""
        remote = require_remote(self._remote)
        now = now or datetime.now(UTC)
        min_time = None if mode == "full" else now

        with tracer.start_as_current_span("calendar_app.sync.calendar") as span:
            span.set_attribute("calendar_app.calendar_id", calendar.calendar_id)
            remote_events = await remote.list_events(calendar.calendar_id, min_time=min_time)
            result = CalendarSyncResult(
                calendar_id=calendar.calendar_id,
                calendar_name=calendar.name,
                mode=mode,
                fetched=len(remote_events),
            )

            if calendar.edit:
                pushed = await self.export_calendar_events(
                    calendar, remote_events, mode=mode, min_time=min_time, result=result
                )
                # Import what the provider now holds, not the pre-push snapshot.
                remote_events = [
                    pushed.get(item.id, item) if item.id else item for item in remote_events
                ]

            await self.import_calendar_events(calendar, remote_events, mode=mode, result=result)
            logger.info("%s", result.summary_line())
            return result

    async def sync_full_calendar(self, calendar_id: str) -> CalendarSyncResult:
        return await self._reconcile_by_id(calendar_id, "full")

    async def sync_future_events(self, calendar_id: str) -> CalendarSyncResult:
        return await self._reconcile_by_id(calendar_id, "incremental")

    async def _reconcile_by_id(self, calendar_id: str, mode: SyncMode) -> CalendarSyncResult:
        calendar = await self._store.get_calendar(calendar_id)
        if calendar is None:
            raise LookupError(f"Unknown calendar: {calendar_id}")
        return await self.reconcile_calendar(calendar, mode=mode)

    async def export_calendar_events(
        self,
        calendar: Calendar,
        remote_events: Sequence[RemoteEvent],
        *,
        mode: SyncMode,
        min_time: datetime | None,
        result: CalendarSyncResult,
    ) -> dict[str, RemoteEvent]:
        """Push local events the provider lacks (and, incrementally, local edits).

        Returns the provider's copy of every event it updated, keyed by id.
        """
        remote = require_remote(self._remote)
        zone = self._calendar_zone(calendar)
        remote_by_id = {item.id: item for item in remote_events if item.id}
        local_events = await self._store.events_in_window(calendar.calendar_id, min_time=min_time)

        async def _push(event: Event) -> tuple[str, RemoteEvent] | None:
            local = event.to_remote()
            match = remote_by_id.get(event.event_id)
            if match is None:
                await remote.insert_event(calendar.calendar_id, local)
                return "inserted", local
            if mode == "full" or match.has_anonymous_organizer:
                return None
            if remote_events_equivalent(local, match, zone):
                return None
            updated = await remote.update_event(calendar.calendar_id, local)
            return "updated", updated

        outcomes = await asyncio.gather(
            *(_push(event) for event in local_events), return_exceptions=True
        )
        pushed: dict[str, RemoteEvent] = {}
        for event, outcome in zip(local_events, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                result.export_failed += 1
                logger.warning(
                    "Failed to export event %s to %s: %s",
                    event.event_id,
                    calendar.calendar_id,
                    outcome,
                )
                continue
            if outcome is None:
                continue
            action, pushed_event = outcome
            result.exported += 1
            if action == "updated":
                result.updated_remote += 1
                pushed[event.event_id] = pushed_event
        return pushed

    async def import_calendar_events(
        self,
        calendar: Calendar,
        remote_events: Sequence[RemoteEvent],
        *,
        mode: SyncMode,
        result: CalendarSyncResult,
    ) -> None:
        """Write fetched remote events into the cache."""
        zone = self._calendar_zone(calendar)

        async def _import(item: RemoteEvent) -> str:
            if item.start is None:
                return "skipped"
            if item.summary is None:
                logger.warning(
                    "Skipping untitled event %s in %s (start=%s)",
                    item.id,
                    calendar.calendar_id,
                    item.start.date_time or item.start.all_day,
                )
                return "skipped"
            event = Event.from_remote(item, calendar.calendar_id, zone)
            if mode == "full":
                if await self._store.get_event(event.calendar_id, event.event_id) is not None:
                    return "unchanged"
                await self._store.insert_event(event)
                return "inserted"
            inserted = await self._store.upsert_event(event)
            return "inserted" if inserted else "updated"

        outcomes = await asyncio.gather(
            *(_import(item) for item in remote_events), return_exceptions=True
        )
        for item, outcome in zip(remote_events, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                result.import_failed += 1
                logger.warning(
                    "Failed to import event %s from %s: %s", item.id, calendar.calendar_id, outcome
                )
            elif outcome == "skipped":
                result.skipped += 1
            elif outcome in ("inserted", "updated"):
                result.imported += 1
                if outcome == "inserted":
                    result.inserted += 1

    # ------------------------------------------------------------------
    # Feeds
    # ------------------------------------------------------------------

    async def ingest_feeds(self) -> list[FeedIngestResult | str]:
        """Run every feed concurrently; failures come back as error strings."""
        if not self._feeds:
            return []
        if self._http_client is not None:
            return await self._ingest_all(self._http_client)
        async with httpx.AsyncClient() as http_client:
            return await self._ingest_all(http_client)

    async def _ingest_all(self, http_client: httpx.AsyncClient) -> list[FeedIngestResult | str]:
        outcomes = await asyncio.gather(
            *(self.ingest_feed(source, http_client=http_client) for source in self._feeds),
            return_exceptions=True,
        )
        results: list[FeedIngestResult | str] = []
        for source, outcome in zip(self._feeds, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning("Feed %s failed: %s", source.name, outcome)
                results.append(f"feed {source.name} failed: {outcome}")
            else:
                results.append(outcome)
        return results

    async def ingest_feed(
        self, source: FeedSource, *, http_client: httpx.AsyncClient | None = None
    ) -> FeedIngestResult:
        """Fetch, parse and merge one feed."""
        client = http_client or self._http_client
        if client is None:
            async with httpx.AsyncClient() as owned_client:
                text = await fetch_feed_text(source.url, owned_client)
        else:
            text = await fetch_feed_text(source.url, client)
        return await self.merge_feed_events(source, source.parse(text))

    async def merge_feed_events(
        self, source: FeedSource, candidates: Sequence[Event]
    ) -> FeedIngestResult:
        """Merge parsed candidates into the feed's calendar, keyed by start time.

        A candidate at a start time with no stored event is inserted; one
        whose stored twin differs in name, description or location replaces
        it under the stored event id; an identical one is left alone.
        """
        existing = await self._store.events_for_calendar(source.calendar_id)
        by_start = {event.start_time.astimezone(source.time_zone): event for event in existing}
        result = FeedIngestResult(
            feed=source.name, calendar_id=source.calendar_id, parsed=len(candidates)
        )

        unique: list[Event] = []
        seen: set[datetime] = set()
        for candidate in candidates:
            slot = candidate.start_time.astimezone(source.time_zone)
            if slot in seen:
                logger.warning(
                    "Feed %s lists two events at %s; keeping the first", source.name, slot
                )
                result.failed += 1
                continue
            seen.add(slot)
            unique.append(candidate)

        async def _merge(candidate: Event) -> str:
            stored = by_start.get(candidate.start_time.astimezone(source.time_zone))
            if stored is None:
                await self._store.insert_event(candidate)
                return "inserted"
            if (candidate.name, candidate.description, candidate.location_name) == (
                stored.name,
                stored.description,
                stored.location_name,
            ):
                return "unchanged"
            replacement = candidate.model_copy(update={"event_id": stored.event_id})
            await self._store.upsert_event(replacement)
            return "updated"

        outcomes = await asyncio.gather(*(_merge(c) for c in unique), return_exceptions=True)
        for candidate, outcome in zip(unique, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                result.failed += 1
                logger.warning(
                    "Failed to merge %s event %r at %s: %s",
                    source.name,
                    candidate.name,
                    candidate.start_time,
                    outcome,
                )
            elif outcome == "inserted":
                result.inserted += 1
            elif outcome == "updated":
                result.updated += 1
            else:
                result.unchanged += 1
        logger.info("%s", result.summary_line())
        return result


__all__ = [
    "CalendarListResult",
    "CalendarSync",
    "CalendarSyncResult",
    "FeedIngestResult",
    "SyncMode",
    "SyncRunError",
]
