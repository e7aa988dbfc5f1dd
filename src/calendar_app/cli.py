"""CLI for calendar-app: sync calendars and query the local event cache."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import click
import httpx

from calendar_app import __version__
from calendar_app.agenda import CalendarService
from calendar_app.config import CalendarAppConfig, ConfigError, load_config
from calendar_app.core.logging import configure_logging
from calendar_app.db import Database
from calendar_app.migrations import run_migrations
from calendar_app.providers.base import (
    RemoteClient,
    RemoteClientError,
    RemoteUnavailableError,
    remote_available,
)
from calendar_app.providers.google import build_remote_client
from calendar_app.storage.store import EventStore, StoreError
from calendar_app.sync import CalendarSync, SyncRunError

logger = logging.getLogger(__name__)

_DATE = click.DateTime(formats=["%Y-%m-%d"])


@dataclass
class _Session:
    config: CalendarAppConfig
    store: EventStore
    remote: RemoteClient
    service: CalendarService


@asynccontextmanager
async def _open_session(config: CalendarAppConfig) -> AsyncIterator[_Session]:
    """Connect the pool and remote client for one command, closing both afterwards."""
    db = Database.from_config(config)
    await db.connect()
    remote = build_remote_client(config)
    try:
        store = EventStore(db)
        service = CalendarService(store=store, remote=remote, config=config)
        yield _Session(config=config, store=store, remote=remote, service=service)
    finally:
        if remote_available(remote):
            await remote.shutdown()
        await db.close()


def _run(coro) -> None:
    """Run *coro*, turning engine errors into a message and a non-zero exit."""
    try:
        asyncio.run(coro)
    except SyncRunError as exc:
        for line in exc.summary:
            click.echo(line)
        for error in exc.errors:
            click.echo(f"error: {error}", err=True)
        sys.exit(1)
    except (
        RemoteUnavailableError,
        RemoteClientError,
        httpx.HTTPError,
        StoreError,
        LookupError,
    ) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to calendar_app.toml",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calendar-app: keep Google calendars, scraped feeds and a local cache in step."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
    )
    ctx.obj = config


@cli.command()
@click.option("--days-before", type=click.IntRange(min=0), default=None)
@click.option("--days-after", type=click.IntRange(min=0), default=None)
@click.pass_obj
def agenda(config: CalendarAppConfig, days_before: int | None, days_after: int | None) -> None:
    """Print upcoming events from displayed calendars."""

    async def _agenda() -> None:
        async with _open_session(config) as session:
            events = await session.service.agenda(days_before, days_after)
            for event in sorted(events, key=lambda e: e.start_time):
                click.echo(await session.service.event_summary(event))

    _run(_agenda())


@cli.command()
@click.option("--full", is_flag=True, help="Reconcile each calendar's entire history")
@click.pass_obj
def sync(config: CalendarAppConfig, full: bool) -> None:
    """Reconcile remote calendars and scraped feeds with the local cache."""

    async def _sync() -> None:
        async with _open_session(config) as session:
            engine = CalendarSync(store=session.store, remote=session.remote, config=config)
            for line in await engine.sync(full=full):
                click.echo(line)

    _run(_sync())


@cli.command("list-calendars")
@click.pass_obj
def list_calendars(config: CalendarAppConfig) -> None:
    """List known calendars and their sync/edit/display flags."""

    async def _list() -> None:
        async with _open_session(config) as session:
            calendars = await session.service.list_calendars()
            click.echo(f"{'Name':<30} {'Sync':<5} {'Edit':<5} {'Show':<5} {'Calendar id'}")
            click.echo("-" * 90)
            for calendar in sorted(calendars, key=lambda c: c.name.lower()):
                click.echo(
                    f"{calendar.name[:30]:<30} {_flag(calendar.sync):<5} {_flag(calendar.edit):<5} "
                    f"{_flag(calendar.display):<5} {calendar.calendar_id}"
                )

    _run(_list())


def _flag(value: bool) -> str:
    return "yes" if value else "-"


@cli.command("list")
@click.argument("calendar_id", required=False)
@click.option("--min-date", type=_DATE, default=None, help="First day (YYYY-MM-DD)")
@click.option("--max-date", type=_DATE, default=None, help="Last day, inclusive (YYYY-MM-DD)")
@click.pass_obj
def list_cmd(
    config: CalendarAppConfig,
    calendar_id: str | None,
    min_date: datetime | None,
    max_date: datetime | None,
) -> None:
    """List events of one calendar, or of every displayed calendar."""

    async def _list() -> None:
        async with _open_session(config) as session:
            if calendar_id is not None:
                calendar_ids = [calendar_id]
            else:
                calendars = await session.service.list_calendars()
                calendar_ids = [c.calendar_id for c in calendars if c.display]
            results = await asyncio.gather(
                *(
                    session.service.list_events(
                        cid,
                        min_date.date() if min_date else None,
                        max_date.date() if max_date else None,
                    )
                    for cid in calendar_ids
                )
            )
            events = sorted((e for batch in results for e in batch), key=lambda e: e.start_time)
            for event in events:
                click.echo(await session.service.event_summary(event))

    _run(_list())


@cli.command()
@click.argument("calendar_id")
@click.argument("event_id")
@click.pass_obj
def delete(config: CalendarAppConfig, calendar_id: str, event_id: str) -> None:
    """Delete an event locally (and remotely when the calendar is editable)."""

    async def _delete() -> None:
        async with _open_session(config) as session:
            if await session.service.delete_event(calendar_id, event_id):
                click.echo(f"Deleted {event_id}")
            else:
                click.echo(f"No event {event_id} in {calendar_id}")

    _run(_delete())


@cli.command("edit-calendar")
@click.argument("calendar_id")
@click.option("--name", default=None, help="Local display name")
@click.option("--sync/--no-sync", "sync_flag", default=None)
@click.option("--edit/--no-edit", "edit_flag", default=None)
@click.option("--display/--no-display", "display_flag", default=None)
@click.pass_obj
def edit_calendar(
    config: CalendarAppConfig,
    calendar_id: str,
    name: str | None,
    sync_flag: bool | None,
    edit_flag: bool | None,
    display_flag: bool | None,
) -> None:
    """Change a calendar's local name or its sync/edit/display flags."""

    async def _edit() -> None:
        async with _open_session(config) as session:
            calendar = await session.service.update_calendar(
                calendar_id, name=name, sync=sync_flag, edit=edit_flag, display=display_flag
            )
            if calendar is None:
                raise LookupError(f"Unknown calendar: {calendar_id}")
            click.echo(
                f"{calendar.name}: sync={calendar.sync} edit={calendar.edit} "
                f"display={calendar.display}"
            )

    _run(_edit())


@cli.command()
@click.option("--provision", is_flag=True, help="Create the database first if it is missing")
@click.pass_obj
def migrate(config: CalendarAppConfig, provision: bool) -> None:
    """Apply database migrations."""

    async def _migrate() -> None:
        db = Database.from_config(config)
        if provision:
            await db.provision()
        await run_migrations(db.url)

    _run(_migrate())
    click.echo("Migrations applied")
