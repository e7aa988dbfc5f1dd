"""hashnyc.com run listing.

Each upcoming run is a row of ``table.future_hashes``: a
``td.deeplink_container`` cell with the date ("Saturday May 16 3:00 pm") and
an anchor whose id starts with the year, then a cell with the run name in
``<b>`` and free-form description lines, one of which may read
``Start: <place>``.
"""

from __future__ import annotations

import logging
from datetime import datetime

from bs4 import BeautifulSoup, Tag

from calendar_app.feeds.base import (
    DEFAULT_EVENT_DURATION,
    FEED_TIME_ZONE,
    FeedParseError,
    child_texts,
)
from calendar_app.models import Event, Location

logger = logging.getLogger(__name__)

CALENDAR_ID = "8hfjg0d8ls2od3s9bd1k1v9jtc@group.calendar.google.com"
DEFAULT_URL = "https://hashnyc.com/?days=all"

_DATE_FORMAT = "%A %B %d %I:%M %p %Y"
_DATE_CELL_CLASS = "deeplink_container"
_START_MARKER = "Start:"


def parse_hashnyc_text(markup: str) -> list[Event]:
    """Parse the hashnyc listing page into events, in page order."""
    soup = BeautifulSoup(markup, "html.parser")
    events: list[Event] = []
    for table in soup.find_all("table", class_="future_hashes"):
        for row in table.find_all("tr"):
            try:
                event = _parse_row(row)
            except FeedParseError as exc:
                logger.warning("Skipping hashnyc entry: %s", exc)
                continue
            if event is not None:
                events.append(event)
    return events


def _parse_row(row: Tag) -> Event | None:
    start_time: datetime | None = None
    name: str | None = None
    description: str | None = None
    location: str | None = None

    for cell in row.find_all("td"):
        if _DATE_CELL_CLASS in (cell.get("class") or []):
            start_time = _parse_start_time(cell)
            continue

        for bold in cell.find_all("b"):
            name = bold.get_text(" ", strip=True)
        if description is None:
            lines = child_texts(cell)
            description = "\n".join(lines)
            for line in lines:
                if _START_MARKER in line:
                    place = line.replace(_START_MARKER, "").strip()
                    if place:
                        location = place

    if not name or start_time is None:
        return None

    return Event(
        calendar_id=CALENDAR_ID,
        name=name,
        start_time=start_time,
        end_time=start_time + DEFAULT_EVENT_DURATION,
        description=description or None,
        location=Location(name=location) if location is not None else None,
    )


def _parse_start_time(cell: Tag) -> datetime:
    year: int | None = None
    for anchor in cell.find_all("a"):
        anchor_id = anchor.get("id")
        if isinstance(anchor_id, str) and anchor_id[:4].isdigit():
            year = int(anchor_id[:4])
    if year is None:
        raise FeedParseError("date cell has no year anchor")

    date_text = " ".join(child_texts(cell))
    try:
        naive = datetime.strptime(f"{date_text} {year}", _DATE_FORMAT)
    except ValueError as exc:
        raise FeedParseError(f"unparseable date {date_text!r}") from exc
    return naive.replace(tzinfo=FEED_TIME_ZONE)
