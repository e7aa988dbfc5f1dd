"""nycruns.com race listing.

Races are ``._race`` blocks holding a ``._title`` link, a ``._date`` line
("Saturday, May 16, 2020") and ``._subtitle`` lines; the ``_start-time``
subtitle carries the gun time, any other subtitle the location.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from calendar_app.feeds.base import DEFAULT_EVENT_DURATION, FEED_TIME_ZONE, FeedParseError
from calendar_app.models import Event, Location

logger = logging.getLogger(__name__)

CALENDAR_ID = "ufdpqtvophgg2qn643rducu1a4@group.calendar.google.com"
BASE_URL = "https://nycruns.com"
DEFAULT_URL = "https://nycruns.com/races/?show=registerable"

_DATE_FORMAT = "%A, %B %d, %Y"
_START_TIME_CLASS = "_start-time"


def parse_nycruns_text(markup: str) -> list[Event]:
    """Parse the nycruns race listing into events, in page order."""
    soup = BeautifulSoup(markup, "html.parser")
    events: list[Event] = []
    for race in soup.select("._race"):
        try:
            event = _parse_race(race)
        except FeedParseError as exc:
            logger.warning("Skipping nycruns entry: %s", exc)
            continue
        if event is not None:
            events.append(event)
    return events


def _parse_race(race: Tag) -> Event | None:
    name: str | None = None
    url: str | None = None
    for anchor in race.select("._title"):
        href = anchor.get("href")
        if isinstance(href, str) and href.strip():
            url = urljoin(BASE_URL, href.strip())
        text = anchor.get_text().strip()
        if text:
            name = text.split("\n", 1)[0].strip()

    race_date: date | None = None
    for node in race.select("._date"):
        date_text = " ".join(node.get_text().split())
        try:
            race_date = datetime.strptime(date_text, _DATE_FORMAT).date()
        except ValueError as exc:
            raise FeedParseError(f"unparseable race date {date_text!r}") from exc

    start: time | None = None
    location: str | None = None
    for node in race.select("._subtitle"):
        classes = node.get("class") or []
        text = node.get_text()
        if any(_START_TIME_CLASS in cls for cls in classes):
            start = parse_start_time(text)
            if start is None:
                logger.debug("Unrecognised start time %r for race %r", text.strip(), name)
        else:
            location = " ".join(text.split()) or location

    if not name or race_date is None or start is None:
        return None

    start_time = datetime.combine(race_date, start, tzinfo=FEED_TIME_ZONE)
    return Event(
        calendar_id=CALENDAR_ID,
        name=name,
        start_time=start_time,
        end_time=start_time + DEFAULT_EVENT_DURATION,
        url=url,
        location=Location(name=location) if location else None,
    )


def parse_start_time(text: str) -> time | None:
    """Read "... 8:00 AM" or "... 8:00AM" from the end of *text*."""
    items = text.split()
    if not items:
        return None
    if len(items) >= 2:
        try:
            return datetime.strptime(" ".join(items[-2:]), "%I:%M %p").time()
        except ValueError:
            pass
    try:
        return datetime.strptime(items[-1], "%I:%M%p").time()
    except ValueError:
        return None
