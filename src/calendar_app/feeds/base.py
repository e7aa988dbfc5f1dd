"""Shared pieces of the scraped event feeds."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from zoneinfo import ZoneInfo

import httpx
from bs4 import Tag
from bs4.element import NavigableString

from calendar_app.models import Event

logger = logging.getLogger(__name__)

# Both feeds list New York events in local wall-clock time.
FEED_TIME_ZONE = ZoneInfo("America/New_York")
DEFAULT_EVENT_DURATION = timedelta(hours=1)
FETCH_TIMEOUT_SECONDS = 30.0
USER_AGENT = "calendar-app/0.1 (+feed sync)"


class FeedParseError(ValueError):
    """Raised for a single malformed feed entry; the entry is skipped."""


FeedParser = Callable[[str], list[Event]]


@dataclass(frozen=True)
class FeedSource:
    """A scraped listing merged into its own synthetic calendar."""

    name: str
    calendar_id: str
    url: str
    parse: FeedParser
    time_zone: ZoneInfo = FEED_TIME_ZONE


async def fetch_feed_text(url: str, http_client: httpx.AsyncClient) -> str:
    """Fetch a feed page; non-2xx responses raise ``httpx.HTTPStatusError``."""
    logger.debug("Fetching feed %s", url)
    response = await http_client.get(
        url,
        headers={"User-Agent": USER_AGENT},
        follow_redirects=True,
        timeout=FETCH_TIMEOUT_SECONDS,
    )
    response.raise_for_status()
    return response.text


def child_texts(node: Tag) -> list[str]:
    """Non-empty, stripped text of each direct child of *node*."""
    texts: list[str] = []
    for child in node.children:
        if isinstance(child, NavigableString):
            text = str(child)
        elif isinstance(child, Tag):
            text = child.get_text(" ")
        else:
            continue
        text = " ".join(text.split())
        if text:
            texts.append(text)
    return texts
