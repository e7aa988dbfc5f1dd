"""Scraped event feeds merged into fixed synthetic calendars."""

from __future__ import annotations

from calendar_app.config import CalendarAppConfig
from calendar_app.feeds import hashnyc, nycruns
from calendar_app.feeds.base import FeedParseError, FeedSource, fetch_feed_text

__all__ = ["FeedParseError", "FeedSource", "default_feed_sources", "fetch_feed_text"]


def default_feed_sources(config: CalendarAppConfig) -> list[FeedSource]:
    """The hashnyc and nycruns feeds, with URLs overridable from config."""
    if not config.feeds.enabled:
        return []
    return [
        FeedSource(
            name="hashnyc",
            calendar_id=hashnyc.CALENDAR_ID,
            url=config.feeds.hashnyc_url or hashnyc.DEFAULT_URL,
            parse=hashnyc.parse_hashnyc_text,
        ),
        FeedSource(
            name="nycruns",
            calendar_id=nycruns.CALENDAR_ID,
            url=config.feeds.nycruns_url or nycruns.DEFAULT_URL,
            parse=nycruns.parse_nycruns_text,
        ),
    ]
