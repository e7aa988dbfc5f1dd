"""Tests for the hashnyc listing parser."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from calendar_app.feeds.base import FEED_TIME_ZONE
from calendar_app.feeds.hashnyc import CALENDAR_ID, parse_hashnyc_text

pytestmark = pytest.mark.unit


@pytest.fixture
def events(fixture_text):
    return parse_hashnyc_text(fixture_text("hashnyc.html"))


class TestParseHashnycFixture:
    def test_parses_twelve_entries(self, events):
        assert len(events) == 12

    def test_first_entry_start_time(self, events):
        first = events[0]
        assert first.start_time == datetime(2020, 5, 16, 15, 0, tzinfo=FEED_TIME_ZONE)
        assert first.start_time == datetime(2020, 5, 16, 19, 0, tzinfo=UTC)
        assert first.start_time.astimezone(FEED_TIME_ZONE).isoformat() == (
            "2020-05-16T15:00:00-04:00"
        )

    def test_first_entry_fields(self, events):
        first = events[0]
        assert first.calendar_id == CALENDAR_ID
        assert first.name == "NYCH3 Run #1899"
        assert first.location_name == "Central Park, Columbus Circle"
        assert first.description is not None
        assert "Hares: Just Sue Me" in first.description.splitlines()
        assert first.url is None

    def test_default_one_hour_duration(self, events):
        assert all(e.end_time - e.start_time == timedelta(hours=1) for e in events)

    def test_page_order_preserved(self, events):
        starts = [e.start_time for e in events]
        assert starts == sorted(starts)
        assert events[-1].name == "Brooklyn Run #1213"

    def test_morning_entry(self, events):
        memorial = next(e for e in events if e.name == "Memorial Day Hash")
        assert memorial.start_time == datetime(2020, 5, 25, 15, 0, tzinfo=UTC)

    def test_every_entry_gets_a_fresh_event_id(self, events):
        assert len({e.event_id for e in events}) == 12


class TestParseHashnycEdgeCases:
    def test_malformed_date_skipped_without_aborting(self, events):
        assert "NYCH3 Run #1903" not in {e.name for e in events}

    def test_row_without_year_anchor_skipped(self, events):
        assert "Mystery Run" not in {e.name for e in events}

    def test_empty_page(self):
        assert parse_hashnyc_text("<html><body></body></html>") == []

    def test_row_without_name_ignored(self):
        markup = """
        <table class="future_hashes">
        <tr><td class="deeplink_container"><a id="2020Jul04"></a>Saturday July 4<br/>3:00 pm</td>
        <td>Start: Somewhere</td></tr>
        </table>
        """
        assert parse_hashnyc_text(markup) == []

    def test_location_absent_without_start_line(self):
        markup = """
        <table class="future_hashes">
        <tr><td class="deeplink_container"><a id="2020Jul04"></a>Saturday July 4<br/>3:00 pm</td>
        <td><b>Independence Hash</b><br/>Bring fireworks</td></tr>
        </table>
        """
        (event,) = parse_hashnyc_text(markup)
        assert event.location is None
        assert event.description == "Independence Hash\nBring fireworks"
        assert event.start_time == datetime(2020, 7, 4, 19, 0, tzinfo=UTC)

    def test_winter_offset(self):
        markup = """
        <table class="future_hashes">
    <tr><td class="deeplink_container"><a id="2020Dec05"></a>Saturday December 5<br/>2:00 pm</td>
        <td><b>Santa Hash</b></td></tr>
        </table>
        """
        (event,) = parse_hashnyc_text(markup)
        assert event.start_time == datetime(2020, 12, 5, 19, 0, tzinfo=UTC)
