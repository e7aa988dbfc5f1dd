"""Calendar reconciliation engine: Google Calendar, a PostgreSQL cache and scraped feeds."""

__version__ = "0.1.0"
