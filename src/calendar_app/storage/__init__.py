"""Persistence for calendars, events and shortened links."""

from calendar_app.storage.links import LinkShortener
from calendar_app.storage.store import EventStore, StoreConflictError, StoreError

__all__ = ["EventStore", "LinkShortener", "StoreConflictError", "StoreError"]
