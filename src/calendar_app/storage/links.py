"""Shortened event links with an explicitly owned lookup cache."""

from __future__ import annotations

import logging

from calendar_app.models import ShortenedLink
from calendar_app.storage.store import EventStore

logger = logging.getLogger(__name__)

LINK_PATH = "/calendar/link"


class LinkShortener:
    """Maps long event URLs to ``https://{domain}/calendar/link/{token}``.

    The in-memory maps are owned by this instance; call ``refresh()`` to
    reload them from the store (for example on a timer in a long-running
    process). Lookups that miss the cache fall through to the store.
    """

    def __init__(self, store: EventStore, domain: str) -> None:
        self._store = store
        self._domain = domain
        self._token_by_original: dict[str, str] = {}
        self._original_by_token: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._original_by_token)

    def _remember(self, link: ShortenedLink) -> None:
        self._token_by_original[link.original_url] = link.shortened_url
        self._original_by_token[link.shortened_url] = link.original_url

    async def refresh(self) -> int:
        """Replace the cache with the store's current links. Returns the link count."""
        links = await self._store.list_links()
        self._token_by_original.clear()
        self._original_by_token.clear()
        # Ordered oldest first, so the newest row for a URL wins.
        for link in links:
            self._remember(link)
        logger.debug("Loaded %d shortened links", len(links))
        return len(links)

    def link_url(self, token: str) -> str:
        return f"https://{self._domain}{LINK_PATH}/{token}"

    async def shorten(self, original_url: str) -> str:
        """Return the token for *original_url*, creating it if needed."""
        token = self._token_by_original.get(original_url)
        if token is None:
            link = await self._store.get_or_create_link(original_url)
            self._remember(link)
            token = link.shortened_url
        return token

    async def short_url(self, original_url: str) -> str:
        return self.link_url(await self.shorten(original_url))

    async def resolve(self, token: str) -> str | None:
        """Original URL for *token*, or ``None`` when unknown."""
        original = self._original_by_token.get(token)
        if original is not None:
            return original
        link = await self._store.get_link_by_token(token)
        if link is None:
            return None
        self._remember(link)
        return link.original_url
