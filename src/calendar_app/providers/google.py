"""Google Calendar v3 client with OAuth refresh-token auth.

Retry policy lives here, not in the engine: one forced token refresh on 401,
and bounded backoff on 429/503 (``Retry-After`` honoured for 429).
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from calendar_app.config import CalendarAppConfig, ConfigError
from calendar_app.providers.base import (
    CalendarEntry,
    RemoteCalendarClient,
    RemoteClient,
    RemoteClientError,
    RemoteClientUnavailable,
    RemoteCredentialError,
    RemoteEvent,
    RemoteRequestError,
    RemoteTokenRefreshError,
)

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

EVENTS_PAGE_SIZE = 2500
CALENDARS_PAGE_SIZE = 250


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    def __repr__(self) -> str:
        return (
            f"GoogleOAuthCredentials("
            f"client_id={self.client_id!r}, "
            f"client_secret=<REDACTED>, "
            f"refresh_token=<REDACTED>)"
        )

    # Pydantic's default __str__ would expose field values verbatim.
    __str__ = __repr__

    @classmethod
    def from_json(cls, raw_value: str) -> GoogleOAuthCredentials:
        """Parse a flat ``{"client_id", "client_secret", "refresh_token"}`` JSON object."""
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise RemoteCredentialError(f"Credential JSON must be valid JSON: {exc.msg}") from exc

        if not isinstance(payload, dict):
            raise RemoteCredentialError("Credential JSON must decode to a JSON object")

        missing = sorted(field for field in cls.model_fields if field not in payload)
        if missing:
            raise RemoteCredentialError(
                f"Credential JSON is missing required field(s): {', '.join(missing)}"
            )

        try:
            return cls(**{field: payload[field] for field in cls.model_fields})
        except ValidationError as exc:
            fields = sorted({str(error["loc"][0]) for error in exc.errors()})
            raise RemoteCredentialError(
                f"Credential JSON must contain non-empty string field(s): {', '.join(fields)}"
            ) from exc


def _token_ttl_seconds(expires_in: Any) -> int:
    """Seconds to trust a fresh token: one minute short of ``expires_in`` (default 1h)."""
    if isinstance(expires_in, bool) or not isinstance(expires_in, int | float) or expires_in <= 0:
        expires_in = 3600
    return max(int(expires_in) - 60, 30)


def _error_detail(response: httpx.Response) -> str:
    """Short single-line description of a failed Google response."""
    try:
        error = response.json().get("error")
    except (ValueError, AttributeError):
        error = None
    if isinstance(error, dict):
        error = error.get("message")
    detail = error if isinstance(error, str) and error.strip() else response.text
    return " ".join(detail.split())[:200] or f"HTTP {response.status_code}"


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


class _GoogleOAuthClient:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise RemoteTokenRefreshError(
                f"Google OAuth token refresh request failed: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise RemoteTokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_error_detail(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteTokenRefreshError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc
        if not isinstance(payload, dict):
            payload = {}

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise RemoteTokenRefreshError("Google OAuth token response has no access_token")

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(
            seconds=_token_ttl_seconds(payload.get("expires_in"))
        )


class GoogleCalendarClient(RemoteCalendarClient):
    """Google Calendar implementation of ``RemoteCalendarClient``."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._oauth = _GoogleOAuthClient(credentials, self._http_client)

    @property
    def name(self) -> str:
        return "google"

    async def list_calendars(self) -> list[CalendarEntry]:
        params: dict[str, Any] = {
            "showDeleted": True,
            "showHidden": True,
            "maxResults": CALENDARS_PAGE_SIZE,
        }
        entries: list[CalendarEntry] = []
        async for item in self._paginate("/users/me/calendarList", params):
            try:
                entries.append(CalendarEntry.model_validate(item))
            except ValidationError:
                logger.warning("Skipping malformed calendar list entry: %r", item.get("id"))
        return entries

    async def list_events(
        self,
        calendar_id: str,
        *,
        min_time: datetime | None = None,
        max_time: datetime | None = None,
    ) -> list[RemoteEvent]:
        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "maxResults": EVENTS_PAGE_SIZE,
        }
        if min_time is not None:
            params["timeMin"] = _google_rfc3339(min_time)
        if max_time is not None:
            params["timeMax"] = _google_rfc3339(max_time)

        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        events: list[RemoteEvent] = []
        async for item in self._paginate(path, params):
            try:
                events.append(RemoteEvent.model_validate(item))
            except ValidationError:
                logger.warning(
                    "Skipping malformed event %r in calendar %s", item.get("id"), calendar_id
                )
        return events

    async def insert_event(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        payload = await self._request_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            json_body=event.to_payload(),
        )
        return RemoteEvent.model_validate(payload)

    async def update_event(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        """Patch the modelled fields; attendees, reminders and the rest stay untouched."""
        if not event.id:
            raise ValueError("update_event requires an event id")
        payload = await self._request_json(
            "PATCH",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event.id, safe='')}",
            json_body=event.to_payload(),
        )
        return RemoteEvent.model_validate(payload)

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete an event. A 404/410 means it is already gone and counts as success."""
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")

        response = await self._request_with_bearer(
            method="DELETE",
            path=(
                f"/calendars/{quote(calendar_id, safe='')}"
                f"/events/{quote(normalized_event_id, safe='')}"
            ),
        )
        if response.status_code in (404, 410):
            logger.info("Event %s already absent from calendar %s", event_id, calendar_id)
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise RemoteRequestError(
                status_code=response.status_code,
                message=_error_detail(response),
            )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _paginate(self, path: str, params: dict[str, Any]):
        page_params = dict(params)
        while True:
            payload = await self._request_json("GET", path, params=page_params)
            items = payload.get("items", [])
            if not isinstance(items, list):
                raise RemoteClientError(f"Google Calendar response for {path} has no items array")
            for item in items:
                if isinstance(item, dict):
                    yield item
            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                return
            page_params["pageToken"] = page_token

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method, path=path, params=params, json_body=json_body
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise RemoteRequestError(
                status_code=response.status_code,
                message=_error_detail(response),
            )

        if response.status_code == 204:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteClientError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise RemoteClientError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"

        response = await self._request_once(
            method=method, url=url, params=params, json_body=json_body, force_refresh=False
        )

        if response.status_code == 401:
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=True
            )

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=False
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise RemoteClientError(f"Google Calendar request failed: {exc}") from exc


def build_remote_client(
    config: CalendarAppConfig,
    http_client: httpx.AsyncClient | None = None,
) -> RemoteClient:
    """Build the Google client, or an unavailable marker when credentials are unusable."""
    try:
        raw_credentials = config.google.load_credentials_json()
    except ConfigError as exc:
        logger.warning("Google Calendar disabled: %s", exc)
        return RemoteClientUnavailable(reason=str(exc))

    if raw_credentials is None:
        logger.info("No Google Calendar credentials configured; running offline")
        return RemoteClientUnavailable(reason="Google Calendar credentials are not configured")

    try:
        credentials = GoogleOAuthCredentials.from_json(raw_credentials)
    except RemoteCredentialError as exc:
        logger.warning("Google Calendar disabled: %s", exc)
        return RemoteClientUnavailable(reason=str(exc))

    return GoogleCalendarClient(credentials, http_client=http_client)
