"""Google Calendar API client.

Thin async wrapper over google-api-python-client covering the operations
the sync service consumes:

- List events (incremental with a sync token, or a bounded time window)
- Insert, update and delete a single event
- Watch the calendar (create a push notification channel)
- Stop a channel

## API Documentation

https://developers.google.com/calendar/api/v3/reference

## Authentication

Each client is built from an immutable `CalendarCredentials` holding a
currently-valid access token. Refreshing tokens is the caller's job (see
`calendar_sync.auth.credentials`); clients are cheap and are created per
operation, so concurrent requests for different users never share
credential state.

## Blocking I/O

googleapiclient is synchronous. Every `.execute()` runs in a worker thread
via `asyncio.to_thread`, with an httplib2 socket timeout.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import httplib2
from google.auth.exceptions import GoogleAuthError
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calendar_sync.config import get_settings
from calendar_sync.exceptions import CalendarAPIError, SyncTokenInvalidError

logger = logging.getLogger(__name__)

UNTITLED_EVENT = "Untitled Event"


@dataclass(frozen=True)
class CalendarCredentials:
    """Per-call credential context for the Calendar API."""

    access_token: str
    expires_at: datetime | None = None


def parse_event_time(value: dict[str, Any] | None) -> datetime | None:
    """Parse a Google `start`/`end` object into a UTC datetime.

    Timed events carry `dateTime` (RFC 3339); all-day events carry `date`
    (YYYY-MM-DD), which maps to midnight UTC.
    """
    if not value:
        return None

    if value.get("dateTime"):
        parsed = datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    if value.get("date"):
        return datetime.fromisoformat(value["date"]).replace(tzinfo=timezone.utc)

    return None


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


@dataclass
class CalendarEvent:
    """A Google Calendar event, reduced to the fields mirrored locally."""

    id: str
    status: str = "confirmed"  # confirmed, tentative, cancelled
    summary: str = UNTITLED_EVENT
    description: str = ""
    location: str = ""
    start: datetime | None = None
    end: datetime | None = None
    is_all_day: bool = False
    attendees: list[str] = field(default_factory=list)
    updated: datetime | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> CalendarEvent:
        """Create from a Google Calendar API `Events` resource.

        Cancelled items in an incremental listing may carry nothing but
        `id` and `status`.
        """
        start_data = data.get("start") or {}

        return cls(
            id=data["id"],
            status=data.get("status", "confirmed"),
            summary=data.get("summary") or UNTITLED_EVENT,
            description=data.get("description") or "",
            location=data.get("location") or "",
            start=parse_event_time(start_data),
            end=parse_event_time(data.get("end")),
            is_all_day="date" in start_data,
            attendees=[
                attendee.get("email", "") for attendee in data.get("attendees", [])
            ],
            updated=parse_timestamp(data.get("updated")),
        )


@dataclass
class EventListing:
    """All items of an events.list call, across pages."""

    events: list[CalendarEvent]
    next_sync_token: str | None = None


class GoogleCalendarClient:
    """Client for the Google Calendar API.

    Example:
        ```python
        client = GoogleCalendarClient(CalendarCredentials(access_token))

        listing = await client.list_events("primary", sync_token=user.sync_token)
        created = await client.insert_event("primary", body)
        ```
    """

    def __init__(self, credentials: CalendarCredentials):
        settings = get_settings()

        self.credentials = credentials
        authorized_http = AuthorizedHttp(
            Credentials(token=credentials.access_token),
            http=httplib2.Http(timeout=settings.http_read_timeout_seconds),
        )
        self._service = build(
            "calendar", "v3", http=authorized_http, cache_discovery=False
        )

    async def _execute(self, request, operation: str) -> dict[str, Any]:
        """Run a prepared API request off the event loop, normalizing errors."""
        try:
            return await asyncio.to_thread(request.execute) or {}
        except HttpError as e:
            status = e.resp.status
            if status == 410:
                raise SyncTokenInvalidError(
                    f"{operation}: sync token no longer valid", status=410
                ) from e
            logger.error(f"Calendar API {operation} failed with HTTP {status}")
            raise CalendarAPIError(f"{operation} failed: HTTP {status}", status=status) from e
        except (httplib2.HttpLib2Error, OSError) as e:
            logger.error(f"Calendar API {operation} transport error: {e}")
            raise CalendarAPIError(f"{operation} failed: {e}") from e
        except GoogleAuthError as e:
            # Access token rejected; refreshing is not this client's job
            logger.error(f"Calendar API {operation} authorization error: {e}")
            raise CalendarAPIError(f"{operation} failed: {e}", status=401) from e

    async def list_events(
        self,
        calendar_id: str,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int | None = None,
    ) -> EventListing:
        """List events, following pagination until exhausted.

        With a `sync_token` only changes since that token are returned
        (including cancellations); Google forbids time bounds and ordering
        in that mode. Without one, recurring events are expanded and
        ordered by start time within the window.

        Raises:
            SyncTokenInvalidError: Google answered 410 Gone for the sync token
            CalendarAPIError: Any other failure
        """
        params: dict[str, Any] = {
            "calendarId": calendar_id,
            "singleEvents": True,
        }

        if sync_token:
            params["syncToken"] = sync_token
        else:
            params["orderBy"] = "startTime"
            if time_min:
                params["timeMin"] = time_min.isoformat()
            if time_max:
                params["timeMax"] = time_max.isoformat()
            if max_results:
                params["maxResults"] = max_results

        events: list[CalendarEvent] = []
        page_token = None

        while True:
            if page_token:
                params["pageToken"] = page_token

            result = await self._execute(
                self._service.events().list(**params), "events.list"
            )

            for item in result.get("items", []):
                events.append(CalendarEvent.from_api(item))

            page_token = result.get("nextPageToken")
            if not page_token:
                # Google only attaches the sync token to the final page
                return EventListing(events=events, next_sync_token=result.get("nextSyncToken"))

    async def insert_event(self, calendar_id: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._execute(
            self._service.events().insert(calendarId=calendar_id, body=body),
            "events.insert",
        )

    async def update_event(
        self, calendar_id: str, event_id: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        """Replace an event; returns Google's stored version."""
        return await self._execute(
            self._service.events().update(
                calendarId=calendar_id, eventId=event_id, body=body
            ),
            "events.update",
        )

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        await self._execute(
            self._service.events().delete(calendarId=calendar_id, eventId=event_id),
            "events.delete",
        )

    async def watch_events(
        self,
        calendar_id: str,
        channel_id: str,
        webhook_url: str,
        token: str | None = None,
    ) -> dict[str, Any]:
        """Create a push notification channel for the calendar's events.

        Args:
            calendar_id: Calendar ID to watch
            channel_id: Unique channel identifier
            webhook_url: HTTPS URL to receive notifications
            token: Opaque value echoed back in X-Goog-Channel-Token

        Returns:
            Watch response with resourceId and expiration (epoch millis)
        """
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": webhook_url,
        }
        if token:
            body["token"] = token

        return await self._execute(
            self._service.events().watch(calendarId=calendar_id, body=body),
            "events.watch",
        )

    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        await self._execute(
            self._service.channels().stop(
                body={"id": channel_id, "resourceId": resource_id}
            ),
            "channels.stop",
        )


CalendarClientFactory = Callable[[CalendarCredentials], GoogleCalendarClient]
