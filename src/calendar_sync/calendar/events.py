"""Single-event create/update/delete kept in lockstep with Google Calendar.

Every mutation refreshes the user's token, applies the change to Google
first, and then mirrors Google's response into the local store. The
response, not the caller's input, is the source of truth for defaulted
fields (title, status, attendees, timestamps).
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from calendar_sync.auth.credentials import CredentialManager
from calendar_sync.calendar.google_calendar import (
    CalendarClientFactory,
    CalendarEvent,
    GoogleCalendarClient,
)
from calendar_sync.calendar.reconciler import apply_calendar_event
from calendar_sync.config import get_settings
from calendar_sync.database.models import Event, User
from calendar_sync.exceptions import (
    CalendarAPIError,
    CalendarOperationError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

_COMPLETE_INSTANT = re.compile(r"\d{2}:\d{2}:\d{2}Z$")
_MISSING_SECONDS = re.compile(r"T\d{2}:\d{2}$")


def normalize_datetime_input(value: str) -> str:
    """Complete a browser datetime-local value into an RFC 3339 instant.

    >>> normalize_datetime_input("2024-01-01T09:00")
    '2024-01-01T09:00:00Z'
    >>> normalize_datetime_input("2024-01-01T09:00:00Z")
    '2024-01-01T09:00:00Z'
    """
    if _COMPLETE_INSTANT.search(value):
        return value
    if _MISSING_SECONDS.search(value):
        return f"{value}:00Z"
    return value


class EventInput(BaseModel):
    """Event fields accepted from the client."""

    title: str = Field(..., min_length=1, max_length=1024)
    start: str = Field(..., min_length=1)
    end: str = Field(..., min_length=1)
    description: str | None = None
    location: str | None = None
    attendees: list[str] | None = None

    @model_validator(mode="after")
    def check_time_order(self) -> EventInput:
        try:
            start = _parse_instant(self.start)
            end = _parse_instant(self.end)
        except ValueError as e:
            raise ValueError(f"Invalid start or end time: {e}") from e
        if end < start:
            raise ValueError("End time must not be before start time")
        return self

    def to_google_body(self) -> dict:
        body: dict = {
            "summary": self.title,
            "start": {"dateTime": normalize_datetime_input(self.start), "timeZone": "UTC"},
            "end": {"dateTime": normalize_datetime_input(self.end), "timeZone": "UTC"},
        }
        if self.description is not None:
            body["description"] = self.description
        if self.location is not None:
            body["location"] = self.location
        if self.attendees is not None:
            body["attendees"] = [{"email": email} for email in self.attendees]
        return body


def _parse_instant(value: str) -> datetime:
    parsed = datetime.fromisoformat(normalize_datetime_input(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class EventService:
    """CRUD operations on a user's primary calendar.

    Example:
        ```python
        service = EventService(db, CredentialManager(db))
        event = await service.create_event(user, EventInput(...))
        await service.delete_event(user, event.google_event_id)
        ```
    """

    def __init__(
        self,
        db: AsyncSession,
        credentials: CredentialManager,
        client_factory: CalendarClientFactory = GoogleCalendarClient,
    ):
        self.db = db
        self.credentials = credentials
        self.client_factory = client_factory
        self.settings = get_settings()

    async def _client_for(self, user: User) -> GoogleCalendarClient:
        user = await self.credentials.ensure_fresh_token(user)
        return self.client_factory(self.credentials.credentials_for(user))

    async def _find_event(self, user: User, google_event_id: str) -> Event | None:
        result = await self.db.execute(
            select(Event).where(
                Event.user_id == user.id,
                Event.google_event_id == google_event_id,
            )
        )
        return result.scalar_one_or_none()

    async def create_event(self, user: User, data: EventInput) -> Event:
        client = await self._client_for(user)

        try:
            created = await client.insert_event(
                self.settings.calendar_id, data.to_google_body()
            )
        except CalendarAPIError as e:
            logger.error(f"Create event failed for user {user.id}: {e}")
            raise CalendarOperationError("Failed to create event") from e

        item = CalendarEvent.from_api(created)

        # A sync may already have mirrored the new event
        event = await self._find_event(user, item.id)
        if event is None:
            event = Event(
                user_id=user.id,
                google_event_id=item.id,
                calendar_id=self.settings.calendar_id,
            )
            self.db.add(event)

        apply_calendar_event(event, item)
        event.is_deleted = False
        await self.db.commit()

        logger.info(f"Created event {item.id} for user {user.id}")
        return event

    async def update_event(
        self, user: User, google_event_id: str, data: EventInput
    ) -> Event:
        """Replace an event's fields.

        Raises:
            NotFoundError: No live local record for this event; Google is not
                called
            CalendarOperationError: Google rejected the update
        """
        event = await self._find_event(user, google_event_id)
        if event is None or event.is_deleted:
            raise NotFoundError("Event not found")

        client = await self._client_for(user)

        try:
            updated = await client.update_event(
                self.settings.calendar_id, google_event_id, data.to_google_body()
            )
        except CalendarAPIError as e:
            logger.error(f"Update event {google_event_id} failed for user {user.id}: {e}")
            raise CalendarOperationError("Failed to update event") from e

        apply_calendar_event(event, CalendarEvent.from_api(updated))
        await self.db.commit()

        logger.info(f"Updated event {google_event_id} for user {user.id}")
        return event

    async def delete_event(self, user: User, google_event_id: str) -> None:
        """Delete the event on Google and soft-delete the local mirror."""
        client = await self._client_for(user)

        try:
            await client.delete_event(self.settings.calendar_id, google_event_id)
        except CalendarAPIError as e:
            if e.status in (404, 410):
                logger.info(f"Event {google_event_id} already gone on Google")
            else:
                logger.error(
                    f"Delete event {google_event_id} failed for user {user.id}: {e}"
                )
                raise CalendarOperationError("Failed to delete event") from e

        event = await self._find_event(user, google_event_id)
        if event is not None:
            event.is_deleted = True
            await self.db.commit()

        logger.info(f"Deleted event {google_event_id} for user {user.id}")

    async def get_user_events(self, user: User) -> list[Event]:
        """List the user's live local events from SYNC_PAST_DAYS ago onward."""
        since = datetime.now(timezone.utc) - timedelta(days=self.settings.sync_past_days)

        result = await self.db.execute(
            select(Event)
            .where(
                Event.user_id == user.id,
                Event.is_deleted == False,
                Event.start >= since,
            )
            .order_by(Event.start)
        )
        return list(result.scalars().all())
