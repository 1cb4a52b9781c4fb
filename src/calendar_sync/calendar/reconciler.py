"""Event reconciliation against Google Calendar.

Mirrors a user's primary calendar into the local `events` table.

## Sync Process

1. Make sure the user's access token is valid (CredentialManager)
2. Fetch events from Google:
   - **incremental**: the stored sync token only, no window, no cap
   - **full**: from SYNC_PAST_DAYS ago to SYNC_FUTURE_DAYS ahead,
     recurring events expanded, ordered by start time
3. Reconcile each item:
   - cancelled: soft-delete the matching local row, never create one
   - otherwise: upsert on (user_id, google_event_id), clearing is_deleted
4. Store the new sync token

## Sync Token Invalidation

Google answers 410 Gone when a sync token has expired. The stored token is
cleared and committed, then the pass is re-run once as a full sync. A full
sync sends no token, so it cannot hit this path again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from calendar_sync.auth.credentials import CredentialManager
from calendar_sync.calendar.google_calendar import (
    CalendarClientFactory,
    CalendarEvent,
    EventListing,
    GoogleCalendarClient,
)
from calendar_sync.config import get_settings
from calendar_sync.database.models import Event, EventStatus, User
from calendar_sync.exceptions import (
    CalendarAPIError,
    SyncFailedError,
    SyncTokenInvalidError,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncWindow:
    """Time bounds of a full sync."""

    time_min: datetime
    time_max: datetime

    @classmethod
    def around(cls, now: datetime, past_days: int, future_days: int) -> SyncWindow:
        return cls(
            time_min=now - timedelta(days=past_days),
            time_max=now + timedelta(days=future_days),
        )


def apply_calendar_event(event: Event, item: CalendarEvent) -> None:
    """Copy provider fields onto a local row."""
    event.title = item.summary
    event.description = item.description
    event.location = item.location
    if item.start is not None:
        event.start = item.start
    if item.end is not None:
        event.end = item.end
    event.attendees = list(item.attendees)
    event.status = EventStatus.parse(item.status).value
    event.last_modified = item.updated or datetime.now(timezone.utc)


class EventReconciler:
    """Synchronizes a user's Google Calendar into the local store.

    Example:
        ```python
        reconciler = EventReconciler(db, CredentialManager(db))
        events = await reconciler.sync_events(user)
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

    async def sync_events(self, user: User) -> list[Event]:
        """Fetch the user's events from Google and reconcile the local mirror.

        Returns:
            The events created or updated by this pass (cancellations are
            applied but not returned)

        Raises:
            AuthenticationError: The Google grant is missing or was revoked
            SyncFailedError: Google could not be reached or refused the call
        """
        user = await self.credentials.ensure_fresh_token(user)
        client = self.client_factory(self.credentials.credentials_for(user))

        listing = await self._fetch_listing(client, user)

        synced: list[Event] = []
        deleted = 0
        for item in listing.events:
            if item.is_cancelled:
                if await self._mark_cancelled(user, item):
                    deleted += 1
                continue
            if item.start is None or item.end is None:
                logger.warning(f"Skipping event {item.id} without start/end time")
                continue
            synced.append(await self.upsert_event(user, item))

        if listing.next_sync_token:
            user.sync_token = listing.next_sync_token

        await self.db.commit()

        logger.info(
            f"Synced events for user {user.id}: "
            f"{len(listing.events)} received, {len(synced)} upserted, "
            f"{deleted} cancelled"
        )

        return synced

    async def _fetch_listing(
        self, client: GoogleCalendarClient, user: User
    ) -> EventListing:
        """Fetch one listing, falling back to a full sync at most once."""
        retried = False
        while True:
            try:
                return await self._fetch(client, user)
            except SyncTokenInvalidError as e:
                if retried or not user.sync_token:
                    raise SyncFailedError("Failed to sync events") from e
                logger.warning(
                    f"Sync token invalidated for user {user.id}, performing full sync"
                )
                user.sync_token = None
                await self.db.commit()
                retried = True
            except CalendarAPIError as e:
                logger.error(f"Sync failed for user {user.id}: {e}")
                raise SyncFailedError("Failed to sync events") from e

    async def _fetch(self, client: GoogleCalendarClient, user: User) -> EventListing:
        calendar_id = self.settings.calendar_id

        if user.sync_token:
            logger.debug(f"Incremental sync for user {user.id}")
            return await client.list_events(calendar_id, sync_token=user.sync_token)

        window = SyncWindow.around(
            datetime.now(timezone.utc),
            self.settings.sync_past_days,
            self.settings.sync_future_days,
        )
        logger.debug(f"Full sync for user {user.id}")
        return await client.list_events(
            calendar_id,
            time_min=window.time_min,
            time_max=window.time_max,
            max_results=self.settings.sync_max_results,
        )

    async def _find_event(self, user: User, google_event_id: str) -> Event | None:
        result = await self.db.execute(
            select(Event).where(
                Event.user_id == user.id,
                Event.google_event_id == google_event_id,
            )
        )
        return result.scalar_one_or_none()

    async def _mark_cancelled(self, user: User, item: CalendarEvent) -> bool:
        event = await self._find_event(user, item.id)
        if event is None:
            return False

        event.is_deleted = True
        event.status = EventStatus.CANCELLED.value
        return True

    async def upsert_event(self, user: User, item: CalendarEvent) -> Event:
        """Insert or update the local row keyed on (user_id, google_event_id)."""
        event = await self._find_event(user, item.id)

        if event is None:
            if item.start is None or item.end is None:
                raise SyncFailedError(f"Event {item.id} has no start or end time")
            event = Event(
                user_id=user.id,
                google_event_id=item.id,
                calendar_id=self.settings.calendar_id,
            )
            self.db.add(event)

        apply_calendar_event(event, item)
        event.is_deleted = False

        # autoflush is off; flush so a repeated id in this pass finds the row
        await self.db.flush()
        return event
