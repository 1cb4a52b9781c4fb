"""Push notification channel lifecycle.

Google Calendar push notifications are delivered through "channels": a
watch on a calendar identified by a channel id (ours) and a resource id
(Google's), valid until an expiration time. Each user has at most one
active channel, stored in the `webhook_*` columns of `users`.

## Lifecycle

1. setup_channel: create a watch, store channel id/resource id/expiration
2. handle_notification: Google posts to WEBHOOK_BASE_URL + /api/webhook/calendar;
   the channel id identifies the user, whose calendar is then synced
3. renew_channel: stop the old channel (best effort) and create a new one
   before the old one expires

## Correlation

Notifications are matched to users by channel id only. The resource id is
accepted and logged when it differs from the stored one, but does not take
part in the lookup.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from calendar_sync.auth.credentials import CredentialManager
from calendar_sync.calendar.google_calendar import (
    CalendarClientFactory,
    GoogleCalendarClient,
)
from calendar_sync.calendar.reconciler import EventReconciler
from calendar_sync.config import get_settings
from calendar_sync.database.models import User
from calendar_sync.exceptions import (
    AuthenticationError,
    CalendarAPIError,
    NotFoundError,
    WebhookSetupError,
)

logger = logging.getLogger(__name__)

# X-Goog-Resource-State sent when watched events change; "sync" is the
# handshake Google sends right after a channel is created
RESOURCE_STATE_EXISTS = "exists"
RESOURCE_STATE_SYNC = "sync"


def is_change_notification(resource_state: str | None) -> bool:
    return resource_state == RESOURCE_STATE_EXISTS


def make_channel_id(user_id: uuid.UUID, previous: str | None = None) -> str:
    """Build a channel id unique across users and across renewals."""
    millis = int(time.time() * 1000)
    channel_id = f"channel-{user_id}-{millis}"
    if channel_id == previous:
        channel_id = f"channel-{user_id}-{millis + 1}"
    return channel_id


def parse_expiration(value: str | int | None) -> datetime | None:
    """Convert Google's epoch-millisecond expiration to a UTC datetime."""
    if not value:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class WebhookChannelManager:
    """Creates, renews and tears down push channels; routes notifications.

    Example:
        ```python
        credentials = CredentialManager(db)
        manager = WebhookChannelManager(db, credentials, EventReconciler(db, credentials))

        await manager.setup_channel(user.id)
        await manager.handle_notification(channel_id, resource_id, "exists")
        ```
    """

    def __init__(
        self,
        db: AsyncSession,
        credentials: CredentialManager,
        reconciler: EventReconciler,
        client_factory: CalendarClientFactory = GoogleCalendarClient,
    ):
        self.db = db
        self.credentials = credentials
        self.reconciler = reconciler
        self.client_factory = client_factory
        self.settings = get_settings()

    async def setup_channel(self, user_id: uuid.UUID) -> User:
        """Create a new push channel for the user's primary calendar.

        Raises:
            NotFoundError: Unknown user
            AuthenticationError: The Google grant is missing or revoked
            WebhookSetupError: No callback URL configured, or Google refused
        """
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")

        webhook_url = self.settings.webhook_url
        if not webhook_url:
            raise WebhookSetupError("WEBHOOK_BASE_URL is not configured")

        user = await self.credentials.ensure_fresh_token(user)
        client = self.client_factory(self.credentials.credentials_for(user))

        channel_id = make_channel_id(user.id, previous=user.webhook_channel_id)

        try:
            response = await client.watch_events(
                self.settings.calendar_id,
                channel_id=channel_id,
                webhook_url=webhook_url,
                token=str(user.id),
            )
        except CalendarAPIError as e:
            logger.error(f"Webhook setup failed for user {user.id}: {e}")
            raise WebhookSetupError("Failed to create push notification channel") from e

        user.webhook_channel_id = channel_id
        user.webhook_resource_id = response.get("resourceId")
        user.webhook_expiration = parse_expiration(response.get("expiration"))
        await self.db.commit()

        logger.info(
            f"Webhook channel {channel_id} created for user {user.id}, "
            f"expires {user.webhook_expiration}"
        )
        return user

    async def teardown_channel(self, user: User) -> bool:
        """Stop the user's current channel, best effort.

        Errors are logged and swallowed; a channel that cannot be stopped
        simply expires on Google's side.

        Returns:
            True if Google confirmed the stop
        """
        if not user.webhook_channel_id or not user.webhook_resource_id:
            return False

        try:
            user = await self.credentials.ensure_fresh_token(user)
            client = self.client_factory(self.credentials.credentials_for(user))
            await client.stop_channel(user.webhook_channel_id, user.webhook_resource_id)
        except (AuthenticationError, CalendarAPIError) as e:
            logger.warning(
                f"Could not stop webhook channel {user.webhook_channel_id}: {e}"
            )
            return False

        logger.info(f"Webhook channel {user.webhook_channel_id} stopped")
        return True

    async def renew_channel(self, user_id: uuid.UUID) -> User | None:
        """Replace the user's channel with a fresh one.

        Returns:
            The updated user, or None if the user does not exist
        """
        user = await self.db.get(User, user_id)
        if user is None:
            logger.info(f"Skipping webhook renewal for missing user {user_id}")
            return None

        await self.teardown_channel(user)
        return await self.setup_channel(user_id)

    async def find_user_by_channel(self, channel_id: str) -> User | None:
        result = await self.db.execute(
            select(User).where(User.webhook_channel_id == channel_id)
        )
        return result.scalar_one_or_none()

    async def handle_notification(
        self,
        channel_id: str,
        resource_id: str | None,
        resource_state: str | None = RESOURCE_STATE_EXISTS,
    ) -> bool:
        """Sync the calendar a notification refers to.

        Returns:
            True if a sync pass ran
        """
        if not is_change_notification(resource_state):
            logger.debug(
                f"Ignoring webhook state {resource_state!r} for channel {channel_id}"
            )
            return False

        user = await self.find_user_by_channel(channel_id)
        if user is None:
            # Stale or revoked channel
            logger.info(f"No user for webhook channel {channel_id}")
            return False

        if resource_id and resource_id != user.webhook_resource_id:
            logger.warning(
                f"Webhook resource id {resource_id} does not match stored "
                f"{user.webhook_resource_id} for channel {channel_id}"
            )

        logger.info(f"Webhook notification received for user {user.id}")
        await self.reconciler.sync_events(user)
        return True


def build_channel_manager(db: AsyncSession) -> WebhookChannelManager:
    """Wire a channel manager with the default Google clients."""
    credentials = CredentialManager(db)
    return WebhookChannelManager(db, credentials, EventReconciler(db, credentials))


async def handle_webhook_notification(
    db: AsyncSession, channel_id: str, resource_id: str | None
) -> bool:
    """Background entry point used by the webhook dispatcher.

    Only change notifications are dispatched, so the state is fixed here.
    """
    manager = build_channel_manager(db)
    return await manager.handle_notification(
        channel_id, resource_id, RESOURCE_STATE_EXISTS
    )
