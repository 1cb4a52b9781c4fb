"""Pytest fixtures for calendar sync tests.

This module provides test fixtures that ensure:
1. No external API calls are made (Google OAuth, Google Calendar)
2. Each test gets its own in-memory SQLite database
3. Isolated test environment with controlled configuration
"""

import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio

# Set test environment BEFORE importing application modules
# This ensures no real services are contacted during test collection
os.environ.setdefault("SECRET_KEY", "test-secret-key-at-least-32-characters-long")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("WEBHOOK_BASE_URL", "https://hooks.example.com")
os.environ.setdefault("FRONTEND_URL", "http://localhost:3000")
os.environ.setdefault("ENVIRONMENT", "development")

from calendar_sync.auth.google import GoogleTokens
from calendar_sync.calendar.google_calendar import (
    CalendarCredentials,
    CalendarEvent,
    EventListing,
)
from calendar_sync.database.models import Event, User
from calendar_sync.exceptions import TokenRefreshError


# =============================================================================
# Test Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_caches():
    """Reset cached settings and clients before each test."""
    from calendar_sync.auth.google import get_google_oauth
    from calendar_sync.config import get_settings

    get_settings.cache_clear()
    get_google_oauth.cache_clear()
    yield
    get_settings.cache_clear()
    get_google_oauth.cache_clear()


@pytest_asyncio.fixture
async def database():
    """Initialize an in-memory database with all tables."""
    from calendar_sync.database.connection import close_db, create_tables, init_db

    await init_db("sqlite+aiosqlite:///:memory:")
    await create_tables()
    yield
    await close_db()


@pytest_asyncio.fixture
async def db(database):
    """A session on the test database."""
    from calendar_sync.database.connection import get_db

    async with get_db() as session:
        yield session


# =============================================================================
# Google Fakes
# =============================================================================


class FakeOAuth:
    """Stands in for GoogleOAuth; counts refreshes."""

    is_configured = True

    def __init__(self, fail: bool = False, lifetime: timedelta = timedelta(hours=1)):
        self.fail = fail
        self.lifetime = lifetime
        self.refresh_calls: list[str] = []

    async def refresh_access_token(self, refresh_token: str) -> GoogleTokens:
        self.refresh_calls.append(refresh_token)
        if self.fail:
            raise TokenRefreshError("Failed to refresh access token")
        return GoogleTokens(
            access_token=f"refreshed-access-{len(self.refresh_calls)}",
            refresh_token=refresh_token,
            token_type="Bearer",
            expires_at=datetime.now(timezone.utc) + self.lifetime,
            scope="",
        )


class FakeCalendarClient:
    """Records Calendar API calls and replays scripted results.

    Also acts as its own client factory: `EventReconciler(db, creds,
    client_factory=fake)` gets `fake` back for every credential context.
    """

    def __init__(self):
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.credentials: list[CalendarCredentials] = []
        self.listings: list[EventListing | Exception] = []
        self.errors: dict[str, Exception] = {}
        self.watch_response: dict[str, Any] = {
            "resourceId": "resource-1",
            "expiration": str(
                int((datetime.now(timezone.utc) + timedelta(days=7)).timestamp() * 1000)
            ),
        }
        self._created = 0

    def __call__(self, credentials: CalendarCredentials) -> "FakeCalendarClient":
        self.credentials.append(credentials)
        return self

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    def _record(self, method: str, **kwargs) -> None:
        self.calls.append((method, kwargs))
        if method in self.errors:
            raise self.errors[method]

    async def list_events(
        self,
        calendar_id: str,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int | None = None,
    ) -> EventListing:
        self._record(
            "list_events",
            calendar_id=calendar_id,
            sync_token=sync_token,
            time_min=time_min,
            time_max=time_max,
            max_results=max_results,
        )
        result = self.listings.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def insert_event(self, calendar_id: str, body: dict[str, Any]) -> dict[str, Any]:
        self._record("insert_event", calendar_id=calendar_id, body=body)
        self._created += 1
        return {
            "id": f"created-{self._created}",
            "status": "confirmed",
            "updated": "2024-06-01T12:00:00.000Z",
            "attendees": [],
            **body,
        }

    async def update_event(
        self, calendar_id: str, event_id: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        self._record("update_event", calendar_id=calendar_id, event_id=event_id, body=body)
        return {
            "id": event_id,
            "status": "confirmed",
            "updated": "2024-06-02T12:00:00.000Z",
            **body,
        }

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        self._record("delete_event", calendar_id=calendar_id, event_id=event_id)

    async def watch_events(
        self,
        calendar_id: str,
        channel_id: str,
        webhook_url: str,
        token: str | None = None,
    ) -> dict[str, Any]:
        self._record(
            "watch_events",
            calendar_id=calendar_id,
            channel_id=channel_id,
            webhook_url=webhook_url,
            token=token,
        )
        return {"id": channel_id, **self.watch_response}

    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        self._record("stop_channel", channel_id=channel_id, resource_id=resource_id)


@pytest.fixture
def fake_oauth() -> FakeOAuth:
    return FakeOAuth()


@pytest.fixture
def fake_calendar() -> FakeCalendarClient:
    return FakeCalendarClient()


# =============================================================================
# Builders
# =============================================================================


def api_event(
    event_id: str,
    starts_at: datetime | None = None,
    duration: timedelta = timedelta(hours=1),
    **overrides: Any,
) -> CalendarEvent:
    """A timed Google event as parsed from an events.list response.

    Keyword overrides replace raw API fields (`start={"date": ...}`).
    """
    starts_at = starts_at or (
        datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=1)
    )
    data: dict[str, Any] = {
        "id": event_id,
        "status": "confirmed",
        "summary": f"Event {event_id}",
        "start": {"dateTime": starts_at.isoformat()},
        "end": {"dateTime": (starts_at + duration).isoformat()},
        "updated": "2024-06-01T12:00:00.000Z",
    }
    data.update(overrides)
    return CalendarEvent.from_api(data)


def cancelled_event(event_id: str) -> CalendarEvent:
    return CalendarEvent.from_api({"id": event_id, "status": "cancelled"})


async def make_user(
    db,
    email: str | None = None,
    connected: bool = True,
    token_expiry: datetime | None = None,
    sync_token: str | None = None,
    channel_id: str | None = None,
    resource_id: str | None = None,
    channel_expiration: datetime | None = None,
) -> User:
    """Persist a user; connected users carry encrypted Google tokens."""
    from calendar_sync.database.encryption import get_cipher

    cipher = get_cipher()
    user = User(
        email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
        name="Test User",
        is_google_connected=connected,
        sync_token=sync_token,
        webhook_channel_id=channel_id,
        webhook_resource_id=resource_id,
        webhook_expiration=channel_expiration,
    )
    if connected:
        user.google_id = f"google-{uuid.uuid4().hex[:8]}"
        user.access_token_encrypted = cipher.encrypt("stored-access-token")
        user.refresh_token_encrypted = cipher.encrypt("stored-refresh-token")
        user.token_expiry = token_expiry or datetime.now(timezone.utc) + timedelta(hours=1)

    db.add(user)
    await db.commit()
    return user


async def make_event(db, user: User, google_event_id: str, **overrides: Any) -> Event:
    start = overrides.pop(
        "start", datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=1)
    )
    event = Event(
        user_id=user.id,
        google_event_id=google_event_id,
        calendar_id="primary",
        title=overrides.pop("title", f"Event {google_event_id}"),
        start=start,
        end=overrides.pop("end", start + timedelta(hours=1)),
        last_modified=datetime.now(timezone.utc),
        **overrides,
    )
    db.add(event)
    await db.commit()
    return event
