"""Tests for the HTTP API.

Routes are exercised through httpx's ASGI transport against an in-memory
database. Google is replaced with fakes via dependency overrides.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from fastapi import Depends
from sqlalchemy import select

from calendar_sync.api.app import create_app
from calendar_sync.api.routes.auth import get_channel_manager
from calendar_sync.api.routes.events import get_event_service, get_reconciler
from calendar_sync.auth.credentials import CredentialManager
from calendar_sync.auth.google import GoogleTokens, GoogleUserInfo, get_google_oauth
from calendar_sync.auth.session import create_session_token, create_state_token
from calendar_sync.calendar.events import EventService
from calendar_sync.calendar.google_calendar import EventListing
from calendar_sync.calendar.reconciler import EventReconciler
from calendar_sync.config import get_settings
from calendar_sync.database.connection import get_db_session
from calendar_sync.database.models import User
from calendar_sync.exceptions import CalendarAPIError, WebhookSetupError

from conftest import api_event, make_event, make_user


class RecordingDispatcher:
    def __init__(self):
        self.dispatched: list[tuple[str, str | None]] = []

    def dispatch(self, channel_id, resource_id):
        self.dispatched.append((channel_id, resource_id))


@pytest.fixture
def app(database, fake_oauth, fake_calendar):
    app = create_app()
    app.state.dispatcher = RecordingDispatcher()

    def event_service(db=Depends(get_db_session)):
        return EventService(
            db, CredentialManager(db, oauth=fake_oauth), client_factory=fake_calendar
        )

    def reconciler(db=Depends(get_db_session)):
        return EventReconciler(
            db, CredentialManager(db, oauth=fake_oauth), client_factory=fake_calendar
        )

    app.dependency_overrides[get_event_service] = event_service
    app.dependency_overrides[get_reconciler] = reconciler
    return app


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client


class FakeGoogleLogin:
    """Google OAuth double for the callback: every code yields ``info``."""

    is_configured = True

    def __init__(self, info: GoogleUserInfo):
        self.info = info

    async def exchange_code(self, code):
        return GoogleTokens(
            access_token="google-access",
            refresh_token="google-refresh",
            token_type="Bearer",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            scope="",
        )

    async def get_user_info(self, access_token):
        return self.info


class RecordingChannelManager:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.setups: list[uuid.UUID] = []

    async def setup_channel(self, user_id):
        self.setups.append(user_id)
        if self.error is not None:
            raise self.error


def _google_profile(**overrides) -> GoogleUserInfo:
    data = {
        "id": "google-123",
        "email": "grace@example.com",
        "name": "Grace",
        "picture": None,
        "verified_email": True,
    }
    data.update(overrides)
    return GoogleUserInfo(**data)


def _use_google(app, info: GoogleUserInfo, channels: RecordingChannelManager):
    app.dependency_overrides[get_google_oauth] = lambda: FakeGoogleLogin(info)
    app.dependency_overrides[get_channel_manager] = lambda: channels


async def _google_callback(client: httpx.AsyncClient) -> httpx.Response:
    return await client.get(
        "/api/auth/google/callback",
        params={"code": "auth-code", "state": create_state_token()},
    )


async def _user_by_email(db, email: str) -> User | None:
    return await db.scalar(
        select(User)
        .where(User.email == email)
        .execution_options(populate_existing=True)
    )


def _login(client: httpx.AsyncClient, user) -> None:
    client.cookies.set(
        get_settings().session_cookie_name, create_session_token(user.id)
    )


def _webhook_headers(**overrides) -> dict[str, str]:
    headers = {
        "X-Goog-Channel-ID": "channel-1",
        "X-Goog-Resource-ID": "resource-1",
        "X-Goog-Resource-State": "exists",
    }
    headers.update(overrides)
    return {k: v for k, v in headers.items() if v is not None}


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestWebhookEndpoint:
    @pytest.mark.asyncio
    async def test_change_is_dispatched(self, app, client):
        response = await client.post(
            "/api/webhook/calendar",
            headers=_webhook_headers(**{"X-Goog-Channel-Token": str(uuid.uuid4())}),
        )

        assert response.status_code == 200
        assert response.text == "OK"
        assert app.state.dispatcher.dispatched == [("channel-1", "resource-1")]

    @pytest.mark.asyncio
    async def test_sync_handshake_acknowledged_without_dispatch(self, app, client):
        response = await client.post(
            "/api/webhook/calendar",
            headers=_webhook_headers(**{"X-Goog-Resource-State": "sync"}),
        )

        assert response.status_code == 200
        assert app.state.dispatcher.dispatched == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", ["X-Goog-Channel-ID", "X-Goog-Resource-ID"])
    async def test_missing_ids_rejected(self, app, client, missing):
        response = await client.post(
            "/api/webhook/calendar", headers=_webhook_headers(**{missing: None})
        )

        assert response.status_code == 400
        assert app.state.dispatcher.dispatched == []

    @pytest.mark.asyncio
    async def test_missing_token_is_accepted(self, app, client):
        response = await client.post(
            "/api/webhook/calendar", headers=_webhook_headers()
        )

        assert response.status_code == 200
        assert app.state.dispatcher.dispatched == [("channel-1", "resource-1")]

    @pytest.mark.asyncio
    async def test_invalid_token_rejected(self, client):
        response = await client.post(
            "/api/webhook/calendar",
            headers=_webhook_headers(**{"X-Goog-Channel-Token": "not-a-user"}),
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_dispatch_failure_still_acknowledged(self, app, client):
        class BrokenDispatcher:
            def dispatch(self, channel_id, resource_id):
                raise RuntimeError("event loop closing")

        app.state.dispatcher = BrokenDispatcher()

        response = await client.post(
            "/api/webhook/calendar", headers=_webhook_headers()
        )

        assert response.status_code == 200


class TestLocalAuth:
    @pytest.mark.asyncio
    async def test_register_login_me_logout(self, client):
        response = await client.post(
            "/api/auth/register",
            json={"email": "Ada@Example.com", "password": "s3cret-pass", "name": "Ada"},
        )
        assert response.status_code == 201
        assert response.json()["email"] == "ada@example.com"
        assert get_settings().session_cookie_name in response.cookies

        client.cookies.clear()
        response = await client.post(
            "/api/auth/login",
            json={"email": "ada@example.com", "password": "s3cret-pass"},
        )
        assert response.status_code == 200

        response = await client.get("/api/auth/me")
        assert response.status_code == 200
        assert response.json()["name"] == "Ada"
        assert response.json()["is_google_connected"] is False

        response = await client.post("/api/auth/logout")
        assert response.status_code == 200
        client.cookies.clear()

        response = await client.get("/api/auth/me")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_duplicate_email(self, client):
        body = {"email": "dup@example.com", "password": "password-1", "name": "Dup"}
        assert (await client.post("/api/auth/register", json=body)).status_code == 201

        response = await client.post("/api/auth/register", json=body)

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_wrong_password(self, client):
        body = {"email": "pw@example.com", "password": "password-1", "name": "Pw"}
        await client.post("/api/auth/register", json=body)
        client.cookies.clear()

        response = await client.post(
            "/api/auth/login", json={"email": "pw@example.com", "password": "nope"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_register_validation_error_shape(self, client):
        response = await client.post(
            "/api/auth/register",
            json={"email": "not-an-email", "password": "short", "name": ""},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_auth_rate_limit(self, client):
        body = {"email": "rl@example.com", "password": "wrong"}
        statuses = [
            (await client.post("/api/auth/login", json=body)).status_code
            for _ in range(6)
        ]

        assert statuses[:5] == [401] * 5
        assert statuses[5] == 429


class TestGoogleLogin:
    @pytest.mark.asyncio
    async def test_redirects_to_consent_screen(self, client):
        response = await client.get("/api/auth/google")

        assert response.status_code == 307
        assert response.headers["location"].startswith(
            "https://accounts.google.com/o/oauth2/v2/auth?"
        )

    @pytest.mark.asyncio
    async def test_callback_with_bad_state_fails(self, client):
        response = await client.get(
            "/api/auth/google/callback", params={"code": "abc", "state": "forged"}
        )

        assert response.status_code == 302
        assert response.headers["location"].endswith("?error=auth_failed")

    @pytest.mark.asyncio
    async def test_login_survives_webhook_setup_failure(self, app, client, db):
        channels = RecordingChannelManager(error=WebhookSetupError("watch refused"))
        _use_google(app, _google_profile(), channels)

        response = await _google_callback(client)

        assert response.status_code == 302
        assert response.headers["location"].endswith("/calendar")
        assert get_settings().session_cookie_name in response.cookies
        user = await _user_by_email(db, "grace@example.com")
        assert user is not None
        assert user.google_id == "google-123"
        assert user.is_google_connected is True
        assert channels.setups == [user.id]

    @pytest.mark.asyncio
    async def test_verified_email_links_existing_account(self, app, client, db):
        body = {"email": "grace@example.com", "password": "password-1", "name": "Grace"}
        assert (await client.post("/api/auth/register", json=body)).status_code == 201
        client.cookies.clear()
        _use_google(app, _google_profile(), RecordingChannelManager())

        response = await _google_callback(client)

        assert response.headers["location"].endswith("/calendar")
        user = await _user_by_email(db, "grace@example.com")
        assert user.google_id == "google-123"

    @pytest.mark.asyncio
    async def test_unverified_email_does_not_take_over_account(self, app, client, db):
        body = {"email": "grace@example.com", "password": "password-1", "name": "Grace"}
        assert (await client.post("/api/auth/register", json=body)).status_code == 201
        client.cookies.clear()
        channels = RecordingChannelManager()
        _use_google(
            app,
            _google_profile(id="other-google-id", verified_email=False),
            channels,
        )

        response = await _google_callback(client)

        assert response.status_code == 302
        assert response.headers["location"].endswith("?error=auth_failed")
        assert get_settings().session_cookie_name not in response.cookies
        user = await _user_by_email(db, "grace@example.com")
        assert user.google_id is None
        assert user.is_google_connected is False
        assert channels.setups == []


class TestEventRoutes:
    @pytest.mark.asyncio
    async def test_requires_session(self, client):
        response = await client.get("/api/calendar/events")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_list_events(self, db, client):
        user = await make_user(db)
        await make_event(
            db, user, "evt-1", attendees=["a@example.com"], description="Notes"
        )
        _login(client, user)

        response = await client.get("/api/calendar/events")

        assert response.status_code == 200
        [event] = response.json()
        assert event["id"] == "evt-1"
        assert event["description"] == "Notes"
        assert event["attendees"] == ["a@example.com"]
        assert set(event) == {
            "id", "title", "start", "end", "description", "location", "status", "attendees"
        }

    @pytest.mark.asyncio
    async def test_create_event(self, db, client, fake_calendar):
        user = await make_user(db)
        _login(client, user)

        response = await client.post(
            "/api/calendar/events",
            json={"title": "Standup", "start": "2030-01-01T09:00", "end": "2030-01-01T09:15"},
        )

        assert response.status_code == 201
        assert response.json()["id"] == "created-1"
        assert response.json()["title"] == "Standup"
        assert len(fake_calendar.calls_to("insert_event")) == 1

    @pytest.mark.asyncio
    async def test_end_before_start_makes_no_provider_call(
        self, db, client, fake_calendar
    ):
        user = await make_user(db)
        _login(client, user)

        response = await client.post(
            "/api/calendar/events",
            json={"title": "Backwards", "start": "2030-01-01T10:00", "end": "2030-01-01T09:00"},
        )

        assert response.status_code == 400
        assert fake_calendar.calls == []

    @pytest.mark.asyncio
    async def test_update_unknown_event(self, db, client, fake_calendar):
        user = await make_user(db)
        _login(client, user)

        response = await client.put(
            "/api/calendar/events/missing",
            json={"title": "X", "start": "2030-01-01T09:00", "end": "2030-01-01T10:00"},
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"
        assert fake_calendar.calls == []

    @pytest.mark.asyncio
    async def test_delete_event(self, db, client):
        user = await make_user(db)
        await make_event(db, user, "evt-1")
        _login(client, user)

        response = await client.delete("/api/calendar/events/evt-1")
        assert response.status_code == 200

        response = await client.get("/api/calendar/events")
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_provider_failure_is_500(self, db, client, fake_calendar):
        user = await make_user(db)
        _login(client, user)
        fake_calendar.errors["insert_event"] = CalendarAPIError("down", status=503)

        response = await client.post(
            "/api/calendar/events",
            json={"title": "X", "start": "2030-01-01T09:00", "end": "2030-01-01T10:00"},
        )

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "CALENDAR_OPERATION_FAILED"

    @pytest.mark.asyncio
    async def test_manual_sync(self, db, client, fake_calendar):
        user = await make_user(db)
        _login(client, user)
        fake_calendar.listings = [
            EventListing(events=[api_event("a"), api_event("b")], next_sync_token="T1")
        ]

        response = await client.post("/api/calendar/sync")

        assert response.status_code == 200
        assert {e["id"] for e in response.json()} == {"a", "b"}

    @pytest.mark.asyncio
    async def test_sync_without_google_is_401(self, db, client):
        user = await make_user(db, connected=False)
        _login(client, user)

        response = await client.post("/api/calendar/sync")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTHENTICATION_FAILED"

    @pytest.mark.asyncio
    async def test_expired_session_rejected(self, db, client):
        user = await make_user(db)
        client.cookies.set(
            get_settings().session_cookie_name,
            create_session_token(user.id, expires_delta=timedelta(seconds=-1)),
        )

        response = await client.get("/api/calendar/events")

        assert response.status_code == 401
