"""Authentication routes.

Handles the Google OAuth login flow, local email/password accounts and
session management.

## OAuth Flow

1. GET /api/auth/google - Redirect to Google consent screen
2. GET /api/auth/google/callback - Handle OAuth callback, redirect to frontend
3. POST /api/auth/logout - Clear session
4. GET /api/auth/me - Get current user info

## Local Accounts

- POST /api/auth/register - Create an account and start a session
- POST /api/auth/login - Start a session with email and password

## Session Management

Sessions are stored in HTTP-only cookies. The session token is a signed JWT
containing the user ID and expiration time.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx
from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from calendar_sync.api.rate_limit import AUTH, rate_limit
from calendar_sync.auth.credentials import CredentialManager
from calendar_sync.auth.dependencies import get_current_user, get_current_user_optional
from calendar_sync.auth.google import GoogleOAuth, GoogleUserInfo, get_google_oauth
from calendar_sync.auth.passwords import hash_password_async, verify_password_async
from calendar_sync.auth.session import (
    clear_session_cookie,
    create_state_token,
    set_session_cookie,
    verify_state_token,
)
from calendar_sync.config import get_settings
from calendar_sync.database.connection import get_db_session
from calendar_sync.database.models import User
from calendar_sync.webhooks.channels import (
    WebhookChannelManager,
    build_channel_manager,
)

logger = logging.getLogger(__name__)

router = APIRouter()

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class UserResponse(BaseModel):
    """User information response."""

    id: str
    email: str
    name: str
    picture_url: str | None
    is_google_connected: bool

    @classmethod
    def from_user(cls, user: User) -> UserResponse:
        return cls(
            id=str(user.id),
            email=user.email,
            name=user.name,
            picture_url=user.picture_url,
            is_google_connected=user.is_google_connected,
        )


class RegisterRequest(BaseModel):
    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(..., min_length=8, max_length=256)
    name: str = Field(..., min_length=1, max_length=255)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., max_length=256)


class UnverifiedEmailError(Exception):
    """A Google profile claims an existing account's email without verifying it."""


async def _find_google_user(db: AsyncSession, info: GoogleUserInfo) -> User | None:
    """Match a Google profile to an existing account, by Google id then email.

    Linking by email requires Google to have verified the address.

    Raises:
        UnverifiedEmailError: Only an unverified email matches an account
    """
    result = await db.execute(select(User).where(User.google_id == info.id))
    user = result.scalar_one_or_none()
    if user is not None:
        return user

    result = await db.execute(select(User).where(User.email == info.email.lower()))
    user = result.scalar_one_or_none()
    if user is not None and not info.verified_email:
        raise UnverifiedEmailError(info.email)
    return user


def get_channel_manager(
    db: AsyncSession = Depends(get_db_session),
) -> WebhookChannelManager:
    """Channel manager used to watch the calendar after Google login."""
    return build_channel_manager(db)


@router.get("/google", dependencies=[Depends(rate_limit(AUTH))])
async def google_login(
    oauth: GoogleOAuth = Depends(get_google_oauth),
) -> RedirectResponse:
    """Initiate Google OAuth login.

    Redirects the user to Google's consent screen. After consent,
    Google redirects back to /api/auth/google/callback.
    """
    if not oauth.is_configured:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Google OAuth not configured",
        )

    return RedirectResponse(url=oauth.get_authorization_url(state=create_state_token()))


@router.get("/google/callback")
async def google_callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    oauth: GoogleOAuth = Depends(get_google_oauth),
    db: AsyncSession = Depends(get_db_session),
    channels: WebhookChannelManager = Depends(get_channel_manager),
) -> RedirectResponse:
    """Handle Google OAuth callback.

    Exchanges the authorization code for tokens, creates or updates the
    user, sets the session cookie and creates a push notification channel.
    Any failure before the session exists sends the browser back to the
    frontend with `?error=auth_failed`.
    """
    settings = get_settings()
    failure = RedirectResponse(
        url=f"{settings.frontend_url}?error=auth_failed",
        status_code=status.HTTP_302_FOUND,
    )

    if error or not code:
        logger.warning(f"OAuth callback without code: {error}")
        return failure

    if not state or not verify_state_token(state):
        logger.warning("OAuth callback with invalid or expired state")
        return failure

    try:
        tokens = await oauth.exchange_code(code)
        user_info = await oauth.get_user_info(tokens.access_token)
    except (ValueError, RuntimeError, httpx.HTTPError) as e:
        logger.error(f"Google login failed: {e}")
        return failure

    now = datetime.now(timezone.utc)
    try:
        user = await _find_google_user(db, user_info)
    except UnverifiedEmailError:
        logger.warning(
            f"Refusing to link Google account {user_info.id} by unverified email"
        )
        return failure

    if user is None:
        user = User(
            email=user_info.email.lower(),
            name=user_info.name or user_info.email,
        )
        db.add(user)

    user.google_id = user_info.id
    user.name = user_info.name or user.name
    user.picture_url = user_info.picture
    user.last_login_at = now

    CredentialManager(db, oauth=oauth).store_tokens(user, tokens)
    await db.commit()

    logger.info(f"User {user.email} logged in with Google")

    try:
        await channels.setup_channel(user.id)
    except Exception as e:
        logger.error(f"Webhook setup failed for user {user.id}: {e}")

    redirect = RedirectResponse(
        url=f"{settings.frontend_url}/calendar",
        status_code=status.HTTP_302_FOUND,
    )
    set_session_cookie(redirect, user.id)
    return redirect


@router.post(
    "/register",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit(AUTH))],
)
async def register(
    body: RegisterRequest,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
) -> UserResponse:
    """Create a local account and start a session."""
    email = body.email.lower()

    existing = await db.execute(select(User.id).where(User.email == email))
    if existing.scalar_one_or_none() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered",
        )

    user = User(
        email=email,
        name=body.name,
        password_hash=await hash_password_async(body.password),
        is_google_connected=False,
        last_login_at=datetime.now(timezone.utc),
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError as e:
        # Lost a race with a concurrent registration
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered",
        ) from e

    set_session_cookie(response, user.id)
    logger.info(f"User {user.email} registered")

    return UserResponse.from_user(user)


@router.post(
    "/login",
    response_model=UserResponse,
    dependencies=[Depends(rate_limit(AUTH))],
)
async def login(
    body: LoginRequest,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
) -> UserResponse:
    """Start a session for a local account."""
    result = await db.execute(select(User).where(User.email == body.email.lower()))
    user = result.scalar_one_or_none()

    if user is None or not await verify_password_async(
        body.password, user.password_hash
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    user.last_login_at = datetime.now(timezone.utc)
    await db.commit()

    set_session_cookie(response, user.id)
    logger.info(f"User {user.email} logged in")

    return UserResponse.from_user(user)


@router.post("/logout")
async def logout(
    response: Response,
    user: User | None = Depends(get_current_user_optional),
) -> dict:
    """Log out the current user.

    Clears the session cookie.
    """
    if user:
        logger.info(f"User {user.email} logged out")

    clear_session_cookie(response)

    return {"message": "Logged out successfully"}


@router.get("/me", response_model=UserResponse)
async def get_me(user: User = Depends(get_current_user)) -> UserResponse:
    """Get the current user."""
    return UserResponse.from_user(user)
