"""Google credential management.

Keeps each user's Google access token valid. Every operation that talks to
Google Calendar goes through `CredentialManager.ensure_fresh_token` first
and then builds a client from `credentials_for(user)`.

## Refresh Policy

- A token is refreshed when its expiry is unknown, in the past, or within
  TOKEN_REFRESH_MARGIN_SECONDS (default: 5 minutes) of now
- The new access token, expiry and (when Google rotates it) refresh token
  are persisted immediately
- A rejected refresh token is an authentication failure: the user must
  reconnect Google; it is never retried automatically
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from calendar_sync.auth.google import GoogleOAuth, GoogleTokens, get_google_oauth
from calendar_sync.calendar.google_calendar import CalendarCredentials
from calendar_sync.config import get_settings
from calendar_sync.database.encryption import TokenCipher, get_cipher
from calendar_sync.database.models import User
from calendar_sync.exceptions import CredentialsMissingError

logger = logging.getLogger(__name__)

# Used when Google omits expires_in
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


class CredentialManager:
    """Holds and refreshes OAuth tokens per user.

    Example:
        ```python
        manager = CredentialManager(db)
        user = await manager.ensure_fresh_token(user)
        client = GoogleCalendarClient(manager.credentials_for(user))
        ```
    """

    def __init__(
        self,
        db: AsyncSession,
        oauth: GoogleOAuth | None = None,
        cipher: TokenCipher | None = None,
        refresh_margin: timedelta | None = None,
    ):
        self.db = db
        self.oauth = oauth or get_google_oauth()
        self.cipher = cipher or get_cipher()
        if refresh_margin is None:
            refresh_margin = timedelta(seconds=get_settings().token_refresh_margin_seconds)
        self.refresh_margin = refresh_margin

    def needs_refresh(self, user: User, now: datetime | None = None) -> bool:
        if user.token_expiry is None or not user.access_token_encrypted:
            return True
        now = now or datetime.now(timezone.utc)
        return now + self.refresh_margin >= user.token_expiry

    async def ensure_fresh_token(self, user: User) -> User:
        """Return `user` carrying a currently-valid access token.

        Raises:
            CredentialsMissingError: The user never granted offline access
            TokenRefreshError: Google rejected the refresh token
        """
        if not user.refresh_token_encrypted:
            raise CredentialsMissingError("Google account not connected")

        if not self.needs_refresh(user):
            return user

        logger.info(f"Refreshing Google access token for user {user.id}")
        refresh_token = self.cipher.decrypt(user.refresh_token_encrypted)
        tokens = await self.oauth.refresh_access_token(refresh_token)

        self.store_tokens(user, tokens)
        await self.db.commit()

        return user

    def store_tokens(self, user: User, tokens: GoogleTokens) -> None:
        """Write a token bundle onto the user record (caller commits).

        The user is marked Google-connected only once a refresh token is on
        file, since background sync cannot work without one.
        """
        user.access_token_encrypted = self.cipher.encrypt(tokens.access_token)
        if tokens.refresh_token:
            user.refresh_token_encrypted = self.cipher.encrypt(tokens.refresh_token)
        user.token_expiry = tokens.expires_at or (
            datetime.now(timezone.utc) + DEFAULT_TOKEN_LIFETIME
        )
        user.is_google_connected = bool(user.refresh_token_encrypted)

    def credentials_for(self, user: User) -> CalendarCredentials:
        """Build the immutable credential context for provider calls."""
        if not user.access_token_encrypted:
            raise CredentialsMissingError("Google account not connected")

        return CalendarCredentials(
            access_token=self.cipher.decrypt(user.access_token_encrypted),
            expires_at=user.token_expiry,
        )
