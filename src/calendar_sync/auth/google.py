"""Google OAuth 2.0 client.

Implements the authorization code flow used for "Sign in with Google" and
the refresh-token exchange used to keep calendar access alive.

## OAuth Endpoints

- Authorization: https://accounts.google.com/o/oauth2/v2/auth
- Token: https://oauth2.googleapis.com/token
- User Info: https://www.googleapis.com/oauth2/v2/userinfo

## Scopes Used

- https://www.googleapis.com/auth/calendar: Read and write events, watch
- https://www.googleapis.com/auth/userinfo.profile: Display name and picture
- https://www.googleapis.com/auth/userinfo.email: Account email
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from urllib.parse import urlencode

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from calendar_sync.config import get_settings
from calendar_sync.exceptions import TokenRefreshError

logger = logging.getLogger(__name__)

# Google OAuth endpoints
GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


@dataclass
class GoogleUserInfo:
    """Profile fields returned by the userinfo endpoint."""

    id: str
    email: str
    name: str | None
    picture: str | None
    verified_email: bool


@dataclass
class GoogleTokens:
    """Token endpoint response."""

    access_token: str
    refresh_token: str | None
    token_type: str
    expires_at: datetime | None
    scope: str

    @classmethod
    def from_response(
        cls, data: dict, fallback_refresh_token: str | None = None
    ) -> GoogleTokens:
        expires_at = None
        if "expires_in" in data:
            expires_at = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(
                seconds=int(data["expires_in"])
            )

        return cls(
            access_token=data["access_token"],
            # Google only returns a refresh token when it rotates one
            refresh_token=data.get("refresh_token", fallback_refresh_token),
            token_type=data.get("token_type", "Bearer"),
            expires_at=expires_at,
            scope=data.get("scope", ""),
        )


class GoogleOAuth:
    """Google OAuth 2.0 client.

    Example:
        ```python
        oauth = GoogleOAuth()

        auth_url = oauth.get_authorization_url(state=state_token)
        # Redirect user to auth_url, then in the callback:
        tokens = await oauth.exchange_code(code)
        user_info = await oauth.get_user_info(tokens.access_token)

        # Later, when the access token expires:
        tokens = await oauth.refresh_access_token(refresh_token)
        ```
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        scopes: list[str] | None = None,
    ):
        settings = get_settings()

        self.client_id = client_id or settings.google_client_id
        self.client_secret = client_secret or settings.google_client_secret
        self.redirect_uri = redirect_uri or settings.google_redirect_uri
        self.scopes = scopes or settings.google_scopes
        self.timeout = httpx.Timeout(
            settings.http_read_timeout_seconds,
            connect=settings.http_connect_timeout_seconds,
        )

        if not self.client_id or not self.client_secret:
            logger.warning(
                "GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET missing; Google sign-in "
                "and calendar access are disabled"
            )

    @property
    def is_configured(self) -> bool:
        """True when a client id and secret are available."""
        return bool(self.client_id and self.client_secret)

    def get_authorization_url(self, state: str) -> str:
        """Generate the Google consent screen URL.

        Always requests offline access with a forced consent prompt so Google
        issues a refresh token on every login.

        Args:
            state: Signed state token for CSRF protection

        Returns:
            URL to redirect the user to
        """
        if not self.is_configured:
            raise RuntimeError("Google OAuth not configured")

        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{GOOGLE_AUTHORIZE_URL}?{urlencode(params)}"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _post_token(self, data: dict[str, str]) -> httpx.Response:
        """POST to the token endpoint, retrying timeouts and network errors."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    **data,
                },
            )

    async def exchange_code(self, code: str) -> GoogleTokens:
        """Exchange an authorization code for tokens.

        Raises:
            ValueError: If token exchange fails
        """
        if not self.is_configured:
            raise RuntimeError("Google OAuth not configured")

        response = await self._post_token(
            {
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri,
            }
        )

        if response.status_code != 200:
            logger.error(f"Token exchange failed: {response.text}")
            raise ValueError(f"Token exchange failed: {response.status_code}")

        return GoogleTokens.from_response(response.json())

    async def refresh_access_token(self, refresh_token: str) -> GoogleTokens:
        """Exchange a refresh token for a new access token.

        Args:
            refresh_token: The stored refresh token

        Returns:
            New GoogleTokens; refresh_token is the rotated one when Google
            issued a new one, otherwise the one passed in

        Raises:
            TokenRefreshError: If Google rejects the grant or cannot be reached
        """
        if not self.is_configured:
            raise RuntimeError("Google OAuth not configured")

        try:
            response = await self._post_token(
                {"refresh_token": refresh_token, "grant_type": "refresh_token"}
            )
        except httpx.HTTPError as e:
            logger.error(f"Token refresh request failed: {e}")
            raise TokenRefreshError("Failed to refresh access token") from e

        if response.status_code != 200:
            logger.error(f"Token refresh failed: {response.text}")
            raise TokenRefreshError("Failed to refresh access token")

        return GoogleTokens.from_response(
            response.json(), fallback_refresh_token=refresh_token
        )

    async def get_user_info(self, access_token: str) -> GoogleUserInfo:
        """Get the signed-in user's profile.

        Raises:
            ValueError: If request fails
        """
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )

        if response.status_code != 200:
            logger.error(f"User info request failed: {response.text}")
            raise ValueError(f"User info request failed: {response.status_code}")

        data = response.json()
        return GoogleUserInfo(
            id=data["id"],
            email=data["email"],
            name=data.get("name"),
            picture=data.get("picture"),
            verified_email=data.get("verified_email", False),
        )


@lru_cache
def get_google_oauth() -> GoogleOAuth:
    """Get cached Google OAuth client instance."""
    return GoogleOAuth()
