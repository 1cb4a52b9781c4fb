"""Session and OAuth state tokens using signed JWTs.

Sessions are stored as signed JWT tokens in HTTP-only cookies. The same
signing key is used for the short-lived `state` parameter of the Google
OAuth flow, so no server-side state store is needed.

## Cookie Policy

- Signed with the application secret key (HS256)
- Expire after SESSION_MAX_AGE_SECONDS (default: 7 days)
- HTTP-only, Secure and SameSite=None in production
- SameSite=Lax in development

## Token Structure

```json
{
  "sub": "user-uuid",
  "iat": 1234567890,
  "exp": 1235172690,
  "type": "session"
}
```
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Response
from jose import JWTError, jwt

from calendar_sync.config import get_settings

logger = logging.getLogger(__name__)

# JWT configuration
ALGORITHM = "HS256"
SESSION_TOKEN_TYPE = "session"
STATE_TOKEN_TYPE = "oauth_state"
STATE_TOKEN_TTL = timedelta(minutes=10)


@dataclass
class SessionData:
    """Data stored in the session token."""

    user_id: uuid.UUID
    created_at: datetime
    expires_at: datetime

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) > self.expires_at


def _encode(payload: dict, expires_delta: timedelta) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        **payload,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def _decode(token: str, token_type: str) -> dict | None:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.debug(f"Token verification failed: {e}")
        return None

    if payload.get("type") != token_type:
        logger.debug("Invalid token type")
        return None

    return payload


def create_session_token(
    user_id: uuid.UUID,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed session token for a user.

    Args:
        user_id: The user's UUID
        expires_delta: Custom expiration time (or use default from settings)

    Returns:
        Signed JWT token string
    """
    if expires_delta is None:
        expires_delta = timedelta(seconds=get_settings().session_max_age_seconds)

    return _encode({"sub": str(user_id), "type": SESSION_TOKEN_TYPE}, expires_delta)


def verify_session_token(token: str) -> SessionData | None:
    """Verify and decode a session token.

    Returns:
        SessionData if valid, None if invalid or expired
    """
    payload = _decode(token, SESSION_TOKEN_TYPE)
    if payload is None:
        return None

    try:
        session = SessionData(
            user_id=uuid.UUID(payload["sub"]),
            created_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
    except (KeyError, ValueError) as e:
        logger.debug(f"Invalid token payload: {e}")
        return None

    # jose checks exp too; keep the explicit check for clock edge cases
    if session.is_expired:
        logger.debug("Session token expired")
        return None

    return session


def create_state_token() -> str:
    """Create the signed `state` parameter for the Google consent redirect."""
    return _encode(
        {"nonce": secrets.token_urlsafe(16), "type": STATE_TOKEN_TYPE},
        STATE_TOKEN_TTL,
    )


def verify_state_token(token: str) -> bool:
    """Check a `state` value returned by Google on the OAuth callback."""
    return _decode(token, STATE_TOKEN_TYPE) is not None


def set_session_cookie(response: Response, user_id: uuid.UUID) -> None:
    """Attach a fresh session cookie for `user_id` to the response."""
    settings = get_settings()
    response.set_cookie(
        key=settings.session_cookie_name,
        value=create_session_token(user_id),
        max_age=settings.session_max_age_seconds,
        httponly=True,
        secure=settings.is_production,
        samesite=settings.session_cookie_samesite,
    )


def clear_session_cookie(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(
        key=settings.session_cookie_name,
        httponly=True,
        secure=settings.is_production,
        samesite=settings.session_cookie_samesite,
    )
