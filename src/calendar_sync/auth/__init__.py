"""Authentication module for calendar sync.

Provides local (email/password) and Google OAuth authentication, session
management, and the credential manager that keeps Google tokens fresh.

## Google OAuth Flow

1. User hits /api/auth/google
2. Redirect to Google consent screen (offline access, forced consent)
3. Google redirects back with an authorization code
4. Exchange code for access token and refresh token
5. Create/update user, store encrypted tokens
6. Create session cookie and set up a push notification channel

## Security

- OAuth tokens are encrypted at rest
- Sessions use signed, HTTP-only cookies
- Passwords are hashed with scrypt
"""

from calendar_sync.auth.credentials import CredentialManager
from calendar_sync.auth.dependencies import (
    get_current_user,
    get_current_user_optional,
)
from calendar_sync.auth.google import (
    GoogleOAuth,
    GoogleTokens,
    GoogleUserInfo,
    get_google_oauth,
)
from calendar_sync.auth.passwords import hash_password, verify_password
from calendar_sync.auth.session import (
    SessionData,
    create_session_token,
    verify_session_token,
)

__all__ = [
    "CredentialManager",
    "GoogleOAuth",
    "GoogleTokens",
    "GoogleUserInfo",
    "get_google_oauth",
    "create_session_token",
    "verify_session_token",
    "SessionData",
    "get_current_user",
    "get_current_user_optional",
    "hash_password",
    "verify_password",
]
