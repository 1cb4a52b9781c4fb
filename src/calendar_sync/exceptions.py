"""Exception hierarchy for the calendar sync service.

Services raise these; `calendar_sync.api.errors` maps them to HTTP
responses:

- AuthenticationError -> 401
- NotFoundError -> 404
- ValidationError -> 400
- everything else deriving from CalendarSyncError -> 500
"""

from __future__ import annotations


class CalendarSyncError(Exception):
    """Base class for all service errors."""

    code = "INTERNAL_ERROR"


class AuthenticationError(CalendarSyncError):
    """The caller (or the stored Google grant) is not authenticated."""

    code = "AUTHENTICATION_FAILED"


class CredentialsMissingError(AuthenticationError):
    """The user has no refresh token; Google must be (re)connected."""


class TokenRefreshError(AuthenticationError):
    """Google rejected the refresh token (revoked or expired)."""


class NotFoundError(CalendarSyncError):
    """A requested record does not exist."""

    code = "NOT_FOUND"


class ValidationError(CalendarSyncError):
    """Input failed validation before any external call was made."""

    code = "VALIDATION_ERROR"


class CalendarAPIError(CalendarSyncError):
    """A Google Calendar API call failed.

    Attributes:
        status: HTTP status returned by Google, or None for transport
            failures (timeouts, connection errors)
    """

    code = "PROVIDER_ERROR"

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class SyncTokenInvalidError(CalendarAPIError):
    """Google answered 410 Gone: the stored sync token must be discarded."""


class SyncFailedError(CalendarSyncError):
    """A reconciliation pass could not complete."""

    code = "SYNC_FAILED"


class CalendarOperationError(CalendarSyncError):
    """A create/update/delete could not be applied to Google Calendar."""

    code = "CALENDAR_OPERATION_FAILED"


class WebhookSetupError(CalendarSyncError):
    """A push notification channel could not be created."""

    code = "WEBHOOK_SETUP_FAILED"
