"""FastAPI application and routes.

This module provides the REST API for the calendar sync service.

## API Structure

- /api/auth - Authentication endpoints (Google OAuth, local accounts)
- /api/calendar - Event CRUD and manual sync
- /api/webhook - Google Calendar push notifications
- /health - Health check

## Authentication

Calendar endpoints require authentication via session cookie.
Sessions are created during login or registration.

## Security

- All communication should be over HTTPS in production
- Rate limiting per client address on every router
"""

from calendar_sync.api.app import create_app

__all__ = ["create_app"]
