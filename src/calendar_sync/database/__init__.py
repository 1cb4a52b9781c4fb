"""Database module for calendar sync.

This module provides:
- SQLAlchemy async database connection
- User and Event models
- Encrypted storage for OAuth tokens
"""

from calendar_sync.database.connection import (
    close_db,
    create_tables,
    get_db,
    get_db_session,
    init_db,
)
from calendar_sync.database.models import (
    Base,
    Event,
    EventStatus,
    User,
)

__all__ = [
    # Connection
    "get_db",
    "get_db_session",
    "init_db",
    "close_db",
    "create_tables",
    # Models
    "Base",
    "User",
    "Event",
    "EventStatus",
]
