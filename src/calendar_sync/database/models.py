"""Database models for calendar sync.

## Security Notes

- OAuth tokens are encrypted at rest using Fernet symmetric encryption
  (see `calendar_sync.database.encryption`)
- Password hashes never leave the auth layer

## Schema Overview

```
users
├── OAuth grant + sync token (columns)
├── webhook channel (columns: channel id, resource id, expiration)
└── events (1:N), unique on (user_id, google_event_id)
```

Webhook channels are not stored separately: a user has at most one active
channel, kept in the three `webhook_*` columns.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    Backends without native timezone support (SQLite) hand back naive
    values; those are reattached to UTC on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    type_annotation_map = {
        datetime: UTCDateTime,
        uuid.UUID: Uuid,
        list[str]: JSON().with_variant(JSONB(), "postgresql"),
        dict[str, Any]: JSON().with_variant(JSONB(), "postgresql"),
    }


class EventStatus(str, Enum):
    """Google Calendar event status."""

    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: str | None) -> EventStatus:
        try:
            return cls(value)
        except ValueError:
            return cls.CONFIRMED


class User(Base):
    """User account.

    Users are created either by local registration (email + password) or on
    first Google sign-in. A local user becomes Google-connected once they
    complete the OAuth flow with the same email address.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str | None] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    picture_url: Mapped[str | None] = mapped_column(String(512))

    # Google grant (tokens encrypted in the application layer)
    is_google_connected: Mapped[bool] = mapped_column(Boolean, default=False)
    google_id: Mapped[str | None] = mapped_column(String(255), index=True)
    access_token_encrypted: Mapped[str | None] = mapped_column(Text)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text)
    token_expiry: Mapped[datetime | None]

    # Incremental sync cursor issued by Google
    sync_token: Mapped[str | None] = mapped_column(Text)

    # Push notification channel
    webhook_channel_id: Mapped[str | None] = mapped_column(String(255), index=True)
    webhook_resource_id: Mapped[str | None] = mapped_column(String(255))
    webhook_expiration: Mapped[datetime | None]

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )
    last_login_at: Mapped[datetime | None]

    # Relationships
    events: Mapped[list["Event"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "NOT is_google_connected OR ("
            "access_token_encrypted IS NOT NULL AND "
            "refresh_token_encrypted IS NOT NULL AND "
            "token_expiry IS NOT NULL)",
            name="ck_users_google_grant_complete",
        ),
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class Event(Base):
    """Local mirror of a Google Calendar event.

    Rows are never physically removed: cancellations from Google and user
    deletions set `is_deleted`.
    """

    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    # External event identification
    google_event_id: Mapped[str] = mapped_column(String(1024), nullable=False)
    calendar_id: Mapped[str] = mapped_column(String(255), default="primary")

    # Event data
    title: Mapped[str] = mapped_column(String(1024), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    location: Mapped[str] = mapped_column(String(1024), default="")
    start: Mapped[datetime] = mapped_column(nullable=False)
    end: Mapped[datetime] = mapped_column(nullable=False)
    attendees: Mapped[list[str]] = mapped_column(default=list)
    status: Mapped[str] = mapped_column(String(16), default=EventStatus.CONFIRMED.value)

    # Sync state
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    last_modified: Mapped[datetime] = mapped_column(nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="events")

    __table_args__ = (
        UniqueConstraint("user_id", "google_event_id", name="uq_user_google_event"),
        Index("ix_events_user_start", "user_id", "start"),
    )

    def __repr__(self) -> str:
        return f"<Event {self.title[:30]}>"
