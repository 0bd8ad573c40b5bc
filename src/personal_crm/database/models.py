"""Database models for the personal CRM calendar sync.

## Security Notes

- OAuth tokens are encrypted at rest using Fernet symmetric encryption
- The encryption key is derived from the application secret
- PostgreSQL should be configured with SSL and disk encryption

## Schema Overview

```
users
├── google_calendar_credentials (0..1) - encrypted tokens + sync state
└── calendar_events (1:N) - local events, optionally linked to Google
```

## Timestamps

Event start/end times are naive local times in the owning user's timezone
(`users.timezone`). `calendar_events.updated_at` is a UTC instant maintained
by the application; it is the local side of the last-writer-wins comparison
during reconciliation.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a naive timestamp read back from the database.

    SQLite drops tzinfo from `DateTime(timezone=True)` columns; everything we
    store there is UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    type_annotation_map = {
        uuid.UUID: Uuid,
    }


class SyncStatus(str, Enum):
    """Outcome of the most recent calendar sync attempt."""

    NEVER_SYNCED = "NEVER_SYNCED"
    CONNECTED = "CONNECTED"
    SYNCED = "SYNCED"
    SYNC_FAILED = "SYNC_FAILED"


class EventType(str, Enum):
    """Kind of calendar event."""

    MEETING = "MEETING"
    CALL = "CALL"
    VIDEO_CALL = "VIDEO_CALL"
    FOLLOW_UP = "FOLLOW_UP"
    OTHER = "OTHER"


class EventStatus(str, Enum):
    """Lifecycle status of a calendar event."""

    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class User(Base):
    """User account model.

    Accounts are managed by the authentication subsystem; the calendar sync
    only needs the identity and the user's effective timezone.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255))
    timezone: Mapped[str | None] = mapped_column(String(64))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    # Relationships
    google_credential: Mapped["GoogleCalendarCredential | None"] = relationship(
        back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    calendar_events: Mapped[list["CalendarEvent"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class GoogleCalendarCredential(Base):
    """Google OAuth tokens and calendar sync state for one user.

    Tokens are encrypted at rest. The encryption happens in the store layer,
    not at the database level, to allow for key rotation.
    """

    __tablename__ = "google_calendar_credentials"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )

    # Tokens (encrypted)
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Sync configuration and state
    calendar_sync_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    primary_calendar_id: Mapped[str | None] = mapped_column(String(255))
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sync_status: Mapped[str] = mapped_column(
        String(16), default=SyncStatus.NEVER_SYNCED.value
    )
    last_sync_error: Mapped[str | None] = mapped_column(Text)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="google_credential")

    __table_args__ = (
        Index(
            "ix_google_credentials_sync_enabled",
            "calendar_sync_enabled",
            "last_sync_at",
        ),
    )

    def __repr__(self) -> str:
        return f"<GoogleCalendarCredential user_id={self.user_id} status={self.sync_status}>"


class CalendarEvent(Base):
    """A calendar event owned by one user.

    `external_id` is set once the event is linked to Google Calendar, either
    because it was imported from there or exported to it. Events without an
    external id are pending export.
    """

    __tablename__ = "calendar_events"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    contact_id: Mapped[uuid.UUID | None] = mapped_column()

    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(String(512))
    meet_link: Mapped[str | None] = mapped_column(String(512))

    # Naive local time in the owner's timezone
    start_time: Mapped[datetime] = mapped_column(DateTime(), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(), nullable=False)

    type: Mapped[str] = mapped_column(String(16), default=EventType.MEETING.value)
    status: Mapped[str] = mapped_column(String(16), default=EventStatus.SCHEDULED.value)

    # Google Calendar linkage
    external_id: Mapped[str | None] = mapped_column(String(255))
    external_calendar_id: Mapped[str | None] = mapped_column(String(255))

    # Ordered attendee emails, duplicates preserved
    attendees: Mapped[list[str]] = mapped_column(JSONType, default=list)

    # Reminders
    reminder_minutes: Mapped[int | None] = mapped_column(Integer, default=15)
    reminder_sent: Mapped[bool] = mapped_column(Boolean, default=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="calendar_events")

    __table_args__ = (
        UniqueConstraint("user_id", "external_id", name="uq_user_external_event"),
        Index("ix_calendar_events_user_start", "user_id", "start_time"),
        Index("ix_calendar_events_pending_export", "user_id", "external_id"),
    )

    def __repr__(self) -> str:
        return f"<CalendarEvent {self.title[:30]}>"
