"""Pytest fixtures for personal CRM calendar sync tests.

This module provides test fixtures that ensure:
1. No external API calls are made (Google OAuth, Google Calendar)
2. Database tests run against a throwaway SQLite file
3. Isolated test environment with controlled configuration
"""

import dataclasses
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

# Set test environment BEFORE importing application modules
# This ensures no real services are contacted during test collection
os.environ.setdefault("SECRET_KEY", "test-secret-key-at-least-32-characters-long")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("CALENDAR_SYNC_ENABLED", "false")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from personal_crm.calendar.errors import ProviderRequestError, TokenRefreshError
from personal_crm.calendar.google_calendar import (
    CalendarClient,
    CalendarInfo,
    ExternalEvent,
    InsertedEvent,
)
from personal_crm.calendar.oauth import OAuthTokens
from personal_crm.calendar.store import Credential, CredentialStore, is_expired
from personal_crm.database.models import Base, CalendarEvent, SyncStatus, User


# =============================================================================
# Test Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset settings cache before each test to ensure clean state."""
    from personal_crm.config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def mock_httpx_client():
    """Mock httpx client to prevent any external HTTP calls."""
    with patch("httpx.AsyncClient") as mock_client:
        mock_instance = AsyncMock()
        mock_instance.get = AsyncMock()
        mock_instance.post = AsyncMock()
        mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
        mock_instance.__aexit__ = AsyncMock(return_value=None)
        mock_client.return_value = mock_instance
        yield mock_instance


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """SQLite database file, shared by every session of one test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'crm.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


async def create_user(
    db: AsyncSession,
    email: str = "ada@example.com",
    timezone_name: str | None = "UTC",
) -> User:
    user = User(email=email, name=email.split("@")[0], timezone=timezone_name)
    db.add(user)
    await db.commit()
    return user


async def connect_user(
    db: AsyncSession,
    user: User,
    refresh_token: str | None = "refresh-token",
    expires_in: timedelta = timedelta(hours=1),
    **overrides: Any,
) -> Credential:
    """Store a credential as if the user had just connected."""
    credential = Credential(
        user_id=user.id,
        access_token=f"access-{user.email}",
        refresh_token=refresh_token,
        token_expires_at=datetime.now(timezone.utc) + expires_in,
        calendar_sync_enabled=True,
        primary_calendar_id=user.email,
        sync_status=SyncStatus.CONNECTED,
    )
    credential = dataclasses.replace(credential, **overrides)
    return await CredentialStore(db).upsert(credential)


async def create_event(
    db: AsyncSession,
    user: User,
    title: str = "Coffee with Grace",
    start: datetime | None = None,
    duration: timedelta = timedelta(hours=1),
    **fields: Any,
) -> CalendarEvent:
    start = start or datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0) + timedelta(days=1)
    event = CalendarEvent(
        user_id=user.id,
        title=title,
        start_time=start,
        end_time=start + duration,
        **fields,
    )
    db.add(event)
    await db.commit()
    return event


@pytest_asyncio.fixture
async def user(db) -> User:
    return await create_user(db)


# =============================================================================
# Google Fakes
# =============================================================================


def google_event(
    event_id: str,
    summary: str | None = "Lunch",
    start: datetime | None = None,
    duration: timedelta = timedelta(hours=1),
    updated: datetime | None = None,
    **fields: Any,
) -> ExternalEvent:
    """A timed Google event, starting tomorrow unless told otherwise."""
    start = start or datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=1)
    return ExternalEvent(
        id=event_id,
        summary=summary,
        start=start,
        end=start + duration,
        updated=updated or datetime(2000, 1, 1, tzinfo=timezone.utc),
        **fields,
    )


class FakeCalendarClient(CalendarClient):
    """In-memory Google Calendar for one account."""

    def __init__(self, events: list[ExternalEvent] | None = None, summary: str = "ada@example.com"):
        self.events = list(events or [])
        self.summary = summary
        self.inserted: list[dict[str, Any]] = []
        self.list_calls: list[tuple[str, datetime, datetime]] = []
        self.list_error: Exception | None = None
        self.insert_error: Exception | None = None
        self.conferencing_link: str | None = None

    async def primary_calendar(self) -> CalendarInfo:
        return CalendarInfo(id="primary-calendar", summary=self.summary)

    async def list_events(self, calendar_id, time_min, time_max):
        self.list_calls.append((calendar_id, time_min, time_max))
        if self.list_error:
            raise self.list_error
        return list(self.events)

    async def insert_event(self, calendar_id, body):
        if self.insert_error:
            raise self.insert_error
        self.inserted.append(body)
        link = self.conferencing_link if "conferenceData" in body else None
        return InsertedEvent(external_id=f"g-{len(self.inserted)}", conferencing_link=link)


class FakeOAuth:
    """Stands in for GoogleOAuth without any HTTP."""

    def __init__(self, tokens: OAuthTokens | None = None):
        self.tokens = tokens or OAuthTokens(
            access_token="new-access",
            refresh_token="new-refresh",
            expires_in_seconds=3600,
        )
        self.exchange_error: Exception | None = None
        self.refresh_error: Exception | None = None
        self.refreshed: list[uuid.UUID] = []
        self.revoked: list[str] = []

    def authorization_url(self, redirect_uri: str, state: str | None = None) -> str:
        return f"https://accounts.google.com/o/oauth2/v2/auth?redirect_uri={redirect_uri}"

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        if self.exchange_error:
            raise self.exchange_error
        return self.tokens

    async def refresh_if_needed(self, credential: Credential, now=None) -> Credential:
        if not is_expired(credential, now):
            return credential
        if self.refresh_error:
            raise self.refresh_error
        if credential.refresh_token is None:
            raise TokenRefreshError("no refresh token")
        self.refreshed.append(credential.user_id)
        return dataclasses.replace(
            credential,
            access_token=f"refreshed-{credential.user_id}",
            token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    async def revoke_token(self, token: str) -> bool:
        self.revoked.append(token)
        return True


@pytest.fixture
def fake_oauth() -> FakeOAuth:
    return FakeOAuth()


@pytest.fixture
def calendar_client() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest.fixture
def provider_outage() -> ProviderRequestError:
    return ProviderRequestError("List events of primary failed: Backend Error", status=503)
