"""Persistence for Google credentials and the local events the sync touches.

The sync engine never works on ORM rows for credentials. `CredentialStore`
decrypts a row into an immutable `Credential` value, and every operation that
changes a credential returns a new value which is written back explicitly.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from personal_crm.database.encryption import decrypt_token, encrypt_token
from personal_crm.database.models import (
    CalendarEvent,
    GoogleCalendarCredential,
    SyncStatus,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """Decrypted Google OAuth credential and sync state for one user."""

    user_id: uuid.UUID
    access_token: str
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    calendar_sync_enabled: bool = True
    primary_calendar_id: str | None = None
    last_sync_at: datetime | None = None
    sync_status: SyncStatus = SyncStatus.NEVER_SYNCED
    last_sync_error: str | None = None

    @property
    def can_sync_unattended(self) -> bool:
        """Scheduled sync needs a refresh token to outlive the access token."""
        return self.calendar_sync_enabled and self.refresh_token is not None


def is_expired(credential: Credential, now: datetime | None = None) -> bool:
    """Check whether the access token is at or past its expiry.

    A credential without a recorded expiry is treated as still valid.
    """
    if credential.token_expires_at is None:
        return False
    now = now or utcnow()
    return as_utc(now) >= as_utc(credential.token_expires_at)


def _to_credential(row: GoogleCalendarCredential) -> Credential:
    return Credential(
        user_id=row.user_id,
        access_token=decrypt_token(row.access_token_encrypted) or "",
        refresh_token=decrypt_token(row.refresh_token_encrypted),
        token_expires_at=(
            as_utc(row.token_expires_at) if row.token_expires_at else None
        ),
        calendar_sync_enabled=row.calendar_sync_enabled,
        primary_calendar_id=row.primary_calendar_id,
        last_sync_at=as_utc(row.last_sync_at) if row.last_sync_at else None,
        sync_status=SyncStatus(row.sync_status),
        last_sync_error=row.last_sync_error,
    )


def _apply_credential(row: GoogleCalendarCredential, credential: Credential) -> None:
    row.access_token_encrypted = encrypt_token(credential.access_token)
    row.refresh_token_encrypted = encrypt_token(credential.refresh_token)
    row.token_expires_at = credential.token_expires_at
    row.calendar_sync_enabled = credential.calendar_sync_enabled
    row.primary_calendar_id = credential.primary_calendar_id
    row.last_sync_at = credential.last_sync_at
    row.sync_status = credential.sync_status.value
    row.last_sync_error = credential.last_sync_error


class CredentialStore:
    """Keyed access to the per-user Google credential.

    Example:
        ```python
        store = CredentialStore(db_session)
        credential = await store.get(user_id)
        if credential is None:
            raise NotConnectedError()
        ```
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_row(self, user_id: uuid.UUID) -> GoogleCalendarCredential | None:
        result = await self.db.execute(
            select(GoogleCalendarCredential).where(
                GoogleCalendarCredential.user_id == user_id
            )
        )
        return result.scalar_one_or_none()

    async def get(self, user_id: uuid.UUID) -> Credential | None:
        """Get the credential of a user, or None if not connected."""
        row = await self._get_row(user_id)
        if row is None:
            return None
        return _to_credential(row)

    async def upsert(self, credential: Credential) -> Credential:
        """Create or overwrite the credential of a user."""
        row = await self._get_row(credential.user_id)
        if row is None:
            row = GoogleCalendarCredential(user_id=credential.user_id)
            self.db.add(row)
        _apply_credential(row, credential)
        await self.db.commit()
        return credential

    async def store_tokens(self, credential: Credential) -> bool:
        """Write back refreshed tokens only if the credential still exists.

        Only the token columns are written. Returns False when the user
        disconnected in the meantime; the credential is then not recreated.
        """
        row = await self._get_row(credential.user_id)
        if row is None:
            logger.info(
                f"Credential for user {credential.user_id} was removed during sync"
            )
            return False
        row.access_token_encrypted = encrypt_token(credential.access_token)
        row.refresh_token_encrypted = encrypt_token(credential.refresh_token)
        row.token_expires_at = credential.token_expires_at
        await self.db.commit()
        return True

    async def record_sync(
        self,
        user_id: uuid.UUID,
        status: SyncStatus,
        synced_at: datetime | None = None,
        error: str | None = None,
    ) -> bool:
        """Record the outcome of a sync attempt.

        Touches `sync_status`, `last_sync_error` and, when given,
        `last_sync_at`. Tokens and calendar id stay as stored, so a reconnect
        made in the meantime survives. Returns False when the credential is
        gone.
        """
        row = await self._get_row(user_id)
        if row is None:
            logger.info(f"Credential for user {user_id} was removed during sync")
            return False
        row.sync_status = status.value
        row.last_sync_error = error
        if synced_at is not None:
            row.last_sync_at = synced_at
        await self.db.commit()
        return True

    async def delete(self, user_id: uuid.UUID) -> bool:
        """Delete the credential of a user. Returns False if there was none."""
        row = await self._get_row(user_id)
        if row is None:
            return False
        await self.db.delete(row)
        await self.db.commit()
        return True

    async def list_sync_enabled(self) -> list[Credential]:
        """List credentials eligible for unattended sync."""
        result = await self.db.execute(
            select(GoogleCalendarCredential)
            .where(
                GoogleCalendarCredential.calendar_sync_enabled.is_(True),
                GoogleCalendarCredential.refresh_token_encrypted.is_not(None),
            )
            .order_by(GoogleCalendarCredential.created_at)
        )
        return [_to_credential(row) for row in result.scalars().all()]


class EventStore:
    """Keyed lookups on local calendar events used by the reconciliation."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_external_id(
        self,
        user_id: uuid.UUID,
        external_id: str,
    ) -> CalendarEvent | None:
        result = await self.db.execute(
            select(CalendarEvent).where(
                CalendarEvent.user_id == user_id,
                CalendarEvent.external_id == external_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_unexported(self, user_id: uuid.UUID) -> list[CalendarEvent]:
        """Local events never sent to Google, oldest start first."""
        result = await self.db.execute(
            select(CalendarEvent)
            .where(
                CalendarEvent.user_id == user_id,
                CalendarEvent.external_id.is_(None),
            )
            .order_by(CalendarEvent.start_time)
        )
        return list(result.scalars().all())

    async def count_pending(self, user_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(CalendarEvent)
            .where(
                CalendarEvent.user_id == user_id,
                CalendarEvent.external_id.is_(None),
            )
        )
        return result.scalar_one()

    async def save(self, event: CalendarEvent) -> CalendarEvent:
        """Persist a single event in its own transaction."""
        self.db.add(event)
        await self.db.commit()
        return event
