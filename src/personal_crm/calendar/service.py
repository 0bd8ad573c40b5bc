"""Google Calendar connection and sync service.

Entry point for both the HTTP layer and the scheduler:

- connect / disconnect a user's Google Calendar
- report connection and sync status
- run one sync for a user

## Sync Attempt

1. Take the user's sync lock (manual and scheduled syncs never interleave)
2. Load the credential and refresh the access token if it expired
3. Reconcile (import, then export)
4. Record SYNCED and the sync time, or SYNC_FAILED and the error

A failed sync never deletes the credential; a rejected refresh token means
the user has to reconnect.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from personal_crm.calendar.engine import ReconciliationEngine
from personal_crm.calendar.errors import (
    CalendarSyncError,
    ConnectionFailedError,
    NotConnectedError,
    SyncDisabledError,
)
from personal_crm.calendar.google_calendar import (
    CalendarClientFactory,
    GoogleCalendarClient,
)
from personal_crm.calendar.oauth import GoogleOAuth
from personal_crm.calendar.store import Credential, CredentialStore, EventStore
from personal_crm.database.models import SyncStatus, utcnow

logger = logging.getLogger(__name__)

NOT_CONNECTED = "NOT_CONNECTED"


class UserLockRegistry:
    """One asyncio lock per user, shared by the API and the scheduler.

    A user's lock is dropped once nobody holds or waits for it.
    """

    def __init__(self) -> None:
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        self._users: dict[uuid.UUID, int] = {}

    @asynccontextmanager
    async def lock_for(self, user_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._users[user_id] = self._users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[user_id] -= 1
            if self._users[user_id] == 0:
                del self._users[user_id]
                del self._locks[user_id]


@dataclass
class ConnectionStatus:
    """Connection and sync state of a user's Google Calendar."""

    connected: bool
    sync_enabled: bool
    status: str
    primary_calendar_id: str | None = None
    email: str | None = None
    last_sync_at: datetime | None = None
    pending_changes: int = 0


@dataclass
class SyncReport:
    """Outcome of a successful sync."""

    events_imported: int
    events_exported: int
    conflicts: int
    synced_at: datetime
    message: str = "Sync completed successfully"


class CalendarSyncService:
    """Connect, inspect and sync a user's Google Calendar.

    Example:
        ```python
        service = CalendarSyncService(db_session, get_google_oauth())

        url = service.authorization_url(redirect_uri)
        status = await service.connect(user.id, code, redirect_uri)
        report = await service.trigger_sync(user.id)
        ```
    """

    def __init__(
        self,
        db: AsyncSession,
        oauth: GoogleOAuth,
        client_factory: CalendarClientFactory = GoogleCalendarClient.for_credential,
        locks: UserLockRegistry | None = None,
        engine: ReconciliationEngine | None = None,
    ):
        self.db = db
        self.oauth = oauth
        self.client_factory = client_factory
        self.locks = locks or UserLockRegistry()
        self.credentials = CredentialStore(db)
        self.events = EventStore(db)
        self.engine = engine or ReconciliationEngine(db)

    def authorization_url(self, redirect_uri: str) -> str:
        return self.oauth.authorization_url(redirect_uri)

    async def connect(
        self,
        user_id: uuid.UUID,
        code: str,
        redirect_uri: str,
    ) -> ConnectionStatus:
        """Exchange an authorization code and store the credential.

        Waits for a running sync of the same user to finish first.

        Raises:
            ConnectionFailedError: If any step of the connection fails
        """
        async with self.locks.lock_for(user_id):
            return await self._connect(user_id, code, redirect_uri)

    async def _connect(
        self,
        user_id: uuid.UUID,
        code: str,
        redirect_uri: str,
    ) -> ConnectionStatus:
        try:
            tokens = await self.oauth.exchange_code(code, redirect_uri)
            existing = await self.credentials.get(user_id)

            credential = Credential(
                user_id=user_id,
                access_token=tokens.access_token,
                # Google omits the refresh token on some re-consents
                refresh_token=tokens.refresh_token
                or (existing.refresh_token if existing else None),
                token_expires_at=tokens.expires_at(),
                calendar_sync_enabled=True,
                last_sync_at=existing.last_sync_at if existing else None,
                sync_status=SyncStatus.CONNECTED,
            )

            calendar = await self.client_factory(credential).primary_calendar()
            credential = dataclasses.replace(credential, primary_calendar_id=calendar.id)
            await self.credentials.upsert(credential)
        except Exception as e:
            await self.db.rollback()
            message = e.message if isinstance(e, CalendarSyncError) else str(e)
            logger.error(f"Failed to connect Google Calendar for user {user_id}: {message}")
            raise ConnectionFailedError(
                f"Failed to connect Google Calendar: {message}"
            ) from e

        if credential.refresh_token is None:
            logger.warning(
                f"Google returned no refresh token for user {user_id}; "
                "scheduled sync will skip this account"
            )

        logger.info(f"Google Calendar connected for user {user_id}")

        return ConnectionStatus(
            connected=True,
            sync_enabled=True,
            status=SyncStatus.CONNECTED.value,
            primary_calendar_id=calendar.id,
            email=calendar.summary,
            last_sync_at=credential.last_sync_at,
        )

    async def disconnect(self, user_id: uuid.UUID) -> None:
        """Forget the user's credential. No-op when not connected.

        A sync already running for the user is not interrupted; the
        credential is removed once it finishes.
        """
        async with self.locks.lock_for(user_id):
            credential = await self.credentials.get(user_id)
            if credential is None:
                return
            await self.credentials.delete(user_id)

        logger.info(f"Google Calendar disconnected for user {user_id}")

        token = credential.refresh_token or credential.access_token
        if not await self.oauth.revoke_token(token):
            logger.warning(f"Could not revoke Google token for user {user_id}")

    async def get_status(self, user_id: uuid.UUID) -> ConnectionStatus:
        credential = await self.credentials.get(user_id)
        if credential is None:
            return ConnectionStatus(
                connected=False,
                sync_enabled=False,
                status=NOT_CONNECTED,
            )

        return ConnectionStatus(
            connected=True,
            sync_enabled=credential.calendar_sync_enabled,
            status=credential.sync_status.value,
            primary_calendar_id=credential.primary_calendar_id,
            last_sync_at=credential.last_sync_at,
            pending_changes=await self.events.count_pending(user_id),
        )

    async def trigger_sync(self, user_id: uuid.UUID) -> SyncReport:
        """Run one sync for a user and record its outcome.

        Waits if a sync for the same user is already running.

        Raises:
            NotConnectedError: No credential stored
            SyncDisabledError: Sync switched off for this user
            TokenRefreshError: The user has to reconnect
            ProviderRequestError: Google failed; retried next run
            CalendarSyncError: Any other failure
        """
        async with self.locks.lock_for(user_id):
            credential = await self.credentials.get(user_id)
            if credential is None:
                raise NotConnectedError()
            if not credential.calendar_sync_enabled:
                raise SyncDisabledError()

            try:
                refreshed = await self.oauth.refresh_if_needed(credential)
                if refreshed is not credential:
                    credential = refreshed
                    await self.credentials.store_tokens(credential)

                client = self.client_factory(credential)
                result = await self.engine.reconcile(user_id, credential, client)
            except Exception as e:
                await self._record_failure(user_id, e)
                if isinstance(e, CalendarSyncError):
                    raise
                raise CalendarSyncError(f"Sync failed: {e}") from e

            synced_at = utcnow()
            await self.credentials.record_sync(
                user_id, SyncStatus.SYNCED, synced_at=synced_at
            )

        return SyncReport(
            events_imported=result.imported,
            events_exported=result.exported,
            conflicts=result.conflicts,
            synced_at=synced_at,
        )

    async def sync_user(self, user_id: uuid.UUID) -> SyncStatus | None:
        """Unattended sync of one user.

        Returns the recorded status, or None when the user disconnected or
        switched sync off before the run reached them. Sync failures are
        already logged and recorded, so they are not raised.
        """
        try:
            await self.trigger_sync(user_id)
        except (NotConnectedError, SyncDisabledError) as e:
            logger.info(f"Skipping sync for user {user_id}: {e.message}")
            return None
        except CalendarSyncError:
            return SyncStatus.SYNC_FAILED
        return SyncStatus.SYNCED

    async def _record_failure(self, user_id: uuid.UUID, error: Exception) -> None:
        logger.exception(f"Sync failed for user {user_id}: {error}")
        await self.db.rollback()
        await self.credentials.record_sync(
            user_id, SyncStatus.SYNC_FAILED, error=str(error)
        )
