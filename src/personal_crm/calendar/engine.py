"""Two-way reconciliation between local events and Google Calendar.

## Reconciliation Pass

1. Import: list Google events in the sync window and, per event,
   a. create a local event if none carries its Google id, or
   b. overwrite the linked local event when Google's copy is strictly newer
      (last-writer-wins, no field-level merge)
2. Export: push every local event without a Google id and record the id
   Google assigns. The missing id is the only thing preventing a second
   export, so once stored the event is never pushed again.

Import always finishes before export starts.

## Window

`[now - 30 days, now + 90 days]` by default. An event is in the window when
it starts at or before the window end and ends at or after the window start.
Google's `timeMax` is exclusive, so it is queried one second past the window
end and the inclusive bound is applied here.

## Failure Handling

Every event is committed on its own, so a failure keeps what was already
done. A Google event that cannot be translated is skipped. Any other error
aborts the pass and propagates to the caller.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from personal_crm.calendar.errors import TranslationError
from personal_crm.calendar.google_calendar import CalendarClient, ExternalEvent
from personal_crm.calendar.store import Credential, EventStore
from personal_crm.calendar.translator import (
    apply_external,
    event_span,
    from_external,
    to_external,
    user_zone,
)
from personal_crm.config import get_settings
from personal_crm.database.models import CalendarEvent, User, as_utc, utcnow

logger = logging.getLogger(__name__)

# Google's timeMax is exclusive; query slightly past the inclusive window end
PROVIDER_TIME_MAX_PADDING = timedelta(seconds=1)


@dataclass(frozen=True)
class SyncWindow:
    """Time range covered by one reconciliation pass."""

    start: datetime
    end: datetime

    @classmethod
    def around(cls, now: datetime, past_days: int, future_days: int) -> SyncWindow:
        return cls(
            start=now - timedelta(days=past_days),
            end=now + timedelta(days=future_days),
        )

    def contains(self, start: datetime, end: datetime) -> bool:
        return start <= self.end and end >= self.start


@dataclass
class ReconcileResult:
    """Counters of one reconciliation pass.

    `conflicts` is always 0: last-writer-wins resolves every collision
    silently. It is kept because the sync API reports it.
    """

    imported: int = 0
    exported: int = 0
    conflicts: int = 0
    updated: int = 0
    skipped: int = 0


class ReconciliationEngine:
    """Reconciles one user's local events with their Google calendar.

    Example:
        ```python
        engine = ReconciliationEngine(db_session)
        client = GoogleCalendarClient(credential.access_token)
        result = await engine.reconcile(user_id, credential, client)
        ```
    """

    def __init__(
        self,
        db: AsyncSession,
        past_days: int | None = None,
        future_days: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self.db = db
        self.events = EventStore(db)
        self.past_days = (
            settings.calendar_sync_past_days if past_days is None else past_days
        )
        self.future_days = (
            settings.calendar_sync_future_days if future_days is None else future_days
        )
        self.clock = clock

    def window(self) -> SyncWindow:
        return SyncWindow.around(self.clock(), self.past_days, self.future_days)

    async def _user_zone(self, user_id: uuid.UUID) -> ZoneInfo:
        user = await self.db.get(User, user_id)
        return user_zone(user.timezone if user else None)

    async def reconcile(
        self,
        user_id: uuid.UUID,
        credential: Credential,
        client: CalendarClient,
    ) -> ReconcileResult:
        """Run one import-then-export pass for a user.

        Args:
            user_id: Owner of the local events
            credential: The user's (already refreshed) credential
            client: Calendar client authorized with that credential

        Returns:
            ReconcileResult with pass counters

        Raises:
            ProviderRequestError: If a Google call fails; events handled
                before the failure stay committed
        """
        if credential.user_id != user_id:
            raise ValueError("Credential belongs to a different user")

        calendar_id = credential.primary_calendar_id or "primary"
        tz = await self._user_zone(user_id)
        window = self.window()
        result = ReconcileResult()

        await self._import_events(user_id, calendar_id, client, window, tz, result)
        await self._export_events(user_id, calendar_id, client, tz, result)

        logger.info(
            f"Reconciled calendar for user {user_id}: "
            f"{result.imported} imported, {result.updated} updated, "
            f"{result.exported} exported, {result.skipped} skipped"
        )
        return result

    async def _import_events(
        self,
        user_id: uuid.UUID,
        calendar_id: str,
        client: CalendarClient,
        window: SyncWindow,
        tz: ZoneInfo,
        result: ReconcileResult,
    ) -> None:
        external_events = await client.list_events(
            calendar_id,
            window.start,
            window.end + PROVIDER_TIME_MAX_PADDING,
        )

        for external in external_events:
            if external.cancelled:
                continue
            try:
                start, end = event_span(external, tz)
                if not window.contains(start, end):
                    continue
                await self._import_event(user_id, calendar_id, external, tz, result)
            except TranslationError as e:
                logger.warning(f"Skipping Google event {external.id}: {e.message}")
                result.skipped += 1

    async def _import_event(
        self,
        user_id: uuid.UUID,
        calendar_id: str,
        external: ExternalEvent,
        tz: ZoneInfo,
        result: ReconcileResult,
    ) -> None:
        local = await self.events.find_by_external_id(user_id, external.id)

        if local is None:
            await self.events.save(from_external(external, user_id, calendar_id, tz))
            result.imported += 1
            return

        if self._google_is_newer(external, local):
            apply_external(local, external, tz)
            await self.events.save(local)
            result.updated += 1

    @staticmethod
    def _google_is_newer(external: ExternalEvent, local: CalendarEvent) -> bool:
        """Last-writer-wins: Google wins only when strictly newer."""
        if external.updated is None or local.updated_at is None:
            return False
        return as_utc(external.updated) > as_utc(local.updated_at)

    async def _export_events(
        self,
        user_id: uuid.UUID,
        calendar_id: str,
        client: CalendarClient,
        tz: ZoneInfo,
        result: ReconcileResult,
    ) -> None:
        for event in await self.events.list_unexported(user_id):
            created = await client.insert_event(calendar_id, to_external(event, tz))

            event.external_id = created.external_id
            event.external_calendar_id = calendar_id
            if created.conferencing_link:
                event.meet_link = created.conferencing_link

            await self.events.save(event)
            result.exported += 1
