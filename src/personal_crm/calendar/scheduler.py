"""Scheduled Google Calendar sync for all connected users.

Runs every `CALENDAR_SYNC_INTERVAL_MINUTES` (15 by default) when
`CALENDAR_SYNC_ENABLED` is set.

## Run

1. List credentials with sync enabled and a refresh token
2. Sync each user in its own unit of work (own DB session), at most
   `CALENDAR_SYNC_MAX_CONCURRENCY` at a time
3. Record per-user outcome; one user's failure never affects another

A run never overlaps the previous one (`max_instances=1`), and missed runs
collapse into one (`coalesce=True`).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from personal_crm.calendar.google_calendar import (
    CalendarClientFactory,
    GoogleCalendarClient,
)
from personal_crm.calendar.oauth import GoogleOAuth
from personal_crm.calendar.service import CalendarSyncService, UserLockRegistry
from personal_crm.calendar.store import CredentialStore
from personal_crm.config import get_settings
from personal_crm.database.models import SyncStatus, utcnow

logger = logging.getLogger(__name__)

JOB_ID = "google_calendar_sync"


class SchedulerState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"


@dataclass
class SchedulerRunReport:
    """Per-user outcome of one scheduler run.

    A user mapped to None was skipped (disconnected or disabled mid-run).
    """

    started_at: datetime
    finished_at: datetime | None = None
    statuses: dict[uuid.UUID, SyncStatus | None] = field(default_factory=dict)

    @property
    def synced(self) -> list[uuid.UUID]:
        return [u for u, s in self.statuses.items() if s == SyncStatus.SYNCED]

    @property
    def failed(self) -> list[uuid.UUID]:
        return [u for u, s in self.statuses.items() if s == SyncStatus.SYNC_FAILED]


class SyncScheduler:
    """Periodic sync of every eligible user.

    Example:
        ```python
        scheduler = SyncScheduler(get_session_factory(), get_google_oauth(), locks=locks)
        scheduler.start()
        ...
        scheduler.shutdown()

        # On demand
        report = await scheduler.run_once()
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        oauth: GoogleOAuth,
        client_factory: CalendarClientFactory = GoogleCalendarClient.for_credential,
        locks: UserLockRegistry | None = None,
        enabled: bool | None = None,
        interval_minutes: int | None = None,
        max_concurrency: int | None = None,
    ):
        settings = get_settings()

        self.session_factory = session_factory
        self.oauth = oauth
        self.client_factory = client_factory
        self.locks = locks or UserLockRegistry()
        self.enabled = settings.calendar_sync_enabled if enabled is None else enabled
        self.interval_minutes = (
            interval_minutes or settings.calendar_sync_interval_minutes
        )
        self.max_concurrency = max_concurrency or settings.calendar_sync_max_concurrency
        self.state = SchedulerState.IDLE
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def is_started(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        """Start the interval job. Does nothing when sync is disabled."""
        if not self.enabled:
            logger.info("Calendar sync scheduler disabled (CALENDAR_SYNC_ENABLED=false)")
            return
        if self._scheduler is not None:
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_once,
            "interval",
            minutes=self.interval_minutes,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            f"Calendar sync scheduler started (every {self.interval_minutes} min, "
            f"{self.max_concurrency} users at a time)"
        )

    def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Calendar sync scheduler stopped")

    async def run_once(self, force: bool = False) -> SchedulerRunReport:
        """Sync every eligible user once.

        Returns an empty report when another run is still in progress.

        Args:
            force: Run even when scheduled sync is disabled

        Returns:
            SchedulerRunReport with each user's terminal status
        """
        report = SchedulerRunReport(started_at=utcnow())

        if not (self.enabled or force):
            logger.debug("Calendar sync disabled, skipping run")
            report.finished_at = utcnow()
            return report

        if self.state == SchedulerState.RUNNING:
            logger.info("Calendar sync run already in progress, skipping")
            report.finished_at = utcnow()
            return report

        self.state = SchedulerState.RUNNING
        try:
            report.statuses = await self._sync_all()
        finally:
            self.state = SchedulerState.IDLE
        report.finished_at = utcnow()

        if not report.statuses:
            logger.debug("No calendars to sync")
            return report

        logger.info(
            f"Calendar sync finished: {len(report.synced)} synced, "
            f"{len(report.failed)} failed"
        )
        return report

    async def _sync_all(self) -> dict[uuid.UUID, SyncStatus | None]:
        async with self.session_factory() as session:
            credentials = await CredentialStore(session).list_sync_enabled()
        if not credentials:
            return {}

        logger.info(f"Starting calendar sync for {len(credentials)} users")
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def unit(user_id: uuid.UUID) -> SyncStatus | None:
            async with semaphore:
                return await self._sync_one(user_id)

        user_ids = [credential.user_id for credential in credentials]
        statuses = await asyncio.gather(*(unit(user_id) for user_id in user_ids))
        return dict(zip(user_ids, statuses))

    async def _sync_one(self, user_id: uuid.UUID) -> SyncStatus | None:
        """Sync one user in its own session. Never raises."""
        try:
            async with self.session_factory() as session:
                service = CalendarSyncService(
                    session,
                    self.oauth,
                    client_factory=self.client_factory,
                    locks=self.locks,
                )
                return await service.sync_user(user_id)
        except Exception:
            logger.exception(f"Unexpected error syncing calendar for user {user_id}")
            return SyncStatus.SYNC_FAILED
