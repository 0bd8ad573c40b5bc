"""Tests for the scheduled calendar sync."""

import asyncio
from datetime import timedelta

import pytest

from conftest import FakeCalendarClient, FakeOAuth, connect_user, create_user
from personal_crm.calendar.errors import TokenRefreshError
from personal_crm.calendar.scheduler import JOB_ID, SchedulerState, SyncScheduler
from personal_crm.calendar.store import CredentialStore
from personal_crm.database.models import SyncStatus


def make_scheduler(session_factory, oauth=None, **kwargs) -> SyncScheduler:
    kwargs.setdefault("enabled", True)
    kwargs.setdefault("max_concurrency", 1)
    return SyncScheduler(
        session_factory,
        oauth or FakeOAuth(),
        client_factory=lambda credential: FakeCalendarClient(),
        **kwargs,
    )


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_one_failing_user_does_not_stop_the_others(self, db, session_factory):
        """Users A, B, C; B's token refresh is rejected."""
        a = await create_user(db, "a@example.com")
        b = await create_user(db, "b@example.com")
        c = await create_user(db, "c@example.com")
        a_id, b_id, c_id = a.id, b.id, c.id
        await connect_user(db, a)
        await connect_user(db, b, expires_in=timedelta(minutes=-1))
        await connect_user(db, c)

        oauth = FakeOAuth()
        oauth.refresh_error = TokenRefreshError("Token refresh failed: invalid_grant")

        report = await make_scheduler(session_factory, oauth).run_once()

        assert report.statuses == {
            a_id: SyncStatus.SYNCED,
            b_id: SyncStatus.SYNC_FAILED,
            c_id: SyncStatus.SYNCED,
        }
        assert report.finished_at is not None

        async with session_factory() as session:
            store = CredentialStore(session)
            assert (await store.get(a_id)).sync_status == SyncStatus.SYNCED
            assert (await store.get(c_id)).sync_status == SyncStatus.SYNCED
            failed = await store.get(b_id)
            assert failed.sync_status == SyncStatus.SYNC_FAILED
            assert "invalid_grant" in failed.last_sync_error

    @pytest.mark.asyncio
    async def test_only_renewable_credentials_are_synced(self, db, session_factory):
        renewable = await create_user(db, "renewable@example.com")
        no_refresh = await create_user(db, "norefresh@example.com")
        renewable_id = renewable.id
        await connect_user(db, renewable)
        await connect_user(db, no_refresh, refresh_token=None)

        report = await make_scheduler(session_factory).run_once()

        assert list(report.statuses) == [renewable_id]

    @pytest.mark.asyncio
    async def test_disabled_scheduler_is_idle(self, db, session_factory, user):
        await connect_user(db, user)

        report = await make_scheduler(session_factory, enabled=False).run_once()

        assert report.statuses == {}

    @pytest.mark.asyncio
    async def test_force_runs_disabled_scheduler(self, db, session_factory, user):
        user_id = user.id
        await connect_user(db, user)

        report = await make_scheduler(session_factory, enabled=False).run_once(force=True)

        assert report.statuses == {user_id: SyncStatus.SYNCED}

    @pytest.mark.asyncio
    async def test_no_eligible_users(self, session_factory):
        scheduler = make_scheduler(session_factory)
        report = await scheduler.run_once()
        assert report.statuses == {}
        assert scheduler.state == SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(self, db, session_factory, user):
        user_id = user.id
        await connect_user(db, user)

        def broken_factory(credential):
            raise RuntimeError("cannot build client")

        scheduler = SyncScheduler(
            session_factory,
            FakeOAuth(),
            client_factory=broken_factory,
            enabled=True,
            max_concurrency=1,
        )
        report = await scheduler.run_once()

        assert report.statuses == {user_id: SyncStatus.SYNC_FAILED}
        assert report.failed == [user_id]


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_parallel_users_are_bounded(self, db, session_factory):
        for i in range(5):
            await connect_user(db, await create_user(db, f"user{i}@example.com"))

        scheduler = make_scheduler(session_factory, max_concurrency=2)
        running = 0
        peak = 0
        states = []

        async def slow_sync(user_id):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            states.append(scheduler.state)
            await asyncio.sleep(0.01)
            running -= 1
            return SyncStatus.SYNCED

        scheduler._sync_one = slow_sync
        report = await scheduler.run_once()

        assert len(report.synced) == 5
        assert peak == 2
        assert set(states) == {SchedulerState.RUNNING}
        assert scheduler.state == SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, db, session_factory, user):
        await connect_user(db, user)
        scheduler = make_scheduler(session_factory)
        release = asyncio.Event()
        calls = []

        async def blocked_sync(user_id):
            calls.append(user_id)
            await release.wait()
            return SyncStatus.SYNCED

        scheduler._sync_one = blocked_sync
        first = asyncio.create_task(scheduler.run_once())
        while not calls:
            await asyncio.sleep(0.01)

        second = await scheduler.run_once(force=True)
        release.set()
        report = await first

        assert second.statuses == {}
        assert len(report.synced) == 1
        assert len(calls) == 1
        assert scheduler.state == SchedulerState.IDLE


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_registers_interval_job(self, session_factory):
        scheduler = make_scheduler(session_factory, interval_minutes=15)

        scheduler.start()
        try:
            job = scheduler._scheduler.get_job(JOB_ID)
            assert job is not None
            assert job.max_instances == 1
            assert job.coalesce is True
            assert job.trigger.interval == timedelta(minutes=15)
        finally:
            scheduler.shutdown()

        assert not scheduler.is_started

    def test_disabled_scheduler_does_not_start(self):
        scheduler = make_scheduler(None, enabled=False)
        scheduler.start()
        assert not scheduler.is_started
