"""Tests for the Google Calendar API routes."""

import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from personal_crm.api import create_app
from personal_crm.api.routes.google_calendar import get_sync_service
from personal_crm.auth.dependencies import get_current_user
from personal_crm.calendar.errors import (
    ConnectionFailedError,
    NotConnectedError,
    SyncDisabledError,
    TokenRefreshError,
)
from personal_crm.calendar.service import ConnectionStatus, SyncReport
from personal_crm.database.connection import get_db_session

USER = SimpleNamespace(id=uuid.uuid4(), email="ada@example.com")
SYNCED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
PREFIX = "/api/calendar/google"


class FakeSyncService:
    def __init__(self):
        self.error: Exception | None = None
        self.calls: list[tuple] = []

    def _maybe_fail(self):
        if self.error:
            raise self.error

    def authorization_url(self, redirect_uri):
        self.calls.append(("authorization_url", redirect_uri))
        return f"https://accounts.google.com/o/oauth2/v2/auth?redirect_uri={redirect_uri}"

    async def connect(self, user_id, code, redirect_uri):
        self.calls.append(("connect", user_id, code, redirect_uri))
        self._maybe_fail()
        return ConnectionStatus(
            connected=True,
            sync_enabled=True,
            status="CONNECTED",
            primary_calendar_id="ada@example.com",
            email="ada@example.com",
        )

    async def disconnect(self, user_id):
        self.calls.append(("disconnect", user_id))

    async def get_status(self, user_id):
        self._maybe_fail()
        return ConnectionStatus(
            connected=True,
            sync_enabled=True,
            status="SYNCED",
            primary_calendar_id="ada@example.com",
            last_sync_at=SYNCED_AT,
            pending_changes=3,
        )

    async def trigger_sync(self, user_id):
        self.calls.append(("trigger_sync", user_id))
        self._maybe_fail()
        return SyncReport(
            events_imported=2,
            events_exported=1,
            conflicts=0,
            synced_at=SYNCED_AT,
        )


@pytest.fixture
def sync_service() -> FakeSyncService:
    return FakeSyncService()


@pytest.fixture
def client(sync_service) -> TestClient:
    app = create_app()
    app.dependency_overrides[get_current_user] = lambda: USER
    app.dependency_overrides[get_sync_service] = lambda: sync_service
    return TestClient(app)


class TestAuthUrl:
    def test_explicit_redirect(self, client, sync_service):
        response = client.get(f"{PREFIX}/auth-url", params={"redirectUri": "http://app/cb"})

        assert response.status_code == 200
        assert response.json()["authUrl"].endswith("redirect_uri=http://app/cb")

    def test_default_redirect(self, client, sync_service):
        client.get(f"{PREFIX}/auth-url")
        assert sync_service.calls == [
            ("authorization_url", "http://localhost:3000/settings?tab=integrations")
        ]


class TestConnect:
    def test_connect(self, client, sync_service):
        response = client.post(
            f"{PREFIX}/connect", json={"code": "auth-code", "redirectUri": "http://app/cb"}
        )

        assert response.status_code == 200
        assert response.json() == {
            "connected": True,
            "syncEnabled": True,
            "primaryCalendarId": "ada@example.com",
            "email": "ada@example.com",
            "status": "CONNECTED",
        }
        assert sync_service.calls == [("connect", USER.id, "auth-code", "http://app/cb")]

    def test_connect_failure(self, client, sync_service):
        sync_service.error = ConnectionFailedError(
            "Failed to connect Google Calendar: invalid_grant"
        )

        response = client.post(f"{PREFIX}/connect", json={"code": "bad"})

        assert response.status_code == 502
        assert "invalid_grant" in response.json()["detail"]

    def test_code_is_required(self, client):
        response = client.post(f"{PREFIX}/connect", json={})
        assert response.status_code == 422


class TestStatusAndSync:
    def test_status(self, client):
        response = client.get(f"{PREFIX}/status")

        assert response.status_code == 200
        body = response.json()
        assert body["connected"] is True
        assert body["pendingChanges"] == 3
        assert body["status"] == "SYNCED"
        assert body["lastSyncAt"].startswith("2026-03-01T12:00:00")

    def test_sync(self, client):
        response = client.post(f"{PREFIX}/sync")

        assert response.status_code == 200
        body = response.json()
        assert body["eventsImported"] == 2
        assert body["eventsExported"] == 1
        assert body["conflicts"] == 0
        assert body["message"] == "Sync completed successfully"

    @pytest.mark.parametrize(
        "error, status_code",
        [
            (NotConnectedError(), 404),
            (SyncDisabledError(), 409),
            (TokenRefreshError("Token refresh failed: invalid_grant"), 403),
        ],
    )
    def test_sync_errors(self, client, sync_service, error, status_code):
        sync_service.error = error

        response = client.post(f"{PREFIX}/sync")

        assert response.status_code == status_code
        assert response.json()["detail"] == error.message

    def test_disconnect(self, client, sync_service):
        response = client.post(f"{PREFIX}/disconnect")

        assert response.status_code == 204
        assert sync_service.calls == [("disconnect", USER.id)]


class TestAuthentication:
    def test_missing_session_is_rejected(self, sync_service):
        async def no_db():
            yield None

        app = create_app()
        app.dependency_overrides[get_db_session] = no_db
        app.dependency_overrides[get_sync_service] = lambda: sync_service

        response = TestClient(app).get(f"{PREFIX}/status")

        assert response.status_code == 401

    def test_health(self, client):
        response = client.get("/health")
        assert response.json()["status"] == "healthy"
