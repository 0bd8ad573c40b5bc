"""Exceptions raised by the Google Calendar sync.

Every exception carries the HTTP status the API layer answers with, so route
handlers can let them propagate.
"""

from __future__ import annotations


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotConnectedError(CalendarSyncError):
    """The user has no stored Google credential."""

    status_code = 404

    def __init__(self, message: str = "Google Calendar not connected"):
        super().__init__(message)


class SyncDisabledError(CalendarSyncError):
    """Calendar sync is switched off for this user."""

    status_code = 409

    def __init__(self, message: str = "Calendar sync is disabled"):
        super().__init__(message)


class OAuthExchangeError(CalendarSyncError):
    """Google rejected the authorization code exchange."""

    status_code = 400


class ConnectionFailedError(CalendarSyncError):
    """Connecting the user's Google Calendar failed."""

    status_code = 502


class TokenRefreshError(CalendarSyncError):
    """The refresh token is missing or was rejected.

    The user has to re-authorize; the stored credential is kept.
    """

    status_code = 403


class ProviderRequestError(CalendarSyncError):
    """A Google API call failed (network, quota, timeout, server error).

    Retried by the next scheduled run.
    """

    status_code = 502

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class TranslationError(CalendarSyncError):
    """A Google event could not be translated into a local event."""

    status_code = 422

    def __init__(self, message: str, external_id: str | None = None):
        super().__init__(message)
        self.external_id = external_id
