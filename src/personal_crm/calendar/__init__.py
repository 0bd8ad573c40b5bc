"""Google Calendar two-way sync.

Keeps a user's local CRM events and their primary Google calendar in step.

## Layers

- `store`: credentials (encrypted at rest) and local event lookups
- `oauth`: Google OAuth code exchange, token refresh and revocation
- `google_calendar`: Google Calendar API v3 client
- `translator`: local event <-> Google event conversion
- `engine`: one import-then-export reconciliation pass
- `service`: connect, disconnect, status and sync of one user
- `scheduler`: periodic sync of every connected user

## Google Calendar API

Uses the Google Calendar API v3:
- https://developers.google.com/calendar/api/v3/reference
"""

from personal_crm.calendar.engine import ReconcileResult, ReconciliationEngine, SyncWindow
from personal_crm.calendar.errors import (
    CalendarSyncError,
    ConnectionFailedError,
    NotConnectedError,
    OAuthExchangeError,
    ProviderRequestError,
    SyncDisabledError,
    TokenRefreshError,
    TranslationError,
)
from personal_crm.calendar.google_calendar import (
    CalendarClient,
    CalendarInfo,
    ExternalEvent,
    GoogleCalendarClient,
    InsertedEvent,
)
from personal_crm.calendar.oauth import GoogleOAuth, OAuthTokens, get_google_oauth
from personal_crm.calendar.scheduler import SchedulerRunReport, SyncScheduler
from personal_crm.calendar.service import (
    CalendarSyncService,
    ConnectionStatus,
    SyncReport,
    UserLockRegistry,
)
from personal_crm.calendar.store import Credential, CredentialStore, EventStore

__all__ = [
    "CalendarClient",
    "CalendarInfo",
    "ExternalEvent",
    "GoogleCalendarClient",
    "InsertedEvent",
    "GoogleOAuth",
    "OAuthTokens",
    "get_google_oauth",
    "Credential",
    "CredentialStore",
    "EventStore",
    "ReconciliationEngine",
    "ReconcileResult",
    "SyncWindow",
    "CalendarSyncService",
    "ConnectionStatus",
    "SyncReport",
    "UserLockRegistry",
    "SyncScheduler",
    "SchedulerRunReport",
    "CalendarSyncError",
    "NotConnectedError",
    "SyncDisabledError",
    "OAuthExchangeError",
    "ConnectionFailedError",
    "TokenRefreshError",
    "ProviderRequestError",
    "TranslationError",
]
