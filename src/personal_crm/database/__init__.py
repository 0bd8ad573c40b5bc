"""Database module for the personal CRM.

This module provides:
- SQLAlchemy async database connection
- User, Google Calendar credential, and calendar event models
- Encrypted storage for OAuth tokens
"""

from personal_crm.database.connection import (
    close_db,
    create_tables,
    get_db,
    get_session_factory,
    init_db,
)
from personal_crm.database.models import (
    Base,
    CalendarEvent,
    EventStatus,
    EventType,
    GoogleCalendarCredential,
    SyncStatus,
    User,
)

__all__ = [
    # Connection
    "get_db",
    "init_db",
    "close_db",
    "create_tables",
    "get_session_factory",
    # Models
    "Base",
    "User",
    "GoogleCalendarCredential",
    "CalendarEvent",
    "SyncStatus",
    "EventType",
    "EventStatus",
]
