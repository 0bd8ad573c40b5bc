"""FastAPI application and routes.

## API Structure

- /api/calendar/google - Google Calendar connection and sync
- /health - Liveness check

## Authentication

Endpoints identify the user via the signed session cookie issued at login.
"""

from personal_crm.api.app import create_app

__all__ = ["create_app"]
