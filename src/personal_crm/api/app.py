"""FastAPI application factory.

Creates and configures the FastAPI application with all routes and middleware.

## Usage

```python
from personal_crm.api import create_app

app = create_app()

# Run with uvicorn
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
```

## Configuration

The app is configured via environment variables. See `personal_crm.config`
for available settings. The calendar sync scheduler only starts when
`CALENDAR_SYNC_ENABLED=true`.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from personal_crm.calendar.errors import CalendarSyncError
from personal_crm.calendar.oauth import get_google_oauth
from personal_crm.calendar.scheduler import SyncScheduler
from personal_crm.calendar.service import UserLockRegistry
from personal_crm.config import get_settings
from personal_crm.database.connection import close_db, get_session_factory, init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    - Initialize database connection
    - Start the calendar sync scheduler (shares sync locks with the routes)
    - Stop both on shutdown
    """
    settings = get_settings()

    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    await init_db()

    locks = UserLockRegistry()
    scheduler = SyncScheduler(get_session_factory(), get_google_oauth(), locks=locks)
    app.state.sync_locks = locks
    app.state.sync_scheduler = scheduler
    scheduler.start()

    yield

    logger.info("Shutting down")
    scheduler.shutdown()
    await close_db()


async def calendar_sync_error_handler(
    request: Request, exc: CalendarSyncError
) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Personal CRM with two-way Google Calendar sync",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
        allow_headers=["*"],
    )

    app.add_exception_handler(CalendarSyncError, calendar_sync_error_handler)

    from personal_crm.api.routes import google_calendar

    app.include_router(
        google_calendar.router,
        prefix="/api/calendar/google",
        tags=["Google Calendar"],
    )

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": settings.app_version}

    return app
