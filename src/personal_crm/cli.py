"""Command-line interface for the personal CRM backend."""

import argparse
import asyncio
import logging
import sys
import uuid

from personal_crm.config import get_settings


def configure_logging() -> None:
    settings = get_settings()
    level = logging.DEBUG if settings.debug else settings.log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "personal_crm.api:create_app",
        factory=True,
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=args.reload,
    )
    return 0


async def _init_db() -> None:
    from personal_crm.database.connection import close_db, create_tables, init_db

    await init_db()
    try:
        await create_tables()
    finally:
        await close_db()


async def _sync(user_id: uuid.UUID | None) -> int:
    from personal_crm.calendar.oauth import get_google_oauth
    from personal_crm.calendar.scheduler import SyncScheduler
    from personal_crm.calendar.service import CalendarSyncService
    from personal_crm.database.connection import (
        close_db,
        get_session_factory,
        init_db,
    )
    from personal_crm.database.models import SyncStatus

    await init_db()
    try:
        if user_id is not None:
            async with get_session_factory()() as session:
                service = CalendarSyncService(session, get_google_oauth())
                status = await service.sync_user(user_id)
            print(f"{user_id}: {status.value if status else 'skipped'}")
            return 0 if status == SyncStatus.SYNCED else 1

        scheduler = SyncScheduler(get_session_factory(), get_google_oauth())
        report = await scheduler.run_once(force=True)
        for synced_user, status in report.statuses.items():
            print(f"{synced_user}: {status.value if status else 'skipped'}")
        return 1 if report.failed else 0
    finally:
        await close_db()


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Personal CRM - contacts and Google Calendar sync"
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--host", help="Bind address (default HOST)")
    serve_parser.add_argument("--port", type=int, help="Port (default PORT)")
    serve_parser.add_argument(
        "--reload", action="store_true", help="Reload on code changes"
    )

    subparsers.add_parser("init-db", help="Create database tables")

    sync_parser = subparsers.add_parser(
        "sync", help="Run one calendar sync for all users or a single user"
    )
    sync_parser.add_argument(
        "--user",
        type=uuid.UUID,
        help="Only sync this user ID",
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 0

    configure_logging()

    if args.command == "serve":
        return serve(args)
    if args.command == "init-db":
        asyncio.run(_init_db())
        print("Database tables created.")
        return 0
    if args.command == "sync":
        return asyncio.run(_sync(args.user))

    return 0


if __name__ == "__main__":
    sys.exit(main())
