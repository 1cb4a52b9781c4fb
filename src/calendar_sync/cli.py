"""Command-line interface for the calendar sync service."""

import argparse
import asyncio
import logging
import sys

from calendar_sync import __version__
from calendar_sync.config import get_settings

logger = logging.getLogger("calendar_sync.cli")


async def _init_db() -> None:
    from calendar_sync.database.connection import close_db, create_tables, init_db

    await init_db()
    try:
        await create_tables()
    finally:
        await close_db()


async def _renew_webhooks() -> int:
    from calendar_sync.database.connection import close_db, init_db
    from calendar_sync.webhooks.scheduler import WebhookRenewalScheduler

    await init_db()
    try:
        return await WebhookRenewalScheduler().run_once()
    finally:
        await close_db()


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Calendar Sync - Mirror Google Calendar with push notifications"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", help="Bind address (default: HOST setting)")
    serve_parser.add_argument(
        "--port", type=int, help="Bind port (default: PORT setting)"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Reload on code changes"
    )

    subparsers.add_parser("init-db", help="Create database tables")

    subparsers.add_parser(
        "renew-webhooks", help="Renew push channels that are about to expire"
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        import uvicorn

        uvicorn.run(
            "calendar_sync.api:create_app",
            factory=True,
            host=args.host or settings.host,
            port=args.port or settings.port,
            reload=args.reload,
            log_level=settings.log_level.lower(),
        )
        return 0

    if args.command == "init-db":
        asyncio.run(_init_db())
        logger.info("Database tables created")
        return 0

    if args.command == "renew-webhooks":
        renewed = asyncio.run(_renew_webhooks())
        print(f"Renewed {renewed} webhook channel(s)")
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
