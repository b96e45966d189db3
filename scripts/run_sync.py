#!/usr/bin/env python3
"""Run one sync pass from the command line, e.g. from cron."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import date

from booking_sync.core.config import settings
from booking_sync.core.database import close_db, init_db, session_scope
from booking_sync.core.dependencies import build_upstream_client
from booking_sync.models.sync_log import SyncType
from booking_sync.services.sync_service import SyncService

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Synchronize upstream bookings into the local store")
    parser.add_argument("--full", action="store_true", help="sync the full horizon")
    parser.add_argument("--start", type=date.fromisoformat, help="first day (YYYY-MM-DD)")
    parser.add_argument("--end", type=date.fromisoformat, help="last day (YYYY-MM-DD)")
    parser.add_argument("--check", action="store_true", help="only test the upstream connection")
    parser.add_argument("--triggered-by", default="cron", help="name recorded on the run log")
    args = parser.parse_args(argv)
    if args.start and args.end and args.start > args.end:
        parser.error("--start must not be after --end")
    return args


async def run(args: argparse.Namespace) -> int:
    await init_db()
    try:
        async with build_upstream_client() as client:
            if args.check:
                outcome = await client.test_connection()
                print(json.dumps(outcome, indent=2))
                return 0 if outcome["success"] else 1

            async with session_scope() as db:
                service = SyncService(db, client)
                if args.full:
                    result = await service.full_sync(triggered_by=args.triggered_by)
                else:
                    result = await service.sync(
                        start_date=args.start,
                        end_date=args.end,
                        sync_type=SyncType.AUTO.value,
                        triggered_by=args.triggered_by,
                    )

            print(result.model_dump_json(indent=2))
            return 0 if result.success else 1
    finally:
        await close_db()


def main(argv=None) -> int:
    args = parse_args(argv)
    if not settings.upstream_configured:
        logger.error("Upstream credentials are not configured")
        return 2
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
