#!/usr/bin/env python3
"""
Run one hold expiry sweep outside the API process.

Usage:
    python scripts/sweep_holds.py
    python scripts/sweep_holds.py --no-push

Useful from cron when the API runs with SWEEPER_ENABLED=false.
"""

import argparse
import asyncio
import json
import sys

import dotenv

dotenv.load_dotenv()

from clinicflow.database import AsyncSessionLocal, engine  # noqa: E402
from clinicflow.middleware.logging import configure_logging  # noqa: E402
from clinicflow.services.hold_sweeper import HoldExpirySweeper  # noqa: E402
from clinicflow.services.notification_service import LogNotifier, PushNotifier  # noqa: E402


async def sweep(push: bool) -> dict:
    """Run a single cycle and return its statistics."""
    notifier = PushNotifier(AsyncSessionLocal) if push else LogNotifier()
    sweeper = HoldExpirySweeper(AsyncSessionLocal, notifier=notifier)
    try:
        return await sweeper.run_once()
    finally:
        await engine.dispose()


def main() -> int:
    """Parse arguments and run the sweep."""
    parser = argparse.ArgumentParser(description="Expire lapsed payment holds once")
    parser.add_argument(
        "--no-push",
        action="store_true",
        help="Log notifications instead of sending them",
    )
    args = parser.parse_args()

    configure_logging()
    stats = asyncio.run(sweep(push=not args.no_push))
    print(json.dumps(stats, indent=2))
    return 1 if stats["errors"] else 0


if __name__ == "__main__":
    sys.exit(main())
