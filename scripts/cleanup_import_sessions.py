#!/usr/bin/env python3
"""Delete expired import sessions and their error logs.

Sessions still marked in-progress are kept even when expired.

Usage:
  PYTHONPATH=./src python scripts/cleanup_import_sessions.py [--older-than-hours N]
"""
from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone

from Tagstash.config import load_settings
from Tagstash.logging import setup_logging
from Tagstash.session_tracker import SessionTracker


async def main(extra_hours: int) -> int:
    settings = load_settings()
    setup_logging(settings)
    tracker = SessionTracker(expiry_hours=settings.import_session_expiry_hours)
    now = datetime.now(timezone.utc) - timedelta(hours=extra_hours)
    deleted = await tracker.cleanup_expired(now)
    print(f"deleted={deleted}")
    return 0


if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Delete expired import sessions")
    ap.add_argument(
        "--older-than-hours",
        type=int,
        default=0,
        help="Only delete sessions that expired at least this many hours ago",
    )
    args = ap.parse_args()
    raise SystemExit(asyncio.run(main(args.older_than_hours)))
