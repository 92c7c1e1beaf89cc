#!/usr/bin/env python3
"""Periodic sweep that fails payment orders abandoned in ``created``.

Orders older than ``ORDER_EXPIRY_HOURS`` (or ``--hours``) are moved to
``failed`` through the same conditional update the API uses, so an order
that completes concurrently is never touched.  Each expiry is audit-logged.

Usage:
    DATABASE_URL=postgresql+asyncpg://... python scripts/expire_orders.py [--hours N]

Exit codes:
    0 -- always (informational-only script)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import timedelta

from photostudio.config import settings
from photostudio.database import async_session_factory, engine
from photostudio.services.audit_logger import audit_logger
from photostudio.services.payment_service import expire_stale_orders

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
log = logging.getLogger(__name__)


async def run(hours: int) -> int:
    try:
        async with async_session_factory() as db:
            expired = await expire_stale_orders(db, timedelta(hours=hours), audit_logger)
    finally:
        await engine.dispose()
    for payment_id in expired:
        log.info("Expired order %s", payment_id)
    return len(expired)


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--hours", type=int, default=settings.ORDER_EXPIRY_HOURS)
    args = parser.parse_args()

    log.info("Expiring created orders older than %d hours", args.hours)
    total = asyncio.run(run(args.hours))
    log.info("Sweep complete. Orders expired: %d", total)


if __name__ == "__main__":
    main()
    sys.exit(0)
