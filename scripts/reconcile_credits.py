#!/usr/bin/env python3
"""Nightly credit reconciliation script.

Two checks against the ledger:
  - each user's ``credits`` column must equal the sum of their
    ``credit_transactions`` rows;
  - every completed payment must have exactly one purchase row for the
    credits it granted.

Usage:
    DATABASE_URL=postgresql://... python scripts/reconcile_credits.py

Exit codes:
    0 -- everything matches
    1 -- one or more discrepancies found
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from datetime import datetime, timezone

import asyncpg  # type: ignore[import-untyped]

DEFAULT_DATABASE_URL = "postgresql://app:devpassword@db:5432/photostudio"


def _get_dsn() -> str:
    """Return a raw ``postgresql://`` DSN (strip any SQLAlchemy dialect prefix)."""
    url = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
    for prefix in ("postgresql+asyncpg://", "postgresql+psycopg2://"):
        if url.startswith(prefix):
            url = "postgresql://" + url[len(prefix):]
    return url


async def _balance_discrepancies(conn: asyncpg.Connection) -> list[dict]:
    rows = await conn.fetch(
        """
        SELECT
            u.user_id,
            u.credits AS stored_balance,
            COALESCE(SUM(ct.amount), 0)::int AS ledger_balance
        FROM users u
        LEFT JOIN credit_transactions ct USING (user_id)
        GROUP BY u.user_id, u.credits
        HAVING u.credits <> COALESCE(SUM(ct.amount), 0)
        ORDER BY u.user_id
        """
    )
    return [
        {
            "kind": "balance",
            "user_id": str(row["user_id"]),
            "stored_balance": row["stored_balance"],
            "ledger_balance": row["ledger_balance"],
            "difference": row["stored_balance"] - row["ledger_balance"],
        }
        for row in rows
    ]


async def _payment_discrepancies(conn: asyncpg.Connection) -> list[dict]:
    # Refunded payments were completed first, so they carry a purchase row too.
    rows = await conn.fetch(
        """
        SELECT
            p.payment_id,
            p.user_id,
            p.status,
            p.credits_purchased,
            COUNT(ct.txn_id) AS purchase_rows,
            COALESCE(SUM(ct.amount), 0)::int AS credited
        FROM payments p
        LEFT JOIN credit_transactions ct
               ON ct.payment_id = p.payment_id AND ct.txn_type = 'purchase'
        WHERE p.status IN ('completed', 'refunded')
        GROUP BY p.payment_id, p.user_id, p.status, p.credits_purchased
        HAVING COUNT(ct.txn_id) <> 1
            OR COALESCE(SUM(ct.amount), 0) <> p.credits_purchased
        ORDER BY p.payment_id
        """
    )
    return [
        {
            "kind": "payment",
            "payment_id": str(row["payment_id"]),
            "user_id": str(row["user_id"]),
            "status": row["status"],
            "credits_purchased": row["credits_purchased"],
            "purchase_rows": row["purchase_rows"],
            "credited": row["credited"],
        }
        for row in rows
    ]


async def reconcile(dsn: str) -> list[dict]:
    """Run the reconciliation and return a list of discrepancy dicts."""
    conn: asyncpg.Connection = await asyncpg.connect(dsn)
    try:
        return await _balance_discrepancies(conn) + await _payment_discrepancies(conn)
    finally:
        await conn.close()


async def main() -> int:
    discrepancies = await reconcile(_get_dsn())

    report = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_discrepancies": len(discrepancies),
        "discrepancies": discrepancies,
    }

    json.dump(report, sys.stdout, indent=2)
    sys.stdout.write("\n")

    return 1 if discrepancies else 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
