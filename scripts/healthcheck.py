#!/usr/bin/env python3
"""Monitoring / healthcheck script for the photo studio API.

Checks the availability of:
    - FastAPI application (/health)
    - PostgreSQL
    - Redis (only when RATE_LIMIT_BACKEND=redis)

Outputs a JSON array of ``{service, status, latency_ms}`` objects.

Exit codes:
    0 -- all services healthy
    1 -- one or more services unhealthy
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
import time
from typing import Any, Awaitable, Callable

import asyncpg  # type: ignore[import-untyped]
import httpx
from redis.asyncio import Redis

APP_URL = os.environ.get("APP_URL", "http://localhost:8000")
DATABASE_URL = os.environ.get(
    "DATABASE_URL", "postgresql://app:devpassword@db:5432/photostudio"
)
REDIS_URL = os.environ.get("REDIS_URL", "redis://redis:6379/0")
RATE_LIMIT_BACKEND = os.environ.get("RATE_LIMIT_BACKEND", "memory")

CHECK_TIMEOUT = float(os.environ.get("HEALTHCHECK_TIMEOUT", "5"))


def _pg_dsn(url: str) -> str:
    """Normalise a SQLAlchemy-style URL to a plain ``postgresql://`` DSN."""
    for prefix in ("postgresql+asyncpg://", "postgresql+psycopg2://"):
        if url.startswith(prefix):
            url = "postgresql://" + url[len(prefix):]
    return url


async def _timed(service: str, probe: Callable[[], Awaitable[bool]]) -> dict[str, Any]:
    start = time.monotonic()
    result: dict[str, Any] = {"service": service}
    try:
        healthy = await asyncio.wait_for(probe(), timeout=CHECK_TIMEOUT)
        result["status"] = "healthy" if healthy else "unhealthy"
    except Exception as exc:
        result["status"] = "unhealthy"
        result["error"] = str(exc)
    result["latency_ms"] = round((time.monotonic() - start) * 1000, 2)
    return result


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------

async def probe_app() -> bool:
    async with httpx.AsyncClient() as client:
        resp = await client.get(f"{APP_URL}/health")
    return resp.status_code == 200


async def probe_postgres() -> bool:
    conn = await asyncpg.connect(_pg_dsn(DATABASE_URL))
    try:
        return await conn.fetchval("SELECT 1") == 1
    finally:
        await conn.close()


async def probe_redis() -> bool:
    redis = Redis.from_url(REDIS_URL, decode_responses=True)
    try:
        return bool(await redis.ping())
    finally:
        await redis.aclose()


async def run_checks() -> list[dict[str, Any]]:
    checks = [_timed("app", probe_app), _timed("postgres", probe_postgres)]
    if RATE_LIMIT_BACKEND == "redis":
        checks.append(_timed("redis", probe_redis))
    return list(await asyncio.gather(*checks))


async def main() -> int:
    results = await run_checks()

    json.dump(results, sys.stdout, indent=2)
    sys.stdout.write("\n")

    return 0 if all(r["status"] == "healthy" for r in results) else 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
