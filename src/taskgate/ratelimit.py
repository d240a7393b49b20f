"""Fixed-window rate limiting backed by the taskgate database."""

from __future__ import annotations

import logging
import time
from typing import Callable

import aiosqlite

from taskgate.errors import ConfigError
from taskgate.models import RateLimit, RateLimitResult

logger = logging.getLogger(__name__)

# A single upsert: SQLite evaluates every SET expression against the old
# row, so the rollover/increment/deny decision and the write are one
# atomic statement.
_CHECK_AND_CONSUME = """
INSERT INTO rate_limit_windows (
    resource, count, window_start, window_seconds, max_count, last_allowed
) VALUES (:resource, 1, :now, :window, :max, 1)
ON CONFLICT(resource) DO UPDATE SET
    count = CASE
        WHEN :now >= window_start + :window THEN 1
        WHEN count < :max THEN count + 1
        ELSE count
    END,
    last_allowed = CASE
        WHEN :now >= window_start + :window THEN 1
        WHEN count < :max THEN 1
        ELSE 0
    END,
    window_start = CASE
        WHEN :now >= window_start + :window THEN :now
        ELSE window_start
    END,
    window_seconds = :window,
    max_count = :max
RETURNING count, window_start, last_allowed
"""

_UNITS = {
    "s": 1, "sec": 1, "second": 1,
    "m": 60, "min": 60, "minute": 60,
    "h": 3600, "hr": 3600, "hour": 3600,
    "d": 86400, "day": 86400,
}


def parse_rate(rate: str) -> tuple[int, int]:
    """Parse rate string like '60/min' into (count, seconds)."""
    parts = rate.split("/")
    if len(parts) != 2:
        raise ConfigError(f"Invalid rate format: {rate}. Use 'N/min', 'N/hour', 'N/day'.")

    try:
        count = int(parts[0])
    except ValueError:
        raise ConfigError(f"Invalid rate count: {parts[0]!r}") from None

    unit = parts[1].strip().lower()
    if unit.isdigit():
        return count, int(unit)
    if unit not in _UNITS:
        raise ConfigError(f"Unknown rate unit: {unit}. Use 'sec', 'min', 'hour' or 'day'.")

    return count, _UNITS[unit]


class RateLimiter:
    """
    Per-resource execution counter over fixed windows.

    A window starts on the first check for a resource and resets once
    ``window_seconds`` have passed since it started. Storage failures fail
    open: the check answers ``allowed=True`` and the error is logged.

    Example:
        limiter = RateLimiter(conn)
        result = await limiter.check_and_consume("task_executor", 30, 3600)
        if not result.allowed:
            ...
    """

    def __init__(
        self,
        conn: aiosqlite.Connection,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._conn = conn
        self._clock = clock

    async def check_and_consume(
        self,
        resource: str,
        max_executions: int,
        window_seconds: int,
    ) -> RateLimitResult:
        """Consume one execution from ``resource``'s window if any remain."""
        now = self._clock()
        if max_executions <= 0:
            return RateLimitResult(allowed=False, remaining=0, reset_at=now + window_seconds)

        params = {
            "resource": resource,
            "now": now,
            "window": window_seconds,
            "max": max_executions,
        }
        try:
            async with self._conn.execute(_CHECK_AND_CONSUME, params) as cursor:
                row = await cursor.fetchone()
        except (aiosqlite.Error, OSError):
            logger.error(
                "Rate limit check failed for %s; allowing execution", resource, exc_info=True
            )
            return RateLimitResult(
                allowed=True,
                remaining=max_executions,
                reset_at=now + window_seconds,
            )

        reset_at = row["window_start"] + window_seconds
        if not row["last_allowed"]:
            logger.info("Rate limit reached for %s until %.0f", resource, reset_at)
            return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)

        return RateLimitResult(
            allowed=True,
            remaining=max_executions - row["count"],
            reset_at=reset_at,
        )

    async def check(self, limit: RateLimit) -> RateLimitResult:
        """Shortcut for :meth:`check_and_consume` with a named limit."""
        return await self.check_and_consume(
            limit.resource, limit.max_executions, limit.window_seconds
        )

    async def execution_count(self, resource: str) -> int:
        """Executions consumed in the live window (0 if none or expired)."""
        try:
            async with self._conn.execute(
                "SELECT count, window_start, window_seconds FROM rate_limit_windows WHERE resource = ?",
                (resource,),
            ) as cursor:
                row = await cursor.fetchone()
        except (aiosqlite.Error, OSError):
            logger.error("Failed to read execution count for %s", resource, exc_info=True)
            return 0

        if row is None or self._clock() >= row["window_start"] + row["window_seconds"]:
            return 0
        return row["count"]

    async def reset(self, resource: str) -> None:
        """Drop the window for ``resource`` so the next check starts fresh."""
        try:
            await self._conn.execute(
                "DELETE FROM rate_limit_windows WHERE resource = ?", (resource,)
            )
        except (aiosqlite.Error, OSError):
            logger.error("Failed to reset rate limit for %s", resource, exc_info=True)

    async def windows(self) -> list[dict]:
        """All stored windows, for inspection."""
        async with self._conn.execute(
            "SELECT * FROM rate_limit_windows ORDER BY resource"
        ) as cursor:
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]
