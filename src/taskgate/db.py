"""Database operations for taskgate."""

from __future__ import annotations

import json
import time
from typing import Any

import aiosqlite

SCHEMA_VERSION = 1

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Tasks: the work queue
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'new',
    assigned_handler TEXT NOT NULL,
    priority TEXT NOT NULL DEFAULT 'medium',
    requires_approval INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL DEFAULT '{}',  -- JSON
    approved_at REAL,
    approved_by TEXT,
    rejected_at REAL,
    rejected_by TEXT,
    rejection_reason TEXT,
    execution_attempts INTEGER NOT NULL DEFAULT 0,
    last_execution_attempt REAL,
    execution_error TEXT,
    deliverable_url TEXT,
    completed_at REAL,
    escalated_from TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_handler ON tasks(assigned_handler);
CREATE INDEX IF NOT EXISTS idx_tasks_created ON tasks(created_at);
-- One escalation per original task
CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_escalated_from
    ON tasks(escalated_from) WHERE escalated_from IS NOT NULL;

-- Fixed windows for the rate limiter
CREATE TABLE IF NOT EXISTS rate_limit_windows (
    resource TEXT PRIMARY KEY,
    count INTEGER NOT NULL,
    window_start REAL NOT NULL,
    window_seconds INTEGER NOT NULL,
    max_count INTEGER NOT NULL,
    last_allowed INTEGER NOT NULL DEFAULT 1
);

-- Alerts raised by the alert sink
CREATE TABLE IF NOT EXISTS alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    severity TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    metadata TEXT,  -- JSON
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_alerts_title_time ON alerts(title, created_at);

-- Append-only operational events
CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event TEXT NOT NULL,
    message TEXT NOT NULL,
    task_id TEXT,
    data TEXT,  -- JSON
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_activity_task ON activity_log(task_id);

-- Operator switches (global pause)
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


async def init_db(db_path: str) -> aiosqlite.Connection:
    """
    Initialize database connection and schema.

    The connection runs in autocommit mode: every statement is its own
    transaction, so conditional updates are atomic without explicit
    BEGIN/COMMIT around them.

    Args:
        db_path: Path to SQLite file or ":memory:" for in-memory.

    Returns:
        Open database connection.
    """
    conn = await aiosqlite.connect(db_path, isolation_level=None)
    conn.row_factory = aiosqlite.Row

    # WAL lets several processes poll the same file
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA busy_timeout=5000")

    async with conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    ) as cursor:
        exists = await cursor.fetchone()

    if not exists:
        await conn.executescript(SCHEMA)
        await conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))

    return conn


async def get_schema_version(conn: aiosqlite.Connection) -> int | None:
    """Return the stored schema version."""
    async with conn.execute("SELECT MAX(version) AS version FROM schema_version") as cursor:
        row = await cursor.fetchone()
        return row["version"] if row else None


async def save_alert(
    conn: aiosqlite.Connection,
    severity: str,
    title: str,
    message: str,
    metadata: dict[str, Any] | None = None,
    created_at: float | None = None,
) -> None:
    """Insert an alert row."""
    await conn.execute(
        "INSERT INTO alerts (severity, title, message, metadata, created_at) VALUES (?, ?, ?, ?, ?)",
        (
            severity,
            title,
            message,
            json.dumps(metadata) if metadata is not None else None,
            created_at if created_at is not None else time.time(),
        ),
    )


async def list_alerts(conn: aiosqlite.Connection, limit: int = 100) -> list[dict]:
    """Most recent alerts first."""
    async with conn.execute(
        "SELECT * FROM alerts ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
    ) as cursor:
        rows = await cursor.fetchall()
        return [_decode_json(dict(row), "metadata") for row in rows]


async def save_activity(
    conn: aiosqlite.Connection,
    event: str,
    message: str,
    data: dict[str, Any] | None = None,
    created_at: float | None = None,
) -> None:
    """Append an activity log entry."""
    task_id = data.get("task_id") if data else None
    await conn.execute(
        "INSERT INTO activity_log (event, message, task_id, data, created_at) VALUES (?, ?, ?, ?, ?)",
        (
            event,
            message,
            task_id,
            json.dumps(data, default=str) if data is not None else None,
            created_at if created_at is not None else time.time(),
        ),
    )


async def list_activity(
    conn: aiosqlite.Connection,
    task_id: str | None = None,
    limit: int = 100,
) -> list[dict]:
    """Activity entries in insertion order, optionally for one task."""
    query = "SELECT * FROM activity_log WHERE 1=1"
    params: list = []

    if task_id:
        query += " AND task_id = ?"
        params.append(task_id)

    query += " ORDER BY id ASC LIMIT ?"
    params.append(limit)

    async with conn.execute(query, params) as cursor:
        rows = await cursor.fetchall()
        return [_decode_json(dict(row), "data") for row in rows]


async def get_setting(conn: aiosqlite.Connection, key: str) -> str | None:
    """Get an operator setting."""
    async with conn.execute("SELECT value FROM settings WHERE key = ?", (key,)) as cursor:
        row = await cursor.fetchone()
        return row["value"] if row else None


async def set_setting(conn: aiosqlite.Connection, key: str, value: str) -> None:
    """Insert or update an operator setting."""
    await conn.execute(
        """
        INSERT INTO settings (key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (key, value),
    )


def _decode_json(row: dict, column: str) -> dict:
    if row.get(column):
        row[column] = json.loads(row[column])
    return row
