"""Durable task storage.

The store is pure data access: it knows how tasks are laid out and how to
query and update them atomically, but it decides nothing about when a
task should run. Storage errors are never caught here; a poll cycle that
cannot reach its store must fail loudly.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterable
from enum import Enum
from typing import Any, Callable

import aiosqlite

from taskgate import db
from taskgate.errors import NotFoundError
from taskgate.models import Priority, Task, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

PAUSE_KEY = "global_pause"

# Columns callers may write through update()/transition_to()
_COLUMNS = frozenset(
    Task(id="", title="", assigned_handler="").to_row().keys()
) - {"id", "created_at"}

_PRIORITY_ORDER = "CASE priority {} ELSE 0 END".format(
    " ".join(f"WHEN '{p.value}' THEN {p.rank}" for p in Priority)
)


def _encode(column: str, value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if column == "metadata":
        return json.dumps(value or {})
    if isinstance(value, bool):
        return 1 if value else 0
    return value


class TaskStore:
    """
    SQLite-backed task table.

    Args:
        conn: Open connection from :func:`taskgate.db.init_db`.
        max_attempts: Attempts after which a task is no longer eligible.
        clock: Source of "now" as epoch seconds.
    """

    def __init__(
        self,
        conn: aiosqlite.Connection,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._conn = conn
        self.max_attempts = max_attempts
        self._clock = clock

    # --- Creation ---

    async def create(
        self,
        title: str,
        assigned_handler: str,
        *,
        description: str = "",
        priority: Priority | str = Priority.MEDIUM,
        requires_approval: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> Task:
        """
        Insert a new task with ``status=new``.

        Handler names are not checked here; an unknown handler only
        fails when the task is dispatched.

        Raises:
            ValueError: If title or handler is empty, or priority unknown.
        """
        if not title or not title.strip():
            raise ValueError("title is required")
        if not assigned_handler or not assigned_handler.strip():
            raise ValueError("assigned_handler is required")

        now = self._clock()
        task = Task(
            id=uuid.uuid4().hex,
            title=title,
            description=description,
            assigned_handler=assigned_handler,
            priority=Priority(priority),
            requires_approval=requires_approval,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        await self._insert(task)
        logger.debug("Created task %s (%s, %s)", task.id, task.assigned_handler, task.priority.value)
        return task

    async def create_escalation(
        self,
        escalated_from: str,
        title: str,
        assigned_handler: str,
        *,
        description: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> Task | None:
        """
        Insert the urgent review task for ``escalated_from``.

        Returns None if an escalation for that task already exists; the
        unique index on ``escalated_from`` makes this safe under races.
        """
        now = self._clock()
        task = Task(
            id=uuid.uuid4().hex,
            title=title,
            description=description,
            assigned_handler=assigned_handler,
            priority=Priority.URGENT,
            requires_approval=False,
            metadata=dict(metadata or {}),
            escalated_from=escalated_from,
            created_at=now,
            updated_at=now,
        )
        inserted = await self._insert(
            task,
            on_conflict="ON CONFLICT(escalated_from) WHERE escalated_from IS NOT NULL DO NOTHING",
        )
        return task if inserted else None

    async def _insert(self, task: Task, on_conflict: str = "") -> bool:
        row = task.to_row()
        columns = ", ".join(row)
        placeholders = ", ".join(["?"] * len(row))
        async with self._conn.execute(
            f"INSERT INTO tasks ({columns}) VALUES ({placeholders}) {on_conflict} RETURNING id",
            list(row.values()),
        ) as cursor:
            return await cursor.fetchone() is not None

    # --- Reads ---

    async def get(self, task_id: str) -> Task | None:
        """Get a task by ID."""
        async with self._conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)) as cursor:
            row = await cursor.fetchone()
            return Task.from_row(dict(row)) if row else None

    async def require(self, task_id: str) -> Task:
        """Get a task by ID or raise :class:`NotFoundError`."""
        task = await self.get(task_id)
        if task is None:
            raise NotFoundError(task_id)
        return task

    async def find_eligible(
        self,
        limit: int = 10,
        *,
        exclude_handlers: Iterable[str] = (),
    ) -> list[Task]:
        """
        Tasks ready to dispatch, best first.

        Eligible means ``status=new``, approval satisfied (not gated, or
        approved) and attempts below ``max_attempts``. Ordered by priority
        (urgent first), then oldest first.

        Args:
            limit: Maximum number of tasks to return.
            exclude_handlers: Handler names to leave out (human queues).
        """
        params: list = [TaskStatus.NEW.value, self.max_attempts]
        excluded = ""
        exclude = list(exclude_handlers)
        if exclude:
            placeholders = ", ".join(["?"] * len(exclude))
            excluded = f"AND assigned_handler NOT IN ({placeholders})"
            params.extend(exclude)
        params.append(limit)

        query = f"""
            SELECT * FROM tasks
            WHERE status = ?
              AND (requires_approval = 0 OR approved_at IS NOT NULL)
              AND rejected_at IS NULL
              AND execution_attempts < ?
              {excluded}
            ORDER BY {_PRIORITY_ORDER} DESC, created_at ASC, rowid ASC
            LIMIT ?
        """
        async with self._conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [Task.from_row(dict(row)) for row in rows]

    async def find_escalation(self, original_id: str) -> Task | None:
        """The escalation task created for ``original_id``, if any."""
        async with self._conn.execute(
            "SELECT * FROM tasks WHERE escalated_from = ?", (original_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return Task.from_row(dict(row)) if row else None

    async def list(
        self,
        *,
        status: TaskStatus | str | None = None,
        handler: str | None = None,
        limit: int = 100,
    ) -> list[Task]:
        """List tasks with optional filters, newest first."""
        query = "SELECT * FROM tasks WHERE 1=1"
        params: list = []

        if status:
            query += " AND status = ?"
            params.append(TaskStatus(status).value)
        if handler:
            query += " AND assigned_handler = ?"
            params.append(handler)

        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        async with self._conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [Task.from_row(dict(row)) for row in rows]

    async def count(self, status: TaskStatus | str | None = None) -> int:
        """Number of tasks, optionally in one status."""
        if status:
            sql, params = "SELECT COUNT(*) FROM tasks WHERE status = ?", (TaskStatus(status).value,)
        else:
            sql, params = "SELECT COUNT(*) FROM tasks", ()
        async with self._conn.execute(sql, params) as cursor:
            (n,) = await cursor.fetchone()
            return int(n)

    # --- Writes ---

    async def update(
        self,
        task_id: str,
        fields: dict[str, Any],
        conditions: dict[str, Any] | None = None,
    ) -> bool:
        """
        Write ``fields`` in one statement, only if ``conditions`` hold.

        Conditions map column to expected value; ``None`` means IS NULL.

        Returns:
            True if the row was updated, False if it did not match.
        """
        unknown = (set(fields) | set(conditions or {})) - _COLUMNS
        if unknown:
            raise ValueError(f"Unknown task columns: {sorted(unknown)}")

        values = dict(fields)
        values["updated_at"] = self._clock()
        assignments = ", ".join(f"{col} = ?" for col in values)
        params = [_encode(col, val) for col, val in values.items()]

        where = "id = ?"
        params.append(task_id)
        for col, expected in (conditions or {}).items():
            if expected is None:
                where += f" AND {col} IS NULL"
            else:
                where += f" AND {col} = ?"
                params.append(_encode(col, expected))

        async with self._conn.execute(
            f"UPDATE tasks SET {assignments} WHERE {where} RETURNING id", params
        ) as cursor:
            return await cursor.fetchone() is not None

    async def transition_to(
        self,
        task_id: str,
        status: TaskStatus | str,
        fields: dict[str, Any] | None = None,
        *,
        expected_status: TaskStatus | str | None = None,
    ) -> bool:
        """
        Set ``status`` plus any extra ``fields`` in one write.

        With ``expected_status`` the write is a compare-and-set and returns
        False if the task has moved on.
        """
        values = dict(fields or {})
        values["status"] = TaskStatus(status)
        conditions = {"status": TaskStatus(expected_status)} if expected_status else None
        return await self.update(task_id, values, conditions)

    async def claim(self, task_id: str) -> Task | None:
        """
        Atomically move a task from ``new`` to ``in_progress``.

        This is the single point of mutual exclusion between overlapping
        poll cycles. Returns the claimed task, or None if someone else
        got there first (or it is no longer new).
        """
        now = self._clock()
        async with self._conn.execute(
            """
            UPDATE tasks
            SET status = ?, last_execution_attempt = ?, updated_at = ?
            WHERE id = ? AND status = ?
            RETURNING *
            """,
            (TaskStatus.IN_PROGRESS.value, now, now, task_id, TaskStatus.NEW.value),
        ) as cursor:
            row = await cursor.fetchone()
            return Task.from_row(dict(row)) if row else None

    async def increment_attempts(self, task_id: str, error_message: str) -> int:
        """
        Record a failed attempt and return the new attempt count.

        The counter never exceeds ``max_attempts``.

        Raises:
            NotFoundError: If the task does not exist.
        """
        now = self._clock()
        async with self._conn.execute(
            """
            UPDATE tasks
            SET execution_attempts = MIN(execution_attempts + 1, ?),
                execution_error = ?,
                updated_at = ?
            WHERE id = ?
            RETURNING execution_attempts
            """,
            (self.max_attempts, error_message, now, task_id),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(task_id)
        return int(row["execution_attempts"])

    async def reconcile_stale(self, stale_after: float) -> list[str]:
        """
        Return abandoned ``in_progress`` tasks to ``new``.

        A task is abandoned when its last attempt started more than
        ``stale_after`` seconds ago, e.g. because the process running it
        died mid-cycle.

        Returns:
            IDs of the tasks that were reverted.
        """
        now = self._clock()
        cutoff = now - stale_after
        async with self._conn.execute(
            """
            UPDATE tasks
            SET status = ?, updated_at = ?
            WHERE status = ?
              AND (last_execution_attempt IS NULL OR last_execution_attempt < ?)
            RETURNING id
            """,
            (TaskStatus.NEW.value, now, TaskStatus.IN_PROGRESS.value, cutoff),
        ) as cursor:
            rows = await cursor.fetchall()
        reverted = [row["id"] for row in rows]
        if reverted:
            logger.warning("Reverted %d stale in_progress task(s): %s", len(reverted), reverted)
        return reverted

    # --- Operator switches ---

    async def is_paused(self) -> bool:
        """Whether dispatch is globally paused."""
        return await db.get_setting(self._conn, PAUSE_KEY) == "true"

    async def set_paused(self, paused: bool) -> None:
        """Pause or resume dispatch for every poller sharing this store."""
        await db.set_setting(self._conn, PAUSE_KEY, "true" if paused else "false")
        logger.info("Dispatch %s", "paused" if paused else "resumed")
