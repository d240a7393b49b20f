"""Alerting and activity logging.

The dispatcher and approval gate never talk to sinks directly; they call
an :class:`Observer` at fixed points (claimed, completed, retrying,
escalated, decided, cycle finished). The observer shields them from sink
failures: an alert that cannot be delivered is logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Protocol

import aiosqlite
import httpx

from taskgate import db
from taskgate.models import PollResult, Severity, Task

if TYPE_CHECKING:
    from collections.abc import Awaitable

logger = logging.getLogger(__name__)

_SEVERITY_LEVEL = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.URGENT: logging.CRITICAL,
}


class AlertSink(Protocol):
    async def notify(
        self,
        severity: Severity,
        title: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


class ActivityLog(Protocol):
    async def record(
        self,
        event: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None: ...


# --- Alert sinks ---


class LoggingAlertSink:
    """Writes alerts to the ``taskgate.alerts`` logger."""

    def __init__(self, logger_name: str = "taskgate.alerts") -> None:
        self._logger = logging.getLogger(logger_name)

    async def notify(self, severity, title, message, metadata=None) -> None:
        severity = Severity(severity)
        self._logger.log(
            _SEVERITY_LEVEL[severity],
            "[ALERT %s] %s: %s",
            severity.value.upper(),
            title,
            message,
            extra={"alert_metadata": metadata or {}},
        )


class SqliteAlertSink:
    """Stores alerts in the ``alerts`` table for dashboards to read."""

    def __init__(self, conn: aiosqlite.Connection, *, clock: Callable[[], float] = time.time) -> None:
        self._conn = conn
        self._clock = clock

    async def notify(self, severity, title, message, metadata=None) -> None:
        await db.save_alert(
            self._conn, Severity(severity).value, title, message, metadata, self._clock()
        )


class WebhookAlertSink:
    """
    POSTs alerts as JSON to an HTTP endpoint (chat webhook, pager, ...).

    Args:
        url: Endpoint to POST to.
        client: Optional shared client; one is created (and owned) if omitted.
        min_severity: Alerts below this severity are not sent.
    """

    _ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.URGENT]

    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        min_severity: Severity = Severity.LOW,
    ) -> None:
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self.min_severity = Severity(min_severity)

    async def notify(self, severity, title, message, metadata=None) -> None:
        severity = Severity(severity)
        if self._ORDER.index(severity) < self._ORDER.index(self.min_severity):
            return
        resp = await self._client.post(
            self.url,
            json={
                "severity": severity.value,
                "title": title,
                "message": message,
                "metadata": metadata or {},
            },
        )
        resp.raise_for_status()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class ThrottledAlertSink:
    """
    Drops repeats of the same alert within ``window_seconds``.

    An alert repeats another when both have the same title and concern the
    same task (``metadata["task_id"]``).

    Severities in ``exempt`` always pass (urgent alerts by default).
    """

    def __init__(
        self,
        inner: AlertSink,
        window_seconds: float = 3600.0,
        *,
        exempt: frozenset[Severity] = frozenset({Severity.URGENT}),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._inner = inner
        self.window_seconds = window_seconds
        self._exempt = exempt
        self._clock = clock
        self._last_sent: dict[tuple[str, Any], float] = {}

    async def notify(self, severity, title, message, metadata=None) -> None:
        severity = Severity(severity)
        now = self._clock()
        key = (title, (metadata or {}).get("task_id"))
        if severity not in self._exempt:
            last = self._last_sent.get(key)
            if last is not None and now - last < self.window_seconds:
                logger.debug("Alert throttled: %s", title)
                return
        self._last_sent[key] = now
        await self._inner.notify(severity, title, message, metadata)


class CompositeAlertSink:
    """Fans an alert out to several sinks; one failing does not stop the rest."""

    def __init__(self, *sinks: AlertSink) -> None:
        self.sinks = list(sinks)

    async def notify(self, severity, title, message, metadata=None) -> None:
        for sink in self.sinks:
            try:
                await sink.notify(severity, title, message, metadata)
            except Exception:
                logger.exception("Alert sink %s failed", type(sink).__name__)


# --- Activity logs ---


class LoggingActivityLog:
    """Writes activity to the ``taskgate.activity`` logger."""

    def __init__(self, logger_name: str = "taskgate.activity") -> None:
        self._logger = logging.getLogger(logger_name)

    async def record(self, event, message, data=None) -> None:
        self._logger.info("%s: %s", event, message)


class SqliteActivityLog:
    """Appends activity to the ``activity_log`` table."""

    def __init__(self, conn: aiosqlite.Connection, *, clock: Callable[[], float] = time.time) -> None:
        self._conn = conn
        self._clock = clock

    async def record(self, event, message, data=None) -> None:
        await db.save_activity(self._conn, event, message, data, self._clock())


# --- Observer ---


class Observer:
    """
    Extension points called by the dispatcher and approval gate.

    Every call is best-effort: exceptions and timeouts from sinks are
    logged and swallowed so that task state never depends on them.
    """

    def __init__(
        self,
        alerts: AlertSink | None = None,
        activity: ActivityLog | None = None,
        *,
        timeout: float = 10.0,
    ) -> None:
        self.alerts = alerts or LoggingAlertSink()
        self.activity = activity or LoggingActivityLog()
        self.timeout = timeout

    async def _safe(self, what: str, call: Awaitable[None]) -> None:
        try:
            await asyncio.wait_for(call, self.timeout)
        except asyncio.TimeoutError:
            logger.error("%s timed out after %.1fs", what, self.timeout)
        except Exception:
            logger.exception("%s failed", what)

    async def _record(self, event: str, message: str, data: dict[str, Any]) -> None:
        await self._safe(f"Activity log ({event})", self.activity.record(event, message, data))

    async def _alert(self, severity: Severity, title: str, message: str, metadata: dict[str, Any]) -> None:
        await self._safe(f"Alert ({title})", self.alerts.notify(severity, title, message, metadata))

    # --- Task lifecycle ---

    async def task_claimed(self, task: Task) -> None:
        await self._record(
            "task_claimed",
            f"Executing task: {task.title}",
            {"task_id": task.id, "handler": task.assigned_handler, "attempt": task.execution_attempts + 1},
        )

    async def task_completed(self, task: Task, deliverable_url: str | None) -> None:
        await self._record(
            "task_completed",
            f"Task completed: {task.title}",
            {"task_id": task.id, "handler": task.assigned_handler, "deliverable_url": deliverable_url},
        )

    async def task_retrying(self, task: Task, attempts: int, error: str) -> None:
        await self._record(
            "task_retrying",
            f"Task failed (attempt {attempts}), will retry: {task.title}",
            {"task_id": task.id, "handler": task.assigned_handler, "attempts": attempts, "error": error},
        )

    async def task_escalated(self, task: Task, escalation: Task | None, attempts: int, error: str) -> None:
        data = {
            "task_id": task.id,
            "handler": task.assigned_handler,
            "attempts": attempts,
            "error": error,
            "escalation_id": escalation.id if escalation else None,
        }
        await self._alert(
            Severity.URGENT,
            f"Task failed after {attempts} attempts",
            f'Task "{task.title}" ({task.assigned_handler}) failed {attempts} times: {error}',
            data,
        )
        await self._record("task_escalated", f'ESCALATION: Task "{task.title}" failed after {attempts} attempts', data)

    # --- Approvals ---

    async def approval_requested(self, task: Task, severity: Severity, rule: str | None) -> None:
        data = {"task_id": task.id, "handler": task.assigned_handler, "severity": severity.value, "rule": rule}
        await self._alert(severity, "Task requires approval", f'Task "{task.title}" is waiting for approval', data)
        await self._record("approval_requested", f'Task requires approval: "{task.title}"', data)

    async def decision(self, task: Task, outcome: str, approver: str, reason: str | None) -> None:
        await self._record(
            f"task_{outcome}",
            f'Task "{task.title}" {outcome} by {approver}',
            {"task_id": task.id, "approver": approver, "reason": reason},
        )

    # --- Cycles ---

    async def cycle_finished(self, result: PollResult) -> None:
        await self._record(
            "cycle_finished",
            f"Executed {result.executed} tasks, {result.failed} failed, {result.skipped} skipped",
            result.as_dict(),
        )

    async def cycle_skipped(self, reason: str, result: PollResult) -> None:
        await self._record("cycle_skipped", f"Poll cycle skipped: {reason}", result.as_dict())

    async def cycle_failed(self, error: BaseException) -> None:
        await self._record(
            "cycle_error",
            f"Poll cycle failed: {error}",
            {"error": str(error), "error_type": type(error).__name__},
        )
