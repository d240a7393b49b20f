"""Process entry point: wires the components together and runs the poll loop."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Any, Callable

import aiosqlite

from taskgate import db
from taskgate.approval import ApprovalGate, ApprovalPolicy
from taskgate.config import Settings
from taskgate.dispatcher import Dispatcher
from taskgate.handlers import HandlerRegistry
from taskgate.models import PollResult, Priority, Task, TaskStatus
from taskgate.observability import (
    ActivityLog,
    AlertSink,
    CompositeAlertSink,
    LoggingAlertSink,
    Observer,
    SqliteActivityLog,
    SqliteAlertSink,
    ThrottledAlertSink,
    WebhookAlertSink,
)
from taskgate.ratelimit import RateLimiter
from taskgate.store import TaskStore

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Owns the database connection and the components built on it.

    Components take their collaborators explicitly; this class is the only
    place that opens or closes anything.

    Example:
        scheduler = taskgate.Scheduler("tasks.db")

        @scheduler.handler("newsletter")
        async def send_newsletter(task):
            return Success(deliverable_url="https://...")

        async with scheduler:
            await scheduler.submit("Weekly newsletter", "newsletter")
            result = await scheduler.poll_and_execute()
    """

    def __init__(
        self,
        db_path: str | None = None,
        *,
        settings: Settings | None = None,
        registry: HandlerRegistry | None = None,
        alert_sink: AlertSink | None = None,
        activity_log: ActivityLog | None = None,
        policy: ApprovalPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or Settings()
        if db_path is not None:
            self.settings = dataclasses.replace(self.settings, db_path=db_path)
        self.registry = registry or HandlerRegistry()
        self.policy = policy
        self._alert_sink = alert_sink
        self._activity_log = activity_log
        self._clock = clock

        self._conn: aiosqlite.Connection | None = None
        self._webhook: WebhookAlertSink | None = None
        self.store: TaskStore | None = None
        self.limiter: RateLimiter | None = None
        self.observer: Observer | None = None
        self.gate: ApprovalGate | None = None
        self.dispatcher: Dispatcher | None = None

        # Poll loop state
        self._running = False
        self._loop_task: asyncio.Task | None = None
        self._cycle_lock = asyncio.Lock()

    @property
    def db_path(self) -> str:
        return self.settings.db_path

    # --- Connection lifecycle ---

    async def open(self) -> Scheduler:
        """Connect to the database and build the components. Idempotent."""
        if self._conn is not None:
            return self

        config = self.settings.dispatcher_config()
        self._conn = await db.init_db(self.db_path)

        self.store = TaskStore(self._conn, max_attempts=config.max_attempts, clock=self._clock)
        self.limiter = RateLimiter(self._conn, clock=self._clock)
        self.observer = Observer(
            alerts=self._alert_sink or self._default_alert_sink(),
            activity=self._activity_log or SqliteActivityLog(self._conn, clock=self._clock),
        )
        self.gate = ApprovalGate(
            self.store, observer=self.observer, policy=self.policy, clock=self._clock
        )
        self.dispatcher = Dispatcher(
            self.store,
            self.limiter,
            self.registry,
            observer=self.observer,
            config=config,
            clock=self._clock,
        )
        logger.info("Scheduler ready db=%s handlers=%s", self.db_path, self.registry.names())
        return self

    def _default_alert_sink(self) -> AlertSink:
        sinks: list[AlertSink] = [SqliteAlertSink(self._conn, clock=self._clock), LoggingAlertSink()]
        if self.settings.alert_webhook_url:
            self._webhook = WebhookAlertSink(self.settings.alert_webhook_url)
            sinks.append(self._webhook)
        return ThrottledAlertSink(
            CompositeAlertSink(*sinks),
            self.settings.alert_throttle_minutes * 60,
            clock=self._clock,
        )

    async def close(self) -> None:
        """Stop the poll loop and close the database connection."""
        if self._running:
            await self.stop()
        if self._webhook is not None:
            await self._webhook.aclose()
            self._webhook = None
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> Scheduler:
        return await self.open()

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # --- Handler registration ---

    def handler(self, name: str, *, replace: bool = False):
        """
        Decorator to register a task handler.

        Example:
            @scheduler.handler("seo-audit")
            def audit(task):
                return Failure("site unreachable")
        """
        return self.registry.handler(name, replace=replace)

    # --- Task operations ---

    async def submit(
        self,
        title: str,
        handler: str,
        *,
        description: str = "",
        priority: Priority | str = Priority.MEDIUM,
        requires_approval: bool | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Task:
        """
        Create a task.

        When ``requires_approval`` is None the approval policy decides
        (no policy configured means no approval). Gated tasks announce
        themselves through the approval gate.
        """
        await self.open()
        if requires_approval is None:
            requires_approval = self._policy_requires_approval(title, handler, description, metadata)

        task = await self.store.create(
            title,
            handler,
            description=description,
            priority=priority,
            requires_approval=requires_approval,
            metadata=metadata,
        )
        if task.requires_approval:
            await self.gate.request_approval(task)
        return task

    def _policy_requires_approval(
        self, title: str, handler: str, description: str, metadata: dict[str, Any] | None
    ) -> bool:
        if self.policy is None:
            return False
        candidate = Task(
            id="",
            title=title,
            assigned_handler=handler,
            description=description,
            metadata=dict(metadata or {}),
        )
        return self.policy.requires_approval(candidate)

    async def get(self, task_id: str) -> Task | None:
        await self.open()
        return await self.store.get(task_id)

    async def list(
        self,
        *,
        status: TaskStatus | str | None = None,
        handler: str | None = None,
        limit: int = 100,
    ) -> list[Task]:
        await self.open()
        return await self.store.list(status=status, handler=handler, limit=limit)

    async def approve(self, task_id: str, approver: str) -> Task:
        await self.open()
        return await self.gate.approve(task_id, approver)

    async def reject(self, task_id: str, approver: str, reason: str | None = None) -> Task:
        await self.open()
        return await self.gate.reject(task_id, approver, reason)

    async def pause(self) -> None:
        await self.open()
        await self.store.set_paused(True)

    async def resume(self) -> None:
        await self.open()
        await self.store.set_paused(False)

    async def reconcile(self) -> list[str]:
        await self.open()
        return await self.dispatcher.reconcile()

    async def poll_and_execute(self) -> PollResult:
        """Run one dispatch cycle (the manual/cron trigger)."""
        await self.open()
        self.registry.freeze()
        async with self._cycle_lock:
            try:
                return await self.dispatcher.poll_and_execute()
            except Exception as e:
                await self.observer.cycle_failed(e)
                raise

    # --- Poll loop ---

    def start(self, interval: float | None = None) -> None:
        """
        Start polling in the background.

        Non-blocking: schedules the loop as an asyncio task. Cycles in this
        process run one after another; other processes polling the same
        database are kept apart by task claiming.
        """
        if self._running:
            return

        self._running = True
        period = interval if interval is not None else self.settings.poll_interval
        self._loop_task = asyncio.get_running_loop().create_task(self._run_loop(period))

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop the poll loop.

        Args:
            timeout: Max seconds to wait for an in-flight cycle. None = wait
                until it finishes.
        """
        self._running = False
        task, self._loop_task = self._loop_task, None
        if task is None:
            return

        # Let a running cycle finish; only the idle sleep is interrupted
        if not self._cycle_lock.locked():
            task.cancel()
        try:
            await asyncio.wait_for(task, timeout)
        except asyncio.TimeoutError:
            logger.warning("Poll cycle did not finish within %.1fs; cancelled", timeout)
        except asyncio.CancelledError:
            pass

    async def _run_loop(self, interval: float) -> None:
        while self._running:
            started = time.monotonic()
            try:
                result = await self.poll_and_execute()
                logger.debug("Cycle result: %s", result.as_dict())
            except Exception:
                logger.exception("Poll cycle failed")
            if not self._running:
                break
            await asyncio.sleep(max(0.0, interval - (time.monotonic() - started)))
