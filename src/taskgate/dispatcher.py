"""Poll-and-execute dispatcher.

One cycle: check the pause switch and the dispatcher's own rate limit,
revert abandoned ``in_progress`` tasks, fetch the eligible batch, then
run each task with bounded concurrency:

    claim (new -> in_progress)
      -> resolve handler -> invoke under a deadline
      -> success: completed
      -> failure: attempts += 1
           below max_attempts (and retryable): back to new
           otherwise: escalate (review task + failed + urgent alert)

Each task runs inside its own error boundary, so one handler blowing up
never affects its siblings. Storage errors are not caught and fail the
whole cycle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from taskgate.errors import UnknownHandlerError
from taskgate.handlers import HandlerRegistry, invoke
from taskgate.models import Failure, PollResult, RateLimit, Success, Task, TaskStatus
from taskgate.observability import Observer
from taskgate.ratelimit import RateLimiter
from taskgate.store import TaskStore

logger = logging.getLogger(__name__)


@dataclass
class DispatcherConfig:
    """Knobs for the dispatcher."""

    batch_size: int = 10
    concurrency: int = 10
    max_attempts: int = 3
    task_timeout: float = 60.0  # Deadline per handler invocation
    stale_after: float = 600.0  # in_progress older than this is abandoned
    escalation_handler: str = "human-review"
    rate_limit: RateLimit | None = field(
        default_factory=lambda: RateLimit("task_executor", 30, 3600)
    )

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.task_timeout <= 0:
            raise ValueError("task_timeout must be positive")
        if self.stale_after <= self.task_timeout:
            # Otherwise a poller could revert a task whose handler is still running
            raise ValueError(
                f"stale_after ({self.stale_after:g}s) must be greater than "
                f"task_timeout ({self.task_timeout:g}s)"
            )


class Outcome(str, Enum):
    """What happened to one task in a cycle."""

    COMPLETED = "completed"
    RETRYING = "retrying"
    ESCALATED = "escalated"
    LOST_CLAIM = "lost_claim"
    SUPERSEDED = "superseded"  # Reverted by reconciliation while running


class Dispatcher:
    """
    Runs eligible tasks through their handlers.

    Example:
        dispatcher = Dispatcher(store, limiter, registry)
        result = await dispatcher.poll_and_execute()
        print(result.executed, result.failed, result.skipped)
    """

    def __init__(
        self,
        store: TaskStore,
        limiter: RateLimiter,
        registry: HandlerRegistry,
        *,
        observer: Observer | None = None,
        config: DispatcherConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or DispatcherConfig()
        if store.max_attempts != self.config.max_attempts:
            raise ValueError(
                f"Store max_attempts ({store.max_attempts}) does not match "
                f"dispatcher max_attempts ({self.config.max_attempts})"
            )
        self._store = store
        self._limiter = limiter
        self._registry = registry
        self._observer = observer or Observer()
        self._clock = clock

    async def poll_and_execute(self) -> PollResult:
        """
        Run one dispatch cycle.

        Returns:
            Counts of tasks executed, failed and skipped. A cycle refused by
            the pause switch or the rate limiter returns zero counts with
            ``paused`` or ``rate_limited`` set; that is backpressure, not
            an error.
        """
        started = self._clock()
        result = PollResult()

        if await self._store.is_paused():
            logger.info("Dispatch is paused; skipping cycle")
            result.paused = True
            await self._observer.cycle_skipped("paused", result)
            return result

        if self.config.rate_limit is not None:
            limit = await self._limiter.check(self.config.rate_limit)
            result.remaining = limit.remaining
            result.reset_at = limit.reset_at
            if not limit.allowed:
                logger.info("Rate limit exceeded for %s; skipping cycle", self.config.rate_limit.resource)
                result.rate_limited = True
                await self._observer.cycle_skipped("rate_limited", result)
                return result

        await self.reconcile()

        tasks = await self._store.find_eligible(
            self.config.batch_size, exclude_handlers=self._human_queues()
        )
        if not tasks:
            logger.debug("No tasks to execute")
            result.duration = self._clock() - started
            return result

        logger.info("Found %d task(s) to execute", len(tasks))
        outcomes = await self.execute_batch(tasks)

        result.executed = sum(1 for o in outcomes if o == Outcome.COMPLETED)
        result.failed = sum(1 for o in outcomes if o in (Outcome.RETRYING, Outcome.ESCALATED))
        result.skipped = len(tasks) - result.executed - result.failed
        result.duration = self._clock() - started

        logger.info(
            "Cycle complete: executed=%d failed=%d skipped=%d (%.2fs)",
            result.executed, result.failed, result.skipped, result.duration,
        )
        await self._observer.cycle_finished(result)
        return result

    def _human_queues(self) -> list[str]:
        # Escalations wait for a person unless a reviewer handler is registered
        if self.config.escalation_handler in self._registry:
            return []
        return [self.config.escalation_handler]

    async def reconcile(self) -> list[str]:
        """Revert tasks stuck in ``in_progress`` past ``stale_after``."""
        return await self._store.reconcile_stale(self.config.stale_after)

    async def execute_batch(self, tasks: list[Task]) -> list[Outcome]:
        """Execute ``tasks`` with at most ``concurrency`` running at once."""
        semaphore = asyncio.Semaphore(self.config.concurrency)

        async def bounded(task: Task) -> Outcome:
            async with semaphore:
                return await self.execute_task(task)

        return list(await asyncio.gather(*(bounded(task) for task in tasks)))

    async def execute_task(self, task: Task) -> Outcome:
        """
        Single-task execution protocol.

        Handler errors of any kind (unknown name, exception, timeout,
        ``Failure``) become a failed attempt. Only storage errors escape.
        """
        claimed = await self._store.claim(task.id)
        if claimed is None:
            logger.info("Task %s was claimed elsewhere; skipping", task.id)
            return Outcome.LOST_CLAIM

        logger.info("Executing task %s: %s", claimed.id, claimed.title)
        await self._observer.task_claimed(claimed)

        result = await self._run_handler(claimed)

        if isinstance(result, Success):
            return await self._complete(claimed, result)
        return await self._fail(claimed, result)

    async def _run_handler(self, task: Task) -> Success | Failure:
        try:
            handler = self._registry.resolve(task.assigned_handler)
        except UnknownHandlerError as e:
            logger.warning("Task %s: %s", task.id, e)
            return Failure(str(e))

        try:
            result = await asyncio.wait_for(invoke(handler, task), self.config.task_timeout)
        except asyncio.TimeoutError:
            logger.warning("Task %s timed out after %.1fs", task.id, self.config.task_timeout)
            return Failure(f"Handler timed out after {self.config.task_timeout:g}s")
        except Exception as e:
            logger.exception("Task %s handler %s raised", task.id, task.assigned_handler)
            return Failure(str(e) or type(e).__name__)

        if not isinstance(result, (Success, Failure)):
            logger.error(
                "Task %s handler %s returned %r, expected Success or Failure",
                task.id, task.assigned_handler, type(result).__name__,
            )
            return Failure(f"Invalid handler result: {type(result).__name__}")

        if isinstance(result, Failure):
            logger.warning("Task %s failed: %s", task.id, result.error)
        return result

    async def _complete(self, task: Task, result: Success) -> Outcome:
        completed = await self._store.transition_to(
            task.id,
            TaskStatus.COMPLETED,
            {"completed_at": self._clock(), "deliverable_url": result.deliverable_url},
            expected_status=TaskStatus.IN_PROGRESS,
        )
        if not completed:
            logger.warning("Task %s finished but was no longer in_progress; result discarded", task.id)
            return Outcome.SUPERSEDED
        await self._observer.task_completed(task, result.deliverable_url)
        return Outcome.COMPLETED

    async def _fail(self, task: Task, failure: Failure) -> Outcome:
        error = failure.error or "Execution failed"
        attempts = await self._store.increment_attempts(task.id, error)

        if attempts >= self.config.max_attempts or not failure.retryable:
            await self.escalate(task, error, attempts)
            return Outcome.ESCALATED

        await self._store.transition_to(
            task.id, TaskStatus.NEW, expected_status=TaskStatus.IN_PROGRESS
        )
        logger.info("Task %s will retry (attempt %d/%d)", task.id, attempts, self.config.max_attempts)
        await self._observer.task_retrying(task, attempts, error)
        return Outcome.RETRYING

    async def escalate(self, task: Task, error: str, attempts: int) -> Task | None:
        """
        Hand an exhausted task over to a human.

        Creates the urgent review task, marks the original ``failed`` and
        raises an urgent alert. The unique ``escalated_from`` constraint
        makes repeated calls for the same task create nothing new.

        Returns:
            The escalation task, or None if one already existed.
        """
        logger.error("Escalating task %s after %d attempt(s): %s", task.id, attempts, error)

        if task.escalated_from is not None:
            # Never escalate an escalation; the original already alerted
            await self._store.transition_to(task.id, TaskStatus.FAILED)
            await self._observer.task_escalated(task, None, attempts, error)
            return None

        escalation = await self._store.create_escalation(
            task.id,
            f"ESCALATION: {task.title}",
            self.config.escalation_handler,
            description=(
                f"Original task failed after {attempts} attempts.\n\n"
                f"Error: {error}\n\n"
                f"Original task: {task.description}"
            ),
            metadata={
                "escalated_from": task.id,
                "original_handler": task.assigned_handler,
                "error": error,
            },
        )
        await self._store.transition_to(task.id, TaskStatus.FAILED)

        if escalation is None:
            logger.info("Task %s already escalated; not escalating again", task.id)
            return None

        await self._observer.task_escalated(task, escalation, attempts, error)
        return escalation
