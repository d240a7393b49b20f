"""Human approval gate for tasks.

A gated task (``requires_approval=True``) starts ``pending`` and is never
dispatched until someone approves it. Rejection is terminal. Ungated
tasks are implicitly approved from creation.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from taskgate.errors import AlreadyDecidedError, NotFoundError
from taskgate.models import ApprovalState, Severity, Task, TaskStatus

if TYPE_CHECKING:
    from taskgate.observability import Observer
    from taskgate.store import TaskStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalRule:
    """A named predicate over a task with the severity it implies."""

    name: str
    matches: Callable[[Task], Any]
    severity: Severity = Severity.MEDIUM

    def test(self, task: Task) -> bool:
        try:
            return bool(self.matches(task))
        except Exception:
            # A broken rule must not make a task skip approval
            logger.exception("Approval rule %r raised for task %s", self.name, task.id)
            return False


@dataclass
class ApprovalPolicy:
    """
    Decides whether new tasks need a human decision.

    Rules are keyed by handler name. Auto-execute rules act as a
    whitelist and are checked first; then approval rules; anything that
    matches neither requires approval.

    Example:
        policy = ApprovalPolicy()

        @policy.auto_execute("email", "FAQ replies", Severity.LOW)
        def faq(task):
            return task.metadata.get("category") == "inquiry"

        policy.add_approval_rule(
            "email",
            ApprovalRule("Refunds", lambda t: "refund" in t.title.lower(), Severity.URGENT),
        )
    """

    auto_rules: dict[str, list[ApprovalRule]] = field(default_factory=dict)
    approval_rules: dict[str, list[ApprovalRule]] = field(default_factory=dict)
    default_severity: Severity = Severity.MEDIUM

    def add_auto_rule(self, handler: str, rule: ApprovalRule) -> None:
        self.auto_rules.setdefault(handler, []).append(rule)

    def add_approval_rule(self, handler: str, rule: ApprovalRule) -> None:
        self.approval_rules.setdefault(handler, []).append(rule)

    def auto_execute(self, handler: str, name: str, severity: Severity = Severity.LOW):
        """Decorator form of :meth:`add_auto_rule`."""
        def decorator(func):
            self.add_auto_rule(handler, ApprovalRule(name, func, Severity(severity)))
            return func
        return decorator

    def requires_approval(self, task: Task) -> bool:
        if task.requires_approval:
            return True

        if any(rule.test(task) for rule in self.auto_rules.get(task.assigned_handler, [])):
            return False

        # Matching an approval rule and matching nothing both mean "ask"
        return True

    def matching_rule(self, task: Task) -> ApprovalRule | None:
        for rule in self.approval_rules.get(task.assigned_handler, []):
            if rule.test(task):
                return rule
        return None

    def severity(self, task: Task) -> Severity:
        rule = self.matching_rule(task)
        return rule.severity if rule else self.default_severity


class ApprovalGate:
    """
    Records approve/reject decisions on gated tasks.

    Each decision is a single conditional write that only succeeds while
    no decision exists, so concurrent deciders cannot both win.
    """

    def __init__(
        self,
        store: TaskStore,
        *,
        observer: Observer | None = None,
        policy: ApprovalPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._observer = observer
        self.policy = policy or ApprovalPolicy()
        self._clock = clock

    @staticmethod
    def state(task: Task) -> ApprovalState:
        return task.approval_state

    async def approve(self, task_id: str, approver: str) -> Task:
        """
        Approve a pending task so the dispatcher may pick it up.

        Raises:
            NotFoundError: If the task does not exist.
            AlreadyDecidedError: If the task was already approved or
                rejected, or never required approval.
        """
        task = await self._require_pending(task_id)
        decided = await self._store.update(
            task.id,
            {"approved_at": self._clock(), "approved_by": approver},
            conditions={"approved_at": None, "rejected_at": None, "requires_approval": True},
        )
        return await self._after_decision(task_id, decided, "approved", approver)

    async def reject(self, task_id: str, approver: str, reason: str | None = None) -> Task:
        """
        Reject a pending task. Rejected tasks are never dispatched.

        Raises:
            NotFoundError: If the task does not exist.
            AlreadyDecidedError: If the task was already decided.
        """
        task = await self._require_pending(task_id)
        decided = await self._store.update(
            task.id,
            {
                "status": TaskStatus.REJECTED,
                "rejected_at": self._clock(),
                "rejected_by": approver,
                "rejection_reason": reason,
            },
            conditions={
                "approved_at": None,
                "rejected_at": None,
                "requires_approval": True,
                "status": TaskStatus.NEW,
            },
        )
        return await self._after_decision(task_id, decided, "rejected", approver, reason)

    async def request_approval(self, task: Task) -> Severity:
        """Announce that ``task`` is waiting on a decision."""
        severity = self.policy.severity(task)
        rule = self.policy.matching_rule(task)
        logger.info("Task %s requires approval (severity: %s)", task.id, severity.value)
        if self._observer is not None:
            await self._observer.approval_requested(task, severity, rule.name if rule else None)
        return severity

    async def _require_pending(self, task_id: str) -> Task:
        task = await self._store.get(task_id)
        if task is None:
            raise NotFoundError(task_id)
        state = task.approval_state
        if state != ApprovalState.PENDING:
            raise AlreadyDecidedError(task_id, state.value)
        return task

    async def _after_decision(
        self,
        task_id: str,
        decided: bool,
        outcome: str,
        approver: str,
        reason: str | None = None,
    ) -> Task:
        task = await self._store.get(task_id)
        if task is None:
            raise NotFoundError(task_id)
        if not decided:
            # Lost a race with another decision
            raise AlreadyDecidedError(task_id, task.approval_state.value)

        if reason:
            logger.info("Task %s %s by %s: %s", task_id, outcome, approver, reason)
        else:
            logger.info("Task %s %s by %s", task_id, outcome, approver)
        if self._observer is not None:
            await self._observer.decision(task, outcome, approver, reason)
        return task
