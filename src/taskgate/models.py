"""Core data models for taskgate."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Lifecycle states for a task."""

    NEW = "new"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.REJECTED)


class Priority(str, Enum):
    """Dispatch priority. Higher rank runs first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.MEDIUM: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


class Severity(str, Enum):
    """Alert severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ApprovalState(str, Enum):
    """Approval state derived from a task's decision fields."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class Task:
    """A unit of work."""

    id: str
    title: str
    assigned_handler: str
    description: str = ""
    status: TaskStatus = TaskStatus.NEW
    priority: Priority = Priority.MEDIUM
    requires_approval: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    # Approval workflow
    approved_at: float | None = None
    approved_by: str | None = None
    rejected_at: float | None = None
    rejected_by: str | None = None
    rejection_reason: str | None = None

    # Execution tracking
    execution_attempts: int = 0
    last_execution_attempt: float | None = None
    execution_error: str | None = None
    deliverable_url: str | None = None
    completed_at: float | None = None
    escalated_from: str | None = None

    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def approval_state(self) -> ApprovalState:
        if self.rejected_at is not None or self.status == TaskStatus.REJECTED:
            return ApprovalState.REJECTED
        if not self.requires_approval or self.approved_at is not None:
            return ApprovalState.APPROVED
        return ApprovalState.PENDING

    def to_row(self) -> dict[str, Any]:
        """Convert to a dict suitable for the tasks table."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "assigned_handler": self.assigned_handler,
            "priority": self.priority.value,
            "requires_approval": 1 if self.requires_approval else 0,
            "metadata": json.dumps(self.metadata),
            "approved_at": self.approved_at,
            "approved_by": self.approved_by,
            "rejected_at": self.rejected_at,
            "rejected_by": self.rejected_by,
            "rejection_reason": self.rejection_reason,
            "execution_attempts": self.execution_attempts,
            "last_execution_attempt": self.last_execution_attempt,
            "execution_error": self.execution_error,
            "deliverable_url": self.deliverable_url,
            "completed_at": self.completed_at,
            "escalated_from": self.escalated_from,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Task:
        """Create from a tasks table row."""
        metadata = json.loads(row["metadata"]) if row.get("metadata") else {}
        return cls(
            id=row["id"],
            title=row["title"],
            description=row.get("description") or "",
            status=TaskStatus(row["status"]),
            assigned_handler=row["assigned_handler"],
            priority=Priority(row["priority"]),
            requires_approval=bool(row.get("requires_approval")),
            metadata=metadata if isinstance(metadata, dict) else {},
            approved_at=row.get("approved_at"),
            approved_by=row.get("approved_by"),
            rejected_at=row.get("rejected_at"),
            rejected_by=row.get("rejected_by"),
            rejection_reason=row.get("rejection_reason"),
            execution_attempts=int(row.get("execution_attempts") or 0),
            last_execution_attempt=row.get("last_execution_attempt"),
            execution_error=row.get("execution_error"),
            deliverable_url=row.get("deliverable_url"),
            completed_at=row.get("completed_at"),
            escalated_from=row.get("escalated_from"),
            created_at=row.get("created_at") or 0.0,
            updated_at=row.get("updated_at") or 0.0,
        )


@dataclass(frozen=True)
class Success:
    """Handler outcome: the work was done."""

    deliverable_url: str | None = None

    @property
    def success(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    """Handler outcome: an expected business failure.

    ``retryable=False`` tells the dispatcher not to spend the remaining
    attempts and to escalate right away.
    """

    error: str
    retryable: bool = True

    @property
    def success(self) -> bool:
        return False


HandlerResult = Success | Failure


@dataclass(frozen=True)
class RateLimit:
    """A named execution budget: ``max_executions`` per ``window_seconds``."""

    resource: str
    max_executions: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limiter check."""

    allowed: bool
    remaining: int
    reset_at: float


@dataclass
class PollResult:
    """Summary of one dispatcher cycle."""

    executed: int = 0
    failed: int = 0
    skipped: int = 0
    rate_limited: bool = False
    paused: bool = False
    remaining: int | None = None
    reset_at: float | None = None
    duration: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "executed": self.executed,
            "failed": self.failed,
            "skipped": self.skipped,
            "rate_limited": self.rate_limited,
            "paused": self.paused,
            "remaining": self.remaining,
            "reset_at": self.reset_at,
            "duration": self.duration,
        }
