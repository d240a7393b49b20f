"""taskgate - a priority task queue with approval gating, bounded retries and rate-limited dispatch."""

from taskgate.approval import ApprovalGate, ApprovalPolicy, ApprovalRule
from taskgate.config import Settings
from taskgate.dispatcher import Dispatcher, DispatcherConfig
from taskgate.errors import (
    AlreadyDecidedError,
    ConfigError,
    HandlerRegistrationError,
    NotFoundError,
    TaskgateError,
    UnknownHandlerError,
)
from taskgate.handlers import HandlerRegistry
from taskgate.models import (
    ApprovalState,
    Failure,
    PollResult,
    Priority,
    RateLimit,
    RateLimitResult,
    Severity,
    Success,
    Task,
    TaskStatus,
)
from taskgate.ratelimit import RateLimiter
from taskgate.scheduler import Scheduler
from taskgate.store import TaskStore

__version__ = "0.1.0"
__all__ = [
    "Scheduler",
    "Settings",
    "Task",
    "TaskStatus",
    "Priority",
    "Severity",
    "ApprovalState",
    "Success",
    "Failure",
    "PollResult",
    "RateLimit",
    "RateLimitResult",
    "TaskStore",
    "RateLimiter",
    "ApprovalGate",
    "ApprovalPolicy",
    "ApprovalRule",
    "Dispatcher",
    "DispatcherConfig",
    "HandlerRegistry",
    "TaskgateError",
    "NotFoundError",
    "AlreadyDecidedError",
    "UnknownHandlerError",
    "HandlerRegistrationError",
    "ConfigError",
]
