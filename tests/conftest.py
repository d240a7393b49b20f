from __future__ import annotations

import pytest

from taskgate import db
from taskgate.dispatcher import Dispatcher, DispatcherConfig
from taskgate.handlers import HandlerRegistry
from taskgate.observability import Observer
from taskgate.ratelimit import RateLimiter
from taskgate.store import TaskStore

from .fakes import FakeClock, RecordingActivityLog, RecordingAlertSink


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def conn():
    """Fresh in-memory database per test."""
    c = await db.init_db(":memory:")
    yield c
    await c.close()


@pytest.fixture
def store(conn, clock) -> TaskStore:
    return TaskStore(conn, clock=clock)


@pytest.fixture
def limiter(conn, clock) -> RateLimiter:
    return RateLimiter(conn, clock=clock)


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def alerts() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def activity() -> RecordingActivityLog:
    return RecordingActivityLog()


@pytest.fixture
def observer(alerts, activity) -> Observer:
    return Observer(alerts=alerts, activity=activity)


@pytest.fixture
def dispatcher(store, limiter, registry, observer, clock) -> Dispatcher:
    """Dispatcher without a cycle rate limit, so tests can poll freely."""
    return Dispatcher(
        store,
        limiter,
        registry,
        observer=observer,
        config=DispatcherConfig(rate_limit=None, task_timeout=1.0),
        clock=clock,
    )
