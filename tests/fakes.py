"""Test doubles for taskgate's external collaborators."""

from __future__ import annotations

import asyncio
import sqlite3


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingAlertSink:
    def __init__(self) -> None:
        self.alerts: list[dict] = []

    async def notify(self, severity, title, message, metadata=None) -> None:
        self.alerts.append(
            {"severity": severity, "title": title, "message": message, "metadata": metadata}
        )


class FailingAlertSink:
    def __init__(self) -> None:
        self.calls = 0

    async def notify(self, severity, title, message, metadata=None) -> None:
        self.calls += 1
        raise ConnectionError("alert backend down")


class HangingAlertSink:
    async def notify(self, severity, title, message, metadata=None) -> None:
        await asyncio.sleep(3600)


class RecordingActivityLog:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict | None]] = []

    async def record(self, event, message, data=None) -> None:
        self.events.append((event, message, data))

    def names(self) -> list[str]:
        return [event for event, _, _ in self.events]


class FailingActivityLog:
    async def record(self, event, message, data=None) -> None:
        raise RuntimeError("activity log unavailable")


class _BrokenCursor:
    async def __aenter__(self):
        raise sqlite3.OperationalError("database is locked")

    async def __aexit__(self, *exc):
        return False

    def __await__(self):
        raise sqlite3.OperationalError("database is locked")
        yield  # pragma: no cover


class BrokenConnection:
    """Stands in for an unreachable database."""

    def execute(self, *args, **kwargs):
        return _BrokenCursor()
