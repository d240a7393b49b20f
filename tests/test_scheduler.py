"""Scheduler tests: wiring, persistence and the poll loop."""

import asyncio

import pytest

import taskgate
from taskgate import db
from taskgate.approval import ApprovalPolicy, ApprovalRule
from taskgate.config import Settings
from taskgate.errors import ConfigError, HandlerRegistrationError
from taskgate.models import Severity, Success, TaskStatus

from .fakes import RecordingActivityLog, RecordingAlertSink


@pytest.fixture
async def scheduler(tmp_path):
    s = taskgate.Scheduler(
        str(tmp_path / "tasks.db"),
        settings=Settings(rate_limit=None),
        alert_sink=RecordingAlertSink(),
        activity_log=RecordingActivityLog(),
    )

    @s.handler("noop-success")
    def noop(task):
        return Success()

    yield s
    await s.close()


class TestScheduler:
    async def test_submit_approve_poll(self, scheduler):
        routine = await scheduler.submit("Routine", "noop-success", priority="high")
        gated = await scheduler.submit("Campaign", "noop-success", priority="urgent", requires_approval=True)

        result = await scheduler.poll_and_execute()
        assert (result.executed, result.failed, result.skipped) == (1, 0, 0)
        assert (await scheduler.get(routine.id)).status == TaskStatus.COMPLETED

        await scheduler.approve(gated.id, "ops@example.com")
        result = await scheduler.poll_and_execute()
        assert (result.executed, result.failed, result.skipped) == (1, 0, 0)
        assert (await scheduler.get(gated.id)).status == TaskStatus.COMPLETED

    async def test_gated_submit_requests_approval(self, scheduler):
        task = await scheduler.submit("Campaign", "noop-success", requires_approval=True)
        alerts = scheduler.observer.alerts.alerts
        assert alerts[0]["title"] == "Task requires approval"
        assert alerts[0]["metadata"]["task_id"] == task.id

    async def test_reject(self, scheduler):
        task = await scheduler.submit("Campaign", "noop-success", requires_approval=True)
        await scheduler.reject(task.id, "ops", "not now")

        result = await scheduler.poll_and_execute()
        assert result.executed == 0
        assert (await scheduler.get(task.id)).status == TaskStatus.REJECTED

    async def test_list(self, scheduler):
        await scheduler.submit("a", "noop-success")
        await scheduler.submit("b", "other")
        assert len(await scheduler.list()) == 2
        assert [t.title for t in await scheduler.list(handler="other")] == ["b"]

    async def test_pause_and_resume(self, scheduler):
        await scheduler.submit("a", "noop-success")
        await scheduler.pause()
        assert (await scheduler.poll_and_execute()).paused is True

        await scheduler.resume()
        assert (await scheduler.poll_and_execute()).executed == 1

    async def test_registry_frozen_after_first_poll(self, scheduler):
        await scheduler.poll_and_execute()
        with pytest.raises(HandlerRegistrationError):
            @scheduler.handler("late")
            def late(task):
                return Success()

    async def test_failed_cycle_is_recorded(self, scheduler, monkeypatch):
        await scheduler.open()

        async def broken_cycle():
            raise RuntimeError("database is locked")

        monkeypatch.setattr(scheduler.dispatcher, "poll_and_execute", broken_cycle)

        with pytest.raises(RuntimeError):
            await scheduler.poll_and_execute()
        assert scheduler.observer.activity.names() == ["cycle_error"]

    async def test_open_is_idempotent(self, scheduler):
        await scheduler.open()
        store = scheduler.store
        await scheduler.open()
        assert scheduler.store is store


class TestPolicy:
    async def test_policy_decides_when_unspecified(self, tmp_path):
        policy = ApprovalPolicy()
        policy.add_auto_rule("email", ApprovalRule("Inquiries", lambda t: t.metadata.get("category") == "inquiry"))

        async with taskgate.Scheduler(
            str(tmp_path / "p.db"),
            policy=policy,
            alert_sink=RecordingAlertSink(),
        ) as scheduler:
            auto = await scheduler.submit("Reply", "email", metadata={"category": "inquiry"})
            gated = await scheduler.submit("Reply", "email", metadata={"category": "complaint"})
            forced = await scheduler.submit("Reply", "email", requires_approval=False)

        assert auto.requires_approval is False
        assert gated.requires_approval is True
        assert forced.requires_approval is False

    async def test_no_policy_means_no_approval(self, scheduler):
        task = await scheduler.submit("Reply", "email")
        assert task.requires_approval is False


class TestPersistence:
    async def test_tasks_survive_restart(self, tmp_path):
        path = str(tmp_path / "tasks.db")

        async with taskgate.Scheduler(path, alert_sink=RecordingAlertSink()) as first:
            task = await first.submit("Campaign", "email", requires_approval=True)
            await first.approve(task.id, "ops")
            await first.pause()

        async with taskgate.Scheduler(path, alert_sink=RecordingAlertSink()) as second:
            loaded = await second.get(task.id)
            assert loaded.approved_by == "ops"
            assert await second.store.is_paused() is True

    async def test_default_sinks_write_to_database(self, tmp_path):
        path = str(tmp_path / "tasks.db")
        async with taskgate.Scheduler(path) as scheduler:
            await scheduler.submit("Campaign", "email", requires_approval=True)

            alerts = await db.list_alerts(scheduler._conn)
            activity = await db.list_activity(scheduler._conn)

        assert alerts[0]["title"] == "Task requires approval"
        assert alerts[0]["severity"] == Severity.MEDIUM.value
        assert [a["event"] for a in activity] == ["approval_requested"]

    async def test_every_gated_task_alerts_with_default_sinks(self, tmp_path):
        path = str(tmp_path / "tasks.db")
        async with taskgate.Scheduler(path) as scheduler:
            first = await scheduler.submit("Campaign A", "email", requires_approval=True)
            second = await scheduler.submit("Campaign B", "email", requires_approval=True)

            alerts = await db.list_alerts(scheduler._conn)

        assert sorted(a["metadata"]["task_id"] for a in alerts) == sorted([first.id, second.id])

    async def test_bad_settings_fail_on_open(self, tmp_path):
        scheduler = taskgate.Scheduler(str(tmp_path / "x.db"), settings=Settings(batch_size=0))
        with pytest.raises(ConfigError):
            await scheduler.open()
        await scheduler.close()


class TestPollLoop:
    async def test_start_and_stop(self, scheduler):
        task = await scheduler.submit("a", "noop-success")

        scheduler.start(interval=0.01)
        for _ in range(100):
            if (await scheduler.get(task.id)).status == TaskStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop(timeout=1)

        assert (await scheduler.get(task.id)).status == TaskStatus.COMPLETED
        assert scheduler._loop_task is None

    async def test_stop_waits_for_running_cycle(self, tmp_path):
        scheduler = taskgate.Scheduler(
            str(tmp_path / "slow.db"),
            settings=Settings(rate_limit=None),
            alert_sink=RecordingAlertSink(),
        )
        started = asyncio.Event()

        @scheduler.handler("slow")
        async def slow(task):
            started.set()
            await asyncio.sleep(0.05)
            return Success()

        async with scheduler:
            task = await scheduler.submit("slow", "slow")
            scheduler.start(interval=10)
            await asyncio.wait_for(started.wait(), 1)
            await scheduler.stop()

            assert (await scheduler.get(task.id)).status == TaskStatus.COMPLETED

    async def test_stop_without_start(self, scheduler):
        await scheduler.stop()

    async def test_loop_survives_cycle_errors(self, scheduler, monkeypatch):
        calls = 0
        original = scheduler.poll_and_execute

        async def flaky_cycle():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("database is locked")
            return await original()

        monkeypatch.setattr(scheduler, "poll_and_execute", flaky_cycle)
        scheduler.start(interval=0.01)
        for _ in range(100):
            if calls >= 2:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop(timeout=1)

        assert calls >= 2
