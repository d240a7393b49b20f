"""CLI tests: commands run end to end against a temporary database."""

import asyncio
import json

import pytest

import taskgate
from taskgate.models import TaskStatus
from taskgate_cli import cli

HANDLERS = "tests.handlers_fixture:registry"


@pytest.fixture(autouse=True)
def quiet_env(monkeypatch):
    for name in ("DB_PATH", "RATE_LIMIT", "ALERT_WEBHOOK_URL"):
        monkeypatch.delenv(f"TASKGATE_{name}", raising=False)
    monkeypatch.setenv("TASKGATE_RATE_LIMIT", "off")
    monkeypatch.setattr(cli, "configure_logging", lambda verbose=False: None)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


def all_tasks(db_path):
    async def fetch():
        async with taskgate.Scheduler(db_path) as scheduler:
            return await scheduler.list()

    return asyncio.run(fetch())


def run(db_path, *args):
    return cli.main(["--db", db_path, *args])


class TestSubmitAndList:
    def test_submit(self, db_path, capsys):
        code = run(db_path, "submit", "Weekly newsletter", "noop-success", "--priority", "high")
        assert code == 0
        assert "Weekly newsletter" in capsys.readouterr().out

        (task,) = all_tasks(db_path)
        assert task.priority.value == "high"
        assert task.requires_approval is False

    def test_submit_with_metadata(self, db_path):
        assert run(db_path, "submit", "Post", "blog", "--metadata", '{"draft": 7}') == 0
        (task,) = all_tasks(db_path)
        assert task.metadata == {"draft": 7}

    def test_metadata_must_be_object(self, db_path, capsys):
        assert run(db_path, "submit", "Post", "blog", "--metadata", "[1, 2]") == 2
        assert "JSON object" in capsys.readouterr().out

    def test_list(self, db_path, capsys):
        run(db_path, "submit", "First", "blog")
        run(db_path, "submit", "Second", "email")
        capsys.readouterr()

        assert run(db_path, "list", "--handler", "email") == 0
        out = capsys.readouterr().out
        assert "Second" in out
        assert "First" not in out

    def test_show(self, db_path, capsys):
        run(db_path, "submit", "Post", "blog", "--description", "Launch announcement")
        (task,) = all_tasks(db_path)
        capsys.readouterr()

        assert run(db_path, "show", task.id) == 0
        assert "Launch announcement" in capsys.readouterr().out

    def test_show_missing(self, db_path, capsys):
        assert run(db_path, "show", "nope") == 1
        assert "Task not found: nope" in capsys.readouterr().out


class TestApproval:
    def test_approve_then_poll(self, db_path, capsys):
        run(db_path, "submit", "Campaign", "noop-success", "--approval")
        (task,) = all_tasks(db_path)

        run(db_path, "--handlers", HANDLERS, "poll", "--json")
        out = capsys.readouterr().out
        assert json.loads(out[out.index("{"):])["executed"] == 0

        assert run(db_path, "approve", task.id, "--by", "ops@example.com") == 0
        assert "Approved" in capsys.readouterr().out

        assert run(db_path, "--handlers", HANDLERS, "poll", "--json") == 0
        out = capsys.readouterr().out
        assert json.loads(out[out.index("{"):])["executed"] == 1

        (done,) = all_tasks(db_path)
        assert done.status == TaskStatus.COMPLETED
        assert done.deliverable_url == "https://example.com/done"

    def test_double_approve_fails(self, db_path, capsys):
        run(db_path, "submit", "Campaign", "noop-success", "--approval")
        (task,) = all_tasks(db_path)
        run(db_path, "approve", task.id, "--by", "a")
        capsys.readouterr()

        assert run(db_path, "approve", task.id, "--by", "b") == 1
        assert "already approved" in capsys.readouterr().out

    def test_reject(self, db_path):
        run(db_path, "submit", "Campaign", "noop-success", "--approval")
        (task,) = all_tasks(db_path)

        assert run(db_path, "reject", task.id, "--by", "ops", "--reason", "wrong audience") == 0
        (rejected,) = all_tasks(db_path)
        assert rejected.status == TaskStatus.REJECTED
        assert rejected.rejection_reason == "wrong audience"


class TestPoll:
    def test_requires_handlers(self, db_path):
        with pytest.raises(SystemExit) as exc:
            run(db_path, "poll")
        assert exc.value.code == 2

    def test_bad_handlers_target(self, db_path, capsys):
        assert run(db_path, "--handlers", "tests.handlers_fixture:not_a_registry", "poll") == 1
        assert "not a HandlerRegistry" in capsys.readouterr().out

    def test_malformed_handlers_target(self, db_path):
        assert run(db_path, "--handlers", "no_colon_here", "poll") == 1

    def test_failure_summary(self, db_path, capsys):
        run(db_path, "submit", "Doomed", "always-fails")
        capsys.readouterr()

        assert run(db_path, "--handlers", HANDLERS, "poll") == 0
        assert "Failed" in capsys.readouterr().out
        (task,) = all_tasks(db_path)
        assert task.execution_attempts == 1
        assert task.execution_error == "nope"

    def test_paused(self, db_path, capsys):
        run(db_path, "submit", "Post", "noop-success")
        assert run(db_path, "pause") == 0
        capsys.readouterr()

        run(db_path, "--handlers", HANDLERS, "poll", "--json")
        out = capsys.readouterr().out
        assert json.loads(out[out.index("{"):])["paused"] is True

        assert run(db_path, "resume") == 0
        run(db_path, "--handlers", HANDLERS, "poll")
        (task,) = all_tasks(db_path)
        assert task.status == TaskStatus.COMPLETED


class TestMaintenance:
    def test_reconcile(self, db_path, capsys):
        assert run(db_path, "reconcile") == 0
        assert "Reverted 0 stale task(s)" in capsys.readouterr().out

    def test_limits(self, db_path, monkeypatch, capsys):
        monkeypatch.setenv("TASKGATE_RATE_LIMIT", "5/hour")
        run(db_path, "--handlers", HANDLERS, "poll")
        capsys.readouterr()

        assert run(db_path, "limits") == 0
        assert "task_executor" in capsys.readouterr().out

        assert run(db_path, "limits", "--reset", "task_executor") == 0
        assert "Reset rate limit for task_executor" in capsys.readouterr().out

    def test_bad_env(self, db_path, monkeypatch, capsys):
        monkeypatch.setenv("TASKGATE_BATCH_SIZE", "many")
        assert run(db_path, "list") == 1
        assert "TASKGATE_BATCH_SIZE" in capsys.readouterr().out
