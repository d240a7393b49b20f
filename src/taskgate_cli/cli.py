#!/usr/bin/env python3
"""
taskgate: operate a task queue from the command line.

Usage:
    taskgate poll --handlers myapp.handlers:registry
    taskgate run --handlers myapp.handlers:registry --interval 120
    taskgate submit "Weekly newsletter" newsletter --priority high --approval
    taskgate list --status new
    taskgate approve 3f2a... --by ops@example.com
    taskgate reject 3f2a... --by ops@example.com --reason "wrong audience"
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import logging
import signal
import sys
import time

from rich.console import Console

from taskgate import HandlerRegistry, Scheduler, Settings
from taskgate.errors import AlreadyDecidedError, ConfigError, NotFoundError
from taskgate.models import Priority, TaskStatus
from taskgate_cli import display


def configure_logging(verbose: bool = False) -> None:
    """Route taskgate logs to stderr; chatty only with --verbose."""
    taskgate_logger = logging.getLogger("taskgate")
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")
    )
    taskgate_logger.addHandler(handler)
    taskgate_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def load_registry(target: str) -> HandlerRegistry:
    """Import ``module:attribute`` and return the HandlerRegistry it names."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"--handlers must look like 'package.module:registry', got {target!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import {module_name}: {e}") from e
    registry = getattr(module, attr, None)
    if not isinstance(registry, HandlerRegistry):
        raise ConfigError(f"{target} is not a HandlerRegistry")
    return registry


# --- Commands ---


async def cmd_poll(scheduler: Scheduler, args: argparse.Namespace, console: Console) -> int:
    result = await scheduler.poll_and_execute()
    if args.json:
        console.print_json(json.dumps(result.as_dict()))
    else:
        console.print(display.poll_summary(result))
    return 0


async def cmd_run(scheduler: Scheduler, args: argparse.Namespace, console: Console) -> int:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    interval = args.interval if args.interval is not None else scheduler.settings.poll_interval
    console.print(f"Polling every {interval:g}s. Ctrl+C to stop.", style="dim")
    scheduler.start(interval)
    try:
        await stop_event.wait()
    finally:
        await scheduler.stop(timeout=scheduler.settings.task_timeout)
    console.print("Stopped.", style="dim")
    return 0


async def cmd_submit(scheduler: Scheduler, args: argparse.Namespace, console: Console) -> int:
    metadata = json.loads(args.metadata) if args.metadata else None
    if metadata is not None and not isinstance(metadata, dict):
        display.print_error(console, "--metadata must be a JSON object")
        return 2

    requires_approval = None
    if args.approval:
        requires_approval = True
    elif args.no_approval:
        requires_approval = False

    task = await scheduler.submit(
        args.title,
        args.handler,
        description=args.description,
        priority=args.priority,
        requires_approval=requires_approval,
        metadata=metadata,
    )
    console.print(display.task_panel(task))
    return 0


async def cmd_list(scheduler: Scheduler, args: argparse.Namespace, console: Console) -> int:
    tasks = await scheduler.list(status=args.status, handler=args.handler, limit=args.limit)
    console.print(display.tasks_table(tasks))
    return 0


async def cmd_show(scheduler: Scheduler, args: argparse.Namespace, console: Console) -> int:
    task = await scheduler.get(args.task_id)
    if task is None:
        raise NotFoundError(args.task_id)
    console.print(display.task_panel(task))
    return 0


async def cmd_approve(scheduler: Scheduler, args: argparse.Namespace, console: Console) -> int:
    task = await scheduler.approve(args.task_id, args.by)
    console.print(f"[green]Approved[/green] {task.id} by {task.approved_by}")
    return 0


async def cmd_reject(scheduler: Scheduler, args: argparse.Namespace, console: Console) -> int:
    task = await scheduler.reject(args.task_id, args.by, args.reason)
    console.print(f"[magenta]Rejected[/magenta] {task.id} by {task.rejected_by}")
    return 0


async def cmd_reconcile(scheduler: Scheduler, args: argparse.Namespace, console: Console) -> int:
    reverted = await scheduler.reconcile()
    console.print(f"Reverted {len(reverted)} stale task(s)")
    for task_id in reverted:
        console.print(f"  {task_id}", style="dim")
    return 0


async def cmd_pause(scheduler: Scheduler, args: argparse.Namespace, console: Console) -> int:
    await scheduler.pause()
    console.print("[yellow]Dispatch paused[/yellow]")
    return 0


async def cmd_resume(scheduler: Scheduler, args: argparse.Namespace, console: Console) -> int:
    await scheduler.resume()
    console.print("[green]Dispatch resumed[/green]")
    return 0


async def cmd_limits(scheduler: Scheduler, args: argparse.Namespace, console: Console) -> int:
    if args.reset:
        await scheduler.limiter.reset(args.reset)
        console.print(f"Reset rate limit for {args.reset}")
        return 0
    windows = await scheduler.limiter.windows()
    console.print(display.windows_table(windows, time.time()))
    return 0


COMMANDS = {
    "poll": cmd_poll,
    "run": cmd_run,
    "submit": cmd_submit,
    "list": cmd_list,
    "show": cmd_show,
    "approve": cmd_approve,
    "reject": cmd_reject,
    "reconcile": cmd_reconcile,
    "pause": cmd_pause,
    "resume": cmd_resume,
    "limits": cmd_limits,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskgate",
        description="Operate a taskgate task queue",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--db",
        default=None,
        help="SQLite database path (default: $TASKGATE_DB_PATH or taskgate.db)",
    )
    parser.add_argument(
        "--handlers",
        default=None,
        help="HandlerRegistry to dispatch with, as 'package.module:attribute'",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Print debug logs to stderr",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    poll = sub.add_parser("poll", help="Run one dispatch cycle now")
    poll.add_argument("--json", action="store_true", help="Print the summary as JSON")

    run = sub.add_parser("run", help="Poll periodically until interrupted")
    run.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between cycles (default: $TASKGATE_POLL_INTERVAL or 120)",
    )

    submit = sub.add_parser("submit", help="Create a task")
    submit.add_argument("title")
    submit.add_argument("handler")
    submit.add_argument("--description", default="")
    submit.add_argument(
        "--priority",
        choices=[p.value for p in Priority],
        default=Priority.MEDIUM.value,
    )
    approval = submit.add_mutually_exclusive_group()
    approval.add_argument("--approval", action="store_true", help="Require a human decision")
    approval.add_argument("--no-approval", action="store_true", help="Run without a decision")
    submit.add_argument("--metadata", default=None, help="JSON object passed to the handler")

    lst = sub.add_parser("list", help="List tasks")
    lst.add_argument("--status", choices=[s.value for s in TaskStatus], default=None)
    lst.add_argument("--handler", default=None)
    lst.add_argument("--limit", type=int, default=50)

    show = sub.add_parser("show", help="Show one task")
    show.add_argument("task_id")

    approve = sub.add_parser("approve", help="Approve a pending task")
    approve.add_argument("task_id")
    approve.add_argument("--by", required=True, help="Who is approving")

    reject = sub.add_parser("reject", help="Reject a pending task")
    reject.add_argument("task_id")
    reject.add_argument("--by", required=True, help="Who is rejecting")
    reject.add_argument("--reason", default=None)

    sub.add_parser("reconcile", help="Revert stale in_progress tasks to new")
    sub.add_parser("pause", help="Pause dispatch for every poller")
    sub.add_parser("resume", help="Resume dispatch")

    limits = sub.add_parser("limits", help="Show rate limit windows")
    limits.add_argument("--reset", metavar="RESOURCE", default=None, help="Drop a window")

    return parser


async def run_command(args: argparse.Namespace, console: Console) -> int:
    settings = Settings.from_env()
    registry = load_registry(args.handlers) if args.handlers else HandlerRegistry()
    scheduler = Scheduler(args.db, settings=settings, registry=registry)

    async with scheduler:
        return await COMMANDS[args.command](scheduler, args, console)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command in ("poll", "run") and not args.handlers:
        parser.error(f"{args.command} needs --handlers; without them every task would fail")

    configure_logging(verbose=args.verbose)
    console = Console()

    try:
        return asyncio.run(run_command(args, console))
    except (NotFoundError, AlreadyDecidedError, ConfigError, ValueError) as e:
        display.print_error(console, str(e))
        return 1
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
