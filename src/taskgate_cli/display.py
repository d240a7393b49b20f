"""Rich rendering for the taskgate CLI.

Only formatting lives here; the commands in :mod:`taskgate_cli.cli` do
the work and hand plain models over.
"""

from __future__ import annotations

from datetime import datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from taskgate.models import PollResult, Priority, Task, TaskStatus

STATUS_STYLES = {
    TaskStatus.NEW: "cyan",
    TaskStatus.IN_PROGRESS: "yellow",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "bold red",
    TaskStatus.REJECTED: "magenta",
}

PRIORITY_STYLES = {
    Priority.LOW: "dim",
    Priority.MEDIUM: "white",
    Priority.HIGH: "bold yellow",
    Priority.URGENT: "bold red",
}


def format_ts(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def tasks_table(tasks: list[Task], title: str = "Tasks") -> Table:
    """Build a table with one row per task."""
    table = Table(title=title, expand=False)
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Handler")
    table.add_column("Approval")
    table.add_column("Attempts", justify="right")
    table.add_column("Title")
    table.add_column("Created")

    for task in tasks:
        table.add_row(
            task.id[:12],
            Text(task.priority.value, style=PRIORITY_STYLES[task.priority]),
            Text(task.status.value, style=STATUS_STYLES[task.status]),
            task.assigned_handler,
            task.approval_state.value if task.requires_approval else "-",
            str(task.execution_attempts),
            task.title,
            format_ts(task.created_at),
        )

    if not tasks:
        table.add_row("[dim]No tasks[/dim]", "", "", "", "", "", "", "")

    return table


def task_panel(task: Task) -> Panel:
    """Build a detail panel for one task."""
    text = Text()

    def line(label: str, value: object, style: str = "") -> None:
        text.append(f"{label:<16}", style="dim")
        text.append(f"{value}\n", style=style)

    line("ID", task.id)
    line("Title", task.title, "bold")
    line("Status", task.status.value, STATUS_STYLES[task.status])
    line("Priority", task.priority.value, PRIORITY_STYLES[task.priority])
    line("Handler", task.assigned_handler)
    line("Approval", task.approval_state.value)
    if task.approved_by:
        line("Approved", f"{task.approved_by} at {format_ts(task.approved_at)}")
    if task.rejected_by:
        line("Rejected", f"{task.rejected_by} at {format_ts(task.rejected_at)}")
        line("Reason", task.rejection_reason or "-")
    line("Attempts", task.execution_attempts)
    line("Last attempt", format_ts(task.last_execution_attempt))
    if task.execution_error:
        line("Last error", task.execution_error, "red")
    if task.deliverable_url:
        line("Deliverable", task.deliverable_url, "green")
    if task.escalated_from:
        line("Escalated from", task.escalated_from)
    line("Created", format_ts(task.created_at))
    line("Completed", format_ts(task.completed_at))
    if task.metadata:
        line("Metadata", task.metadata)
    if task.description:
        text.append("\n")
        text.append(task.description)

    return Panel(text, title="[bold]Task[/bold]", border_style="blue")


def poll_summary(result: PollResult) -> Panel:
    """Render the outcome of one poll cycle."""
    text = Text()
    if result.paused:
        text.append("Dispatch is paused; cycle skipped", style="bold yellow")
        return Panel(text, title="[bold]Poll[/bold]", border_style="yellow")
    if result.rate_limited:
        text.append("Rate limit reached; cycle skipped", style="bold yellow")
        text.append(f"\nResets at {format_ts(result.reset_at)}", style="dim")
        return Panel(text, title="[bold]Poll[/bold]", border_style="yellow")

    text.append("Executed: ", style="dim")
    text.append(f"{result.executed}", style="bold green")
    text.append("  Failed: ", style="dim")
    text.append(f"{result.failed}", style="bold red" if result.failed else "bold")
    text.append("  Skipped: ", style="dim")
    text.append(f"{result.skipped}", style="bold")
    text.append(f"  ({result.duration:.2f}s)", style="dim")
    if result.remaining is not None:
        text.append(f"\nCycles left in window: {result.remaining}", style="dim")
    return Panel(text, title="[bold]Poll[/bold]", border_style="green")


def windows_table(windows: list[dict], now: float) -> Table:
    """Render rate limiter windows."""
    table = Table(title="Rate limits")
    table.add_column("Resource")
    table.add_column("Used", justify="right")
    table.add_column("Max", justify="right")
    table.add_column("Window")
    table.add_column("Resets")

    for w in windows:
        reset_at = w["window_start"] + w["window_seconds"]
        expired = now >= reset_at
        table.add_row(
            w["resource"],
            "0" if expired else str(w["count"]),
            str(w["max_count"]),
            f"{w['window_seconds']}s",
            "[dim]expired[/dim]" if expired else format_ts(reset_at),
        )

    if not windows:
        table.add_row("[dim]No windows[/dim]", "", "", "", "")

    return table


def print_error(console: Console, message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {message}")
