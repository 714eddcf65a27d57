"""
Terminal rendering for the CLI: entry-point help and run summaries (rich).
"""

from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text

from ..core.controller import RunReport, WorkflowController
from ..core.errors import CisflowError, TaskFailedError, TaskTimeoutError


def _fmt_elapsed(sec: float) -> str:
    sec = int(sec)
    h = sec // 3600
    m = (sec % 3600) // 60
    s = sec % 60
    return f"{h:02d}:{m:02d}:{s:02d}" if h else f"{m:02d}:{s:02d}"


def build_help_table(controller: WorkflowController) -> Table:
    """One row per entry point with the tasks it runs."""
    table = Table(title=f"{controller.spec.name}: {controller.spec.description}", expand=False)
    table.add_column("entry point", style="bold cyan")
    table.add_column("description")
    table.add_column("tasks", style="dim")
    for entry, targets in sorted(controller.entry_points.items()):
        order = controller.order_for(entry)
        desc = "; ".join(controller.graph.get(t).description or t for t in targets)
        if any(controller.graph.get(t).destructive for t in order):
            desc += " (with confirmation)"
        table.add_row(entry, desc, " -> ".join(order))
    table.add_row("help", "Show this table", "")
    return table


def build_summary_table(report: RunReport) -> Table:
    status_style = {"ok": "bold green", "skipped": "yellow", "dry-run": "cyan", "failed": "bold red"}
    table = Table(title=f"{report.entry}{' (dry-run)' if report.dry_run else ''}", expand=False)
    table.add_column("task", style="bold")
    table.add_column("status")
    table.add_column("rc", justify="right")
    table.add_column("elapsed", justify="right")
    table.add_column("command", overflow="fold")
    done = {r.task: r for r in report.results}
    for name in report.order:
        r = done.get(name)
        if r is None:
            table.add_row(name, Text("not run", style="dim"), "", "", "")
            continue
        if r.skipped:
            st = "dry-run" if report.dry_run else "skipped"
        else:
            st = "failed" if name == report.failed_task else "ok"
        table.add_row(name, Text(st, style=status_style[st]), str(r.exit_code),
                      _fmt_elapsed(r.duration), r.command)
    return table


def render_report(report: RunReport, console: Optional[Console] = None) -> None:
    console = console or Console()
    console.print(build_summary_table(report))
    for a in report.artifacts:
        console.print(Text(f"{a.name} = {a.value}  ->  {a.registry_key}", style="green"))
    fallbacks = [r for r in report.resolutions.values() if r.fallback_used]
    for r in fallbacks:
        console.print(Text(f"parameter {r.name} used fallback {r.value!r}: {r.error}", style="yellow"))


def render_error(err: CisflowError, console: Optional[Console] = None) -> None:
    """Print the offending task, a readable cause, and captured diagnostics."""
    console = console or Console(stderr=True)
    task = err.task or "-"
    console.print(Text(f"FAILED task={task}: {err.message}", style="bold red"))
    if isinstance(err, (TaskFailedError, TaskTimeoutError)) and err.diagnostics:
        console.print(Text(err.diagnostics, style="dim"))
