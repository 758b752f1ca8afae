"""CLI formatters — state indicators, durations, report and plan tables."""

from __future__ import annotations

from typing import Any, Iterable

from rich.console import Console
from rich.table import Table
from rich.text import Text

from hive.orchestration.models import BatchReport, Violation

_STATE_STYLES = {
    "succeeded": ("+ ", "green"),
    "failed": ("x ", "red"),
    "cancelled": ("- ", "yellow"),
    "partially_cancelled": ("- ", "yellow"),
    "running": ("> ", "cyan"),
    "eligible": ("~ ", "dim"),
    "queued": (". ", "dim"),
}


def get_console(no_color: bool = False) -> Console:
    """Get a Rich Console, optionally with color disabled."""
    return Console(no_color=no_color)


def state_indicator(state: str) -> Text:
    """Map a task or batch state to a colored indicator."""
    marker, style = _STATE_STYLES.get(state, ("? ", "dim"))
    return Text(marker + state, style=style)


def format_duration(seconds: float) -> str:
    """Format a duration in human-readable form."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        m = int(seconds // 60)
        s = int(seconds % 60)
        return f"{m}m{s:02d}s"
    h = int(seconds // 3600)
    m = int((seconds % 3600) // 60)
    return f"{h}h {m:02d}m"


def build_table(title: str, columns: list[str], rows: Iterable[list[Any]]) -> Table:
    """Build a Rich table with standard styling."""
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(v if isinstance(v, Text) else str(v) for v in row))
    return table


def report_table(report: BatchReport) -> Table:
    rows = []
    for result in report.results:
        detail = result.reason or result.error or _preview(result.output)
        rows.append([
            result.task_id,
            state_indicator(result.state.value),
            result.error_kind.value if result.error_kind else "",
            format_duration(result.elapsed_seconds),
            detail,
        ])
    for task_id in report.pending:
        rows.append([task_id, state_indicator("running"), "", "", ""])
    title = f"{report.batch_id}: {report.status.value} ({format_duration(report.elapsed_seconds)})"
    return build_table(title, ["Task", "State", "Kind", "Elapsed", "Detail"], rows)


def violations_table(batch_id: str, violations: Iterable[Violation]) -> Table:
    rows = [[v.code.value, ", ".join(v.task_ids), v.message] for v in violations]
    return build_table(f"{batch_id} rejected", ["Code", "Tasks", "Message"], rows)


def plan_table(batch_id: str, levels: list[list[str]]) -> Table:
    rows = [[str(i), ", ".join(tier)] for i, tier in enumerate(levels)]
    return build_table(f"{batch_id} execution plan", ["Tier", "Tasks"], rows)


def _preview(value: Any, limit: int = 60) -> str:
    if value is None:
        return ""
    text = value if isinstance(value, str) else repr(value)
    return text if len(text) <= limit else text[:limit] + "..."
