"""Formatting and rendering of metrics reports and latency summaries."""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

from gctrace_analyze.latency import LatencyDist, format_duration
from gctrace_analyze.trace import BYTES_PER_MB, GCTrace

if TYPE_CHECKING:
    from gctrace_analyze.metrics import MetricsReport

# ============================================================
# RICH OUTPUT RENDERING
# ============================================================

GCTRACE_THEME = Theme(
    {
        "critical": "bold red",
        "warning": "bold yellow",
        "success": "bold green",
        "info": "cyan",
        "metric": "white",
        "label": "dim white",
        "header": "bold magenta",
    }
)

console = Console(theme=GCTRACE_THEME)
err_console = Console(theme=GCTRACE_THEME, stderr=True)

LATENCY_QUANTILES = [("P50", 0.5), ("P99", 0.99), ("P99.9", 0.999)]


def sigfigs(v: float) -> str:
    """Format v with three or more significant figures."""
    prec, m = 0, v
    while True:
        if 99.5 <= m or m <= -99.5 or m * 10 == m or m != m:
            return f"{v:.{prec}f}"
        m *= 10
        prec += 1


def bench_alignment() -> str:
    """Separator between values on a benchmark result line.

    Runs of tabs keep the result technically on one line while putting each
    value on its own visual line in a terminal.
    """
    if os.environ.get("TERM") == "dumb":
        return "\t"
    return "\t" * 15 + " "


def format_bench_line(report: MetricsReport, align: str | None = None) -> str:
    """Format a report as one benchmark result line."""
    if align is None:
        align = bench_alignment()
    parts = [f"{report.name}\t{report.cycle_count}" if report.name else str(report.cycle_count)]
    for value in report.defined_values():
        parts.append(f"{align}{sigfigs(value.value):>10} {value.label}")
    return "".join(parts)


def create_key_value_table(title: str, rows: list[tuple[str, str]]) -> Table:
    """Create a simple two-column key/value table."""
    table = Table(title=title, show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="label")
    table.add_column("Value", style="metric")
    for label, value in rows:
        table.add_row(label, value)
    return table


def create_metrics_table(report: MetricsReport) -> Table:
    """Create the metric value table, flagging metrics that raised warnings."""
    warned = {warning.split()[2] for warning in report.warnings}

    table = Table(title="GC Metrics", show_header=True, header_style="header")
    table.add_column("Metric", style="info")
    table.add_column("Value", justify="right", style="metric")
    for value in report.defined_values():
        style = "warning" if value.label in warned else None
        table.add_row(value.label, sigfigs(value.value), style=style)
    return table


def render_warning_banner(warnings: list[str]) -> Panel:
    """Render threshold warnings in a prominent banner."""
    if not warnings:
        return Panel(
            Text("No threshold warnings", style="success"), title="Status", border_style="green"
        )

    warning_text = Text()
    for index, warning in enumerate(warnings):
        line_ending = "\n" if index < len(warnings) - 1 else ""
        warning_text.append(warning + line_ending, style="warning")
    return Panel(
        warning_text, title="[warning]Warnings[/warning]", border_style="yellow", expand=True
    )


def build_trace_overview_rows(trace: GCTrace) -> list[tuple[str, str]]:
    """Build rows describing the parsed trace itself."""
    forced = sum(1 for cycle in trace if cycle.forced)
    rows = [
        ("Cycles", str(len(trace))),
        ("Forced cycles", str(forced)),
    ]
    if len(trace):
        formats = sorted({cycle.format.value for cycle in trace})
        rows.append(("Trace format", ", ".join(formats)))
        rows.append(
            ("Time span", f"{format_duration(trace[0].start)} - {format_duration(trace[-1].end)}")
        )
        rows.append(("Max GOMAXPROCS", str(max(cycle.procs for cycle in trace))))
        peak = max(cycle.heap_actual for cycle in trace)
        rows.append(("Peak heap", f"{peak / BYTES_PER_MB:.1f} MB"))
    return rows


def build_latency_rows(dist: LatencyDist) -> list[tuple[str, str]]:
    """Build count, quantile and maximum rows for a latency distribution."""
    rows = [("Samples", str(dist.count))]
    for label, q in LATENCY_QUANTILES:
        rows.append((label, format_duration(dist.quantile(q))))
    rows.append(("Max", format_duration(dist.max)))
    return rows


def render_rich_output(report: MetricsReport, trace: GCTrace) -> None:
    """Render a metrics report; warnings go to stderr."""
    console.print()
    title = f"GC Trace: {report.name}" if report.name else "GC Trace"
    console.print(Panel(title, style="header", expand=True))
    console.print()

    console.print(create_key_value_table("Trace Overview", build_trace_overview_rows(trace)))
    console.print()

    console.print(create_metrics_table(report))
    console.print()

    err_console.print(render_warning_banner(report.warnings))


def render_latency_output(
    dist: LatencyDist, *, width: int = 70, height: int = 5, table: bool = False
) -> None:
    """Render a latency histogram and its quantile summary."""
    if table:
        console.print(dist.format_table(), markup=False, highlight=False, soft_wrap=True)
        console.print()
    console.print(dist.format_hist(width, height), markup=False, highlight=False, soft_wrap=True)
    console.print()
    console.print(create_key_value_table("Latency", build_latency_rows(dist)))


def export_markdown_report(report: MetricsReport, trace: GCTrace, output_path: Path) -> None:
    """Export a metrics report to Markdown format."""
    md_content: list[str] = []

    md_content.append("# GC Trace Report\n\n")
    md_content.append(f"**Generated:** {datetime.now().isoformat()}\n\n")
    if report.name:
        md_content.append(f"**Benchmark:** {report.name}\n\n")

    md_content.append("## Trace Overview\n\n")
    for label, value in build_trace_overview_rows(trace):
        md_content.append(f"- **{label}:** {value}\n")
    md_content.append("\n")

    md_content.append("## Metrics\n\n")
    md_content.append("| Metric | Value |\n")
    md_content.append("| --- | ---: |\n")
    for value in report.defined_values():
        md_content.append(f"| {value.label} | {sigfigs(value.value)} |\n")
    md_content.append("\n")

    md_content.append("## Warnings\n\n")
    if report.warnings:
        for warning in report.warnings:
            md_content.append(f"- {warning}\n")
    else:
        md_content.append("No threshold warnings.\n")

    output_path.write_text("".join(md_content), encoding="utf-8")
