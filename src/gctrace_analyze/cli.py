#!/usr/bin/env python3
"""gctrace-analyze - Go GC trace health metrics and latency histograms.

Reads GODEBUG=gctrace=1 output and reports:
- Collection rate, excluding warm-up before the first organic cycle
- 95th percentile STW sweep-termination and mark-termination times
- Mark throughput in MB marked per CPU-second
- Heap overshoot and undershoot relative to the heap goal
- Background and assist CPU utilization during mark
- Extra `metric <value> <name>` lines reported by the benchmark
- Log-scale latency histograms of operation timings
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Annotated

import typer
from rich.markup import escape

from gctrace_analyze import __version__
from gctrace_analyze.latency import LatencyDist, parse_duration
from gctrace_analyze.metrics import (
    MetricThresholds,
    RunInfo,
    build_metrics,
    evaluate_metrics,
    parse_extra_metrics,
)
from gctrace_analyze.report import (
    console,
    err_console,
    export_markdown_report,
    format_bench_line,
    render_latency_output,
    render_rich_output,
)
from gctrace_analyze.trace import BYTES_PER_MB, parse_gc_trace

# ============================================================
# CLI
# ============================================================

app = typer.Typer(
    name="gctrace-analyze",
    help="Go GC trace analyzer: health metrics, threshold warnings and latency histograms",
    add_completion=False,
    rich_markup_mode="rich",
)


@app.command()
def analyze(
    trace_file: Annotated[
        Path,
        typer.Argument(
            help="File containing gctrace output (other lines are ignored)",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
        ),
    ],
    elapsed: Annotated[
        float | None,
        typer.Option(
            "--elapsed",
            "-e",
            help="Wall-clock duration of the run in seconds (default: end of last cycle)",
            min=0.0,
        ),
    ] = None,
    name: Annotated[
        str,
        typer.Option("--name", "-n", help="Benchmark name to print with the results"),
    ] = "",
    bench: Annotated[
        bool,
        typer.Option("--bench", help="Print a single benchmark result line instead of tables"),
    ] = False,
    output: Annotated[
        Path | None,
        typer.Option(
            "--output",
            "-o",
            help="Export the report to a Markdown file (e.g., report.md)",
            file_okay=True,
            dir_okay=False,
        ),
    ] = None,
    rate_warning: Annotated[
        float,
        typer.Option("--rate-warning", help="GCs/sec at or above which to warn", min=0.0),
    ] = 5.0,
    cpu_util_ceiling: Annotated[
        float,
        typer.Option(
            "--cpu-util-ceiling",
            help="95th percentile mark CPU utilization above which to warn",
            min=0.0,
            max=1.0,
        ),
    ] = 0.3,
    min_goal_mb: Annotated[
        float,
        typer.Option(
            "--min-goal-mb",
            help="Ignore cycles with a smaller heap goal when computing overshoot",
            min=0.0,
        ),
    ] = 10.0,
    fail_on_warning: Annotated[
        bool,
        typer.Option("--fail-on-warning", help="Exit with status 1 if any threshold is violated"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose output with parsing details"),
    ] = False,
) -> None:
    """Compute GC health metrics from a gctrace log.

    Exit codes: 0 = success, 1 = error (or warnings with --fail-on-warning).
    """
    try:
        text = trace_file.read_text(encoding="utf-8", errors="replace")

        if verbose:
            console.print(f"[info]Read {len(text.splitlines())} lines from {trace_file}[/info]")

        trace = parse_gc_trace(text)

        # A run that never collected still gets a report; every GC metric is
        # undefined and omitted.
        if not len(trace):
            err_console.print("[warning]No GC cycles found in trace file[/warning]")
        elif verbose:
            forced = len(trace) - len(trace.without_forced())
            console.print(f"[info]Parsed {len(trace)} GC cycles ({forced} forced)[/info]")

        thresholds = MetricThresholds(
            gc_rate_warning=rate_warning,
            cpu_util_p95_warning=cpu_util_ceiling,
            overshoot_min_goal_bytes=int(min_goal_mb * BYTES_PER_MB),
        )
        run = RunInfo.from_elapsed(trace, elapsed)
        report = evaluate_metrics(
            run, build_metrics(thresholds), name=name, extra=parse_extra_metrics(text)
        )

        if bench:
            typer.echo(format_bench_line(report))
            for warning in report.warnings:
                typer.echo(warning, err=True)
        else:
            render_rich_output(report, trace)

        if output:
            export_markdown_report(report, trace, output)
            console.print(f"\n[success]Report exported to {output}[/success]")

    except ValueError as e:
        err_console.print(f"[critical]ERROR: {escape(str(e))}[/critical]", soft_wrap=True)
        sys.exit(1)
    except OSError as e:
        err_console.print(f"[critical]ERROR: {escape(str(e))}[/critical]", soft_wrap=True)
        if verbose:
            err_console.print_exception()
        sys.exit(1)

    if fail_on_warning and report.warnings:
        sys.exit(1)


@app.command()
def latency(
    samples_file: Annotated[
        Path,
        typer.Argument(
            help="File with one duration per line (e.g. 1500, 250us, 1.5ms)",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
        ),
    ],
    width: Annotated[
        int, typer.Option("--width", "-w", help="Histogram width in columns", min=1)
    ] = 70,
    height: Annotated[
        int, typer.Option("--height", help="Histogram height in rows", min=1)
    ] = 5,
    table: Annotated[
        bool, typer.Option("--table", help="Also list every non-empty bucket")
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose output"),
    ] = False,
) -> None:
    """Render a log-scale histogram of operation latencies."""
    dist = LatencyDist()
    try:
        with samples_file.open(encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                try:
                    dist.add(parse_duration(line))
                except ValueError as e:
                    raise ValueError(f"{samples_file}:{line_number}: {e}") from e
    except ValueError as e:
        err_console.print(f"[critical]ERROR: {escape(str(e))}[/critical]", soft_wrap=True)
        sys.exit(1)

    if verbose:
        console.print(f"[info]Read {dist.count} samples from {samples_file}[/info]")

    render_latency_output(dist, width=width, height=height, table=table)


@app.command()
def version() -> None:
    """Display version."""
    console.print(f"gctrace-analyze {__version__}")


if __name__ == "__main__":
    app()
