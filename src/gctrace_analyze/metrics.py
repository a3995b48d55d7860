"""Reduce a GC trace to a fixed, ordered list of named health metrics."""

from __future__ import annotations

import math
import operator
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

from gctrace_analyze.report import sigfigs
from gctrace_analyze.trace import (
    BYTES_PER_MB,
    NS_PER_SECOND,
    ByteCount,
    GCCycle,
    GCTrace,
    TraceFormat,
)

# ============================================================
# TYPE ALIASES
# ============================================================

Distribution: TypeAlias = list[float]
FieldAccessor: TypeAlias = Callable[[GCCycle], Any]


class UnknownFieldError(KeyError):
    """Raised when a metric asks for a field GCCycle does not have."""


# ============================================================
# PYDANTIC MODELS
# ============================================================


class RunInfo(BaseModel):
    """A GC trace together with the wall-clock window it was captured in."""

    model_config = ConfigDict(frozen=True)

    trace: GCTrace
    start_time: datetime
    end_time: datetime

    @property
    def elapsed_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    @classmethod
    def from_elapsed(cls, trace: GCTrace, elapsed_seconds: float | None = None) -> RunInfo:
        """Build a run ending elapsed_seconds after it started.

        Without an explicit duration the run is taken to end with the last
        cycle in the trace.
        """
        if elapsed_seconds is None:
            elapsed_seconds = trace[-1].end / NS_PER_SECOND if len(trace) else 0.0
        start_time = datetime.now(timezone.utc)
        return cls(
            trace=trace,
            start_time=start_time,
            end_time=start_time + timedelta(seconds=elapsed_seconds),
        )


MetricFn: TypeAlias = Callable[[RunInfo], float]
CheckFn: TypeAlias = Callable[[str, float], str | None]


class MetricThresholds(BaseModel):
    """Configurable warning thresholds and sample filters."""

    gc_rate_warning: float | None = 5.0
    sweep_term_p95_warning_ns: float = 5e6
    mark_term_p95_warning_ns: float = 5e6
    heap_overshoot_p95_warning: float = 0.0
    heap_undershoot_p5_warning: float = -0.2
    cpu_util_p95_warning: float = 0.3

    # Cycles with a smaller heap goal are too noisy for overshoot.
    overshoot_min_goal_bytes: ByteCount = Field(default=10 * BYTES_PER_MB, ge=0)
    # Formats whose CPU accounting is unreliable for the utilization ratio.
    cpu_util_excluded_formats: frozenset[TraceFormat] = frozenset({TraceFormat.GO_1_5})


class Metric(BaseModel):
    """A named reduction of a run to one value, with an optional check."""

    model_config = ConfigDict(frozen=True)

    label: str
    fn: MetricFn
    check: CheckFn | None = None


class MetricValue(BaseModel):
    label: str
    value: float

    @property
    def defined(self) -> bool:
        return not math.isnan(self.value)


class MetricsReport(BaseModel):
    """Metric values and threshold warnings for one run."""

    name: str = ""
    cycle_count: int
    values: list[MetricValue]
    extra: list[MetricValue] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def defined_values(self) -> list[MetricValue]:
        """Values to print: built-in metrics then extras, skipping undefined ones."""
        return [value for value in [*self.values, *self.extra] if value.defined]


# ============================================================
# FIELD PROJECTION
# ============================================================

CYCLE_FIELDS: dict[str, FieldAccessor] = {
    "n": lambda c: c.n,
    "format": lambda c: c.format,
    "start": lambda c: c.start,
    "end": lambda c: c.end,
    "util": lambda c: c.util,
    "forced": lambda c: c.forced,
    "clock_sweep_term": lambda c: c.clock_sweep_term,
    "clock_root_scan": lambda c: c.clock_root_scan,
    "clock_sync": lambda c: c.clock_sync,
    "clock_mark": lambda c: c.clock_mark,
    "clock_mark_term": lambda c: c.clock_mark_term,
    "cpu_sweep_term": lambda c: c.cpu_sweep_term,
    "cpu_root_scan": lambda c: c.cpu_root_scan,
    "cpu_sync": lambda c: c.cpu_sync,
    "cpu_mark": lambda c: c.cpu_mark,
    "cpu_mark_term": lambda c: c.cpu_mark_term,
    "cpu_assist": lambda c: c.cpu_assist,
    "cpu_background": lambda c: c.cpu_background,
    "cpu_idle": lambda c: c.cpu_idle,
    "heap_trigger": lambda c: c.heap_trigger,
    "heap_actual": lambda c: c.heap_actual,
    "heap_marked": lambda c: c.heap_marked,
    "heap_goal": lambda c: c.heap_goal,
    "procs": lambda c: c.procs,
}


def field_accessor(name: str) -> FieldAccessor:
    """Resolve a GCCycle field name to its accessor."""
    try:
        return CYCLE_FIELDS[name]
    except KeyError:
        raise UnknownFieldError(f"unknown field: {name}") from None


def extract(cycles: Iterable[GCCycle], name: str) -> list[Any]:
    """Return the value of field name for every cycle, in order."""
    accessor = field_accessor(name)
    return [accessor(cycle) for cycle in cycles]


# Resolved at import so a bad name fails immediately.
_CPU_MARK = field_accessor("cpu_mark")
_CPU_ASSIST = field_accessor("cpu_assist")
_CPU_BACKGROUND = field_accessor("cpu_background")
_CLOCK_MARK = field_accessor("clock_mark")
_HEAP_MARKED = field_accessor("heap_marked")
_HEAP_ACTUAL = field_accessor("heap_actual")
_HEAP_GOAL = field_accessor("heap_goal")
_PROCS = field_accessor("procs")


# ============================================================
# REDUCTIONS
# ============================================================


def pctile(xs: Iterable[float], pct: float) -> float:
    """Return the pct (0-1) percentile of xs, or NaN if xs is empty."""
    ordered = sorted(xs)
    if not ordered:
        return math.nan
    return ordered[int((len(ordered) - 1) * pct)]


def dist_metric(f: Callable[[RunInfo], Distribution], pct: float) -> MetricFn:
    """Turn a distribution metric into a point metric at percentile pct."""

    def metric(run: RunInfo) -> float:
        return pctile(f(run), pct)

    return metric


def field_distribution(name: str) -> Callable[[RunInfo], Distribution]:
    """Distribution of one numeric field across the non-forced cycles."""
    accessor = field_accessor(name)

    def distribution(run: RunInfo) -> Distribution:
        return [float(accessor(cycle)) for cycle in run.trace.without_forced()]

    return distribution


def gcs_per_sec(run: RunInfo) -> float:
    """Non-forced cycles per second, from the first such cycle to run end.

    Anything before the first organic cycle is treated as warm-up.
    """
    trace = run.trace.without_forced()
    if not len(trace):
        return math.nan
    window = run.elapsed_seconds - trace[0].start / NS_PER_SECOND
    if window <= 0:
        return math.nan
    return len(trace) / window


def marked_mb_per_cpu_sec(run: RunInfo) -> float:
    """Overall mark throughput in MB marked per CPU-second of mark work."""
    trace = run.trace.without_forced()
    mark_total = sum(map(_CPU_MARK, trace))
    marked_total = sum(map(_HEAP_MARKED, trace))
    if mark_total == 0:
        return math.nan
    return marked_total * NS_PER_SECOND / (mark_total * BYTES_PER_MB)


def heap_overshoot(min_goal: ByteCount) -> Callable[[RunInfo], Distribution]:
    """Fractional deviation of the actual heap from its goal, per cycle."""

    def distribution(run: RunInfo) -> Distribution:
        over: Distribution = []
        for cycle in run.trace.without_forced():
            goal = _HEAP_GOAL(cycle)
            # Ignore very small heaps.
            if goal == 0 or goal < min_goal:
                continue
            over.append(_HEAP_ACTUAL(cycle) / goal - 1)
        return over

    return distribution


def cpu_util(excluded: frozenset[TraceFormat]) -> Callable[[RunInfo], Distribution]:
    """Fraction of mark-phase capacity spent on assist and background work."""

    def distribution(run: RunInfo) -> Distribution:
        util: Distribution = []
        for cycle in run.trace.without_forced():
            if cycle.format in excluded:
                continue
            clock_mark = _CLOCK_MARK(cycle)
            procs = _PROCS(cycle)
            if clock_mark == 0 or procs == 0:
                continue
            util.append((_CPU_ASSIST(cycle) + _CPU_BACKGROUND(cycle)) / (clock_mark * procs))
        return util

    return distribution


# ============================================================
# THRESHOLD CHECKS
# ============================================================

_COMPARISONS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}


def warn_if(compare: str, threshold: float) -> CheckFn:
    """Return a check that warns when `value <compare> threshold` holds."""
    try:
        fn = _COMPARISONS[compare]
    except KeyError:
        raise ValueError(f"unknown comparison operator {compare!r}") from None

    def check(name: str, value: float) -> str | None:
        if fn(value, threshold):
            return f"Warning: {sigfigs(value)} {name} {compare} {sigfigs(threshold)}"
        return None

    return check


# ============================================================
# METRIC SET
# ============================================================


def build_metrics(thresholds: MetricThresholds) -> list[Metric]:
    """Build the ordered metric list for the given thresholds."""
    rate_check = None
    if thresholds.gc_rate_warning is not None:
        rate_check = warn_if(">=", thresholds.gc_rate_warning)
    overshoot = heap_overshoot(thresholds.overshoot_min_goal_bytes)

    return [
        Metric(label="GCs/sec", fn=gcs_per_sec, check=rate_check),
        Metric(
            label="95%ile-ns/sweepTerm",
            fn=dist_metric(field_distribution("clock_sweep_term"), 0.95),
            check=warn_if(">=", thresholds.sweep_term_p95_warning_ns),
        ),
        Metric(
            label="95%ile-ns/markTerm",
            fn=dist_metric(field_distribution("clock_mark_term"), 0.95),
            check=warn_if(">=", thresholds.mark_term_p95_warning_ns),
        ),
        Metric(label="MB-marked/CPU/sec", fn=marked_mb_per_cpu_sec),
        Metric(
            label="95%ile-heap-overshoot",
            fn=dist_metric(overshoot, 0.95),
            check=warn_if(">", thresholds.heap_overshoot_p95_warning),
        ),
        Metric(
            label="5%ile-heap-overshoot",
            fn=dist_metric(overshoot, 0.05),
            check=warn_if("<", thresholds.heap_undershoot_p5_warning),
        ),
        Metric(
            label="95%ile-CPU-util",
            fn=dist_metric(cpu_util(thresholds.cpu_util_excluded_formats), 0.95),
            check=warn_if(">", thresholds.cpu_util_p95_warning),
        ),
    ]


DEFAULT_METRICS: list[Metric] = build_metrics(MetricThresholds())


def parse_extra_metrics(text: str) -> dict[str, float]:
    """Collect `metric <value> <name>` lines reported by a benchmark."""
    extra: dict[str, float] = {}
    for line in text.splitlines():
        if not line.startswith("metric "):
            continue
        fields = line.split()
        if len(fields) != 3:
            continue
        try:
            extra[fields[2]] = float(fields[1])
        except ValueError:
            continue
    return extra


def evaluate_metrics(
    run: RunInfo,
    metrics: list[Metric] | None = None,
    *,
    name: str = "",
    extra: dict[str, float] | None = None,
) -> MetricsReport:
    """Compute every metric for run, in order, and collect warnings.

    Undefined (NaN) values are kept in the report but never checked.
    """
    if metrics is None:
        metrics = DEFAULT_METRICS

    values = [MetricValue(label=metric.label, value=metric.fn(run)) for metric in metrics]

    warnings: list[str] = []
    for metric, value in zip(metrics, values, strict=True):
        if metric.check is None or not value.defined:
            continue
        if (warning := metric.check(metric.label, value.value)) is not None:
            warnings.append(warning)

    extra_values = [
        MetricValue(label=label, value=value) for label, value in sorted((extra or {}).items())
    ]

    return MetricsReport(
        name=name,
        cycle_count=len(run.trace),
        values=values,
        extra=extra_values,
        warnings=warnings,
    )
