"""Shared pytest fixtures for gctrace-analyze tests."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from gctrace_analyze.trace import BYTES_PER_MB, NS_PER_MS, GCCycle, TraceFormat

GO16_LINE = (
    "gc 1 @0.012s 0%: 0.011+0.39+0.0061 ms clock, "
    "0.011+0.10/0.28/0+0.0061 ms cpu, 4->4->3 MB, 5 MB goal, 4 P"
)

GO15_LINE = (
    "gc 2 @0.020s 1%: 0.053+0.21+0.031+1.0+0.12 ms clock, "
    "0.21+0.21+0+0.40/0.80/0.10+0.48 ms cpu, 4->4->1 MB, 4 MB goal, 4 P"
)


@pytest.fixture
def go16_line() -> str:
    """Return a Go 1.6 (three-phase) gctrace line."""
    return GO16_LINE


@pytest.fixture
def go15_line() -> str:
    """Return a Go 1.5 (five-phase) gctrace line."""
    return GO15_LINE


@pytest.fixture
def sample_trace_text() -> str:
    """Return benchmark output with gctrace lines mixed into other output."""
    return "\n".join(
        [
            "starting benchmark",
            "gc 1 @0.010s 1%: 0.020+1.0+0.030 ms clock, 0.080+0.50/1.5/0+0.12 ms cpu, "
            "4->4->2 MB, 5 MB goal, 4 P (forced)",
            "gc 2 @0.500s 2%: 0.020+2.0+0.040 ms clock, 0.080+1.0/3.0/0.5+0.16 ms cpu, "
            "18->22->12 MB, 20 MB goal, 4 P",
            "some unrelated output",
            "gc 3 @1.000s 2%: 0.030+2.0+0.050 ms clock, 0.12+0.5/2.5/0.2+0.20 ms cpu, "
            "30->36->20 MB, 40 MB goal, 4 P",
            "gc 4 @1.500s 3%: 0.025+4.0+0.045 ms clock, 0.10+1.0/6.0/0+0.18 ms cpu, "
            "40->41->22 MB, 40 MB goal, 4 P",
            "metric 1234.5 reqs/sec",
            "testing: warning: no tests to run",
        ]
    )


@pytest.fixture
def make_cycle() -> Callable[..., GCCycle]:
    """Return a factory for Go 1.6 cycles with sensible defaults."""

    def factory(**overrides: Any) -> GCCycle:
        fields: dict[str, Any] = {
            "n": 1,
            "format": TraceFormat.GO_1_6,
            "start": 0,
            "end": 0,
            "util": 0.01,
            "clock_sweep_term": 20_000,
            "clock_mark": NS_PER_MS,
            "clock_mark_term": 30_000,
            "cpu_mark": NS_PER_MS,
            "cpu_assist": 250_000,
            "cpu_background": 750_000,
            "heap_trigger": 16 * BYTES_PER_MB,
            "heap_actual": 20 * BYTES_PER_MB,
            "heap_marked": 10 * BYTES_PER_MB,
            "heap_goal": 20 * BYTES_PER_MB,
            "procs": 4,
        }
        fields.update(overrides)
        return GCCycle(**fields)

    return factory
