"""Tests for gctrace line parsing."""

import pytest

from gctrace_analyze.trace import (
    BYTES_PER_MB,
    GCTrace,
    GCTraceParseError,
    GCTraceParser,
    TraceFormat,
    parse_gc_trace,
)


def test_parse_go16_line(go16_line):
    trace = parse_gc_trace(go16_line)

    assert len(trace) == 1
    cycle = trace[0]
    assert cycle.n == 1
    assert cycle.start == 12_000_000
    assert cycle.util == 0.0
    assert cycle.forced is False
    assert cycle.format is TraceFormat.GO_1_6

    assert cycle.clock_sweep_term == 11_000
    assert cycle.clock_root_scan == 0
    assert cycle.clock_sync == 0
    assert cycle.clock_mark == 390_000
    assert cycle.clock_mark_term == 6_100
    assert cycle.end == 12_000_000 + 11_000 + 390_000 + 6_100

    assert cycle.cpu_sweep_term == 11_000
    assert cycle.cpu_mark == 380_000
    assert cycle.cpu_mark_term == 6_100
    assert cycle.cpu_assist == 100_000
    assert cycle.cpu_background == 280_000
    assert cycle.cpu_idle == 0

    assert cycle.heap_trigger == 4 * BYTES_PER_MB
    assert cycle.heap_actual == 4 * BYTES_PER_MB
    assert cycle.heap_marked == 3 * BYTES_PER_MB
    assert cycle.heap_goal == 5 * BYTES_PER_MB
    assert cycle.procs == 4


def test_parse_go15_line_populates_root_scan_and_sync(go15_line):
    cycle = parse_gc_trace(go15_line)[0]

    assert cycle.format is TraceFormat.GO_1_5
    assert cycle.clock_sweep_term == 53_000
    assert cycle.clock_root_scan == 210_000
    assert cycle.clock_sync == 31_000
    assert cycle.clock_mark == 1_000_000
    assert cycle.clock_mark_term == 120_000
    assert cycle.end - cycle.start == cycle.clock_total

    assert cycle.cpu_root_scan == 210_000
    assert cycle.cpu_sync == 0
    assert cycle.cpu_mark == 1_300_000
    assert (cycle.cpu_assist, cycle.cpu_background, cycle.cpu_idle) == (
        400_000,
        800_000,
        100_000,
    )


def test_forced_suffix_is_stripped(go16_line):
    cycle = parse_gc_trace(go16_line + " (forced)")[0]

    assert cycle.forced is True
    assert cycle.procs == 4


def test_benign_warning_yields_empty_trace():
    trace = parse_gc_trace("testing: warning: no tests to run")

    assert len(trace) == 0
    assert list(trace) == []


def test_other_output_is_ignored_and_order_kept(sample_trace_text):
    trace = parse_gc_trace(sample_trace_text)

    assert [cycle.n for cycle in trace] == [1, 2, 3, 4]
    assert [cycle.forced for cycle in trace] == [True, False, False, False]


def test_hash_marker_before_index_is_accepted():
    line = "gc #7 @1.5s 3%: 0.1+2.0+0.2 ms clock, 0.1+1/2/3+0.2 ms cpu, 8->9->4 MB, 10 MB goal, 2 P"

    cycle = parse_gc_trace(line)[0]

    assert cycle.n == 7
    assert cycle.start == 1_500_000_000
    assert cycle.util == 0.03


def test_parts_may_appear_in_any_order():
    line = "gc 1 @0.012s 0%: 4 P, 5 MB goal, 4->4->3 MB, 0.011+0.39+0.0061 ms clock"

    cycle = parse_gc_trace(line)[0]

    assert cycle.procs == 4
    assert cycle.heap_goal == 5 * BYTES_PER_MB
    assert cycle.clock_mark == 390_000


@pytest.mark.parametrize("phases", ["0.1+0.2", "0.1+0.2+0.3+0.4", "0.1+0.2+0.3+0.4+0.5+0.6"])
def test_unsupported_clock_arity_is_an_error(phases):
    line = f"gc 1 @0.012s 0%: {phases} ms clock, 4 P"

    with pytest.raises(GCTraceParseError, match="unexpected number of phases"):
        parse_gc_trace(line)


def test_unsupported_cpu_arity_is_an_error():
    line = "gc 1 @0.012s 0%: 0.1+0.2+0.3 ms clock, 0.1+0.2 ms cpu"

    with pytest.raises(GCTraceParseError, match="unexpected number of phases: 2"):
        parse_gc_trace(line)


def test_cpu_breakdown_needs_three_values():
    line = "gc 1 @0.012s 0%: 0.1+0.2+0.3 ms clock, 0.1+0.2/0.3+0.4 ms cpu"

    with pytest.raises(GCTraceParseError, match="assist/background/idle"):
        parse_gc_trace(line)


def test_unknown_part_aborts_the_whole_parse(go16_line):
    text = "\n".join([go16_line, "gc 2 @0.1s 1%: 0.1+0.2+0.3 ms clock, 12 widgets", go16_line])

    with pytest.raises(GCTraceParseError, match="12 widgets"):
        parse_gc_trace(text)


def test_malformed_number_is_an_error():
    with pytest.raises(GCTraceParseError, match="invalid number"):
        parse_gc_trace("gc 1 @0.012s 0%: 0.1++0.3 ms clock")


def test_line_without_clock_phases_is_an_error():
    with pytest.raises(GCTraceParseError):
        parse_gc_trace("gc 1 @0.012s 0%: 4->4->3 MB, 4 P")


def test_utilization_above_100_percent_is_an_error():
    with pytest.raises(GCTraceParseError):
        parse_gc_trace("gc 1 @0.012s 150%: 0.1+0.2+0.3 ms clock")


def test_ms_conversion_does_not_accumulate_rounding():
    phases = "+".join(["0.0001"] * 5)
    cycle = parse_gc_trace(f"gc 1 @0.1s 0%: {phases} ms clock")[0]

    assert cycle.clock_total == 500
    assert cycle.end == 100_000_500


def test_parse_lines_accepts_file_lines(go16_line, go15_line):
    lines = [go16_line + "\n", "noise\r\n", go15_line + "\n"]

    trace = GCTraceParser().parse_lines(lines)

    assert [cycle.format for cycle in trace] == [TraceFormat.GO_1_6, TraceFormat.GO_1_5]


def test_without_forced_preserves_order(go16_line):
    lines = []
    for n in range(1, 11):
        suffix = " (forced)" if n in (3, 7) else ""
        lines.append(go16_line.replace("gc 1 ", f"gc {n} ", 1) + suffix)
    trace = parse_gc_trace("\n".join(lines))

    organic = trace.without_forced()

    assert len(trace) == 10
    assert isinstance(organic, GCTrace)
    assert [cycle.n for cycle in organic] == [1, 2, 4, 5, 6, 8, 9, 10]


def test_cycles_are_immutable(go16_line):
    cycle = parse_gc_trace(go16_line)[0]

    with pytest.raises(ValueError):
        cycle.procs = 8
