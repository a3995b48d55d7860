"""Parser for Go runtime GC trace lines (GODEBUG=gctrace=1).

Two historical line layouts are understood:

- Go 1.5: five wall-clock phases (sweep termination, root scan, sync, mark,
  mark termination)::

      gc 1 @0.011s 2%: 0.045+0.35+0.010+1.2+0.12 ms clock, ...

- Go 1.6 and later: three wall-clock phases (sweep termination, mark, mark
  termination)::

      gc 1 @0.012s 0%: 0.011+0.39+0.0061 ms clock, 0.011+0.10/0.28/0+0.0061 ms cpu,
      4->4->3 MB, 5 MB goal, 4 P

The layout is selected by the number of phases, so one parser handles both
without a version switch.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, RootModel, ValidationError

# ============================================================
# TYPE ALIASES
# ============================================================

Nanoseconds: TypeAlias = int
ByteCount: TypeAlias = int

NS_PER_MS = 1_000_000
NS_PER_SECOND = 1_000_000_000
BYTES_PER_MB = 1024 * 1024

FORCED_SUFFIX = " (forced)"


class TraceFormat(str, Enum):
    """Variant of the gctrace line layout."""

    GO_1_5 = "go1.5"  # five wall-clock phases
    GO_1_6 = "go1.6"  # three wall-clock phases

    @property
    def phase_count(self) -> int:
        return 5 if self is TraceFormat.GO_1_5 else 3


class GCTraceParseError(ValueError):
    """Raised when a gctrace line cannot be interpreted."""


# ============================================================
# PYDANTIC MODELS
# ============================================================


class GCCycle(BaseModel):
    """One completed GC cycle, as reported by a single gctrace line."""

    model_config = ConfigDict(frozen=True)

    # 1-based index of this GC cycle.
    n: int = Field(ge=1)
    format: TraceFormat

    # Relative to when the program began executing.
    start: Nanoseconds = Field(ge=0)
    end: Nanoseconds = Field(ge=0)

    # Overall CPU utilized by GC since the program began executing.
    util: float = Field(ge=0.0, le=1.0)

    # True if this cycle was a forced STW cycle.
    forced: bool = False

    # Wall-clock phase durations. Sweep termination, sync and mark
    # termination are STW. Root scan and sync are 0 in the Go 1.6 format.
    clock_sweep_term: Nanoseconds = Field(default=0, ge=0)
    clock_root_scan: Nanoseconds = Field(default=0, ge=0)
    clock_sync: Nanoseconds = Field(default=0, ge=0)
    clock_mark: Nanoseconds = Field(default=0, ge=0)
    clock_mark_term: Nanoseconds = Field(default=0, ge=0)

    # CPU time of each phase.
    cpu_sweep_term: Nanoseconds = Field(default=0, ge=0)
    cpu_root_scan: Nanoseconds = Field(default=0, ge=0)
    cpu_sync: Nanoseconds = Field(default=0, ge=0)
    cpu_mark: Nanoseconds = Field(default=0, ge=0)
    cpu_mark_term: Nanoseconds = Field(default=0, ge=0)

    # Breakdown of cpu_mark.
    cpu_assist: Nanoseconds = Field(default=0, ge=0)
    cpu_background: Nanoseconds = Field(default=0, ge=0)
    cpu_idle: Nanoseconds = Field(default=0, ge=0)

    heap_trigger: ByteCount = Field(default=0, ge=0)
    heap_actual: ByteCount = Field(default=0, ge=0)
    heap_marked: ByteCount = Field(default=0, ge=0)
    heap_goal: ByteCount = Field(default=0, ge=0)

    # GOMAXPROCS during this cycle.
    procs: int = Field(default=0, ge=0)

    @property
    def clock_total(self) -> Nanoseconds:
        return (
            self.clock_sweep_term
            + self.clock_root_scan
            + self.clock_sync
            + self.clock_mark
            + self.clock_mark_term
        )


class GCTrace(RootModel[list[GCCycle]]):
    """Ordered, append-only sequence of GC cycles from one execution."""

    root: list[GCCycle] = Field(default_factory=list)

    def __iter__(self) -> Iterator[GCCycle]:  # type: ignore[override]
        return iter(self.root)

    def __getitem__(self, index: int) -> GCCycle:
        return self.root[index]

    def __len__(self) -> int:
        return len(self.root)

    def append(self, cycle: GCCycle) -> None:
        self.root.append(cycle)

    def without_forced(self) -> GCTrace:
        """Return the cycles that were not forced, preserving order."""
        return GCTrace([cycle for cycle in self.root if not cycle.forced])


# ============================================================
# TRACE PARSER
# ============================================================


class GCTraceParser:
    """Parser for gctrace output interleaved with arbitrary other output."""

    LINE_PATTERN: re.Pattern[str] = re.compile(
        r"^gc #?(?P<n>[0-9]+) @(?P<start>[0-9.]+)s (?P<util>[0-9]+)%: (?P<details>.*)$",
        re.MULTILINE,
    )

    CLOCK_PATTERN: re.Pattern[str] = re.compile(r"^(?P<phases>[+0-9.]+) ms clock$")
    CPU_PATTERN: re.Pattern[str] = re.compile(r"^(?P<phases>[+/0-9.]+) ms cpu$")
    HEAP_PATTERN: re.Pattern[str] = re.compile(
        r"^(?P<trigger>[0-9.]+)->(?P<actual>[0-9.]+)->(?P<marked>[0-9.]+) MB$"
    )
    GOAL_PATTERN: re.Pattern[str] = re.compile(r"^(?P<goal>[0-9.]+) MB goal$")
    PROCS_PATTERN: re.Pattern[str] = re.compile(r"^(?P<procs>[0-9]+) P$")

    def parse(self, text: str) -> GCTrace:
        """Parse every gctrace line in text. Other lines are ignored.

        Any malformed gctrace line aborts the whole parse with
        GCTraceParseError; a partial trace is never returned.
        """
        trace = GCTrace()
        for match in self.LINE_PATTERN.finditer(text):
            trace.append(self._parse_line(match))
        return trace

    def parse_lines(self, lines: Iterable[str]) -> GCTrace:
        """Parse an iterable of lines, such as an open file."""
        return self.parse("\n".join(line.rstrip("\r\n") for line in lines))

    def _parse_line(self, match: re.Match[str]) -> GCCycle:
        start = _to_int_units(match.group("start"), NS_PER_SECOND)
        fields: dict[str, Any] = {
            "n": int(match.group("n")),
            "start": start,
            "end": start,
            "util": int(match.group("util")) / 100,
        }

        details = match.group("details").rstrip()
        if details.endswith(FORCED_SUFFIX):
            fields["forced"] = True
            details = details.removesuffix(FORCED_SUFFIX)

        for part in details.split(","):
            self._parse_part(part.strip(), fields)

        try:
            return GCCycle(**fields)
        except ValidationError as e:
            raise GCTraceParseError(f"invalid gctrace line {match.group(0)!r}: {e}") from e

    def _parse_part(self, part: str, fields: dict[str, Any]) -> None:
        if match := self.CLOCK_PATTERN.match(part):
            phases = [_to_int_units(p, NS_PER_MS) for p in match.group("phases").split("+")]
            trace_format = _format_for_arity(len(phases))
            fields["format"] = trace_format
            fields["end"] = fields["start"] + sum(phases)
            fields.update(_assign_phases("clock", trace_format, phases))
            return

        if match := self.CPU_PATTERN.match(part):
            phases = []
            for phase in match.group("phases").split("+"):
                sub = [_to_int_units(p, NS_PER_MS) for p in phase.split("/")]
                if len(sub) == 3:
                    fields["cpu_assist"], fields["cpu_background"], fields["cpu_idle"] = sub
                elif len(sub) != 1:
                    raise GCTraceParseError(
                        f"expected assist/background/idle CPU breakdown, got {phase!r}"
                    )
                phases.append(sum(sub))
            fields.update(_assign_phases("cpu", _format_for_arity(len(phases)), phases))
            return

        if match := self.HEAP_PATTERN.match(part):
            fields["heap_trigger"] = _to_int_units(match.group("trigger"), BYTES_PER_MB)
            fields["heap_actual"] = _to_int_units(match.group("actual"), BYTES_PER_MB)
            fields["heap_marked"] = _to_int_units(match.group("marked"), BYTES_PER_MB)
            return

        if match := self.GOAL_PATTERN.match(part):
            fields["heap_goal"] = _to_int_units(match.group("goal"), BYTES_PER_MB)
            return

        if match := self.PROCS_PATTERN.match(part):
            fields["procs"] = int(match.group("procs"))
            return

        raise GCTraceParseError(f"failed to parse part of gctrace line: {part!r}")


def parse_gc_trace(text: str) -> GCTrace:
    """Parse gctrace output into a GCTrace."""
    return GCTraceParser().parse(text)


def _format_for_arity(count: int) -> TraceFormat:
    if count == 5:
        return TraceFormat.GO_1_5
    if count == 3:
        return TraceFormat.GO_1_6
    raise GCTraceParseError(f"unexpected number of phases: {count}")


def _assign_phases(
    prefix: str, trace_format: TraceFormat, phases: list[Nanoseconds]
) -> dict[str, Nanoseconds]:
    if trace_format is TraceFormat.GO_1_5:
        names = ["sweep_term", "root_scan", "sync", "mark", "mark_term"]
    else:
        # Root scan and sync were folded into mark in Go 1.6.
        names = ["sweep_term", "mark", "mark_term"]
    return {f"{prefix}_{name}": value for name, value in zip(names, phases, strict=True)}


def _to_int_units(text: str, scale: int) -> int:
    """Convert a decimal string to integer units without float rounding."""
    try:
        return int(Decimal(text) * scale)
    except InvalidOperation as e:
        raise GCTraceParseError(f"invalid number in gctrace line: {text!r}") from e
