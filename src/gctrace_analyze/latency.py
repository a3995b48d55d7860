"""Log-scale latency histogram for live operation timings.

LatencyDist records durations in 256 exponential buckets between 1ns and 1s.
It is fed from many threads at once on the measured hot path, so writes take
no shared lock: counters are split into a fixed number of stripes, each
guarded by its own lock, and threads are spread across the stripes. Memory
stays constant however many threads come and go. Readers merge the stripes,
so a read taken while writers are still running may be slightly stale.
"""

from __future__ import annotations

import itertools
import math
import os
import re
import threading
import time
from decimal import Decimal

from gctrace_analyze.trace import NS_PER_MS, NS_PER_SECOND, Nanoseconds

BUCKET_COUNT = 256
STRIPE_COUNT = min(os.cpu_count() or 1, 64)
LATENCY_MAX: Nanoseconds = NS_PER_SECOND

_LATENCY_BASE = math.log(LATENCY_MAX)

# _BOUNDS[b] is the inclusive lower bound of bucket b; _BOUNDS[b + 1] its
# exclusive upper bound.
_BOUNDS: list[float] = [0.0] + [
    float(LATENCY_MAX) ** (b / BUCKET_COUNT) for b in range(1, BUCKET_COUNT + 1)
]

# Nine fill levels per display row, from empty to full.
BAR_BLOCKS = " ▁▂▃▄▅▆▇█"
_LEVELS_PER_ROW = len(BAR_BLOCKS) - 1

_TICK_LABELS = ["1ns", "10ns", "100ns", "1µs", "10µs", "100µs", "1ms", "10ms", "100ms"]

_DURATION_PATTERN: re.Pattern[str] = re.compile(
    r"^(?P<value>[0-9]*\.?[0-9]+(?:[eE][+-]?[0-9]+)?)\s*(?P<unit>ns|us|µs|ms|s)?$"
)
_UNIT_NS = {"ns": 1, "us": 1_000, "µs": 1_000, "ms": NS_PER_MS, "s": NS_PER_SECOND}


def format_duration(ns: float) -> str:
    """Format nanoseconds in a human-readable way."""
    if ns == 0:
        return "0s"
    for unit, scale in (("s", 1e9), ("ms", 1e6), ("µs", 1e3)):
        if abs(ns) >= scale:
            return f"{ns / scale:.4g}{unit}"
    return f"{ns:.4g}ns"


def parse_duration(text: str) -> Nanoseconds:
    """Parse a duration such as "1500", "250us" or "1.5ms" into nanoseconds.

    A bare number is taken to be nanoseconds.
    """
    match = _DURATION_PATTERN.match(text.strip())
    if not match:
        raise ValueError(f"invalid duration: {text!r}")
    scale = _UNIT_NS[match.group("unit") or "ns"]
    return int(Decimal(match.group("value")) * scale)


class _Stripe:
    """One lock-guarded slice of the counters."""

    __slots__ = ("buckets", "count", "lock", "max")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.count = 0
        self.max: Nanoseconds = 0
        self.buckets = [0] * BUCKET_COUNT


class LatencyDist:
    """Distribution of latencies in exponential buckets between 1ns and 1s."""

    def __init__(self, stripes: int = STRIPE_COUNT) -> None:
        if stripes < 1:
            raise ValueError(f"stripe count must be positive, got {stripes}")
        self._stripes = [_Stripe() for _ in range(stripes)]
        self._next_stripe = itertools.count()
        # Only a stripe index is kept per thread; it goes away with the thread.
        self._local = threading.local()

    def _stripe(self) -> _Stripe:
        index = getattr(self._local, "stripe", None)
        if index is None:
            index = next(self._next_stripe) % len(self._stripes)
            self._local.stripe = index
        return self._stripes[index]

    def start(self) -> LatencyTracker:
        """Start a tracker that records the time between successive ticks."""
        return LatencyTracker(self)

    def add(self, t: Nanoseconds) -> None:
        """Record one sample of t nanoseconds. Safe to call from any thread."""
        b = self.to_bucket(t)
        stripe = self._stripe()
        with stripe.lock:
            stripe.count += 1
            # Raised before the bucket so a reader never sees a bucketed
            # sample larger than max.
            if t > stripe.max:
                stripe.max = t
            stripe.buckets[b] += 1

    @property
    def count(self) -> int:
        return sum(stripe.count for stripe in self._stripes)

    @property
    def max(self) -> Nanoseconds:
        return max(stripe.max for stripe in self._stripes)

    def buckets(self) -> list[int]:
        """Return a best-effort snapshot of the merged bucket counts."""
        merged = [0] * BUCKET_COUNT
        for stripe in self._stripes:
            for b, count in enumerate(stripe.buckets[:]):
                merged[b] += count
        return merged

    @staticmethod
    def to_bucket(t: float) -> int:
        if t < 1:
            return 0
        # Log base LATENCY_MAX.
        b = int(BUCKET_COUNT * math.log(t) / _LATENCY_BASE)
        if b >= BUCKET_COUNT:
            return BUCKET_COUNT - 1
        # Snap to the precomputed edges so from_bucket(to_bucket(t)) holds t.
        if t < _BOUNDS[b]:
            return b - 1
        if t >= _BOUNDS[b + 1] and b + 1 < BUCKET_COUNT:
            return b + 1
        return b

    @staticmethod
    def from_bucket(b: int) -> tuple[float, float]:
        """Return the half-open [lo, hi) range of bucket b in nanoseconds."""
        if not 0 <= b < BUCKET_COUNT:
            raise IndexError(f"bucket {b} out of range")
        return _BOUNDS[b], _BOUNDS[b + 1]

    def quantile(self, q: float) -> float:
        """Approximate the q-quantile as the midpoint of its bucket.

        The result is capped at the observed maximum. Returns 0 when no
        samples were recorded.
        """
        buckets = self.buckets()
        total = sum(buckets)
        if total == 0:
            return 0.0
        n = math.floor(q * (total + 1) + 0.5)
        n = max(0, min(n, total - 1))

        b = 0
        while n >= buckets[b]:
            n -= buckets[b]
            b += 1

        # TODO: Assume samples are log-distributed within the bucket
        # instead of taking the linear midpoint.
        lo, hi = self.from_bucket(b)
        return min((lo + hi) / 2, float(self.max))

    def format_table(self) -> str:
        """List the range and count of every non-empty bucket."""
        lines = []
        for b, count in enumerate(self.buckets()):
            if count == 0:
                continue
            lo, hi = self.from_bucket(b)
            lines.append(f"[{format_duration(lo):>12},{format_duration(hi):>12}) {count}")
        if not lines:
            return "no samples"
        return "\n".join(lines)

    def format_hist(self, width: int = 70, height: int = 5) -> str:
        """Render a width x height block-character histogram.

        Bar heights are log-scaled against the tallest column. Each row is
        labelled with the count at which it becomes completely filled, and
        the duration axis is ticked at powers of ten.
        """
        if width < 1 or height < 1:
            raise ValueError(f"histogram size must be positive, got {width}x{height}")

        buckets = self.buckets()
        if sum(buckets) == 0:
            return "no samples"

        columns = _resample(buckets, width)
        scale = math.log1p(max(columns))
        levels = [_bar_levels(count, scale, height) for count in columns]

        lines = []
        for row in range(height):
            floor_level = (height - 1 - row) * _LEVELS_PER_ROW
            bar = "".join(
                BAR_BLOCKS[max(0, min(_LEVELS_PER_ROW, level - floor_level))]
                for level in levels
            )
            # Inverse of _bar_levels at the level that fills this row.
            row_count = math.expm1((height - row) / height * scale)
            lines.append(f"{bar} {_format_count(row_count)}")

        ticks = ["─"] * width
        labels = [" "] * width
        label_end = 0
        for power, label in enumerate(_TICK_LABELS):
            column = int(width * power * math.log(10) / _LATENCY_BASE)
            if column >= width:
                break
            ticks[column] = "┬"
            if column >= label_end and column + len(label) <= width:
                labels[column : column + len(label)] = list(label)
                label_end = column + len(label) + 1
        lines.append("".join(ticks))
        lines.append("".join(labels).rstrip())
        return "\n".join(lines)


class LatencyTracker:
    """Records the time between successive calls to tick()."""

    def __init__(self, dist: LatencyDist) -> None:
        self._dist = dist
        self._last = time.perf_counter_ns()

    def tick(self) -> None:
        now = time.perf_counter_ns()
        self._dist.add(now - self._last)
        self._last = now


def _resample(buckets: list[int], width: int) -> list[float]:
    """Resample bucket counts into width columns.

    A bucket straddling a column boundary contributes to each column in
    proportion to its overlap.
    """
    step = len(buckets) / width
    columns = []
    for column in range(width):
        lo, hi = column * step, (column + 1) * step
        total = 0.0
        b = int(lo)
        while b < hi and b < len(buckets):
            total += buckets[b] * (min(hi, b + 1) - max(lo, b))
            b += 1
        columns.append(total)
    return columns


def _bar_levels(count: float, scale: float, height: int) -> int:
    if count <= 0 or scale <= 0:
        return 0
    levels = round(math.log1p(count) / scale * height * _LEVELS_PER_ROW)
    return max(1, levels)


def _format_count(count: float) -> str:
    if count >= 100:
        return f"{count:.0f}"
    return f"{count:.3g}"
