"""gctrace-analyze: Go GC trace parsing, latency histograms and health metrics."""

__version__ = "1.0.0"
