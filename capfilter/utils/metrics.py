"""In-process counters for the capability filter.

Provides:
  - LoadLatencyTracker — rolling window of allow-list load durations (avg, p99)
  - FilterMetrics      — request / pass-through / removal / store-error counters
  - MetricsSnapshot    — immutable view served by ``/health/filter``

The filter and the store both write to one FilterMetrics instance owned by
the application. Writes may come from any request concurrently, so every
mutation and every snapshot takes the same lock.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Literal

PassthroughReason = Literal["disabled", "empty_allowlist", "unexpected_shape"]


# ─── LoadLatencyTracker ───────────────────────────────────────────────────────


class LoadLatencyTracker:
    """Rolling window of allow-list load latencies (last *window* samples).

    Not thread-safe on its own; FilterMetrics serialises access to it.
    """

    def __init__(self, window: int = 100) -> None:
        self._times: deque[float] = deque(maxlen=window)

    def record(self, duration_ms: float) -> None:
        self._times.append(duration_ms)

    @property
    def avg_ms(self) -> float:
        """Mean of all samples in the window; 0.0 when empty."""
        if not self._times:
            return 0.0
        return sum(self._times) / len(self._times)

    @property
    def p99_ms(self) -> float:
        """99th percentile of the window.

        Returns 0.0 with fewer than 10 samples — a p99 over a handful of
        loads is noise.
        """
        if len(self._times) < 10:
            return 0.0
        sorted_times = sorted(self._times)
        idx = max(0, int(len(sorted_times) * 0.99) - 1)
        return sorted_times[idx]

    @property
    def count(self) -> int:
        return len(self._times)


# ─── Snapshot ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MetricsSnapshot:
    """Point-in-time copy of the filter counters."""

    requests_total: int
    requests_filtered: int
    passthrough: dict[str, int]
    entries_removed: int
    store_errors: int
    load_avg_ms: float
    load_p99_ms: float

    def as_dict(self) -> dict:
        return {
            "requests_total": self.requests_total,
            "requests_filtered": self.requests_filtered,
            "passthrough": dict(self.passthrough),
            "entries_removed": self.entries_removed,
            "store_errors": self.store_errors,
            "load_avg_ms": round(self.load_avg_ms, 3),
            "load_p99_ms": round(self.load_p99_ms, 3),
        }


# ─── FilterMetrics ────────────────────────────────────────────────────────────


@dataclass
class FilterMetrics:
    """Counters describing what the capability filter has done since startup.

    Fields:
        requests_total:    metadata requests seen by the filter.
        requests_filtered: requests where the allow-list was applied.
        passthrough:       requests returned unfiltered, keyed by reason.
        entries_removed:   resource descriptors removed across all requests.
        store_errors:      allow-list loads that failed and returned empty.
    """

    requests_total: int = 0
    requests_filtered: int = 0
    passthrough: dict[str, int] = field(
        default_factory=lambda: {
            "disabled": 0,
            "empty_allowlist": 0,
            "unexpected_shape": 0,
        }
    )
    entries_removed: int = 0
    store_errors: int = 0
    load_latency: LoadLatencyTracker = field(default_factory=LoadLatencyTracker)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_request(self) -> None:
        with self._lock:
            self.requests_total += 1

    def record_filtered(self, removed: int) -> None:
        with self._lock:
            self.requests_filtered += 1
            self.entries_removed += removed

    def record_passthrough(self, reason: PassthroughReason) -> None:
        with self._lock:
            self.passthrough[reason] = self.passthrough.get(reason, 0) + 1

    def record_store_error(self) -> None:
        with self._lock:
            self.store_errors += 1

    def record_load(self, duration_ms: float) -> None:
        with self._lock:
            self.load_latency.record(duration_ms)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self.requests_total,
                requests_filtered=self.requests_filtered,
                passthrough=dict(self.passthrough),
                entries_removed=self.entries_removed,
                store_errors=self.store_errors,
                load_avg_ms=self.load_latency.avg_ms,
                load_p99_ms=self.load_latency.p99_ms,
            )
