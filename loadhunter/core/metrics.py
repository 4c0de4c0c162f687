from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

_DURATION_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0)


@dataclass(slots=True)
class TimingStats:
    count: int
    avg_ms: float
    p95_ms: float
    min_ms: float
    max_ms: float


@dataclass(slots=True)
class WindowReport:
    window_seconds: float
    inbound_per_min: float
    matches_per_min: float
    drain_per_min: float
    inbound_processing: TimingStats
    matching: TimingStats


@dataclass(slots=True)
class HealthSnapshot:
    uptime_seconds: float
    loop_count: int
    items_processed: int
    items_failed: int
    last_batch_size: int
    last_batch_duration_ms: float
    stale_reset_count: int
    last_batch_at: float | None = None
    background_tasks_pending: int = 0


@dataclass(slots=True)
class _Sample:
    timestamp: float
    duration_ms: float


@dataclass(slots=True)
class _Window:
    started_at: float
    inbound_count: int = 0
    matches_created: int = 0
    drained: int = 0
    inbound_samples: list[_Sample] = field(default_factory=list)
    matching_samples: list[_Sample] = field(default_factory=list)


def compute_timing_stats(durations_ms: list[float]) -> TimingStats:
    if not durations_ms:
        return TimingStats(count=0, avg_ms=0.0, p95_ms=0.0, min_ms=0.0, max_ms=0.0)
    ordered = sorted(durations_ms)
    p95_index = min(math.floor(len(ordered) * 0.95), len(ordered) - 1)
    return TimingStats(
        count=len(ordered),
        avg_ms=round(sum(ordered) / len(ordered), 1),
        p95_ms=round(ordered[p95_index], 1),
        min_ms=round(ordered[0], 1),
        max_ms=round(ordered[-1], 1),
    )


class MetricsRegistry:
    """Per-worker counters, gauges and timing windows.

    Each instance owns its own prometheus ``CollectorRegistry`` so that several
    workers in one test process never share state. Window rates follow
    reset-on-read semantics: ``window_report(reset=True)`` returns the counts
    accumulated since the previous reset and starts a new window. Timing
    statistics always cover the trailing ``window_seconds``.
    """

    def __init__(
        self,
        *,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        namespace: str = "loadhunter",
    ) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._started_at = clock()
        self._window = _Window(started_at=self._started_at)

        self._loop_count = 0
        self._items_processed = 0
        self._items_failed = 0
        self._last_batch_size = 0
        self._last_batch_duration_ms = 0.0
        self._last_batch_at: float | None = None
        self._stale_reset_count = 0
        self._pending_tasks_probe: Callable[[], int] | None = None

        self.registry = CollectorRegistry(auto_describe=True)
        self.loops_total = Counter(
            "worker_loops", "Worker poll loop iterations", namespace=namespace, registry=self.registry
        )
        self.items_processed_total = Counter(
            "items_processed", "Queue items completed", ["outcome"], namespace=namespace, registry=self.registry
        )
        self.items_failed_total = Counter(
            "items_failed", "Queue items routed to fail_item", ["kind"], namespace=namespace, registry=self.registry
        )
        self.stale_resets_total = Counter(
            "stale_resets", "Stale processing items returned to pending", namespace=namespace, registry=self.registry
        )
        self.matches_total = Counter(
            "match_decisions", "Hunt match decisions", ["decision"], namespace=namespace, registry=self.registry
        )
        self.geocode_lookups_total = Counter(
            "geocode_lookups", "Geocode cache lookups", ["result"], namespace=namespace, registry=self.registry
        )
        self.background_failures_total = Counter(
            "background_task_failures", "Supervised background task failures", ["task"], namespace=namespace,
            registry=self.registry,
        )
        self.last_batch_size_gauge = Gauge(
            "last_batch_size", "Size of the most recent claimed batch", namespace=namespace, registry=self.registry
        )
        self.last_batch_duration_gauge = Gauge(
            "last_batch_duration_seconds", "Duration of the most recent batch", namespace=namespace,
            registry=self.registry,
        )
        self.uptime_gauge = Gauge(
            "uptime_seconds", "Seconds since the worker started", namespace=namespace, registry=self.registry
        )
        self.uptime_gauge.set_function(self.uptime_seconds)
        self.processing_seconds = Histogram(
            "inbound_processing_seconds", "Per-item inbound processing duration", namespace=namespace,
            buckets=_DURATION_BUCKETS, registry=self.registry,
        )
        self.matching_seconds = Histogram(
            "matching_seconds", "Per-load matching duration", namespace=namespace,
            buckets=_DURATION_BUCKETS, registry=self.registry,
        )

    def uptime_seconds(self) -> float:
        return max(0.0, self._clock() - self._started_at)

    def bind_pending_tasks_probe(self, probe: Callable[[], int]) -> None:
        self._pending_tasks_probe = probe

    def record_loop(self) -> None:
        with self._lock:
            self._loop_count += 1
        self.loops_total.inc()

    def record_batch(self, size: int, duration_seconds: float) -> None:
        with self._lock:
            self._last_batch_size = size
            self._last_batch_duration_ms = duration_seconds * 1000.0
            self._last_batch_at = self._clock()
        self.last_batch_size_gauge.set(size)
        self.last_batch_duration_gauge.set(duration_seconds)

    def record_item_processed(self, duration_seconds: float, *, outcome: str = "new") -> None:
        now = self._clock()
        with self._lock:
            self._items_processed += 1
            self._window.inbound_count += 1
            self._window.drained += 1
            self._window.inbound_samples.append(_Sample(timestamp=now, duration_ms=duration_seconds * 1000.0))
            self._prune(self._window.inbound_samples, now)
        self.items_processed_total.labels(outcome=outcome).inc()
        self.processing_seconds.observe(duration_seconds)

    def record_item_failed(self, *, kind: str) -> None:
        with self._lock:
            self._items_failed += 1
        self.items_failed_total.labels(kind=kind).inc()

    def record_stale_reset(self, count: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self._stale_reset_count += count
        self.stale_resets_total.inc(count)

    def record_matching(self, duration_seconds: float, *, matches_created: int) -> None:
        now = self._clock()
        with self._lock:
            self._window.matches_created += matches_created
            self._window.matching_samples.append(_Sample(timestamp=now, duration_ms=duration_seconds * 1000.0))
            self._prune(self._window.matching_samples, now)
        self.matching_seconds.observe(duration_seconds)

    def record_match_decision(self, decision: str) -> None:
        self.matches_total.labels(decision=decision).inc()

    def record_geocode(self, result: str) -> None:
        self.geocode_lookups_total.labels(result=result).inc()

    def record_background_failure(self, task_name: str) -> None:
        self.background_failures_total.labels(task=task_name).inc()

    def health_snapshot(self) -> HealthSnapshot:
        with self._lock:
            return HealthSnapshot(
                uptime_seconds=round(self.uptime_seconds(), 3),
                loop_count=self._loop_count,
                items_processed=self._items_processed,
                items_failed=self._items_failed,
                last_batch_size=self._last_batch_size,
                last_batch_duration_ms=round(self._last_batch_duration_ms, 1),
                stale_reset_count=self._stale_reset_count,
                last_batch_at=self._last_batch_at,
                background_tasks_pending=self._pending_tasks_probe() if self._pending_tasks_probe else 0,
            )

    def window_report(self, *, reset: bool = True) -> WindowReport:
        now = self._clock()
        with self._lock:
            window = self._window
            elapsed = max(now - window.started_at, 0.0)
            minutes = max(elapsed / 60.0, 0.1)
            cutoff = now - self.window_seconds
            report = WindowReport(
                window_seconds=round(elapsed, 3),
                inbound_per_min=round(window.inbound_count / minutes, 1),
                matches_per_min=round(window.matches_created / minutes, 1),
                drain_per_min=round(window.drained / minutes, 1),
                inbound_processing=compute_timing_stats(
                    [s.duration_ms for s in window.inbound_samples if s.timestamp >= cutoff]
                ),
                matching=compute_timing_stats(
                    [s.duration_ms for s in window.matching_samples if s.timestamp >= cutoff]
                ),
            )
            if reset:
                self._window = _Window(
                    started_at=now,
                    inbound_samples=[s for s in window.inbound_samples if s.timestamp >= cutoff],
                    matching_samples=[s for s in window.matching_samples if s.timestamp >= cutoff],
                )
            return report

    def render_prometheus(self) -> bytes:
        return generate_latest(self.registry)

    def _prune(self, samples: list[_Sample], now: float) -> None:
        cutoff = now - self.window_seconds
        while samples and samples[0].timestamp < cutoff:
            samples.pop(0)
