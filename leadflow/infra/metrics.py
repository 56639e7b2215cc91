# leadflow/infra/metrics.py
from __future__ import annotations
import time
from collections import defaultdict, deque
from threading import Lock
from dataclasses import dataclass, field
from leadflow.infra.logging_config import get_logger

logger = get_logger(__name__)

# Histograms keep a sliding window so a long-running worker does not grow unbounded
HISTOGRAM_WINDOW = 2048


@dataclass
class Counter:
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


@dataclass
class Histogram:
    """Sliding-window distribution (reaction latency, sweep size)"""
    values: deque = field(default_factory=lambda: deque(maxlen=HISTOGRAM_WINDOW))
    total_count: int = 0

    def observe(self, value: float) -> None:
        self.values.append(value)
        self.total_count += 1

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": self.total_count, "min": 0, "max": 0, "avg": 0, "p50": 0, "p95": 0}

        ordered = sorted(self.values)
        window = len(ordered)

        def percentile(p: float) -> float:
            return ordered[min(int(window * p), window - 1)]

        return {
            "count": self.total_count,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / window,
            "p50": percentile(0.50),
            "p95": percentile(0.95),
        }


class MetricsCollector:
    """
    In-process metrics for the dispatch engine.

    Keys are ``name{label=value,...}`` strings so a snapshot can be
    served as plain JSON on ``/metrics``.
    """

    def __init__(self):
        self._counters: dict[str, Counter] = defaultdict(Counter)
        self._histograms: dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key].inc(amount)

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_counter(self, name: str, **labels) -> int:
        """Current value of one counter (0 when never incremented)"""
        key = self._make_key(name, labels or None)
        with self._lock:
            counter = self._counters.get(key)
            return counter.value if counter else 0

    def get_metrics(self) -> dict:
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {
            "counters": counters,
            "histograms": histograms,
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector"""
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    """Increment a counter metric"""
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    """Record a histogram value"""
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Context manager to time operations"""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self.start_time: float | None = None

    def __enter__(self):
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            observe_histogram(self.metric_name, time.monotonic() - self.start_time, **self.labels)


class DispatchMetrics:
    """Dispatch engine metrics tracking"""

    @staticmethod
    def lead_assigned(team_id: str, source: str) -> None:
        inc_counter("leads_assigned_total", team_id=team_id, source=source)

    @staticmethod
    def assignment_conflict(team_id: str) -> None:
        inc_counter("assignment_conflicts_total", team_id=team_id)

    @staticmethod
    def no_available_closer(team_id: str) -> None:
        inc_counter("no_available_closers_total", team_id=team_id)

    @staticmethod
    def rotation(team_id: str, kind: str) -> None:
        inc_counter("lineup_rotations_total", team_id=team_id, kind=kind)

    @staticmethod
    def reminder_scheduled() -> None:
        inc_counter("reminders_scheduled_total")

    @staticmethod
    def reminder_fired(status: str) -> None:
        inc_counter("reminders_fired_total", status=status)

    @staticmethod
    def notification(kind: str, status: str) -> None:
        inc_counter("push_notifications_total", kind=kind, status=status)

    @staticmethod
    def reaction_error(function: str) -> None:
        inc_counter("reaction_errors_total", function=function)

    @staticmethod
    def unexpected_transition(prior: str, new: str) -> None:
        inc_counter("lead_transition_unexpected", prior=prior, new=new)

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def track_reaction_time(function: str) -> Timer:
        return Timer("reaction_processing_seconds", function=function)
