# fieldops/infra/metrics.py
"""
In-process metrics for the dispatch engine.

Counters and histograms are keyed by name plus sorted labels
(``claims_total{result=won}``) and exposed as JSON at ``GET /metrics``.
Values live in process memory and reset on restart.
"""
from __future__ import annotations
import time
from collections import defaultdict
from threading import Lock
from dataclasses import dataclass, field
from fieldops.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Counter:
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


@dataclass
class Histogram:
    """Distribution of observed values (durations in seconds, fan-out sizes)"""
    values: list[float] = field(default_factory=list)
    max_samples: int = 5000

    def observe(self, value: float) -> None:
        self.values.append(value)
        if len(self.values) > self.max_samples:
            # Keep the most recent half once the buffer is full
            del self.values[: self.max_samples // 2]

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0}

        ordered = sorted(self.values)
        count = len(ordered)
        return {
            "count": count,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / count,
            "p95": ordered[min(int(count * 0.95), count - 1)],
        }


class MetricsCollector:
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


# Process-wide collector; metrics are the one piece of shared state outside the service container
_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Context manager recording the elapsed time of a block into a histogram"""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self.start_time: float | None = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            observe_histogram(self.metric_name, time.perf_counter() - self.start_time, **self.labels)


class AppMetrics:
    """Dispatch-level metric names in one place"""

    @staticmethod
    def chat_event(kind: str) -> None:
        inc_counter("chat_events_total", kind=kind)

    @staticmethod
    def claim(result: str) -> None:
        # result: won | capacity | conflict | duplicate
        inc_counter("claims_total", result=result)

    @staticmethod
    def job_transition(status: str) -> None:
        inc_counter("job_transitions_total", status=status)

    @staticmethod
    def lock_timeout() -> None:
        inc_counter("job_lock_timeouts_total")

    @staticmethod
    def dispatch_sent(audience: str, succeeded: int, failed: int) -> None:
        inc_counter("dispatch_messages_total", succeeded, audience=audience, status="sent")
        if failed:
            inc_counter("dispatch_messages_total", failed, audience=audience, status="failed")

    @staticmethod
    def registration(outcome: str) -> None:
        inc_counter("registrations_total", outcome=outcome)

    @staticmethod
    def session_started(step: str) -> None:
        inc_counter("sessions_started_total", step=step)

    @staticmethod
    def notification(kind: str, status: str) -> None:
        inc_counter("notifications_total", kind=kind, status=status)

    @staticmethod
    def gateway_connection(state: str) -> None:
        inc_counter("gateway_connection_events_total", state=state)

    @staticmethod
    def track_dispatch_time(audience: str) -> Timer:
        return Timer("dispatch_duration_seconds", audience=audience)

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def webhook_received(provider: str) -> None:
        inc_counter("webhooks_received_total", provider=provider)

    @staticmethod
    def rate_limited(scope: str) -> None:
        inc_counter("rate_limited_total", scope=scope)

    @staticmethod
    def webhook_validation_failed(provider: str) -> None:
        inc_counter("webhook_validation_failed_total", provider=provider)
