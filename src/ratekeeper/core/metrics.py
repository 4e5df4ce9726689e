"""
In-process counters for rate limiter outcomes.

Metric names follow Prometheus naming conventions:
rate_limiter_requests_total, rate_limiter_blocked_total,
rate_limiter_failures_total and rate_limiter_latency_seconds.
Exporting them is left to the embedding application.
"""

import threading
from collections import Counter, defaultdict, deque

Labels = tuple[tuple[str, str], ...]

# Latency samples kept per algorithm
LATENCY_SAMPLES = 1024


class RateLimitMetrics:
    """Thread-safe counters and latency samples, labelled by algorithm."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Counter[tuple[str, Labels]] = Counter()
        self._latencies: defaultdict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=LATENCY_SAMPLES)
        )

    def _inc(self, name: str, **labels: str) -> None:
        self._counters[(name, tuple(sorted(labels.items())))] += 1

    def record(self, algorithm: str, allowed: bool, duration: float) -> None:
        with self._lock:
            self._inc("rate_limiter_requests_total", algorithm=algorithm, allowed=str(allowed).lower())
            if not allowed:
                self._inc("rate_limiter_blocked_total", algorithm=algorithm)
            self._latencies[algorithm].append(duration)

    def record_failure(self, algorithm: str) -> None:
        with self._lock:
            self._inc("rate_limiter_failures_total", algorithm=algorithm)

    def count(self, name: str, **labels: str) -> int:
        with self._lock:
            return self._counters[(name, tuple(sorted(labels.items())))]

    def latencies(self, algorithm: str) -> list[float]:
        with self._lock:
            return list(self._latencies[algorithm])

    def snapshot(self) -> dict[str, int]:
        """Flatten counters into `name{label="value",...}` strings."""
        with self._lock:
            flat = {}
            for (name, labels), value in self._counters.items():
                rendered = ",".join(f'{k}="{v}"' for k, v in labels)
                flat[f"{name}{{{rendered}}}"] = value
            return flat
