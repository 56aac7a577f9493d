"""Lightweight in-process metrics for the head office API.

This is intentionally dependency-light for easy deploys (no Prometheus client required).
"""

from __future__ import annotations

from collections import defaultdict, deque
from threading import Lock
from typing import Callable, Optional


class InMemoryMetrics:
    def __init__(self, latency_window: int = 2000) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._status_counts: dict[str, int] = defaultdict(int)
        self._path_counts: dict[str, int] = defaultdict(int)
        self._latencies_ms = deque(maxlen=latency_window)
        self._cache_stats: Optional[Callable[[], dict]] = None

    def bind_cache(self, stats: Callable[[], dict]) -> None:
        """Report the connection descriptor cache counters in snapshots."""
        self._cache_stats = stats

    def observe_request(self, path: str, status_code: int, duration_ms: float) -> None:
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._requests_total += 1
            self._status_counts[bucket] += 1
            self._path_counts[path] += 1
            self._latencies_ms.append(float(duration_ms))

    def snapshot(self) -> dict:
        with self._lock:
            latencies = list(self._latencies_ms)
            sorted_latencies = sorted(latencies)

            def percentile(p: float) -> float:
                if not sorted_latencies:
                    return 0.0
                idx = int((len(sorted_latencies) - 1) * p)
                return round(sorted_latencies[idx], 2)

            snap = {
                "requests_total": self._requests_total,
                "status_counts": dict(self._status_counts),
                "path_counts": dict(self._path_counts),
                "latency_ms": {
                    "samples": len(sorted_latencies),
                    "p50": percentile(0.50),
                    "p95": percentile(0.95),
                    "p99": percentile(0.99),
                },
            }
            stats = self._cache_stats

        # The cache takes its own lock.
        if stats is not None:
            snap["branch_cache"] = stats()
        return snap


metrics = InMemoryMetrics()
