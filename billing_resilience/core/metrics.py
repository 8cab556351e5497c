"""In-memory performance counters for the resilient executor.

Process-local and monotonic: counters only go up until an explicit
reset() from the admin API.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict


@dataclass
class PerformanceMetrics:
    """Thread-safe request counters with a running average response time."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rate_limit_hits: int = 0
    circuit_breaker_trips: int = 0
    cache_hits: int = 0
    average_response_time_ms: float = 0.0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    _lock: Lock = field(default_factory=Lock, repr=False)
    _timed_requests: int = field(default=0, repr=False)

    def record_request(self) -> None:
        with self._lock:
            self.total_requests += 1

    def record_success(self, response_time_ms: float | None = None) -> None:
        with self._lock:
            self.successful_requests += 1
            if response_time_ms is not None:
                self._add_response_time(response_time_ms)

    def record_failure(self, response_time_ms: float | None = None) -> None:
        with self._lock:
            self.failed_requests += 1
            if response_time_ms is not None:
                self._add_response_time(response_time_ms)

    def record_rate_limit_hit(self) -> None:
        with self._lock:
            self.rate_limit_hits += 1

    def record_circuit_trip(self) -> None:
        with self._lock:
            self.circuit_breaker_trips += 1

    def record_cache_hit(self) -> None:
        with self._lock:
            self.cache_hits += 1

    def _add_response_time(self, response_time_ms: float) -> None:
        """Fold one sample into the running mean. Caller holds the lock."""
        self._timed_requests += 1
        n = self._timed_requests
        self.average_response_time_ms += (response_time_ms - self.average_response_time_ms) / n

    @property
    def success_rate(self) -> float:
        """Fraction of requests that succeeded; 1.0 before any traffic."""
        if self.total_requests == 0:
            return 1.0
        return self.successful_requests / self.total_requests

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            total = self.total_requests
            return {
                "total_requests": total,
                "successful_requests": self.successful_requests,
                "failed_requests": self.failed_requests,
                "rate_limit_hits": self.rate_limit_hits,
                "circuit_breaker_trips": self.circuit_breaker_trips,
                "cache_hits": self.cache_hits,
                "average_response_time_ms": round(self.average_response_time_ms, 2),
                "success_rate": round(self.successful_requests / total, 4) if total else 1.0,
                "started_at": self.started_at.isoformat(),
            }

    def reset(self) -> None:
        with self._lock:
            self.total_requests = 0
            self.successful_requests = 0
            self.failed_requests = 0
            self.rate_limit_hits = 0
            self.circuit_breaker_trips = 0
            self.cache_hits = 0
            self.average_response_time_ms = 0.0
            self._timed_requests = 0
            self.started_at = datetime.now(timezone.utc)
