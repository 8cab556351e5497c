"""
Tests for the executor's performance counters.
"""

import threading

from billing_resilience.core.metrics import PerformanceMetrics


class TestPerformanceMetrics:
    """Tests for PerformanceMetrics."""

    def test_initial_snapshot(self):
        snapshot = PerformanceMetrics().snapshot()
        assert snapshot["total_requests"] == 0
        assert snapshot["success_rate"] == 1.0
        assert snapshot["average_response_time_ms"] == 0.0

    def test_success_rate(self):
        metrics = PerformanceMetrics()
        for _ in range(4):
            metrics.record_request()
        metrics.record_success(10)
        metrics.record_success(20)
        metrics.record_success(30)
        metrics.record_failure(40)

        assert metrics.success_rate == 0.75
        snapshot = metrics.snapshot()
        assert snapshot["successful_requests"] == 3
        assert snapshot["failed_requests"] == 1
        assert snapshot["success_rate"] == 0.75

    def test_running_average_ignores_untimed_results(self):
        metrics = PerformanceMetrics()
        metrics.record_success(100)
        metrics.record_success()  # cache hit, no timing
        metrics.record_failure(300)

        assert metrics.average_response_time_ms == 200

    def test_counters(self):
        metrics = PerformanceMetrics()
        metrics.record_rate_limit_hit()
        metrics.record_circuit_trip()
        metrics.record_circuit_trip()
        metrics.record_cache_hit()

        snapshot = metrics.snapshot()
        assert snapshot["rate_limit_hits"] == 1
        assert snapshot["circuit_breaker_trips"] == 2
        assert snapshot["cache_hits"] == 1

    def test_reset(self):
        metrics = PerformanceMetrics()
        metrics.record_request()
        metrics.record_failure(50)
        metrics.reset()

        snapshot = metrics.snapshot()
        assert snapshot["total_requests"] == 0
        assert snapshot["failed_requests"] == 0
        assert snapshot["average_response_time_ms"] == 0.0

    def test_thread_safe_counting(self):
        metrics = PerformanceMetrics()

        def worker():
            for _ in range(1000):
                metrics.record_request()
                metrics.record_success(1.0)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert metrics.total_requests == 4000
        assert metrics.successful_requests == 4000
