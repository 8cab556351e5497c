"""
Tests for the health monitor.

Tests cover:
1. Executor success-rate and rate-limit checks
2. Circuit state checks
3. DLQ backlog checks
4. Alert de-duplication across checks
"""

import asyncio
from datetime import timedelta

import pytest
from sqlmodel import Session, select

from billing_resilience.core.cache import ResultCache
from billing_resilience.core.circuit_breaker import CircuitBreaker
from billing_resilience.core.retry import RetryPolicy
from billing_resilience.models.operations_alert import OperationsAlert
from billing_resilience.models.webhook_dlq import DLQStatus, WebhookDLQRecord
from billing_resilience.services.health_monitor import HealthMonitor
from billing_resilience.services.resilient_executor import ResilientExecutor


@pytest.fixture
def executor():
    return ResilientExecutor(
        breaker=CircuitBreaker(name="billing_data", failure_threshold=5),
        cache=ResultCache(),
        retry_policy=RetryPolicy(max_retries=0),
        default_timeout=5,
    )


def record_traffic(executor, successes: int, failures: int) -> None:
    for _ in range(successes):
        executor.metrics.record_request()
        executor.metrics.record_success(10)
    for _ in range(failures):
        executor.metrics.record_request()
        executor.metrics.record_failure(10)


def add_dlq_records(session: Session, status: DLQStatus, count: int) -> None:
    for i in range(count):
        session.add(WebhookDLQRecord(event_id=f"evt_{status.value}_{i}", event_type="invoice.paid", status=status))
    session.commit()


def alert_types(session: Session):
    return [a.alert_type for a in session.exec(select(OperationsAlert).order_by(OperationsAlert.id)).all()]


class TestExecutorChecks:
    def test_healthy_with_no_traffic(self, executor):
        report = HealthMonitor(executor).check()

        assert report["status"] == "ok"
        assert report["alerts"] == []
        assert report["components"]["executor"]["success_rate"] == 1.0
        assert "webhook_dlq" not in report["components"]

    def test_low_success_rate_needs_minimum_traffic(self, executor):
        record_traffic(executor, successes=2, failures=8)

        report = HealthMonitor(executor, min_requests=10).check()

        assert report["status"] == "ok"

    def test_degraded_success_rate(self, executor):
        record_traffic(executor, successes=16, failures=4)

        report = HealthMonitor(executor, min_requests=10).check()

        assert report["components"]["executor"]["status"] == "warning"
        assert report["alerts"][0]["alert_type"] == "database_degraded"
        assert report["alerts"][0]["severity"] == "medium"

    def test_critical_success_rate(self, executor):
        record_traffic(executor, successes=4, failures=16)

        report = HealthMonitor(executor, min_requests=10).check()

        assert report["status"] == "critical"
        assert report["alerts"][0]["severity"] == "high"

    def test_rate_limit_hits_warn(self, executor):
        executor.metrics.record_rate_limit_hit()

        report = HealthMonitor(executor).check()

        assert report["status"] == "warning"
        assert [a["alert_type"] for a in report["alerts"]] == ["rate_limit_hits"]
        assert report["alerts"][0]["severity"] == "low"


class TestCircuitChecks:
    def test_open_circuit_raises_high_alert(self, executor):
        for _ in range(5):
            executor.breaker.record_failure()

        report = HealthMonitor(executor).check()

        assert report["components"]["circuit_breaker"]["state"] == "open"
        assert report["components"]["circuit_breaker"]["status"] == "warning"
        alert = report["alerts"][0]
        assert alert["alert_type"] == "circuit_breaker_open"
        assert alert["severity"] == "high"
        assert alert["details"]["circuit"] == "billing_data"

    def test_long_open_circuit_is_critical(self, executor):
        for _ in range(5):
            executor.breaker.record_failure()
        executor.breaker._last_state_change = executor.breaker._last_state_change - timedelta(minutes=31)

        report = HealthMonitor(executor).check()

        assert report["components"]["circuit_breaker"]["status"] == "critical"
        assert report["status"] == "critical"


class TestDLQChecks:
    def test_pending_backlog_warns(self, executor, test_engine, test_session: Session):
        add_dlq_records(test_session, DLQStatus.PENDING, 6)

        report = HealthMonitor(executor, test_engine).check()

        assert report["components"]["webhook_dlq"]["status"] == "warning"
        assert report["components"]["webhook_dlq"]["pending_count"] == 6
        assert alert_types(test_session) == ["webhook_dlq_backlog"]

    def test_abandoned_backlog_is_critical(self, executor, test_engine, test_session: Session):
        add_dlq_records(test_session, DLQStatus.ABANDONED, 11)

        report = HealthMonitor(executor, test_engine).check()

        assert report["status"] == "critical"
        assert report["alerts"][0]["severity"] == "critical"

    def test_small_backlog_is_ok(self, executor, test_engine, test_session: Session):
        add_dlq_records(test_session, DLQStatus.PENDING, 5)

        report = HealthMonitor(executor, test_engine).check()

        assert report["status"] == "ok"
        assert alert_types(test_session) == []


class TestAlertDeduplication:
    def test_alert_persisted_once_while_condition_holds(self, executor, test_engine, test_session: Session):
        monitor = HealthMonitor(executor, test_engine)
        executor.metrics.record_rate_limit_hit()

        monitor.check()
        monitor.check()
        assert alert_types(test_session) == ["rate_limit_hits"]

        # Condition clears: the open alert is resolved
        executor.reset_metrics()
        monitor.check()
        test_session.expire_all()
        assert test_session.exec(select(OperationsAlert)).one().resolved is True

        # Condition returns: a new alert is raised
        executor.metrics.record_rate_limit_hit()
        monitor.check()
        assert alert_types(test_session) == ["rate_limit_hits", "rate_limit_hits"]


@pytest.mark.asyncio
class TestRunForever:
    async def test_cancelled_loop_exits(self, executor):
        calls = []

        async def cancel_after_first(delay):
            calls.append(delay)
            raise asyncio.CancelledError()

        monitor = HealthMonitor(executor, sleep=cancel_after_first)
        await monitor.run_forever(interval_seconds=30)

        assert calls == [30]
