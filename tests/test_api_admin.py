"""
Tests for admin API endpoints.

Tests cover:
- /admin/resilience/* - executor metrics, circuit status and resets
- /admin/webhooks/dlq* - DLQ stats, listing, manual retry, requeue
- /admin/alerts* - listing, acknowledging and resolving alerts
- /admin/health - aggregated health
- Admin token enforcement
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from billing_resilience.api import deps
from billing_resilience.core.cache import ResultCache
from billing_resilience.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from billing_resilience.core.config import settings
from billing_resilience.core.retry import RetryPolicy
from billing_resilience.core.typing import utc_now
from billing_resilience.db import get_session
from billing_resilience.main import app
from billing_resilience.models.operations_alert import AlertSeverity
from billing_resilience.models.webhook_dlq import DLQStatus
from billing_resilience.services.alerts import create_alert
from billing_resilience.services.health_monitor import HealthMonitor
from billing_resilience.services.resilient_executor import ResilientExecutor
from billing_resilience.services.webhook_dlq import enqueue_event, mark_permanently_failed
from billing_resilience.services.webhook_retry_processor import WebhookRetryProcessor

ADMIN = "/api/v1/admin"


class ScriptedHandler:
    def __init__(self):
        self.seen = []

    async def __call__(self, event):
        self.seen.append(event["id"])
        return True


@pytest.fixture(autouse=True)
def open_admin(monkeypatch):
    """Run without an admin token unless a test sets one."""
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "")
    monkeypatch.setattr(settings, "ENVIRONMENT", "development")


@pytest.fixture
def executor():
    return ResilientExecutor(
        breaker=CircuitBreaker(name="billing_data", failure_threshold=2),
        cache=ResultCache(),
        retry_policy=RetryPolicy(max_retries=0),
        default_timeout=5,
    )


@pytest.fixture
def handler():
    return ScriptedHandler()


@pytest.fixture(scope="function")
def client(test_engine, executor, handler):
    """Create test client with test database and test services."""

    def override_get_session():
        with Session(test_engine) as session:
            yield session

    processor = WebhookRetryProcessor(test_engine, handler, redelivery_spacing=0)
    monitor = HealthMonitor(executor, test_engine)

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[deps.get_executor] = lambda: executor
    app.dependency_overrides[deps.get_retry_processor] = lambda: processor
    app.dependency_overrides[deps.get_health_monitor] = lambda: monitor

    client = TestClient(app)
    yield client

    # Clean up
    app.dependency_overrides.clear()


class TestAdminToken:
    """Admin token enforcement."""

    def test_open_without_configured_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "")
        assert client.get(f"{ADMIN}/resilience/circuit").status_code == 200

    def test_missing_token_rejected(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "s3cret")
        assert client.get(f"{ADMIN}/resilience/circuit").status_code == 401

    def test_wrong_token_rejected(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "s3cret")
        response = client.get(f"{ADMIN}/resilience/circuit", headers={"X-Admin-Token": "nope"})
        assert response.status_code == 401

    def test_valid_token_accepted(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "s3cret")
        response = client.get(f"{ADMIN}/resilience/circuit", headers={"X-Admin-Token": "s3cret"})
        assert response.status_code == 200

    def test_production_without_token_is_closed(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ENVIRONMENT", "production")

        assert client.get(f"{ADMIN}/resilience/circuit").status_code == 503
        assert client.post(f"{ADMIN}/resilience/circuit/reset").status_code == 503
        assert client.post(f"{ADMIN}/webhooks/dlq/retry", json={}).status_code == 503

    def test_production_with_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ENVIRONMENT", "production")
        monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "s3cret")

        assert client.get(f"{ADMIN}/resilience/circuit").status_code == 401
        response = client.get(f"{ADMIN}/resilience/circuit", headers={"X-Admin-Token": "s3cret"})
        assert response.status_code == 200


class TestResilienceEndpoints:
    """Executor metrics and circuit controls."""

    def test_metrics(self, client, executor):
        executor.metrics.record_request()
        executor.metrics.record_success(12.0)
        executor.cache.set("k", "v")

        data = client.get(f"{ADMIN}/resilience/metrics").json()

        assert data["total_requests"] == 1
        assert data["successful_requests"] == 1
        assert data["success_rate"] == 1.0
        assert data["circuit_breaker_state"] == "closed"
        assert data["cache"]["size"] == 1

    def test_circuit_status_and_reset(self, client, executor):
        CircuitBreakerRegistry.get("provider_api")
        executor.breaker.record_failure()
        executor.breaker.record_failure()

        status = client.get(f"{ADMIN}/resilience/circuit").json()
        assert status["state"] == "open"
        assert status["is_healthy"] is False
        assert status["registered_circuits"] == {"provider_api": "closed"}

        response = client.post(f"{ADMIN}/resilience/circuit/reset")
        assert response.status_code == 200
        assert response.json()["circuit"]["state"] == "closed"

    def test_clear_cache(self, client, executor):
        executor.cache.set("k", "v")

        assert client.post(f"{ADMIN}/resilience/cache/clear").json() == {"status": "cleared"}
        assert len(executor.cache) == 0

    def test_reset_metrics(self, client, executor):
        executor.metrics.record_request()

        client.post(f"{ADMIN}/resilience/metrics/reset")
        assert executor.metrics.total_requests == 0


class TestDLQEndpoints:
    """Webhook DLQ operations."""

    def test_stats_include_health(self, client, test_session: Session):
        for i in range(6):
            enqueue_event(test_session, f"evt_{i}", "invoice.payment_failed", {"id": f"evt_{i}"})

        data = client.get(f"{ADMIN}/webhooks/dlq/stats").json()

        assert data["pending_count"] == 6
        assert data["health"]["status"] == "warning"

    def test_list_records(self, client, test_session: Session):
        enqueue_event(test_session, "evt_1", "invoice.payment_failed", {"id": "evt_1"}, error="db down")

        data = client.get(f"{ADMIN}/webhooks/dlq", params={"status": "pending"}).json()

        assert len(data) == 1
        assert data[0]["event_id"] == "evt_1"
        assert data[0]["status"] == "pending"
        assert data[0]["last_error"] == "db down"

    def test_list_rejects_unknown_status(self, client):
        assert client.get(f"{ADMIN}/webhooks/dlq", params={"status": "bogus"}).status_code == 422

    def test_retry_batch(self, client, handler, test_session: Session):
        enqueue_event(test_session, "evt_1", "invoice.payment_failed", {"id": "evt_1"})

        response = client.post(f"{ADMIN}/webhooks/dlq/retry", json={})

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        assert response.json()["succeeded"] == 1
        assert handler.seen == ["evt_1"]

    def test_retry_single_event(self, client, handler, test_session: Session):
        enqueue_event(
            test_session, "evt_1", "invoice.payment_failed", {"id": "evt_1"}, now=utc_now() + timedelta(hours=1)
        )

        response = client.post(f"{ADMIN}/webhooks/dlq/retry", json={"event_id": "evt_1"})

        assert response.status_code == 200
        assert response.json()["event_id"] == "evt_1"
        assert response.json()["succeeded"] == 1

    def test_retry_unknown_event_conflict(self, client):
        response = client.post(f"{ADMIN}/webhooks/dlq/retry", json={"event_id": "evt_missing"})
        assert response.status_code == 409

    def test_requeue_failed_record(self, client, test_session: Session):
        record = enqueue_event(test_session, "evt_1", "invoice.payment_failed", {"id": "evt_1"})
        mark_permanently_failed(test_session, record.id, "bad payload")

        response = client.post(f"{ADMIN}/webhooks/dlq/{record.id}/requeue")

        assert response.status_code == 200
        test_session.refresh(record)
        assert record.status == DLQStatus.PENDING

    def test_requeue_non_failed_record_404(self, client, test_session: Session):
        record = enqueue_event(test_session, "evt_1", "invoice.payment_failed", {"id": "evt_1"})
        assert client.post(f"{ADMIN}/webhooks/dlq/{record.id}/requeue").status_code == 404


class TestAlertEndpoints:
    """Operations alerts."""

    def test_list_acknowledge_resolve(self, client, test_session: Session):
        low = create_alert(test_session, "rate_limit_hits", AlertSeverity.LOW)
        critical = create_alert(test_session, "webhook_abandoned", AlertSeverity.CRITICAL)

        alerts = client.get(f"{ADMIN}/alerts").json()
        assert [a["alert_type"] for a in alerts] == ["webhook_abandoned", "rate_limit_hits"]

        response = client.post(f"{ADMIN}/alerts/{critical.id}/acknowledge")
        assert response.json() == {"status": "acknowledged", "id": critical.id, "acknowledged_by": "admin"}

        assert client.post(f"{ADMIN}/alerts/{low.id}/resolve").json()["status"] == "resolved"
        assert client.get(f"{ADMIN}/alerts").json() == []

    def test_missing_alert_404(self, client):
        assert client.post(f"{ADMIN}/alerts/999/acknowledge").status_code == 404
        assert client.post(f"{ADMIN}/alerts/999/resolve").status_code == 404


class TestHealthEndpoint:
    def test_healthy(self, client):
        response = client.get(f"{ADMIN}/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_critical_returns_503(self, client, executor):
        for _ in range(20):
            executor.metrics.record_request()
            executor.metrics.record_failure(5)

        response = client.get(f"{ADMIN}/health")

        assert response.status_code == 503
        assert response.json()["status"] == "critical"

    def test_liveness(self, client):
        assert client.get("/health").json() == {"status": "ok"}
