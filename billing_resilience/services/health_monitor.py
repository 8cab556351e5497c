"""
Periodic health checks for guarded data access and the webhook DLQ.

Usage:
    monitor = HealthMonitor(get_resilient_executor(), engine)
    report = monitor.check()

    # In a worker
    await monitor.run_forever(interval_seconds=60)
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Set

import structlog
from sqlalchemy.engine import Engine
from sqlmodel import Session

from billing_resilience.core.circuit_breaker import CircuitState
from billing_resilience.core.config import settings
from billing_resilience.core.errors import capture_exception, capture_message
from billing_resilience.core.health_thresholds import (
    HealthThresholds,
    check_threshold,
    check_threshold_below,
    worst_status,
)
from billing_resilience.models.operations_alert import AlertSeverity
from billing_resilience.services import webhook_dlq
from billing_resilience.services.alerts import create_alert, resolve_alerts_of_type
from billing_resilience.services.resilient_executor import ResilientExecutor

logger = structlog.get_logger(__name__)

__all__ = ["HealthMonitor"]


class HealthMonitor:
    def __init__(
        self,
        executor: ResilientExecutor,
        engine: Optional[Engine] = None,
        min_requests: Optional[int] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.executor = executor
        self.engine = engine
        self.min_requests = settings.HEALTH_MIN_REQUESTS if min_requests is None else min_requests
        self._sleep = sleep
        # Conditions alerted on and not yet cleared
        self._active: Set[str] = set()

    def _check_executor(self, alerts: List[Dict[str, Any]]) -> Dict[str, Any]:
        metrics = self.executor.get_metrics()
        total = metrics["total_requests"]
        success_rate = metrics["success_rate"]

        status = "ok"
        if total > self.min_requests:
            status = check_threshold_below(success_rate, HealthThresholds.SUCCESS_RATE)
            if status != "ok":
                alerts.append(
                    {
                        "alert_type": "database_degraded",
                        "severity": AlertSeverity.HIGH if status == "critical" else AlertSeverity.MEDIUM,
                        "details": {
                            "success_rate": success_rate,
                            "total_requests": total,
                            "failed_requests": metrics["failed_requests"],
                        },
                    }
                )

        if metrics["rate_limit_hits"] > 0:
            status = worst_status(status, "warning")
            alerts.append(
                {
                    "alert_type": "rate_limit_hits",
                    "severity": AlertSeverity.LOW,
                    "details": {"rate_limit_hits": metrics["rate_limit_hits"]},
                }
            )

        latency_status = check_threshold(metrics["average_response_time_ms"], HealthThresholds.AVG_RESPONSE_MS)
        return {
            "status": worst_status(status, latency_status),
            "success_rate": success_rate,
            "total_requests": total,
            "rate_limit_hits": metrics["rate_limit_hits"],
            "average_response_time_ms": metrics["average_response_time_ms"],
        }

    def _check_circuit(self, alerts: List[Dict[str, Any]]) -> Dict[str, Any]:
        circuit = self.executor.get_circuit_breaker_status()
        state = circuit["state"]

        if state == CircuitState.OPEN.value:
            minutes_open = circuit["time_in_state"] / 60
            alerts.append(
                {
                    "alert_type": "circuit_breaker_open",
                    "severity": AlertSeverity.HIGH,
                    "details": {
                        "circuit": self.executor.breaker.name,
                        "failure_count": circuit["failure_count"],
                        "minutes_open": round(minutes_open, 1),
                    },
                }
            )
            status = worst_status("warning", check_threshold(minutes_open, HealthThresholds.CIRCUIT_OPEN_DURATION_MIN))
        elif state == CircuitState.HALF_OPEN.value:
            status = "warning"
        else:
            status = "ok"

        return {"status": status, **circuit}

    def _check_dlq(self, alerts: List[Dict[str, Any]]) -> Dict[str, Any]:
        with Session(self.engine) as session:
            stats = webhook_dlq.get_stats(session)
        health = webhook_dlq.evaluate_dlq_health(stats)
        if health["status"] != "ok":
            alerts.append(
                {
                    "alert_type": "webhook_dlq_backlog",
                    "severity": AlertSeverity.CRITICAL if health["status"] == "critical" else AlertSeverity.MEDIUM,
                    "details": {
                        "pending_count": stats["pending_count"],
                        "abandoned_count": stats["abandoned_count"],
                        "reasons": health["reasons"],
                    },
                }
            )
        return {**health, **stats}

    def check(self) -> Dict[str, Any]:
        """
        Evaluate every component and persist alerts for newly degraded ones.

        Returns:
            {"status": ok|warning|critical, "components": {...}, "alerts": [...]}
        """
        alerts: List[Dict[str, Any]] = []
        components: Dict[str, Any] = {
            "executor": self._check_executor(alerts),
            "circuit_breaker": self._check_circuit(alerts),
        }
        if self.engine is not None:
            try:
                components["webhook_dlq"] = self._check_dlq(alerts)
            except Exception as e:
                capture_exception(e, context={"operation": "dlq_health_check"})
                components["webhook_dlq"] = {"status": "critical", "reasons": [f"DLQ check failed: {e}"]}

        status = worst_status(*(c["status"] for c in components.values()))
        self._raise_new_alerts(alerts)

        if status == "critical":
            capture_message("Billing resilience health critical", level="error", context={"components": list(components)})
        elif status == "warning":
            logger.warning("Billing resilience health degraded", alert_types=[a["alert_type"] for a in alerts])
        else:
            logger.info("Billing resilience healthy")

        return {
            "status": status,
            "components": components,
            "alerts": [{**a, "severity": AlertSeverity(a["severity"]).value} for a in alerts],
        }

    def _raise_new_alerts(self, alerts: List[Dict[str, Any]]) -> None:
        """Persist alerts whose condition was not already active; resolve cleared ones."""
        current = {a["alert_type"] for a in alerts}
        new_alerts = [a for a in alerts if a["alert_type"] not in self._active]
        cleared = self._active - current
        self._active = current

        if cleared and self.engine is not None:
            with Session(self.engine) as session:
                for alert_type in sorted(cleared):
                    resolve_alerts_of_type(session, alert_type)

        if not new_alerts:
            return
        if self.engine is None:
            for alert in new_alerts:
                capture_message(
                    f"Operations alert: {alert['alert_type']}",
                    level="warning",
                    context={"severity": AlertSeverity(alert["severity"]).value, **alert["details"]},
                )
            return

        with Session(self.engine) as session:
            for alert in new_alerts:
                create_alert(session, alert["alert_type"], alert["severity"], alert["details"], commit=False)
            session.commit()

    async def run_forever(self, interval_seconds: Optional[int] = None) -> None:
        interval_seconds = settings.HEALTH_CHECK_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        logger.info("Health monitor started", interval_seconds=interval_seconds)

        while True:
            try:
                await asyncio.to_thread(self.check)
                await self._sleep(interval_seconds)
            except asyncio.CancelledError:
                logger.info("Health monitor cancelled")
                break
            except Exception as e:
                logger.error("Health monitor error", error=str(e))
                await self._sleep(interval_seconds)
