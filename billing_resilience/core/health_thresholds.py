"""
Centralized health threshold configuration.

All thresholds are tunable via environment variables.

Usage:
    from billing_resilience.core.health_thresholds import HealthThresholds, check_threshold

    status = check_threshold(stats["pending_count"], HealthThresholds.DLQ_PENDING_COUNT, strict=True)
    # Returns: "ok", "warning", or "critical"
"""

from dataclasses import dataclass
from typing import Literal
import os

__all__ = [
    "Threshold",
    "HealthThresholds",
    "check_threshold",
    "check_threshold_below",
    "worst_status",
    "ThresholdStatus",
]

ThresholdStatus = Literal["ok", "warning", "critical"]

_STATUS_RANK = {"ok": 0, "warning": 1, "critical": 2}


@dataclass(frozen=True)
class Threshold:
    """
    Health threshold with warning and critical levels.

    Attributes:
        warning: Value at which to warn (degraded)
        critical: Value at which to alert (unhealthy)
        unit: Human-readable unit for display
        name: Optional name for logging
    """

    warning: float
    critical: float
    unit: str = ""
    name: str = ""

    def __str__(self) -> str:
        return f"{self.name or 'threshold'}: warn={self.warning}{self.unit}, crit={self.critical}{self.unit}"


def check_threshold(value: float, threshold: Threshold, strict: bool = False) -> ThresholdStatus:
    """
    Check if value exceeds threshold (higher is worse).

    With strict=True the value must be strictly above a level to trip it.
    """
    if strict:
        if value > threshold.critical:
            return "critical"
        elif value > threshold.warning:
            return "warning"
        return "ok"
    if value >= threshold.critical:
        return "critical"
    elif value >= threshold.warning:
        return "warning"
    return "ok"


def check_threshold_below(value: float, threshold: Threshold) -> ThresholdStatus:
    """Check a metric where lower is worse (e.g. success rate)."""
    if value < threshold.critical:
        return "critical"
    elif value < threshold.warning:
        return "warning"
    return "ok"


def worst_status(*statuses: str) -> ThresholdStatus:
    worst: ThresholdStatus = "ok"
    for status in statuses:
        if _STATUS_RANK.get(status, 0) > _STATUS_RANK[worst]:
            worst = status  # type: ignore[assignment]
    return worst


def _env_float(key: str, default: float) -> float:
    """Get float from environment or return default."""
    try:
        return float(os.environ.get(key, default))
    except (TypeError, ValueError):
        return default


class HealthThresholds:
    """
    Centralized health thresholds for the resilience layer.

    Override via environment variables, e.g.:
        THRESHOLD_SUCCESS_RATE_WARN=0.95
        THRESHOLD_DLQ_PENDING_WARN=20
    """

    # ==========================================================================
    # Guarded data access
    # ==========================================================================

    SUCCESS_RATE = Threshold(
        warning=_env_float("THRESHOLD_SUCCESS_RATE_WARN", 0.9),
        critical=_env_float("THRESHOLD_SUCCESS_RATE_CRIT", 0.5),
        unit="ratio",
        name="success_rate",
    )
    """Success rate (lower is worse): below 90% warn, below 50% critical"""

    AVG_RESPONSE_MS = Threshold(
        warning=_env_float("THRESHOLD_AVG_RESPONSE_WARN", 2000.0),
        critical=_env_float("THRESHOLD_AVG_RESPONSE_CRIT", 10000.0),
        unit="ms",
        name="avg_response_time",
    )
    """Average guarded operation time: 2s warn, 10s critical"""

    CIRCUIT_OPEN_DURATION_MIN = Threshold(
        warning=_env_float("THRESHOLD_CIRCUIT_OPEN_WARN", 5.0),
        critical=_env_float("THRESHOLD_CIRCUIT_OPEN_CRIT", 30.0),
        unit="minutes",
        name="circuit_open_duration",
    )
    """Circuit open duration: 5m warn, 30m critical"""

    # ==========================================================================
    # Webhook dead-letter queue (strict: value must exceed the level)
    # ==========================================================================

    DLQ_PENDING_COUNT = Threshold(
        warning=_env_float("THRESHOLD_DLQ_PENDING_WARN", 5),
        critical=_env_float("THRESHOLD_DLQ_PENDING_CRIT", 100),
        unit="events",
        name="dlq_pending",
    )
    """Pending redeliveries: more than 5 warn, more than 100 critical"""

    DLQ_ABANDONED_COUNT = Threshold(
        warning=_env_float("THRESHOLD_DLQ_ABANDONED_WARN", 10),
        critical=_env_float("THRESHOLD_DLQ_ABANDONED_CRIT", 10),
        unit="events",
        name="dlq_abandoned",
    )
    """Abandoned events: more than 10 critical"""

    @classmethod
    def all_thresholds(cls) -> dict[str, Threshold]:
        return {name: value for name, value in vars(cls).items() if isinstance(value, Threshold)}
