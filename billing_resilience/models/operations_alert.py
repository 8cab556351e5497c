"""
Operations alerts raised by the DLQ, circuit breaker and health monitor.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Column, Index, JSON
from sqlmodel import Field, SQLModel

from billing_resilience.core.typing import utc_now


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Most urgent first
SEVERITY_RANK = {
    AlertSeverity.CRITICAL: 1,
    AlertSeverity.HIGH: 2,
    AlertSeverity.MEDIUM: 3,
    AlertSeverity.LOW: 4,
}


class OperationsAlert(SQLModel, table=True):
    __tablename__ = "operations_alerts"

    id: Optional[int] = Field(default=None, primary_key=True)
    alert_type: str = Field(index=True)  # e.g. "webhook_abandoned", "circuit_breaker_open"
    severity: AlertSeverity = Field(default=AlertSeverity.MEDIUM)
    details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    acknowledged: bool = Field(default=False)
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved: bool = Field(default=False)
    resolved_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (
        Index("ix_operations_alerts_open", "acknowledged", "resolved", "created_at"),
    )


__all__ = ["OperationsAlert", "AlertSeverity", "SEVERITY_RANK"]
