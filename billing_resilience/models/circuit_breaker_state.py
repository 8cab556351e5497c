"""
Circuit breaker state persistence model.

Only used when breaker state is shared between processes
(CIRCUIT_PERSIST_STATE). Lets a restarted or second worker start from the
same state instead of hammering a failing store.
"""

from typing import Optional
from sqlmodel import Field, SQLModel
from datetime import datetime

from billing_resilience.core.typing import utc_now


class CircuitBreakerState(SQLModel, table=True):
    """Persisted circuit breaker state."""

    __tablename__ = "circuit_breaker_state"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)  # Circuit name, e.g. "billing_data"
    state: str = Field(default="closed")  # "closed", "open", "half_open"
    failure_count: int = Field(default=0)
    success_count: int = Field(default=0)
    last_failure_at: Optional[datetime] = Field(default=None)
    last_state_change_at: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=utc_now)
