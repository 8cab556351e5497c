"""
Subscription record and its append-only audit log.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Column, Index, JSON
from sqlmodel import Field, SQLModel

from billing_resilience.core.typing import utc_now

DEFAULT_TIER = "free"
DEFAULT_STATUS = "active"

# Fields an event may set on a subscription
UPDATABLE_FIELDS = (
    "user_id",
    "tier",
    "status",
    "stripe_subscription_id",
    "stripe_customer_id",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
)


class Subscription(SQLModel, table=True):
    __tablename__ = "subscriptions"

    id: Optional[int] = Field(default=None, primary_key=True)
    subscription_id: str = Field(unique=True, index=True)  # External key, e.g. provider subscription id
    user_id: Optional[str] = Field(default=None, index=True)
    tier: str = Field(default=DEFAULT_TIER)  # "free", "pro", "enterprise"
    status: str = Field(default=DEFAULT_STATUS, index=True)  # "active", "past_due", "canceled", "trialing"
    stripe_subscription_id: Optional[str] = Field(default=None, index=True)
    stripe_customer_id: Optional[str] = Field(default=None, index=True)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class SubscriptionEvent(SQLModel, table=True):
    """
    Audit row for every change (or failed change) to a subscription.

    stripe_event_id is the idempotency key: at most one row per non-null
    value. Error and retry rows leave it null and keep the key in
    event_data instead.
    """

    __tablename__ = "subscription_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    subscription_id: str = Field(index=True)
    event_type: str = Field(index=True)
    stripe_event_id: Optional[str] = Field(default=None, unique=True, nullable=True)
    event_data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    processed_at: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (
        Index("ix_subscription_events_sub_type_created", "subscription_id", "event_type", "created_at"),
    )


__all__ = [
    "Subscription",
    "SubscriptionEvent",
    "DEFAULT_TIER",
    "DEFAULT_STATUS",
    "UPDATABLE_FIELDS",
]
