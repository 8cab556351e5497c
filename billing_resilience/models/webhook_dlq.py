"""
Webhook dead-letter queue model.

Inbound payment-provider webhooks that fail processing land here and are
redelivered with exponential backoff until they succeed or run out of
retries.

Status lifecycle:
    pending -> processing -> completed
                          -> pending (rescheduled, retry_count + 1)
                          -> abandoned (retry_count == max_retries)
                          -> failed (permanent error, parked for manual requeue)
    pending -> expired (older than the stale cutoff)
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Column, Index, JSON
from sqlmodel import Field, SQLModel

from billing_resilience.core.typing import utc_now


class DLQStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({DLQStatus.COMPLETED, DLQStatus.ABANDONED, DLQStatus.EXPIRED})
# Only these can be completed, rescheduled or parked
ACTIVE_STATUSES = frozenset({DLQStatus.PENDING, DLQStatus.PROCESSING})


class WebhookDLQRecord(SQLModel, table=True):
    """
    One failed webhook event awaiting redelivery.

    Attributes:
        event_id: Provider event id; idempotency key, unique
        event_type: e.g. "invoice.payment_failed"
        payload: Raw event JSON
        retry_count: Redelivery attempts so far (never above max_retries)
        max_retries: Attempts allowed before the record is abandoned
        next_retry_at: Earliest time the record may be claimed
        last_error: Error from the most recent failed attempt
        claimed_at: When a processor last claimed the record
    """

    __tablename__ = "webhook_dlq"

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(unique=True, index=True)
    event_type: str = Field(index=True)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=5)
    next_retry_at: datetime = Field(default_factory=utc_now)
    last_error: Optional[str] = None
    status: DLQStatus = Field(default=DLQStatus.PENDING)
    claimed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (
        # Due-batch query: status + next_retry_at
        Index("ix_webhook_dlq_due", "status", "next_retry_at"),
        # Stale / stuck detection
        Index("ix_webhook_dlq_status_created", "status", "created_at"),
        Index("ix_webhook_dlq_status_claimed", "status", "claimed_at"),
    )


__all__ = ["WebhookDLQRecord", "DLQStatus", "TERMINAL_STATUSES", "ACTIVE_STATUSES"]
