"""
Webhook Dead-Letter Queue

Persistent store for webhook events whose processing failed. Records are
redelivered with exponential backoff (next_retry_at = now + 2^(retry_count+1)
seconds) until they complete, run out of retries (abandoned), fail
permanently (failed) or go stale (expired).

Usage:
    from billing_resilience.services.webhook_dlq import (
        enqueue_event,
        claim_due_batch,
        mark_completed,
        mark_failed_and_reschedule,
    )

    with Session(engine) as session:
        enqueue_event(session, "evt_1", "invoice.payment_failed", payload, error="db down")

    with Session(engine) as session:
        for record in claim_due_batch(session, limit=50):
            ...
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from billing_resilience.core.config import settings
from billing_resilience.core.errors import capture_exception
from billing_resilience.core.exceptions import DLQAbandonedError
from billing_resilience.core.health_thresholds import (
    HealthThresholds,
    check_threshold,
    worst_status,
)
from billing_resilience.core.typing import col, ensure_aware, safe_getattr, utc_now
from billing_resilience.models.operations_alert import AlertSeverity
from billing_resilience.models.webhook_dlq import ACTIVE_STATUSES, DLQStatus, WebhookDLQRecord
from billing_resilience.services.alerts import create_alert

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 1000


def _truncate(error: Optional[str]) -> Optional[str]:
    if error is None:
        return None
    return error[:MAX_ERROR_LENGTH]


def next_retry_delay(retry_count: int) -> timedelta:
    """Backoff before the next redelivery, given the already-incremented retry_count."""
    return timedelta(seconds=2 ** (retry_count + 1))


def get_record_by_event_id(session: Session, event_id: str) -> Optional[WebhookDLQRecord]:
    return session.exec(select(WebhookDLQRecord).where(col(WebhookDLQRecord.event_id) == event_id)).first()


def enqueue_event(
    session: Session,
    event_id: str,
    event_type: str,
    payload: Dict[str, Any],
    error: Optional[str] = None,
    max_retries: Optional[int] = None,
    now: Optional[datetime] = None,
) -> WebhookDLQRecord:
    """
    Add a failed webhook event to the queue.

    Idempotent on event_id: enqueueing an event that is already queued (in
    any status) returns the existing record unchanged.

    Returns:
        The created or existing WebhookDLQRecord
    """
    existing = get_record_by_event_id(session, event_id)
    if existing:
        logger.info("DLQ record already exists", event_id=event_id, status=existing.status.value)
        return existing

    now = now or utc_now()
    record = WebhookDLQRecord(
        event_id=event_id,
        event_type=event_type,
        payload=payload,
        max_retries=settings.DLQ_MAX_RETRIES if max_retries is None else max_retries,
        next_retry_at=now,
        last_error=_truncate(error),
        created_at=now,
        updated_at=now,
    )
    session.add(record)
    try:
        session.commit()
    except IntegrityError:
        # Lost an insert race on the unique event_id
        session.rollback()
        existing = get_record_by_event_id(session, event_id)
        if existing is None:
            raise
        logger.info("DLQ record created concurrently", event_id=event_id)
        return existing

    session.refresh(record)
    logger.info(
        "Webhook event dead-lettered",
        record_id=record.id,
        event_id=event_id,
        event_type=event_type,
        error=(error or "")[:200],
    )
    return record


def claim_due_batch(
    session: Session,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[WebhookDLQRecord]:
    """
    Claim up to `limit` due records for redelivery.

    Due means: status pending, next_retry_at <= now and retry_count <
    max_retries, oldest next_retry_at first. Each record moves to
    processing through a conditional UPDATE, so two processors racing for
    the same record cannot both claim it.

    Returns:
        The claimed records (status processing)
    """
    limit = settings.DLQ_BATCH_SIZE if limit is None else limit
    now = now or utc_now()

    stmt = (
        select(WebhookDLQRecord)
        .where(
            col(WebhookDLQRecord.status) == DLQStatus.PENDING,
            col(WebhookDLQRecord.next_retry_at) <= now,
            col(WebhookDLQRecord.retry_count) < col(WebhookDLQRecord.max_retries),
        )
        .order_by(col(WebhookDLQRecord.next_retry_at).asc(), col(WebhookDLQRecord.id).asc())
        .limit(limit)
        # Skip rows another processor is claiming right now
        .with_for_update(skip_locked=True)
    )
    candidate_ids = [record.id for record in session.exec(stmt).all()]

    claimed_ids = []
    for record_id in candidate_ids:
        result = session.execute(
            update(WebhookDLQRecord)
            .where(
                col(WebhookDLQRecord.id) == record_id,
                col(WebhookDLQRecord.status) == DLQStatus.PENDING,
            )
            .values(status=DLQStatus.PROCESSING, claimed_at=now, updated_at=now)
        )
        if safe_getattr(result, "rowcount", 0) == 1:
            claimed_ids.append(record_id)
    session.commit()

    if not claimed_ids:
        return []

    claimed = session.exec(
        select(WebhookDLQRecord)
        .where(col(WebhookDLQRecord.id).in_(claimed_ids))
        .order_by(col(WebhookDLQRecord.next_retry_at).asc(), col(WebhookDLQRecord.id).asc())
    ).all()
    logger.info("Claimed DLQ batch", claimed=len(claimed), candidates=len(candidate_ids))
    return list(claimed)


def claim_record(session: Session, event_id: str, now: Optional[datetime] = None) -> Optional[WebhookDLQRecord]:
    """
    Claim one specific record for an immediate manual retry.

    Only pending records with retries left can be claimed; next_retry_at
    is ignored.
    """
    now = now or utc_now()
    result = session.execute(
        update(WebhookDLQRecord)
        .where(
            col(WebhookDLQRecord.event_id) == event_id,
            col(WebhookDLQRecord.status) == DLQStatus.PENDING,
            col(WebhookDLQRecord.retry_count) < col(WebhookDLQRecord.max_retries),
        )
        .values(status=DLQStatus.PROCESSING, claimed_at=now, updated_at=now)
    )
    session.commit()
    if safe_getattr(result, "rowcount", 0) != 1:
        return None
    return get_record_by_event_id(session, event_id)


def mark_completed(
    session: Session,
    record_id: int,
    now: Optional[datetime] = None,
) -> Optional[WebhookDLQRecord]:
    """
    Mark a pending or processing record completed.

    Records that already finished (completed, failed, abandoned, expired)
    are returned unchanged.
    """
    record = session.get(WebhookDLQRecord, record_id)
    if not record:
        logger.warning("DLQ record not found for completion", record_id=record_id)
        return None

    if record.status not in ACTIVE_STATUSES:
        logger.warning("Ignoring completion for finished DLQ record", record_id=record_id, status=record.status.value)
        return record

    now = now or utc_now()
    record.status = DLQStatus.COMPLETED
    record.last_error = None
    record.claimed_at = None
    record.updated_at = now
    session.add(record)
    session.commit()
    session.refresh(record)

    logger.info(
        "DLQ record completed",
        record_id=record.id,
        event_id=record.event_id,
        retry_count=record.retry_count,
    )
    return record


def mark_failed_and_reschedule(
    session: Session,
    record_id: int,
    error: str,
    now: Optional[datetime] = None,
) -> Optional[WebhookDLQRecord]:
    """
    Record a failed redelivery attempt.

    retry_count goes up by one and next_retry_at becomes
    now + 2^(retry_count+1) seconds. Once retry_count reaches max_retries
    the record is abandoned and a critical alert is raised; otherwise it
    returns to pending.
    """
    record = session.get(WebhookDLQRecord, record_id)
    if not record:
        logger.warning("DLQ record not found for failure", record_id=record_id)
        return None

    if record.status not in ACTIVE_STATUSES:
        logger.warning(
            "Ignoring failure for finished DLQ record",
            record_id=record_id,
            status=record.status.value,
        )
        return record

    now = now or utc_now()
    record.retry_count = min(record.retry_count + 1, record.max_retries)
    record.last_error = _truncate(error)
    record.next_retry_at = now + next_retry_delay(record.retry_count)
    record.claimed_at = None
    record.updated_at = now

    if record.retry_count >= record.max_retries:
        record.status = DLQStatus.ABANDONED
        session.add(record)
        create_alert(
            session,
            "webhook_abandoned",
            AlertSeverity.CRITICAL,
            {
                "record_id": record.id,
                "event_id": record.event_id,
                "event_type": record.event_type,
                "retry_count": record.retry_count,
                "last_error": (error or "")[:200],
            },
            commit=False,
        )
        session.commit()
        session.refresh(record)
        capture_exception(
            DLQAbandonedError(record.event_id, record.retry_count, last_error=record.last_error),
            context={"record_id": record.id, "event_type": record.event_type},
            fingerprint=["webhook_dlq_abandoned", record.event_type],
        )
        return record

    record.status = DLQStatus.PENDING
    session.add(record)
    session.commit()
    session.refresh(record)

    logger.warning(
        "DLQ redelivery failed, rescheduled",
        record_id=record.id,
        event_id=record.event_id,
        retry_count=record.retry_count,
        max_retries=record.max_retries,
        next_retry_at=ensure_aware(record.next_retry_at).isoformat(),
        error=(error or "")[:200],
    )
    return record


def mark_permanently_failed(
    session: Session,
    record_id: int,
    error: str,
    now: Optional[datetime] = None,
) -> Optional[WebhookDLQRecord]:
    """
    Park a record whose redelivery failed with a non-retryable error.

    Failed records are never picked up automatically; requeue_failed()
    puts them back once the cause is fixed.
    """
    record = session.get(WebhookDLQRecord, record_id)
    if not record:
        logger.warning("DLQ record not found for permanent failure", record_id=record_id)
        return None

    if record.status not in ACTIVE_STATUSES:
        logger.warning(
            "Ignoring permanent failure for finished DLQ record",
            record_id=record_id,
            status=record.status.value,
        )
        return record

    now = now or utc_now()
    record.retry_count = min(record.retry_count + 1, record.max_retries)
    record.last_error = _truncate(error)
    record.status = DLQStatus.FAILED
    record.claimed_at = None
    record.updated_at = now
    session.add(record)
    create_alert(
        session,
        "webhook_failed_permanently",
        AlertSeverity.HIGH,
        {
            "record_id": record.id,
            "event_id": record.event_id,
            "event_type": record.event_type,
            "last_error": (error or "")[:200],
        },
        commit=False,
    )
    session.commit()
    session.refresh(record)
    return record


def requeue_failed(
    session: Session,
    record_id: int,
    now: Optional[datetime] = None,
) -> Optional[WebhookDLQRecord]:
    """Put a failed record back in the queue with a fresh retry budget."""
    record = session.get(WebhookDLQRecord, record_id)
    if not record:
        logger.warning("DLQ record not found for requeue", record_id=record_id)
        return None

    if record.status != DLQStatus.FAILED:
        logger.warning("Only failed DLQ records can be requeued", record_id=record_id, status=record.status.value)
        return None

    now = now or utc_now()
    record.status = DLQStatus.PENDING
    record.retry_count = 0
    record.next_retry_at = now
    record.updated_at = now
    session.add(record)
    session.commit()
    session.refresh(record)

    logger.info("DLQ record requeued", record_id=record.id, event_id=record.event_id)
    return record


def expire_stale_records(
    session: Session,
    max_age_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Expire pending records older than max_age_days.

    Returns:
        Number of records expired
    """
    max_age_days = settings.DLQ_STALE_AFTER_DAYS if max_age_days is None else max_age_days
    now = now or utc_now()
    cutoff = now - timedelta(days=max_age_days)

    result = session.execute(
        update(WebhookDLQRecord)
        .where(
            col(WebhookDLQRecord.status) == DLQStatus.PENDING,
            col(WebhookDLQRecord.created_at) < cutoff,
        )
        .values(status=DLQStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()

    count = safe_getattr(result, "rowcount", 0) or 0
    if count > 0:
        logger.warning("Expired stale DLQ records", count=count, max_age_days=max_age_days)
    return count


def reset_stuck_processing(
    session: Session,
    timeout_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Return records stuck in processing (processor crashed mid-batch) to pending.

    Returns:
        Number of records reset
    """
    timeout_minutes = settings.DLQ_PROCESSING_TIMEOUT_MINUTES if timeout_minutes is None else timeout_minutes
    now = now or utc_now()
    cutoff = now - timedelta(minutes=timeout_minutes)

    result = session.execute(
        update(WebhookDLQRecord)
        .where(
            col(WebhookDLQRecord.status) == DLQStatus.PROCESSING,
            col(WebhookDLQRecord.claimed_at) < cutoff,
        )
        .values(
            status=DLQStatus.PENDING,
            claimed_at=None,
            updated_at=now,
            last_error=f"Claim timed out after {timeout_minutes} minutes",
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()

    count = safe_getattr(result, "rowcount", 0) or 0
    if count > 0:
        logger.warning("Reset stuck DLQ records to pending", count=count)
    return count


def cleanup_completed(
    session: Session,
    older_than_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Delete completed records last touched more than older_than_days ago.

    Returns:
        Number of records deleted
    """
    older_than_days = settings.DLQ_COMPLETED_RETENTION_DAYS if older_than_days is None else older_than_days
    cutoff = (now or utc_now()) - timedelta(days=older_than_days)

    result = session.execute(
        delete(WebhookDLQRecord)
        .where(
            col(WebhookDLQRecord.status) == DLQStatus.COMPLETED,
            col(WebhookDLQRecord.updated_at) < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()

    count = safe_getattr(result, "rowcount", 0) or 0
    if count > 0:
        logger.info("Cleaned up completed DLQ records", count=count, older_than_days=older_than_days)
    return count


def get_stats(session: Session) -> Dict[str, Any]:
    """
    Queue statistics.

    Returns:
        {pending_count, processing_count, completed_count, failed_count,
         abandoned_count, expired_count, total_retries, oldest_pending,
         avg_retry_count}
    """
    stats: Dict[str, Any] = {f"{status.value}_count": 0 for status in DLQStatus}

    rows = session.exec(
        select(WebhookDLQRecord.status, func.count()).group_by(col(WebhookDLQRecord.status))
    ).all()
    for status, count in rows:
        stats[f"{DLQStatus(status).value}_count"] = count

    total_retries, avg_retry_count = session.exec(
        select(
            func.coalesce(func.sum(WebhookDLQRecord.retry_count), 0),
            func.avg(WebhookDLQRecord.retry_count),
        )
    ).one()
    oldest_pending = session.exec(
        select(func.min(WebhookDLQRecord.created_at)).where(col(WebhookDLQRecord.status) == DLQStatus.PENDING)
    ).one()

    stats["total_retries"] = int(total_retries or 0)
    stats["avg_retry_count"] = round(float(avg_retry_count or 0), 2)
    stats["oldest_pending"] = ensure_aware(oldest_pending).isoformat() if oldest_pending else None
    return stats


def evaluate_dlq_health(stats: Dict[str, Any]) -> Dict[str, Any]:
    """
    Health verdict for the queue: critical when more than 10 events were
    abandoned, warning when more than 5 are pending.
    """
    abandoned_status = check_threshold(stats["abandoned_count"], HealthThresholds.DLQ_ABANDONED_COUNT, strict=True)
    pending_status = check_threshold(stats["pending_count"], HealthThresholds.DLQ_PENDING_COUNT, strict=True)

    reasons = []
    if abandoned_status != "ok":
        reasons.append(f"{stats['abandoned_count']} abandoned webhook events")
    if pending_status != "ok":
        reasons.append(f"{stats['pending_count']} webhook events pending redelivery")

    return {
        "status": worst_status(abandoned_status, pending_status),
        "reasons": reasons,
    }


def list_records(
    session: Session,
    status: Optional[DLQStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[WebhookDLQRecord]:
    stmt = select(WebhookDLQRecord)
    if status is not None:
        stmt = stmt.where(col(WebhookDLQRecord.status) == status)
    stmt = stmt.order_by(col(WebhookDLQRecord.created_at).desc()).offset(offset).limit(limit)
    return list(session.exec(stmt).all())
