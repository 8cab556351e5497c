"""
Transactional, idempotent subscription updates.

Every applied event leaves exactly one audit row keyed by its event id, so
a webhook that is delivered twice (provider retry, DLQ redrive after a
crash) changes the subscription once.

Usage:
    updater = TransactionalSubscriptionUpdater(engine)
    updater.apply_event("evt_2", "sub_123", {"status": "past_due"})
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from billing_resilience.core.config import settings
from billing_resilience.core.errors import capture_exception
from billing_resilience.core.exceptions import PermanentError, TransientError
from billing_resilience.core.locking import SubscriptionLock
from billing_resilience.core.typing import col, safe_getattr, utc_now
from billing_resilience.models.subscription import (
    DEFAULT_STATUS,
    DEFAULT_TIER,
    UPDATABLE_FIELDS,
    Subscription,
    SubscriptionEvent,
)

logger = structlog.get_logger(__name__)

# Audit rows kept forever by cleanup_old_events
RETAINED_EVENT_TYPES = ("subscription_created", "subscription_canceled")


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class TransactionalSubscriptionUpdater:
    def __init__(
        self,
        engine: Engine,
        lock: Optional[SubscriptionLock] = None,
        max_operation_retries: Optional[int] = None,
    ):
        self.engine = engine
        self.lock = lock or SubscriptionLock()
        self.max_operation_retries = (
            settings.SUBSCRIPTION_OPERATION_MAX_RETRIES if max_operation_retries is None else max_operation_retries
        )

    @staticmethod
    def _already_applied(session: Session, event_id: str) -> bool:
        existing = session.exec(
            select(SubscriptionEvent.id).where(col(SubscriptionEvent.stripe_event_id) == event_id)
        ).first()
        return existing is not None

    def is_event_processed(self, event_id: str) -> bool:
        with Session(self.engine) as session:
            return self._already_applied(session, event_id)

    def apply_event(
        self,
        event_id: str,
        subscription_id: str,
        updates: Dict[str, Any],
        event_type: Optional[str] = None,
    ) -> bool:
        """
        Apply `updates` to a subscription exactly once per event_id.

        Creates the subscription (tier "free", status "active" unless
        given) when it does not exist, otherwise merges the non-null
        fields. The change and its audit row commit together.

        Returns:
            True when applied now or already applied earlier.

        Raises:
            PermanentError for unknown fields, LockTimeoutError when the
            subscription is locked too long, or the underlying database
            error. An error audit row is written before re-raising.
        """
        log = logger.bind(event_id=event_id, subscription_id=subscription_id)
        try:
            unknown = sorted(set(updates) - set(UPDATABLE_FIELDS))
            if unknown:
                raise PermanentError(f"Unknown subscription fields: {', '.join(unknown)}")

            with Session(self.engine) as session:
                if self._already_applied(session, event_id):
                    log.info("Subscription event already applied")
                    return True

            with self.lock.hold(subscription_id):
                with Session(self.engine) as session:
                    # Re-check under the lock; a concurrent delivery may have won
                    if self._already_applied(session, event_id):
                        log.info("Subscription event already applied")
                        return True

                    self.lock.apply_lock_timeout(session)
                    subscription = self.lock.select_for_update(
                        session,
                        select(Subscription).where(col(Subscription.subscription_id) == subscription_id),
                    )

                    now = utc_now()
                    if subscription is None:
                        old_status = None
                        subscription = Subscription(
                            subscription_id=subscription_id,
                            tier=DEFAULT_TIER,
                            status=DEFAULT_STATUS,
                            created_at=now,
                            updated_at=now,
                        )
                        audit_type = event_type or "subscription_created"
                    else:
                        old_status = subscription.status
                        audit_type = event_type or "subscription_updated"

                    for field_name, value in updates.items():
                        if value is not None:
                            setattr(subscription, field_name, value)
                    subscription.updated_at = now
                    session.add(subscription)

                    session.add(
                        SubscriptionEvent(
                            subscription_id=subscription_id,
                            event_type=audit_type,
                            stripe_event_id=event_id,
                            event_data={
                                "old_status": old_status,
                                "new_status": subscription.status,
                                "updates": _jsonable(updates),
                                "updated_by": "system",
                            },
                            processed_at=now,
                            created_at=now,
                        )
                    )

                    try:
                        session.commit()
                    except IntegrityError as e:
                        session.rollback()
                        if self._already_applied(session, event_id):
                            log.info("Subscription event applied concurrently")
                            return True
                        # Another process created the subscription row first
                        raise TransientError(f"Concurrent subscription write: {e.orig}") from e

            log.info(
                "Subscription event applied",
                event_type=audit_type,
                old_status=old_status,
                new_status=updates.get("status", old_status),
            )
            return True

        except Exception as e:
            self._record_error(event_id, subscription_id, event_type, updates, e)
            raise

    def _record_error(
        self,
        event_id: str,
        subscription_id: str,
        event_type: Optional[str],
        updates: Dict[str, Any],
        error: Exception,
    ) -> None:
        """Append a `<type>_error` audit row in its own transaction."""
        base_type = event_type or "subscription_update"
        try:
            with Session(self.engine) as session:
                session.add(
                    SubscriptionEvent(
                        subscription_id=subscription_id,
                        event_type=f"{base_type}_error",
                        event_data={
                            "event_id": event_id,
                            "error": str(error)[:1000],
                            "error_type": type(error).__name__,
                            "updates": _jsonable(updates),
                        },
                    )
                )
                session.commit()
        except Exception as audit_error:
            capture_exception(
                audit_error,
                context={"operation": "record_subscription_error", "subscription_id": subscription_id},
            )
        logger.error(
            "Subscription event failed",
            event_id=event_id,
            subscription_id=subscription_id,
            error_type=type(error).__name__,
            error=str(error),
        )

    def retry_failed_operation(self, user_id: str, operation_type: str, payload: Dict[str, Any]) -> bool:
        """
        Record a retry of a failed subscription operation for a user.

        Returns True when a retry was recorded, False once the retry limit
        is reached (a `<type>_max_retries_exceeded` row is written) or when
        recording failed (`<type>_retry_failed`).
        """
        retry_type = f"{operation_type}_retry"
        subscription_key = f"user:{user_id}"
        try:
            with Session(self.engine) as session:
                subscription = session.exec(
                    select(Subscription)
                    .where(col(Subscription.user_id) == user_id)
                    .order_by(col(Subscription.updated_at).desc())
                ).first()
                if subscription is None:
                    raise PermanentError(f"No subscription for user {user_id}")
                subscription_key = subscription.subscription_id

                latest = session.exec(
                    select(SubscriptionEvent)
                    .where(
                        col(SubscriptionEvent.subscription_id) == subscription_key,
                        col(SubscriptionEvent.event_type) == retry_type,
                    )
                    .order_by(col(SubscriptionEvent.created_at).desc(), col(SubscriptionEvent.id).desc())
                ).first()
                retry_count = int(latest.event_data.get("retry_count", 0)) if latest else 0

                if retry_count >= self.max_operation_retries:
                    session.add(
                        SubscriptionEvent(
                            subscription_id=subscription_key,
                            event_type=f"{operation_type}_max_retries_exceeded",
                            event_data={
                                "user_id": user_id,
                                "retry_count": retry_count,
                                "payload": _jsonable(payload),
                            },
                        )
                    )
                    session.commit()
                    logger.warning(
                        "Subscription operation retry limit reached",
                        user_id=user_id,
                        operation_type=operation_type,
                        retry_count=retry_count,
                    )
                    return False

                session.add(
                    SubscriptionEvent(
                        subscription_id=subscription_key,
                        event_type=retry_type,
                        event_data={
                            "user_id": user_id,
                            "retry_count": retry_count + 1,
                            "payload": _jsonable(payload),
                        },
                    )
                )
                session.commit()
                logger.info(
                    "Subscription operation retry recorded",
                    user_id=user_id,
                    operation_type=operation_type,
                    retry_count=retry_count + 1,
                )
                return True

        except Exception as e:
            logger.error(
                "Subscription operation retry failed",
                user_id=user_id,
                operation_type=operation_type,
                error=str(e),
            )
            try:
                with Session(self.engine) as session:
                    session.add(
                        SubscriptionEvent(
                            subscription_id=subscription_key,
                            event_type=f"{operation_type}_retry_failed",
                            event_data={"user_id": user_id, "error": str(e)[:1000], "payload": _jsonable(payload)},
                        )
                    )
                    session.commit()
            except Exception as audit_error:
                capture_exception(audit_error, context={"operation": "record_retry_failure", "user_id": user_id})
            return False

    def cleanup_old_events(self, days_old: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """
        Delete audit rows older than days_old, keeping creation and
        cancellation records.

        Returns:
            Number of rows deleted
        """
        days_old = settings.SUBSCRIPTION_EVENT_RETENTION_DAYS if days_old is None else days_old
        cutoff = (now or utc_now()) - timedelta(days=days_old)

        with Session(self.engine) as session:
            result = session.execute(
                delete(SubscriptionEvent)
                .where(
                    col(SubscriptionEvent.created_at) < cutoff,
                    col(SubscriptionEvent.event_type).not_in(RETAINED_EVENT_TYPES),
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()

        count = safe_getattr(result, "rowcount", 0) or 0
        if count > 0:
            logger.info("Cleaned up old subscription events", count=count, days_old=days_old)
        return count

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with Session(self.engine) as session:
            return session.exec(
                select(Subscription).where(col(Subscription.subscription_id) == subscription_id)
            ).first()

    def get_audit_trail(self, subscription_id: str) -> List[SubscriptionEvent]:
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(SubscriptionEvent)
                    .where(col(SubscriptionEvent.subscription_id) == subscription_id)
                    .order_by(col(SubscriptionEvent.created_at).asc(), col(SubscriptionEvent.id).asc())
                ).all()
            )
