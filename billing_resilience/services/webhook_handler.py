"""
Payment-provider webhook handling.

Maps provider events onto subscription updates and is the redelivery
target of the dead-letter queue. The inbound path tries the handler once
and dead-letters the event on failure, so the provider always gets a 2xx.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.engine import Engine
from sqlmodel import Session

from billing_resilience.core.context import bound_event
from billing_resilience.core.exceptions import PermanentError
from billing_resilience.services import webhook_dlq
from billing_resilience.services.subscription_updater import TransactionalSubscriptionUpdater

logger = structlog.get_logger(__name__)

SUBSCRIPTION_LIFECYCLE_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)

INVOICE_STATUS = {
    "invoice.payment_succeeded": "active",
    "invoice.payment_failed": "past_due",
}

LOG_ONLY_EVENTS = ("customer.subscription.trial_will_end",)


def _from_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError) as e:
        raise PermanentError(f"Invalid timestamp: {value!r}") from e


def _event_object(event: Dict[str, Any]) -> Dict[str, Any]:
    data = event.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise PermanentError(f"Webhook event {event.get('id')} has no data.object")
    return obj


def subscription_updates_from_object(obj: Dict[str, Any], deleted: bool = False) -> Dict[str, Any]:
    """Translate a provider subscription object into subscription fields."""
    metadata = obj.get("metadata") or {}
    updates: Dict[str, Any] = {
        "status": "canceled" if deleted else obj.get("status"),
        "stripe_subscription_id": obj.get("id"),
        "stripe_customer_id": obj.get("customer"),
        "current_period_start": _from_timestamp(obj.get("current_period_start")),
        "current_period_end": _from_timestamp(obj.get("current_period_end")),
        "tier": metadata.get("tier"),
        "user_id": metadata.get("user_id"),
    }
    if "cancel_at_period_end" in obj:
        updates["cancel_at_period_end"] = bool(obj["cancel_at_period_end"])
    return {k: v for k, v in updates.items() if v is not None}


class SubscriptionWebhookHandler:
    """
    Async callable: `await handler(event)`.

    `handle()` does blocking database work and may wait on a subscription
    lock, so the async entry point runs it in a worker thread.
    """

    def __init__(self, updater: TransactionalSubscriptionUpdater):
        self.updater = updater

    async def __call__(self, event: Dict[str, Any]) -> bool:
        return await asyncio.to_thread(self.handle, event)

    def handle(self, event: Dict[str, Any]) -> bool:
        """
        Apply one provider event.

        Returns:
            True when a subscription was updated (or the event had already
            been applied), False when the event type is ignored.

        Raises:
            PermanentError for malformed events; anything the updater raises.
        """
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise PermanentError("Webhook event is missing id or type")

        if event_type in SUBSCRIPTION_LIFECYCLE_EVENTS:
            obj = _event_object(event)
            subscription_id = obj.get("id")
            if not subscription_id:
                raise PermanentError(f"Webhook event {event_id} has no subscription id")
            deleted = event_type == "customer.subscription.deleted"
            audit_type = "subscription_canceled" if deleted else None
            return self.updater.apply_event(
                event_id,
                subscription_id,
                subscription_updates_from_object(obj, deleted=deleted),
                event_type=audit_type,
            )

        if event_type in INVOICE_STATUS:
            obj = _event_object(event)
            subscription_id = obj.get("subscription")
            if not subscription_id:
                raise PermanentError(f"Invoice event {event_id} has no subscription id")
            updates: Dict[str, Any] = {"status": INVOICE_STATUS[event_type]}
            if obj.get("customer"):
                updates["stripe_customer_id"] = obj["customer"]
            return self.updater.apply_event(event_id, subscription_id, updates)

        if event_type in LOG_ONLY_EVENTS:
            obj = (event.get("data") or {}).get("object") or {}
            logger.info("Trial ending soon", event_id=event_id, subscription_id=obj.get("id"))
            return False

        logger.info("Unhandled webhook event type", event_id=event_id, event_type=event_type)
        return False


async def receive_webhook_event(engine: Engine, handler: SubscriptionWebhookHandler, event: Dict[str, Any]) -> str:
    """
    Inbound entry point for a verified provider event.

    Returns:
        "processed", "ignored" or "dead_lettered"
    """
    event_id = event.get("id") or ""
    with bound_event(event_id):
        try:
            applied = await handler(event)
            return "processed" if applied else "ignored"
        except Exception as e:
            logger.warning(
                "Webhook processing failed, dead-lettering",
                event_type=event.get("type"),
                error_type=type(e).__name__,
                error=str(e),
            )
            if not event_id:
                raise
            with Session(engine) as session:
                webhook_dlq.enqueue_event(
                    session,
                    event_id=event_id,
                    event_type=event.get("type") or "unknown",
                    payload=event,
                    error=f"{type(e).__name__}: {e}",
                )
            return "dead_lettered"
