from .circuit_breaker_state import CircuitBreakerState
from .operations_alert import OperationsAlert, AlertSeverity
from .subscription import Subscription, SubscriptionEvent
from .webhook_dlq import WebhookDLQRecord, DLQStatus

__all__ = [
    "CircuitBreakerState",
    "OperationsAlert",
    "AlertSeverity",
    "Subscription",
    "SubscriptionEvent",
    "WebhookDLQRecord",
    "DLQStatus",
]
