"""
Error reporting for the resilience layer.

Every report goes to structlog. When SENTRY_DSN is set and sentry-sdk is
installed, reports are also sent to Sentry, tagged with the webhook event
and correlation ids bound by `bound_event()`.

    capture_exception(exc, context={"record_id": 12})
    capture_message("Circuit billing_data closed -> open", level="error")

    with error_boundary("job_maintenance"):
        cleanup_completed(session)
"""

from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import structlog

from billing_resilience.core.context import get_context_dict, get_correlation_id, get_event_id
from billing_resilience.core.typing import utc_now

logger = structlog.get_logger(__name__)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
    "ErrorHandler",
    "error_boundary",
]

_sentry_initialized: bool = False


def init_sentry(dsn: str, environment: str = "production", traces_sample_rate: float = 0.1) -> bool:
    """Start Sentry reporting. Returns False when disabled or unavailable."""
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    try:
        import logging

        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.logging import LoggingIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    except ImportError:
        logger.warning("Sentry SDK not installed, error tracking disabled")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            before_send=_before_send,
        )
    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False

    _sentry_initialized = True
    logger.info("Sentry initialized", environment=environment)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Drop liveness probes and tag events with the bound webhook ids."""
    if "/health" in (event.get("request") or {}).get("url", ""):
        return None

    tags = {"webhook_event_id": get_event_id(), "correlation_id": get_correlation_id()}
    for key, value in tags.items():
        if value:
            event.setdefault("tags", {})[key] = value
    return event


def _enrich(context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {**get_context_dict(), "timestamp": utc_now().isoformat(), **(context or {})}


def _send(
    capture: str,
    payload: Any,
    level: str,
    extras: Dict[str, Any],
    tags: Optional[Dict[str, str]] = None,
    fingerprint: Optional[List[str]] = None,
) -> Optional[str]:
    """Forward one report to Sentry. `capture` names the sentry_sdk function."""
    if not _sentry_initialized:
        return None
    try:
        import sentry_sdk

        with sentry_sdk.push_scope() as scope:
            for key, value in extras.items():
                if value is not None:
                    scope.set_extra(key, value)
            for key, value in (tags or {}).items():
                scope.set_tag(key, value)
            if fingerprint:
                scope.fingerprint = fingerprint
            scope.level = level
            if capture == "message":
                return sentry_sdk.capture_message(payload, level=level)
            return sentry_sdk.capture_exception(payload)
    except Exception as e:
        logger.warning("Failed to send report to Sentry", kind=capture, error=str(e))
        return None


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[List[str]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Log an exception and report it to Sentry.

    Returns:
        Sentry event id, or None when Sentry is off
    """
    extras = {**_enrich(context), "error_type": type(exc).__name__}
    logger.error("Exception captured", exc_info=exc, **extras)
    return _send("exception", exc, level, extras, tags=tags, fingerprint=fingerprint)


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """Log and report an operational signal (abandoned webhook, circuit change)."""
    extras = _enrich(context)
    getattr(logger, level, logger.info)(message, **extras)
    return _send("message", message, level, extras, tags=tags)


class ErrorHandler:
    """
    Capture errors raised inside the block, tagged with the operation name.

        with ErrorHandler("apply_event", reraise=True):
            updater.apply_event(...)
    """

    def __init__(self, operation: str, context: Optional[Dict[str, Any]] = None, reraise: bool = False):
        self.operation = operation
        self.context = context or {}
        self.reraise = reraise
        self.event_id: Optional[str] = None
        self.error: Optional[BaseException] = None

    def __enter__(self) -> "ErrorHandler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is None:
            return False

        self.error = exc_val
        self.event_id = capture_exception(
            exc_val,
            context={"operation": self.operation, **self.context},
            fingerprint=[self.operation, type(exc_val).__name__],
        )
        return not self.reraise


@contextmanager
def error_boundary(operation: str, **context):
    """Capture and suppress errors; scheduled jobs run inside one."""
    with ErrorHandler(operation, context=context) as handler:
        yield handler
