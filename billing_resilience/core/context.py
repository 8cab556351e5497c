"""
Execution context for log and error correlation.

Webhook redeliveries and guarded operations run far away from the request
that caused them, so the event id and a correlation id are carried in
contextvars and merged into structlog output and error reports.

Usage:
    with bound_event("evt_123"):
        logger.info("redelivering")  # carries event_id=evt_123
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional
import uuid

import structlog

__all__ = [
    "set_event_id",
    "get_event_id",
    "set_correlation_id",
    "get_correlation_id",
    "generate_correlation_id",
    "bound_event",
    "clear_context",
    "get_context_dict",
]

_event_id: ContextVar[Optional[str]] = ContextVar("event_id", default=None)
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def generate_correlation_id() -> str:
    """
    Generate a new correlation ID.

    Format: corr_{16 hex chars}
    """
    return f"corr_{uuid.uuid4().hex[:16]}"


def set_event_id(event_id: Optional[str]) -> None:
    _event_id.set(event_id)


def get_event_id() -> Optional[str]:
    return _event_id.get()


def set_correlation_id(correlation_id: Optional[str]) -> None:
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def bound_event(event_id: str, correlation_id: Optional[str] = None) -> Iterator[str]:
    """
    Bind an event id (and a correlation id) for the duration of the block.

    Both values are also bound into structlog's contextvars so every log
    line emitted inside the block carries them.
    """
    correlation_id = correlation_id or generate_correlation_id()
    event_token = _event_id.set(event_id)
    corr_token = _correlation_id.set(correlation_id)
    with structlog.contextvars.bound_contextvars(event_id=event_id, correlation_id=correlation_id):
        try:
            yield correlation_id
        finally:
            _event_id.reset(event_token)
            _correlation_id.reset(corr_token)


def clear_context() -> None:
    _event_id.set(None)
    _correlation_id.set(None)


def get_context_dict() -> dict:
    """
    Get all context variables as dict.

    Useful for enriching error reports.
    """
    return {
        "event_id": get_event_id(),
        "correlation_id": get_correlation_id(),
    }
