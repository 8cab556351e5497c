"""
Error taxonomy for guarded operations and webhook redelivery.

Each error carries an ErrorKind decided where the error is raised. Retry
decisions look at the kind, not at message text. Foreign exceptions that
arrive untagged are classified by type first and, as a last resort, by a
fixed set of message markers.
"""

import asyncio
from enum import Enum
from typing import Optional

from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError

__all__ = [
    "ErrorKind",
    "RETRYABLE_KINDS",
    "ResilienceError",
    "TransientError",
    "RateLimitedError",
    "OperationTimeoutError",
    "CircuitOpenError",
    "PermanentError",
    "DLQAbandonedError",
    "LockTimeoutError",
    "classify_error",
    "is_retryable",
]


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    CIRCUIT_OPEN = "circuit_open"
    PERMANENT = "permanent"


RETRYABLE_KINDS = frozenset({ErrorKind.TRANSIENT, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED})

# Markers for untagged errors from drivers and HTTP clients
_TRANSIENT_MARKERS = (
    "connection timeout",
    "network error",
    "econnrefused",
    "etimedout",
    "enotfound",
    "service unavailable",
    "connection reset by peer",
    "server closed the connection unexpectedly",
    "503",
    "502",
    "504",
)
_RATE_LIMIT_MARKERS = ("rate limit exceeded", "too many requests", "429")

_TRANSIENT_STATUS_CODES = frozenset({502, 503, 504})


class ResilienceError(Exception):
    """Base class for errors raised by the resilience layer."""

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(self, message: str = "", *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class TransientError(ResilienceError):
    """Connection-level or infrastructure failure; worth retrying."""

    kind = ErrorKind.TRANSIENT


class RateLimitedError(TransientError):
    """The backing store or provider asked us to slow down."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str = "Rate limit exceeded", *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class OperationTimeoutError(TransientError):
    """A guarded operation did not finish within its time budget."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, timeout: float, message: Optional[str] = None, **kwargs):
        super().__init__(message or f"Operation timed out after {timeout}s", **kwargs)
        self.timeout = timeout


class CircuitOpenError(ResilienceError):
    """Rejected without running because the circuit is open."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, name: str, retry_in: Optional[float] = None, **kwargs):
        message = f"Circuit '{name}' is open"
        if retry_in is not None:
            message += f"; retry in {retry_in:.1f}s"
        super().__init__(message, **kwargs)
        self.name = name
        self.retry_in = retry_in


class PermanentError(ResilienceError):
    """Validation failure or bad payload; retrying will not help."""

    kind = ErrorKind.PERMANENT


class DLQAbandonedError(PermanentError):
    """A dead-letter record exhausted its retry budget."""

    def __init__(self, event_id: str, retry_count: int, last_error: Optional[str] = None, **kwargs):
        super().__init__(f"Webhook event {event_id} abandoned after {retry_count} retries", **kwargs)
        self.event_id = event_id
        self.retry_count = retry_count
        self.last_error = last_error


class LockTimeoutError(TransientError):
    """Could not acquire the per-subscription lock in time."""

    def __init__(self, key: str, timeout: float, **kwargs):
        super().__init__(f"Timed out after {timeout}s waiting for lock on {key}", **kwargs)
        self.key = key
        self.timeout = timeout


def _status_code(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def classify_error(exc: BaseException) -> ErrorKind:
    """
    Map an exception to an ErrorKind.

    Order: explicit `kind` on the exception, well-known exception types,
    HTTP status codes, then message markers. Anything else is permanent.
    """
    kind = getattr(exc, "kind", None)
    if isinstance(kind, ErrorKind):
        return kind

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (ConnectionError, OperationalError, DisconnectionError, InterfaceError)):
        return ErrorKind.TRANSIENT

    status = _status_code(exc)
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status in _TRANSIENT_STATUS_CODES:
        return ErrorKind.TRANSIENT

    message = str(exc).lower()
    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMITED
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT

    return ErrorKind.PERMANENT


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) in RETRYABLE_KINDS
