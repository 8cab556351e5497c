"""
Type and time helpers for SQLModel queries.

SQLModel fields are declared with Python types (e.g., `status: str`) but at
the class level they are InstrumentedAttribute descriptors with column
methods like .desc(), .in_(), .is_(). `col()` bridges that gap for type
checkers.

SQLite drops tzinfo on round-trip while PostgreSQL keeps it, so every
datetime read back from the database goes through `ensure_aware()` before
arithmetic or comparison with `utc_now()`.
"""

from typing import TYPE_CHECKING, Any, Optional, TypeVar, overload
from datetime import datetime, timezone

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")


def col(attr: T) -> "InstrumentedAttribute[T]":
    """
    Type helper for SQLAlchemy column operations in queries.

    At runtime this is a no-op.

    Usage:
        select(WebhookDLQRecord).order_by(col(WebhookDLQRecord.next_retry_at).asc())
    """
    return attr  # type: ignore[return-value]


def utc_now() -> datetime:
    """
    Get current UTC time (timezone-aware).

    Use as default_factory in SQLModel fields.
    """
    return datetime.now(timezone.utc)


@overload
def ensure_aware(value: datetime) -> datetime: ...
@overload
def ensure_aware(value: None) -> None: ...

def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC; leave aware ones untouched."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def safe_getattr(obj: Any, name: str, default: T = None) -> T:  # type: ignore[assignment]
    """
    Type-safe getattr for dynamically accessed attributes.

    Usage:
        claimed = safe_getattr(result, "rowcount", 0)
    """
    return getattr(obj, name, default)


__all__ = [
    "col",
    "utc_now",
    "ensure_aware",
    "safe_getattr",
]
