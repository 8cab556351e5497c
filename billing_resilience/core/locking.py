"""
Per-subscription mutual exclusion.

Two layers:
- a process-local keyed lock, acquired with a timeout, so concurrent
  redeliveries in one worker queue up instead of deadlocking on the row;
- `SELECT ... FOR UPDATE` on the subscription row inside the caller's
  transaction, which serializes writers across processes. On PostgreSQL
  the wait is bounded with `SET LOCAL lock_timeout`.

Usage:
    lock = SubscriptionLock(timeout=10)
    with Session(engine) as session:
        with lock.hold("sub_123"):
            lock.apply_lock_timeout(session)
            row = lock.select_for_update(session, select(Subscription).where(...))
            ...
            session.commit()
"""

import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from billing_resilience.core.exceptions import LockTimeoutError

logger = structlog.get_logger(__name__)

# PostgreSQL SQLSTATE for lock_not_available
_PG_LOCK_NOT_AVAILABLE = "55P03"


class _KeyedLock:
    """One threading.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refs: Dict[str, int] = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
                self._refs[key] = 0
            self._refs[key] += 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=timeout):
                raise LockTimeoutError(key, timeout)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class SubscriptionLock:
    def __init__(self, timeout: Optional[float] = None):
        if timeout is None:
            from billing_resilience.core.config import settings

            timeout = settings.SUBSCRIPTION_LOCK_TIMEOUT_SECONDS
        self.timeout = timeout
        self._local = _KeyedLock()

    @contextmanager
    def hold(self, subscription_id: str) -> Iterator[None]:
        """Hold the process-local lock for one subscription."""
        with self._local.hold(f"subscription:{subscription_id}", self.timeout):
            yield

    def apply_lock_timeout(self, session: Session) -> None:
        """Bound row-lock waits for the current transaction (PostgreSQL only)."""
        bind = session.get_bind()
        if bind.dialect.name == "postgresql":
            session.execute(text(f"SET LOCAL lock_timeout = '{int(self.timeout * 1000)}ms'"))

    def select_for_update(self, session: Session, statement: Any) -> Any:
        """
        Run `statement` with FOR UPDATE and return the first row (or None).

        A lock wait that hits lock_timeout surfaces as LockTimeoutError.
        """
        try:
            return session.exec(statement.with_for_update()).first()
        except OperationalError as e:
            code = getattr(getattr(e, "orig", None), "pgcode", None)
            if code == _PG_LOCK_NOT_AVAILABLE or "lock timeout" in str(e).lower():
                logger.warning("Row lock wait timed out", timeout=self.timeout, error=str(e))
                raise LockTimeoutError("subscription row", self.timeout) from e
            raise

    @property
    def active_keys(self) -> int:
        return len(self._local)
