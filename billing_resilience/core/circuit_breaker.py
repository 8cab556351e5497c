from datetime import datetime
from enum import Enum
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, Optional, Protocol

import structlog

from billing_resilience.core.typing import ensure_aware, utc_now

logger = structlog.get_logger(__name__)

# (name, old_state, new_state) - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]

# Set by the application on startup
_notification_callback: Optional[StateChangeCallback] = None


def set_notification_callback(callback: Optional[StateChangeCallback]) -> None:
    """Set the global notification callback for circuit breaker state changes."""
    global _notification_callback
    _notification_callback = callback


def _notify_state_change(name: str, old_state: str, new_state: str) -> None:
    if _notification_callback:
        try:
            _notification_callback(name, old_state, new_state)
        except Exception as e:
            logger.error("Circuit breaker notification failed", circuit=name, error=str(e))


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Probing for recovery


class CircuitStateStore(Protocol):
    """Where breaker state lives when it is shared between processes."""

    def load(self, name: str) -> Optional[Dict[str, Any]]: ...

    def save(self, name: str, snapshot: Dict[str, Any]) -> None: ...


class DatabaseCircuitStateStore:
    """Persists breaker snapshots to the circuit_breaker_state table."""

    def __init__(self, engine):
        self.engine = engine

    def load(self, name: str) -> Optional[Dict[str, Any]]:
        from sqlmodel import Session, select
        from billing_resilience.models.circuit_breaker_state import CircuitBreakerState

        try:
            with Session(self.engine) as session:
                db_state = session.exec(select(CircuitBreakerState).where(CircuitBreakerState.name == name)).first()
                if db_state:
                    return {
                        "state": db_state.state,
                        "failure_count": db_state.failure_count,
                        "success_count": db_state.success_count,
                        "last_failure_at": ensure_aware(db_state.last_failure_at),
                        "last_state_change_at": ensure_aware(db_state.last_state_change_at),
                    }
        except Exception as e:
            logger.warning("Failed to load circuit breaker state", circuit=name, error=str(e))
        return None

    def save(self, name: str, snapshot: Dict[str, Any]) -> None:
        from sqlmodel import Session, select
        from billing_resilience.models.circuit_breaker_state import CircuitBreakerState

        try:
            with Session(self.engine) as session:
                db_state = session.exec(select(CircuitBreakerState).where(CircuitBreakerState.name == name)).first()
                if db_state is None:
                    db_state = CircuitBreakerState(name=name)
                db_state.state = snapshot["state"]
                db_state.failure_count = snapshot["failure_count"]
                db_state.success_count = snapshot["success_count"]
                db_state.last_failure_at = snapshot["last_failure_at"]
                db_state.last_state_change_at = snapshot["last_state_change_at"]
                db_state.updated_at = utc_now()
                session.add(db_state)
                session.commit()
        except Exception as e:
            # A broken store must not break the breaker itself
            logger.warning("Failed to persist circuit breaker state", circuit=name, error=str(e))


@dataclass
class CircuitBreaker:
    """
    Three-state circuit breaker.

    CLOSED counts failures with a leaky bucket: each failure adds one, each
    success removes one. Reaching failure_threshold opens the circuit. Once
    recovery_timeout has elapsed since the last failure, the next call
    moves it to HALF_OPEN, where success_threshold consecutive successes
    close it and any failure re-opens it.
    """

    name: str
    failure_threshold: int = 5
    success_threshold: int = 2
    recovery_timeout: float = 60.0  # seconds
    half_open_max_calls: Optional[int] = None  # defaults to success_threshold
    store: Optional[CircuitStateStore] = None
    clock: Callable[[], datetime] = utc_now

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _last_failure_time: datetime | None = field(default=None, init=False)
    _last_state_change: datetime = field(default_factory=utc_now, init=False)
    _half_open_calls: int = field(default=0, init=False)
    _lock: Lock = field(default_factory=Lock, init=False)

    def __post_init__(self):
        if self.half_open_max_calls is None:
            self.half_open_max_calls = self.success_threshold
        self._last_state_change = self.clock()
        if self.store is not None:
            saved = self.store.load(self.name)
            if saved:
                try:
                    self._state = CircuitState(saved.get("state", "closed"))
                except ValueError:
                    self._state = CircuitState.CLOSED
                self._failure_count = saved.get("failure_count") or 0
                self._success_count = saved.get("success_count") or 0
                self._last_failure_time = saved.get("last_failure_at")
                self._last_state_change = saved.get("last_state_change_at") or self._last_state_change
                logger.info(
                    "Circuit state restored",
                    circuit=self.name,
                    state=self._state.value,
                    failures=self._failure_count,
                )

    @property
    def state(self) -> CircuitState:
        """Return current state. Use allow_request() for state transitions."""
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "last_failure_at": self._last_failure_time,
            "last_state_change_at": self._last_state_change,
        }

    def _transition(self, new_state: CircuitState) -> tuple[str, str]:
        """Change state. Must be called while holding self._lock."""
        old_state = self._state
        self._state = new_state
        self._last_state_change = self.clock()
        if new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
            self._half_open_calls = 0
        elif new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
        return old_state.value, new_state.value

    def _after_change(self, change: Optional[tuple[str, str]], snapshot: Optional[Dict[str, Any]]) -> None:
        """Log, notify and persist outside the lock."""
        if change:
            old_state, new_state = change
            log = logger.warning if new_state == CircuitState.OPEN.value else logger.info
            log("Circuit state changed", circuit=self.name, old_state=old_state, new_state=new_state)
            _notify_state_change(self.name, old_state, new_state)
        if snapshot is not None and self.store is not None:
            self.store.save(self.name, snapshot)

    def _check_recovery_transition(self) -> Optional[tuple[str, str]]:
        """
        OPEN -> HALF_OPEN once recovery_timeout has elapsed since the last failure.

        Must be called while holding self._lock.
        """
        if self._state == CircuitState.OPEN and self._last_failure_time:
            elapsed = (self.clock() - ensure_aware(self._last_failure_time)).total_seconds()
            if elapsed >= self.recovery_timeout:
                return self._transition(CircuitState.HALF_OPEN)
        return None

    def record_success(self) -> None:
        change = None
        snapshot = None
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    change = self._transition(CircuitState.CLOSED)
                snapshot = self._snapshot()
            elif self._state == CircuitState.CLOSED and self._failure_count > 0:
                self._failure_count -= 1
                snapshot = self._snapshot()
        self._after_change(change, snapshot)

    def record_failure(self) -> None:
        change = None
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self.clock()

            if self._state == CircuitState.HALF_OPEN:
                change = self._transition(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                change = self._transition(CircuitState.OPEN)
            snapshot = self._snapshot()
        self._after_change(change, snapshot)

    def allow_request(self) -> bool:
        with self._lock:
            change = self._check_recovery_transition()

            if self._state == CircuitState.CLOSED:
                result = True
            elif self._state == CircuitState.OPEN:
                result = False
            else:  # HALF_OPEN
                self._half_open_calls += 1
                result = self._half_open_calls <= (self.half_open_max_calls or self.success_threshold)
            snapshot = self._snapshot() if change else None
        self._after_change(change, snapshot)
        return result

    def retry_in(self) -> Optional[float]:
        """Seconds until an OPEN circuit will admit a probe, or None."""
        with self._lock:
            if self._state != CircuitState.OPEN or self._last_failure_time is None:
                return None
            elapsed = (self.clock() - ensure_aware(self._last_failure_time)).total_seconds()
            return max(0.0, self.recovery_timeout - elapsed)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "is_healthy": self._state == CircuitState.CLOSED,
                "time_in_state": (self.clock() - ensure_aware(self._last_state_change)).total_seconds(),
                "last_failure_at": self._last_failure_time.isoformat() if self._last_failure_time else None,
            }

    def reset(self) -> None:
        """Force the circuit CLOSED and clear counters (admin action)."""
        with self._lock:
            change = self._transition(CircuitState.CLOSED) if self._state != CircuitState.CLOSED else None
            self._failure_count = 0
            self._success_count = 0
            self._half_open_calls = 0
            self._last_failure_time = None
            snapshot = self._snapshot()
        self._after_change(change, snapshot)
        logger.info("Circuit reset", circuit=self.name)


class CircuitBreakerRegistry:
    _breakers: Dict[str, CircuitBreaker] = {}
    _lock = Lock()

    @classmethod
    def get(cls, name: str, **kwargs) -> CircuitBreaker:
        with cls._lock:
            if name not in cls._breakers:
                cls._breakers[name] = CircuitBreaker(name=name, **kwargs)
            return cls._breakers[name]

    @classmethod
    def get_all_states(cls) -> Dict[str, str]:
        return {name: cb.state.value for name, cb in cls._breakers.items()}

    @classmethod
    def clear(cls) -> None:
        with cls._lock:
            cls._breakers.clear()
