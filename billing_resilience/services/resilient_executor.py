"""
Guarded data access for dashboard queries.

Every operation runs behind a circuit breaker, a result cache and a
retrying executor with a timeout:

    breaker check -> cache lookup -> retry(op, timeout) -> cache store -> breaker update

Usage:
    executor = get_resilient_executor()

    async def fetch_mrr(token):
        return await repo.monthly_recurring_revenue()

    mrr = await executor.execute_guarded(fetch_mrr, cacheable=True, cache_key="mrr:2024-06")
"""

import time
from threading import Lock
from typing import Any, Dict, Hashable, Optional

import structlog

from billing_resilience.core.cache import ResultCache
from billing_resilience.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    CircuitStateStore,
)
from billing_resilience.core.config import settings
from billing_resilience.core.exceptions import CircuitOpenError, ErrorKind, classify_error
from billing_resilience.core.metrics import PerformanceMetrics
from billing_resilience.core.retry import Operation, RetryExecutor, RetryPolicy

logger = structlog.get_logger(__name__)

DEFAULT_CIRCUIT_NAME = "billing_data"


class ResilientExecutor:
    def __init__(
        self,
        breaker: Optional[CircuitBreaker] = None,
        cache: Optional[ResultCache] = None,
        retry_policy: Optional[RetryPolicy] = None,
        metrics: Optional[PerformanceMetrics] = None,
        default_timeout: Optional[float] = None,
        sleep=None,
    ):
        self.breaker = breaker or CircuitBreaker(
            name=DEFAULT_CIRCUIT_NAME,
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            success_threshold=settings.CIRCUIT_SUCCESS_THRESHOLD,
            recovery_timeout=settings.CIRCUIT_OPEN_RETRY_DELAY_SECONDS,
        )
        self.cache = cache or ResultCache.from_settings()
        self.metrics = metrics or PerformanceMetrics()
        self.default_timeout = settings.OPERATION_TIMEOUT_SECONDS if default_timeout is None else default_timeout

        retry_kwargs: Dict[str, Any] = {"on_error": self._on_retryable_error}
        if sleep is not None:
            retry_kwargs["sleep"] = sleep
        self.retry = RetryExecutor(retry_policy or RetryPolicy.from_settings(), **retry_kwargs)

    def _on_retryable_error(self, attempt: int, error: BaseException, kind: ErrorKind, delay: float) -> None:
        if kind == ErrorKind.RATE_LIMITED:
            self.metrics.record_rate_limit_hit()

    async def execute_guarded(
        self,
        op: Operation,
        cacheable: bool = False,
        cache_key: Optional[Hashable] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Run `op` behind the breaker, cache and retry policy.

        Raises:
            CircuitOpenError when the circuit rejects the call (op is not run),
            OperationTimeoutError when the last attempt timed out,
            otherwise the last error from `op`.
        """
        self.metrics.record_request()

        if not self.breaker.allow_request():
            self.metrics.record_circuit_trip()
            self.metrics.record_failure()
            retry_in = self.breaker.retry_in()
            logger.warning("Circuit open, rejecting operation", circuit=self.breaker.name, retry_in=retry_in)
            raise CircuitOpenError(self.breaker.name, retry_in=retry_in)

        use_cache = cacheable and cache_key is not None
        if use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                self.metrics.record_cache_hit()
                self.metrics.record_success()
                self.breaker.record_success()
                return cached

        started = time.perf_counter()
        try:
            result = await self.retry.execute(op, timeout=self.default_timeout if timeout is None else timeout)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - started) * 1000
            self.breaker.record_failure()
            self.metrics.record_failure(elapsed_ms)
            logger.warning(
                "Guarded operation failed",
                error_kind=classify_error(e).value,
                error=str(e),
                elapsed_ms=round(elapsed_ms, 1),
                circuit_state=self.breaker.state.value,
            )
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        if use_cache and result is not None:
            self.cache.set(cache_key, result)
        self.breaker.record_success()
        self.metrics.record_success(elapsed_ms)
        return result

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **self.metrics.snapshot(),
            "circuit_breaker_state": self.breaker.state.value,
            "cache": self.cache.stats(),
        }

    def get_circuit_breaker_status(self) -> Dict[str, Any]:
        return self.breaker.get_status()

    def reset_circuit_breaker(self) -> None:
        self.breaker.reset()

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Result cache cleared")

    def reset_metrics(self) -> None:
        self.metrics.reset()

    @property
    def is_healthy(self) -> bool:
        return self.breaker.state == CircuitState.CLOSED


_executor: Optional[ResilientExecutor] = None
_executor_lock = Lock()


def get_resilient_executor(store: Optional[CircuitStateStore] = None) -> ResilientExecutor:
    """
    Process-wide executor.

    The breaker is the registry's "billing_data" circuit. With
    CIRCUIT_PERSIST_STATE it shares state through the database unless
    another store is passed.
    """
    global _executor
    with _executor_lock:
        if _executor is None:
            if store is None and settings.CIRCUIT_PERSIST_STATE:
                from billing_resilience.core.circuit_breaker import DatabaseCircuitStateStore
                from billing_resilience.db import engine

                store = DatabaseCircuitStateStore(engine)
            breaker = CircuitBreakerRegistry.get(
                DEFAULT_CIRCUIT_NAME,
                failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
                success_threshold=settings.CIRCUIT_SUCCESS_THRESHOLD,
                recovery_timeout=settings.CIRCUIT_OPEN_RETRY_DELAY_SECONDS,
                store=store,
            )
            _executor = ResilientExecutor(breaker=breaker)
        return _executor


def reset_resilient_executor() -> None:
    """Drop the process-wide executor (tests, reconfiguration)."""
    global _executor
    with _executor_lock:
        _executor = None
