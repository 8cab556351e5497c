"""
Retry with exponential backoff, jitter and a per-attempt timeout.

    policy = RetryPolicy(max_retries=3)
    executor = RetryExecutor(policy)
    rows = await executor.execute(fetch_revenue, timeout=30)

`fetch_revenue` is an async callable that receives a CancellationToken.
The executor makes up to max_retries + 1 attempts, sleeping
calculate_delay(n) between them, and only retries errors whose kind is
transient, timeout or rate-limited. When attempts run out the last error
is raised unchanged.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from billing_resilience.core.cancellation import CancellationToken
from billing_resilience.core.exceptions import (
    ErrorKind,
    OperationTimeoutError,
    RETRYABLE_KINDS,
    classify_error,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[CancellationToken], Awaitable[T]]
RetryCallback = Callable[[int, BaseException, ErrorKind, float], Any]


def calculate_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    jitter_ratio: float = 0.3,
    rng: Callable[[float, float], float] = random.uniform,
) -> float:
    """
    Backoff delay in seconds before retry number `attempt` (0-based).

    min(base * 2^attempt, max) plus up to jitter_ratio of that on top, so
    the result lies in [d, d * (1 + jitter_ratio)].
    """
    delay = min(base_delay * (2**attempt), max_delay)
    return delay + rng(0, jitter_ratio * delay)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter_ratio: float = 0.3

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        from billing_resilience.core.config import settings

        return cls(
            max_retries=settings.RETRY_MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            jitter_ratio=settings.RETRY_JITTER_RATIO,
        )

    def delay_for(self, attempt: int) -> float:
        return calculate_delay(attempt, self.base_delay, self.max_delay, self.jitter_ratio)


class RetryExecutor:
    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_error: Optional[RetryCallback] = None,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self.on_error = on_error

    async def _attempt(self, op: Operation, timeout: Optional[float]) -> Any:
        token = CancellationToken()
        if timeout is None:
            return await op(token)
        try:
            return await asyncio.wait_for(op(token), timeout=timeout)
        except asyncio.TimeoutError as e:
            token.cancel(f"timed out after {timeout}s")
            raise OperationTimeoutError(timeout) from e

    async def execute(self, op: Operation, timeout: Optional[float] = None) -> Any:
        last_error: BaseException | None = None
        max_retries = self.policy.max_retries

        for attempt in range(max_retries + 1):
            try:
                return await self._attempt(op, timeout)
            except Exception as e:
                last_error = e
                kind = classify_error(e)

                if kind not in RETRYABLE_KINDS:
                    raise

                exhausted = attempt >= max_retries
                delay = 0.0 if exhausted else self.policy.delay_for(attempt)

                if self.on_error:
                    self.on_error(attempt, e, kind, delay)

                if exhausted:
                    logger.error(
                        "Operation failed after retries",
                        attempts=attempt + 1,
                        error_kind=kind.value,
                        error=str(e),
                    )
                    raise

                logger.warning(
                    "Retryable failure, backing off",
                    attempt=attempt + 1,
                    max_attempts=max_retries + 1,
                    delay_seconds=round(delay, 3),
                    error_kind=kind.value,
                    error=str(e),
                )
                await self._sleep(delay)

        # Unreachable: the loop either returns or raises
        raise last_error  # type: ignore[misc]
