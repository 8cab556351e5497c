"""Cooperative cancellation handed to guarded operations."""

import asyncio
from typing import Optional

from billing_resilience.core.exceptions import OperationTimeoutError


class CancellationToken:
    """
    Signals that the caller stopped waiting for an operation.

    The retry executor cancels the token when an attempt times out. Work
    that spans several awaits (or hands off to a thread) should check
    `cancelled` or call `raise_if_cancelled()` between steps.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationTimeoutError(0, message=f"Operation cancelled: {self.reason}")

    async def wait(self) -> None:
        await self._event.wait()
