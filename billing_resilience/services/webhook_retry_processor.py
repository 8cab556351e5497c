"""
Webhook DLQ retry processor.

Periodically claims due dead-letter records and redelivers them through
the webhook handler. No database session is held while the handler runs;
each outcome is written in its own short transaction.

Usage:
    processor = WebhookRetryProcessor(engine, handler)
    result = await processor.process_due_batch()

    # Standalone worker
    await processor.run_forever(interval_seconds=60)
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy.engine import Engine
from sqlmodel import Session

from billing_resilience.core.config import settings
from billing_resilience.core.context import bound_event
from billing_resilience.core.errors import capture_exception
from billing_resilience.core.exceptions import ErrorKind, classify_error
from billing_resilience.models.webhook_dlq import DLQStatus, WebhookDLQRecord
from billing_resilience.services import webhook_dlq

logger = structlog.get_logger(__name__)

WebhookHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass
class RetryBatchResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    abandoned: int = 0
    parked: int = 0  # permanent errors, status failed
    expired: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class WebhookRetryProcessor:
    def __init__(
        self,
        engine: Engine,
        handler: WebhookHandler,
        batch_size: Optional[int] = None,
        redelivery_spacing: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.engine = engine
        self.handler = handler
        self.batch_size = settings.DLQ_BATCH_SIZE if batch_size is None else batch_size
        self.redelivery_spacing = (
            settings.DLQ_REDELIVERY_SPACING_SECONDS if redelivery_spacing is None else redelivery_spacing
        )
        self._sleep = sleep
        self._clock = clock
        self._running = False

    def _now(self) -> Optional[datetime]:
        return self._clock() if self._clock else None

    async def _redeliver(self, record: WebhookDLQRecord, result: RetryBatchResult) -> None:
        """Run the handler for one claimed record and store the outcome."""
        result.processed += 1
        with bound_event(record.event_id):
            try:
                await self.handler(record.payload)
            except Exception as e:
                kind = classify_error(e)
                error = f"{type(e).__name__}: {e}"
                with Session(self.engine) as session:
                    if kind == ErrorKind.PERMANENT:
                        webhook_dlq.mark_permanently_failed(session, record.id, error, now=self._now())
                        result.parked += 1
                        return
                    updated = webhook_dlq.mark_failed_and_reschedule(session, record.id, error, now=self._now())
                if updated is not None and updated.status == DLQStatus.ABANDONED:
                    result.abandoned += 1
                else:
                    result.failed += 1
                return

            with Session(self.engine) as session:
                webhook_dlq.mark_completed(session, record.id, now=self._now())
            result.succeeded += 1

    async def process_due_batch(self) -> RetryBatchResult:
        """
        One pass: expire stale records, claim a due batch and redeliver it.

        Redeliveries are spaced by redelivery_spacing seconds to avoid
        bursting the database after an outage.
        """
        result = RetryBatchResult()

        with Session(self.engine) as session:
            result.expired = webhook_dlq.expire_stale_records(session, now=self._now())
            claimed = webhook_dlq.claim_due_batch(session, limit=self.batch_size, now=self._now())

        for index, record in enumerate(claimed):
            if index > 0 and self.redelivery_spacing > 0:
                await self._sleep(self.redelivery_spacing)
            await self._redeliver(record, result)

        if result.processed or result.expired:
            logger.info("DLQ retry batch finished", **result.to_dict())
        return result

    async def retry_event(self, event_id: str) -> Optional[RetryBatchResult]:
        """
        Redeliver one pending record now, ignoring its next_retry_at.

        Returns:
            The outcome, or None when the record is not pending (unknown,
            already being processed, or finished).
        """
        with Session(self.engine) as session:
            record = webhook_dlq.claim_record(session, event_id, now=self._now())

        if record is None:
            logger.info("Manual DLQ retry skipped, record not claimable", event_id=event_id)
            return None

        result = RetryBatchResult()
        await self._redeliver(record, result)
        return result

    def stop(self) -> None:
        self._running = False

    async def run_forever(self, interval_seconds: Optional[int] = None) -> None:
        """Process batches every interval until stopped or cancelled."""
        interval_seconds = settings.DLQ_RETRY_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self._running = True
        logger.info("DLQ retry processor started", interval_seconds=interval_seconds, batch_size=self.batch_size)

        while self._running:
            try:
                await self.process_due_batch()
                await self._sleep(interval_seconds)
            except asyncio.CancelledError:
                logger.info("DLQ retry processor cancelled")
                break
            except Exception as e:
                capture_exception(e, context={"operation": "dlq_retry_batch"})
                await self._sleep(interval_seconds)

        logger.info("DLQ retry processor stopped")
