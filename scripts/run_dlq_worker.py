#!/usr/bin/env python3
"""
DLQ Worker - Redelivers dead-lettered webhook events.

Run with: python scripts/run_dlq_worker.py

Records are claimed with a conditional UPDATE (and FOR UPDATE SKIP LOCKED
on PostgreSQL), so several workers can run side by side.

Usage:
    python scripts/run_dlq_worker.py                    # Every DLQ_RETRY_INTERVAL_SECONDS
    python scripts/run_dlq_worker.py --interval 15      # Custom interval
    python scripts/run_dlq_worker.py --once             # Single pass, then exit
    python scripts/run_dlq_worker.py --with-health      # Also run the health monitor
"""

import asyncio
import signal
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from sqlmodel import Session  # noqa: E402

from billing_resilience.core.config import settings  # noqa: E402
from billing_resilience.core.errors import init_sentry  # noqa: E402
from billing_resilience.core.logging_config import get_logger  # noqa: E402
from billing_resilience.db import create_db_and_tables, engine  # noqa: E402
from billing_resilience.services import webhook_dlq  # noqa: E402
from billing_resilience.services.health_monitor import HealthMonitor  # noqa: E402
from billing_resilience.services.resilient_executor import get_resilient_executor  # noqa: E402
from billing_resilience.services.subscription_updater import TransactionalSubscriptionUpdater  # noqa: E402
from billing_resilience.services.webhook_handler import SubscriptionWebhookHandler  # noqa: E402
from billing_resilience.services.webhook_retry_processor import WebhookRetryProcessor  # noqa: E402

logger = get_logger("dlq_worker")


async def worker(interval: int, once: bool, with_health: bool) -> None:
    create_db_and_tables()

    # Release claims from a previous crashed run
    with Session(engine) as session:
        reset = webhook_dlq.reset_stuck_processing(session)
        if reset:
            logger.info("Reset stuck DLQ records from previous run", count=reset)
        logger.info("DLQ stats at startup", **webhook_dlq.get_stats(session))

    processor = WebhookRetryProcessor(engine, SubscriptionWebhookHandler(TransactionalSubscriptionUpdater(engine)))

    if once:
        result = await processor.process_due_batch()
        logger.info("Single DLQ pass finished", **result.to_dict())
        return

    tasks = [asyncio.create_task(processor.run_forever(interval))]
    if with_health:
        monitor = HealthMonitor(get_resilient_executor(), engine)
        tasks.append(asyncio.create_task(monitor.run_forever()))

    loop = asyncio.get_running_loop()

    def handle_shutdown() -> None:
        logger.info("Shutdown requested, finishing current batch")
        processor.stop()
        for task in tasks[1:]:
            task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_shutdown)

    await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("DLQ worker stopped")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="DLQ Worker - Redeliver dead-lettered webhook events")
    parser.add_argument(
        "--interval",
        type=int,
        default=settings.DLQ_RETRY_INTERVAL_SECONDS,
        help=f"Seconds between passes (default: {settings.DLQ_RETRY_INTERVAL_SECONDS})",
    )
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--with-health", action="store_true", help="Also run the health monitor loop")
    args = parser.parse_args()

    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    asyncio.run(worker(args.interval, args.once, args.with_health))
