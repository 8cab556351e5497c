"""
Background jobs for the API process (enabled with RUN_SCHEDULER).

- DLQ redelivery pass every DLQ_RETRY_INTERVAL_SECONDS
- Health check every HEALTH_CHECK_INTERVAL_SECONDS
- Hourly maintenance: stuck DLQ claims, old completed records, old audit rows
"""

import asyncio

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlmodel import Session
import structlog

from billing_resilience.core.config import settings
from billing_resilience.core.errors import error_boundary
from billing_resilience.db import engine
from billing_resilience.services import webhook_dlq
from billing_resilience.services.health_monitor import HealthMonitor
from billing_resilience.services.resilient_executor import get_resilient_executor
from billing_resilience.services.subscription_updater import TransactionalSubscriptionUpdater
from billing_resilience.services.webhook_handler import SubscriptionWebhookHandler
from billing_resilience.services.webhook_retry_processor import WebhookRetryProcessor

logger = structlog.get_logger(__name__)

scheduler = AsyncIOScheduler()

_updater = TransactionalSubscriptionUpdater(engine)
retry_processor = WebhookRetryProcessor(engine, SubscriptionWebhookHandler(_updater))
health_monitor = HealthMonitor(get_resilient_executor(), engine)


async def job_process_dlq():
    with error_boundary("job_process_dlq"):
        await retry_processor.process_due_batch()


async def job_health_check():
    with error_boundary("job_health_check"):
        await asyncio.to_thread(health_monitor.check)


async def job_maintenance():
    with error_boundary("job_maintenance"):
        with Session(engine) as session:
            reset = webhook_dlq.reset_stuck_processing(session)
            deleted = webhook_dlq.cleanup_completed(session)
        pruned = _updater.cleanup_old_events()
        logger.info("Maintenance finished", stuck_reset=reset, dlq_deleted=deleted, audit_pruned=pruned)


def start_scheduler():
    # Release claims left behind by a crashed process
    with error_boundary("startup_reset_stuck_claims"):
        with Session(engine) as session:
            webhook_dlq.reset_stuck_processing(session)

    scheduler.add_job(
        job_process_dlq,
        IntervalTrigger(seconds=settings.DLQ_RETRY_INTERVAL_SECONDS),
        id="process_dlq",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        job_health_check,
        IntervalTrigger(seconds=settings.HEALTH_CHECK_INTERVAL_SECONDS),
        id="health_check",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        job_maintenance,
        IntervalTrigger(hours=1),
        id="maintenance",
        replace_existing=True,
        max_instances=1,
    )
    scheduler.start()
    logger.info(
        "Scheduler started",
        dlq_interval_seconds=settings.DLQ_RETRY_INTERVAL_SECONDS,
        health_interval_seconds=settings.HEALTH_CHECK_INTERVAL_SECONDS,
    )


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
