import secrets
from functools import lru_cache
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader
import structlog

from billing_resilience.core.config import settings
from billing_resilience.db import engine
from billing_resilience.services.health_monitor import HealthMonitor
from billing_resilience.services.resilient_executor import ResilientExecutor, get_resilient_executor
from billing_resilience.services.subscription_updater import TransactionalSubscriptionUpdater
from billing_resilience.services.webhook_handler import SubscriptionWebhookHandler
from billing_resilience.services.webhook_retry_processor import WebhookRetryProcessor

logger = structlog.get_logger(__name__)

# Admin token header name
ADMIN_TOKEN_HEADER = "X-Admin-Token"

admin_token_header = APIKeyHeader(name=ADMIN_TOKEN_HEADER, auto_error=False)


def require_admin(token: Optional[str] = Depends(admin_token_header)) -> str:
    """
    Guard admin endpoints with the shared ADMIN_API_TOKEN.

    Without a configured token the endpoints are open outside production
    and disabled (503) in production. Returns the caller identity recorded
    on acknowledgements.
    """
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        if settings.ENVIRONMENT == "production":
            logger.error("Admin request rejected, ADMIN_API_TOKEN is not configured")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Admin API is disabled until ADMIN_API_TOKEN is configured",
            )
        return "admin"

    if not token or not secrets.compare_digest(token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token",
        )
    return "admin"


def get_executor() -> ResilientExecutor:
    return get_resilient_executor()


@lru_cache(maxsize=1)
def get_retry_processor() -> WebhookRetryProcessor:
    updater = TransactionalSubscriptionUpdater(engine)
    return WebhookRetryProcessor(engine, SubscriptionWebhookHandler(updater))


@lru_cache(maxsize=1)
def _health_monitor() -> HealthMonitor:
    return HealthMonitor(get_resilient_executor(), engine)


def get_health_monitor() -> HealthMonitor:
    return _health_monitor()
