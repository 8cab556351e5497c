from contextlib import asynccontextmanager

from fastapi import FastAPI

from billing_resilience.api import admin
from billing_resilience.core.circuit_breaker import set_notification_callback
from billing_resilience.core.config import settings
from billing_resilience.core.errors import init_sentry
from billing_resilience.core.logging_config import get_logger
from billing_resilience.db import create_db_and_tables, engine
from billing_resilience.services.alerts import circuit_state_alerts

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Billing resilience API starting", environment=settings.ENVIRONMENT)
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    create_db_and_tables()
    set_notification_callback(circuit_state_alerts(engine))

    if settings.RUN_SCHEDULER:
        from billing_resilience.core.scheduler import start_scheduler, stop_scheduler

        start_scheduler()
    else:
        stop_scheduler = None
        logger.info("RUN_SCHEDULER is false, skipping scheduler startup in this process")

    try:
        yield
    finally:
        if stop_scheduler:
            stop_scheduler()
        set_notification_callback(None)


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_V1_STR}/openapi.json", lifespan=lifespan)

app.include_router(admin.router, prefix=f"{settings.API_V1_STR}/admin", tags=["admin"])


@app.get("/health")
def health():
    return {"status": "ok"}
