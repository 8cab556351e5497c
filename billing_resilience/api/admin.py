"""
Admin API for the resilience layer: executor status, DLQ operations and
operations alerts. Protected by the shared admin token.
"""

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlmodel import Session

from billing_resilience.api import deps
from billing_resilience.core.circuit_breaker import CircuitBreakerRegistry
from billing_resilience.db import get_session
from billing_resilience.models.webhook_dlq import DLQStatus
from billing_resilience.services import alerts as alert_service
from billing_resilience.services import webhook_dlq
from billing_resilience.services.health_monitor import HealthMonitor
from billing_resilience.services.resilient_executor import ResilientExecutor
from billing_resilience.services.webhook_retry_processor import WebhookRetryProcessor

router = APIRouter()


class DLQRetryRequest(BaseModel):
    event_id: Optional[str] = None


# ============== GUARDED DATA ACCESS ==============


@router.get("/resilience/metrics")
async def get_executor_metrics(
    admin: str = Depends(deps.require_admin),
    executor: ResilientExecutor = Depends(deps.get_executor),
):
    """Request counters, cache stats and circuit state."""
    return executor.get_metrics()


@router.get("/resilience/circuit")
async def get_circuit_status(
    admin: str = Depends(deps.require_admin),
    executor: ResilientExecutor = Depends(deps.get_executor),
):
    """Executor circuit status plus the state of every registered circuit."""
    return {**executor.get_circuit_breaker_status(), "registered_circuits": CircuitBreakerRegistry.get_all_states()}


@router.post("/resilience/circuit/reset")
async def reset_circuit(
    admin: str = Depends(deps.require_admin),
    executor: ResilientExecutor = Depends(deps.get_executor),
):
    executor.reset_circuit_breaker()
    return {"status": "reset", "circuit": executor.get_circuit_breaker_status()}


@router.post("/resilience/cache/clear")
async def clear_cache(
    admin: str = Depends(deps.require_admin),
    executor: ResilientExecutor = Depends(deps.get_executor),
):
    executor.clear_cache()
    return {"status": "cleared"}


@router.post("/resilience/metrics/reset")
async def reset_metrics(
    admin: str = Depends(deps.require_admin),
    executor: ResilientExecutor = Depends(deps.get_executor),
):
    executor.reset_metrics()
    return {"status": "reset"}


# ============== WEBHOOK DLQ ==============


@router.get("/webhooks/dlq/stats")
async def get_dlq_stats(
    admin: str = Depends(deps.require_admin),
    session: Session = Depends(get_session),
):
    """Queue counts plus a health verdict (critical: >10 abandoned, warning: >5 pending)."""
    stats = webhook_dlq.get_stats(session)
    return {**stats, "health": webhook_dlq.evaluate_dlq_health(stats)}


@router.get("/webhooks/dlq")
async def list_dlq_records(
    status: Optional[DLQStatus] = Query(None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    admin: str = Depends(deps.require_admin),
    session: Session = Depends(get_session),
):
    records = webhook_dlq.list_records(session, status=status, limit=limit, offset=offset)
    return [
        {
            "id": r.id,
            "event_id": r.event_id,
            "event_type": r.event_type,
            "status": r.status.value,
            "retry_count": r.retry_count,
            "max_retries": r.max_retries,
            "next_retry_at": r.next_retry_at.isoformat(),
            "last_error": r.last_error,
            "created_at": r.created_at.isoformat(),
        }
        for r in records
    ]


@router.post("/webhooks/dlq/retry")
async def retry_dlq(
    request: DLQRetryRequest,
    admin: str = Depends(deps.require_admin),
    processor: WebhookRetryProcessor = Depends(deps.get_retry_processor),
):
    """Run a redelivery pass now, or retry one event when event_id is given."""
    if request.event_id:
        result = await processor.retry_event(request.event_id)
        if result is None:
            raise HTTPException(status_code=409, detail=f"Event {request.event_id} is not pending redelivery")
        return {"status": "retried", "event_id": request.event_id, **result.to_dict()}

    result = await processor.process_due_batch()
    return {"status": "processed", **result.to_dict()}


@router.post("/webhooks/dlq/{record_id}/requeue")
async def requeue_dlq_record(
    record_id: int,
    admin: str = Depends(deps.require_admin),
    session: Session = Depends(get_session),
):
    record = webhook_dlq.requeue_failed(session, record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Failed DLQ record not found")
    return {"status": "requeued", "id": record.id, "event_id": record.event_id}


# ============== OPERATIONS ALERTS ==============


@router.get("/alerts")
async def list_alerts(
    limit: int = Query(default=100, ge=1, le=500),
    admin: str = Depends(deps.require_admin),
    session: Session = Depends(get_session),
):
    """Unacknowledged alerts, most severe first."""
    return alert_service.get_unacknowledged_alerts(session, limit=limit)


@router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: int,
    admin: str = Depends(deps.require_admin),
    session: Session = Depends(get_session),
):
    alert = alert_service.acknowledge_alert(session, alert_id, acknowledged_by=admin)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"status": "acknowledged", "id": alert.id, "acknowledged_by": alert.acknowledged_by}


@router.post("/alerts/{alert_id}/resolve")
async def resolve_alert(
    alert_id: int,
    admin: str = Depends(deps.require_admin),
    session: Session = Depends(get_session),
):
    alert = alert_service.resolve_alert(session, alert_id)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"status": "resolved", "id": alert.id}


# ============== HEALTH ==============


@router.get("/health")
async def get_health(
    admin: str = Depends(deps.require_admin),
    monitor: HealthMonitor = Depends(deps.get_health_monitor),
):
    """Aggregated health; 503 when critical."""
    report = await asyncio.to_thread(monitor.check)
    if report["status"] == "critical":
        return JSONResponse(status_code=503, content=report)
    return report
