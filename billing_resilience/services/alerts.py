"""
Operations alerts.

Alerts are persisted so the admin API can list and acknowledge them, and
every alert is also reported through capture_message (structlog, plus
Sentry when configured).

Usage:
    create_alert(session, "webhook_abandoned", AlertSeverity.CRITICAL, {"event_id": "evt_1"})
    for alert in get_unacknowledged_alerts(session):
        print(alert["alert_type"], alert["age_minutes"])
"""

from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from billing_resilience.core.errors import capture_message
from billing_resilience.core.typing import col, ensure_aware, utc_now
from billing_resilience.models.operations_alert import AlertSeverity, OperationsAlert, SEVERITY_RANK

logger = structlog.get_logger(__name__)

_CAPTURE_LEVEL = {
    AlertSeverity.LOW: "info",
    AlertSeverity.MEDIUM: "warning",
    AlertSeverity.HIGH: "error",
    AlertSeverity.CRITICAL: "error",
}


def create_alert(
    session: Session,
    alert_type: str,
    severity: AlertSeverity | str,
    details: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> OperationsAlert:
    """
    Persist an operations alert and report it.

    With commit=False the alert joins the caller's transaction.
    """
    severity = AlertSeverity(severity)
    alert = OperationsAlert(alert_type=alert_type, severity=severity, details=details or {})
    session.add(alert)
    if commit:
        session.commit()
        session.refresh(alert)

    capture_message(
        f"Operations alert: {alert_type}",
        level=_CAPTURE_LEVEL[severity],
        context={"alert_type": alert_type, "severity": severity.value, **(details or {})},
        tags={"alert_type": alert_type, "severity": severity.value},
    )
    return alert


def get_unacknowledged_alerts(session: Session, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    Open alerts, most severe first, then oldest first.

    Each entry is the alert's fields plus `age_minutes`.
    """
    alerts = session.exec(
        select(OperationsAlert).where(
            col(OperationsAlert.acknowledged).is_(False),
            col(OperationsAlert.resolved).is_(False),
        )
    ).all()

    alerts = sorted(
        alerts,
        key=lambda a: (SEVERITY_RANK[AlertSeverity(a.severity)], ensure_aware(a.created_at)),
    )
    if limit is not None:
        alerts = alerts[:limit]

    now = utc_now()
    return [
        {
            "id": a.id,
            "alert_type": a.alert_type,
            "severity": AlertSeverity(a.severity).value,
            "details": a.details,
            "created_at": ensure_aware(a.created_at).isoformat(),
            "age_minutes": round((now - ensure_aware(a.created_at)).total_seconds() / 60, 1),
        }
        for a in alerts
    ]


def acknowledge_alert(session: Session, alert_id: int, acknowledged_by: str) -> Optional[OperationsAlert]:
    alert = session.get(OperationsAlert, alert_id)
    if alert is None:
        logger.warning("Alert not found for acknowledgement", alert_id=alert_id)
        return None

    if not alert.acknowledged:
        alert.acknowledged = True
        alert.acknowledged_by = acknowledged_by
        alert.acknowledged_at = utc_now()
        session.add(alert)
        session.commit()
        session.refresh(alert)
        logger.info("Alert acknowledged", alert_id=alert_id, acknowledged_by=acknowledged_by)
    return alert


def resolve_alert(session: Session, alert_id: int) -> Optional[OperationsAlert]:
    alert = session.get(OperationsAlert, alert_id)
    if alert is None:
        logger.warning("Alert not found for resolution", alert_id=alert_id)
        return None

    if not alert.resolved:
        alert.resolved = True
        alert.resolved_at = utc_now()
        session.add(alert)
        session.commit()
        session.refresh(alert)
        logger.info("Alert resolved", alert_id=alert_id, alert_type=alert.alert_type)
    return alert


def resolve_alerts_of_type(session: Session, alert_type: str) -> int:
    """Resolve every open alert of one type. Returns the number resolved."""
    alerts = session.exec(
        select(OperationsAlert).where(
            col(OperationsAlert.alert_type) == alert_type,
            col(OperationsAlert.resolved).is_(False),
        )
    ).all()
    now = utc_now()
    for alert in alerts:
        alert.resolved = True
        alert.resolved_at = now
        session.add(alert)
    if alerts:
        session.commit()
        logger.info("Alerts auto-resolved", alert_type=alert_type, count=len(alerts))
    return len(alerts)


CIRCUIT_OPENED_ALERT = "circuit_opened"


def circuit_state_alerts(engine: Engine) -> Callable[[str, str, str], None]:
    """
    Build a circuit breaker notification callback.

    Opening a circuit persists a high alert; closing it resolves that
    circuit's open alerts. Other transitions are only reported.
    """

    def notify(name: str, old_state: str, new_state: str) -> None:
        if new_state == "open":
            with Session(engine) as session:
                create_alert(
                    session,
                    CIRCUIT_OPENED_ALERT,
                    AlertSeverity.HIGH,
                    {"circuit": name, "previous_state": old_state},
                )
            return

        capture_message(
            f"Circuit {name} {old_state} -> {new_state}",
            level="info",
            context={"circuit": name, "old_state": old_state, "new_state": new_state},
            tags={"circuit": name},
        )
        if new_state != "closed":
            return

        with Session(engine) as session:
            open_alerts = session.exec(
                select(OperationsAlert).where(
                    col(OperationsAlert.alert_type) == CIRCUIT_OPENED_ALERT,
                    col(OperationsAlert.resolved).is_(False),
                )
            ).all()
            now = utc_now()
            resolved = 0
            for alert in open_alerts:
                if (alert.details or {}).get("circuit") == name:
                    alert.resolved = True
                    alert.resolved_at = now
                    session.add(alert)
                    resolved += 1
            session.commit()
        if resolved:
            logger.info("Circuit alerts resolved", circuit=name, count=resolved)

    return notify
