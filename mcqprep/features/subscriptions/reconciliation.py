"""
Reconciliation alerts: money moved, entitlement not recorded.

The alert row is written in its own transaction because the ledger
transaction that failed has already been rolled back.
"""
import json
import logging
from typing import Optional, Dict, Any, List

from sqlalchemy import select, insert, update

from mcqprep.core.config import settings
from mcqprep.core.database import get_db_session, reconciliation_alerts
from mcqprep.core.errors import NotFoundError, ReconciliationGap
from mcqprep.core.logging import log_event
from mcqprep.core.metrics import reconciliation_gaps_total
from mcqprep.core.timeutil import utc_now, ensure_utc
from mcqprep.features.notifications import messages
from mcqprep.features.notifications.dispatcher import dispatch_notification

logger = logging.getLogger("mcqprep")


def record_reconciliation_gap(
    user_id: str,
    provider: str,
    provider_subscription_id: Optional[str],
    error: str,
    payload: Optional[Dict[str, Any]] = None,
) -> ReconciliationGap:
    """
    Persist and page on a reconciliation gap.

    Returns the ReconciliationGap for the caller to raise. If even the alert
    row cannot be written the CRITICAL log line is the remaining record.
    """
    reconciliation_gaps_total.inc(labels={"provider": provider})
    log_event(
        "critical",
        "reconciliation.gap",
        user_id=user_id,
        error_code="reconciliation_gap",
        extra={
            "provider": provider,
            "provider_subscription_id": provider_subscription_id,
            "error": error,
        },
    )

    alert_id = None
    try:
        with get_db_session() as session:
            result = session.execute(
                insert(reconciliation_alerts).values(
                    user_id=user_id,
                    provider_kind=provider,
                    provider_subscription_id=provider_subscription_id,
                    error=error[:2000],
                    payload_json=json.dumps(payload, default=str) if payload else None,
                    created_at=utc_now(),
                )
            )
            alert_id = result.inserted_primary_key[0]
    except Exception:
        logger.critical(
            "reconciliation.alert_write_failed",
            exc_info=True,
            extra={"user_id": user_id, "provider": provider},
        )

    if settings.OPS_ALERT_EMAIL and alert_id is not None:
        subject, body = messages.reconciliation_alert(
            alert_id, user_id, provider, provider_subscription_id, error
        )
        dispatch_notification(settings.OPS_ALERT_EMAIL, subject, body, user_id=user_id)

    return ReconciliationGap(
        f"Ledger write failed after {provider} confirmed payment: {error}",
        user_id=user_id,
        provider=provider,
        provider_subscription_id=provider_subscription_id,
        alert_id=alert_id,
    )


def _alert_to_dict(row) -> Dict[str, Any]:
    resolved_at = ensure_utc(row.resolved_at)
    return {
        "id": row.id,
        "user_id": row.user_id,
        "provider": row.provider_kind,
        "provider_subscription_id": row.provider_subscription_id,
        "error": row.error,
        "created_at": ensure_utc(row.created_at).isoformat() if row.created_at else None,
        "resolved_at": resolved_at.isoformat() if resolved_at else None,
        "resolved_by": row.resolved_by,
        "resolution_note": row.resolution_note,
    }


def list_alerts(include_resolved: bool = False, limit: int = 100) -> List[Dict[str, Any]]:
    query = select(reconciliation_alerts).order_by(reconciliation_alerts.c.id.desc()).limit(limit)
    if not include_resolved:
        query = query.where(reconciliation_alerts.c.resolved_at.is_(None))
    with get_db_session() as session:
        rows = session.execute(query).fetchall()
    return [_alert_to_dict(row) for row in rows]


def resolve_alert(alert_id: int, resolved_by: str, note: Optional[str] = None) -> Dict[str, Any]:
    with get_db_session() as session:
        row = session.execute(
            select(reconciliation_alerts).where(reconciliation_alerts.c.id == alert_id)
        ).fetchone()
        if not row:
            raise NotFoundError(f"Reconciliation alert {alert_id} not found")
        if row.resolved_at is None:
            session.execute(
                update(reconciliation_alerts)
                .where(reconciliation_alerts.c.id == alert_id)
                .values(resolved_at=utc_now(), resolved_by=resolved_by, resolution_note=note)
            )
        row = session.execute(
            select(reconciliation_alerts).where(reconciliation_alerts.c.id == alert_id)
        ).fetchone()
        return _alert_to_dict(row)
