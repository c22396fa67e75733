"""
Admin-only subscription routes.

Authenticated with require_admin (Bearer JWT or X-Admin-Key).
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from mcqprep.core.admin_auth import AdminActor, require_admin
from mcqprep.features.admin.service import (
    admin_set_subscription,
    get_user_subscriptions,
    record_admin_audit,
)
from mcqprep.features.subscriptions.ledger import expire_lapsed_subscriptions
from mcqprep.features.subscriptions.reconciliation import list_alerts, resolve_alert

router = APIRouter(tags=["admin"])


class SetSubscriptionRequest(BaseModel):
    user_id: str
    has_active_subscription: bool
    end_date: Optional[datetime] = None


class ResolveAlertRequest(BaseModel):
    note: Optional[str] = None


@router.patch("/v1/admin/subscriptions")
def set_subscription(body: SetSubscriptionRequest, actor: AdminActor = Depends(require_admin)):
    return admin_set_subscription(actor, body.user_id, body.has_active_subscription, body.end_date)


@router.get("/v1/admin/subscriptions/{user_id}")
def user_subscriptions(user_id: str, actor: AdminActor = Depends(require_admin)):
    return get_user_subscriptions(user_id)


@router.get("/v1/admin/reconciliation/alerts")
def reconciliation_alerts(
    include_resolved: bool = Query(False),
    limit: int = Query(100, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
):
    alerts = list_alerts(include_resolved=include_resolved, limit=limit)
    return {"alerts": alerts, "count": len(alerts)}


@router.post("/v1/admin/reconciliation/alerts/{alert_id}/resolve")
def resolve_reconciliation_alert(
    alert_id: int,
    body: Optional[ResolveAlertRequest] = None,
    actor: AdminActor = Depends(require_admin),
):
    note = body.note if body else None
    alert = resolve_alert(alert_id, resolved_by=actor.actor_id, note=note)
    record_admin_audit(
        actor,
        "reconciliation.resolve",
        target_user_id=alert.get("user_id"),
        payload={"alert_id": alert_id, "note": note},
    )
    return alert


@router.post("/v1/admin/subscriptions/expire")
def expire_subscriptions(actor: AdminActor = Depends(require_admin)):
    expired = expire_lapsed_subscriptions()
    record_admin_audit(actor, "subscription.expire_sweep", payload={"expired": expired})
    return {"expired": expired}
