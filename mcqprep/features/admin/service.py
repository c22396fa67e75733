"""
Admin override of a user's subscription.

Deactivation only flips the ledger row: no provider call is made, so an
external paid subscription keeps billing until it is cancelled at the
provider. Every call is audited with the authenticated actor.
"""
import json
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError

from mcqprep.core.admin_auth import AdminActor
from mcqprep.core.config import settings
from mcqprep.core.database import get_db_session, admin_audit
from mcqprep.core.errors import AdminAuditWriteError, NotFoundError, ValidationError
from mcqprep.core.logging import log_event
from mcqprep.core.timeutil import add_months, ensure_utc, utc_now
from mcqprep.features.identity.service import get_identity_directory
from mcqprep.features.subscriptions import ledger
from mcqprep.features.subscriptions.models import EntitlementSource, SubscriptionDraft
from mcqprep.features.subscriptions.tiers import get_tier_by_name


def record_admin_audit(
    actor: AdminActor,
    action: str,
    target_user_id: Optional[str] = None,
    payload: Optional[dict] = None,
) -> None:
    """
    Record an admin action in the audit log.

    Raises:
        AdminAuditWriteError: the audit row could not be written
    """
    try:
        with get_db_session() as session:
            session.execute(
                insert(admin_audit).values(
                    actor=actor.actor_type,
                    actor_id=actor.actor_id,
                    auth_mechanism=actor.auth_mechanism,
                    action=action,
                    target_user_id=target_user_id,
                    payload_json=json.dumps(payload, default=str) if payload else None,
                    created_at=utc_now(),
                )
            )
    except SQLAlchemyError as e:
        log_event(
            "error",
            "admin.audit.write_failed",
            user_id=target_user_id,
            error_code="admin_audit_failed",
            extra={"action": action, "actor_id": actor.actor_id, "error": e},
        )
        raise AdminAuditWriteError(f"Failed to write admin audit for {action}") from e


def admin_set_subscription(
    actor: AdminActor,
    user_id: str,
    desired_active: bool,
    end_date: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Force a user's access on or off.

    - off: close the active row (no provider call)
    - on with an active row: move its end date if one is given, else no-op
    - on without one: grant ADMIN_DEFAULT_TIER_NAME from now
    """
    if not user_id:
        raise ValidationError("user_id is required")
    if get_identity_directory().get_user(user_id) is None:
        raise NotFoundError(f"User {user_id} not found")

    now = utc_now()
    end_date = ensure_utc(end_date)
    if end_date is not None and end_date <= now:
        raise ValidationError("end_date must be in the future")

    if not desired_active:
        result = _deactivate(user_id, now)
    else:
        result = _activate(user_id, end_date, now)

    record_admin_audit(
        actor,
        "subscription.set_active" if desired_active else "subscription.deactivate",
        target_user_id=user_id,
        payload={
            "has_active_subscription": desired_active,
            "end_date": end_date.isoformat() if end_date else None,
            "action": result["action"],
            "subscription_id": (result["subscription"] or {}).get("id"),
        },
    )
    log_event(
        "info",
        "admin.subscription.updated",
        user_id=user_id,
        extra={"actor_id": actor.actor_id, "action": result["action"]},
    )
    return result


def _deactivate(user_id: str, now: datetime) -> Dict[str, Any]:
    deactivated, has_access = ledger.deactivate_active(user_id, now=now)
    if deactivated is not None and deactivated.is_paid:
        log_event(
            "warning",
            "admin.deactivate.provider_not_cancelled",
            user_id=user_id,
            extra={
                "provider": deactivated.provider_kind.value,
                "provider_subscription_id": deactivated.provider_subscription_id,
            },
        )
    return {
        "user_id": user_id,
        "action": "deactivated" if deactivated else "noop",
        "has_active_subscription": has_access,
        "subscription": deactivated.to_dict() if deactivated else None,
    }


def _activate(user_id: str, end_date: Optional[datetime], now: datetime) -> Dict[str, Any]:
    active = ledger.get_active_subscription(user_id)
    if active is not None and active.end_date > now:
        if end_date is None:
            return {
                "user_id": user_id,
                "action": "noop",
                "has_active_subscription": True,
                "subscription": active.to_dict(),
            }
        draft = SubscriptionDraft(
            tier_id=active.tier_id,
            start_date=active.start_date,
            end_date=end_date,
            source=EntitlementSource.ADMIN,
            # Targets the row itself; provider fields on the row are left untouched
            target_subscription_id=active.id,
        )
        result = ledger.apply_transition(user_id, draft, now=now)
        return {
            "user_id": user_id,
            "action": "extended",
            "has_active_subscription": result.has_access,
            "subscription": result.record.to_dict() if result.record else None,
        }

    tier = get_tier_by_name(settings.ADMIN_DEFAULT_TIER_NAME)
    if tier is None:
        raise NotFoundError(f"Default tier '{settings.ADMIN_DEFAULT_TIER_NAME}' not found")
    draft = SubscriptionDraft(
        tier_id=tier.id,
        start_date=now,
        end_date=end_date or add_months(now, tier.duration_in_months),
        source=EntitlementSource.ADMIN,
    )
    result = ledger.apply_transition(user_id, draft, now=now)
    return {
        "user_id": user_id,
        "action": "granted",
        "has_active_subscription": result.has_access,
        "subscription": result.record.to_dict() if result.record else None,
    }


def get_user_subscriptions(user_id: str) -> Dict[str, Any]:
    user = get_identity_directory().get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    active = ledger.get_active_subscription(user_id)
    return {
        "user_id": user_id,
        "email": user.email,
        "has_active_subscription": user.has_active_subscription,
        "active": active.to_dict() if active else None,
        "history": [record.to_dict() for record in ledger.list_user_subscriptions(user_id)],
    }
