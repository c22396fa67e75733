"""
Subscription ledger: the only writer of user_subscriptions.

Every change to a user's subscription rows goes through a function in this
module, inside one transaction that holds the user's profile row lock
(SELECT ... FOR UPDATE). The partial unique index on
(user_id) WHERE status = 'active' backs the single-active-row invariant; if a
concurrent writer still wins the race, the IntegrityError is retried once
against the now-visible state.

The AccessFlag (profiles.has_active_subscription) is recomputed in the same
transaction as every transition.
"""
import logging
from datetime import datetime
from typing import Optional, List, Tuple

from sqlalchemy import select, insert, update, and_, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from mcqprep.core.database import get_db_session, profiles, user_subscriptions
from mcqprep.core.errors import NotFoundError, ValidationError
from mcqprep.core.logging import log_event
from mcqprep.core.metrics import ledger_transitions_total
from mcqprep.core.timeutil import utc_now, ensure_utc
from mcqprep.features.subscriptions.models import (
    ClosureReason,
    ENDED_PROVIDER_STATUSES,
    SubscriptionDraft,
    SubscriptionRecord,
    SubscriptionStatus,
    TransitionOutcome,
    TransitionResult,
)
from mcqprep.features.subscriptions.policy import arbitrate
from mcqprep.features.subscriptions.reconciliation import record_reconciliation_gap

logger = logging.getLogger("mcqprep")

MAX_INTEGRITY_RETRIES = 1


def apply_transition(
    user_id: str,
    draft: SubscriptionDraft,
    *,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Apply a subscription draft for a user atomically.

    Returns:
        TransitionResult with the arbitration outcome and the resulting row

    Raises:
        ValidationError: malformed draft, or the purchase belongs to another user
        NotFoundError: unknown user (non-paid drafts)
        ReconciliationGap: a paid draft could not be recorded
    """
    now = ensure_utc(now) or utc_now()
    _validate_draft(user_id, draft)

    attempts = 0
    while True:
        try:
            result = _apply_locked(user_id, draft, now)
            break
        except IntegrityError as e:
            if attempts < MAX_INTEGRITY_RETRIES:
                attempts += 1
                log_event(
                    "warning",
                    "ledger.transition.retry",
                    user_id=user_id,
                    error_code="integrity_conflict",
                    extra={"error": e.orig if e.orig is not None else e},
                )
                continue
            _raise_for_failed_write(user_id, draft, e)
        except SQLAlchemyError as e:
            _raise_for_failed_write(user_id, draft, e)
        except NotFoundError as e:
            if draft.is_paid:
                _raise_for_failed_write(user_id, draft, e)
            raise

    ledger_transitions_total.inc(labels={"outcome": result.outcome.value, "source": draft.source.value})
    log_event(
        "info",
        "ledger.transition.applied",
        user_id=user_id,
        event_type=draft.source.value,
        extra={
            "outcome": result.outcome.value,
            "provider": draft.provider_kind.value,
            "provider_subscription_id": draft.provider_subscription_id,
            "subscription_id": result.record.id if result.record else None,
            "deactivated_id": result.deactivated_id,
            "has_access": result.has_access,
        },
    )
    return result


def _validate_draft(user_id: str, draft: SubscriptionDraft) -> None:
    if not user_id:
        raise ValidationError("user_id is required")
    if draft.tier_id is None:
        raise ValidationError("tier_id is required")
    if ensure_utc(draft.end_date) <= ensure_utc(draft.start_date):
        raise ValidationError("end_date must be after start_date")
    if draft.is_paid and not draft.provider_subscription_id:
        raise ValidationError("provider_subscription_id is required for provider-backed subscriptions")


def _raise_for_failed_write(user_id: str, draft: SubscriptionDraft, error: Exception):
    ledger_transitions_total.inc(labels={"outcome": "failed", "source": draft.source.value})
    if not draft.is_paid:
        logger.error(
            "ledger.transition.failed",
            exc_info=error,
            extra={"user_id": user_id, "error_code": "ledger_write_failed"},
        )
        raise error
    gap = record_reconciliation_gap(
        user_id,
        draft.provider_kind.value,
        draft.provider_subscription_id,
        f"{type(error).__name__}: {error}",
        payload={
            "tier_id": draft.tier_id,
            "start_date": draft.start_date,
            "end_date": draft.end_date,
            "provider_customer_id": draft.provider_customer_id,
            "provider_status": draft.provider_status,
            "source": draft.source.value,
        },
    )
    raise gap from error


def _apply_locked(user_id: str, draft: SubscriptionDraft, now: datetime) -> TransitionResult:
    with get_db_session() as session:
        _lock_user(session, user_id)
        active = _fetch_active(session, user_id)
        matching = _fetch_matching(session, user_id, draft)

        outcome = arbitrate(active, matching, draft, now)
        deactivated_id = None

        if outcome == TransitionOutcome.CREATE:
            record_id = _insert_row(session, user_id, draft, now)
        elif outcome == TransitionOutcome.REPLACE:
            _deactivate_row(session, active.id, now, ClosureReason.REPLACED)
            deactivated_id = active.id
            record_id = _insert_row(session, user_id, draft, now)
        elif outcome == TransitionOutcome.REFRESH:
            _refresh_row(session, matching, draft, now)
            record_id = matching.id
        elif outcome == TransitionOutcome.REACTIVATE:
            _reactivate_row(session, matching, draft, now)
            record_id = matching.id
        elif outcome == TransitionOutcome.STALE:
            _mirror_provider_status(session, matching, draft, now)
            record_id = matching.id
        else:  # SUPPRESS
            record_id = active.id

        has_access = recompute_access_flag(session, user_id, now)
        record = _fetch_by_id(session, record_id)

    return TransitionResult(
        outcome=outcome,
        record=record,
        has_access=has_access,
        deactivated_id=deactivated_id,
    )


def _lock_user(session: Session, user_id: str) -> None:
    row = session.execute(
        select(profiles.c.id).where(profiles.c.id == user_id).with_for_update()
    ).fetchone()
    if not row:
        raise NotFoundError(f"User {user_id} not found")


def _fetch_active(session: Session, user_id: str) -> Optional[SubscriptionRecord]:
    row = session.execute(
        select(user_subscriptions).where(
            and_(
                user_subscriptions.c.user_id == user_id,
                user_subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
            )
        )
    ).fetchone()
    return SubscriptionRecord.from_row(row) if row else None


def _fetch_by_id(session: Session, subscription_id: int) -> Optional[SubscriptionRecord]:
    row = session.execute(
        select(user_subscriptions).where(user_subscriptions.c.id == subscription_id)
    ).fetchone()
    return SubscriptionRecord.from_row(row) if row else None


def _fetch_matching(session: Session, user_id: str, draft: SubscriptionDraft) -> Optional[SubscriptionRecord]:
    if draft.target_subscription_id is not None:
        record = _fetch_by_id(session, draft.target_subscription_id)
        if record is None:
            raise NotFoundError(f"Subscription {draft.target_subscription_id} not found")
    elif draft.provider_subscription_id:
        row = session.execute(
            select(user_subscriptions).where(
                and_(
                    user_subscriptions.c.provider_kind == draft.provider_kind.value,
                    user_subscriptions.c.provider_subscription_id == draft.provider_subscription_id,
                )
            )
        ).fetchone()
        record = SubscriptionRecord.from_row(row) if row else None
    else:
        return None

    if record is not None and record.user_id != user_id:
        raise ValidationError("Subscription belongs to a different user")
    return record


def _insert_row(session: Session, user_id: str, draft: SubscriptionDraft, now: datetime) -> int:
    result = session.execute(
        insert(user_subscriptions).values(
            user_id=user_id,
            tier_id=draft.tier_id,
            start_date=ensure_utc(draft.start_date),
            end_date=ensure_utc(draft.end_date),
            status=SubscriptionStatus.ACTIVE.value,
            provider_kind=draft.provider_kind.value,
            provider_subscription_id=draft.provider_subscription_id,
            provider_customer_id=draft.provider_customer_id,
            provider_status=draft.provider_status,
            source=draft.source.value,
            created_at=now,
            updated_at=now,
        )
    )
    return result.inserted_primary_key[0]


def _deactivate_row(session: Session, subscription_id: int, now: datetime, reason: ClosureReason) -> None:
    session.execute(
        update(user_subscriptions)
        .where(user_subscriptions.c.id == subscription_id)
        .values(
            status=SubscriptionStatus.INACTIVE.value,
            end_date=now,
            closed_reason=reason.value,
            updated_at=now,
        )
    )


def _refresh_row(session: Session, current: SubscriptionRecord, draft: SubscriptionDraft, now: datetime) -> None:
    values = {
        "tier_id": draft.tier_id,
        "updated_at": now,
    }
    if draft.target_subscription_id is not None:
        # Explicit override: take the given end date as-is
        values["end_date"] = ensure_utc(draft.end_date)
    else:
        # Late, older deliveries never shorten the period
        values["end_date"] = max(current.end_date, ensure_utc(draft.end_date))
    if draft.provider_status is not None:
        values["provider_status"] = draft.provider_status
    if draft.provider_customer_id:
        values["provider_customer_id"] = draft.provider_customer_id
    session.execute(
        update(user_subscriptions).where(user_subscriptions.c.id == current.id).values(**values)
    )


def _reactivate_row(session: Session, current: SubscriptionRecord, draft: SubscriptionDraft, now: datetime) -> None:
    values = {
        "status": SubscriptionStatus.ACTIVE.value,
        "tier_id": draft.tier_id,
        "end_date": ensure_utc(draft.end_date),
        "closed_reason": None,
        "updated_at": now,
    }
    if draft.provider_status is not None:
        values["provider_status"] = draft.provider_status
    session.execute(
        update(user_subscriptions).where(user_subscriptions.c.id == current.id).values(**values)
    )


def _mirror_provider_status(session: Session, current: SubscriptionRecord, draft: SubscriptionDraft, now: datetime) -> None:
    if draft.provider_status is None or draft.provider_status == current.provider_status:
        return
    ended = ENDED_PROVIDER_STATUSES.get(current.provider_kind, frozenset())
    if current.provider_ended and draft.provider_status not in ended:
        return
    session.execute(
        update(user_subscriptions)
        .where(user_subscriptions.c.id == current.id)
        .values(provider_status=draft.provider_status, updated_at=now)
    )


def recompute_access_flag(session: Session, user_id: str, now: Optional[datetime] = None) -> bool:
    """Derive has_active_subscription from the ledger and persist it."""
    now = ensure_utc(now) or utc_now()
    count = session.execute(
        select(func.count()).select_from(user_subscriptions).where(
            and_(
                user_subscriptions.c.user_id == user_id,
                user_subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                user_subscriptions.c.end_date > now,
            )
        )
    ).scalar()
    has_access = bool(count)
    session.execute(
        update(profiles)
        .where(profiles.c.id == user_id)
        .values(has_active_subscription=has_access, updated_at=now)
    )
    return has_access


def deactivate_active(user_id: str, *, now: Optional[datetime] = None) -> Tuple[Optional[SubscriptionRecord], bool]:
    """
    Close the user's active row, if any. No provider call is made.

    Returns:
        (deactivated row or None, resulting access flag)
    """
    now = ensure_utc(now) or utc_now()
    with get_db_session() as session:
        _lock_user(session, user_id)
        active = _fetch_active(session, user_id)
        if active is not None:
            _deactivate_row(session, active.id, now, ClosureReason.DEACTIVATED)
        has_access = recompute_access_flag(session, user_id, now)
        deactivated = _fetch_by_id(session, active.id) if active else None

    if deactivated is not None:
        ledger_transitions_total.inc(labels={"outcome": "deactivate", "source": "admin"})
        log_event(
            "info",
            "ledger.transition.deactivated",
            user_id=user_id,
            extra={"subscription_id": deactivated.id, "provider": deactivated.provider_kind.value},
        )
    return deactivated, has_access


def cancel_provider_subscription(
    provider_kind: str,
    provider_subscription_id: str,
    provider_status: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> Optional[SubscriptionRecord]:
    """
    Close the row for a provider purchase the provider reports as ended.

    Returns the row (possibly already inactive) or None if the purchase is unknown.
    """
    now = ensure_utc(now) or utc_now()
    with get_db_session() as session:
        row = session.execute(
            select(user_subscriptions.c.user_id).where(
                and_(
                    user_subscriptions.c.provider_kind == provider_kind,
                    user_subscriptions.c.provider_subscription_id == provider_subscription_id,
                )
            )
        ).fetchone()
        if not row:
            return None
        user_id = row.user_id
        _lock_user(session, user_id)

        current = SubscriptionRecord.from_row(
            session.execute(
                select(user_subscriptions).where(
                    and_(
                        user_subscriptions.c.provider_kind == provider_kind,
                        user_subscriptions.c.provider_subscription_id == provider_subscription_id,
                    )
                )
            ).fetchone()
        )
        values = {"updated_at": now, "closed_reason": ClosureReason.CANCELLED.value}
        if provider_status is not None:
            values["provider_status"] = provider_status
        if current.is_active:
            values["status"] = SubscriptionStatus.INACTIVE.value
            values["end_date"] = min(current.end_date, now)
        session.execute(
            update(user_subscriptions).where(user_subscriptions.c.id == current.id).values(**values)
        )
        recompute_access_flag(session, user_id, now)
        record = _fetch_by_id(session, current.id)

    if current.is_active:
        ledger_transitions_total.inc(labels={"outcome": "cancel", "source": "purchase"})
    log_event(
        "info",
        "ledger.transition.cancelled",
        user_id=user_id,
        extra={
            "provider": provider_kind,
            "provider_subscription_id": provider_subscription_id,
            "was_active": current.is_active,
        },
    )
    return record


def expire_lapsed_subscriptions(now: Optional[datetime] = None, limit: int = 1000) -> int:
    """
    Flip active rows whose end_date has passed to inactive and refresh flags.

    Returns:
        Number of rows expired.
    """
    now = ensure_utc(now) or utc_now()
    with get_db_session() as session:
        user_ids = [
            r.user_id
            for r in session.execute(
                select(user_subscriptions.c.user_id).where(
                    and_(
                        user_subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                        user_subscriptions.c.end_date <= now,
                    )
                ).limit(limit)
            ).fetchall()
        ]

    expired = 0
    for user_id in user_ids:
        with get_db_session() as session:
            _lock_user(session, user_id)
            active = _fetch_active(session, user_id)
            # Re-check under the lock; a renewal may have landed meanwhile
            if active is not None and active.end_date <= now:
                session.execute(
                    update(user_subscriptions)
                    .where(user_subscriptions.c.id == active.id)
                    .values(
                        status=SubscriptionStatus.INACTIVE.value,
                        closed_reason=ClosureReason.EXPIRED.value,
                        updated_at=now,
                    )
                )
                expired += 1
            recompute_access_flag(session, user_id, now)

    if expired:
        ledger_transitions_total.inc(labels={"outcome": "expire", "source": "sweep"}, amount=expired)
    log_event("info", "ledger.expiry_sweep.complete", extra={"expired": expired, "candidates": len(user_ids)})
    return expired


def get_active_subscription(user_id: str) -> Optional[SubscriptionRecord]:
    with get_db_session() as session:
        return _fetch_active(session, user_id)


def get_subscription(subscription_id: int) -> Optional[SubscriptionRecord]:
    with get_db_session() as session:
        return _fetch_by_id(session, subscription_id)


def list_user_subscriptions(user_id: str) -> List[SubscriptionRecord]:
    with get_db_session() as session:
        rows = session.execute(
            select(user_subscriptions)
            .where(user_subscriptions.c.user_id == user_id)
            .order_by(user_subscriptions.c.id.asc())
        ).fetchall()
    return [SubscriptionRecord.from_row(row) for row in rows]


def has_active_access(user_id: str, now: Optional[datetime] = None) -> bool:
    """Ledger truth for billing decisions (the profile flag is a UI cache)."""
    now = ensure_utc(now) or utc_now()
    active = get_active_subscription(user_id)
    return active is not None and active.end_date > now
