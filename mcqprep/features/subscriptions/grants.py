"""Complimentary grants that are not driven by a provider: the one-time trial."""
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update, and_

from mcqprep.core.config import settings
from mcqprep.core.database import get_db_session, profiles
from mcqprep.core.errors import ConflictError, NotFoundError
from mcqprep.core.logging import log_event
from mcqprep.core.timeutil import utc_now
from mcqprep.features.subscriptions.ledger import apply_transition
from mcqprep.features.subscriptions.models import (
    EntitlementSource,
    SubscriptionDraft,
    TransitionOutcome,
    TransitionResult,
)
from mcqprep.features.subscriptions.tiers import get_tier_by_name


def _claim_trial(user_id: str) -> None:
    with get_db_session() as session:
        claimed = session.execute(
            update(profiles)
            .where(and_(profiles.c.id == user_id, profiles.c.trial_taken.is_(False)))
            .values(trial_taken=True)
        ).rowcount
        if claimed:
            return
        exists = session.execute(select(profiles.c.id).where(profiles.c.id == user_id)).fetchone()
    if not exists:
        raise NotFoundError(f"User {user_id} not found")
    raise ConflictError("Trial has already been used")


def _release_trial(user_id: str) -> None:
    with get_db_session() as session:
        session.execute(update(profiles).where(profiles.c.id == user_id).values(trial_taken=False))


def activate_trial(user_id: str, tier_name: Optional[str] = None) -> TransitionResult:
    """
    Grant the one-time trial.

    The trial_taken flag is claimed first (conditional update) so two
    concurrent requests cannot both grant; the claim is released if the grant
    does not go through.
    """
    tier = get_tier_by_name(tier_name or settings.TRIAL_TIER_NAME)
    if tier is None:
        raise NotFoundError(f"Trial tier '{tier_name or settings.TRIAL_TIER_NAME}' not found")

    _claim_trial(user_id)

    now = utc_now()
    draft = SubscriptionDraft(
        tier_id=tier.id,
        start_date=now,
        end_date=now + timedelta(days=settings.TRIAL_DURATION_DAYS),
        source=EntitlementSource.TRIAL,
    )
    try:
        result = apply_transition(user_id, draft, now=now)
    except Exception:
        _release_trial(user_id)
        raise

    if result.outcome == TransitionOutcome.SUPPRESS:
        _release_trial(user_id)
        raise ConflictError(
            "Your current subscription already runs longer than the trial",
            prior_result={"subscription": result.record.to_dict() if result.record else None},
        )

    log_event("info", "trial.activated", user_id=user_id, extra={"tier_id": tier.id})
    return result
