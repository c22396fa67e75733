"""
Daily question rewards.

One submission per identity per daily question; the unique
(daily_question_id, identity_key) constraint is the idempotency boundary.
Registered users accumulate points, and crossing the threshold claims a free
grant of REWARD_TIER_NAME at most once per cooldown window.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Any, Optional

from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from mcqprep.core.config import settings
from mcqprep.core.database import (
    get_db_session,
    daily_questions,
    daily_submissions,
    reward_ledger,
)
from mcqprep.core.errors import AppError, ConflictError, NotFoundError, ValidationError
from mcqprep.core.logging import log_event
from mcqprep.core.metrics import reward_awards_total
from mcqprep.core.timeutil import add_months, ensure_utc, utc_now
from mcqprep.features.identity.service import get_identity_directory
from mcqprep.features.notifications import messages
from mcqprep.features.notifications.dispatcher import dispatch_notification
from mcqprep.features.subscriptions.ledger import apply_transition
from mcqprep.features.subscriptions.models import (
    EntitlementSource,
    SubscriptionDraft,
    TransitionOutcome,
)
from mcqprep.features.subscriptions.tiers import get_tier_by_name

logger = logging.getLogger("mcqprep")


@dataclass(frozen=True)
class SubmissionIdentity:
    """A registered user, or a guest identified by e-mail."""
    user_id: Optional[str] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None

    def __post_init__(self):
        if self.user_id:
            return
        if not self.guest_name or not self.guest_email:
            raise ValidationError("Missing guest_name or guest_email for unauthenticated submission")
        if "@" not in self.guest_email:
            raise ValidationError("A valid guest_email is required")

    @property
    def is_registered(self) -> bool:
        return bool(self.user_id)

    @property
    def key(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        return f"guest:{self.guest_email.strip().lower()}"


@dataclass(frozen=True)
class AnswerResult:
    submission_id: int
    selected_option: str
    is_correct: bool
    points_awarded: int
    total_points: Optional[int] = None
    free_month_awarded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "selected_option": self.selected_option,
            "is_correct": self.is_correct,
            "points_awarded": self.points_awarded,
            "total_points": self.total_points,
            "free_month_awarded": self.free_month_awarded,
        }


def get_daily_question(for_date: Optional[date] = None) -> Dict[str, Any]:
    """The question scheduled for a date (today, UTC), without its answer."""
    day = for_date or utc_now().date()
    with get_db_session() as session:
        row = session.execute(
            select(daily_questions).where(daily_questions.c.scheduled_for == day)
        ).fetchone()
    if not row:
        raise NotFoundError(f"No daily question scheduled for {day.isoformat()}")
    return {
        "id": row.id,
        "mcq_id": row.mcq_id,
        "question_text": row.question_text,
        "options": row.options,
        "scheduled_for": row.scheduled_for.isoformat(),
    }


def get_reward_balance(user_id: str) -> Dict[str, Any]:
    with get_db_session() as session:
        row = session.execute(select(reward_ledger).where(reward_ledger.c.user_id == user_id)).fetchone()
    last_award_at = ensure_utc(row.last_award_at) if row else None
    return {
        "user_id": user_id,
        "total_points": row.total_points if row else 0,
        "threshold": settings.REWARD_POINTS_THRESHOLD,
        "last_award_at": last_award_at.isoformat() if last_award_at else None,
    }


def _fetch_question(daily_question_id: int):
    with get_db_session() as session:
        return session.execute(
            select(daily_questions).where(daily_questions.c.id == daily_question_id)
        ).fetchone()


def _prior_result(daily_question_id: int, identity: SubmissionIdentity) -> Optional[Dict[str, Any]]:
    with get_db_session() as session:
        row = session.execute(
            select(daily_submissions).where(
                and_(
                    daily_submissions.c.daily_question_id == daily_question_id,
                    daily_submissions.c.identity_key == identity.key,
                )
            )
        ).fetchone()
        if not row:
            return None
        total = None
        if identity.is_registered:
            total = session.execute(
                select(reward_ledger.c.total_points).where(reward_ledger.c.user_id == identity.user_id)
            ).scalar()
    return {
        "duplicate": True,
        "submission_id": row.id,
        "selected_option": row.selected_option,
        "is_correct": row.is_correct,
        "points_awarded": row.points_awarded,
        "total_points": total,
        "free_month_awarded": False,
    }


def _raise_duplicate(daily_question_id: int, identity: SubmissionIdentity, prior: Dict[str, Any]):
    log_event(
        "info",
        "reward.submission.duplicate",
        user_id=identity.user_id,
        extra={"daily_question_id": daily_question_id, "submission_id": prior["submission_id"]},
    )
    raise ConflictError(
        "You have already submitted an answer for today's question.",
        prior_result=prior,
    )


def _ensure_reward_row(user_id: str, now: datetime) -> None:
    try:
        with get_db_session() as session:
            exists = session.execute(
                select(reward_ledger.c.user_id).where(reward_ledger.c.user_id == user_id)
            ).fetchone()
            if not exists:
                session.execute(insert(reward_ledger).values(user_id=user_id, total_points=0, updated_at=now))
    except IntegrityError:
        # Created by a concurrent submission
        pass


def _add_points(session: Session, user_id: str, points: int, now: datetime) -> int:
    """Increment the user's total (the UPDATE takes the row lock) and return the new total."""
    session.execute(
        update(reward_ledger)
        .where(reward_ledger.c.user_id == user_id)
        .values(total_points=reward_ledger.c.total_points + points, updated_at=now)
    )
    return session.execute(
        select(reward_ledger.c.total_points).where(reward_ledger.c.user_id == user_id)
    ).scalar()


def _claim_award(session: Session, user_id: str, total_points: int, now: datetime):
    """
    Claim the free grant if eligible.

    Returns:
        (claimed, previous last_award_at) so a failed grant can release the claim
    """
    if total_points < settings.REWARD_POINTS_THRESHOLD:
        return False, None
    last_award_at = ensure_utc(
        session.execute(
            select(reward_ledger.c.last_award_at).where(reward_ledger.c.user_id == user_id)
        ).scalar()
    )
    cooldown = timedelta(days=settings.REWARD_AWARD_COOLDOWN_DAYS)
    if last_award_at is not None and last_award_at > now - cooldown:
        reward_awards_total.inc(labels={"result": "cooldown"})
        return False, last_award_at
    session.execute(
        update(reward_ledger).where(reward_ledger.c.user_id == user_id).values(last_award_at=now)
    )
    return True, last_award_at


def _release_award(user_id: str, claimed_at: datetime, previous: Optional[datetime]) -> None:
    with get_db_session() as session:
        session.execute(
            update(reward_ledger)
            .where(and_(reward_ledger.c.user_id == user_id, reward_ledger.c.last_award_at == claimed_at))
            .values(last_award_at=previous)
        )


def _grant_reward(user_id: str, now: datetime, previous: Optional[datetime]) -> bool:
    """Apply the free grant for a claimed award. Releases the claim unless applied."""
    tier = get_tier_by_name(settings.REWARD_TIER_NAME)
    if tier is None:
        _release_award(user_id, now, previous)
        reward_awards_total.inc(labels={"result": "failed"})
        log_event("error", "reward.grant.failed", user_id=user_id, error_code="reward_tier_missing",
                  extra={"tier_name": settings.REWARD_TIER_NAME})
        return False

    draft = SubscriptionDraft(
        tier_id=tier.id,
        start_date=now,
        end_date=add_months(now, tier.duration_in_months),
        source=EntitlementSource.REWARD,
    )
    try:
        result = apply_transition(user_id, draft, now=now)
    except (AppError, SQLAlchemyError):
        _release_award(user_id, now, previous)
        reward_awards_total.inc(labels={"result": "failed"})
        logger.error("reward.grant.failed", exc_info=True,
                     extra={"user_id": user_id, "error_code": "reward_grant_failed"})
        return False

    if result.outcome == TransitionOutcome.SUPPRESS:
        # A paid subscription outlasts the free month; keep the award pending
        _release_award(user_id, now, previous)
        reward_awards_total.inc(labels={"result": "suppressed"})
        log_event("info", "reward.grant.suppressed", user_id=user_id,
                  extra={"subscription_id": result.record.id if result.record else None})
        return False

    reward_awards_total.inc(labels={"result": "granted"})
    log_event("info", "reward.grant.applied", user_id=user_id,
              extra={"outcome": result.outcome.value, "subscription_id": result.record.id})
    return True


def submit_answer(daily_question_id: int, identity: SubmissionIdentity, selected_option: str) -> AnswerResult:
    """
    Score and record one answer.

    Raises:
        ValidationError: missing option or an option the question does not offer
        NotFoundError: unknown daily question
        ConflictError: the identity already answered; carries the prior result
    """
    if not selected_option:
        raise ValidationError("selected_option is required")
    question = _fetch_question(daily_question_id)
    if question is None:
        raise NotFoundError(f"Daily question {daily_question_id} not found")
    if isinstance(question.options, dict) and question.options and selected_option not in question.options:
        raise ValidationError(f"Unknown option: {selected_option}")

    prior = _prior_result(daily_question_id, identity)
    if prior is not None:
        _raise_duplicate(daily_question_id, identity, prior)

    now = utc_now()
    if identity.is_registered:
        _ensure_reward_row(identity.user_id, now)
    is_correct = selected_option == question.correct_option
    points = settings.REWARD_POINTS_PER_CORRECT if is_correct else 0
    total_points = None
    claimed, previous_award_at = False, None

    try:
        with get_db_session() as session:
            submission_id = session.execute(
                insert(daily_submissions).values(
                    daily_question_id=daily_question_id,
                    user_id=identity.user_id,
                    guest_name=None if identity.is_registered else identity.guest_name,
                    guest_email=None if identity.is_registered else identity.guest_email.strip().lower(),
                    identity_key=identity.key,
                    selected_option=selected_option,
                    is_correct=is_correct,
                    points_awarded=points,
                    created_at=now,
                )
            ).inserted_primary_key[0]
            if identity.is_registered:
                total_points = _add_points(session, identity.user_id, points, now)
                claimed, previous_award_at = _claim_award(session, identity.user_id, total_points, now)
    except IntegrityError:
        # Lost the insert-if-absent race to a concurrent submission
        prior = _prior_result(daily_question_id, identity)
        if prior is None:
            raise
        _raise_duplicate(daily_question_id, identity, prior)

    free_month_awarded = False
    if claimed:
        free_month_awarded = _grant_reward(identity.user_id, now, previous_award_at)

    log_event(
        "info",
        "reward.submission.recorded",
        user_id=identity.user_id,
        extra={
            "daily_question_id": daily_question_id,
            "is_correct": is_correct,
            "points_awarded": points,
            "total_points": total_points,
            "free_month_awarded": free_month_awarded,
        },
    )
    result = AnswerResult(
        submission_id=submission_id,
        selected_option=selected_option,
        is_correct=is_correct,
        points_awarded=points,
        total_points=total_points,
        free_month_awarded=free_month_awarded,
    )
    _notify_result(identity, question.question_text, result)
    return result


def _notify_result(identity: SubmissionIdentity, question_text: str, result: AnswerResult) -> None:
    if identity.is_registered:
        user = get_identity_directory().get_user(identity.user_id)
        if user is None:
            return
        recipient, name = user.email, user.first_name or "User"
    else:
        recipient, name = identity.guest_email, identity.guest_name or "Guest"
    subject, body = messages.daily_answer_result(
        name,
        question_text,
        result.is_correct,
        result.points_awarded,
        result.total_points,
        result.free_month_awarded,
        settings.REWARD_POINTS_THRESHOLD,
    )
    dispatch_notification(recipient, subject, body, user_id=identity.user_id)
