"""E-mail bodies sent through the notification queue."""
from datetime import datetime
from html import escape
from typing import Optional, Tuple


def daily_answer_result(
    name: str,
    question_text: str,
    is_correct: bool,
    points_awarded: int,
    total_points: Optional[int],
    free_month_awarded: bool,
    threshold: int,
) -> Tuple[str, str]:
    subject = (
        "Correct Answer! Question of the Day"
        if is_correct
        else "Your Answer for Question of the Day"
    )
    lines = [
        f"<p>Dear {escape(name)},</p>",
        "<p>Thank you for participating in today's Question of the Day!</p>",
        f"<p><strong>Question:</strong> {escape(question_text)}</p>",
        f"<p>Your answer was: <strong>{'Correct!' if is_correct else 'Incorrect.'}</strong></p>",
        f"<p>You earned <strong>{points_awarded} points</strong> today.</p>",
    ]
    if total_points is not None:
        lines.append(f"<p>Your total cumulative points are now: <strong>{total_points}</strong>.</p>")
    if free_month_awarded:
        lines.append(
            f"<p><strong>Congratulations! You've reached {threshold} points "
            "and earned a free month subscription!</strong></p>"
        )
    lines.append("<p>Keep learning and come back tomorrow for a new challenge!</p>")
    lines.append("<p>Best regards,<br/>Study Prometric MCQs Team</p>")
    return subject, "\n".join(lines)


def subscription_confirmed(tier_name: str, end_date: datetime) -> Tuple[str, str]:
    subject = "Your subscription is active"
    body = (
        f"<p>Your <strong>{escape(tier_name)}</strong> subscription is now active.</p>"
        f"<p>Access runs until {end_date.strftime('%B %d, %Y')}.</p>"
        "<p>Best regards,<br/>Study Prometric MCQs Team</p>"
    )
    return subject, body


def reconciliation_alert(
    alert_id: int,
    user_id: str,
    provider: str,
    provider_subscription_id: Optional[str],
    error: str,
) -> Tuple[str, str]:
    subject = f"[ACTION REQUIRED] Payment without entitlement (alert #{alert_id})"
    body = (
        "<p>A provider confirmed payment but the subscription ledger write failed.</p>"
        f"<ul><li>User: {escape(user_id)}</li>"
        f"<li>Provider: {escape(provider)}</li>"
        f"<li>Provider subscription: {escape(provider_subscription_id or '-')}</li>"
        f"<li>Error: {escape(error)}</li></ul>"
        f"<p>Resolve via POST /v1/admin/reconciliation/alerts/{alert_id}/resolve after fixing the ledger.</p>"
    )
    return subject, body
