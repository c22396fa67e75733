"""
Outbound notification queue.

Callers enqueue after their transaction commits. Enqueue failures are logged
and reported as False; they never propagate into the ledger path.
"""
import logging
from typing import Optional

from redis import Redis
from rq import Queue, Retry

from mcqprep.core.config import settings
from mcqprep.core.logging import log_event
from mcqprep.core.metrics import notifications_total
from mcqprep.features.notifications.email import send_email

logger = logging.getLogger("mcqprep")

_queue: Optional[Queue] = None


def get_queue() -> Queue:
    """Lazily connect to Redis so importing this module never needs a server."""
    global _queue
    if _queue is None:
        _queue = Queue(settings.NOTIFICATION_QUEUE, connection=Redis.from_url(settings.REDIS_URL))
    return _queue


def reset_queue() -> None:
    global _queue
    _queue = None


def dispatch_notification(
    recipient: Optional[str],
    subject: str,
    body: str,
    *,
    user_id: Optional[str] = None,
) -> bool:
    """
    Fire-and-forget e-mail.

    Returns:
        True if a job was enqueued, False if disabled, no recipient, or enqueue failed.
    """
    if not settings.NOTIFICATIONS_ENABLED:
        return False
    if not recipient:
        logger.debug("notification.skipped: no recipient")
        return False

    try:
        job = get_queue().enqueue(
            send_email,
            recipient,
            subject,
            body,
            job_timeout="2m",
            result_ttl=3600,
            retry=Retry(max=3, interval=[30, 120, 600]),
        )
    except Exception as e:
        notifications_total.inc(labels={"result": "enqueue_failed"})
        log_event(
            "warning",
            "notification.enqueue_failed",
            user_id=user_id,
            error_code="notification_enqueue_failed",
            extra={"error": e},
        )
        return False

    notifications_total.inc(labels={"result": "enqueued"})
    log_event("info", "notification.enqueued", user_id=user_id, extra={"job_id": job.id})
    return True
