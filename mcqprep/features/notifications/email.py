"""
E-mail delivery job (executed by the RQ notification worker).

Posts to the Resend HTTP API. Runs out of band: a failure here is retried by
RQ and never touches the subscription ledger.
"""
import logging
from typing import Optional

import httpx

from mcqprep.core.config import settings
from mcqprep.core.metrics import notifications_total

logger = logging.getLogger("mcqprep")

RESEND_API_URL = "https://api.resend.com/emails"


class EmailDeliveryError(RuntimeError):
    """Resend rejected the message or could not be reached."""


def send_email(
    recipient: str,
    subject: str,
    html: str,
    *,
    client: Optional[httpx.Client] = None,
) -> Optional[str]:
    """
    Send one e-mail through Resend.

    Returns:
        Resend message id, or None when RESEND_API_KEY is not configured.

    Raises:
        EmailDeliveryError: non-2xx response or transport failure (RQ retries)
    """
    if not settings.RESEND_API_KEY:
        logger.warning("notification.email.skipped: RESEND_API_KEY not configured")
        notifications_total.inc(labels={"result": "skipped"})
        return None

    owns_client = client is None
    http = client or httpx.Client(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
    try:
        response = http.post(
            RESEND_API_URL,
            headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
            json={
                "from": settings.EMAIL_FROM,
                "to": [recipient],
                "subject": subject,
                "html": html,
            },
        )
    except httpx.HTTPError as e:
        notifications_total.inc(labels={"result": "failed"})
        raise EmailDeliveryError(f"Resend unreachable: {e}") from e
    finally:
        if owns_client:
            http.close()

    if response.status_code >= 400:
        notifications_total.inc(labels={"result": "failed"})
        raise EmailDeliveryError(f"Resend returned {response.status_code}: {response.text[:200]}")

    notifications_total.inc(labels={"result": "sent"})
    message_id = response.json().get("id")
    logger.info(f"notification.email.sent id={message_id}")
    return message_id
