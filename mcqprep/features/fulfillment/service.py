"""
Fulfillment orchestrator.

Turns provider activation signals into ledger transitions. Entry points:
- synchronous: signup + Stripe payment, Stripe token for an existing user,
  Stripe checkout success redirect, PayPal approval capture
- asynchronous: Stripe/PayPal webhooks

Provider calls always happen before apply_transition opens its transaction,
so no lock is held across the network. Whichever of {sync path, webhook}
arrives second for the same purchase is a refresh no-op in the ledger.
"""
import hashlib
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError

from mcqprep.core.config import settings
from mcqprep.core.database import get_db_session, billing_events, profiles
from mcqprep.core.errors import (
    AuthenticityError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from mcqprep.core.logging import log_event
from mcqprep.core.metrics import webhook_events_total
from mcqprep.core.timeutil import utc_now
from mcqprep.features.identity.service import get_identity_directory
from mcqprep.features.notifications import messages
from mcqprep.features.notifications.dispatcher import dispatch_notification
from mcqprep.features.providers.base import (
    BillingProvider,
    CheckoutStart,
    EventKind,
    ProviderEvent,
    SubscriptionAttempt,
)
from mcqprep.features.providers.paypal_provider import PayPalProvider
from mcqprep.features.providers.payloads import decode_custom_id
from mcqprep.features.providers.stripe_provider import StripeProvider
from mcqprep.features.subscriptions import ledger
from mcqprep.features.subscriptions.models import (
    ProviderKind,
    SubscriptionRecord,
    TransitionOutcome,
    TransitionResult,
)
from mcqprep.features.subscriptions.tiers import Tier, get_tier

NEW_ENTITLEMENT_OUTCOMES = {
    TransitionOutcome.CREATE,
    TransitionOutcome.REPLACE,
    TransitionOutcome.REACTIVATE,
}


_stripe_provider: Optional[StripeProvider] = None
_paypal_provider: Optional[PayPalProvider] = None


def get_stripe_provider() -> StripeProvider:
    """Process-wide Stripe adapter; the SDK globals are set once."""
    global _stripe_provider
    if _stripe_provider is None:
        _stripe_provider = StripeProvider()
    return _stripe_provider


def get_paypal_provider() -> PayPalProvider:
    """Process-wide PayPal adapter, sharing one connection pool and access token."""
    global _paypal_provider
    if _paypal_provider is None:
        _paypal_provider = PayPalProvider()
    return _paypal_provider


def close_providers() -> None:
    global _stripe_provider, _paypal_provider
    if _paypal_provider is not None:
        _paypal_provider.close()
    _stripe_provider = None
    _paypal_provider = None


def get_provider(kind: ProviderKind) -> BillingProvider:
    if kind == ProviderKind.STRIPE:
        return get_stripe_provider()
    if kind == ProviderKind.PAYPAL:
        return get_paypal_provider()
    raise ValidationError(f"Unknown provider: {kind}")


@dataclass
class FulfillmentResult:
    """What a synchronous purchase path returns to the client."""
    status: str  # "active" | "requires_action" | "pending"
    user_id: str
    provider_subscription_id: Optional[str] = None
    subscription: Optional[SubscriptionRecord] = None
    has_access: bool = False
    client_secret: Optional[str] = None
    outcome: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "user_id": self.user_id,
            "provider_subscription_id": self.provider_subscription_id,
            "subscription": self.subscription.to_dict() if self.subscription else None,
            "has_active_subscription": self.has_access,
            "client_secret": self.client_secret,
            "outcome": self.outcome,
        }


@dataclass
class WebhookResult:
    status: str  # "processed" | "duplicate" | "ignored"
    event_id: str
    event_type: str
    outcome: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": True,
            "status": self.status,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "outcome": self.outcome,
        }


# ---------------------------------------------------------------- helpers

def _require_tier(tier_id: int) -> Tier:
    tier = get_tier(tier_id)
    if tier is None:
        raise NotFoundError(f"Subscription tier {tier_id} not found")
    if not tier.is_active:
        raise ValidationError(f"Subscription tier {tier_id} is not available")
    return tier


def _remember_stripe_customer(user_id: str, customer_id: str) -> None:
    with get_db_session() as session:
        session.execute(
            update(profiles).where(profiles.c.id == user_id).values(stripe_customer_id=customer_id)
        )


def _apply_activation(event: ProviderEvent) -> TransitionResult:
    """Record an activation in the ledger and confirm by e-mail if it is new."""
    result = ledger.apply_transition(event.user_id, event.to_draft())
    if result.outcome in NEW_ENTITLEMENT_OUTCOMES and result.record is not None:
        _notify_confirmed(event.user_id, result.record)
    return result


def _notify_confirmed(user_id: str, record: SubscriptionRecord) -> None:
    user = get_identity_directory().get_user(user_id)
    tier = get_tier(record.tier_id)
    if user is None or tier is None:
        return
    subject, body = messages.subscription_confirmed(tier.name, record.end_date)
    dispatch_notification(user.email, subject, body, user_id=user_id)


def _result_from_attempt(user_id: str, attempt: SubscriptionAttempt) -> FulfillmentResult:
    if attempt.requires_action:
        return FulfillmentResult(
            status="requires_action",
            user_id=user_id,
            provider_subscription_id=attempt.provider_subscription_id,
            client_secret=attempt.client_secret,
        )
    result = _apply_activation(attempt.event)
    return FulfillmentResult(
        status="active",
        user_id=user_id,
        provider_subscription_id=attempt.provider_subscription_id,
        subscription=result.record,
        has_access=result.has_access,
        outcome=result.outcome.value,
    )


# ---------------------------------------------------------------- synchronous paths

def signup_and_subscribe(
    email: str,
    tier_id: int,
    payment_method_id: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> FulfillmentResult:
    """
    Create a user and pay for a subscription in one step.

    A user with neither payment nor free tier is not a valid state, so any
    failure before the provider confirms payment deletes the new user (and
    the Stripe customer, best effort) before re-raising.
    """
    if not payment_method_id:
        raise ValidationError("payment_method_id is required")
    tier = _require_tier(tier_id)
    if not tier.stripe_price_id:
        raise ValidationError(f"Tier {tier.id} cannot be purchased with Stripe")
    provider = get_stripe_provider()
    directory = get_identity_directory()

    user = directory.create_user(email, first_name, last_name)
    customer_id = None
    try:
        name = " ".join(p for p in (first_name, last_name) if p) or None
        customer_id = provider.ensure_customer(user.id, user.email, name)
        _remember_stripe_customer(user.id, customer_id)
        attempt = provider.create_subscription(customer_id, payment_method_id, tier, user.id)
    except Exception as e:
        _compensate_signup(provider, user.id, customer_id, e)
        raise

    log_event(
        "info",
        "fulfillment.signup.payment_attempted",
        user_id=user.id,
        extra={"provider": "stripe", "requires_action": attempt.requires_action},
    )
    # Past this point money may have moved: failures surface as ReconciliationGap
    return _result_from_attempt(user.id, attempt)


def _compensate_signup(provider: StripeProvider, user_id: str, customer_id: Optional[str], error: Exception) -> None:
    log_event(
        "warning",
        "fulfillment.signup.rollback",
        user_id=user_id,
        error_code=getattr(error, "code", "signup_failed"),
        extra={"error": error},
    )
    if customer_id:
        try:
            provider.delete_customer(customer_id)
        except ProviderError as e:
            log_event("error", "fulfillment.signup.customer_cleanup_failed", user_id=user_id,
                      extra={"customer_id": customer_id, "error": e})
    get_identity_directory().delete_user(user_id)


def subscribe_with_payment_method(user_id: str, tier_id: int, payment_method_id: str) -> FulfillmentResult:
    """Existing user exchanges a Stripe payment-method token for a subscription."""
    if not payment_method_id:
        raise ValidationError("payment_method_id is required")
    tier = _require_tier(tier_id)
    user = get_identity_directory().get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    provider = get_stripe_provider()

    customer_id = user.stripe_customer_id
    if not customer_id:
        customer_id = provider.ensure_customer(user.id, user.email, user.display_name)
        _remember_stripe_customer(user.id, customer_id)

    attempt = provider.create_subscription(customer_id, payment_method_id, tier, user.id)
    return _result_from_attempt(user.id, attempt)


def start_stripe_checkout(user_id: str, tier_id: int) -> CheckoutStart:
    tier = _require_tier(tier_id)
    if not tier.stripe_price_id:
        raise ValidationError(f"Tier {tier.id} cannot be purchased with Stripe")
    user = get_identity_directory().get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    provider = get_stripe_provider()

    customer_id = user.stripe_customer_id
    if not customer_id:
        customer_id = provider.ensure_customer(user.id, user.email, user.display_name)
        _remember_stripe_customer(user.id, customer_id)

    base = settings.BASE_URL.rstrip("/")
    return provider.create_checkout_session(
        customer_id=customer_id,
        price_id=tier.stripe_price_id,
        user_id=user.id,
        tier_id=tier.id,
        success_url=f"{base}/api/billing/stripe/fulfill?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base}/api/billing/stripe/cancel",
    )


def fulfill_stripe_checkout(session_id: str) -> FulfillmentResult:
    """Success-redirect fulfillment; the webhook for the same session is a refresh."""
    if not session_id:
        raise ValidationError("session_id is required")
    provider = get_stripe_provider()
    session = provider.retrieve_checkout_session(session_id)
    if not session.is_paid:
        raise ValidationError(
            f"Checkout session not paid (status={session.status}, payment_status={session.payment_status})"
        )
    event = provider.event_from_checkout_session(session)
    if event.event_kind != EventKind.ACTIVATED:
        return FulfillmentResult(
            status="pending",
            user_id=event.user_id or session.metadata.user_id or "",
            provider_subscription_id=event.provider_subscription_id,
        )
    result = _apply_activation(event)
    return FulfillmentResult(
        status="active",
        user_id=event.user_id,
        provider_subscription_id=event.provider_subscription_id,
        subscription=result.record,
        has_access=result.has_access,
        outcome=result.outcome.value,
    )


def start_paypal_checkout(user_id: str, tier_id: int) -> CheckoutStart:
    tier = _require_tier(tier_id)
    if get_identity_directory().get_user(user_id) is None:
        raise NotFoundError(f"User {user_id} not found")
    frontend = settings.FRONTEND_URL.rstrip("/")
    return get_paypal_provider().create_subscription(
        tier,
        user_id,
        return_url=f"{frontend}/user/subscriptions?provider=paypal&status=approved",
        cancel_url=f"{frontend}/user/subscriptions?status=cancelled",
    )


def capture_paypal_subscription(user_id: str, paypal_subscription_id: str, tier_id: int) -> FulfillmentResult:
    """
    Activate an approved PayPal subscription and record it.

    Dates come from the re-fetched subscription, never the activation response.
    """
    if not paypal_subscription_id:
        raise ValidationError("paypal_subscription_id is required")
    tier = _require_tier(tier_id)
    provider = get_paypal_provider()

    provider.activate_subscription(paypal_subscription_id)
    subscription = provider.get_subscription(paypal_subscription_id)

    owner, _ = decode_custom_id(subscription.custom_id)
    if owner and owner != user_id:
        raise ValidationError("PayPal subscription belongs to a different user")

    event = provider.event_from_subscription(subscription, tier, user_id)
    if event.event_kind != EventKind.ACTIVATED:
        raise ProviderError(
            f"PayPal subscription is {subscription.status}",
            retryable=event.event_kind == EventKind.PENDING,
            provider="paypal",
        )
    result = _apply_activation(event)
    return FulfillmentResult(
        status="active",
        user_id=user_id,
        provider_subscription_id=paypal_subscription_id,
        subscription=result.record,
        has_access=result.has_access,
        outcome=result.outcome.value,
    )


# ---------------------------------------------------------------- webhooks

def _claim_event(kind: ProviderKind, event_id: str, event_type: str, payload_hash: str) -> bool:
    """
    Record the event once per (provider, event_id).

    Returns:
        True if the event still needs processing, False if it was already processed.
    """
    def _existing(session):
        return session.execute(
            select(billing_events.c.processed).where(
                and_(billing_events.c.provider_kind == kind.value, billing_events.c.event_id == event_id)
            )
        ).fetchone()

    try:
        with get_db_session() as session:
            row = _existing(session)
            if row:
                return not row.processed
            session.execute(
                insert(billing_events).values(
                    provider_kind=kind.value,
                    event_id=event_id,
                    event_type=event_type,
                    payload_hash=payload_hash,
                    processed=False,
                    received_at=utc_now(),
                )
            )
            return True
    except IntegrityError:
        # Concurrent delivery inserted first
        with get_db_session() as session:
            row = _existing(session)
        return not (row and row.processed)


def _finish_event(kind: ProviderKind, event_id: str, user_id: Optional[str], error: Optional[str] = None) -> None:
    values: Dict[str, Any] = {"error": error}
    if error is None:
        values.update(processed=True, processed_at=utc_now())
    if user_id:
        values["user_id"] = user_id
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(and_(billing_events.c.provider_kind == kind.value, billing_events.c.event_id == event_id))
            .values(**values)
        )


def _apply_event(event: ProviderEvent) -> Optional[str]:
    if event.event_kind == EventKind.ACTIVATED:
        return _apply_activation(event).outcome.value
    if event.event_kind == EventKind.CANCELLED:
        record = ledger.cancel_provider_subscription(
            event.provider_kind.value,
            event.provider_subscription_id,
            event.provider_status,
        )
        return "cancelled" if record else "unknown_subscription"
    log_event(
        "info",
        "webhook.event.no_action",
        extra={
            "provider": event.provider_kind.value,
            "kind": event.event_kind.value,
            "provider_subscription_id": event.provider_subscription_id,
            "provider_status": event.provider_status,
        },
    )
    return None


def process_webhook(provider_kind: ProviderKind, headers: Dict[str, str], body: bytes) -> WebhookResult:
    """
    Verify, dedupe and apply one webhook delivery.

    Returns only after the ledger write committed. Any exception propagates so
    the endpoint answers non-2xx and the provider redelivers.
    """
    kind = ProviderKind(provider_kind)
    provider = get_provider(kind)

    try:
        envelope = provider.verify_webhook(headers, body)
    except AuthenticityError as e:
        webhook_events_total.inc(labels={"provider": kind.value, "result": "rejected"})
        log_event(
            "warning",
            "security.webhook.rejected",
            error_code="authenticity_error",
            extra={"provider": kind.value, "reason": e.message},
        )
        raise

    payload_hash = hashlib.sha256(body).hexdigest()
    if not _claim_event(kind, envelope.event_id, envelope.event_type, payload_hash):
        webhook_events_total.inc(labels={"provider": kind.value, "result": "duplicate"})
        log_event(
            "info",
            "webhook.duplicate",
            event_type=envelope.event_type,
            extra={"provider": kind.value, "event_id": envelope.event_id},
        )
        return WebhookResult(status="duplicate", event_id=envelope.event_id, event_type=envelope.event_type)

    user_id = None
    try:
        event = provider.event_from_webhook(envelope)
        user_id = event.user_id
        outcome = _apply_event(event)
    except Exception as e:
        _finish_event(kind, envelope.event_id, user_id, error=f"{type(e).__name__}: {e}"[:2000])
        webhook_events_total.inc(labels={"provider": kind.value, "result": "failed"})
        raise

    _finish_event(kind, envelope.event_id, user_id)
    status = "processed" if event.event_kind in (EventKind.ACTIVATED, EventKind.CANCELLED) else "ignored"
    webhook_events_total.inc(labels={"provider": kind.value, "result": status})
    log_event(
        "info",
        "webhook.processed",
        user_id=user_id,
        event_type=envelope.event_type,
        extra={"provider": kind.value, "event_id": envelope.event_id, "outcome": outcome},
    )
    return WebhookResult(
        status=status,
        event_id=envelope.event_id,
        event_type=envelope.event_type,
        outcome=outcome,
    )


# ---------------------------------------------------------------- reads

def get_billing_status(user_id: str) -> Dict[str, Any]:
    user = get_identity_directory().get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    active = ledger.get_active_subscription(user_id)
    tier = get_tier(active.tier_id) if active else None
    return {
        "user_id": user_id,
        "has_active_subscription": ledger.has_active_access(user_id),
        "access_flag": user.has_active_subscription,
        "trial_taken": user.trial_taken,
        "subscription": active.to_dict() if active else None,
        "tier": {"id": tier.id, "name": tier.name} if tier else None,
        "history": [record.to_dict() for record in ledger.list_user_subscriptions(user_id)],
    }
