"""
Stripe billing provider (synchronous-confirmation style).

Two purchase shapes:
- hosted checkout session, fulfilled by the success redirect and/or the
  checkout.session.completed webhook
- payment-method token exchanged for a subscription in one API call, which
  may come back as requires_action (3-D Secure) instead of success/failure

user_id, tier_id and price_id are attached as metadata on the session and the
subscription at creation time; webhooks read them back from there.
"""
import json
from dataclasses import replace
from typing import Dict, Any, Optional

import stripe

from mcqprep.core.config import settings
from mcqprep.core.errors import AuthenticityError, ProviderError, ValidationError
from mcqprep.core.logging import log_event
from mcqprep.core.timeutil import from_unix, utc_now
from mcqprep.features.providers.base import (
    CheckoutStart,
    EventKind,
    ProviderEvent,
    SubscriptionAttempt,
    WebhookEnvelope,
    resolve_period,
)
from mcqprep.features.providers.payloads import (
    StripeCheckoutCompletedEvent,
    StripeCheckoutSession,
    StripeMetadata,
    StripeSubscription,
    StripeSubscriptionEvent,
    StripeUnhandledEvent,
    parse_stripe_event,
    parse_stripe_object,
)
from mcqprep.features.subscriptions import tiers
from mcqprep.features.subscriptions.models import ENDED_PROVIDER_STATUSES, ProviderKind
from mcqprep.features.subscriptions.tiers import Tier

ACTIVE_STATUSES = {"active", "trialing"}
ENDED_STATUSES = ENDED_PROVIDER_STATUSES[ProviderKind.STRIPE]


def _provider_error(action: str, e: Exception) -> ProviderError:
    retryable = isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError))
    message = getattr(e, "user_message", None) or str(e)
    log_event(
        "warning",
        "provider.call.failed",
        error_code="stripe_error",
        extra={"provider": "stripe", "action": action, "retryable": retryable, "error": message},
    )
    return ProviderError(f"Stripe {action} failed: {message}", retryable=retryable, provider="stripe")


def _header(headers: Dict[str, str], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


class StripeProvider:
    """Stripe implementation of BillingProvider."""

    kind = ProviderKind.STRIPE

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise ProviderError("STRIPE_SECRET_KEY not configured", provider="stripe")

        stripe.api_key = self.secret_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(
            timeout=timeout or settings.PROVIDER_TIMEOUT_SECONDS
        )

    # ------------------------------------------------------------ customers

    def ensure_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """Create a Stripe customer tagged with our user id."""
        customer_data: Dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            customer_data["email"] = email
        if name:
            customer_data["name"] = name
        try:
            customer = stripe.Customer.create(**customer_data, idempotency_key=f"customer-{user_id}")
        except stripe.StripeError as e:
            raise _provider_error("customer creation", e)
        return customer.id

    def delete_customer(self, customer_id: str) -> None:
        try:
            stripe.Customer.delete(customer_id)
        except stripe.StripeError as e:
            raise _provider_error("customer deletion", e)

    # ------------------------------------------------------------ checkout

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        user_id: str,
        tier_id: int,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutStart:
        metadata = {"user_id": user_id, "tier_id": str(tier_id), "price_id": price_id}
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
        except stripe.StripeError as e:
            raise _provider_error("checkout session creation", e)
        return CheckoutStart(redirect_url=session.url, reference_id=session.id)

    def retrieve_checkout_session(self, session_id: str) -> StripeCheckoutSession:
        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=["subscription"])
        except stripe.StripeError as e:
            raise _provider_error("checkout session retrieval", e)
        return parse_stripe_object(StripeCheckoutSession, session)

    # ------------------------------------------------------------ subscriptions

    def retrieve_subscription(self, subscription_id: str) -> StripeSubscription:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise _provider_error("subscription retrieval", e)
        return parse_stripe_object(StripeSubscription, subscription)

    def create_subscription(
        self,
        customer_id: str,
        payment_method_id: str,
        tier: Tier,
        user_id: str,
    ) -> SubscriptionAttempt:
        """
        Exchange a payment-method token for a subscription synchronously.

        Raises:
            ProviderError: Stripe rejected the call or the payment failed outright
        """
        if not tier.stripe_price_id:
            raise ValidationError(f"Tier {tier.id} has no Stripe price")
        metadata = {"user_id": user_id, "tier_id": str(tier.id), "price_id": tier.stripe_price_id}
        try:
            stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
            stripe.Customer.modify(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
            )
            raw = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": tier.stripe_price_id}],
                default_payment_method=payment_method_id,
                metadata=metadata,
                expand=["latest_invoice.payment_intent"],
            )
        except stripe.StripeError as e:
            raise _provider_error("subscription creation", e)

        subscription = parse_stripe_object(StripeSubscription, raw)
        return self.attempt_from_subscription(subscription, tier, user_id)

    def attempt_from_subscription(self, subscription: StripeSubscription, tier: Tier, user_id: str) -> SubscriptionAttempt:
        intent = subscription.payment_intent()
        if subscription.status in ACTIVE_STATUSES:
            event = self.event_from_subscription(subscription, tier, user_id)
            return SubscriptionAttempt(
                provider_subscription_id=subscription.id,
                provider_status=subscription.status,
                event=event,
            )
        if intent is not None and intent.status == "requires_action":
            log_event(
                "info",
                "provider.subscription.requires_action",
                user_id=user_id,
                extra={"provider": "stripe", "provider_subscription_id": subscription.id},
            )
            return SubscriptionAttempt(
                provider_subscription_id=subscription.id,
                provider_status=subscription.status,
                requires_action=True,
                client_secret=intent.client_secret,
            )
        raise ProviderError(
            f"Stripe subscription is {subscription.status}"
            + (f" (payment {intent.status})" if intent else ""),
            retryable=False,
            provider="stripe",
        )

    def event_from_subscription(
        self,
        subscription: StripeSubscription,
        tier: Tier,
        user_id: Optional[str],
        event_id: Optional[str] = None,
    ) -> ProviderEvent:
        if subscription.status in ACTIVE_STATUSES:
            kind = EventKind.ACTIVATED
        elif subscription.status in ENDED_STATUSES:
            kind = EventKind.CANCELLED
        else:
            kind = EventKind.PENDING

        start_ts, end_ts = subscription.period_bounds()
        start, end, period_source = resolve_period(
            self.kind,
            tier,
            from_unix(start_ts),
            from_unix(end_ts),
            fallback_start=utc_now(),
            user_id=user_id,
            provider_subscription_id=subscription.id,
        )
        return ProviderEvent(
            event_kind=kind,
            provider_kind=self.kind,
            provider_subscription_id=subscription.id,
            user_id=user_id,
            tier_id=tier.id,
            provider_customer_id=subscription.customer,
            period_start=start,
            period_end=end,
            provider_status=subscription.status,
            period_source=period_source,
            event_id=event_id,
        )

    def event_from_checkout_session(self, session: StripeCheckoutSession, event_id: Optional[str] = None) -> ProviderEvent:
        """Completed checkout -> activation, with the period from the canonical subscription."""
        if not session.subscription_id:
            return ProviderEvent(event_kind=EventKind.IGNORED, provider_kind=self.kind,
                                 provider_subscription_id=None, event_id=event_id)
        if not session.is_paid:
            return ProviderEvent(
                event_kind=EventKind.PENDING,
                provider_kind=self.kind,
                provider_subscription_id=session.subscription_id,
                provider_status=session.payment_status,
                event_id=event_id,
            )

        user_id = session.metadata.user_id
        if not user_id:
            raise ValidationError("Missing user_id in checkout session metadata")

        if isinstance(session.subscription, StripeSubscription):
            subscription = session.subscription
        else:
            subscription = self.retrieve_subscription(session.subscription_id)

        tier = self._resolve_tier(session.metadata, subscription.first_price_id())
        event = self.event_from_subscription(subscription, tier, user_id, event_id)
        if event.provider_customer_id is None and session.customer:
            event = replace(event, provider_customer_id=session.customer)
        return event

    def _resolve_tier(self, metadata: StripeMetadata, item_price_id: Optional[str]) -> Tier:
        tier = None
        if metadata.tier_id:
            try:
                tier = tiers.get_tier(int(metadata.tier_id))
            except ValueError:
                raise ValidationError(f"Invalid tier_id in metadata: {metadata.tier_id}")
        price_id = metadata.price_id or item_price_id
        if tier is None and price_id:
            tier = tiers.get_tier_by_stripe_price(price_id)
        if tier is None:
            raise ValidationError("Could not resolve subscription tier from Stripe metadata")
        return tier

    # ------------------------------------------------------------ webhooks

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> WebhookEnvelope:
        if not self.webhook_secret:
            raise AuthenticityError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = _header(headers, "stripe-signature")
        if not sig_header:
            raise AuthenticityError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise AuthenticityError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise AuthenticityError(f"Invalid signature: {e}")

        try:
            data = json.loads(body)
        except ValueError as e:
            raise ValidationError(f"Invalid JSON body: {e}")

        event = parse_stripe_event(data)
        return WebhookEnvelope(event_id=event.id, event_type=event.type, payload=event, raw=data)

    def event_from_webhook(self, envelope: WebhookEnvelope) -> ProviderEvent:
        event = envelope.payload

        if isinstance(event, StripeUnhandledEvent):
            return ProviderEvent(event_kind=EventKind.IGNORED, provider_kind=self.kind,
                                 provider_subscription_id=None, event_id=event.id)

        if isinstance(event, StripeCheckoutCompletedEvent):
            return self.event_from_checkout_session(event.data.object, event_id=event.id)

        if isinstance(event, StripeSubscriptionEvent):
            if event.type == "customer.subscription.deleted":
                return self._cancellation(event.data.object, event.id)
            return self._event_from_canonical(event.data.object, event.id)

        raise ValidationError(f"Unsupported Stripe event type: {envelope.event_type}")

    def _event_from_canonical(self, delivered: StripeSubscription, event_id: str) -> ProviderEvent:
        """Re-fetch the subscription; an older delivery may arrive after a newer one."""
        subscription = self.retrieve_subscription(delivered.id)
        if subscription.status in ENDED_STATUSES:
            return self._cancellation(subscription, event_id)
        if subscription.status not in ACTIVE_STATUSES:
            return ProviderEvent(
                event_kind=EventKind.PENDING,
                provider_kind=self.kind,
                provider_subscription_id=subscription.id,
                provider_status=subscription.status,
                event_id=event_id,
            )
        metadata = subscription.metadata if subscription.metadata.user_id else delivered.metadata
        if not metadata.user_id:
            raise ValidationError("Missing user_id in subscription metadata")
        tier = self._resolve_tier(metadata, subscription.first_price_id())
        return self.event_from_subscription(subscription, tier, metadata.user_id, event_id)

    def _cancellation(self, subscription: StripeSubscription, event_id: str) -> ProviderEvent:
        return ProviderEvent(
            event_kind=EventKind.CANCELLED,
            provider_kind=self.kind,
            provider_subscription_id=subscription.id,
            provider_customer_id=subscription.customer,
            provider_status=subscription.status,
            event_id=event_id,
        )
