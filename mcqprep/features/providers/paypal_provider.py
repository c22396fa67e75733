"""
PayPal billing provider (activation call + canonical re-fetch + webhooks).

The activation response is never used for billing dates: after activating,
the subscription is re-fetched and its billing_info.next_billing_time is the
authoritative period end. Webhook authenticity is checked with PayPal's
verify-webhook-signature API and fails closed.
"""
import json
import time
from typing import Dict, Any, Optional

import httpx

from mcqprep.core.config import settings
from mcqprep.core.errors import AuthenticityError, ProviderError, ValidationError
from mcqprep.core.logging import log_event
from mcqprep.core.timeutil import parse_iso, utc_now
from mcqprep.features.providers.base import (
    CheckoutStart,
    EventKind,
    ProviderEvent,
    WebhookEnvelope,
    resolve_period,
)
from mcqprep.features.providers.payloads import (
    PAYPAL_CANCELLATION_EVENTS,
    PayPalSaleWebhook,
    PayPalSubscription,
    PayPalSubscriptionWebhook,
    PayPalUnhandledWebhook,
    decode_custom_id,
    encode_custom_id,
    parse_paypal_subscription,
    parse_paypal_webhook,
)
from mcqprep.features.subscriptions import tiers
from mcqprep.features.subscriptions.models import ENDED_PROVIDER_STATUSES, ProviderKind
from mcqprep.features.subscriptions.tiers import Tier

ACTIVE_STATUSES = {"ACTIVE"}
ENDED_STATUSES = ENDED_PROVIDER_STATUSES[ProviderKind.PAYPAL]

# Headers PayPal signs each webhook delivery with
SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

TOKEN_EXPIRY_SKEW_SECONDS = 60


class PayPalProvider:
    """PayPal implementation of BillingProvider."""

    kind = ProviderKind.PAYPAL

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        webhook_id: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.client_id = client_id or settings.PAYPAL_CLIENT_ID
        self.client_secret = client_secret or settings.PAYPAL_CLIENT_SECRET
        self.api_base = (api_base or settings.PAYPAL_API_BASE).rstrip("/")
        self.webhook_id = webhook_id or settings.PAYPAL_WEBHOOK_ID

        if not self.client_id or not self.client_secret:
            raise ProviderError("PayPal client ID or secret is not configured", provider="paypal")

        self._client = httpx.Client(
            base_url=self.api_base,
            timeout=timeout or settings.PROVIDER_TIMEOUT_SECONDS,
            transport=transport,
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------ transport

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        try:
            response = self._client.post(
                "/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise self._transport_error("access token", e)
        if response.status_code >= 400:
            raise self._status_error("access token", response)
        payload = response.json()
        self._token = payload["access_token"]
        expires_in = int(payload.get("expires_in", 0) or 0)
        self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_SKEW_SECONDS, 0)
        return self._token

    def _request(self, method: str, path: str, action: str, json_body: Optional[Dict[str, Any]] = None) -> httpx.Response:
        token = self._access_token()
        try:
            response = self._client.request(
                method,
                path,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                json=json_body,
            )
        except httpx.HTTPError as e:
            raise self._transport_error(action, e)
        return response

    def _transport_error(self, action: str, e: Exception) -> ProviderError:
        kind = "timeout" if isinstance(e, httpx.TimeoutException) else "transport"
        log_event(
            "warning",
            "provider.call.failed",
            error_code=f"paypal_{kind}",
            extra={"provider": "paypal", "action": action, "retryable": True, "error": e},
        )
        return ProviderError(f"PayPal {action} failed ({kind})", retryable=True, provider="paypal")

    def _status_error(self, action: str, response: httpx.Response) -> ProviderError:
        retryable = response.status_code >= 500 or response.status_code == 429
        detail = _error_detail(response)
        log_event(
            "warning",
            "provider.call.failed",
            error_code="paypal_error",
            extra={
                "provider": "paypal",
                "action": action,
                "status": response.status_code,
                "retryable": retryable,
                "error": detail,
            },
        )
        return ProviderError(f"PayPal {action} failed: {detail}", retryable=retryable, provider="paypal")

    # ------------------------------------------------------------ subscriptions

    def create_subscription(
        self,
        tier: Tier,
        user_id: str,
        return_url: str,
        cancel_url: str,
    ) -> CheckoutStart:
        """Create a subscription awaiting buyer approval; returns the approval link."""
        if not tier.paypal_plan_id:
            raise ValidationError(f"Tier {tier.id} has no PayPal plan")
        response = self._request(
            "POST",
            "/v1/billing/subscriptions",
            "subscription creation",
            json_body={
                "plan_id": tier.paypal_plan_id,
                "custom_id": encode_custom_id(user_id, tier.id),
                "application_context": {
                    "brand_name": "Study Prometric MCQs",
                    "user_action": "SUBSCRIBE_NOW",
                    "return_url": return_url,
                    "cancel_url": cancel_url,
                },
            },
        )
        if response.status_code >= 400:
            raise self._status_error("subscription creation", response)
        subscription = parse_paypal_subscription(response.json())
        approval_url = subscription.approval_url()
        if not approval_url:
            raise ProviderError("PayPal did not return an approval link", provider="paypal")
        return CheckoutStart(redirect_url=approval_url, reference_id=subscription.id)

    def activate_subscription(self, subscription_id: str) -> None:
        """Activate an approved subscription. Already-active is not an error."""
        response = self._request(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/activate",
            "subscription activation",
            json_body={"reason": "Subscription activated by user approval"},
        )
        if response.status_code == 422 and "SUBSCRIPTION_STATUS_INVALID" in response.text:
            log_event(
                "info",
                "provider.subscription.already_active",
                extra={"provider": "paypal", "provider_subscription_id": subscription_id},
            )
            return
        if response.status_code >= 400:
            raise self._status_error("subscription activation", response)

    def get_subscription(self, subscription_id: str) -> PayPalSubscription:
        response = self._request("GET", f"/v1/billing/subscriptions/{subscription_id}", "subscription lookup")
        if response.status_code >= 400:
            raise self._status_error("subscription lookup", response)
        return parse_paypal_subscription(response.json())

    def event_from_subscription(
        self,
        subscription: PayPalSubscription,
        tier: Tier,
        user_id: Optional[str],
        event_id: Optional[str] = None,
    ) -> ProviderEvent:
        status = (subscription.status or "").upper()
        if status in ACTIVE_STATUSES:
            kind = EventKind.ACTIVATED
        elif status in ENDED_STATUSES:
            kind = EventKind.CANCELLED
        else:
            kind = EventKind.PENDING

        start, end, period_source = resolve_period(
            self.kind,
            tier,
            parse_iso(subscription.start_time),
            parse_iso(subscription.next_billing_time),
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
            period_start=start,
            period_end=end,
            provider_status=subscription.status,
            period_source=period_source,
            event_id=event_id,
        )

    def resolve_tier(self, custom_id: Optional[str], plan_id: Optional[str]) -> Tier:
        _, tier_id = decode_custom_id(custom_id)
        tier = tiers.get_tier(tier_id) if tier_id is not None else None
        if tier is None and plan_id:
            tier = tiers.get_tier_by_paypal_plan(plan_id)
        if tier is None:
            raise ValidationError("Could not resolve subscription tier for PayPal subscription")
        return tier

    # ------------------------------------------------------------ webhooks

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> WebhookEnvelope:
        if not self.webhook_id:
            raise AuthenticityError("PAYPAL_WEBHOOK_ID not configured")

        lowered = {k.lower(): v for k, v in headers.items()}
        signature = {}
        for field, header in SIGNATURE_HEADERS.items():
            value = lowered.get(header)
            if not value:
                raise AuthenticityError(f"Missing {header} header")
            signature[field] = value

        try:
            data = json.loads(body)
        except ValueError as e:
            raise AuthenticityError(f"Invalid payload: {e}")
        if not isinstance(data, dict):
            raise AuthenticityError("Invalid payload: expected a JSON object")

        response = self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            "webhook verification",
            json_body={**signature, "webhook_id": self.webhook_id, "webhook_event": data},
        )
        if response.status_code >= 500 or response.status_code == 429:
            raise self._status_error("webhook verification", response)
        if response.status_code >= 400:
            raise AuthenticityError(f"Webhook verification rejected ({response.status_code})")
        if response.json().get("verification_status") != "SUCCESS":
            raise AuthenticityError("Invalid webhook signature")

        event = parse_paypal_webhook(data)
        return WebhookEnvelope(event_id=event.id, event_type=event.event_type, payload=event, raw=data)

    def event_from_webhook(self, envelope: WebhookEnvelope) -> ProviderEvent:
        event = envelope.payload

        if isinstance(event, PayPalUnhandledWebhook):
            return ProviderEvent(event_kind=EventKind.IGNORED, provider_kind=self.kind,
                                 provider_subscription_id=None, event_id=event.id)

        if isinstance(event, PayPalSubscriptionWebhook):
            resource = event.resource
            if event.event_type in PAYPAL_CANCELLATION_EVENTS:
                return ProviderEvent(
                    event_kind=EventKind.CANCELLED,
                    provider_kind=self.kind,
                    provider_subscription_id=resource.id,
                    provider_status=resource.status,
                    event_id=event.id,
                )
            return self._event_from_canonical(resource.id, resource.custom_id, event.id)

        if isinstance(event, PayPalSaleWebhook):
            sale = event.resource
            if not sale.billing_agreement_id:
                return ProviderEvent(event_kind=EventKind.IGNORED, provider_kind=self.kind,
                                     provider_subscription_id=None, event_id=event.id)
            return self._event_from_canonical(sale.billing_agreement_id, sale.custom, event.id)

        raise ValidationError(f"Unsupported PayPal event type: {envelope.event_type}")

    def _event_from_canonical(self, subscription_id: str, fallback_custom_id: Optional[str], event_id: str) -> ProviderEvent:
        """Re-fetch the subscription; webhook resource bodies may be stale."""
        subscription = self.get_subscription(subscription_id)
        custom_id = subscription.custom_id or fallback_custom_id
        user_id, _ = decode_custom_id(custom_id)
        if not user_id:
            raise ValidationError("Missing user_id in PayPal custom_id")
        tier = self.resolve_tier(custom_id, subscription.plan_id)
        return self.event_from_subscription(subscription, tier, user_id, event_id)


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        return (
            payload.get("message")
            or payload.get("error_description")
            or payload.get("name")
            or f"HTTP {response.status_code}"
        )
    return f"HTTP {response.status_code}"
