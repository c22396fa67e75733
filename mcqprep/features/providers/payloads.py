"""
Explicit models for the provider payloads the engine reads.

Webhook events are discriminated unions keyed on the provider's event type;
event types the engine does not act on parse as an Unhandled* model so they
can be logged and acknowledged.
"""
from typing import Annotated, Optional, List, Union, Literal, Tuple, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from mcqprep.core.errors import ValidationError


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------- Stripe

class StripeMetadata(_ProviderModel):
    user_id: Optional[str] = None
    tier_id: Optional[str] = None
    price_id: Optional[str] = None


class StripePrice(_ProviderModel):
    id: str


class StripeSubscriptionItem(_ProviderModel):
    price: Optional[StripePrice] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class StripeSubscriptionItems(_ProviderModel):
    data: List[StripeSubscriptionItem] = Field(default_factory=list)


class StripePaymentIntent(_ProviderModel):
    id: str
    status: str
    client_secret: Optional[str] = None


class StripeInvoice(_ProviderModel):
    id: Optional[str] = None
    payment_intent: Optional[Union[StripePaymentIntent, str]] = None


class StripeSubscription(_ProviderModel):
    id: str
    status: str
    customer: Optional[str] = None
    start_date: Optional[int] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    items: StripeSubscriptionItems = Field(default_factory=StripeSubscriptionItems)
    metadata: StripeMetadata = Field(default_factory=StripeMetadata)
    latest_invoice: Optional[Union[StripeInvoice, str]] = None

    def period_bounds(self) -> Tuple[Optional[int], Optional[int]]:
        """Top-level period first, then the first item's (newer API versions)."""
        start = self.current_period_start
        end = self.current_period_end
        first = self.items.data[0] if self.items.data else None
        if start is None and first is not None:
            start = first.current_period_start
        if end is None and first is not None:
            end = first.current_period_end
        if start is None:
            start = self.start_date
        return start, end

    def first_price_id(self) -> Optional[str]:
        if self.items.data and self.items.data[0].price:
            return self.items.data[0].price.id
        return None

    def payment_intent(self) -> Optional[StripePaymentIntent]:
        invoice = self.latest_invoice
        if isinstance(invoice, StripeInvoice) and isinstance(invoice.payment_intent, StripePaymentIntent):
            return invoice.payment_intent
        return None


class StripeCheckoutSession(_ProviderModel):
    id: str
    status: Optional[str] = None
    payment_status: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[Union[StripeSubscription, str]] = None
    metadata: StripeMetadata = Field(default_factory=StripeMetadata)
    url: Optional[str] = None

    @property
    def subscription_id(self) -> Optional[str]:
        if isinstance(self.subscription, StripeSubscription):
            return self.subscription.id
        return self.subscription

    @property
    def is_paid(self) -> bool:
        return self.status == "complete" and self.payment_status == "paid"


class StripeCheckoutCompletedData(_ProviderModel):
    object: StripeCheckoutSession


class StripeCheckoutCompletedEvent(_ProviderModel):
    id: str
    type: Literal["checkout.session.completed"]
    data: StripeCheckoutCompletedData


class StripeSubscriptionEventData(_ProviderModel):
    object: StripeSubscription


class StripeSubscriptionEvent(_ProviderModel):
    id: str
    type: Literal[
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    ]
    data: StripeSubscriptionEventData


class StripeUnhandledEvent(_ProviderModel):
    id: str
    type: str


StripeEvent = Annotated[
    Union[StripeCheckoutCompletedEvent, StripeSubscriptionEvent],
    Field(discriminator="type"),
]

_STRIPE_EVENT_ADAPTER = TypeAdapter(StripeEvent)
STRIPE_HANDLED_EVENTS = {
    "checkout.session.completed",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
}


def parse_stripe_event(data: Dict[str, Any]):
    try:
        if data.get("type") in STRIPE_HANDLED_EVENTS:
            return _STRIPE_EVENT_ADAPTER.validate_python(data)
        return StripeUnhandledEvent.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed Stripe event: {e.errors()[0].get('msg')}") from e


def parse_stripe_object(model, data: Any):
    """Validate a StripeObject (or plain dict) into a model."""
    try:
        return model.model_validate(_to_plain(data))
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed Stripe {model.__name__}: {e.errors()[0].get('msg')}") from e


def _to_plain(data: Any) -> Any:
    to_dict = getattr(data, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return data


# ---------------------------------------------------------------- PayPal

class PayPalLink(_ProviderModel):
    href: str
    rel: str
    method: Optional[str] = None


class PayPalBillingInfo(_ProviderModel):
    next_billing_time: Optional[str] = None


class PayPalSubscription(_ProviderModel):
    id: str
    status: Optional[str] = None
    plan_id: Optional[str] = None
    custom_id: Optional[str] = None
    start_time: Optional[str] = None
    billing_info: Optional[PayPalBillingInfo] = None
    links: List[PayPalLink] = Field(default_factory=list)

    @property
    def next_billing_time(self) -> Optional[str]:
        return self.billing_info.next_billing_time if self.billing_info else None

    def approval_url(self) -> Optional[str]:
        for link in self.links:
            if link.rel == "approve":
                return link.href
        return None


class PayPalSale(_ProviderModel):
    id: str
    state: Optional[str] = None
    billing_agreement_id: Optional[str] = None
    custom: Optional[str] = None


class PayPalSubscriptionWebhook(_ProviderModel):
    id: str
    event_type: Literal[
        "BILLING.SUBSCRIPTION.ACTIVATED",
        "BILLING.SUBSCRIPTION.RE-ACTIVATED",
        "BILLING.SUBSCRIPTION.UPDATED",
        "BILLING.SUBSCRIPTION.CANCELLED",
        "BILLING.SUBSCRIPTION.EXPIRED",
        "BILLING.SUBSCRIPTION.SUSPENDED",
    ]
    resource: PayPalSubscription


class PayPalSaleWebhook(_ProviderModel):
    id: str
    event_type: Literal["PAYMENT.SALE.COMPLETED"]
    resource: PayPalSale


class PayPalUnhandledWebhook(_ProviderModel):
    id: str
    event_type: str


PayPalWebhook = Annotated[
    Union[PayPalSubscriptionWebhook, PayPalSaleWebhook],
    Field(discriminator="event_type"),
]

_PAYPAL_WEBHOOK_ADAPTER = TypeAdapter(PayPalWebhook)
PAYPAL_ACTIVATION_EVENTS = {
    "BILLING.SUBSCRIPTION.ACTIVATED",
    "BILLING.SUBSCRIPTION.RE-ACTIVATED",
    "BILLING.SUBSCRIPTION.UPDATED",
    "PAYMENT.SALE.COMPLETED",
}
PAYPAL_CANCELLATION_EVENTS = {
    "BILLING.SUBSCRIPTION.CANCELLED",
    "BILLING.SUBSCRIPTION.EXPIRED",
    "BILLING.SUBSCRIPTION.SUSPENDED",
}


def parse_paypal_webhook(data: Dict[str, Any]):
    try:
        if data.get("event_type") in PAYPAL_ACTIVATION_EVENTS | PAYPAL_CANCELLATION_EVENTS:
            return _PAYPAL_WEBHOOK_ADAPTER.validate_python(data)
        return PayPalUnhandledWebhook.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed PayPal webhook: {e.errors()[0].get('msg')}") from e


def parse_paypal_subscription(data: Dict[str, Any]) -> PayPalSubscription:
    try:
        return PayPalSubscription.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed PayPal subscription: {e.errors()[0].get('msg')}") from e


def encode_custom_id(user_id: str, tier_id: int) -> str:
    return f"{user_id}:{tier_id}"


def decode_custom_id(custom_id: Optional[str]) -> Tuple[Optional[str], Optional[int]]:
    """'<user_id>:<tier_id>' -> (user_id, tier_id); anything else -> (None, None)."""
    if not custom_id or ":" not in custom_id:
        return None, None
    user_id, _, tier_part = custom_id.rpartition(":")
    try:
        return (user_id or None), int(tier_part)
    except ValueError:
        return None, None
