"""
Billing provider protocol.

Provider-specific shapes stop at this boundary: adapters turn raw provider
objects into a ProviderEvent, which the fulfillment orchestrator turns into a
SubscriptionDraft for the ledger.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol, Dict, Any, Optional, Tuple

from mcqprep.core.logging import log_event
from mcqprep.core.timeutil import add_months, ensure_utc
from mcqprep.features.subscriptions.models import (
    EntitlementSource,
    ProviderKind,
    SubscriptionDraft,
)
from mcqprep.features.subscriptions.tiers import Tier


class EventKind(str, Enum):
    ACTIVATED = "activated"
    CANCELLED = "cancelled"
    PENDING = "pending"
    IGNORED = "ignored"


class PeriodSource(str, Enum):
    PROVIDER = "provider"
    TIER_FALLBACK = "tier_fallback"


@dataclass(frozen=True)
class ProviderEvent:
    """Normalized activation/cancellation signal from either provider."""
    event_kind: EventKind
    provider_kind: ProviderKind
    provider_subscription_id: Optional[str]
    user_id: Optional[str] = None
    tier_id: Optional[int] = None
    provider_customer_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    provider_status: Optional[str] = None
    period_source: PeriodSource = PeriodSource.PROVIDER
    event_id: Optional[str] = None

    def to_draft(self) -> SubscriptionDraft:
        return SubscriptionDraft(
            tier_id=self.tier_id,
            start_date=self.period_start,
            end_date=self.period_end,
            provider_kind=self.provider_kind,
            source=EntitlementSource.PURCHASE,
            provider_subscription_id=self.provider_subscription_id,
            provider_customer_id=self.provider_customer_id,
            provider_status=self.provider_status,
        )


@dataclass(frozen=True)
class SubscriptionAttempt:
    """
    Outcome of a synchronous subscription attempt.

    requires_action is neither success nor failure: the client completes
    authentication with client_secret and the webhook activates later.
    """
    provider_subscription_id: str
    provider_status: str
    event: Optional[ProviderEvent] = None
    requires_action: bool = False
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class CheckoutStart:
    """Where to send the buyer to approve/pay."""
    redirect_url: str
    reference_id: str  # checkout session id or provider subscription id


@dataclass(frozen=True)
class WebhookEnvelope:
    """A webhook whose authenticity has been verified."""
    event_id: str
    event_type: str
    payload: Any
    raw: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Implementations must:
    - verify webhook authenticity and fail closed
    - validate payloads into explicit models
    - map provider period end to the subscription end date
    """

    kind: ProviderKind

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> WebhookEnvelope:
        """
        Raises:
            AuthenticityError: missing/invalid signature
            ValidationError: malformed payload
        """
        ...

    def event_from_webhook(self, envelope: WebhookEnvelope) -> ProviderEvent:
        """
        Map a verified webhook to a ProviderEvent (may re-fetch canonical state).

        Raises:
            ValidationError: required metadata missing
            ProviderError: canonical re-fetch failed
        """
        ...


def resolve_period(
    provider: ProviderKind,
    tier: Tier,
    period_start: Optional[datetime],
    period_end: Optional[datetime],
    *,
    fallback_start: datetime,
    user_id: Optional[str] = None,
    provider_subscription_id: Optional[str] = None,
) -> Tuple[datetime, datetime, PeriodSource]:
    """
    Use the provider's period end when present, otherwise start + tier duration.

    The two paths log distinct event names so fallback periods can be audited.
    """
    start = ensure_utc(period_start) or ensure_utc(fallback_start)
    end = ensure_utc(period_end)
    if end is not None and end > start:
        log_event(
            "info",
            "provider.period.authoritative",
            user_id=user_id,
            extra={"provider": provider.value, "provider_subscription_id": provider_subscription_id},
        )
        return start, end, PeriodSource.PROVIDER

    end = add_months(start, tier.duration_in_months)
    log_event(
        "warning",
        "provider.period.fallback",
        user_id=user_id,
        extra={
            "provider": provider.value,
            "provider_subscription_id": provider_subscription_id,
            "tier_id": tier.id,
            "duration_in_months": tier.duration_in_months,
        },
    )
    return start, end, PeriodSource.TIER_FALLBACK
