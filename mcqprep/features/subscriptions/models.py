"""Value types shared by the ledger, the arbitration policy and its callers."""
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

from mcqprep.core.timeutil import ensure_utc


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ProviderKind(str, Enum):
    NONE = "none"
    STRIPE = "stripe"
    PAYPAL = "paypal"


class EntitlementSource(str, Enum):
    PURCHASE = "purchase"
    REWARD = "reward"
    ADMIN = "admin"
    TRIAL = "trial"


COMPLIMENTARY_SOURCES = {EntitlementSource.REWARD, EntitlementSource.TRIAL}


class ClosureReason(str, Enum):
    """Why a row left the active state."""
    REPLACED = "replaced"
    CANCELLED = "cancelled"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"


# Provider statuses after which a purchase never bills again
ENDED_PROVIDER_STATUSES = {
    ProviderKind.STRIPE: frozenset({"canceled", "unpaid", "incomplete_expired"}),
    ProviderKind.PAYPAL: frozenset({"CANCELLED", "EXPIRED", "SUSPENDED"}),
}


class TransitionOutcome(str, Enum):
    CREATE = "create"
    REFRESH = "refresh"
    REPLACE = "replace"
    SUPPRESS = "suppress"
    STALE = "stale"
    REACTIVATE = "reactivate"


@dataclass(frozen=True)
class SubscriptionDraft:
    """Desired subscription state handed to apply_transition."""
    tier_id: int
    start_date: datetime
    end_date: datetime
    provider_kind: ProviderKind = ProviderKind.NONE
    source: EntitlementSource = EntitlementSource.PURCHASE
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    provider_status: Optional[str] = None
    # Admin extension of an existing provider-less row
    target_subscription_id: Optional[int] = None

    @property
    def is_paid(self) -> bool:
        return self.provider_kind != ProviderKind.NONE

    @property
    def is_complimentary(self) -> bool:
        return self.source in COMPLIMENTARY_SOURCES


@dataclass(frozen=True)
class SubscriptionRecord:
    id: int
    user_id: str
    tier_id: int
    start_date: datetime
    end_date: datetime
    status: SubscriptionStatus
    provider_kind: ProviderKind
    source: EntitlementSource
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    provider_status: Optional[str] = None
    closed_reason: Optional[ClosureReason] = None

    @classmethod
    def from_row(cls, row) -> "SubscriptionRecord":
        return cls(
            id=row.id,
            user_id=row.user_id,
            tier_id=row.tier_id,
            start_date=ensure_utc(row.start_date),
            end_date=ensure_utc(row.end_date),
            status=SubscriptionStatus(row.status),
            provider_kind=ProviderKind(row.provider_kind),
            source=EntitlementSource(row.source),
            provider_subscription_id=row.provider_subscription_id,
            provider_customer_id=row.provider_customer_id,
            provider_status=row.provider_status,
            closed_reason=ClosureReason(row.closed_reason) if row.closed_reason else None,
        )

    @property
    def is_paid(self) -> bool:
        return self.provider_kind != ProviderKind.NONE

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    @property
    def provider_ended(self) -> bool:
        return self.provider_status in ENDED_PROVIDER_STATUSES.get(self.provider_kind, frozenset())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["start_date"] = self.start_date.isoformat()
        data["end_date"] = self.end_date.isoformat()
        data["status"] = self.status.value
        data["provider_kind"] = self.provider_kind.value
        data["source"] = self.source.value
        data["closed_reason"] = self.closed_reason.value if self.closed_reason else None
        return data


@dataclass(frozen=True)
class TransitionResult:
    outcome: TransitionOutcome
    record: Optional[SubscriptionRecord]
    has_access: bool
    deactivated_id: Optional[int] = None

    @property
    def applied(self) -> bool:
        """True when the draft is now reflected by the active row."""
        return self.outcome in {
            TransitionOutcome.CREATE,
            TransitionOutcome.REFRESH,
            TransitionOutcome.REPLACE,
            TransitionOutcome.REACTIVATE,
        }
