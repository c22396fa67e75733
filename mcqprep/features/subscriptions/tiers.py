"""Tier catalog lookups (read-only)."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select

from mcqprep.core.database import get_db_session, subscription_tiers


@dataclass(frozen=True)
class Tier:
    id: int
    name: str
    price: Decimal
    currency: str
    duration_in_months: int
    stripe_price_id: Optional[str] = None
    paypal_plan_id: Optional[str] = None
    is_active: bool = True


def _row_to_tier(row) -> Tier:
    return Tier(
        id=row.id,
        name=row.name,
        price=Decimal(str(row.price)),
        currency=row.currency,
        duration_in_months=row.duration_in_months,
        stripe_price_id=row.stripe_price_id,
        paypal_plan_id=row.paypal_plan_id,
        is_active=bool(row.is_active),
    )


def _fetch_one(where_clause) -> Optional[Tier]:
    with get_db_session() as session:
        row = session.execute(select(subscription_tiers).where(where_clause)).fetchone()
    return _row_to_tier(row) if row else None


def get_tier(tier_id: int) -> Optional[Tier]:
    return _fetch_one(subscription_tiers.c.id == tier_id)


def get_tier_by_name(name: str) -> Optional[Tier]:
    return _fetch_one(subscription_tiers.c.name == name)


def get_tier_by_stripe_price(price_id: str) -> Optional[Tier]:
    return _fetch_one(subscription_tiers.c.stripe_price_id == price_id)


def get_tier_by_paypal_plan(plan_id: str) -> Optional[Tier]:
    return _fetch_one(subscription_tiers.c.paypal_plan_id == plan_id)
