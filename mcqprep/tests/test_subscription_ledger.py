"""
Subscription ledger: single writer, one active row, derived access flag,
reconciliation gaps for paid writes that fail.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, OperationalError

from mcqprep.core.database import get_db_session, profiles, user_subscriptions, reconciliation_alerts
from mcqprep.core.errors import NotFoundError, ReconciliationGap, ValidationError
from mcqprep.core.metrics import reconciliation_gaps_total
from mcqprep.core.timeutil import utc_now
from mcqprep.features.subscriptions import ledger
from mcqprep.features.subscriptions.models import (
    ClosureReason,
    EntitlementSource,
    ProviderKind,
    SubscriptionDraft,
    SubscriptionStatus,
    TransitionOutcome,
)
from mcqprep.features.subscriptions.reconciliation import list_alerts, resolve_alert


def _paid(tier_id, sub_id="sub_1", start=None, days=30, provider=ProviderKind.STRIPE):
    start = start or utc_now()
    return SubscriptionDraft(
        tier_id=tier_id,
        start_date=start,
        end_date=start + timedelta(days=days),
        provider_kind=provider,
        provider_subscription_id=sub_id,
        provider_customer_id="cus_1",
        provider_status="active",
    )


def _grant(tier_id, source=EntitlementSource.REWARD, days=30, start=None):
    start = start or utc_now()
    return SubscriptionDraft(tier_id=tier_id, start_date=start, end_date=start + timedelta(days=days), source=source)


def _active_count(user_id):
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(user_subscriptions).where(
                (user_subscriptions.c.user_id == user_id)
                & (user_subscriptions.c.status == "active")
            )
        ).scalar()


def _access_flag(user_id):
    with get_db_session() as session:
        return session.execute(
            select(profiles.c.has_active_subscription).where(profiles.c.id == user_id)
        ).scalar()


def test_first_purchase_creates_active_row_and_sets_flag(user, tiers):
    result = ledger.apply_transition(user.id, _paid(tiers["1 Month"]))

    assert result.outcome == TransitionOutcome.CREATE
    assert result.has_access is True
    assert result.record.status == SubscriptionStatus.ACTIVE
    assert result.record.provider_subscription_id == "sub_1"
    assert _access_flag(user.id) is True
    assert ledger.has_active_access(user.id)


def test_same_purchase_twice_is_a_refresh(user, tiers):
    draft = _paid(tiers["1 Month"])
    first = ledger.apply_transition(user.id, draft)
    second = ledger.apply_transition(user.id, draft)

    assert second.outcome == TransitionOutcome.REFRESH
    assert second.record.id == first.record.id
    assert len(ledger.list_user_subscriptions(user.id)) == 1


def test_refresh_never_shortens_the_period(user, tiers):
    start = utc_now()
    ledger.apply_transition(user.id, _paid(tiers["1 Month"], start=start, days=60))
    result = ledger.apply_transition(user.id, _paid(tiers["1 Month"], start=start, days=30))

    assert result.outcome == TransitionOutcome.REFRESH
    assert result.record.end_date == start + timedelta(days=60)


def test_new_purchase_replaces_active_row(user, tiers):
    first = ledger.apply_transition(user.id, _paid(tiers["1 Month"], sub_id="sub_1"))
    second = ledger.apply_transition(user.id, _paid(tiers["3 Months"], sub_id="sub_2", days=90))

    assert second.outcome == TransitionOutcome.REPLACE
    assert second.deactivated_id == first.record.id
    assert ledger.get_subscription(first.record.id).status == SubscriptionStatus.INACTIVE
    assert _active_count(user.id) == 1
    assert ledger.get_active_subscription(user.id).provider_subscription_id == "sub_2"


def test_late_event_for_replaced_purchase_is_stale(user, tiers):
    ledger.apply_transition(user.id, _paid(tiers["1 Month"], sub_id="sub_1"))
    ledger.apply_transition(user.id, _paid(tiers["3 Months"], sub_id="sub_2", days=90))

    late = ledger.apply_transition(user.id, _paid(tiers["1 Month"], sub_id="sub_1"))

    assert late.outcome == TransitionOutcome.STALE
    assert ledger.get_active_subscription(user.id).provider_subscription_id == "sub_2"
    assert _active_count(user.id) == 1


def test_late_renewal_after_cancellation_leaves_the_row_closed(user, tiers):
    created = ledger.apply_transition(user.id, _paid(tiers["1 Month"]))
    ledger.cancel_provider_subscription("stripe", "sub_1", "canceled")

    late = ledger.apply_transition(user.id, _paid(tiers["1 Month"], days=31))

    assert late.outcome == TransitionOutcome.STALE
    assert late.record.id == created.record.id
    assert late.record.status == SubscriptionStatus.INACTIVE
    assert late.record.closed_reason == ClosureReason.CANCELLED
    assert late.record.provider_status == "canceled"
    assert ledger.get_active_subscription(user.id) is None
    assert _access_flag(user.id) is False


def test_routine_update_does_not_undo_admin_deactivation(user, tiers):
    ledger.apply_transition(user.id, _paid(tiers["1 Month"]))
    deactivated, has_access = ledger.deactivate_active(user.id)
    assert deactivated.closed_reason == ClosureReason.DEACTIVATED
    assert has_access is False

    result = ledger.apply_transition(user.id, _paid(tiers["1 Month"], days=31))

    assert result.outcome == TransitionOutcome.STALE
    assert ledger.get_active_subscription(user.id) is None
    assert _access_flag(user.id) is False


def test_renewal_after_lapse_reactivates_the_row(user, tiers):
    past = utc_now() - timedelta(days=40)
    created = ledger.apply_transition(user.id, _paid(tiers["1 Month"], start=past, days=30), now=past)
    assert ledger.expire_lapsed_subscriptions() == 1
    assert ledger.get_subscription(created.record.id).closed_reason == ClosureReason.EXPIRED

    renewed = ledger.apply_transition(user.id, _paid(tiers["1 Month"], days=30))

    assert renewed.outcome == TransitionOutcome.REACTIVATE
    assert renewed.record.id == created.record.id
    assert renewed.record.status == SubscriptionStatus.ACTIVE
    assert renewed.record.closed_reason is None
    assert _access_flag(user.id) is True


def test_reward_is_suppressed_while_longer_paid_row_is_active(user, tiers):
    paid = ledger.apply_transition(user.id, _paid(tiers["3 Months"], days=90))
    result = ledger.apply_transition(user.id, _grant(tiers["Monthly Basic"], days=30))

    assert result.outcome == TransitionOutcome.SUPPRESS
    assert result.record.id == paid.record.id
    active = ledger.get_active_subscription(user.id)
    assert active.provider_subscription_id == "sub_1"
    assert len(ledger.list_user_subscriptions(user.id)) == 1


def test_admin_extension_sets_exact_end_date(user, tiers):
    now = utc_now()
    created = ledger.apply_transition(user.id, _grant(tiers["1 Month"], source=EntitlementSource.ADMIN, days=60))
    shorter = SubscriptionDraft(
        tier_id=tiers["1 Month"],
        start_date=created.record.start_date,
        end_date=now + timedelta(days=10),
        source=EntitlementSource.ADMIN,
        target_subscription_id=created.record.id,
    )
    result = ledger.apply_transition(user.id, shorter, now=now)

    assert result.outcome == TransitionOutcome.REFRESH
    assert result.record.end_date == now + timedelta(days=10)


def test_end_before_start_is_rejected(user, tiers):
    start = utc_now()
    draft = SubscriptionDraft(tier_id=tiers["1 Month"], start_date=start, end_date=start - timedelta(days=1))
    with pytest.raises(ValidationError):
        ledger.apply_transition(user.id, draft)


def test_paid_draft_requires_provider_subscription_id(user, tiers):
    draft = _paid(tiers["1 Month"], sub_id=None)
    with pytest.raises(ValidationError):
        ledger.apply_transition(user.id, draft)


def test_purchase_owned_by_another_user_is_rejected(make_user, tiers):
    alice = make_user("user_alice")
    bob = make_user("user_bob")
    ledger.apply_transition(alice.id, _paid(tiers["1 Month"]))

    with pytest.raises(ValidationError):
        ledger.apply_transition(bob.id, _paid(tiers["1 Month"]))
    assert ledger.get_active_subscription(bob.id) is None


def test_unknown_user_grant_is_not_found(tiers):
    with pytest.raises(NotFoundError):
        ledger.apply_transition("ghost", _grant(tiers["Monthly Basic"]))
    assert list_alerts() == []


def test_unknown_user_paid_draft_is_a_reconciliation_gap(tiers):
    with pytest.raises(ReconciliationGap) as exc_info:
        ledger.apply_transition("ghost", _paid(tiers["1 Month"]))

    alerts = list_alerts()
    assert len(alerts) == 1
    assert alerts[0]["user_id"] == "ghost"
    assert exc_info.value.alert_id == alerts[0]["id"]


def test_failed_paid_write_records_alert_and_raises_gap(user, tiers):
    with patch.object(ledger, "_insert_row", side_effect=OperationalError("INSERT", {}, Exception("disk I/O error"))):
        with pytest.raises(ReconciliationGap) as exc_info:
            ledger.apply_transition(user.id, _paid(tiers["1 Month"], sub_id="sub_gap"))

    gap = exc_info.value
    assert gap.provider == "stripe"
    assert gap.provider_subscription_id == "sub_gap"
    assert reconciliation_gaps_total.value({"provider": "stripe"}) == 1
    with get_db_session() as session:
        row = session.execute(select(reconciliation_alerts)).fetchone()
    assert row.provider_subscription_id == "sub_gap"
    assert "disk I/O error" in row.error
    # Nothing half-written
    assert ledger.list_user_subscriptions(user.id) == []
    assert _access_flag(user.id) is False


def test_failed_grant_write_propagates_without_alert(user, tiers):
    with patch.object(ledger, "_insert_row", side_effect=OperationalError("INSERT", {}, Exception("locked"))):
        with pytest.raises(OperationalError):
            ledger.apply_transition(user.id, _grant(tiers["Monthly Basic"]))
    assert list_alerts() == []


def test_lost_race_on_unique_index_is_retried_once(user, tiers):
    real_insert = ledger._insert_row
    calls = {"n": 0}

    def flaky_insert(session, user_id, draft, now):
        calls["n"] += 1
        if calls["n"] == 1:
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        return real_insert(session, user_id, draft, now)

    with patch.object(ledger, "_insert_row", side_effect=flaky_insert):
        result = ledger.apply_transition(user.id, _paid(tiers["1 Month"]))

    assert calls["n"] == 2
    assert result.outcome == TransitionOutcome.CREATE
    assert _active_count(user.id) == 1


def test_concurrent_writer_seen_on_retry_turns_into_refresh(user, tiers):
    """The webhook lands between our read and our insert; the retry sees its row."""
    draft = _paid(tiers["1 Month"])
    real_insert = ledger._insert_row
    calls = {"n": 0}

    def racing_insert(session, user_id, d, now):
        calls["n"] += 1
        if calls["n"] == 1:
            # Concurrent transaction commits the same purchase first
            with get_db_session() as other:
                real_insert(other, user_id, d, now)
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        return real_insert(session, user_id, d, now)

    with patch.object(ledger, "_insert_row", side_effect=racing_insert):
        result = ledger.apply_transition(user.id, draft)

    assert result.outcome == TransitionOutcome.REFRESH
    assert len(ledger.list_user_subscriptions(user.id)) == 1


def test_cancel_closes_row_and_clears_flag(user, tiers):
    ledger.apply_transition(user.id, _paid(tiers["1 Month"]))
    record = ledger.cancel_provider_subscription("stripe", "sub_1", "canceled")

    assert record.status == SubscriptionStatus.INACTIVE
    assert record.provider_status == "canceled"
    assert _access_flag(user.id) is False
    assert ledger.cancel_provider_subscription("stripe", "sub_unknown", "canceled") is None


def test_deactivate_active_without_rows_is_noop(user):
    deactivated, has_access = ledger.deactivate_active(user.id)
    assert deactivated is None
    assert has_access is False


def test_expiry_sweep_flips_lapsed_rows(make_user, tiers):
    alice = make_user("user_alice")
    bob = make_user("user_bob")
    past = utc_now() - timedelta(days=40)
    ledger.apply_transition(alice.id, _paid(tiers["1 Month"], sub_id="sub_old", start=past, days=30), now=past)
    ledger.apply_transition(bob.id, _paid(tiers["1 Month"], sub_id="sub_new"))
    assert _access_flag(alice.id) is True

    expired = ledger.expire_lapsed_subscriptions()

    assert expired == 1
    assert _access_flag(alice.id) is False
    assert ledger.get_active_subscription(alice.id) is None
    assert _access_flag(bob.id) is True
    assert ledger.expire_lapsed_subscriptions() == 0


def test_resolve_alert_is_idempotent(tiers):
    with pytest.raises(ReconciliationGap):
        ledger.apply_transition("ghost", _paid(tiers["1 Month"]))
    alert_id = list_alerts()[0]["id"]

    first = resolve_alert(alert_id, resolved_by="ops", note="granted manually")
    second = resolve_alert(alert_id, resolved_by="someone-else")

    assert first["resolved_by"] == "ops"
    assert second["resolved_by"] == "ops"
    assert list_alerts() == []
    assert len(list_alerts(include_resolved=True)) == 1
    with pytest.raises(NotFoundError):
        resolve_alert(9999, resolved_by="ops")
