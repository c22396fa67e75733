"""
Admin subscription overrides, reconciliation alerts and the auth gate.
"""
import json
from datetime import timedelta
from unittest.mock import patch

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from mcqprep.core.admin_auth import AdminActor
from mcqprep.core.database import get_db_session, admin_audit
from mcqprep.core.errors import AdminAuditWriteError, ReconciliationGap
from mcqprep.core.timeutil import add_months, utc_now
from mcqprep.features.admin import service as admin_service
from mcqprep.features.subscriptions import ledger
from mcqprep.features.subscriptions.models import (
    EntitlementSource,
    ProviderKind,
    SubscriptionDraft,
    SubscriptionStatus,
)
from mcqprep.main import app

client = TestClient(app)


def _audit_rows():
    with get_db_session() as session:
        return session.execute(select(admin_audit).order_by(admin_audit.c.id)).fetchall()


def _paid(user_id, tier_id, days=30):
    now = utc_now()
    return ledger.apply_transition(user_id, SubscriptionDraft(
        tier_id=tier_id,
        start_date=now,
        end_date=now + timedelta(days=days),
        provider_kind=ProviderKind.STRIPE,
        provider_subscription_id="sub_paid",
        provider_customer_id="cus_1",
        provider_status="active",
    ))


class TestAdminAuthGate:

    def test_missing_credentials(self, user):
        response = client.patch("/v1/admin/subscriptions", json={"user_id": user.id, "has_active_subscription": True})
        assert response.status_code == 401

    def test_wrong_key(self, user):
        response = client.patch(
            "/v1/admin/subscriptions",
            json={"user_id": user.id, "has_active_subscription": True},
            headers={"X-Admin-Key": "nope"},
        )
        assert response.status_code == 401

    def test_nothing_configured_is_503(self, user, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "ADMIN_API_KEY", None)
        response = client.get(f"/v1/admin/subscriptions/{user.id}", headers={"X-Admin-Key": "test-admin-key"})
        assert response.status_code == 503

    def test_admin_jwt(self, user, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "ADMIN_JWT_SECRET", "admin-secret")
        token = jwt.encode({"sub": "admin_1", "role": "admin", "email": "ops@example.com"}, "admin-secret", algorithm="HS256")
        response = client.patch(
            "/v1/admin/subscriptions",
            json={"user_id": user.id, "has_active_subscription": True},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 200
        row = _audit_rows()[-1]
        assert row.actor == "jwt"
        assert row.actor_id == "admin_1"
        assert row.auth_mechanism == "bearer_jwt"

    def test_non_admin_jwt_rejected(self, user, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "ADMIN_JWT_SECRET", "admin-secret")
        monkeypatch.setattr(test_settings, "ADMIN_AUTH_MODE", "jwt")
        token = jwt.encode({"sub": "user_1", "role": "member"}, "admin-secret", algorithm="HS256")
        response = client.get(f"/v1/admin/subscriptions/{user.id}", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_jwt_mode_refuses_legacy_key(self, user, test_settings, monkeypatch, admin_headers):
        monkeypatch.setattr(test_settings, "ADMIN_JWT_SECRET", "admin-secret")
        monkeypatch.setattr(test_settings, "ADMIN_AUTH_MODE", "jwt")
        response = client.get(f"/v1/admin/subscriptions/{user.id}", headers=admin_headers)
        assert response.status_code == 401


class TestSetSubscription:

    def test_deactivating_paid_row_makes_no_provider_call(self, user, tiers, admin_headers):
        _paid(user.id, tiers["1 Month"])
        with patch("stripe.Subscription.cancel") as cancel, \
                patch.object(admin_service.ledger, "cancel_provider_subscription") as provider_cancel:
            response = client.patch(
                "/v1/admin/subscriptions",
                json={"user_id": user.id, "has_active_subscription": False},
                headers=admin_headers,
            )

        assert response.status_code == 200
        body = response.json()
        assert body["action"] == "deactivated"
        assert body["has_active_subscription"] is False
        assert body["subscription"]["status"] == "inactive"
        cancel.assert_not_called()
        provider_cancel.assert_not_called()
        record = ledger.list_user_subscriptions(user.id)[0]
        assert record.status == SubscriptionStatus.INACTIVE
        assert record.provider_status == "active"

        audit = _audit_rows()[-1]
        assert audit.action == "subscription.deactivate"
        assert audit.target_user_id == user.id
        assert audit.actor == "legacy_key"
        assert json.loads(audit.payload_json)["action"] == "deactivated"

    def test_deactivating_without_rows_is_noop(self, user, admin_headers):
        response = client.patch(
            "/v1/admin/subscriptions",
            json={"user_id": user.id, "has_active_subscription": False},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["action"] == "noop"

    def test_activating_grants_default_tier(self, user, tiers, admin_headers):
        before = utc_now()
        response = client.patch(
            "/v1/admin/subscriptions",
            json={"user_id": user.id, "has_active_subscription": True},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["action"] == "granted"
        active = ledger.get_active_subscription(user.id)
        assert active.tier_id == tiers["1 Month"]
        assert active.source == EntitlementSource.ADMIN
        assert active.provider_kind == ProviderKind.NONE
        assert add_months(before, 1) <= active.end_date <= add_months(utc_now(), 1)

    def test_activating_with_end_date_moves_existing_row(self, user, tiers, admin_headers):
        _paid(user.id, tiers["1 Month"], days=30)
        new_end = (utc_now() + timedelta(days=60)).replace(microsecond=0)

        response = client.patch(
            "/v1/admin/subscriptions",
            json={"user_id": user.id, "has_active_subscription": True, "end_date": new_end.isoformat()},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["action"] == "extended"
        records = ledger.list_user_subscriptions(user.id)
        assert len(records) == 1
        assert records[0].end_date == new_end
        assert records[0].provider_subscription_id == "sub_paid"

    def test_already_active_without_end_date_is_noop(self, user, tiers, admin_headers):
        _paid(user.id, tiers["1 Month"])
        response = client.patch(
            "/v1/admin/subscriptions",
            json={"user_id": user.id, "has_active_subscription": True},
            headers=admin_headers,
        )
        assert response.json()["action"] == "noop"
        assert len(ledger.list_user_subscriptions(user.id)) == 1

    def test_end_date_in_the_past(self, user, admin_headers):
        past = (utc_now() - timedelta(days=1)).isoformat()
        response = client.patch(
            "/v1/admin/subscriptions",
            json={"user_id": user.id, "has_active_subscription": True, "end_date": past},
            headers=admin_headers,
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        assert _audit_rows() == []

    def test_unknown_user(self, admin_headers):
        response = client.patch(
            "/v1/admin/subscriptions",
            json={"user_id": "ghost", "has_active_subscription": True},
            headers=admin_headers,
        )
        assert response.status_code == 404

    def test_user_subscriptions_view(self, user, tiers, admin_headers):
        _paid(user.id, tiers["1 Month"])
        response = client.get(f"/v1/admin/subscriptions/{user.id}", headers=admin_headers)
        body = response.json()
        assert response.status_code == 200
        assert body["has_active_subscription"] is True
        assert body["active"]["provider_subscription_id"] == "sub_paid"
        assert len(body["history"]) == 1


class TestReconciliationAlerts:

    def _make_gap(self, tiers):
        now = utc_now()
        with pytest.raises(ReconciliationGap):
            ledger.apply_transition("ghost", SubscriptionDraft(
                tier_id=tiers["1 Month"],
                start_date=now,
                end_date=now + timedelta(days=30),
                provider_kind=ProviderKind.PAYPAL,
                provider_subscription_id="I-ORPHAN",
            ))

    def test_list_and_resolve(self, tiers, admin_headers):
        self._make_gap(tiers)

        listed = client.get("/v1/admin/reconciliation/alerts", headers=admin_headers).json()
        assert listed["count"] == 1
        alert = listed["alerts"][0]
        assert alert["provider"] == "paypal"
        assert alert["provider_subscription_id"] == "I-ORPHAN"

        response = client.post(
            f"/v1/admin/reconciliation/alerts/{alert['id']}/resolve",
            json={"note": "refunded"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["resolution_note"] == "refunded"
        assert client.get("/v1/admin/reconciliation/alerts", headers=admin_headers).json()["count"] == 0
        assert _audit_rows()[-1].action == "reconciliation.resolve"

    def test_resolve_unknown_alert(self, admin_headers):
        response = client.post("/v1/admin/reconciliation/alerts/999/resolve", headers=admin_headers)
        assert response.status_code == 404


def test_expire_endpoint(make_user, tiers, admin_headers):
    alice = make_user("user_alice")
    past = utc_now() - timedelta(days=40)
    ledger.apply_transition(alice.id, SubscriptionDraft(
        tier_id=tiers["1 Month"], start_date=past, end_date=past + timedelta(days=30),
        source=EntitlementSource.ADMIN,
    ), now=past)

    response = client.post("/v1/admin/subscriptions/expire", headers=admin_headers)

    assert response.json() == {"expired": 1}
    assert ledger.get_active_subscription(alice.id) is None
    assert _audit_rows()[-1].action == "subscription.expire_sweep"


def test_audit_write_failure_is_surfaced(user):
    actor = AdminActor(actor_type="legacy_key", actor_id="legacy:abc", auth_mechanism="x_admin_key")
    with patch.object(admin_service, "get_db_session", side_effect=OperationalError("INSERT", {}, Exception("down"))):
        with pytest.raises(AdminAuditWriteError):
            admin_service.record_admin_audit(actor, "subscription.set_active", target_user_id=user.id)
