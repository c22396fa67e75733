# mcqprep/conftest.py
import os
from decimal import Decimal

import pytest
from sqlalchemy import insert

os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("ENV", "test")


@pytest.fixture(scope="function", autouse=True)
def db(tmp_path):
    """
    Fresh SQLite database per test.

    Uses a file (not :memory:) so every session sees the same data.
    """
    from mcqprep.core import database

    database.init_engine(f"sqlite:///{tmp_path / 'mcqprep_test.db'}")
    database.reset_database()
    yield
    database.get_engine().dispose()


@pytest.fixture(scope="function", autouse=True)
def test_settings(monkeypatch):
    """Deterministic settings; individual tests override what they exercise."""
    from mcqprep.core.config import settings

    overrides = {
        "ENV": "test",
        "STRIPE_SECRET_KEY": "sk_test_123",
        "STRIPE_WEBHOOK_SECRET": "whsec_test_123",
        "PAYPAL_CLIENT_ID": "paypal-client",
        "PAYPAL_CLIENT_SECRET": "paypal-secret",
        "PAYPAL_API_BASE": "https://api-m.sandbox.paypal.com",
        "PAYPAL_WEBHOOK_ID": "WH-TEST",
        "BASE_URL": "http://api.test",
        "FRONTEND_URL": "http://app.test",
        "AUTH_JWT_SECRET": None,
        "ADMIN_API_KEY": "test-admin-key",
        "ADMIN_JWT_SECRET": None,
        "ADMIN_AUTH_MODE": "hybrid",
        "NOTIFICATIONS_ENABLED": False,
        "RESEND_API_KEY": None,
        "OPS_ALERT_EMAIL": None,
        "REWARD_POINTS_PER_CORRECT": 10,
        "REWARD_POINTS_THRESHOLD": 500,
        "REWARD_AWARD_COOLDOWN_DAYS": 30,
    }
    for key, value in overrides.items():
        monkeypatch.setattr(settings, key, value)
    yield settings


@pytest.fixture(scope="function", autouse=True)
def fresh_providers(test_settings):
    """Provider singletons are rebuilt from each test's settings."""
    from mcqprep.features.fulfillment.service import close_providers

    close_providers()
    yield
    close_providers()


@pytest.fixture(scope="function", autouse=True)
def stripe_subscriptions(monkeypatch):
    """
    Stripe's current subscription state, keyed by subscription id.

    stripe.Subscription.retrieve answers from this dict; unknown ids raise
    InvalidRequestError the way the API does.
    """
    import stripe

    store = {}

    def _retrieve(subscription_id, **kwargs):
        if subscription_id not in store:
            raise stripe.InvalidRequestError(f"No such subscription: '{subscription_id}'", "id")
        return store[subscription_id]

    monkeypatch.setattr(stripe.Subscription, "retrieve", _retrieve)
    return store


@pytest.fixture(scope="function", autouse=True)
def clear_metrics():
    from mcqprep.core.metrics import METRICS

    METRICS.reset()
    yield


@pytest.fixture(scope="function", autouse=True)
def tiers(db):
    """Seed the tier catalog. Returns {name: tier_id}."""
    from mcqprep.core.database import get_db_session, subscription_tiers

    rows = [
        {"name": "1 Month", "price": Decimal("9.99"), "currency": "USD", "duration_in_months": 1,
         "stripe_price_id": "price_1month", "paypal_plan_id": "P-1MONTH"},
        {"name": "3 Months", "price": Decimal("24.99"), "currency": "USD", "duration_in_months": 3,
         "stripe_price_id": "price_3month", "paypal_plan_id": "P-3MONTH"},
        {"name": "Monthly Basic", "price": Decimal("0"), "currency": "USD", "duration_in_months": 1,
         "stripe_price_id": None, "paypal_plan_id": None},
        {"name": "3-Day Trial", "price": Decimal("0"), "currency": "USD", "duration_in_months": 0,
         "stripe_price_id": None, "paypal_plan_id": None},
    ]
    ids = {}
    with get_db_session() as session:
        for row in rows:
            result = session.execute(insert(subscription_tiers).values(is_active=True, **row))
            ids[row["name"]] = result.inserted_primary_key[0]
    return ids


@pytest.fixture
def make_user():
    from mcqprep.features.identity.service import LocalIdentityDirectory

    directory = LocalIdentityDirectory()

    def _make(user_id="user_alice", email=None, first_name="Alice", last_name="Smith"):
        return directory.create_user(
            email or f"{user_id}@example.com",
            first_name=first_name,
            last_name=last_name,
            user_id=user_id,
        )

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def daily_question(db):
    """Today's question; the correct option is 'B'."""
    from mcqprep.core.database import get_db_session, daily_questions
    from mcqprep.core.timeutil import utc_now

    today = utc_now().date()
    with get_db_session() as session:
        result = session.execute(
            insert(daily_questions).values(
                mcq_id="mcq-101",
                question_text="Which vitamin deficiency causes scurvy?",
                options={"A": "Vitamin A", "B": "Vitamin C", "C": "Vitamin D", "D": "Vitamin K"},
                correct_option="B",
                scheduled_for=today,
            )
        )
        question_id = result.inserted_primary_key[0]
    return {"id": question_id, "scheduled_for": today}


@pytest.fixture
def set_points():
    """Put a user's reward ledger at a given total (and optional last award)."""
    from mcqprep.core.database import get_db_session, reward_ledger
    from mcqprep.core.timeutil import utc_now

    def _set(user_id: str, total_points: int, last_award_at=None):
        with get_db_session() as session:
            session.execute(
                insert(reward_ledger).values(
                    user_id=user_id,
                    total_points=total_points,
                    last_award_at=last_award_at,
                    updated_at=utc_now(),
                )
            )

    return _set


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": "test-admin-key"}


@pytest.fixture
def sign_stripe(test_settings):
    """Build a valid stripe-signature header for a raw body."""
    import hashlib
    import hmac
    import time

    def _sign(body: bytes, secret=None, timestamp=None) -> str:
        ts = timestamp or int(time.time())
        signed = f"{ts}.{body.decode('utf-8')}".encode("utf-8")
        digest = hmac.new((secret or test_settings.STRIPE_WEBHOOK_SECRET).encode("utf-8"), signed, hashlib.sha256)
        return f"t={ts},v1={digest.hexdigest()}"

    return _sign


PAYPAL_SIGNATURE_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-360caa42",
    "paypal-transmission-id": "b2384410-f8d2-11ee-9f5a-0b7b5b9e0c31",
    "paypal-transmission-sig": "c2lnbmF0dXJl",
    "paypal-transmission-time": "2026-03-01T12:00:00Z",
}


@pytest.fixture
def paypal_api(test_settings):
    """
    PayPalProvider over httpx.MockTransport.

    Returns a factory: (subscription json, verification status, activate status)
    -> (provider, list of requests seen).
    """
    import httpx
    from mcqprep.features.providers.paypal_provider import PayPalProvider

    def _make(subscription=None, verification="SUCCESS", activate_status=204):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            path = request.url.path
            if path == "/v1/oauth2/token":
                return httpx.Response(200, json={"access_token": "A21-test-token", "expires_in": 32400})
            if path == "/v1/notifications/verify-webhook-signature":
                return httpx.Response(200, json={"verification_status": verification})
            if path == "/v1/billing/subscriptions" and request.method == "POST":
                return httpx.Response(201, json={
                    "id": "I-NEWSUB",
                    "status": "APPROVAL_PENDING",
                    "links": [
                        {"href": "https://www.sandbox.paypal.com/webapps/billing/subscriptions?ba_token=BA-1",
                         "rel": "approve", "method": "GET"},
                        {"href": "https://api-m.sandbox.paypal.com/v1/billing/subscriptions/I-NEWSUB",
                         "rel": "self", "method": "GET"},
                    ],
                })
            if path.endswith("/activate"):
                if activate_status == 422:
                    return httpx.Response(422, json={
                        "name": "UNPROCESSABLE_ENTITY",
                        "details": [{"issue": "SUBSCRIPTION_STATUS_INVALID"}],
                    })
                return httpx.Response(activate_status)
            if path.startswith("/v1/billing/subscriptions/") and subscription is not None:
                return httpx.Response(200, json=subscription)
            return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND", "message": "The specified resource does not exist."})

        return PayPalProvider(transport=httpx.MockTransport(handler)), seen

    return _make


@pytest.fixture
def paypal_headers():
    return dict(PAYPAL_SIGNATURE_HEADERS)
