"""
Billing API routes.

- POST /api/billing/webhook/{stripe,paypal}: provider webhooks (raw body)
- POST /api/billing/signup: create user + pay with a Stripe payment method
- POST /api/billing/stripe/subscribe: existing user pays with a payment method
- POST /api/billing/stripe/checkout, GET /api/billing/stripe/fulfill,
  GET /api/billing/stripe/cancel: hosted checkout round trip
- POST /api/billing/paypal/subscriptions, POST /api/billing/paypal/capture
- POST /api/billing/trial
- GET  /api/billing/status

Errors are AppError subclasses rendered by the app-level handlers.
"""
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from mcqprep.core.auth import get_current_user_id
from mcqprep.core.config import settings
from mcqprep.core.errors import AppError, ReconciliationGap
from mcqprep.features.fulfillment import service as fulfillment
from mcqprep.features.subscriptions.grants import activate_trial
from mcqprep.features.subscriptions.models import ProviderKind

logger = logging.getLogger("mcqprep")

router = APIRouter(prefix="/api/billing", tags=["billing"])


class SignupRequest(BaseModel):
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    tier_id: int
    payment_method_id: str


class PaymentMethodRequest(BaseModel):
    tier_id: int
    payment_method_id: str


class CheckoutRequest(BaseModel):
    tier_id: int


class CheckoutResponse(BaseModel):
    url: str
    reference_id: str


class PayPalCaptureRequest(BaseModel):
    subscription_id: str
    tier_id: int


class TrialRequest(BaseModel):
    tier_name: Optional[str] = None


async def _handle_webhook(kind: ProviderKind, request: Request):
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)
    result = await run_in_threadpool(fulfillment.process_webhook, kind, headers, body)
    return result.to_dict()


@router.post("/webhook/stripe")
async def stripe_webhook(request: Request):
    """
    Stripe webhook.

    200 only after the ledger commit. 400 on a bad signature or payload,
    5xx on transient failures so Stripe redelivers.
    """
    return await _handle_webhook(ProviderKind.STRIPE, request)


@router.post("/webhook/paypal")
async def paypal_webhook(request: Request):
    """PayPal webhook; same status semantics as the Stripe endpoint."""
    return await _handle_webhook(ProviderKind.PAYPAL, request)


@router.post("/signup")
def signup(body: SignupRequest):
    result = fulfillment.signup_and_subscribe(
        email=body.email,
        tier_id=body.tier_id,
        payment_method_id=body.payment_method_id,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return result.to_dict()


@router.post("/stripe/subscribe")
def stripe_subscribe(body: PaymentMethodRequest, user_id: str = Depends(get_current_user_id)):
    return fulfillment.subscribe_with_payment_method(user_id, body.tier_id, body.payment_method_id).to_dict()


@router.post("/stripe/checkout", response_model=CheckoutResponse)
def stripe_checkout(body: CheckoutRequest, user_id: str = Depends(get_current_user_id)):
    start = fulfillment.start_stripe_checkout(user_id, body.tier_id)
    return {"url": start.redirect_url, "reference_id": start.reference_id}


def _subscriptions_page(**params) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/user/subscriptions?{urlencode(params)}"


@router.get("/stripe/fulfill")
def stripe_fulfill(session_id: str = Query(...)):
    """
    Success redirect from Stripe checkout.

    Always answers 303 back to the subscriptions page; the webhook for the
    same session is an idempotent refresh if it lands later.
    """
    try:
        result = fulfillment.fulfill_stripe_checkout(session_id)
    except AppError as e:
        logger.warning(
            "billing.fulfill.failed",
            extra={"error_code": e.code, "status": e.status_code},
        )
        if isinstance(e, ReconciliationGap):
            # Paid, entitlement not yet recorded
            return RedirectResponse(_subscriptions_page(status="pending"), status_code=303)
        return RedirectResponse(_subscriptions_page(status="failure", reason=e.code), status_code=303)

    if result.status != "active":
        return RedirectResponse(_subscriptions_page(status="pending"), status_code=303)
    return RedirectResponse(
        _subscriptions_page(status="success", subId=result.provider_subscription_id),
        status_code=303,
    )


@router.get("/stripe/cancel")
def stripe_cancel():
    return RedirectResponse(_subscriptions_page(status="cancelled"), status_code=303)


@router.post("/paypal/subscriptions", response_model=CheckoutResponse)
def paypal_subscription(body: CheckoutRequest, user_id: str = Depends(get_current_user_id)):
    start = fulfillment.start_paypal_checkout(user_id, body.tier_id)
    return {"url": start.redirect_url, "reference_id": start.reference_id}


@router.post("/paypal/capture")
def paypal_capture(body: PayPalCaptureRequest, user_id: str = Depends(get_current_user_id)):
    return fulfillment.capture_paypal_subscription(user_id, body.subscription_id, body.tier_id).to_dict()


@router.post("/trial")
def trial(body: Optional[TrialRequest] = None, user_id: str = Depends(get_current_user_id)):
    result = activate_trial(user_id, body.tier_name if body else None)
    return {
        "status": "active",
        "outcome": result.outcome.value,
        "has_active_subscription": result.has_access,
        "subscription": result.record.to_dict() if result.record else None,
    }


@router.get("/status")
def status(user_id: str = Depends(get_current_user_id)):
    return fulfillment.get_billing_status(user_id)
