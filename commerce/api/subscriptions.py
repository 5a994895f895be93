"""
Subscription API routes.

Surface:
- GET  /api/subscriptions/tiers: Tier catalog
- GET  /api/subscriptions/me: Current subscription (null when on the free tier)
- GET  /api/subscriptions/me/tier: Resolved tier
- GET  /api/subscriptions/me/features: Enabled features of the resolved tier
- POST /api/subscriptions/checkout: Create gateway checkout session
- POST /api/subscriptions/change-tier: Upgrade / downgrade
- POST /api/subscriptions/cancel: Cancel now or at period end
- POST /api/subscriptions/receipts/verify: Verify an App Store / Play receipt
- POST /api/subscriptions/webhooks/stripe: Stripe webhooks
- POST /api/subscriptions/webhooks/google: Play RTDN (Pub/Sub push)
- POST /api/subscriptions/webhooks/apple: App Store Server Notifications v2
"""
from typing import Any, Dict, List, Literal, Optional, Union

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from commerce.core.auth import get_current_user_id
from commerce.core.errors import MalformedEventError
from commerce.features.billing.service import BillingService
from commerce.features.webhooks.service import ReconciliationOutcome
from commerce.models.subscription import Subscription
from commerce.models.tier import Tier


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def get_billing_service(request: Request) -> BillingService:
    return request.app.state.services.billing


class TierResponse(BaseModel):
    id: int
    slug: str
    name: str
    monthly_price: int
    currency: str
    features: Dict[str, Union[bool, int]]

    @classmethod
    def from_tier(cls, tier: Tier) -> "TierResponse":
        return cls(
            id=tier.id,
            slug=tier.slug,
            name=tier.name,
            monthly_price=tier.monthly_price,
            currency=tier.currency,
            features=dict(tier.features),
        )


class SubscriptionResponse(BaseModel):
    id: str
    tier_id: int
    status: str
    current_period_start: str  # ISO8601
    current_period_end: str  # ISO8601
    cancel_at_period_end: bool
    canceled_at: Optional[str] = None
    provider: str

    @classmethod
    def from_subscription(cls, sub: Subscription) -> "SubscriptionResponse":
        return cls(
            id=sub.id,
            tier_id=sub.tier_id,
            status=sub.status.value,
            current_period_start=sub.current_period_start.isoformat(),
            current_period_end=sub.current_period_end.isoformat(),
            cancel_at_period_end=sub.cancel_at_period_end,
            canceled_at=sub.canceled_at.isoformat() if sub.canceled_at else None,
            provider=sub.provider.value,
        )


class MySubscriptionResponse(BaseModel):
    subscription: Optional[SubscriptionResponse]
    tier: TierResponse


class FeaturesResponse(BaseModel):
    tier: str
    features: List[str]


class CheckoutRequest(BaseModel):
    tier_id: int
    success_url: str
    cancel_url: str


class CheckoutResponse(BaseModel):
    url: str


class ChangeTierRequest(BaseModel):
    tier_id: int


class CancelRequest(BaseModel):
    immediately: bool = False


class TransitionResponse(BaseModel):
    applied: bool
    subscription: Optional[SubscriptionResponse]


class ReceiptRequest(BaseModel):
    platform: Literal["ios", "android"]
    receipt: str = Field(min_length=1)
    product_id: str = Field(min_length=1)


class ReceiptResponse(BaseModel):
    valid: bool
    status: str
    subscription: Optional[SubscriptionResponse]


class WebhookResponse(BaseModel):
    received: bool = True
    event_type: Optional[str] = None
    applied: bool = False
    noop: bool = True


def _transition(outcome) -> TransitionResponse:
    sub = outcome.subscription
    return TransitionResponse(
        applied=outcome.applied,
        subscription=SubscriptionResponse.from_subscription(sub) if sub else None,
    )


def _webhook(result: Optional[ReconciliationOutcome]) -> WebhookResponse:
    if result is None:
        return WebhookResponse()
    return WebhookResponse(event_type=result.kind, applied=result.applied, noop=result.noop)


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        raise MalformedEventError("Request body must be JSON") from e
    if not isinstance(body, dict):
        raise MalformedEventError("Request body must be a JSON object")
    return body


@router.get("/tiers", response_model=List[TierResponse])
def list_tiers(billing: BillingService = Depends(get_billing_service)):
    return [TierResponse.from_tier(t) for t in billing.list_tiers()]


@router.get("/me", response_model=MySubscriptionResponse)
def get_my_subscription(
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing_service),
):
    """
    Current subscription and resolved tier.

    `subscription` is null on the free tier. Storage errors surface as 503
    here; tier resolution itself never fails.
    """
    sub = billing.get_user_subscription(user_id)
    tier = billing.get_user_tier(user_id)
    return MySubscriptionResponse(
        subscription=SubscriptionResponse.from_subscription(sub) if sub else None,
        tier=TierResponse.from_tier(tier),
    )


@router.get("/me/tier", response_model=TierResponse)
def get_my_tier(
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing_service),
):
    return TierResponse.from_tier(billing.get_user_tier(user_id))


@router.get("/me/features", response_model=FeaturesResponse)
def get_my_features(
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing_service),
):
    tier = billing.get_user_tier(user_id)
    return FeaturesResponse(tier=tier.slug, features=sorted(billing.get_user_features(user_id)))


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    body: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing_service),
):
    """
    Create a checkout session.

    Errors:
        400: Unknown or free tier
        502: Gateway error
        503: Billing disabled (STRIPE_SECRET_KEY not set)
    """
    url = billing.create_checkout_session(user_id, body.tier_id, body.success_url, body.cancel_url)
    return CheckoutResponse(url=url)


@router.post("/change-tier", response_model=TransitionResponse)
def change_tier(
    body: ChangeTierRequest,
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing_service),
):
    return _transition(billing.change_subscription_tier(user_id, body.tier_id))


@router.post("/cancel", response_model=TransitionResponse)
def cancel(
    body: CancelRequest,
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing_service),
):
    return _transition(billing.cancel_subscription(user_id, immediately=body.immediately))


@router.post("/receipts/verify", response_model=ReceiptResponse)
def verify_receipt(
    body: ReceiptRequest,
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing_service),
):
    result = billing.verify_mobile_receipt(user_id, body.platform, body.receipt, body.product_id)
    sub = result.subscription
    return ReceiptResponse(
        valid=result.valid,
        status=result.raw_status,
        subscription=SubscriptionResponse.from_subscription(sub) if sub else None,
    )


@router.post("/webhooks/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    billing: BillingService = Depends(get_billing_service),
):
    """
    Stripe webhook receiver.

    Reads the raw body (required for signature verification).

    Errors:
        400: Invalid signature or malformed payload (not retried)
        404: Subscription not known yet (retried by Stripe)
        503: Store unavailable (retried by Stripe)
    """
    body = await request.body()
    return _webhook(await run_in_threadpool(billing.handle_provider_webhook, body, stripe_signature))


@router.post("/webhooks/google", response_model=WebhookResponse)
async def google_webhook(request: Request, billing: BillingService = Depends(get_billing_service)):
    envelope = await _json_body(request)
    return _webhook(await run_in_threadpool(billing.handle_google_notification, envelope))


@router.post("/webhooks/apple", response_model=WebhookResponse)
async def apple_webhook(request: Request, billing: BillingService = Depends(get_billing_service)):
    payload = await _json_body(request)
    return _webhook(await run_in_threadpool(billing.handle_apple_notification, payload))
