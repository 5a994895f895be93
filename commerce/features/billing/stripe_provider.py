"""
Stripe payment gateway.

Implements PaymentGateway using the Stripe SDK. Checkout uses a configured
price id per tier when present, otherwise inline price_data built from the
tier's minor-unit price. Checkout sessions carry user_id and tier_id in both
session and subscription metadata so webhooks can be attributed.
"""
import json
from typing import Any, Dict, Mapping, Optional

import stripe

from commerce.core.errors import InvalidSignatureError, MalformedEventError
from commerce.features.billing.provider import GatewayError
from commerce.models.tier import Tier


class StripeGateway:
    """Stripe implementation of PaymentGateway."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: Optional[str] = None,
        *,
        price_ids: Optional[Mapping[int, str]] = None,
        currency: str = "usd",
    ):
        if not secret_key:
            raise GatewayError("STRIPE_SECRET_KEY not configured")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.price_ids: Dict[int, str] = {k: v for k, v in (price_ids or {}).items() if v}
        self.currency = currency
        stripe.api_key = secret_key

    @property
    def price_tiers(self) -> Dict[str, int]:
        """Reverse map price id -> tier id, for subscription.updated events."""
        return {price: tier_id for tier_id, price in self.price_ids.items()}

    def _line_item(self, tier: Tier) -> Dict[str, Any]:
        price_id = self.price_ids.get(tier.id)
        if price_id:
            return {"price": price_id, "quantity": 1}
        return {
            "price_data": {
                "currency": tier.currency or self.currency,
                "product_data": {"name": f"{tier.name} Subscription"},
                "unit_amount": tier.monthly_price,
                "recurring": {"interval": "month"},
            },
            "quantity": 1,
        }

    def create_checkout_session(self, user_id: str, tier: Tier, success_url: str, cancel_url: str) -> str:
        metadata = {"user_id": user_id, "tier_id": str(tier.id)}
        try:
            session = stripe.checkout.Session.create(
                payment_method_types=["card"],
                line_items=[self._line_item(tier)],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=user_id,
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
            return session.url
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe checkout session creation failed: {e}") from e

    def update_subscription_tier(self, provider_subscription_id: str, tier: Tier) -> None:
        price_id = self.price_ids.get(tier.id)
        if not price_id:
            raise GatewayError(f"No Stripe price configured for tier: {tier.slug}")
        try:
            subscription = stripe.Subscription.retrieve(provider_subscription_id)
            item_id = subscription["items"]["data"][0]["id"]
            stripe.Subscription.modify(
                provider_subscription_id,
                items=[{"id": item_id, "price": price_id}],
                proration_behavior="create_prorations",
                metadata={"tier_id": str(tier.id)},
            )
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe subscription update failed: {e}") from e

    def cancel_subscription(self, provider_subscription_id: str, at_period_end: bool) -> None:
        try:
            if at_period_end:
                stripe.Subscription.modify(provider_subscription_id, cancel_at_period_end=True)
            else:
                stripe.Subscription.cancel(provider_subscription_id)
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe subscription cancel failed: {e}") from e

    def construct_event(self, payload: bytes, signature_header: str) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise GatewayError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature_header:
            raise InvalidSignatureError("Missing stripe-signature header")

        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            raise MalformedEventError("Invalid payload encoding") from e
        try:
            stripe.WebhookSignature.verify_header(
                text, signature_header, self.webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            raise InvalidSignatureError(f"Invalid signature: {e}") from e

        try:
            event = json.loads(text)
        except ValueError as e:
            raise MalformedEventError(f"Invalid payload: {e}") from e
        if not isinstance(event, dict):
            raise MalformedEventError("Invalid payload: expected a JSON object")
        return event
