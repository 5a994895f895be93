"""
Billing service orchestrator.

Coordinates the tier catalog, subscription state manager, entitlement
resolver, webhook reconciler, payment gateway and receipt verifiers behind
one surface used by the HTTP routes and jobs.

Gateway-backed subscriptions change on the gateway first; local state
follows immediately and converges again when the gateway webhook arrives.
"""
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterator, Mapping, Optional

from commerce.core.errors import (
    ExternalServiceError,
    NoActiveSubscriptionError,
    TierNotFoundError,
    ValidationError,
)
from commerce.features.billing.provider import GatewayError, PaymentGateway
from commerce.features.entitlements.service import EntitlementResolver
from commerce.features.receipts.apple import AppleNotificationDecoder
from commerce.features.receipts.verifier import ReceiptVerifier
from commerce.features.subscriptions.service import SubscriptionStateManager, SweepReport
from commerce.features.tiers.catalog import TierCatalog
from commerce.features.webhooks.ledger import payload_hash
from commerce.features.webhooks.normalize import (
    decode_google_notification,
    normalize_apple_notification,
    normalize_google_notification,
    normalize_receipt,
    normalize_stripe_event,
)
from commerce.features.webhooks.service import ReconciliationOutcome, WebhookReconciler
from commerce.models.subscription import Provider, Subscription
from commerce.models.tier import Tier


logger = logging.getLogger("commerce.billing")

MOBILE_PROVIDERS = {Provider.IOS, Provider.ANDROID}


@dataclass(frozen=True)
class ReceiptResult:
    valid: bool
    subscription: Optional[Subscription]
    raw_status: str
    applied: bool = False


@contextmanager
def _gateway_call(action: str) -> Iterator[None]:
    try:
        yield
    except GatewayError as e:
        logger.error("[billing] gateway call failed", extra={"action": action, "error": str(e)})
        raise ExternalServiceError(f"Payment gateway error during {action}") from e


class BillingService:
    def __init__(
        self,
        catalog: TierCatalog,
        manager: SubscriptionStateManager,
        resolver: EntitlementResolver,
        reconciler: WebhookReconciler,
        *,
        gateway: Optional[PaymentGateway] = None,
        verifiers: Optional[Mapping[Provider, ReceiptVerifier]] = None,
        apple_decoder: Optional[AppleNotificationDecoder] = None,
        sweep_limit: int = 100,
    ):
        self.catalog = catalog
        self.manager = manager
        self.resolver = resolver
        self.reconciler = reconciler
        self.gateway = gateway
        self.verifiers: Dict[Provider, ReceiptVerifier] = dict(verifiers or {})
        self.apple_decoder = apple_decoder
        self.sweep_limit = sweep_limit

    @property
    def billing_enabled(self) -> bool:
        return self.gateway is not None

    def _require_gateway(self) -> PaymentGateway:
        if self.gateway is None:
            raise ExternalServiceError("Payment gateway not configured", code="billing_disabled", status_code=503)
        return self.gateway

    def _paid_tier(self, tier_id: int) -> Tier:
        try:
            tier = self.catalog.get_tier(tier_id)
        except TierNotFoundError as e:
            raise ValidationError(f"Invalid tier id: {tier_id}") from e
        if tier.monthly_price <= 0:
            raise ValidationError("The free tier does not need checkout")
        return tier

    def _product_tiers(self) -> Dict[str, int]:
        return {pid: tier.id for tier in self.catalog.list_tiers() for pid in tier.product_ids}

    # Reads

    def list_tiers(self):
        return self.catalog.list_tiers()

    def get_user_subscription(self, user_id: str) -> Optional[Subscription]:
        return self.manager.get_user_subscription(user_id)

    def get_user_tier(self, user_id: str) -> Tier:
        return self.resolver.resolve_tier(user_id)

    def get_user_features(self, user_id: str) -> FrozenSet[str]:
        return self.resolver.resolve_features(user_id)

    # User-initiated changes

    def create_checkout_session(self, user_id: str, tier_id: int, success_url: str, cancel_url: str) -> str:
        tier = self._paid_tier(tier_id)
        gateway = self._require_gateway()
        with _gateway_call("checkout"):
            url = gateway.create_checkout_session(user_id, tier, success_url, cancel_url)
        logger.info("[billing] checkout session created", extra={"user_id": user_id, "tier_id": tier_id})
        return url

    def change_subscription_tier(self, user_id: str, new_tier_id: int):
        try:
            tier = self.catalog.get_tier(new_tier_id)
        except TierNotFoundError as e:
            raise ValidationError(f"Invalid tier id: {new_tier_id}") from e

        current = self.manager.get_user_subscription(user_id)
        if current is not None and current.tier_id != new_tier_id:
            if current.provider in MOBILE_PROVIDERS:
                raise ValidationError("Store subscriptions change tier through the app store")
            if current.provider == Provider.STRIPE and current.provider_subscription_id:
                if tier.monthly_price <= 0:
                    raise ValidationError("Cancel the subscription to return to the free tier")
                gateway = self._require_gateway()
                with _gateway_call("change_tier"):
                    gateway.update_subscription_tier(current.provider_subscription_id, tier)

        return self.manager.change_tier(user_id, new_tier_id)

    def cancel_subscription(self, user_id: str, immediately: bool = False):
        current = self.manager.get_user_subscription(user_id)
        if current is None:
            raise NoActiveSubscriptionError("No active subscription found")
        if current.provider == Provider.STRIPE and current.provider_subscription_id:
            gateway = self._require_gateway()
            with _gateway_call("cancel"):
                gateway.cancel_subscription(current.provider_subscription_id, at_period_end=not immediately)
        return self.manager.cancel_subscription(user_id, immediately=immediately)

    # Provider notifications

    def handle_provider_webhook(self, raw_payload: bytes, signature_header: Optional[str]) -> Optional[ReconciliationOutcome]:
        """
        Verify and apply a Stripe webhook.

        Returns None for event types with no subscription effect.
        Raises InvalidSignatureError (bad signature) or MalformedEventError
        (bad payload); anything else is a processing error.
        """
        gateway = self._require_gateway()
        with _gateway_call("construct_event"):
            event = gateway.construct_event(raw_payload, signature_header or "")

        normalized = normalize_stripe_event(event, getattr(gateway, "price_tiers", None))
        if normalized is None:
            logger.info(
                "[billing] webhook event ignored",
                extra={"event_type": event.get("type"), "event_id": event.get("id")},
            )
            return None
        return self.reconciler.process(normalized, event_type=event["type"], raw_hash=payload_hash(raw_payload))

    def handle_google_notification(self, envelope: Mapping[str, Any]) -> Optional[ReconciliationOutcome]:
        notification = decode_google_notification(envelope)
        if notification is None:
            logger.info("[billing] google notification ignored")
            return None

        verification = None
        if notification.requires_verification:
            verifier = self._verifier(Provider.ANDROID)
            verification = verifier.verify(notification.purchase_token, notification.product_id)

        event = normalize_google_notification(notification, verification)
        if event is None:
            logger.info(
                "[billing] google notification ignored",
                extra={"event_type": notification.notification_type},
            )
            return None
        raw = json.dumps(envelope, sort_keys=True, default=str).encode("utf-8")
        return self.reconciler.process(
            event,
            event_type=f"google.{notification.notification_type}",
            raw_hash=payload_hash(raw),
        )

    def handle_apple_notification(self, payload: Mapping[str, Any]) -> Optional[ReconciliationOutcome]:
        if self.apple_decoder is None:
            raise ExternalServiceError("App Store notifications not configured")
        notification = self.apple_decoder.decode_notification(dict(payload))
        event = normalize_apple_notification(notification, self._product_tiers())
        event_type = ".".join(p for p in (notification.get("notificationType"), notification.get("subtype")) if p)
        if event is None:
            logger.info("[billing] apple notification ignored", extra={"event_type": event_type})
            return None
        raw = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return self.reconciler.process(event, event_type=f"apple.{event_type}", raw_hash=payload_hash(raw))

    # Receipts

    def _verifier(self, provider: Provider) -> ReceiptVerifier:
        verifier = self.verifiers.get(provider)
        if verifier is None:
            raise ExternalServiceError(f"Receipt verification not configured for {provider.value}")
        return verifier

    def verify_mobile_receipt(self, user_id: str, platform: str, token: str, product_id: str) -> ReceiptResult:
        try:
            provider = Provider(platform)
        except ValueError as e:
            raise ValidationError(f"Unsupported platform: {platform}") from e
        if provider not in MOBILE_PROVIDERS:
            raise ValidationError(f"Unsupported platform: {platform}")
        if not token:
            raise ValidationError("Receipt token is required")

        tier = self.catalog.tier_for_product(product_id)
        verification = self._verifier(provider).verify(token, product_id)
        if not verification.valid:
            logger.info(
                "[billing] receipt not valid",
                extra={"user_id": user_id, "provider": provider.value, "raw_status": verification.raw_status},
            )
            return ReceiptResult(valid=False, subscription=None, raw_status=verification.raw_status)

        existing = None
        if verification.provider_subscription_id:
            existing = self.manager.find_by_provider_id(provider, verification.provider_subscription_id)
        if existing is not None and existing.user_id != user_id:
            raise ValidationError("Receipt belongs to another account")

        event = normalize_receipt(
            verification,
            user_id=user_id,
            provider=provider,
            tier_id=tier.id,
            exists=existing is not None,
        )
        outcome = self.reconciler.apply(event)
        return ReceiptResult(
            valid=True,
            subscription=outcome.subscription,
            raw_status=verification.raw_status,
            applied=outcome.applied,
        )

    # Jobs

    def run_period_end_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        return self.manager.process_period_end_sweep(now=now, limit=self.sweep_limit)
