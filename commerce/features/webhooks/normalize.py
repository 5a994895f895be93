"""
commerce/features/webhooks/normalize.py

Provider payload adapters.

Each adapter maps one provider's raw payload shape onto the normalized
events in commerce.models.events. Adapters are pure: they never read or
write state. Event types with no subscription effect map to None so the
transport can acknowledge them.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from commerce.core.errors import MalformedEventError
from commerce.features.receipts.verifier import ReceiptVerification
from commerce.models.events import (
    ProviderEvent,
    PurchaseCompleted,
    SubscriptionCanceled,
    SubscriptionRenewed,
    SubscriptionUpdated,
)
from commerce.models.subscription import Provider


def _epoch(value: Any, divisor: int) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / divisor, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise MalformedEventError(f"Invalid timestamp: {value!r}") from e


def _ts(value: Any) -> Optional[datetime]:
    return _epoch(value, 1)


def _ms(value: Any) -> Optional[datetime]:
    return _epoch(value, 1000)


def _build(cls, **fields) -> ProviderEvent:
    try:
        return cls(**fields)
    except PydanticValidationError as e:
        raise MalformedEventError(f"Malformed {cls.__name__}: {e.errors()[0].get('msg')}") from e


# Stripe

STRIPE_RENEWAL_TYPES = {"invoice.paid", "invoice.payment_succeeded"}


def _stripe_invoice_subscription(invoice: Mapping[str, Any]) -> Optional[str]:
    if invoice.get("subscription"):
        sub = invoice["subscription"]
        return sub.get("id") if isinstance(sub, dict) else sub
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return details.get("subscription")


def _stripe_subscription_period_end(sub: Mapping[str, Any]) -> Optional[datetime]:
    if sub.get("current_period_end"):
        return _ts(sub["current_period_end"])
    items = (sub.get("items") or {}).get("data") or []
    ends = [i.get("current_period_end") for i in items if i.get("current_period_end")]
    return max(_ts(e) for e in ends) if ends else None


def _stripe_price_id(sub: Mapping[str, Any]) -> Optional[str]:
    items = (sub.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id") if isinstance(price, dict) else price


def normalize_stripe_event(
    event: Mapping[str, Any],
    price_tiers: Optional[Mapping[str, int]] = None,
) -> Optional[ProviderEvent]:
    """
    Map a verified Stripe event onto a normalized event.

    checkout.session.completed          -> PurchaseCompleted (metadata user_id, tier_id)
    invoice.paid / payment_succeeded    -> SubscriptionRenewed (latest line period end)
    customer.subscription.updated       -> SubscriptionUpdated
    customer.subscription.deleted       -> SubscriptionCanceled
    """
    try:
        event_type = event["type"]
        obj = event["data"]["object"]
    except (KeyError, TypeError) as e:
        raise MalformedEventError("Stripe event missing type or data.object") from e
    event_id = event.get("id")

    if event_type == "checkout.session.completed":
        if obj.get("mode") not in (None, "subscription") or not obj.get("subscription"):
            return None
        metadata = obj.get("metadata") or {}
        try:
            tier_id = int(metadata.get("tier_id"))
        except (TypeError, ValueError) as e:
            raise MalformedEventError("checkout.session.completed missing tier_id metadata") from e
        return _build(
            PurchaseCompleted,
            provider=Provider.STRIPE,
            event_id=event_id,
            user_id=metadata.get("user_id") or obj.get("client_reference_id") or "",
            tier_id=tier_id,
            provider_subscription_id=obj["subscription"],
            provider_customer_id=obj.get("customer"),
        )

    if event_type in STRIPE_RENEWAL_TYPES:
        subscription_id = _stripe_invoice_subscription(obj)
        if not subscription_id:
            return None
        lines = (obj.get("lines") or {}).get("data") or []
        ends = [(line.get("period") or {}).get("end") for line in lines]
        ends = [e for e in ends if e]
        if not ends:
            raise MalformedEventError("Invoice has no line period")
        return _build(
            SubscriptionRenewed,
            provider=Provider.STRIPE,
            event_id=event_id,
            provider_subscription_id=subscription_id,
            new_period_end=max(_ts(e) for e in ends),
        )

    if event_type == "customer.subscription.updated":
        price_id = _stripe_price_id(obj)
        tier_id = None
        if (obj.get("metadata") or {}).get("tier_id"):
            try:
                tier_id = int(obj["metadata"]["tier_id"])
            except (TypeError, ValueError) as e:
                raise MalformedEventError("Subscription metadata tier_id is not an integer") from e
        elif price_id and price_tiers:
            tier_id = price_tiers.get(price_id)
        return _build(
            SubscriptionUpdated,
            provider=Provider.STRIPE,
            event_id=event_id,
            provider_subscription_id=obj.get("id") or "",
            raw_status=obj.get("status") or "",
            cancel_at_period_end=obj.get("cancel_at_period_end"),
            tier_id=tier_id,
            period_end=_stripe_subscription_period_end(obj),
        )

    if event_type == "customer.subscription.deleted":
        return _build(
            SubscriptionCanceled,
            provider=Provider.STRIPE,
            event_id=event_id,
            provider_subscription_id=obj.get("id") or "",
        )

    return None


# Google Play real-time developer notifications

GOOGLE_RECOVERED = 1
GOOGLE_RENEWED = 2
GOOGLE_CANCELED = 3
GOOGLE_PURCHASED = 4
GOOGLE_ON_HOLD = 5
GOOGLE_IN_GRACE_PERIOD = 6
GOOGLE_RESTARTED = 7
GOOGLE_PRICE_CHANGE_CONFIRMED = 8
GOOGLE_DEFERRED = 9
GOOGLE_PAUSED = 10
GOOGLE_PAUSE_SCHEDULE_CHANGED = 11
GOOGLE_REVOKED = 12
GOOGLE_EXPIRED = 13

# Types whose effect depends on the store's current expiry
GOOGLE_TYPES_REQUIRING_VERIFICATION = {
    GOOGLE_RECOVERED,
    GOOGLE_RENEWED,
    GOOGLE_PURCHASED,
    GOOGLE_RESTARTED,
    GOOGLE_PRICE_CHANGE_CONFIRMED,
    GOOGLE_DEFERRED,
}


@dataclass(frozen=True)
class GoogleNotification:
    notification_type: int
    purchase_token: str
    product_id: str
    message_id: Optional[str] = None
    package_name: Optional[str] = None

    @property
    def requires_verification(self) -> bool:
        return self.notification_type in GOOGLE_TYPES_REQUIRING_VERIFICATION


def decode_google_notification(envelope: Mapping[str, Any]) -> Optional[GoogleNotification]:
    """Unwrap a Pub/Sub push envelope. Test and one-time-product notifications return None."""
    try:
        message = envelope["message"]
        decoded = json.loads(base64.b64decode(message["data"]).decode("utf-8"))
    except (KeyError, TypeError, ValueError, binascii.Error) as e:
        raise MalformedEventError("Invalid Pub/Sub envelope") from e

    notification = decoded.get("subscriptionNotification")
    if notification is None:
        return None
    try:
        return GoogleNotification(
            notification_type=int(notification["notificationType"]),
            purchase_token=notification["purchaseToken"],
            product_id=notification["subscriptionId"],
            message_id=message.get("messageId") or message.get("message_id"),
            package_name=decoded.get("packageName"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedEventError("Invalid subscription notification") from e


def normalize_google_notification(
    notification: GoogleNotification,
    verification: Optional[ReceiptVerification] = None,
) -> Optional[ProviderEvent]:
    kind = notification.notification_type
    common = {
        "provider": Provider.ANDROID,
        "event_id": notification.message_id,
        "provider_subscription_id": notification.purchase_token,
    }

    if notification.requires_verification:
        if verification is None or verification.expiry_time is None:
            raise MalformedEventError(f"Notification type {kind} requires a verified expiry")
        if kind == GOOGLE_RENEWED:
            return _build(SubscriptionRenewed, new_period_end=verification.expiry_time, **common)
        # Purchased, recovered, restarted: active again and renewing
        return _build(
            SubscriptionUpdated,
            raw_status="active" if verification.valid else verification.raw_status,
            cancel_at_period_end=False,
            period_end=verification.expiry_time,
            **common,
        )

    if kind == GOOGLE_CANCELED:
        return _build(SubscriptionUpdated, raw_status="active", cancel_at_period_end=True, **common)
    if kind == GOOGLE_ON_HOLD:
        return _build(SubscriptionUpdated, raw_status="on_hold", **common)
    if kind == GOOGLE_PAUSED:
        return _build(SubscriptionUpdated, raw_status="paused", **common)
    if kind in (GOOGLE_REVOKED, GOOGLE_EXPIRED):
        return _build(SubscriptionCanceled, **common)
    return None


# App Store Server Notifications v2

APPLE_RENEWAL_TYPES = {"DID_RENEW"}
APPLE_TERMINAL_TYPES = {"EXPIRED", "REVOKE", "REFUND", "GRACE_PERIOD_EXPIRED"}


def normalize_apple_notification(
    notification: Mapping[str, Any],
    product_tiers: Optional[Mapping[str, int]] = None,
) -> Optional[ProviderEvent]:
    """Map a decoded notification (transaction payload under data.transaction)."""
    notification_type = notification.get("notificationType")
    subtype = notification.get("subtype")
    transaction: Dict[str, Any] = (notification.get("data") or {}).get("transaction") or {}
    original_id = transaction.get("originalTransactionId")
    if not notification_type:
        raise MalformedEventError("Notification missing notificationType")
    if not original_id:
        if notification_type == "TEST":
            return None
        raise MalformedEventError("Notification missing originalTransactionId")

    common = {
        "provider": Provider.IOS,
        "event_id": notification.get("notificationUUID"),
        "provider_subscription_id": str(original_id),
    }
    expires = _ms(transaction.get("expiresDate"))
    product_tier = (product_tiers or {}).get(transaction.get("productId"))

    if notification_type == "SUBSCRIBED":
        if subtype == "INITIAL_BUY" and transaction.get("appAccountToken") and product_tier:
            return _build(
                PurchaseCompleted,
                user_id=transaction["appAccountToken"],
                tier_id=product_tier,
                period_end=expires,
                **common,
            )
        if expires is None:
            return None
        return _build(SubscriptionUpdated, raw_status="active", cancel_at_period_end=False,
                      period_end=expires, **common)

    if notification_type in APPLE_RENEWAL_TYPES:
        if expires is None:
            raise MalformedEventError("DID_RENEW without expiresDate")
        return _build(SubscriptionRenewed, new_period_end=expires, **common)

    if notification_type == "DID_CHANGE_RENEWAL_STATUS":
        if subtype == "AUTO_RENEW_DISABLED":
            return _build(SubscriptionUpdated, raw_status="active", cancel_at_period_end=True, **common)
        if subtype == "AUTO_RENEW_ENABLED":
            return _build(SubscriptionUpdated, raw_status="active", cancel_at_period_end=False, **common)
        return None

    if notification_type == "DID_CHANGE_RENEWAL_PREF" and subtype == "UPGRADE" and product_tier:
        return _build(SubscriptionUpdated, raw_status="active", tier_id=product_tier, **common)

    if notification_type in APPLE_TERMINAL_TYPES:
        return _build(SubscriptionCanceled, **common)

    return None


# Receipt verification

def normalize_receipt(
    verification: ReceiptVerification,
    *,
    user_id: str,
    provider: Provider,
    tier_id: int,
    exists: bool,
) -> ProviderEvent:
    """
    Receipt flows converge with notifications: a purchase when no record
    exists for the store id yet, otherwise a renewal to the verified expiry.
    """
    if not verification.provider_subscription_id or verification.expiry_time is None:
        raise MalformedEventError("Verified receipt is missing its subscription id or expiry")
    common = {"provider": provider, "provider_subscription_id": verification.provider_subscription_id}
    if exists:
        return _build(SubscriptionRenewed, new_period_end=verification.expiry_time, **common)
    return _build(
        PurchaseCompleted,
        user_id=user_id,
        tier_id=tier_id,
        period_end=verification.expiry_time,
        **common,
    )
