"""
Tests for provider payload normalization (Stripe, Google Play RTDN, App Store).
"""
import base64
import json
from datetime import datetime, timezone

import pytest

from commerce.core.errors import MalformedEventError
from commerce.features.receipts.verifier import ReceiptVerification
from commerce.features.webhooks.normalize import (
    GOOGLE_CANCELED,
    GOOGLE_EXPIRED,
    GOOGLE_IN_GRACE_PERIOD,
    GOOGLE_ON_HOLD,
    GOOGLE_PAUSE_SCHEDULE_CHANGED,
    GOOGLE_PURCHASED,
    GOOGLE_RENEWED,
    decode_google_notification,
    normalize_apple_notification,
    normalize_google_notification,
    normalize_receipt,
    normalize_stripe_event,
)
from commerce.models.events import (
    PurchaseCompleted,
    SubscriptionCanceled,
    SubscriptionRenewed,
    SubscriptionUpdated,
    provider_event_adapter,
)
from commerce.models.subscription import Provider


PERIOD_END = 1775000000
PERIOD_END_DT = datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)


def stripe_event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


# Stripe

def test_checkout_completed_becomes_purchase():
    event = normalize_stripe_event(stripe_event(
        "checkout.session.completed",
        {
            "mode": "subscription",
            "subscription": "sub_1",
            "customer": "cus_1",
            "metadata": {"user_id": "user_1", "tier_id": "2"},
        },
    ))
    assert isinstance(event, PurchaseCompleted)
    assert event.user_id == "user_1"
    assert event.tier_id == 2
    assert event.provider == Provider.STRIPE
    assert event.provider_subscription_id == "sub_1"
    assert event.provider_customer_id == "cus_1"
    assert event.event_id == "evt_1"


def test_checkout_falls_back_to_client_reference_id():
    event = normalize_stripe_event(stripe_event(
        "checkout.session.completed",
        {"subscription": "sub_1", "client_reference_id": "user_9", "metadata": {"tier_id": "3"}},
    ))
    assert event.user_id == "user_9"


def test_checkout_without_user_is_malformed():
    with pytest.raises(MalformedEventError):
        normalize_stripe_event(stripe_event(
            "checkout.session.completed",
            {"subscription": "sub_1", "metadata": {"tier_id": "2"}},
        ))


def test_checkout_without_tier_is_malformed():
    with pytest.raises(MalformedEventError):
        normalize_stripe_event(stripe_event(
            "checkout.session.completed",
            {"subscription": "sub_1", "metadata": {"user_id": "user_1"}},
        ))


def test_one_time_payment_checkout_is_ignored():
    assert normalize_stripe_event(stripe_event(
        "checkout.session.completed",
        {"mode": "payment", "metadata": {"user_id": "user_1", "tier_id": "2"}},
    )) is None


def test_invoice_paid_becomes_renewal_with_latest_line_end():
    event = normalize_stripe_event(stripe_event(
        "invoice.paid",
        {
            "subscription": "sub_1",
            "lines": {"data": [
                {"period": {"end": PERIOD_END - 100}},
                {"period": {"end": PERIOD_END}},
            ]},
        },
    ))
    assert isinstance(event, SubscriptionRenewed)
    assert event.new_period_end == PERIOD_END_DT


def test_non_numeric_period_end_is_malformed():
    with pytest.raises(MalformedEventError):
        normalize_stripe_event(stripe_event(
            "invoice.paid",
            {"subscription": "sub_1", "lines": {"data": [{"period": {"end": "next-month"}}]}},
        ))


def test_invoice_subscription_from_parent_details():
    event = normalize_stripe_event(stripe_event(
        "invoice.payment_succeeded",
        {
            "parent": {"subscription_details": {"subscription": "sub_2"}},
            "lines": {"data": [{"period": {"end": PERIOD_END}}]},
        },
    ))
    assert event.provider_subscription_id == "sub_2"


def test_invoice_without_subscription_is_ignored():
    assert normalize_stripe_event(stripe_event("invoice.paid", {"lines": {"data": []}})) is None


def test_subscription_updated_maps_price_to_tier():
    event = normalize_stripe_event(
        stripe_event(
            "customer.subscription.updated",
            {
                "id": "sub_1",
                "status": "active",
                "cancel_at_period_end": True,
                "items": {"data": [{"price": {"id": "price_creator"}, "current_period_end": PERIOD_END}]},
            },
        ),
        price_tiers={"price_creator": 3},
    )
    assert isinstance(event, SubscriptionUpdated)
    assert event.raw_status == "active"
    assert event.cancel_at_period_end is True
    assert event.tier_id == 3
    assert event.period_end == PERIOD_END_DT


def test_subscription_updated_prefers_metadata_tier():
    event = normalize_stripe_event(
        stripe_event(
            "customer.subscription.updated",
            {
                "id": "sub_1",
                "status": "past_due",
                "metadata": {"tier_id": "2"},
                "current_period_end": PERIOD_END,
                "items": {"data": [{"price": {"id": "price_creator"}}]},
            },
        ),
        price_tiers={"price_creator": 3},
    )
    assert event.tier_id == 2
    assert event.raw_status == "past_due"


def test_subscription_deleted_becomes_cancel():
    event = normalize_stripe_event(stripe_event("customer.subscription.deleted", {"id": "sub_1"}))
    assert isinstance(event, SubscriptionCanceled)


def test_unrelated_stripe_event_is_ignored():
    assert normalize_stripe_event(stripe_event("customer.created", {"id": "cus_1"})) is None


def test_stripe_event_without_data_is_malformed():
    with pytest.raises(MalformedEventError):
        normalize_stripe_event({"id": "evt_1", "type": "invoice.paid"})


def test_normalized_events_round_trip_through_adapter():
    event = normalize_stripe_event(stripe_event("customer.subscription.deleted", {"id": "sub_1"}))
    parsed = provider_event_adapter.validate_python(event.model_dump())
    assert parsed == event


# Google Play

def google_envelope(notification_type, token="token_1", product="regular_monthly", message_id="msg_1"):
    data = {
        "version": "1.0",
        "packageName": "com.example.app",
        "subscriptionNotification": {
            "version": "1.0",
            "notificationType": notification_type,
            "purchaseToken": token,
            "subscriptionId": product,
        },
    }
    return {
        "message": {
            "data": base64.b64encode(json.dumps(data).encode()).decode(),
            "messageId": message_id,
        },
        "subscription": "projects/p/subscriptions/s",
    }


def _verified(expiry=PERIOD_END_DT, valid=True):
    return ReceiptVerification(
        valid=valid,
        expiry_time=expiry,
        raw_status="active" if valid else "expired",
        provider_subscription_id="token_1",
        product_id="regular_monthly",
    )


def test_decode_google_envelope():
    notification = decode_google_notification(google_envelope(GOOGLE_RENEWED))
    assert notification.notification_type == GOOGLE_RENEWED
    assert notification.purchase_token == "token_1"
    assert notification.product_id == "regular_monthly"
    assert notification.message_id == "msg_1"
    assert notification.requires_verification


def test_google_test_notification_is_ignored():
    data = {"version": "1.0", "packageName": "com.example.app", "testNotification": {"version": "1.0"}}
    envelope = {"message": {"data": base64.b64encode(json.dumps(data).encode()).decode()}}
    assert decode_google_notification(envelope) is None


def test_invalid_google_envelope_is_malformed():
    with pytest.raises(MalformedEventError):
        decode_google_notification({"message": {"data": "not base64!"}})
    with pytest.raises(MalformedEventError):
        decode_google_notification({})


def test_google_renewed_uses_verified_expiry():
    notification = decode_google_notification(google_envelope(GOOGLE_RENEWED))
    event = normalize_google_notification(notification, _verified())
    assert isinstance(event, SubscriptionRenewed)
    assert event.new_period_end == PERIOD_END_DT
    assert event.provider == Provider.ANDROID
    assert event.event_id == "msg_1"


def test_google_purchased_reactivates():
    notification = decode_google_notification(google_envelope(GOOGLE_PURCHASED))
    event = normalize_google_notification(notification, _verified())
    assert isinstance(event, SubscriptionUpdated)
    assert event.raw_status == "active"
    assert event.cancel_at_period_end is False
    assert event.period_end == PERIOD_END_DT


def test_google_verification_required_for_renewals():
    notification = decode_google_notification(google_envelope(GOOGLE_RENEWED))
    with pytest.raises(MalformedEventError):
        normalize_google_notification(notification, None)


@pytest.mark.parametrize(
    "notification_type,expected_cls,raw_status,cancel_flag",
    [
        (GOOGLE_CANCELED, SubscriptionUpdated, "active", True),
        (GOOGLE_ON_HOLD, SubscriptionUpdated, "on_hold", None),
        (GOOGLE_EXPIRED, SubscriptionCanceled, None, None),
    ],
)
def test_google_status_notifications(notification_type, expected_cls, raw_status, cancel_flag):
    notification = decode_google_notification(google_envelope(notification_type))
    assert not notification.requires_verification
    event = normalize_google_notification(notification)
    assert isinstance(event, expected_cls)
    if raw_status is not None:
        assert event.raw_status == raw_status
        assert event.cancel_at_period_end is cancel_flag


def test_google_informational_types_are_ignored():
    for notification_type in (GOOGLE_IN_GRACE_PERIOD, GOOGLE_PAUSE_SCHEDULE_CHANGED):
        notification = decode_google_notification(google_envelope(notification_type))
        assert normalize_google_notification(notification) is None


# App Store

def apple_notification(notification_type, subtype=None, **transaction):
    tx = {
        "originalTransactionId": "1000000001",
        "productId": "com.example.app.regular",
        "expiresDate": PERIOD_END * 1000,
    }
    tx.update(transaction)
    return {
        "notificationType": notification_type,
        "subtype": subtype,
        "notificationUUID": "uuid-1",
        "data": {"bundleId": "com.example.app", "transaction": tx},
    }


PRODUCT_TIERS = {"com.example.app.regular": 2, "com.example.app.creator": 3}


def test_apple_initial_buy_with_account_token_is_purchase():
    event = normalize_apple_notification(
        apple_notification("SUBSCRIBED", "INITIAL_BUY", appAccountToken="user_1"),
        PRODUCT_TIERS,
    )
    assert isinstance(event, PurchaseCompleted)
    assert event.user_id == "user_1"
    assert event.tier_id == 2
    assert event.period_end == PERIOD_END_DT
    assert event.provider_subscription_id == "1000000001"
    assert event.event_id == "uuid-1"


def test_apple_resubscribe_becomes_active_update():
    event = normalize_apple_notification(apple_notification("SUBSCRIBED", "RESUBSCRIBE"), PRODUCT_TIERS)
    assert isinstance(event, SubscriptionUpdated)
    assert event.raw_status == "active"
    assert event.period_end == PERIOD_END_DT


def test_apple_did_renew():
    event = normalize_apple_notification(apple_notification("DID_RENEW"), PRODUCT_TIERS)
    assert isinstance(event, SubscriptionRenewed)
    assert event.new_period_end == PERIOD_END_DT


def test_apple_auto_renew_toggle():
    disabled = normalize_apple_notification(
        apple_notification("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_DISABLED"), PRODUCT_TIERS
    )
    enabled = normalize_apple_notification(
        apple_notification("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_ENABLED"), PRODUCT_TIERS
    )
    assert disabled.cancel_at_period_end is True
    assert enabled.cancel_at_period_end is False


def test_apple_upgrade_changes_tier():
    event = normalize_apple_notification(
        apple_notification("DID_CHANGE_RENEWAL_PREF", "UPGRADE", productId="com.example.app.creator"),
        PRODUCT_TIERS,
    )
    assert event.tier_id == 3


@pytest.mark.parametrize("notification_type", ["EXPIRED", "REVOKE", "REFUND", "GRACE_PERIOD_EXPIRED"])
def test_apple_terminal_notifications(notification_type):
    event = normalize_apple_notification(apple_notification(notification_type), PRODUCT_TIERS)
    assert isinstance(event, SubscriptionCanceled)


def test_apple_test_notification_is_ignored():
    assert normalize_apple_notification({"notificationType": "TEST", "data": {}}) is None


def test_apple_notification_without_transaction_is_malformed():
    with pytest.raises(MalformedEventError):
        normalize_apple_notification({"notificationType": "DID_RENEW", "data": {}})


# Receipts

def test_receipt_for_new_record_is_purchase():
    event = normalize_receipt(_verified(), user_id="user_1", provider=Provider.ANDROID, tier_id=2, exists=False)
    assert isinstance(event, PurchaseCompleted)
    assert event.period_end == PERIOD_END_DT
    assert event.event_id is None


def test_receipt_for_existing_record_is_renewal():
    event = normalize_receipt(_verified(), user_id="user_1", provider=Provider.ANDROID, tier_id=2, exists=True)
    assert isinstance(event, SubscriptionRenewed)


def test_receipt_without_expiry_is_malformed():
    with pytest.raises(MalformedEventError):
        normalize_receipt(_verified(expiry=None), user_id="user_1", provider=Provider.IOS, tier_id=2, exists=False)


def test_apple_non_numeric_expiry_is_malformed():
    with pytest.raises(MalformedEventError):
        normalize_apple_notification(apple_notification("DID_RENEW", expiresDate="soon"), PRODUCT_TIERS)
