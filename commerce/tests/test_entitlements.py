"""
Tests for the entitlement resolver and route guards.

Read paths must never fail: storage errors fall back to the free tier.
"""
from unittest.mock import Mock

from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from commerce.core.errors import AppError, TransientStoreError, app_error_handler
from commerce.features.entitlements.service import (
    EntitlementResolver,
    require_feature,
    require_tier,
)
from commerce.features.tiers.catalog import CREATOR_TIER_ID, REGULAR_TIER_ID
from commerce.models.subscription import Provider
from commerce.models.tier import UNLIMITED


def _broken_store():
    store = Mock()
    store.reading.side_effect = TransientStoreError("Subscription store unavailable: OperationalError")
    return store


def test_free_tier_without_subscription(resolver):
    tier = resolver.resolve_tier("user_1")
    assert tier.slug == "free"
    assert "export_pdf" not in resolver.resolve_features("user_1")
    assert resolver.get_limit("user_1", "recipes_per_month") == 5


def test_paid_tier_features(manager, resolver):
    manager.create_subscription("user_1", REGULAR_TIER_ID, Provider.STRIPE, "sub_1")

    assert resolver.resolve_tier("user_1").slug == "regular"
    assert resolver.has_feature("user_1", "export_pdf")
    assert not resolver.has_feature("user_1", "api_access")
    assert resolver.get_limit("user_1", "scan_limit") == UNLIMITED
    assert resolver.meets_tier("user_1", "regular")
    assert not resolver.meets_tier("user_1", "creator")


def test_features_follow_tier_changes(manager, resolver):
    manager.create_subscription("user_1", REGULAR_TIER_ID, Provider.STRIPE, "sub_1")
    manager.change_tier("user_1", CREATOR_TIER_ID)
    assert resolver.has_feature("user_1", "creator_dashboard")

    manager.cancel_subscription("user_1", immediately=True)
    assert resolver.resolve_tier("user_1").slug == "free"


def test_elapsed_period_falls_back_to_free(manager, resolver, clock):
    manager.create_subscription("user_1", CREATOR_TIER_ID, Provider.STRIPE, "sub_1")
    clock.advance(days=30, seconds=1)
    assert resolver.resolve_tier("user_1").slug == "free"


def test_paused_subscription_is_not_entitled(manager, resolver):
    manager.create_subscription("user_1", CREATOR_TIER_ID, Provider.ANDROID, "token_1")
    manager.apply_provider_update(Provider.ANDROID, "token_1", "paused")
    assert resolver.resolve_tier("user_1").slug == "free"


def test_store_failure_falls_back_to_free(catalog, caplog):
    resolver = EntitlementResolver(_broken_store(), catalog)

    assert resolver.resolve_tier("user_1").slug == "free"
    assert not resolver.has_feature("user_1", "export_pdf")
    assert resolver.get_limit("user_1", "recipes_per_month") == 5
    assert not resolver.meets_tier("user_1", "regular")
    assert "falling back to free tier" in caplog.text


def test_empty_user_id_resolves_to_free(resolver):
    assert resolver.resolve_tier("").slug == "free"
    assert resolver.resolve_features("   ") == resolver.resolve_features("")


def test_unknown_required_tier_denies(resolver):
    assert not resolver.meets_tier("user_1", "platinum")


def _guarded_app(resolver):
    app = FastAPI()
    app.state.services = Mock(resolver=resolver)
    app.add_exception_handler(AppError, app_error_handler)

    @app.get("/export", dependencies=[Depends(require_feature("export_pdf"))])
    def export():
        return {"ok": True}

    @app.get("/dashboard")
    def dashboard(user_id: str = Depends(require_tier("creator"))):
        return {"user_id": user_id}

    return TestClient(app)


def test_require_feature_blocks_free_users(resolver):
    client = _guarded_app(resolver)
    resp = client.get("/export", headers={"X-User-Id": "user_1"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "upgrade_required"


def test_require_feature_allows_paid_users(manager, resolver):
    manager.create_subscription("user_1", REGULAR_TIER_ID, Provider.STRIPE, "sub_1")
    client = _guarded_app(resolver)
    assert client.get("/export", headers={"X-User-Id": "user_1"}).status_code == 200


def test_require_tier(manager, resolver):
    manager.create_subscription("user_1", CREATOR_TIER_ID, Provider.STRIPE, "sub_1")
    client = _guarded_app(resolver)

    ok = client.get("/dashboard", headers={"X-User-Id": "user_1"})
    denied = client.get("/dashboard", headers={"X-User-Id": "user_2"})

    assert ok.json() == {"user_id": "user_1"}
    assert denied.status_code == 403


def test_guard_requires_caller_identity(resolver):
    client = _guarded_app(resolver)
    assert client.get("/export").status_code == 401
