# commerce/conftest.py
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import insert

from commerce.core.config import Settings
from commerce.core.database import (
    affiliate_links,
    create_all_tables,
    create_db_engine,
    create_session_factory,
    referral_attributions,
)
from commerce.core.errors import InvalidSignatureError
from commerce.features.entitlements.service import EntitlementResolver
from commerce.features.monetization.dispatcher import MonetizationDispatcher
from commerce.features.monetization.referrals import SqlReferralAttributionStore
from commerce.features.monetization.revenue import SqlCreatorRevenueLedger
from commerce.features.receipts.verifier import ReceiptVerification
from commerce.features.subscriptions.service import SubscriptionStateManager
from commerce.features.subscriptions.store import SubscriptionStore
from commerce.features.tiers.catalog import TierCatalog
from commerce.features.webhooks.ledger import ProviderEventLedger
from commerce.features.webhooks.service import WebhookReconciler
from commerce.main import build_services, create_app
from commerce.models.subscription import Provider
from commerce.models.tier import Tier


FROZEN_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Deterministic clock; advance() moves time forward."""

    def __init__(self, now: datetime = FROZEN_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """In-memory PaymentGateway. Signature header 'valid' passes verification."""

    def __init__(self):
        self.checkouts: List[Tuple[str, Tier, str, str]] = []
        self.tier_updates: List[Tuple[str, int]] = []
        self.cancels: List[Tuple[str, bool]] = []
        self.fail_with: Optional[Exception] = None
        self.price_tiers: Dict[str, int] = {"price_regular": 2, "price_creator": 3}

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def create_checkout_session(self, user_id: str, tier: Tier, success_url: str, cancel_url: str) -> str:
        self._maybe_fail()
        self.checkouts.append((user_id, tier, success_url, cancel_url))
        return f"https://checkout.test/session/{user_id}/{tier.slug}"

    def update_subscription_tier(self, provider_subscription_id: str, tier: Tier) -> None:
        self._maybe_fail()
        self.tier_updates.append((provider_subscription_id, tier.id))

    def cancel_subscription(self, provider_subscription_id: str, at_period_end: bool) -> None:
        self._maybe_fail()
        self.cancels.append((provider_subscription_id, at_period_end))

    def construct_event(self, payload: bytes, signature_header: str) -> Dict[str, Any]:
        if signature_header != "valid":
            raise InvalidSignatureError("Invalid signature: test")
        return json.loads(payload)


class FakeVerifier:
    """ReceiptVerifier returning queued results per token."""

    def __init__(self):
        self.results: Dict[str, ReceiptVerification] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail_with: Optional[Exception] = None

    def verify(self, token: str, product_id: str) -> ReceiptVerification:
        self.calls.append((token, product_id))
        if self.fail_with is not None:
            raise self.fail_with
        return self.results[token]


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        ENV="test",
        DATABASE_URL="sqlite://",
        STRIPE_SECRET_KEY=None,
        STRIPE_WEBHOOK_SECRET=None,
        SWEEP_ENABLED=False,
    )


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def catalog(test_settings):
    return TierCatalog.default(test_settings)


@pytest.fixture
def store(session_factory):
    return SubscriptionStore(session_factory)


@pytest.fixture
def revenue(session_factory, catalog):
    return SqlCreatorRevenueLedger(session_factory, catalog, share_percent=30)


@pytest.fixture
def dispatcher(session_factory, revenue):
    return MonetizationDispatcher(SqlReferralAttributionStore(session_factory), revenue, inline=True)


@pytest.fixture
def manager(store, catalog, dispatcher, clock):
    return SubscriptionStateManager(store, catalog, dispatcher, clock=clock)


@pytest.fixture
def resolver(store, catalog, clock):
    return EntitlementResolver(store, catalog, clock=clock)


@pytest.fixture
def ledger(session_factory):
    return ProviderEventLedger(session_factory)


@pytest.fixture
def reconciler(manager, ledger):
    return WebhookReconciler(manager, ledger)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def ios_verifier():
    return FakeVerifier()


@pytest.fixture
def android_verifier():
    return FakeVerifier()


@pytest.fixture
def services(test_settings, engine, fake_gateway, ios_verifier, android_verifier, clock):
    services = build_services(
        test_settings,
        engine=engine,
        gateway=fake_gateway,
        verifiers={Provider.IOS: ios_verifier, Provider.ANDROID: android_verifier},
        inline_dispatch=True,
        clock=clock,
    )
    yield services
    services.dispatcher.shutdown()


@pytest.fixture
def client(test_settings, services):
    app = create_app(test_settings, services)
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def seed_referral(session_factory):
    """Insert an affiliate link and a referral attribution for a subscriber."""

    def _seed(subscriber_id: str, *, creator_id: str = "creator_1", link_code: str = "CHEF42") -> None:
        with session_factory() as session:
            session.execute(
                insert(affiliate_links).values(creator_id=creator_id, link_code=link_code, is_active=True)
            )
            session.execute(
                insert(referral_attributions).values(
                    user_id=subscriber_id,
                    link_code=link_code,
                    created_at=FROZEN_NOW - timedelta(days=2),
                )
            )
            session.commit()

    return _seed
