"""
Application entry point.

Builds the engine, session factory and services once per process and hands
them to the FastAPI app through `app.state.services`. Nothing here is a
module-level singleton; tests build their own services and app.

Run:
    uvicorn commerce.main:create_app --factory
"""
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from commerce.api import health, subscriptions
from commerce.core.config import Settings, settings as default_settings, validate_config
from commerce.core.database import create_all_tables, create_db_engine, create_session_factory
from commerce.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from commerce.core.logging import configure_logging
from commerce.core.middleware.request_id import RequestIdMiddleware
from commerce.core.validation import validate_env
from commerce.features.billing.provider import PaymentGateway
from commerce.features.billing.service import BillingService
from commerce.features.billing.stripe_provider import StripeGateway
from commerce.features.entitlements.service import EntitlementResolver
from commerce.features.monetization.dispatcher import MonetizationDispatcher
from commerce.features.monetization.referrals import SqlReferralAttributionStore
from commerce.features.monetization.revenue import SqlCreatorRevenueLedger
from commerce.features.receipts.apple import AppleNotificationDecoder, AppleReceiptVerifier
from commerce.features.receipts.google import GooglePlayReceiptVerifier, ServiceAccountTokenProvider
from commerce.features.receipts.verifier import ReceiptVerifier
from commerce.features.subscriptions.service import SubscriptionStateManager
from commerce.features.subscriptions.store import SubscriptionStore
from commerce.features.tiers.catalog import CREATOR_TIER_ID, REGULAR_TIER_ID, TierCatalog
from commerce.features.webhooks.ledger import ProviderEventLedger
from commerce.features.webhooks.service import WebhookReconciler
from commerce.models.subscription import Provider, utc_now
from commerce.workers.period_end_sweep import PeriodicSweeper


logger = logging.getLogger("commerce")


@dataclass
class Services:
    engine: Engine
    session_factory: sessionmaker
    catalog: TierCatalog
    store: SubscriptionStore
    manager: SubscriptionStateManager
    resolver: EntitlementResolver
    reconciler: WebhookReconciler
    dispatcher: MonetizationDispatcher
    revenue: SqlCreatorRevenueLedger
    billing: BillingService

    def close(self) -> None:
        self.dispatcher.shutdown(wait=True)
        self.engine.dispose()


def build_gateway(cfg: Settings) -> Optional[PaymentGateway]:
    if not cfg.STRIPE_SECRET_KEY:
        logger.warning("[startup] STRIPE_SECRET_KEY not set, checkout disabled")
        return None
    return StripeGateway(
        cfg.STRIPE_SECRET_KEY,
        cfg.STRIPE_WEBHOOK_SECRET,
        price_ids={REGULAR_TIER_ID: cfg.STRIPE_PRICE_REGULAR, CREATOR_TIER_ID: cfg.STRIPE_PRICE_CREATOR},
        currency=cfg.STRIPE_CURRENCY,
    )


def build_verifiers(cfg: Settings) -> Dict[Provider, ReceiptVerifier]:
    verifiers: Dict[Provider, ReceiptVerifier] = {
        Provider.IOS: AppleReceiptVerifier(
            cfg.APPLE_SHARED_SECRET, timeout_seconds=cfg.APPLE_VERIFY_TIMEOUT_SECONDS
        ),
    }
    if cfg.GOOGLE_PLAY_PACKAGE_NAME and cfg.GOOGLE_SERVICE_ACCOUNT_FILE:
        token_provider = ServiceAccountTokenProvider.from_file(
            cfg.GOOGLE_SERVICE_ACCOUNT_FILE, timeout_seconds=cfg.GOOGLE_VERIFY_TIMEOUT_SECONDS
        )
        verifiers[Provider.ANDROID] = GooglePlayReceiptVerifier(
            cfg.GOOGLE_PLAY_PACKAGE_NAME,
            token_provider,
            timeout_seconds=cfg.GOOGLE_VERIFY_TIMEOUT_SECONDS,
        )
    else:
        logger.warning("[startup] Google Play verification not configured")
    return verifiers


def build_services(
    cfg: Settings,
    *,
    engine: Optional[Engine] = None,
    gateway: Optional[PaymentGateway] = None,
    verifiers: Optional[Dict[Provider, ReceiptVerifier]] = None,
    apple_decoder: Optional[AppleNotificationDecoder] = None,
    inline_dispatch: bool = False,
    clock: Callable[[], datetime] = utc_now,
    create_tables: bool = False,
) -> Services:
    """Wire every service from settings. Collaborators can be passed in to override."""
    engine = engine or create_db_engine(cfg.DATABASE_URL, cfg.STORE_TIMEOUT_SECONDS)
    if create_tables:
        create_all_tables(engine)
    session_factory = create_session_factory(engine)

    catalog = TierCatalog.default(cfg)
    store = SubscriptionStore(session_factory)
    revenue = SqlCreatorRevenueLedger(session_factory, catalog, share_percent=cfg.REFERRAL_SHARE_PERCENT)
    dispatcher = MonetizationDispatcher(
        SqlReferralAttributionStore(session_factory),
        revenue,
        inline=inline_dispatch,
        max_workers=cfg.MONETIZATION_WORKERS,
    )
    manager = SubscriptionStateManager(
        store,
        catalog,
        dispatcher,
        clock=clock,
        default_period_days=cfg.DEFAULT_PERIOD_DAYS,
    )
    resolver = EntitlementResolver(store, catalog, clock=clock)
    reconciler = WebhookReconciler(manager, ProviderEventLedger(session_factory))
    billing = BillingService(
        catalog,
        manager,
        resolver,
        reconciler,
        gateway=gateway if gateway is not None else build_gateway(cfg),
        verifiers=verifiers if verifiers is not None else build_verifiers(cfg),
        apple_decoder=apple_decoder or AppleNotificationDecoder.from_file(cfg.APPLE_ROOT_CERT_FILE, cfg.APPLE_BUNDLE_ID),
        sweep_limit=cfg.SWEEP_BATCH_LIMIT,
    )
    return Services(
        engine=engine,
        session_factory=session_factory,
        catalog=catalog,
        store=store,
        manager=manager,
        resolver=resolver,
        reconciler=reconciler,
        dispatcher=dispatcher,
        revenue=revenue,
        billing=billing,
    )


def create_app(cfg: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    if cfg is None:
        if "PYTEST_CURRENT_TEST" not in os.environ:
            load_dotenv()
        cfg = default_settings

    configure_logging(cfg.ENV)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_services = services is None
        if owns_services:
            validate_env(settings_obj=cfg)
            validate_config(strict=cfg.CONFIG_STRICT, settings_obj=cfg)
            app.state.services = build_services(cfg)
        sweeper = None
        if cfg.SWEEP_ENABLED:
            sweeper = PeriodicSweeper(
                app.state.services.manager,
                cfg.SWEEP_INTERVAL_SECONDS,
                limit=cfg.SWEEP_BATCH_LIMIT,
            )
            sweeper.start()
        logger.info("Starting commerce service...")
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.stop()
            if owns_services:
                app.state.services.close()
            logger.info("Stopping commerce service...")

    app = FastAPI(title="Commerce - Subscriptions", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(subscriptions.router, prefix="/api")
    app.include_router(health.router)
    return app
