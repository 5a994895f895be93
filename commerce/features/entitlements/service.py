"""
commerce/features/entitlements/service.py

Entitlement resolver.

Answers "which tier is this user on and what may they do". Read paths
degrade rather than fail: any error while resolving falls back to the free
tier so a storage outage never locks users out of the free experience.
"""

import logging
from datetime import datetime
from typing import Callable, FrozenSet

from fastapi import Depends, Request

from commerce.core.auth import get_current_user_id
from commerce.core.errors import UpgradeRequiredError
from commerce.features.subscriptions.store import SubscriptionStore
from commerce.features.tiers.catalog import TierCatalog
from commerce.models.subscription import utc_now
from commerce.models.tier import Tier


logger = logging.getLogger("commerce.entitlements")


class EntitlementResolver:
    def __init__(
        self,
        store: SubscriptionStore,
        catalog: TierCatalog,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.catalog = catalog
        self.clock = clock

    def resolve_tier(self, user_id: str) -> Tier:
        """Tier of the user's active, unexpired subscription; free tier otherwise."""
        try:
            if not user_id or not user_id.strip():
                raise ValueError("empty user id")
            with self.store.reading() as repo:
                current = repo.get_active_for_user(user_id)
            if current is None or not current.is_entitled(self.clock()):
                return self.catalog.lowest_tier()
            return self.catalog.get_tier(current.tier_id)
        except Exception as e:
            logger.warning(
                "[entitlements] tier resolution failed, falling back to free tier",
                extra={"user_id": user_id, "error": str(e), "error_code": getattr(e, "code", None)},
            )
            return self.catalog.lowest_tier()

    def resolve_features(self, user_id: str) -> FrozenSet[str]:
        tier = self.resolve_tier(user_id)
        return frozenset(key for key in tier.features if tier.feature_enabled(key))

    def has_feature(self, user_id: str, feature_key: str) -> bool:
        try:
            return self.resolve_tier(user_id).feature_enabled(feature_key)
        except Exception:
            logger.warning(
                "[entitlements] feature check failed",
                exc_info=True,
                extra={"user_id": user_id, "feature": feature_key},
            )
            return False

    def get_limit(self, user_id: str, limit_key: str) -> int:
        """Numeric limit for the user's tier (-1 unlimited)."""
        try:
            return self.resolve_tier(user_id).limit(limit_key)
        except Exception:
            logger.warning(
                "[entitlements] limit lookup failed",
                exc_info=True,
                extra={"user_id": user_id, "feature": limit_key},
            )
            return self.catalog.lowest_tier().limit(limit_key)

    def meets_tier(self, user_id: str, required_slug: str) -> bool:
        try:
            required = self.catalog.get_tier_by_slug(required_slug)
            return self.resolve_tier(user_id).rank >= required.rank
        except Exception:
            logger.warning(
                "[entitlements] tier check failed",
                exc_info=True,
                extra={"user_id": user_id, "required_tier": required_slug},
            )
            return False


def get_resolver(request: Request) -> EntitlementResolver:
    return request.app.state.services.resolver


def require_feature(feature_key: str):
    """
    Route dependency that blocks callers whose tier lacks `feature_key`.

    Usage:
        @router.get("/export", dependencies=[Depends(require_feature("export_pdf"))])
    """

    def dependency(
        user_id: str = Depends(get_current_user_id),
        resolver: EntitlementResolver = Depends(get_resolver),
    ) -> str:
        if not resolver.has_feature(user_id, feature_key):
            tier = resolver.resolve_tier(user_id)
            raise UpgradeRequiredError(
                f"Feature '{feature_key}' is not available on the {tier.name} tier"
            )
        return user_id

    return dependency


def require_tier(required_slug: str):
    """Route dependency that blocks callers below `required_slug`."""

    def dependency(
        user_id: str = Depends(get_current_user_id),
        resolver: EntitlementResolver = Depends(get_resolver),
    ) -> str:
        if not resolver.meets_tier(user_id, required_slug):
            raise UpgradeRequiredError(f"This feature requires the {required_slug} tier or higher")
        return user_id

    return dependency
