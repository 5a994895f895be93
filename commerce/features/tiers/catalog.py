"""
commerce/features/tiers/catalog.py

Tier catalog.

Tiers are static configuration: changing them is a deploy, not a runtime
write. The catalog is built once at startup and injected wherever tiers are
looked up.
"""

from typing import Dict, Iterable, List, Optional

from commerce.core.config import Settings
from commerce.core.errors import TierNotFoundError, ValidationError
from commerce.models.tier import Tier, UNLIMITED


# Closed feature vocabulary
FEATURES = {
    "recipes_per_month",
    "scan_limit",
    "collections_limit",
    "unlimited_recipes",
    "nutrition_tracking",
    "export_pdf",
    "creator_dashboard",
    "affiliate_links",
    "revenue_analytics",
    "direct_messaging",
    "bulk_operations",
    "api_access",
}

FREE_TIER_ID = 1
REGULAR_TIER_ID = 2
CREATOR_TIER_ID = 3


# Default tier configurations (prices in minor units)
DEFAULT_TIERS = {
    "free": {
        "id": FREE_TIER_ID,
        "name": "Free",
        "monthly_price": 0,
        "features": {
            "recipes_per_month": 5,
            "scan_limit": 10,
            "collections_limit": 1,
            "unlimited_recipes": False,
            "nutrition_tracking": False,
            "export_pdf": False,
            "creator_dashboard": False,
            "affiliate_links": False,
            "revenue_analytics": False,
            "direct_messaging": False,
            "bulk_operations": False,
            "api_access": False,
        },
    },
    "regular": {
        "id": REGULAR_TIER_ID,
        "name": "Regular",
        "monthly_price": 399,
        "features": {
            "recipes_per_month": UNLIMITED,
            "scan_limit": UNLIMITED,
            "collections_limit": 10,
            "unlimited_recipes": True,
            "nutrition_tracking": True,
            "export_pdf": True,
            "creator_dashboard": False,
            "affiliate_links": False,
            "revenue_analytics": False,
            "direct_messaging": False,
            "bulk_operations": False,
            "api_access": False,
        },
    },
    "creator": {
        "id": CREATOR_TIER_ID,
        "name": "Creator",
        "monthly_price": 999,
        "features": {
            "recipes_per_month": UNLIMITED,
            "scan_limit": UNLIMITED,
            "collections_limit": UNLIMITED,
            "unlimited_recipes": True,
            "nutrition_tracking": True,
            "export_pdf": True,
            "creator_dashboard": True,
            "affiliate_links": True,
            "revenue_analytics": True,
            "direct_messaging": True,
            "bulk_operations": True,
            "api_access": True,
        },
    },
}


def _product_ids_for(slug: str, cfg: Optional[Settings]) -> tuple:
    if cfg is None:
        return ()
    ids = {
        "regular": (cfg.IOS_PRODUCT_REGULAR, cfg.ANDROID_PRODUCT_REGULAR),
        "creator": (cfg.IOS_PRODUCT_CREATOR, cfg.ANDROID_PRODUCT_CREATOR),
    }.get(slug, ())
    return tuple(i for i in ids if i)


class TierCatalog:
    """In-memory, read-only tier lookup."""

    def __init__(self, tiers: Iterable[Tier]):
        ordered = sorted(tiers, key=lambda t: t.rank)
        if not ordered:
            raise ValueError("Tier catalog cannot be empty")
        self._by_id: Dict[int, Tier] = {t.id: t for t in ordered}
        self._by_slug: Dict[str, Tier] = {t.slug: t for t in ordered}
        self._by_product: Dict[str, Tier] = {}
        for tier in ordered:
            for product_id in tier.product_ids:
                self._by_product[product_id] = tier
        self._ordered: List[Tier] = ordered

    @classmethod
    def default(cls, cfg: Optional[Settings] = None) -> "TierCatalog":
        """Catalog built from DEFAULT_TIERS, with store product ids from settings."""
        tiers = [
            Tier(
                slug=slug,
                product_ids=_product_ids_for(slug, cfg),
                currency=(cfg.STRIPE_CURRENCY if cfg else "usd"),
                **config,
            )
            for slug, config in DEFAULT_TIERS.items()
        ]
        return cls(tiers)

    def get_tier(self, tier_id: int) -> Tier:
        tier = self._by_id.get(tier_id)
        if tier is None:
            raise TierNotFoundError(f"Subscription tier not found: {tier_id}")
        return tier

    def get_tier_by_slug(self, slug: str) -> Tier:
        tier = self._by_slug.get(slug)
        if tier is None:
            raise TierNotFoundError(f"Subscription tier not found: {slug}")
        return tier

    def tier_for_product(self, product_id: str) -> Tier:
        tier = self._by_product.get(product_id)
        if tier is None:
            raise ValidationError(f"Unknown store product: {product_id}")
        return tier

    def lowest_tier(self) -> Tier:
        return self._ordered[0]

    def list_tiers(self) -> List[Tier]:
        return list(self._ordered)

    def has_tier(self, tier_id: int) -> bool:
        return tier_id in self._by_id

    def compare(self, from_tier_id: int, to_tier_id: int) -> int:
        """-1 downgrade, 0 same, 1 upgrade (by rank)."""
        a = self.get_tier(from_tier_id).rank
        b = self.get_tier(to_tier_id).rank
        return (b > a) - (b < a)
