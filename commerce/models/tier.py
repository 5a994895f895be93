"""
commerce/models/tier.py

Tier model: a named subscription level with a price and feature set.
"""

from typing import Dict, Tuple, Union
from pydantic import BaseModel, ConfigDict

FeatureValue = Union[bool, int]

UNLIMITED = -1


class Tier(BaseModel):
    """
    Tier represents an immutable catalog entry.

    Feature values:
    - bool: feature flags (true = enabled)
    - int: numeric limits (-1 = unlimited)

    `id` doubles as the rank used for upgrade/downgrade comparison.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    slug: str
    name: str
    monthly_price: int  # minor units
    currency: str = "usd"
    features: Dict[str, FeatureValue]
    product_ids: Tuple[str, ...] = ()

    @property
    def rank(self) -> int:
        return self.id

    def feature_enabled(self, key: str) -> bool:
        """True for enabled flags, unlimited limits and positive limits."""
        value = self.features.get(key)
        if value is None:
            return False
        if isinstance(value, bool):
            return value
        return value == UNLIMITED or value > 0

    def limit(self, key: str) -> int:
        """Numeric limit for `key`; 0 when absent."""
        value = self.features.get(key)
        if value is None or isinstance(value, bool):
            return 0
        return int(value)
