"""
commerce/models/subscription.py

Subscription aggregate and its append-only history entries.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)


class Provider(str, Enum):
    STRIPE = "stripe"
    IOS = "ios"
    ANDROID = "android"
    MANUAL = "manual"


class HistoryAction(str, Enum):
    CREATED = "created"
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    CANCELED = "canceled"
    SCHEDULED_CANCEL = "scheduled_cancel"
    MARKED_FOR_CANCELLATION = "marked_for_cancellation"
    EXPIRED = "expired"
    RENEWED = "renewed"
    PAUSED = "paused"
    RESUMED = "resumed"


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    tier_id: int
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    provider: Provider
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "Subscription":
        data: Mapping[str, Any] = row._mapping if hasattr(row, "_mapping") else row
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            tier_id=data["tier_id"],
            status=SubscriptionStatus(data["status"]),
            current_period_start=ensure_utc(data["current_period_start"]),
            current_period_end=ensure_utc(data["current_period_end"]),
            cancel_at_period_end=bool(data["cancel_at_period_end"]),
            canceled_at=ensure_utc(data["canceled_at"]),
            provider=Provider(data["provider"]),
            provider_subscription_id=data["provider_subscription_id"],
            provider_customer_id=data["provider_customer_id"],
            created_at=ensure_utc(data.get("created_at")),
            updated_at=ensure_utc(data.get("updated_at")),
        )

    def is_entitled(self, now: Optional[datetime] = None) -> bool:
        """Active and still inside the paid period."""
        ts = now or utc_now()
        return self.status == SubscriptionStatus.ACTIVE and self.current_period_end > ts


class SubscriptionHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    subscription_id: str
    user_id: str
    action: HistoryAction
    from_tier_id: Optional[int] = None
    to_tier_id: Optional[int] = None
    metadata_json: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_row(cls, row: Any) -> "SubscriptionHistoryEntry":
        data = row._mapping
        return cls(
            id=data["id"],
            subscription_id=data["subscription_id"],
            user_id=data["user_id"],
            action=HistoryAction(data["action"]),
            from_tier_id=data["from_tier_id"],
            to_tier_id=data["to_tier_id"],
            metadata_json=data["metadata_json"],
            created_at=ensure_utc(data["created_at"]),
        )
