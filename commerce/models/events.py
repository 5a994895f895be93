"""
commerce/models/events.py

Normalized provider events.

Every provider adapter (Stripe webhooks, App Store notifications, Google Play
RTDN, receipt verification) produces one of these variants so the state
manager never branches on raw provider payload shape.
"""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from commerce.models.subscription import Provider


class _ProviderEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: Provider
    provider_subscription_id: str = Field(min_length=1)
    event_id: Optional[str] = None  # provider-native delivery id, when present


class PurchaseCompleted(_ProviderEventBase):
    kind: Literal["purchase_completed"] = "purchase_completed"
    user_id: str = Field(min_length=1)
    tier_id: int
    provider_customer_id: Optional[str] = None
    period_end: Optional[datetime] = None


class SubscriptionRenewed(_ProviderEventBase):
    kind: Literal["subscription_renewed"] = "subscription_renewed"
    new_period_end: datetime


class SubscriptionCanceled(_ProviderEventBase):
    kind: Literal["subscription_canceled"] = "subscription_canceled"


class SubscriptionUpdated(_ProviderEventBase):
    kind: Literal["subscription_updated"] = "subscription_updated"
    raw_status: str
    cancel_at_period_end: Optional[bool] = None
    tier_id: Optional[int] = None
    period_end: Optional[datetime] = None


ProviderEvent = Annotated[
    Union[PurchaseCompleted, SubscriptionRenewed, SubscriptionCanceled, SubscriptionUpdated],
    Field(discriminator="kind"),
]

provider_event_adapter: TypeAdapter = TypeAdapter(ProviderEvent)
