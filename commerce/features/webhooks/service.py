"""
commerce/features/webhooks/service.py

Webhook reconciler.

Applies normalized provider events to the subscription state manager. No
retries happen here: a TransientStoreError propagates so the transport can
answer with a retryable status and the provider redelivers. Duplicate and
out-of-date events resolve to `noop=True`.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from commerce.core.logging import log_event
from commerce.features.subscriptions.service import SubscriptionStateManager, TransitionOutcome
from commerce.features.webhooks.ledger import ProviderEventLedger
from commerce.models.events import (
    ProviderEvent,
    PurchaseCompleted,
    SubscriptionCanceled,
    SubscriptionRenewed,
    SubscriptionUpdated,
)
from commerce.models.subscription import Subscription


logger = logging.getLogger("commerce.webhooks")


@dataclass(frozen=True)
class ReconciliationOutcome:
    applied: bool
    subscription: Optional[Subscription]
    kind: str
    duplicate_delivery: bool = False

    @property
    def noop(self) -> bool:
        return not self.applied

    @classmethod
    def from_transition(cls, kind: str, outcome: TransitionOutcome) -> "ReconciliationOutcome":
        return cls(applied=outcome.applied, subscription=outcome.subscription, kind=kind)


class WebhookReconciler:
    def __init__(self, manager: SubscriptionStateManager, ledger: Optional[ProviderEventLedger] = None):
        self.manager = manager
        self.ledger = ledger

    def apply(self, event: ProviderEvent) -> ReconciliationOutcome:
        """Apply one normalized event. Safe to call any number of times."""
        if isinstance(event, PurchaseCompleted):
            outcome = self.manager.create_subscription(
                event.user_id,
                event.tier_id,
                event.provider,
                provider_subscription_id=event.provider_subscription_id,
                provider_customer_id=event.provider_customer_id,
                period_end=event.period_end,
            )
        elif isinstance(event, SubscriptionRenewed):
            outcome = self.manager.apply_renewal(
                event.provider, event.provider_subscription_id, event.new_period_end
            )
        elif isinstance(event, SubscriptionCanceled):
            outcome = self.manager.apply_provider_cancel(event.provider, event.provider_subscription_id)
        elif isinstance(event, SubscriptionUpdated):
            outcome = self.manager.apply_provider_update(
                event.provider,
                event.provider_subscription_id,
                event.raw_status,
                cancel_at_period_end=event.cancel_at_period_end,
                tier_id=event.tier_id,
                period_end=event.period_end,
            )
        else:
            raise TypeError(f"Unsupported provider event: {type(event).__name__}")

        result = ReconciliationOutcome.from_transition(event.kind, outcome)
        subscription_id = outcome.subscription.id if outcome.subscription else None
        if result.noop:
            log_event(
                "info",
                "[webhooks] event already reflected, no-op",
                subscription_id=subscription_id,
                provider=event.provider.value,
                event_type=event.kind,
                extra={"provider_subscription_id": event.provider_subscription_id},
            )
        else:
            log_event(
                "info",
                "[webhooks] event applied",
                subscription_id=subscription_id,
                provider=event.provider.value,
                event_type=event.kind,
                extra={
                    "provider_subscription_id": event.provider_subscription_id,
                    "actions": [a.value for a in outcome.actions],
                },
            )
        return result

    def process(self, event: ProviderEvent, *, event_type: str, raw_hash: str) -> ReconciliationOutcome:
        """
        Apply with the provider event ledger around it.

        Events without a provider delivery id bypass the ledger.
        """
        if self.ledger is None or not event.event_id:
            return self.apply(event)

        provider = event.provider.value
        if self.ledger.is_processed(provider, event.event_id):
            logger.info(
                "[webhooks] duplicate delivery skipped",
                extra={"provider": provider, "event_id": event.event_id, "event_type": event_type},
            )
            return ReconciliationOutcome(
                applied=False, subscription=None, kind=event.kind, duplicate_delivery=True
            )

        self.ledger.record_received(provider, event.event_id, event_type, raw_hash)
        try:
            result = self.apply(event)
        except Exception as e:
            self.ledger.mark_processed(provider, event.event_id, error=f"{e.__class__.__name__}: {e}")
            raise
        self.ledger.mark_processed(provider, event.event_id)
        return result
