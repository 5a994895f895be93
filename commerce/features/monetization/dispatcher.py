"""
Monetization side-effect dispatcher.

Runs referral accounting when a subscription first activates and when it
ends. Side effects are best-effort: they run off the request path and any
failure is logged and dropped, never surfaced to the transition that
triggered it.
"""
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable, Optional

from commerce.features.monetization.referrals import ReferralAttributionStore
from commerce.features.monetization.revenue import SqlCreatorRevenueLedger
from commerce.models.subscription import Provider, Subscription


logger = logging.getLogger("commerce.monetization")


class MonetizationDispatcher:
    def __init__(
        self,
        attributions: ReferralAttributionStore,
        revenue: SqlCreatorRevenueLedger,
        *,
        executor: Optional[Executor] = None,
        inline: bool = False,
        max_workers: int = 2,
    ):
        self.attributions = attributions
        self.revenue = revenue
        self.inline = inline
        self._owns_executor = executor is None and not inline
        self._executor = executor
        if self._owns_executor:
            self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="monetization")

    def on_activation(self, subscription: Subscription) -> None:
        """Schedule referral accounting for a newly activated subscription."""
        self._dispatch(self._record_conversion, subscription)

    def on_deactivation(self, subscription: Subscription) -> None:
        """Schedule conversion deactivation for a subscription that moved to canceled or expired."""
        self._dispatch(self._deactivate_conversions, subscription)

    def _dispatch(self, task: Callable[[Subscription], None], subscription: Subscription) -> None:
        if subscription.provider == Provider.MANUAL:
            return
        if self.inline:
            task(subscription)
            return
        try:
            self._executor.submit(task, subscription)
        except RuntimeError:
            # Executor already shut down
            logger.warning(
                "[monetization] dispatcher stopped, side effect dropped",
                extra={"subscription_id": subscription.id, "user_id": subscription.user_id},
            )

    def _record_conversion(self, subscription: Subscription) -> None:
        try:
            attribution = self.attributions.get_most_recent_attribution(subscription.user_id)
            if attribution is None:
                return
            creator_id = self.revenue.record_conversion(
                attribution.link_code,
                subscription.user_id,
                subscription.id,
                subscription.tier_id,
            )
            self.revenue.recalculate_monthly_revenue(creator_id)
            logger.info(
                "[monetization] referral conversion recorded",
                extra={
                    "subscription_id": subscription.id,
                    "user_id": subscription.user_id,
                    "creator_id": creator_id,
                    "link_code": attribution.link_code,
                },
            )
        except Exception:
            logger.warning(
                "[monetization] referral accounting failed",
                exc_info=True,
                extra={"subscription_id": subscription.id, "user_id": subscription.user_id},
            )

    def _deactivate_conversions(self, subscription: Subscription) -> None:
        try:
            creator_ids = self.revenue.deactivate_conversions(subscription.id)
            for creator_id in creator_ids:
                self.revenue.recalculate_monthly_revenue(creator_id)
            if creator_ids:
                logger.info(
                    "[monetization] referral conversions deactivated",
                    extra={
                        "subscription_id": subscription.id,
                        "user_id": subscription.user_id,
                        "creator_ids": creator_ids,
                    },
                )
        except Exception:
            logger.warning(
                "[monetization] conversion deactivation failed",
                exc_info=True,
                extra={"subscription_id": subscription.id, "user_id": subscription.user_id},
            )

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=wait)
