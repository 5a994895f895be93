"""
commerce/features/subscriptions/service.py

Subscription state manager.

Owns every transition of the subscription state machine and the append-only
history log:

    (none)  --create-->            active
    active  --change_tier-->       active   (upgraded | downgraded)
    active  --cancel now-->        canceled
    active  --schedule cancel-->   active(cancel_at_period_end) --period end--> canceled
    active  --period end-->        expired
    active  <--pause / resume-->   paused

`canceled` and `expired` are terminal. Provider-driven helpers are idempotent
so that re-delivered events leave state and history unchanged. Storage
failures are never swallowed here; read-side consumers decide how to degrade.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Set, Tuple

from commerce.core.errors import (
    NoActiveSubscriptionError,
    NotFoundError,
    ValidationError,
)
from commerce.core.logging import log_event
from commerce.features.subscriptions.store import (
    DuplicateProviderSubscription,
    SubscriptionRepository,
    SubscriptionStore,
)
from commerce.features.tiers.catalog import TierCatalog
from commerce.models.subscription import (
    HistoryAction,
    Provider,
    Subscription,
    SubscriptionHistoryEntry,
    SubscriptionStatus,
    ensure_utc,
    utc_now,
)


logger = logging.getLogger("commerce.subscriptions")

DEFAULT_PERIOD_DAYS = 30
DEFAULT_SWEEP_LIMIT = 100

# Raw provider statuses grouped by the transition they imply
ACTIVE_RAW_STATUSES = {"active", "trialing"}
CANCELED_RAW_STATUSES = {"canceled", "cancelled", "unpaid", "incomplete_expired", "revoked"}
PAUSED_RAW_STATUSES = {"paused", "on_hold"}


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of a transition attempt. `applied=False` is an idempotent no-op."""
    subscription: Optional[Subscription]
    applied: bool
    actions: Tuple[HistoryAction, ...] = ()

    @property
    def noop(self) -> bool:
        return not self.applied

    @property
    def created(self) -> bool:
        return self.applied and HistoryAction.CREATED in self.actions


@dataclass
class SweepReport:
    checked: int = 0
    canceled: int = 0
    expired: int = 0
    skipped: int = 0
    errors: int = 0
    subscription_ids: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "checked": self.checked,
            "canceled": self.canceled,
            "expired": self.expired,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class SubscriptionStateManager:
    """Canonical subscription state machine per user."""

    def __init__(
        self,
        store: SubscriptionStore,
        catalog: TierCatalog,
        dispatcher=None,
        *,
        clock: Callable[[], datetime] = utc_now,
        default_period_days: int = DEFAULT_PERIOD_DAYS,
    ):
        self.store = store
        self.catalog = catalog
        self.dispatcher = dispatcher
        self.clock = clock
        self.default_period_days = default_period_days

    # Reads

    def get_user_subscription(self, user_id: str) -> Optional[Subscription]:
        """Active, unexpired subscription for the user, or None."""
        with self.store.reading() as repo:
            current = repo.get_active_for_user(user_id)
        if current and current.is_entitled(self.clock()):
            return current
        return None

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self.store.reading() as repo:
            return repo.get(subscription_id)

    def find_by_provider_id(self, provider: Provider, provider_subscription_id: str) -> Optional[Subscription]:
        with self.store.reading() as repo:
            return repo.get_by_provider_id(provider, provider_subscription_id)

    def get_history(
        self,
        *,
        subscription_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[SubscriptionHistoryEntry]:
        with self.store.reading() as repo:
            return repo.list_history(subscription_id=subscription_id, user_id=user_id)

    # Transitions

    def create_subscription(
        self,
        user_id: str,
        tier_id: int,
        provider: Provider,
        provider_subscription_id: Optional[str] = None,
        provider_customer_id: Optional[str] = None,
        period_end: Optional[datetime] = None,
    ) -> TransitionOutcome:
        """
        Create an active subscription, superseding any active one for the user.

        Idempotent on (provider, provider_subscription_id): when a record with
        that key already exists it is returned unchanged, whatever its status.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        if not self.catalog.has_tier(tier_id):
            raise ValidationError(f"Invalid tier id: {tier_id}")

        now = self.clock()
        end = ensure_utc(period_end) or now + timedelta(days=self.default_period_days)
        if end <= now:
            raise ValidationError("period_end must be in the future")

        try:
            with self.store.locked(user_id) as repo:
                if provider_subscription_id:
                    existing = repo.get_by_provider_id(provider, provider_subscription_id)
                    if existing:
                        return self._duplicate_purchase(existing, user_id)

                superseded = repo.supersede_active(user_id, now)
                subscription = repo.insert_subscription(
                    user_id=user_id,
                    tier_id=tier_id,
                    provider=provider,
                    period_start=now,
                    period_end=end,
                    now=now,
                    provider_subscription_id=provider_subscription_id,
                    provider_customer_id=provider_customer_id,
                )
                repo.append_history(
                    subscription=subscription,
                    action=HistoryAction.CREATED,
                    now=now,
                    to_tier_id=tier_id,
                    metadata={"provider": provider.value},
                )
        except DuplicateProviderSubscription:
            # A concurrent writer inserted the same provider subscription first
            with self.store.reading() as repo:
                existing = repo.get_by_provider_id(provider, provider_subscription_id)
            if existing is None:
                raise
            return self._duplicate_purchase(existing, user_id)

        log_event(
            "info",
            "[subscriptions] subscription created",
            user_id=user_id,
            subscription_id=subscription.id,
            provider=provider.value,
            extra={
                "tier_id": tier_id,
                "period_end": end.isoformat(),
                "superseded": [s.id for s in superseded],
            },
        )

        self._notify_ended(superseded)
        if self.dispatcher is not None:
            self.dispatcher.on_activation(subscription)

        return TransitionOutcome(subscription, True, (HistoryAction.CREATED,))

    def change_tier(self, user_id: str, new_tier_id: int) -> TransitionOutcome:
        """Upgrade or downgrade in place; creates a manual subscription when none is active."""
        if not self.catalog.has_tier(new_tier_id):
            raise ValidationError(f"Invalid tier id: {new_tier_id}")

        now = self.clock()
        with self.store.locked(user_id) as repo:
            current = repo.get_active_for_user(user_id)
            if current is not None and current.is_entitled(now):
                if current.tier_id == new_tier_id:
                    return TransitionOutcome(current, False)

                direction = self.catalog.compare(current.tier_id, new_tier_id)
                action = HistoryAction.UPGRADED if direction > 0 else HistoryAction.DOWNGRADED
                updated = repo.update_fields(current.id, now=now, tier_id=new_tier_id)
                repo.append_history(
                    subscription=updated,
                    action=action,
                    now=now,
                    from_tier_id=current.tier_id,
                    to_tier_id=new_tier_id,
                )
                logger.info(
                    "[subscriptions] tier changed",
                    extra={
                        "user_id": user_id,
                        "subscription_id": current.id,
                        "from_tier_id": current.tier_id,
                        "to_tier_id": new_tier_id,
                    },
                )
                return TransitionOutcome(updated, True, (action,))

        # Upgrade-from-free path. Runs outside the lock; create supersedes anyway.
        return self.create_subscription(user_id, new_tier_id, Provider.MANUAL)

    def cancel_subscription(self, user_id: str, immediately: bool = False) -> TransitionOutcome:
        now = self.clock()
        with self.store.locked(user_id) as repo:
            current = repo.get_active_for_user(user_id)
            if current is None or not current.is_entitled(now):
                raise NoActiveSubscriptionError("No active subscription found")

            if immediately:
                repo.compare_and_set_status(
                    current.id,
                    expected=SubscriptionStatus.ACTIVE,
                    new=SubscriptionStatus.CANCELED,
                    now=now,
                )
                repo.append_history(
                    subscription=current,
                    action=HistoryAction.CANCELED,
                    now=now,
                    from_tier_id=current.tier_id,
                    metadata={"source": "user"},
                )
                action = HistoryAction.CANCELED
            else:
                if current.cancel_at_period_end:
                    return TransitionOutcome(current, False)
                repo.update_fields(current.id, now=now, cancel_at_period_end=True)
                repo.append_history(
                    subscription=current,
                    action=HistoryAction.SCHEDULED_CANCEL,
                    now=now,
                    from_tier_id=current.tier_id,
                )
                action = HistoryAction.SCHEDULED_CANCEL
            updated = repo.get(current.id)

        logger.info(
            "[subscriptions] subscription canceled",
            extra={"user_id": user_id, "subscription_id": current.id, "immediately": immediately},
        )
        if immediately:
            self._notify_ended([updated])
        return TransitionOutcome(updated, True, (action,))

    def mark_expired(self, subscription_id: str) -> TransitionOutcome:
        """Force `expired`. Re-invoking on an expired (or canceled) record is a no-op."""
        snapshot = self.get_subscription(subscription_id)
        if snapshot is None:
            raise NotFoundError(f"Subscription not found: {subscription_id}")

        now = self.clock()
        with self.store.locked(snapshot.user_id) as repo:
            current = repo.get(subscription_id)
            if current.status.is_terminal:
                return TransitionOutcome(current, False)
            if not repo.compare_and_set_status(
                current.id, expected=current.status, new=SubscriptionStatus.EXPIRED, now=now
            ):
                return TransitionOutcome(repo.get(subscription_id), False)
            repo.append_history(
                subscription=current,
                action=HistoryAction.EXPIRED,
                now=now,
                from_tier_id=current.tier_id,
            )
            updated = repo.get(subscription_id)
        self._notify_ended([updated])
        return TransitionOutcome(updated, True, (HistoryAction.EXPIRED,))

    def process_period_end_sweep(
        self,
        now: Optional[datetime] = None,
        limit: int = DEFAULT_SWEEP_LIMIT,
    ) -> SweepReport:
        """
        Convert elapsed periods into transitions.

        Active rows past `current_period_end`: `cancel_at_period_end` rows become
        `canceled`, the rest `expired`. Each transition re-checks status and
        period end under the user lock, so a renewal that lands first wins.

        Candidates are read `limit` at a time until a short batch comes back.
        A row that fails or is skipped is not read again in the same run.
        """
        ts = ensure_utc(now) or self.clock()
        report = SweepReport()
        seen: Set[str] = set()

        while True:
            with self.store.reading() as repo:
                batch = repo.find_active_ending_before(ts, limit, exclude_ids=seen)
            for candidate in batch:
                seen.add(candidate.id)
                self._sweep_one(candidate, ts, report)
            if len(batch) < limit:
                break

        logger.info("[subscriptions] period end sweep complete", extra=report.as_dict())
        return report

    def _sweep_one(self, candidate: Subscription, ts: datetime, report: SweepReport) -> None:
        report.checked += 1
        try:
            with self.store.locked(candidate.user_id) as repo:
                current = repo.get(candidate.id)
                new_status = (
                    SubscriptionStatus.CANCELED
                    if current.cancel_at_period_end
                    else SubscriptionStatus.EXPIRED
                )
                moved = repo.compare_and_set_status(
                    current.id,
                    expected=SubscriptionStatus.ACTIVE,
                    new=new_status,
                    now=ts,
                    period_end_before=ts,
                )
                if not moved:
                    report.skipped += 1
                    return
                action = (
                    HistoryAction.CANCELED
                    if new_status == SubscriptionStatus.CANCELED
                    else HistoryAction.EXPIRED
                )
                repo.append_history(
                    subscription=current,
                    action=action,
                    now=ts,
                    from_tier_id=current.tier_id,
                    metadata={"source": "period_end_sweep"},
                )
        except Exception:
            report.errors += 1
            logger.error(
                "[subscriptions] sweep transition failed",
                exc_info=True,
                extra={"subscription_id": candidate.id, "user_id": candidate.user_id},
            )
            return

        report.subscription_ids.append(candidate.id)
        if new_status == SubscriptionStatus.CANCELED:
            report.canceled += 1
        else:
            report.expired += 1
        self._notify_ended([current])

    # Provider-driven, idempotent helpers

    def apply_renewal(
        self,
        provider: Provider,
        provider_subscription_id: str,
        new_period_end: datetime,
    ) -> TransitionOutcome:
        """current_period_end = max(current, incoming). Terminal records are left alone."""
        snapshot = self._require_provider_subscription(provider, provider_subscription_id)
        incoming = ensure_utc(new_period_end)
        now = self.clock()

        with self.store.locked(snapshot.user_id) as repo:
            current = repo.get(snapshot.id)
            if current.status.is_terminal:
                log_event(
                    "info",
                    "[subscriptions] renewal ignored for terminal subscription",
                    user_id=current.user_id,
                    subscription_id=current.id,
                    provider=provider.value,
                    extra={"status": current.status.value},
                )
                return TransitionOutcome(current, False)
            if not repo.extend_period_end(current.id, incoming, now):
                return TransitionOutcome(current, False)
            repo.append_history(
                subscription=current,
                action=HistoryAction.RENEWED,
                now=now,
                from_tier_id=current.tier_id,
                to_tier_id=current.tier_id,
                metadata={
                    "previous_period_end": current.current_period_end.isoformat(),
                    "new_period_end": incoming.isoformat(),
                },
            )
            updated = repo.get(current.id)
        return TransitionOutcome(updated, True, (HistoryAction.RENEWED,))

    def apply_provider_cancel(self, provider: Provider, provider_subscription_id: str) -> TransitionOutcome:
        snapshot = self._require_provider_subscription(provider, provider_subscription_id)
        now = self.clock()
        with self.store.locked(snapshot.user_id) as repo:
            current = repo.get(snapshot.id)
            if current.status.is_terminal:
                return TransitionOutcome(current, False)
            self._cancel_in_place(repo, current, now, source=provider.value)
            updated = repo.get(current.id)
        self._notify_ended([updated])
        return TransitionOutcome(updated, True, (HistoryAction.CANCELED,))

    def apply_provider_update(
        self,
        provider: Provider,
        provider_subscription_id: str,
        raw_status: str,
        *,
        cancel_at_period_end: Optional[bool] = None,
        tier_id: Optional[int] = None,
        period_end: Optional[datetime] = None,
    ) -> TransitionOutcome:
        """
        Reconcile a provider status report.

        Each field is compared against stored state and only differences are
        applied, so replays produce no new history.
        """
        status = (raw_status or "").lower()
        if status in CANCELED_RAW_STATUSES:
            return self.apply_provider_cancel(provider, provider_subscription_id)

        snapshot = self._require_provider_subscription(provider, provider_subscription_id)
        now = self.clock()
        actions: List[HistoryAction] = []

        with self.store.locked(snapshot.user_id) as repo:
            current = repo.get(snapshot.id)
            if current.status.is_terminal:
                return TransitionOutcome(current, False)

            if status in PAUSED_RAW_STATUSES and current.status == SubscriptionStatus.ACTIVE:
                repo.compare_and_set_status(
                    current.id, expected=SubscriptionStatus.ACTIVE, new=SubscriptionStatus.PAUSED, now=now
                )
                repo.append_history(subscription=current, action=HistoryAction.PAUSED, now=now,
                                    from_tier_id=current.tier_id)
                actions.append(HistoryAction.PAUSED)
            elif status in ACTIVE_RAW_STATUSES and current.status == SubscriptionStatus.PAUSED:
                other = repo.get_active_for_user(current.user_id)
                if other is not None and other.id != current.id:
                    logger.warning(
                        "[subscriptions] resume skipped, user has another active subscription",
                        extra={"subscription_id": current.id, "user_id": current.user_id},
                    )
                else:
                    repo.compare_and_set_status(
                        current.id, expected=SubscriptionStatus.PAUSED, new=SubscriptionStatus.ACTIVE, now=now
                    )
                    repo.append_history(subscription=current, action=HistoryAction.RESUMED, now=now,
                                        to_tier_id=current.tier_id)
                    actions.append(HistoryAction.RESUMED)

            if tier_id is not None and tier_id != current.tier_id:
                if self.catalog.has_tier(tier_id):
                    direction = self.catalog.compare(current.tier_id, tier_id)
                    action = HistoryAction.UPGRADED if direction > 0 else HistoryAction.DOWNGRADED
                    repo.update_fields(current.id, now=now, tier_id=tier_id)
                    repo.append_history(subscription=current, action=action, now=now,
                                        from_tier_id=current.tier_id, to_tier_id=tier_id)
                    actions.append(action)
                else:
                    logger.warning(
                        "[subscriptions] provider reported unknown tier",
                        extra={"subscription_id": current.id, "tier_id": tier_id},
                    )

            if cancel_at_period_end is not None and cancel_at_period_end != current.cancel_at_period_end:
                repo.update_fields(current.id, now=now, cancel_at_period_end=cancel_at_period_end)
                if cancel_at_period_end:
                    repo.append_history(subscription=current, action=HistoryAction.MARKED_FOR_CANCELLATION,
                                        now=now, from_tier_id=current.tier_id)
                    actions.append(HistoryAction.MARKED_FOR_CANCELLATION)
                else:
                    repo.append_history(subscription=current, action=HistoryAction.RESUMED, now=now,
                                        to_tier_id=current.tier_id,
                                        metadata={"reason": "cancel_at_period_end_cleared"})
                    actions.append(HistoryAction.RESUMED)

            if period_end is not None:
                incoming = ensure_utc(period_end)
                if repo.extend_period_end(current.id, incoming, now):
                    repo.append_history(
                        subscription=current,
                        action=HistoryAction.RENEWED,
                        now=now,
                        from_tier_id=current.tier_id,
                        to_tier_id=current.tier_id,
                        metadata={
                            "previous_period_end": current.current_period_end.isoformat(),
                            "new_period_end": incoming.isoformat(),
                        },
                    )
                    actions.append(HistoryAction.RENEWED)

            updated = repo.get(current.id)

        return TransitionOutcome(updated, bool(actions), tuple(actions))

    # Internals

    def _require_provider_subscription(self, provider: Provider, provider_subscription_id: str) -> Subscription:
        subscription = self.find_by_provider_id(provider, provider_subscription_id)
        if subscription is None:
            raise NotFoundError(
                f"No subscription for {provider.value} id {provider_subscription_id}"
            )
        return subscription

    def _duplicate_purchase(self, existing: Subscription, user_id: str) -> TransitionOutcome:
        if existing.user_id != user_id:
            logger.warning(
                "[subscriptions] provider subscription already owned by another user",
                extra={"subscription_id": existing.id, "user_id": user_id},
            )
        log_event(
            "info",
            "[subscriptions] duplicate purchase ignored",
            user_id=existing.user_id,
            subscription_id=existing.id,
            provider=existing.provider.value,
        )
        return TransitionOutcome(existing, False)

    def _notify_ended(self, subscriptions: Iterable[Subscription]) -> None:
        if self.dispatcher is None:
            return
        for subscription in subscriptions:
            self.dispatcher.on_deactivation(subscription)

    def _cancel_in_place(self, repo: SubscriptionRepository, current: Subscription, now: datetime, source: str) -> None:
        repo.compare_and_set_status(
            current.id, expected=current.status, new=SubscriptionStatus.CANCELED, now=now
        )
        repo.append_history(
            subscription=current,
            action=HistoryAction.CANCELED,
            now=now,
            from_tier_id=current.tier_id,
            metadata={"source": source},
        )
